from __future__ import annotations

"""
One-shot structured summary generated when a session finalizes.

Design intent:
- Summaries are best-effort; callers log and drop failures.
- Stored text always opens with a `Summary:` header.
"""

import logging
from typing import Optional

from backend.llm.base import ChatMessage, ChatModel

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "Summary:\n\n"
SUMMARY_SYSTEM_PROMPT = "You are an expert meeting summarizer."


def build_summary_prompt(full_text: str) -> str:
    return (
        "Task: Write a structured summary of the meeting transcript below.\n"
        "Start with one concise sentence stating the meeting's overall purpose or outcome.\n"
        "Leave a blank line after that sentence.\n"
        "Then add these sections:\n"
        "- Main Topics: each key topic with a 1-2 sentence elaboration of what was said about it. "
        "If none, write \"No main topics were discussed.\"\n"
        "- Decisions: specific decisions made. If none, write \"No specific decisions were made.\"\n"
        "- Action Items: action items assigned. If none, write \"No action items were assigned.\"\n\n"
        "Transcript:\n---\n"
        + full_text
        + "\n---\n\n"
        "Follow this layout exactly:\n"
        "<Single overall summary sentence>\n\n"
        "Main Topics:\n- <topic 1>\n- <topic 2>\n\n"
        "Decisions:\n- <decision 1 or \"No specific decisions were made.\">\n\n"
        "Action Items:\n- <action item 1 or \"No action items were assigned.\">"
    )


def apply_summary_header(text: str) -> str:
    if text.lower().startswith("summary:"):
        return text
    return SUMMARY_HEADER + text


class SessionSummarizer:
    def __init__(self, chat_model: ChatModel, *, max_tokens: int = 500, temperature: float = 0.5):
        self._chat_model = chat_model
        self._max_tokens = int(max_tokens)
        self._temperature = float(temperature)

    def summarize(self, full_text: str) -> Optional[str]:
        """Return the headed summary, or None when there is nothing to store.

        Raises `ChatModelError` on backend failure.
        """
        if not full_text.strip():
            return None
        messages: list[ChatMessage] = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": build_summary_prompt(full_text)},
        ]
        raw = self._chat_model.complete(
            messages, temperature=self._temperature, max_tokens=self._max_tokens
        )
        text = (raw or "").strip()
        if not text:
            logger.warning("summary backend=%s returned empty content", self._chat_model.name())
            return None
        return apply_summary_header(text)
