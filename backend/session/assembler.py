from __future__ import annotations

"""
Per-session transcript assembly.

Design intent:
- Keep fragments sorted by submission order so out-of-order completions
  still produce a correctly ordered transcript.
- Re-derive the flattened text on every append; never track arrival order.
"""

import bisect
from datetime import datetime

from backend.internal_core.contracts import TranscriptFragment

FRAGMENT_SEPARATOR = " "


class TranscriptAssembler:
    """Ordered fragment list for one session.

    Not thread-safe on its own: the session controller serializes appends
    under the owning session's lock.
    """

    def __init__(self) -> None:
        self._fragments: list[TranscriptFragment] = []
        self._orders: list[int] = []
        self._full_text = ""

    @property
    def fragments(self) -> list[TranscriptFragment]:
        return list(self._fragments)

    @property
    def full_text(self) -> str:
        return self._full_text

    def __len__(self) -> int:
        return len(self._fragments)

    def append_fragment(self, order: int, text: str, timestamp: datetime) -> TranscriptFragment:
        idx = bisect.bisect_left(self._orders, order)
        if idx < len(self._orders) and self._orders[idx] == order:
            raise ValueError(f"Fragment order {order} already present")

        fragment = TranscriptFragment(order=order, text=text, timestamp=timestamp)
        self._orders.insert(idx, order)
        self._fragments.insert(idx, fragment)
        self._full_text = FRAGMENT_SEPARATOR.join(item.text for item in self._fragments)
        return fragment
