from __future__ import annotations

import logging
import time
import uuid
from typing import List, Optional

from backend.internal_core.asr.base import TranscriptionProvider
from backend.internal_core.audio_utils import AudioNormalizer, resolve_segment_suffix
from backend.internal_core.blob_store import BlobStore
from backend.internal_core.contracts import MemoryItem, MemoryResult
from backend.internal_core.errors import InvalidInput
from backend.internal_core.memory_store import InMemoryMemoryStore
from backend.internal_core.pipeline import AudioTextPipeline, pipeline_error

logger = logging.getLogger(__name__)


class MemoryService:
    def __init__(
        self,
        store: InMemoryMemoryStore,
        normalizer: AudioNormalizer,
        transcriber: TranscriptionProvider,
        blob_store: BlobStore,
        *,
        language: str = "en",
        asr_timeout_sec: int = 60,
        max_bytes: int = 25 * 1024 * 1024,
    ):
        self._store = store
        self._pipeline = AudioTextPipeline(
            normalizer,
            transcriber,
            blob_store,
            language=language,
            asr_timeout_sec=asr_timeout_sec,
        )
        self._max_bytes = int(max_bytes)

    def transcribe_memory(self, owner_id: str, data: bytes, filename: Optional[str] = None) -> MemoryResult:
        """Transcribe one upload and keep the text when there is any."""
        if not data:
            raise InvalidInput("Audio body is empty.")
        if len(data) > self._max_bytes:
            raise InvalidInput(f"Audio too large ({len(data)} bytes, max {self._max_bytes}).")

        upload_id = uuid.uuid4().hex
        start = time.monotonic()
        try:
            text = self._pipeline.run(
                f"memories/{owner_id}/{upload_id}{resolve_segment_suffix(filename)}",
                data,
                filename,
                prefix=f"memory_{upload_id}",
            )
        except Exception as exc:
            error = pipeline_error(exc)
            logger.warning("memory transcription failed owner=%s code=%s: %s", owner_id, error.code, exc)
            raise error from exc

        text = (text or "").strip()
        elapsed_ms = int((time.monotonic() - start) * 1000)
        if not text:
            logger.info("memory upload produced no text owner=%s elapsed_ms=%d", owner_id, elapsed_ms)
            return MemoryResult(transcription="", memory=None)

        memory = self._store.add(owner_id, text)
        logger.info(
            "memory stored owner=%s memory=%s chars=%d elapsed_ms=%d",
            owner_id,
            memory.memory_id,
            len(text),
            elapsed_ms,
        )
        return MemoryResult(transcription=text, memory=memory)

    def list_memories(self, owner_id: str) -> List[MemoryItem]:
        return self._store.list_for_owner(owner_id)
