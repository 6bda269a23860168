from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Optional, Tuple

from .base import TranscriptionError, TranscriptionProvider


def whisper_cpp_available(bin_path: str, model_path: str) -> Tuple[bool, str]:
    if not bin_path:
        return False, "missing SCRIBE_WHISPER_CPP_BIN"
    if not model_path:
        return False, "missing SCRIBE_WHISPER_CPP_MODEL"
    if not Path(bin_path).exists():
        return False, f"whisper-cli not found: {bin_path}"
    if not Path(model_path).exists():
        return False, f"model not found: {model_path}"
    return True, ""


def _with_dyld_paths(bin_path: str, env: Optional[dict[str, str]] = None) -> dict[str, str]:
    env_out = dict(os.environ) if env is None else dict(env)
    if not bin_path:
        return env_out
    try:
        build_dir = Path(bin_path).resolve().parents[1]
    except Exception:
        return env_out

    candidates = [
        build_dir / "src",
        build_dir / "ggml" / "src",
        build_dir / "ggml" / "src" / "ggml-blas",
        build_dir / "ggml" / "src" / "ggml-metal",
    ]
    new_paths = [str(p) for p in candidates if p.exists()]
    if not new_paths:
        return env_out

    existing = env_out.get("DYLD_LIBRARY_PATH", "")
    joined = os.pathsep.join(new_paths)
    env_out["DYLD_LIBRARY_PATH"] = (
        joined if not existing else f"{joined}{os.pathsep}{existing}"
    )
    return env_out


class WhisperCppProvider(TranscriptionProvider):
    def __init__(self, bin_path: str, model_path: str, no_gpu: bool = False):
        self._bin_path = bin_path
        self._model_path = model_path
        self._no_gpu = bool(no_gpu)

    def name(self) -> str:
        return "whisper_cpp"

    def transcribe(self, wav_path: str, language: str = "en", timeout_sec: int = 60) -> str:
        ok, reason = whisper_cpp_available(self._bin_path, self._model_path)
        if not ok:
            raise TranscriptionError("upstream_unavailable", reason, self.name())

        # Capture stdout (no output files) and keep logs clean.
        cmd = [
            self._bin_path,
            "-m",
            self._model_path,
            "-f",
            wav_path,
            "-l",
            language,
            "--no-timestamps",
            "--no-prints",
        ]
        if self._no_gpu:
            cmd.insert(1, "-ng")

        try:
            res = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout_sec,
                env=_with_dyld_paths(self._bin_path),
            )
        except subprocess.TimeoutExpired:
            raise TranscriptionError(
                "upstream_unavailable", f"whisper.cpp timed out after {timeout_sec}s", self.name()
            )
        except OSError as e:
            raise TranscriptionError("upstream_unavailable", str(e), self.name())

        if res.returncode != 0:
            msg = (res.stderr or "").strip() or f"exit_code={res.returncode}"
            if len(msg) > 200:
                msg = msg[:200] + "..."
            # whisper-cli exits non-zero for undecodable input; treat as a bad segment.
            raise TranscriptionError("invalid_input", msg, self.name())

        return " ".join((res.stdout or "").split()).strip()
