"""
Speech-to-text client for an OpenAI-compatible ``/audio/transcriptions`` API.

The provider sniffs the audio format from the uploaded filename, which is
unreliable for mobile recordings. A rejected submission is therefore retried
with a fixed series of alternative extensions before giving up.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import httpx

from smartscribe.core import ffmpeg_utils
from smartscribe.core.errors import (
    EmptyAudioError,
    ProviderError,
    ProviderTimeoutError,
    TranscriptionFailedError,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "whisper-1"
DEFAULT_TIMEOUT = 120.0
MIN_AUDIO_BYTES = 1024

# Tried in this order after the file's own name
HINT_EXTENSIONS = (".m4a", ".mp4", ".wav", ".mp3", ".aac", ".webm")

_MIME_TYPES = {
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".aac": "audio/aac",
    ".webm": "audio/webm",
}


def filename_hints(file_name: str) -> List[str]:
    """Ordered, de-duplicated filename hints for one submission."""
    path = Path(file_name)
    stem = path.stem or "audio"
    hints = [path.name if path.suffix else f"{stem}.m4a"]
    for ext in HINT_EXTENSIONS:
        candidate = f"{stem}{ext}"
        if candidate not in hints:
            hints.append(candidate)
    return hints


class TranscriptionClient:
    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        language: Optional[str] = "en",
        timeout: float = DEFAULT_TIMEOUT,
        min_audio_bytes: int = MIN_AUDIO_BYTES,
        transcode: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.language = language
        self.timeout = timeout
        self.min_audio_bytes = min_audio_bytes
        self.transcode = transcode
        self._transport = transport

    async def transcribe(self, file_path: Path) -> str:
        """
        Transcribe an audio file.

        Raises:
            EmptyAudioError: If the file is missing or too small
            ProviderTimeoutError: If the provider did not answer in time
            TranscriptionFailedError: If every filename hint was rejected
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            raise EmptyAudioError("Audio file not found")
        size = file_path.stat().st_size
        if size < self.min_audio_bytes:
            raise EmptyAudioError(
                f"Audio file is too small to transcribe ({size} bytes)"
            )
        if not self.api_key:
            raise ProviderError("Transcription provider is not configured")

        converted: Optional[Path] = None
        if self.transcode:
            converted = await asyncio.to_thread(ffmpeg_utils.transcode_to_wav, file_path)

        source = converted or file_path
        try:
            async with aiofiles.open(source, "rb") as f:
                audio = await f.read()
            hint_base = f"{file_path.stem}.wav" if converted else file_path.name
            return await self._submit_with_hints(audio, hint_base)
        finally:
            if converted is not None:
                converted.unlink(missing_ok=True)

    async def _submit_with_hints(self, audio: bytes, file_name: str) -> str:
        last_error: Optional[BaseException] = None
        hints = filename_hints(file_name)
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            for attempt, hint in enumerate(hints, start=1):
                try:
                    text = await self._submit(client, audio, hint)
                except httpx.TimeoutException as e:
                    logger.error(f"Transcription timed out after {self.timeout}s")
                    raise ProviderTimeoutError("Transcription provider timed out") from e
                except (httpx.HTTPError, ProviderError) as e:
                    last_error = e
                    logger.warning(
                        f"Transcription attempt {attempt}/{len(hints)} with hint "
                        f"'{hint}' failed: {e}"
                    )
                    continue
                if attempt > 1:
                    logger.info(f"Transcription succeeded with filename hint '{hint}'")
                return text

        raise TranscriptionFailedError(
            f"Transcription failed: {last_error}", last_error=last_error
        )

    async def _submit(self, client: httpx.AsyncClient, audio: bytes, hint: str) -> str:
        data: Dict[str, Any] = {"model": self.model}
        if self.language:
            data["language"] = self.language
        mime = _MIME_TYPES.get(Path(hint).suffix, "application/octet-stream")

        response = await client.post(
            f"{self.base_url}/audio/transcriptions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            data=data,
            files={"file": (hint, audio, mime)},
        )
        if response.status_code != 200:
            raise ProviderError(
                f"Speech-to-text error {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()["text"]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError(f"Malformed speech-to-text response: {e}") from e


_client: Optional[TranscriptionClient] = None


def get_transcription_client() -> TranscriptionClient:
    global _client
    if _client is None:
        from smartscribe.config import get_config

        cfg = get_config()
        _client = TranscriptionClient(
            api_key=cfg.get("providers", "api_key"),
            base_url=cfg.get("providers", "base_url", default=DEFAULT_BASE_URL),
            model=cfg.get("providers", "transcription_model", default=DEFAULT_MODEL),
            language=cfg.get("providers", "language", default="en"),
            timeout=float(cfg.get("providers", "timeout_seconds", default=DEFAULT_TIMEOUT)),
            min_audio_bytes=int(cfg.get("providers", "min_audio_bytes", default=MIN_AUDIO_BYTES)),
            transcode=bool(cfg.get("providers", "transcode", default=True)),
        )
    return _client


def set_transcription_client(client: Optional[TranscriptionClient]) -> None:
    global _client
    _client = client
