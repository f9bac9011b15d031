"""
Recording and transcription lifecycle.

    uploaded -> transcribing -> transcribed

Every operation is scoped to the owning user. Transcription is idempotent:
the check for an existing row happens before the provider calls, and the
insert is conflict-safe, so a concurrent duplicate request can never store
a second transcription or bump the usage counter twice.
"""

import asyncio
import secrets
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiofiles

from smartscribe.core import activity, ffmpeg_utils
from smartscribe.core.errors import (
    EmptyAudioError,
    ForbiddenError,
    NotFoundError,
    SmartScribeError,
    ValidationError,
)
from smartscribe.core.speaker_labeling import SpeakerLabeler, get_speaker_labeler
from smartscribe.core.transcription_client import (
    TranscriptionClient,
    get_transcription_client,
)
from smartscribe.database import database as db
from smartscribe.logging import get_logger

logger = get_logger("recordings")

DEFAULT_EXTENSION = ".m4a"
DEFAULT_MAX_UPLOAD_MB = 200
UPLOAD_CHUNK_SIZE = 1024 * 1024


def generate_recording_filename(original_name: Optional[str]) -> str:
    """``recording-<ms>-<random>.<ext>``, keeping the upload's extension."""
    ext = Path(original_name or "").suffix.lower() or DEFAULT_EXTENSION
    if len(ext) > 10 or not ext[1:].isalnum():
        ext = DEFAULT_EXTENSION
    return f"recording-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{ext}"


def format_duration(seconds: float) -> str:
    """``MM:SS`` (or ``H:MM:SS`` past an hour), the format clients send."""
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def serialize_recording(recording: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": recording["id"],
        "user": recording["user_id"],
        "filename": recording["filename"],
        "originalName": recording["original_name"],
        "name": recording["name"],
        "duration": recording["duration"],
        "size": recording.get("size_bytes"),
        "url": f"/uploads/recording/{recording['filename']}",
        "hasTranscription": bool(recording.get("has_transcription", False)),
        "createdAt": recording["created_at"],
    }


def serialize_transcription(transcription: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if transcription is None:
        return None
    return {
        "_id": transcription["id"],
        "user": transcription["user_id"],
        "recording": transcription["recording_id"],
        "text": transcription["text"],
        "createdAt": transcription["created_at"],
    }


class RecordingManager:
    def __init__(
        self,
        transcriber: Optional[TranscriptionClient] = None,
        labeler: Optional[SpeakerLabeler] = None,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_MB * 1024 * 1024,
    ):
        self._transcriber = transcriber
        self._labeler = labeler
        self.max_upload_bytes = max_upload_bytes

    @property
    def transcriber(self) -> TranscriptionClient:
        return self._transcriber or get_transcription_client()

    @property
    def labeler(self) -> SpeakerLabeler:
        return self._labeler or get_speaker_labeler()

    @staticmethod
    def file_path(recording: Dict[str, Any]) -> Path:
        return db.get_uploads_dir("recording") / recording["filename"]

    async def _get_owned(self, user_id: int, recording_id: int) -> Dict[str, Any]:
        recording = await asyncio.to_thread(db.get_recording, recording_id)
        if recording is None or recording.get("deleted"):
            raise NotFoundError("Recording not found")
        if recording["user_id"] != user_id:
            raise ForbiddenError("Not authorized")
        return recording

    async def upload(
        self,
        user: Dict[str, Any],
        content: bytes,
        original_name: Optional[str],
        **metadata: Any,
    ) -> Dict[str, Any]:
        """Store audio that is already in memory. See ``upload_stream``."""
        offset = 0

        async def read(size: int) -> bytes:
            nonlocal offset
            chunk = content[offset:offset + size]
            offset += len(chunk)
            return chunk

        return await self.upload_stream(user, read, original_name, **metadata)

    async def upload_stream(
        self,
        user: Dict[str, Any],
        read: Callable[[int], Awaitable[bytes]],
        original_name: Optional[str],
        name: Optional[str] = None,
        duration: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Copy an uploaded audio file to disk in chunks and record its metadata.

        ``read(n)`` returns the next chunk, ``b""`` at the end (``UploadFile.read``
        fits). Reading stops as soon as the size cap is passed.

        Raises:
            EmptyAudioError: Nothing was uploaded
            ValidationError: The file exceeds the size cap
        """
        filename = generate_recording_filename(original_name)
        destination = db.get_uploads_dir("recording") / filename

        size = 0
        try:
            async with aiofiles.open(destination, "wb") as f:
                while chunk := await read(UPLOAD_CHUNK_SIZE):
                    size += len(chunk)
                    if size > self.max_upload_bytes:
                        raise ValidationError("File is too large")
                    await f.write(chunk)
            if size == 0:
                raise EmptyAudioError("No file uploaded")
        except Exception:
            destination.unlink(missing_ok=True)
            raise

        if not duration:
            seconds = await asyncio.to_thread(ffmpeg_utils.probe_duration, destination)
            duration = format_duration(seconds) if seconds is not None else None

        try:
            recording = await asyncio.to_thread(
                db.insert_recording,
                user["id"],
                filename,
                original_name,
                name or original_name or filename,
                duration,
                size,
            )
        except Exception:
            destination.unlink(missing_ok=True)
            raise

        logger.info(f"Recording uploaded: {filename} ({size} bytes) by user {user['id']}")
        await activity.log_user_activity(
            user,
            "File Upload",
            f'Audio recording "{recording["name"]}" uploaded.',
            {"recordingId": recording["id"]},
            ip_address,
            user_agent,
        )
        return recording

    async def list_for_user(self, user_id: int) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(db.list_user_recordings, user_id)

    async def get(
        self, user_id: int, recording_id: int
    ) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        """The recording and its transcription (if any)."""
        recording = await self._get_owned(user_id, recording_id)
        transcription = await asyncio.to_thread(db.get_transcription_for_recording, recording_id)
        return recording, transcription

    async def delete(self, user_id: int, recording_id: int) -> None:
        """
        Remove the audio file, then the transcription and recording rows.

        A file that is already gone is only logged. The row delete runs after
        the file is removed and is surfaced if it fails.
        """
        recording = await self._get_owned(user_id, recording_id)
        path = self.file_path(recording)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            logger.warning(f"File for recording {recording_id} was already removed: {path.name}")

        try:
            await asyncio.to_thread(db.delete_recording, recording_id)
        except Exception as e:
            logger.error(f"DB delete failed for recording {recording_id}: {e}")
            raise SmartScribeError("Failed to remove recording record") from e
        logger.info(f"Recording {recording_id} deleted by user {user_id}")

    async def transcribe(
        self,
        user: Dict[str, Any],
        recording_id: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Transcribe and label a recording once.

        Returns:
            (transcription, created). ``created`` is False when a transcription
            already existed and no provider work was done.
        """
        recording = await self._get_owned(user["id"], recording_id)

        existing = await asyncio.to_thread(db.get_transcription_for_recording, recording_id)
        if existing is not None:
            return existing, False

        logger.info(f"Starting transcription for {recording['filename']}")
        raw_text = await self.transcriber.transcribe(self.file_path(recording))
        labeled_text = await self.labeler.label_speakers(raw_text)

        transcription, created = await asyncio.to_thread(
            db.create_transcription, user["id"], recording_id, labeled_text
        )
        if not created:
            logger.info(f"Recording {recording_id} was transcribed concurrently, keeping first result")
            return transcription, False

        logger.info(f"Transcription {transcription['id']} stored for recording {recording_id}")
        await activity.log_user_activity(
            user,
            "Transcription Created",
            f'Transcription created for recording "{recording["name"]}".',
            {"recordingId": recording_id, "transcriptionId": transcription["id"]},
            ip_address,
            user_agent,
        )
        await activity.notify_analytics_changed("transcription_created")
        return transcription, True

    async def delete_files_for_user(self, user_id: int) -> int:
        """Remove every audio file a user owns. Rows are left to the caller."""
        filenames = await asyncio.to_thread(db.list_recording_filenames_for_user, user_id)
        recording_dir = db.get_uploads_dir("recording")
        removed = 0
        for filename in filenames:
            try:
                await asyncio.to_thread((recording_dir / filename).unlink)
                removed += 1
            except FileNotFoundError:
                logger.warning(f"Recording file already removed: {filename}")
        return removed


_manager: Optional[RecordingManager] = None


def get_recording_manager() -> RecordingManager:
    global _manager
    if _manager is None:
        from smartscribe.config import get_config

        max_mb = int(get_config().get("storage", "max_recording_mb", default=DEFAULT_MAX_UPLOAD_MB))
        _manager = RecordingManager(max_upload_bytes=max_mb * 1024 * 1024)
    return _manager


def set_recording_manager(manager: Optional[RecordingManager]) -> None:
    global _manager
    _manager = manager
