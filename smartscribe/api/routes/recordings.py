"""
Recording upload, listing and transcription endpoints.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from smartscribe.api.routes.utils import (
    AuthContext,
    get_client_ip,
    get_current_user,
    get_user_agent,
    sanitize_for_log,
)
from smartscribe.core.errors import ValidationError
from smartscribe.core.recording_manager import (
    get_recording_manager,
    serialize_recording,
    serialize_transcription,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/upload", status_code=201)
async def upload_recording(
    request: Request,
    audio: Optional[UploadFile] = File(None),
    name: Optional[str] = Form(None),
    duration: Optional[str] = Form(None),
    auth: AuthContext = Depends(get_current_user),
) -> Dict[str, Any]:
    """Upload an audio recording (multipart field ``audio``)."""
    if audio is None:
        raise ValidationError("No file uploaded")

    logger.info(f"Upload from user {auth.user_id}: {sanitize_for_log(audio.filename)}")
    recording = await get_recording_manager().upload_stream(
        auth.user,
        audio.read,
        audio.filename,
        name=name,
        duration=duration,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return {"success": True, "recording": serialize_recording(recording)}


@router.get("/user")
async def list_recordings(auth: AuthContext = Depends(get_current_user)) -> Dict[str, Any]:
    recordings = await get_recording_manager().list_for_user(auth.user_id)
    return {"success": True, "recordings": [serialize_recording(r) for r in recordings]}


@router.get("/{recording_id}")
async def get_recording(
    recording_id: int, auth: AuthContext = Depends(get_current_user)
) -> Dict[str, Any]:
    recording, transcription = await get_recording_manager().get(auth.user_id, recording_id)
    return {
        "success": True,
        "recording": serialize_recording({**recording, "has_transcription": transcription is not None}),
        "transcription": serialize_transcription(transcription),
    }


@router.delete("/{recording_id}")
async def delete_recording(
    recording_id: int, auth: AuthContext = Depends(get_current_user)
) -> Dict[str, Any]:
    await get_recording_manager().delete(auth.user_id, recording_id)
    return {"success": True}


@router.post("/{recording_id}/transcribe")
async def transcribe_recording(
    request: Request, recording_id: int, auth: AuthContext = Depends(get_current_user)
) -> Dict[str, Any]:
    """
    Transcribe a recording and label its speakers.

    Calling it again for the same recording returns the stored transcription.
    """
    transcription, created = await get_recording_manager().transcribe(
        auth.user,
        recording_id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    response: Dict[str, Any] = {
        "success": True,
        "transcription": serialize_transcription(transcription),
        "created": created,
    }
    if not created:
        response["message"] = "Transcription already exists"
    return response
