from __future__ import annotations

import os
import time
from typing import List, Optional

from fastapi import APIRouter, Depends, File, UploadFile, status
from loguru import logger
from sqlalchemy.orm import Session

from ..config import ALLOWED_AUDIO_TYPES, settings
from ..db import get_db
from ..errors import AppError, NotFoundError, UpstreamError, ValidationFailed
from ..jobs.queue import AudioQueue, JobData
from ..models.meeting import Meeting, MeetingStatus, Transcript
from ..schemas.meeting import MeetingCreate, serialize_meeting, serialize_transcript
from ..security import AuthUser, get_current_user
from ..services.storage import StorageClient, get_storage
from .deps import get_queue

router = APIRouter(tags=["meetings"])


def _owned_meeting(db: Session, meeting_id: str, user: AuthUser) -> Meeting:
    meeting: Optional[Meeting] = (
        db.query(Meeting)
        .filter(Meeting.id == meeting_id, Meeting.user_id == user.id)
        .first()
    )
    if meeting is None:
        raise NotFoundError("Meeting not found")
    return meeting


@router.get("")
def list_meetings(db: Session = Depends(get_db), user: AuthUser = Depends(get_current_user)) -> List[dict]:
    meetings = (
        db.query(Meeting)
        .filter(Meeting.user_id == user.id)
        .order_by(Meeting.created_at.desc())
        .all()
    )
    return [serialize_meeting(m) for m in meetings]


@router.get("/{meeting_id}")
def get_meeting(meeting_id: str, db: Session = Depends(get_db), user: AuthUser = Depends(get_current_user)) -> dict:
    meeting = _owned_meeting(db, meeting_id, user)
    transcript = db.query(Transcript).filter(Transcript.meeting_id == meeting.id).first()
    return {"meeting": serialize_meeting(meeting), "transcript": serialize_transcript(transcript)}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_meeting(
    payload: MeetingCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> dict:
    meeting = Meeting(
        user_id=user.id,
        title=payload.title,
        description=payload.description,
        status=MeetingStatus.PENDING.value,
    )
    db.add(meeting)
    db.commit()
    db.refresh(meeting)
    logger.bind(tag="api.meetings").info(f"meeting {meeting.id} created by {user.id}")
    return serialize_meeting(meeting)


def _read_limited(upload: UploadFile, limit: int) -> bytes:
    content = upload.file.read(limit + 1)
    if len(content) > limit:
        raise AppError(f"File too large. Maximum size is {limit // (1024 * 1024)}MB.", status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)
    return content


@router.post("/{meeting_id}/upload")
def upload_audio(
    meeting_id: str,
    audio: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    storage: StorageClient = Depends(get_storage),
    queue: AudioQueue = Depends(get_queue),
) -> dict:
    if audio is None or not audio.filename:
        raise ValidationFailed("No audio file provided")
    if audio.content_type not in ALLOWED_AUDIO_TYPES:
        raise ValidationFailed("Invalid file type. Only audio files are allowed.")
    content = _read_limited(audio, settings.max_upload_bytes)

    meeting = _owned_meeting(db, meeting_id, user)
    if meeting.status != MeetingStatus.PENDING.value:
        raise ValidationFailed("Audio has already been uploaded for this meeting")

    original_name = os.path.basename(audio.filename)
    object_path = f"{meeting_id}/{int(time.time() * 1000)}-{original_name}"
    storage.upload(object_path, content, audio.content_type)
    signed_url = storage.create_signed_url(object_path, settings.signed_url_ttl)

    meeting.audio_url = storage.public_url(object_path)
    meeting.status = MeetingStatus.UPLOADING.value
    db.commit()

    job_id = queue.enqueue(
        JobData(meeting_id=meeting_id, user_id=user.id, audio_url=signed_url, file_name=original_name)
    )

    # the worker may already have picked the job up and moved the meeting on
    db.query(Meeting).filter(
        Meeting.id == meeting_id,
        Meeting.status == MeetingStatus.UPLOADING.value,
    ).update(
        {Meeting.job_id: job_id, Meeting.status: MeetingStatus.PROCESSING.value},
        synchronize_session=False,
    )
    db.commit()
    logger.bind(tag="api.meetings").info(f"audio for meeting {meeting_id} queued as job {job_id}")

    return {"message": "Audio uploaded successfully", "jobId": job_id, "meetingId": meeting_id}


@router.delete("/{meeting_id}")
def delete_meeting(
    meeting_id: str,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    storage: StorageClient = Depends(get_storage),
) -> dict:
    meeting = _owned_meeting(db, meeting_id, user)

    if meeting.audio_url:
        object_path = storage.path_from_public_url(meeting.audio_url)
        if object_path:
            try:
                storage.remove([object_path])
            except UpstreamError as exc:
                logger.bind(tag="api.meetings").warning(f"could not remove audio for {meeting_id}: {exc.message}")

    # transcript goes with it (ON DELETE CASCADE)
    db.delete(meeting)
    db.commit()
    return {"message": "Meeting deleted successfully"}
