from __future__ import annotations

from datetime import date
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..models.meeting import Meeting, MeetingStatus, Transcript

Priority = Literal["low", "medium", "high"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MeetingCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class ActionItem(CamelModel):
    id: str
    text: str = Field(..., min_length=1)
    assignee: Optional[str] = None
    due_date: Optional[date] = None
    priority: Optional[Priority] = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(int(value))
        return value

    @field_validator("assignee", mode="before")
    @classmethod
    def _blank_assignee(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("due_date", mode="before")
    @classmethod
    def _lenient_due_date(cls, value: Any) -> Any:
        # models answer with "Friday" or "next week" as often as with ISO dates
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                return date.fromisoformat(value.strip()[:10])
            except ValueError:
                return None
        return None

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return None
        value = value.strip().lower()
        return value if value in ("low", "medium", "high") else None


class ProgressData(CamelModel):
    transcript: Optional[str] = None
    summary: Optional[str] = None
    action_items: Optional[List[ActionItem]] = None


class ProgressEvent(CamelModel):
    job_id: str
    meeting_id: str
    status: MeetingStatus
    progress: int = Field(..., ge=0, le=100)
    message: Optional[str] = None
    data: Optional[ProgressData] = None
    error: Optional[str] = None

    def to_message(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_meeting(meeting: Meeting) -> dict:
    return {
        "id": meeting.id,
        "userId": meeting.user_id,
        "title": meeting.title,
        "description": meeting.description,
        "audioUrl": meeting.audio_url,
        "status": meeting.status,
        "jobId": meeting.job_id,
        "duration": meeting.duration,
        "createdAt": _iso(meeting.created_at),
        "updatedAt": _iso(meeting.updated_at),
    }


def serialize_transcript(transcript: Optional[Transcript]) -> Optional[dict]:
    if transcript is None:
        return None
    return {
        "id": transcript.id,
        "meetingId": transcript.meeting_id,
        "content": transcript.content,
        "summary": transcript.summary,
        "actionItems": transcript.action_items or [],
        "metadata": transcript.processing_metadata,
        "createdAt": _iso(transcript.created_at),
    }
