from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from ..db import Base, utcnow


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class AudioJob(Base):
    """Queue row for one audio-processing job.

    Rows are kept after completion or permanent failure so they can be
    inspected; nothing references them by foreign key.
    """

    __tablename__ = "audio_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(64), nullable=False, default="process-audio")
    meeting_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    audio_url = Column(Text, nullable=False)
    file_name = Column(String(255), nullable=False)

    state = Column(String(16), nullable=False, default=JobState.WAITING.value, index=True)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_ms = Column(Integer, nullable=False, default=2000)
    available_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    progress = Column(Integer, nullable=False, default=0)
    failed_reason = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    # lease: renewed on claim and on every progress update
    heartbeat_at = Column(DateTime, nullable=True, index=True)
    finished_at = Column(DateTime, nullable=True)

    def to_payload(self) -> dict:
        return {
            "meetingId": self.meeting_id,
            "userId": self.user_id,
            "audioUrl": self.audio_url,
            "fileName": self.file_name,
        }
