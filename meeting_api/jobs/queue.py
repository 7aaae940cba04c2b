"""Durable audio job queue stored in the application database.

Delivery is at-least-once: a job is claimed by flipping its row from
``waiting`` to ``active`` with a conditional update, so two workers can never
hold the same job at once. Failed attempts go back to ``waiting`` with an
exponential backoff until ``max_attempts`` is reached; after that the row
stays ``failed`` for inspection.

An ``active`` row holds a lease (``heartbeat_at``) that claims and progress
updates renew. Only rows whose lease has run out count as stalled, so a
second process starting up never takes jobs another process is still
running.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import func

from ..db import session_scope, utcnow
from ..models.job import AudioJob, JobState


@dataclass
class JobData:
    meeting_id: str
    user_id: str
    audio_url: str
    file_name: str


@dataclass
class ClaimedJob:
    id: str
    meeting_id: str
    user_id: str
    audio_url: str
    file_name: str
    attempts_made: int
    max_attempts: int

    @property
    def is_last_attempt(self) -> bool:
        return self.attempts_made >= self.max_attempts

    @classmethod
    def from_row(cls, row: AudioJob) -> "ClaimedJob":
        return cls(
            id=row.id,
            meeting_id=row.meeting_id,
            user_id=row.user_id,
            audio_url=row.audio_url,
            file_name=row.file_name,
            attempts_made=row.attempts_made,
            max_attempts=row.max_attempts,
        )


@dataclass
class RecoveryResult:
    requeued: List[str] = field(default_factory=list)
    failed: List[ClaimedJob] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.requeued) + len(self.failed)


def backoff_delay_ms(attempts_made: int, base_ms: int) -> int:
    """Delay before the next attempt: base, 2*base, 4*base, ..."""
    return base_ms * (2 ** max(0, attempts_made - 1))


class AudioQueue:
    def __init__(
        self,
        name: str = "audio-processing",
        attempts: int = 3,
        backoff_ms: int = 2000,
        stall_timeout_sec: float = 900.0,
        scan_limit: int = 10,
    ):
        self.name = name
        self.attempts = attempts
        self.backoff_ms = backoff_ms
        self.stall_timeout_sec = stall_timeout_sec
        self.scan_limit = scan_limit

    def enqueue(self, data: JobData, job_name: str = "process-audio") -> str:
        with session_scope() as db:
            job = AudioJob(
                name=job_name,
                meeting_id=data.meeting_id,
                user_id=data.user_id,
                audio_url=data.audio_url,
                file_name=data.file_name,
                state=JobState.WAITING.value,
                max_attempts=self.attempts,
                backoff_ms=self.backoff_ms,
                available_at=utcnow(),
            )
            db.add(job)
            db.flush()
            job_id = job.id
        logger.bind(tag="queue").info(f"job {job_id} enqueued for meeting {data.meeting_id}")
        return job_id

    def claim(self) -> Optional[ClaimedJob]:
        now = utcnow()
        with session_scope() as db:
            candidates = (
                db.query(AudioJob.id)
                .filter(AudioJob.state == JobState.WAITING.value, AudioJob.available_at <= now)
                .order_by(AudioJob.available_at.asc(), AudioJob.created_at.asc())
                .limit(self.scan_limit)
                .all()
            )
            for (job_id,) in candidates:
                updated = (
                    db.query(AudioJob)
                    .filter(AudioJob.id == job_id, AudioJob.state == JobState.WAITING.value)
                    .update(
                        {
                            AudioJob.state: JobState.ACTIVE.value,
                            AudioJob.attempts_made: AudioJob.attempts_made + 1,
                            AudioJob.started_at: now,
                            AudioJob.heartbeat_at: now,
                        },
                        synchronize_session=False,
                    )
                )
                if updated != 1:
                    # another worker took it between the scan and the update
                    continue
                row = db.get(AudioJob, job_id)
                return ClaimedJob.from_row(row)
        return None

    def update_progress(self, job_id: str, progress: int) -> None:
        with session_scope() as db:
            db.query(AudioJob).filter(AudioJob.id == job_id).update(
                {AudioJob.progress: progress, AudioJob.heartbeat_at: utcnow()}, synchronize_session=False
            )

    def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        with session_scope() as db:
            job = db.get(AudioJob, job_id)
            if job is None:
                return
            job.state = JobState.COMPLETED.value
            job.progress = 100
            job.result = result
            job.failed_reason = None
            job.finished_at = utcnow()
        logger.bind(tag="queue").info(f"job {job_id} completed")

    def fail(self, job_id: str, error: str) -> Optional[int]:
        """Record a failed attempt.

        Returns the retry delay in milliseconds, or ``None`` when the job has
        used all of its attempts and is now permanently failed.
        """
        with session_scope() as db:
            job = db.get(AudioJob, job_id)
            if job is None:
                return None
            job.failed_reason = error
            if job.attempts_made < job.max_attempts:
                delay = backoff_delay_ms(job.attempts_made, job.backoff_ms)
                job.state = JobState.WAITING.value
                job.available_at = utcnow() + timedelta(milliseconds=delay)
                logger.bind(tag="queue").warning(
                    f"job {job_id} attempt {job.attempts_made}/{job.max_attempts} failed; retry in {delay}ms"
                )
                return delay
            job.state = JobState.FAILED.value
            job.finished_at = utcnow()
        logger.bind(tag="queue").error(f"job {job_id} failed permanently: {error}")
        return None

    def recover_stalled(self) -> RecoveryResult:
        """Handle ``active`` rows whose lease ran out.

        A stalled job with attempts left goes back to ``waiting``; one that
        stalled on its last attempt is failed permanently and returned in
        ``RecoveryResult.failed`` so the caller can settle its meeting.
        """
        now = utcnow()
        cutoff = now - timedelta(seconds=self.stall_timeout_sec)
        lease = func.coalesce(AudioJob.heartbeat_at, AudioJob.started_at, AudioJob.created_at)
        result = RecoveryResult()
        with session_scope() as db:
            stalled = (
                db.query(AudioJob)
                .filter(AudioJob.state == JobState.ACTIVE.value, lease < cutoff)
                .all()
            )
            for row in stalled:
                job = ClaimedJob.from_row(row)
                if job.is_last_attempt:
                    changes = {
                        AudioJob.state: JobState.FAILED.value,
                        AudioJob.failed_reason: "job stalled",
                        AudioJob.finished_at: now,
                    }
                else:
                    changes = {AudioJob.state: JobState.WAITING.value, AudioJob.available_at: now}
                # the owner may have renewed the lease since the scan
                updated = (
                    db.query(AudioJob)
                    .filter(AudioJob.id == row.id, AudioJob.state == JobState.ACTIVE.value, lease < cutoff)
                    .update(changes, synchronize_session=False)
                )
                if updated != 1:
                    continue
                if job.is_last_attempt:
                    result.failed.append(job)
                else:
                    result.requeued.append(job.id)
        log = logger.bind(tag="queue")
        if result.requeued:
            log.warning(f"requeued {len(result.requeued)} stalled job(s)")
        for job in result.failed:
            log.error(f"job {job.id} stalled on attempt {job.attempts_made}/{job.max_attempts}; failed permanently")
        return result

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        with session_scope() as db:
            job = db.get(AudioJob, job_id)
            if job is None:
                return None
            return {
                "id": job.id,
                "name": job.name,
                "data": job.to_payload(),
                "state": job.state,
                "attemptsMade": job.attempts_made,
                "maxAttempts": job.max_attempts,
                "progress": job.progress,
                "failedReason": job.failed_reason,
                "availableAt": job.available_at.isoformat() if job.available_at else None,
                "finishedAt": job.finished_at.isoformat() if job.finished_at else None,
            }

    def counts(self) -> Dict[str, int]:
        with session_scope() as db:
            rows = db.query(AudioJob.state, func.count(AudioJob.id)).group_by(AudioJob.state).all()
        counts = {state.value: 0 for state in JobState}
        counts.update({state: int(n) for state, n in rows})
        return counts
