"""Bounded worker pool that drains the audio queue.

A dispatcher thread claims jobs while a slot is free and hands them to a
ThreadPoolExecutor. Each job runs the whole pipeline from scratch; retries
are scheduled by the queue, not here.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Optional

from loguru import logger

from ..db import session_scope
from ..models.meeting import Meeting, MeetingStatus, Transcript
from ..schemas.meeting import ProgressData, ProgressEvent
from ..services.audio_processor import AudioProcessor, ProcessingResult
from ..services.progress_hub import ProgressHub
from .queue import AudioQueue, ClaimedJob

TERMINAL_STATUSES = tuple(s.value for s in MeetingStatus if s.is_terminal)


class AudioWorker:
    def __init__(
        self,
        queue: AudioQueue,
        processor: AudioProcessor,
        hub: ProgressHub,
        concurrency: int = 2,
        poll_interval: float = 1.0,
        recover_interval: Optional[float] = None,
    ):
        self.queue = queue
        self.processor = processor
        self.hub = hub
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        # lease expiry is checked at half the stall timeout
        self.recover_interval = recover_interval if recover_interval is not None else queue.stall_timeout_sec / 2
        self._last_recovery = 0.0

        self.executor: Optional[ThreadPoolExecutor] = None
        self.running_jobs: Dict[str, Future] = {}
        self.is_running = False
        self._slots = threading.BoundedSemaphore(concurrency)
        self._stop = threading.Event()
        self._dispatcher: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        if self.is_running:
            logger.bind(tag="worker").warning("worker is already running")
            return
        self.recover()
        self.executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="audio-worker")
        self._stop.clear()
        self.is_running = True
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name="audio-dispatcher", daemon=True)
        self._dispatcher.start()
        logger.bind(tag="worker").info(f"audio worker started with concurrency {self.concurrency}")

    def stop(self, wait: bool = True) -> None:
        if not self.is_running:
            return
        logger.bind(tag="worker").info("stopping audio worker...")
        self.is_running = False
        self._stop.set()
        if self._dispatcher:
            self._dispatcher.join(timeout=5.0)
        if self.executor:
            self.executor.shutdown(wait=wait)
        logger.bind(tag="worker").info("audio worker stopped")

    def status(self) -> Dict[str, Any]:
        with self._lock:
            running = list(self.running_jobs.keys())
        return {
            "is_running": self.is_running,
            "concurrency": self.concurrency,
            "running_jobs": running,
        }

    def recover(self) -> None:
        """Requeue jobs whose lease ran out; settle the ones out of attempts."""
        self._last_recovery = time.monotonic()
        result = self.queue.recover_stalled()
        for job in result.failed:
            self._set_status(job.meeting_id, MeetingStatus.FAILED)
            self._emit(job, MeetingStatus.FAILED, 0, "Processing failed", error="job stalled")

    def _dispatch_loop(self) -> None:
        while not self._stop.is_set():
            if time.monotonic() - self._last_recovery >= self.recover_interval:
                try:
                    self.recover()
                except Exception as exc:
                    logger.bind(tag="worker").error(f"stalled job recovery failed: {exc!r}")
            if not self._slots.acquire(timeout=self.poll_interval):
                continue
            try:
                job = self.queue.claim()
            except Exception as exc:
                self._slots.release()
                logger.bind(tag="worker").error(f"failed to claim job: {exc!r}")
                self._stop.wait(self.poll_interval)
                continue
            if job is None:
                self._slots.release()
                self._stop.wait(self.poll_interval)
                continue

            logger.bind(tag="worker").info(f"starting job {job.id} (attempt {job.attempts_made}/{job.max_attempts})")
            future = self.executor.submit(self.run_job, job)
            with self._lock:
                self.running_jobs[job.id] = future
            future.add_done_callback(lambda f, jid=job.id: self._job_done(jid, f))

    def _job_done(self, job_id: str, future: Future) -> None:
        with self._lock:
            self.running_jobs.pop(job_id, None)
        self._slots.release()
        if future.cancelled():
            logger.bind(tag="worker").info(f"job {job_id} was cancelled")
        elif future.exception() is not None:
            logger.bind(tag="worker").error(f"job {job_id} crashed outside the pipeline: {future.exception()!r}")

    def run_job(self, job: ClaimedJob) -> Optional[ProcessingResult]:
        log = logger.bind(tag="worker", job=job.id)
        log.info(f"processing audio for meeting {job.meeting_id}")

        with session_scope() as db:
            meeting = db.get(Meeting, job.meeting_id)
            if meeting is None or MeetingStatus(meeting.status).is_terminal:
                reason = "meeting deleted" if meeting is None else f"meeting already {meeting.status}"
                log.warning(f"skipping job: {reason}")
                skip = True
            else:
                meeting.status = MeetingStatus.PROCESSING.value
                meeting.job_id = job.id
                skip = False
        if skip:
            self.queue.complete(job.id, {"skipped": reason})
            return None

        last_status = [MeetingStatus.PROCESSING]

        def on_progress(status: MeetingStatus, progress: int, message: Optional[str] = None) -> None:
            self._emit(job, status, progress, message)
            self.queue.update_progress(job.id, progress)
            if status != last_status[0]:
                self._set_status(job.meeting_id, status)
                last_status[0] = status

        try:
            result = self.processor.process(job.audio_url, job.file_name, on_progress)
            self._persist(job, result)
        except Exception as exc:
            self._handle_failure(job, exc)
            return None

        self._emit(
            job,
            MeetingStatus.COMPLETED,
            100,
            "Processing complete",
            data=ProgressData(
                transcript=result.transcript,
                summary=result.summary,
                action_items=result.action_items,
            ),
        )
        self.queue.complete(job.id, result.metadata())
        log.info(f"successfully processed audio for meeting {job.meeting_id}")
        return result

    def _persist(self, job: ClaimedJob, result: ProcessingResult) -> None:
        with session_scope() as db:
            db.add(
                Transcript(
                    meeting_id=job.meeting_id,
                    content=result.transcript,
                    summary=result.summary,
                    action_items=[item.model_dump(mode="json", by_alias=True) for item in result.action_items],
                    processing_metadata=result.metadata(),
                )
            )
            meeting = db.get(Meeting, job.meeting_id)
            if meeting is None:
                raise RuntimeError(f"meeting {job.meeting_id} disappeared during processing")
            meeting.status = MeetingStatus.COMPLETED.value
            meeting.duration = result.audio_length

    def _set_status(self, meeting_id: str, status: MeetingStatus) -> None:
        with session_scope() as db:
            db.query(Meeting).filter(
                Meeting.id == meeting_id,
                Meeting.status.notin_(TERMINAL_STATUSES),
            ).update({Meeting.status: status.value}, synchronize_session=False)

    def _handle_failure(self, job: ClaimedJob, exc: Exception) -> None:
        error = str(exc) or exc.__class__.__name__
        logger.bind(tag="worker", job=job.id).opt(exception=exc).error(
            f"failed to process audio for meeting {job.meeting_id}"
        )
        retry_ms = self.queue.fail(job.id, error)
        if retry_ms is None:
            self._set_status(job.meeting_id, MeetingStatus.FAILED)
            message = "Processing failed"
        else:
            message = f"Attempt {job.attempts_made}/{job.max_attempts} failed; retrying in {retry_ms / 1000:g}s"
        self._emit(job, MeetingStatus.FAILED, 0, message, error=error)

    def _emit(
        self,
        job: ClaimedJob,
        status: MeetingStatus,
        progress: int,
        message: Optional[str] = None,
        data: Optional[ProgressData] = None,
        error: Optional[str] = None,
    ) -> None:
        event = ProgressEvent(
            job_id=job.id,
            meeting_id=job.meeting_id,
            status=status,
            progress=progress,
            message=message,
            data=data,
            error=error,
        )
        self.hub.publish(job.user_id, event, meeting_id=job.meeting_id)
