import time
from datetime import timedelta

import httpx

from meeting_api.db import session_scope, utcnow
from meeting_api.jobs.queue import AudioQueue, JobData
from meeting_api.jobs.worker import AudioWorker
from meeting_api.models.job import AudioJob
from meeting_api.models.meeting import Meeting, MeetingStatus, Transcript
from meeting_api.nlp.providers import AIProvider, ProviderChain, Transcription
from meeting_api.schemas.meeting import ActionItem
from meeting_api.services.audio_processor import AudioProcessor
from meeting_api.services.progress_hub import ProgressHub


class Recorder:
    def __init__(self, user_id):
        self.user_id = user_id
        self.messages = []

    def send(self, message):
        self.messages.append(message)


class ScriptedProvider(AIProvider):
    name = "openai"

    def __init__(self, fail_transcribe=False):
        self.fail_transcribe = fail_transcribe

    def transcribe(self, audio, file_name, mime_type):
        if self.fail_transcribe:
            raise RuntimeError("speech service unavailable")
        return Transcription(text="Speaker 1: Dana will draft the plan.", duration=30)

    def summarize(self, transcript):
        return "Plan discussed."

    def extract_action_items(self, transcript):
        return [ActionItem(id="1", text="Draft the plan", assignee="Dana", priority="high")]


def _processor(fail=False):
    http = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"audio")))
    return AudioProcessor(ProviderChain(providers=[ScriptedProvider(fail_transcribe=fail)], mock_transcription=False), http=http)


def _setup(attempts=3, fail=False, status=MeetingStatus.PROCESSING):
    with session_scope() as db:
        meeting = Meeting(user_id="user-1", title="Weekly sync", status=status.value)
        db.add(meeting)
        db.flush()
        meeting_id = meeting.id
    queue = AudioQueue(attempts=attempts, backoff_ms=10)
    hub = ProgressHub()
    conn = Recorder("user-1")
    hub.register(conn, "user-1")
    worker = AudioWorker(queue, _processor(fail), hub, concurrency=1, poll_interval=0.05)
    job_id = queue.enqueue(
        JobData(meeting_id=meeting_id, user_id="user-1", audio_url="https://files.test/a.mp3", file_name="a.mp3")
    )
    return worker, queue, conn, meeting_id, job_id


def _meeting(meeting_id):
    with session_scope() as db:
        meeting = db.get(Meeting, meeting_id)
        transcript = db.query(Transcript).filter(Transcript.meeting_id == meeting_id).first()
        return (
            meeting.status if meeting else None,
            meeting.duration if meeting else None,
            (transcript.content, transcript.action_items, transcript.processing_metadata) if transcript else None,
        )


def test_successful_job_persists_transcript_and_completes():
    worker, queue, conn, meeting_id, job_id = _setup()

    result = worker.run_job(queue.claim())

    assert result is not None
    status, duration, transcript = _meeting(meeting_id)
    assert status == "completed"
    assert duration == 30
    content, items, metadata = transcript
    assert content == "Speaker 1: Dana will draft the plan."
    assert items == [{"id": "1", "text": "Draft the plan", "assignee": "Dana", "dueDate": None, "priority": "high"}]
    assert set(metadata) == {"processingTime", "audioLength", "providers"}
    assert queue.get(job_id)["state"] == "completed"

    events = [m["data"] for m in conn.messages]
    assert all(m["event"] == "job-update" for m in conn.messages)
    assert [e["progress"] for e in events] == [20, 50, 60, 80, 90, 100]
    assert [e["status"] for e in events] == [
        "transcribing",
        "transcribing",
        "summarizing",
        "summarizing",
        "summarizing",
        "completed",
    ]
    assert all(e["jobId"] == job_id and e["meetingId"] == meeting_id for e in events)
    final = events[-1]
    assert final["data"]["summary"] == "Plan discussed."
    assert final["data"]["actionItems"][0]["assignee"] == "Dana"


def test_failed_attempt_retries_before_marking_meeting_failed():
    worker, queue, conn, meeting_id, job_id = _setup(attempts=2, fail=True)

    assert worker.run_job(queue.claim()) is None
    status, _, transcript = _meeting(meeting_id)
    assert status == "transcribing"
    assert transcript is None
    assert queue.get(job_id)["state"] == "waiting"
    retry_event = conn.messages[-1]["data"]
    assert retry_event["status"] == "failed"
    assert retry_event["progress"] == 0
    assert "retrying" in retry_event["message"]
    assert "speech service unavailable" in retry_event["error"]

    time.sleep(0.05)
    assert worker.run_job(queue.claim()) is None

    status, _, transcript = _meeting(meeting_id)
    assert status == "failed"
    assert transcript is None
    assert queue.get(job_id)["state"] == "failed"
    assert conn.messages[-1]["data"]["message"] == "Processing failed"


def test_job_for_deleted_meeting_is_skipped():
    worker, queue, conn, meeting_id, job_id = _setup()
    with session_scope() as db:
        db.delete(db.get(Meeting, meeting_id))

    assert worker.run_job(queue.claim()) is None
    assert queue.get(job_id)["state"] == "completed"
    assert conn.messages == []


def test_job_for_finished_meeting_does_not_reprocess():
    worker, queue, conn, meeting_id, job_id = _setup(status=MeetingStatus.COMPLETED)

    assert worker.run_job(queue.claim()) is None
    status, _, transcript = _meeting(meeting_id)
    assert status == "completed"
    assert transcript is None
    assert conn.messages == []


def test_pool_drains_queue_in_background():
    worker, queue, conn, meeting_id, job_id = _setup()
    worker.start()
    try:
        deadline = time.time() + 5
        while time.time() < deadline and queue.get(job_id)["state"] != "completed":
            time.sleep(0.05)
        assert worker.status()["is_running"] is True
    finally:
        worker.stop()

    assert queue.get(job_id)["state"] == "completed"
    assert _meeting(meeting_id)[0] == "completed"
    assert worker.status() == {"is_running": False, "concurrency": 1, "running_jobs": []}


def test_recover_fails_meeting_of_job_stalled_on_last_attempt():
    worker, queue, conn, meeting_id, job_id = _setup(attempts=1)
    queue.stall_timeout_sec = 60
    queue.claim()
    with session_scope() as db:
        db.get(AudioJob, job_id).heartbeat_at = utcnow() - timedelta(hours=1)

    worker.recover()

    assert queue.get(job_id)["state"] == "failed"
    assert _meeting(meeting_id)[0] == "failed"
    event = conn.messages[-1]["data"]
    assert event["status"] == "failed"
    assert event["error"] == "job stalled"


def test_startup_does_not_take_jobs_held_by_another_process():
    worker, queue, conn, meeting_id, job_id = _setup()
    other = queue.claim()
    assert other.id == job_id

    worker.recover()

    assert queue.get(job_id)["state"] == "active"
    assert queue.claim() is None
    assert _meeting(meeting_id)[0] == "processing"
