from __future__ import annotations

import mimetypes
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import httpx
from loguru import logger

from ..errors import TranscriptionError
from ..models.meeting import MeetingStatus
from ..nlp.providers import ProviderChain, Transcription
from ..schemas.meeting import ActionItem

ProgressCallback = Callable[[MeetingStatus, int, Optional[str]], None]


@dataclass
class ProcessingResult:
    transcript: str
    summary: str
    action_items: List[ActionItem]
    processing_time: int  # ms
    audio_length: int  # seconds
    providers: Dict[str, str] = field(default_factory=dict)

    def metadata(self) -> dict:
        return {
            "processingTime": self.processing_time,
            "audioLength": self.audio_length,
            "providers": self.providers,
        }


def guess_audio_type(file_name: str) -> str:
    mime, _ = mimetypes.guess_type(file_name)
    if mime and mime.startswith("audio/"):
        return mime
    return "audio/mpeg"


class AudioProcessor:
    """Runs transcribe -> summarize -> extract action items for one audio file."""

    def __init__(self, chain: ProviderChain, http: Optional[httpx.Client] = None, timeout: float = 120.0):
        self.chain = chain
        self.http = http or httpx.Client(timeout=httpx.Timeout(timeout, connect=10.0), follow_redirects=True)

    def fetch_audio(self, audio_url: str) -> bytes:
        try:
            resp = self.http.get(audio_url)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise TranscriptionError(f"Failed to download audio: {exc}") from exc
        return resp.content

    def transcribe(self, audio_url: str, file_name: str) -> tuple[Transcription, str]:
        audio = self.fetch_audio(audio_url)
        logger.bind(tag="pipeline").info(f"fetched {len(audio)} bytes for {file_name}")
        result = self.chain.transcribe(audio, file_name, guess_audio_type(file_name))
        return result.value, result.provider

    def process(self, audio_url: str, file_name: str, on_progress: ProgressCallback) -> ProcessingResult:
        started = time.monotonic()
        log = logger.bind(tag="pipeline")

        on_progress(MeetingStatus.TRANSCRIBING, 20, "Transcribing audio")
        log.info(f"starting transcription for {file_name}")
        transcription, stt_provider = self.transcribe(audio_url, file_name)
        log.info(f"transcription completed: {transcription.text[:100]}...")
        on_progress(MeetingStatus.TRANSCRIBING, 50, "Transcription complete")

        on_progress(MeetingStatus.SUMMARIZING, 60, "Generating summary")
        summary = self.chain.summarize(transcription.text)
        log.info(f"summary generated by {summary.provider}")
        on_progress(MeetingStatus.SUMMARIZING, 80, "Summary complete")

        on_progress(MeetingStatus.SUMMARIZING, 90, "Extracting action items")
        action_items = self.chain.extract_action_items(transcription.text)
        log.info(f"found {len(action_items.value)} action items via {action_items.provider}")

        return ProcessingResult(
            transcript=transcription.text,
            summary=summary.value,
            action_items=action_items.value,
            processing_time=int((time.monotonic() - started) * 1000),
            audio_length=int(round(transcription.duration or 0)),
            providers={
                "transcription": stt_provider,
                "summary": summary.provider,
                "actionItems": action_items.provider,
            },
        )
