"""AI provider strategies for transcription, summaries and action items.

Each provider implements the same three operations. ``ProviderChain`` walks
the configured providers in priority order and turns every call into a
``ProviderResult`` so callers never see a provider's own exceptions.
"""

from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import httpx
from loguru import logger
from openai import OpenAI
from pydantic import ValidationError

from ..config import Settings
from ..errors import ProviderError, TranscriptionError
from ..schemas.meeting import ActionItem
from .fallback import MOCK_TRANSCRIPT, PLACEHOLDER_SUMMARY, fallback_action_items

SUMMARY_SYSTEM = "You are a helpful assistant that summarizes meeting transcripts."
PROMPT_SUMMARY = (
    "Please provide a concise summary of the following meeting transcript.\n"
    "Focus on the main topics discussed, key decisions made, and important points raised.\n"
    "Keep it under 300 words.\n\n"
    "Transcript:\n"
)
ACTION_ITEMS_SYSTEM = (
    "You are a helpful assistant that extracts action items from meeting transcripts. "
    "Always return valid JSON array only, with no additional text."
)
PROMPT_ACTION_ITEMS = (
    "Extract action items from the following meeting transcript.\n"
    "Look for tasks, decisions, next steps, and things people committed to do.\n"
    "Return them as a JSON array with the following structure:\n"
    '[{ "id": "1", "text": "action item description", "assignee": "person name if mentioned", '
    '"priority": "high/medium/low" }]\n\n'
    "If no clear action items are found, return an empty array [].\n"
    "Only return the JSON array, no additional text or explanation.\n\n"
    "Transcript:\n"
)
PROMPT_TRANSCRIBE = (
    "Transcribe this meeting recording verbatim. "
    "Prefix each turn with a speaker label such as 'Speaker 1:'. Return only the transcript."
)
SUMMARY_MAX_TOKENS = 500

_JSON_ARRAY = re.compile(r"\[.*\]", re.S)


@dataclass
class Transcription:
    text: str
    duration: Optional[float] = None


@dataclass
class ProviderResult:
    provider: str
    value: Any = None
    error: Optional[ProviderError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_action_items(raw: str, provider: str) -> List[ActionItem]:
    """Pull a JSON array of action items out of a model reply."""
    match = _JSON_ARRAY.search(raw or "")
    if not match:
        raise ProviderError(provider, "no JSON array in action item response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ProviderError(provider, f"invalid action item JSON: {exc}") from exc
    if not isinstance(data, list):
        raise ProviderError(provider, "action item response is not a list")

    items: List[ActionItem] = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            continue
        entry = dict(entry)
        if entry.get("id") in (None, ""):
            entry["id"] = str(index + 1)
        try:
            items.append(ActionItem.model_validate(entry))
        except ValidationError as exc:
            logger.bind(tag=f"ai.{provider}").debug(f"skip malformed action item {entry!r}: {exc}")
    return items


class AIProvider:
    name = "base"

    def transcribe(self, audio: bytes, file_name: str, mime_type: str) -> Transcription:
        raise NotImplementedError

    def summarize(self, transcript: str) -> str:
        raise NotImplementedError

    def extract_action_items(self, transcript: str) -> List[ActionItem]:
        raise NotImplementedError


class OpenAIProvider(AIProvider):
    name = "openai"

    def __init__(
        self,
        api_key: str,
        chat_model: str = "gpt-3.5-turbo",
        transcribe_model: str = "whisper-1",
        language: str = "en",
        timeout: float = 180.0,
        client: Optional[OpenAI] = None,
    ):
        self.chat_model = chat_model
        self.transcribe_model = transcribe_model
        self.language = language
        self.client = client or OpenAI(api_key=api_key, timeout=timeout)

    def transcribe(self, audio: bytes, file_name: str, mime_type: str) -> Transcription:
        logger.bind(tag="ai.openai").info(f"transcribing {file_name} with {self.transcribe_model}")
        result = self.client.audio.transcriptions.create(
            model=self.transcribe_model,
            file=(file_name, audio, mime_type),
            response_format="verbose_json",
            language=self.language,
        )
        text = (getattr(result, "text", "") or "").strip()
        if not text:
            raise ProviderError(self.name, "empty transcription")
        return Transcription(text=text, duration=getattr(result, "duration", None))

    def _chat(self, system: str, prompt: str, temperature: float) -> str:
        response = self.client.chat.completions.create(
            model=self.chat_model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            max_tokens=SUMMARY_MAX_TOKENS,
            temperature=temperature,
        )
        return (response.choices[0].message.content or "").strip()

    def summarize(self, transcript: str) -> str:
        logger.bind(tag="ai.openai").info("generating summary")
        summary = self._chat(SUMMARY_SYSTEM, PROMPT_SUMMARY + transcript, temperature=0.7)
        if not summary:
            raise ProviderError(self.name, "empty summary")
        return summary

    def extract_action_items(self, transcript: str) -> List[ActionItem]:
        logger.bind(tag="ai.openai").info("extracting action items")
        content = self._chat(ACTION_ITEMS_SYSTEM, PROMPT_ACTION_ITEMS + transcript, temperature=0.3)
        logger.bind(tag="ai.openai").debug(f"action items response: {content[:200]}")
        return parse_action_items(content, self.name)


class GeminiProvider(AIProvider):
    """Gemini through its REST ``generateContent`` endpoint."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-1.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 180.0,
        http: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.url = f"{base_url.rstrip('/')}/models/{model}:generateContent"
        self.http = http or httpx.Client(timeout=httpx.Timeout(timeout, connect=10.0))

    def _generate(self, parts: List[dict], max_tokens: Optional[int] = None, temperature: float = 0.7) -> str:
        payload: dict = {"contents": [{"parts": parts}], "generationConfig": {"temperature": temperature}}
        if max_tokens:
            payload["generationConfig"]["maxOutputTokens"] = max_tokens
        resp = self.http.post(self.url, params={"key": self.api_key}, json=payload)
        if resp.status_code >= 400:
            raise ProviderError(self.name, f"HTTP {resp.status_code}: {resp.text[:200]}")
        data = resp.json()
        try:
            content_parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(self.name, "response has no candidates") from exc
        text = "".join(part.get("text", "") for part in content_parts).strip()
        if not text:
            raise ProviderError(self.name, "empty response")
        return text

    def transcribe(self, audio: bytes, file_name: str, mime_type: str) -> Transcription:
        logger.bind(tag="ai.gemini").info(f"transcribing {file_name} with {self.model}")
        parts = [
            {"text": PROMPT_TRANSCRIBE},
            {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(audio).decode("ascii")}},
        ]
        return Transcription(text=self._generate(parts, temperature=0.0))

    def summarize(self, transcript: str) -> str:
        logger.bind(tag="ai.gemini").info("generating summary")
        return self._generate([{"text": PROMPT_SUMMARY + transcript}], max_tokens=SUMMARY_MAX_TOKENS)

    def extract_action_items(self, transcript: str) -> List[ActionItem]:
        logger.bind(tag="ai.gemini").info("extracting action items")
        text = self._generate([{"text": PROMPT_ACTION_ITEMS + transcript}], temperature=0.3)
        logger.bind(tag="ai.gemini").debug(f"action items response: {text[:200]}")
        return parse_action_items(text, self.name)


class FallbackProvider(AIProvider):
    name = "fallback"

    def transcribe(self, audio: bytes, file_name: str, mime_type: str) -> Transcription:
        logger.bind(tag="ai.fallback").warning("no speech-to-text provider available, using mock transcription")
        return Transcription(text=MOCK_TRANSCRIPT)

    def summarize(self, transcript: str) -> str:
        logger.bind(tag="ai.fallback").warning("no AI service available, using placeholder summary")
        return PLACEHOLDER_SUMMARY

    def extract_action_items(self, transcript: str) -> List[ActionItem]:
        logger.bind(tag="ai.fallback").warning("no AI service available, attempting basic extraction")
        return fallback_action_items(transcript)


def _attempt(provider: AIProvider, operation: str, *args: Any) -> ProviderResult:
    try:
        return ProviderResult(provider=provider.name, value=getattr(provider, operation)(*args))
    except ProviderError as exc:
        return ProviderResult(provider=provider.name, error=exc)
    except Exception as exc:  # SDK and transport errors vary per provider
        return ProviderResult(provider=provider.name, error=ProviderError(provider.name, repr(exc)))


@dataclass
class ProviderChain:
    """Ordered provider attempts ending in the deterministic fallback."""

    providers: Sequence[AIProvider] = field(default_factory=list)
    fallback: AIProvider = field(default_factory=FallbackProvider)
    mock_transcription: bool = True

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.providers]

    def _run(self, operation: str, *args: Any) -> ProviderResult:
        for provider in self.providers:
            result = _attempt(provider, operation, *args)
            if result.ok:
                return result
            logger.bind(tag=f"ai.{provider.name}").error(f"{operation} failed: {result.error}")
        return _attempt(self.fallback, operation, *args)

    def transcribe(self, audio: bytes, file_name: str, mime_type: str) -> ProviderResult:
        if not self.providers:
            if not self.mock_transcription:
                raise TranscriptionError("No speech-to-text provider configured")
            return _attempt(self.fallback, "transcribe", audio, file_name, mime_type)

        errors: List[str] = []
        for provider in self.providers:
            result = _attempt(provider, "transcribe", audio, file_name, mime_type)
            if result.ok:
                return result
            logger.bind(tag=f"ai.{provider.name}").error(f"transcription failed: {result.error}")
            errors.append(str(result.error))
        raise TranscriptionError("Transcription failed: " + "; ".join(errors))

    def summarize(self, transcript: str) -> ProviderResult:
        return self._run("summarize", transcript)

    def extract_action_items(self, transcript: str) -> ProviderResult:
        return self._run("extract_action_items", transcript)


def build_provider_chain(settings: Settings) -> ProviderChain:
    providers: List[AIProvider] = []
    if settings.openai_api_key:
        providers.append(
            OpenAIProvider(
                settings.openai_api_key,
                chat_model=settings.openai_chat_model,
                transcribe_model=settings.openai_transcribe_model,
                language=settings.transcription_language,
                timeout=settings.ai_timeout_sec,
            )
        )
    if settings.google_ai_api_key:
        providers.append(
            GeminiProvider(
                settings.google_ai_api_key,
                model=settings.gemini_model,
                base_url=settings.gemini_base_url,
                timeout=settings.ai_timeout_sec,
            )
        )
    chain = ProviderChain(providers=providers, mock_transcription=settings.mock_transcription)
    logger.bind(tag="startup.ai").info(f"AI providers: {chain.names or ['fallback only']}")
    return chain
