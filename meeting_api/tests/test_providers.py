import json
from types import SimpleNamespace

import httpx
import pytest

from meeting_api.config import Settings
from meeting_api.errors import ProviderError, TranscriptionError
from meeting_api.nlp.fallback import MOCK_TRANSCRIPT, PLACEHOLDER_SUMMARY
from meeting_api.nlp.providers import (
    AIProvider,
    GeminiProvider,
    OpenAIProvider,
    ProviderChain,
    Transcription,
    build_provider_chain,
    parse_action_items,
)
from meeting_api.schemas.meeting import ActionItem


class StubProvider(AIProvider):
    def __init__(self, name, transcript=None, summary=None, items=None, error=None):
        self.name = name
        self._transcript = transcript
        self._summary = summary
        self._items = items
        self._error = error
        self.calls = []

    def _maybe_fail(self, op):
        self.calls.append(op)
        if self._error is not None:
            raise self._error

    def transcribe(self, audio, file_name, mime_type):
        self._maybe_fail("transcribe")
        return Transcription(text=self._transcript, duration=12.4)

    def summarize(self, transcript):
        self._maybe_fail("summarize")
        return self._summary

    def extract_action_items(self, transcript):
        self._maybe_fail("extract_action_items")
        return self._items


def test_parse_action_items_from_wrapped_reply():
    raw = 'Sure! [{"id": 7, "text": "Ship it", "assignee": "", "priority": "HIGH"}, {"text": "Write docs"}] done'
    items = parse_action_items(raw, "openai")
    assert items[0] == ActionItem(id="7", text="Ship it", assignee=None, priority="high")
    assert items[1].id == "2"
    assert items[1].priority is None


def test_parse_action_items_skips_malformed_entries():
    raw = json.dumps([{"id": "1", "text": ""}, "nope", {"id": "3", "text": "Valid"}])
    items = parse_action_items(raw, "gemini")
    assert [i.id for i in items] == ["3"]


def test_parse_action_items_empty_array_is_ok():
    assert parse_action_items("[]", "openai") == []


@pytest.mark.parametrize("raw", ["no json here", "[not, json]", ""])
def test_parse_action_items_rejects_garbage(raw):
    with pytest.raises(ProviderError):
        parse_action_items(raw, "openai")


def test_summary_falls_through_to_next_provider():
    first = StubProvider("openai", error=RuntimeError("rate limited"))
    second = StubProvider("gemini", summary="Short summary")
    chain = ProviderChain(providers=[first, second])

    result = chain.summarize("transcript")

    assert result.ok
    assert result.provider == "gemini"
    assert result.value == "Short summary"
    assert first.calls == ["summarize"]


def test_summary_uses_placeholder_when_all_fail():
    chain = ProviderChain(providers=[StubProvider("openai", error=ProviderError("openai", "boom"))])
    result = chain.summarize("transcript")
    assert result.provider == "fallback"
    assert result.value == PLACEHOLDER_SUMMARY


def test_action_items_use_heuristic_fallback():
    chain = ProviderChain(providers=[])
    result = chain.extract_action_items("Carol will book the room.")
    assert result.provider == "fallback"
    assert [i.text for i in result.value] == ["Carol will book the room"]


def test_transcription_first_success_wins():
    first = StubProvider("openai", transcript="hello")
    second = StubProvider("gemini", transcript="other")
    result = ProviderChain(providers=[first, second]).transcribe(b"abc", "a.mp3", "audio/mpeg")
    assert result.provider == "openai"
    assert result.value.text == "hello"
    assert second.calls == []


def test_transcription_fails_hard_when_all_providers_fail():
    chain = ProviderChain(
        providers=[
            StubProvider("openai", error=RuntimeError("down")),
            StubProvider("gemini", error=ProviderError("gemini", "HTTP 500")),
        ]
    )
    with pytest.raises(TranscriptionError) as exc_info:
        chain.transcribe(b"abc", "a.mp3", "audio/mpeg")
    assert "openai" in str(exc_info.value)
    assert "gemini" in str(exc_info.value)


def test_transcription_without_providers_uses_mock_when_enabled():
    result = ProviderChain(providers=[], mock_transcription=True).transcribe(b"", "a.mp3", "audio/mpeg")
    assert result.provider == "fallback"
    assert result.value.text == MOCK_TRANSCRIPT


def test_transcription_without_providers_fails_when_mock_disabled():
    with pytest.raises(TranscriptionError):
        ProviderChain(providers=[], mock_transcription=False).transcribe(b"", "a.mp3", "audio/mpeg")


def _gemini(handler):
    return GeminiProvider("key", http=httpx.Client(transport=httpx.MockTransport(handler)))


def test_gemini_summary_request_and_reply():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": " Summary text "}]}}]})

    assert _gemini(handler).summarize("the transcript") == "Summary text"
    assert "models/gemini-1.5-flash:generateContent" in seen["url"]
    assert "key=key" in seen["url"]
    assert seen["body"]["contents"][0]["parts"][0]["text"].endswith("the transcript")


def test_gemini_http_error_is_provider_error():
    provider = _gemini(lambda request: httpx.Response(500, text="internal"))
    with pytest.raises(ProviderError):
        provider.summarize("t")


def test_gemini_action_items_parsed():
    reply = '```json\n[{"id": "1", "text": "Follow up with legal", "priority": "low"}]\n```'

    def handler(request):
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": reply}]}}]})

    items = _gemini(handler).extract_action_items("t")
    assert items == [ActionItem(id="1", text="Follow up with legal", priority="low")]


def test_parse_action_items_keeps_item_with_loose_due_date():
    raw = json.dumps(
        [
            {"id": "1", "text": "Send the deck", "dueDate": "Friday"},
            {"id": "2", "text": "Book venue", "dueDate": "2024-05-03"},
        ]
    )
    items = parse_action_items(raw, "openai")
    assert [i.text for i in items] == ["Send the deck", "Book venue"]
    assert items[0].due_date is None
    assert items[1].due_date.isoformat() == "2024-05-03"


class FakeOpenAI:
    """Records calls made through the two SDK resources the provider uses."""

    def __init__(self, transcription=None, chat_content=""):
        self.calls = []
        self._transcription = transcription
        self._chat_content = chat_content
        self.audio = SimpleNamespace(transcriptions=SimpleNamespace(create=self._transcribe))
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._complete))

    def _transcribe(self, **kwargs):
        self.calls.append(("transcribe", kwargs))
        return self._transcription

    def _complete(self, **kwargs):
        self.calls.append(("chat", kwargs))
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self._chat_content))])


def test_openai_transcribe_request_and_duration():
    client = FakeOpenAI(transcription=SimpleNamespace(text="  Speaker 1: hi  ", duration=42.5))
    provider = OpenAIProvider("sk-test", language="de", client=client)

    result = provider.transcribe(b"RIFF", "call.wav", "audio/wav")

    assert result == Transcription(text="Speaker 1: hi", duration=42.5)
    ((op, kwargs),) = client.calls
    assert op == "transcribe"
    assert kwargs == {
        "model": "whisper-1",
        "file": ("call.wav", b"RIFF", "audio/wav"),
        "response_format": "verbose_json",
        "language": "de",
    }


def test_openai_empty_transcription_is_provider_error():
    provider = OpenAIProvider("sk-test", client=FakeOpenAI(transcription=SimpleNamespace(text="   ")))
    with pytest.raises(ProviderError):
        provider.transcribe(b"x", "a.mp3", "audio/mpeg")


def test_openai_summary_request():
    client = FakeOpenAI(chat_content=" The team agreed on Redis. ")
    provider = OpenAIProvider("sk-test", chat_model="gpt-4o-mini", client=client)

    assert provider.summarize("the transcript") == "The team agreed on Redis."
    _, kwargs = client.calls[0]
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["max_tokens"] == 500
    assert kwargs["temperature"] == 0.7
    system, user = kwargs["messages"]
    assert system["role"] == "system" and "summarizes meeting transcripts" in system["content"]
    assert user["role"] == "user" and user["content"].endswith("the transcript")


def test_openai_action_items_parsed_from_reply():
    reply = 'Here you go: [{"id": 1, "text": "Update the roadmap", "assignee": "Sam", "priority": "Medium"}]'
    client = FakeOpenAI(chat_content=reply)

    items = OpenAIProvider("sk-test", client=client).extract_action_items("t")

    assert items == [ActionItem(id="1", text="Update the roadmap", assignee="Sam", priority="medium")]
    assert client.calls[0][1]["temperature"] == 0.3


def test_openai_empty_summary_falls_through_chain():
    chain = ProviderChain(providers=[OpenAIProvider("sk-test", client=FakeOpenAI(chat_content=""))])
    result = chain.summarize("t")
    assert result.provider == "fallback"
    assert result.value == PLACEHOLDER_SUMMARY


def test_build_provider_chain_orders_by_configured_keys():
    chain = build_provider_chain(Settings(openai_api_key="sk-test", google_ai_api_key="g-test"))
    assert chain.names == ["openai", "gemini"]
    assert isinstance(chain.providers[0], OpenAIProvider)
    assert isinstance(chain.providers[1], GeminiProvider)

    assert build_provider_chain(Settings(openai_api_key="", google_ai_api_key="g-test")).names == ["gemini"]


def test_build_provider_chain_without_keys_is_fallback_only():
    chain = build_provider_chain(Settings(openai_api_key="", google_ai_api_key="", mock_transcription=False))
    assert chain.names == []
    assert chain.fallback.name == "fallback"
    assert chain.mock_transcription is False
    assert chain.summarize("t").provider == "fallback"
