"""
Tests for the speech-to-text client and speaker labeling fallback.
"""

import httpx
import pytest

from smartscribe.core.errors import (
    EmptyAudioError,
    ProviderTimeoutError,
    TranscriptionFailedError,
)
from smartscribe.core.speaker_labeling import SpeakerLabeler, ensure_label, preserves_words
from smartscribe.core.transcription_client import TranscriptionClient, filename_hints


@pytest.fixture
def audio_file(tmp_path):
    path = tmp_path / "memo.caf"
    path.write_bytes(b"\x01" * 64)
    return path


def _client(handler, **kwargs):
    return TranscriptionClient(
        api_key="key",
        base_url="https://stt.test/v1",
        min_audio_bytes=16,
        transcode=False,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _uploaded_name(request: httpx.Request) -> str:
    body = request.read().decode("latin-1")
    marker = 'name="file"; filename="'
    start = body.index(marker) + len(marker)
    return body[start : body.index('"', start)]


def test_filename_hints_order():
    assert filename_hints("memo.caf") == [
        "memo.caf",
        "memo.m4a",
        "memo.mp4",
        "memo.wav",
        "memo.mp3",
        "memo.aac",
        "memo.webm",
    ]
    # The file's own extension is not repeated
    assert filename_hints("memo.wav")[:4] == ["memo.wav", "memo.m4a", "memo.mp4", "memo.mp3"]
    assert filename_hints("memo")[0] == "memo.m4a"


async def test_retries_with_next_hint(audio_file):
    seen = []

    def handler(request):
        seen.append(_uploaded_name(request))
        if len(seen) < 3:
            return httpx.Response(400, json={"error": "Invalid file format"})
        return httpx.Response(200, json={"text": "third time lucky"})

    text = await _client(handler).transcribe(audio_file)
    assert text == "third time lucky"
    assert seen == ["memo.caf", "memo.m4a", "memo.mp4"]


async def test_sends_model_and_language(audio_file):
    captured = {}

    def handler(request):
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = request.read().decode("latin-1")
        return httpx.Response(200, json={"text": "ok"})

    await _client(handler, language="de").transcribe(audio_file)
    assert captured["auth"] == "Bearer key"
    assert "whisper-1" in captured["body"]
    assert 'name="language"' in captured["body"]


async def test_every_hint_rejected(audio_file):
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(400, text="bad audio")

    with pytest.raises(TranscriptionFailedError) as excinfo:
        await _client(handler).transcribe(audio_file)
    assert len(calls) == len(filename_hints("memo.caf"))
    assert excinfo.value.code == "transcription_failed"
    assert excinfo.value.last_error is not None


async def test_timeout_is_not_retried(audio_file):
    calls = []

    def handler(request):
        calls.append(1)
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ProviderTimeoutError):
        await _client(handler).transcribe(audio_file)
    assert len(calls) == 1


async def test_malformed_response_tries_next_hint(audio_file):
    replies = iter([httpx.Response(200, json={"nope": 1}), httpx.Response(200, json={"text": "fine"})])

    def handler(request):
        return next(replies)

    assert await _client(handler).transcribe(audio_file) == "fine"


async def test_small_or_missing_file(tmp_path):
    tiny = tmp_path / "tiny.m4a"
    tiny.write_bytes(b"\x00" * 4)

    def handler(request):
        raise AssertionError("provider must not be called")

    client = _client(handler)
    with pytest.raises(EmptyAudioError, match="too small"):
        await client.transcribe(tiny)
    with pytest.raises(EmptyAudioError, match="not found"):
        await client.transcribe(tmp_path / "missing.m4a")


class TestSpeakerLabeling:
    def _labeler(self, handler):
        return SpeakerLabeler(
            api_key="key", base_url="https://llm.test/v1", transport=httpx.MockTransport(handler)
        )

    async def test_labels_applied(self):
        def handler(request):
            return httpx.Response(
                200, json={"choices": [{"message": {"content": "Speaker 1: hi\nSpeaker 2: hey"}}]}
            )

        assert await self._labeler(handler).label_speakers("hi hey") == "Speaker 1: hi\nSpeaker 2: hey"

    async def test_missing_label_is_prefixed(self):
        def handler(request):
            return httpx.Response(200, json={"choices": [{"message": {"content": "just one voice"}}]})

        assert await self._labeler(handler).label_speakers("just one voice") == "Speaker 1: just one voice"

    async def test_provider_exception_returns_input(self):
        def handler(request):
            raise httpx.ConnectError("down")

        raw = "  the original words, untouched  "
        assert await self._labeler(handler).label_speakers(raw) == raw

    async def test_error_status_returns_input(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        assert await self._labeler(handler).label_speakers("raw text") == "raw text"

    async def test_unconfigured_returns_input(self):
        assert await SpeakerLabeler(api_key=None).label_speakers("raw text") == "raw text"

    def test_ensure_label(self):
        assert ensure_label("hello") == "Speaker 1: hello"
        assert ensure_label("speaker 3: hello") == "speaker 3: hello"
        assert ensure_label("   ") == "Speaker 1:"

    async def test_rewritten_reply_returns_input(self):
        def handler(request):
            return httpx.Response(
                200, json={"choices": [{"message": {"content": "Speaker 1: A greeting was exchanged."}}]}
            )

        raw = "hello there general kenobi"
        assert await self._labeler(handler).label_speakers(raw) == raw

    async def test_dropped_word_returns_input(self):
        def handler(request):
            return httpx.Response(
                200, json={"choices": [{"message": {"content": "Speaker 1: hello there\nSpeaker 2: kenobi"}}]}
            )

        raw = "hello there general kenobi"
        assert await self._labeler(handler).label_speakers(raw) == raw

    def test_word_comparison_ignores_labels_case_and_punctuation(self):
        raw = "hello there general kenobi you're a bold one"
        assert preserves_words(raw, "Speaker 1: Hello there!\nSpeaker 2: General Kenobi. You're a bold one.")
        assert not preserves_words(raw, "Speaker 1: hello there general kenobi")
        assert not preserves_words(raw, "Speaker 1: there hello general kenobi you're a bold one")
