import logging
import threading

import pytest

from deal_recorder.core.errors import TranscriptionFailed
from deal_recorder.services.extractor import DealExtractor, parse_deals
from deal_recorder.services.transcriber import Transcriber, TranscriptionResult


def test_transcriber_retries_then_succeeds(settings, monkeypatch):
    transcriber = Transcriber(settings.model_copy(update={"COLLABORATOR_RETRIES": 2}))
    calls = []

    def flaky(audio, language, filename):
        calls.append(language)
        if len(calls) < 3:
            raise RuntimeError("connection reset")
        return TranscriptionResult(text="hello", detected_language="en")

    monkeypatch.setattr(transcriber, "_transcribe_once", flaky)

    result = transcriber.transcribe(b"audio", "en")
    assert result.text == "hello"
    assert calls == ["en", "en", "en"]


def test_transcriber_gives_up_with_last_error(settings, monkeypatch):
    transcriber = Transcriber(settings)
    calls = []

    def broken(audio, language, filename):
        calls.append(1)
        raise RuntimeError(f"attempt {len(calls)} failed")

    monkeypatch.setattr(transcriber, "_transcribe_once", broken)

    with pytest.raises(TranscriptionFailed, match="attempt 2 failed"):
        transcriber.transcribe(b"audio")
    assert len(calls) == 1 + settings.COLLABORATOR_RETRIES


def test_transcriber_times_out(settings, monkeypatch):
    transcriber = Transcriber(
        settings.model_copy(update={"TRANSCRIBE_TIMEOUT_SEC": 0.05, "COLLABORATOR_RETRIES": 0})
    )
    gate = threading.Event()
    monkeypatch.setattr(transcriber, "_transcribe_once", lambda *args: gate.wait(5))

    try:
        with pytest.raises(TranscriptionFailed, match="did not finish"):
            transcriber.transcribe(b"audio")
    finally:
        gate.set()


def test_transcriber_rejects_empty_audio_and_missing_key(settings):
    with pytest.raises(TranscriptionFailed):
        Transcriber(settings).transcribe(b"")

    openai_backed = Transcriber(settings.model_copy(update={"TRANSCRIBE_BACKEND": "openai"}))
    with pytest.raises(TranscriptionFailed, match="OPENAI_API_KEY"):
        openai_backed.transcribe(b"audio")


def test_transcriber_rejects_unknown_backend(settings):
    with pytest.raises(ValueError):
        Transcriber(settings.model_copy(update={"TRANSCRIBE_BACKEND": "carrier-pigeon"}))


def test_parse_deals():
    assert parse_deals('{"deals": [{"name": "Acme"}, "noise", 3]}') == [{"name": "Acme"}]
    assert parse_deals("{}") == []
    with pytest.raises(ValueError):
        parse_deals("[]")
    with pytest.raises(ValueError):
        parse_deals('{"deals": "Acme"}')
    with pytest.raises(ValueError):
        parse_deals("not json")


@pytest.fixture
def keyed_settings(settings):
    return settings.model_copy(update={"OPENAI_API_KEY": "sk-test"})


def test_extractor_returns_deals(keyed_settings, monkeypatch):
    extractor = DealExtractor(keyed_settings)
    monkeypatch.setattr(extractor, "_complete", lambda text: '{"deals": [{"name": "Acme", "stage": "Commit"}]}')

    result = extractor.extract("Acme is in commit.")
    assert result.deals == [{"name": "Acme", "stage": "Commit"}]
    assert result.degraded is False


def test_extractor_degrades_on_bad_json(keyed_settings, monkeypatch):
    extractor = DealExtractor(keyed_settings)
    monkeypatch.setattr(extractor, "_complete", lambda text: "Sure! Here are the deals:")

    result = extractor.extract("Acme is in commit.")
    assert result.deals == []
    assert result.degraded is True


def test_extractor_degrades_after_retries(keyed_settings, monkeypatch):
    extractor = DealExtractor(keyed_settings)
    calls = []

    def down(text):
        calls.append(text)
        raise RuntimeError("503 from upstream")

    monkeypatch.setattr(extractor, "_complete", down)

    result = extractor.extract("Acme is in commit.")
    assert result.degraded is True
    assert len(calls) == 1 + keyed_settings.COLLABORATOR_RETRIES


def test_extractor_without_key_or_text(settings):
    extractor = DealExtractor(settings)
    assert extractor.extract("").degraded is False
    assert extractor.extract("Acme").degraded is True


def test_degradation_is_logged_with_its_kind(settings, caplog):
    with caplog.at_level(logging.WARNING, logger="deal_recorder.services.extractor"):
        result = DealExtractor(settings).extract("Acme")

    assert result.degraded is True
    assert "ExtractionDegraded: OPENAI_API_KEY is not set" in caplog.text
