"""Tests for provider message parsing and request building."""

import json
from urllib.parse import parse_qs, urlparse

import pytest

from voice_relay.config import SynthesisConfig, TranscriptionConfig
from voice_relay.machine import (
    SynthesisChunk,
    SynthesisDone,
    SynthesisFailed,
    TranscriptReceived,
    UtteranceEndReceived,
)
from voice_relay import synthesis, transcription


def results(transcript, is_final=False, speech_final=False):
    return json.dumps({
        "type": "Results",
        "is_final": is_final,
        "speech_final": speech_final,
        "channel": {"alternatives": [{"transcript": transcript, "confidence": 0.98}]},
    })


class TestTranscriptionMessages:
    def test_results(self):
        event = transcription.parse_message(results("hello", True, True), timestamp=42)

        assert event == TranscriptReceived(text="hello", is_final=True, speech_final=True, timestamp=42)

    def test_results_without_alternatives(self):
        raw = json.dumps({"type": "Results", "channel": {"alternatives": []}})

        event = transcription.parse_message(raw, timestamp=1)

        assert event.text == ""

    def test_utterance_end(self):
        raw = json.dumps({"type": "UtteranceEnd", "last_word_end": 2.14})

        event = transcription.parse_message(raw, timestamp=7)

        assert event == UtteranceEndReceived(timestamp=7, last_word_end=2.14)

    @pytest.mark.parametrize("kind", ["Metadata", "SpeechStarted", "Unexpected"])
    def test_informational_messages(self, kind):
        assert transcription.parse_message(json.dumps({"type": kind})) is None

    def test_error_message(self):
        raw = json.dumps({"type": "Error", "description": "bad audio"})

        assert transcription.parse_message(raw) == transcription.TranscriptionError("bad audio")

    def test_malformed_raises(self):
        with pytest.raises(ValueError):
            transcription.parse_message("not json")

    def test_url_carries_query_parameters(self):
        client = transcription.TranscriptionClient("dg", TranscriptionConfig(language="en"))

        query = parse_qs(urlparse(client.url).query)

        assert query["model"] == ["nova-3"]
        assert query["encoding"] == ["linear16"]
        assert query["sample_rate"] == ["44100"]
        assert query["interim_results"] == ["true"]
        assert query["endpointing"] == ["200"]
        assert query["utterance_end_ms"] == ["1000"]
        assert query["language"] == ["en"]
        assert "smart_format" not in query

    def test_keepalive_and_close_messages(self):
        assert json.loads(transcription.KEEPALIVE_MESSAGE) == {"type": "KeepAlive"}
        assert json.loads(transcription.CLOSE_STREAM_MESSAGE) == {"type": "CloseStream"}


class TestSynthesisMessages:
    def test_chunk(self):
        raw = json.dumps({"type": "chunk", "context_id": "c-1", "data": "UklGRg==", "done": False})

        assert synthesis.parse_message(raw) == SynthesisChunk(context_id="c-1", audio="UklGRg==", done=False)

    def test_chunk_without_audio_ignored(self):
        assert synthesis.parse_message(json.dumps({"type": "chunk", "context_id": "c-1"})) is None

    def test_done(self):
        assert synthesis.parse_message(json.dumps({"type": "done", "context_id": "c-1"})) == SynthesisDone("c-1")

    def test_error(self):
        raw = json.dumps({"type": "error", "context_id": "c-1", "error": "quota exceeded"})

        assert synthesis.parse_message(raw) == SynthesisFailed(error="quota exceeded", context_id="c-1")

    def test_timestamps_ignored(self):
        raw = json.dumps({
            "type": "timestamps",
            "context_id": "c-1",
            "word_timestamps": {"words": ["hi"], "start": [0.0], "end": [0.2]},
        })

        assert synthesis.parse_message(raw) is None


class TestSynthesisRequests:
    @pytest.fixture
    def client(self):
        return synthesis.SynthesisClient("sk", SynthesisConfig())

    def test_url(self, client):
        query = parse_qs(urlparse(client.url).query)

        assert client.url.startswith("wss://api.cartesia.ai/tts/websocket?")
        assert query == {"api_key": ["sk"], "cartesia_version": ["2024-06-10"]}

    def test_segment_request(self, client):
        request = client.build_request("s-1", "Hello there.", more=True)

        assert request == {
            "model_id": "sonic-2",
            "transcript": "Hello there.",
            "voice": {"mode": "id", "id": "a0e99841-438c-4a64-b679-ae501e7d6091"},
            "language": "en",
            "context_id": "s-1",
            "output_format": {"container": "raw", "encoding": "pcm_s16le", "sample_rate": 44100},
            "add_timestamps": True,
            "continue": True,
        }

    @pytest.mark.asyncio
    async def test_send_without_connection_raises(self, client):
        with pytest.raises(ConnectionError):
            await client.speak("s-1", "Hi.", continuation=False)
