"""Tests for audio frame checks and WAV wrapping."""

import base64
import io

import numpy as np
import pytest
import soundfile as sf

from voice_relay.audio import is_audio_frame, pcm_to_wav, wav_from_base64_pcm


@pytest.mark.parametrize(
    "size, expected",
    [(100, True), (4096, True), (98, False), (101, False), (0, False)],
)
def test_is_audio_frame(size, expected):
    assert is_audio_frame(b"\x00" * size) is expected


def test_pcm_s16le_to_wav():
    samples = np.array([0, 1000, -1000, 32767], dtype="<i2")

    wav = pcm_to_wav(samples.tobytes(), sample_rate=22050)

    info = sf.info(io.BytesIO(wav))
    assert wav[:4] == b"RIFF"
    assert info.samplerate == 22050
    assert info.channels == 1
    assert info.frames == 4
    assert info.subtype == "PCM_16"


def test_partial_sample_dropped():
    wav = pcm_to_wav(b"\x01\x00\x02\x00\x03", sample_rate=44100)

    assert sf.info(io.BytesIO(wav)).frames == 2


def test_f32_encoding():
    samples = np.zeros(8, dtype="<f4")

    wav = pcm_to_wav(samples.tobytes(), encoding="pcm_f32le")

    assert sf.info(io.BytesIO(wav)).subtype == "FLOAT"


def test_unknown_encoding():
    with pytest.raises(ValueError):
        pcm_to_wav(b"\x00\x00", encoding="mulaw")


def test_base64_wrapper():
    pcm = np.zeros(16, dtype="<i2").tobytes()

    out = base64.b64decode(wav_from_base64_pcm(base64.b64encode(pcm).decode(), 44100, "pcm_s16le"))

    assert out[:4] == b"RIFF"
    assert out[8:12] == b"WAVE"
