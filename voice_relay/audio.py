"""
audio.py — inbound frame checks and raw PCM → WAV wrapping for outbound audio.
"""

from __future__ import annotations

import base64
import io

import numpy as np
import soundfile as sf

# encoding -> (numpy dtype, soundfile subtype)
_PCM_FORMATS = {
    "pcm_s16le": ("<i2", "PCM_16"),
    "pcm_f32le": ("<f4", "FLOAT"),
}


def is_audio_frame(frame: bytes, min_bytes: int = 100) -> bool:
    """16-bit PCM frames must have an even byte length; short frames are noise."""
    return len(frame) % 2 == 0 and len(frame) >= min_bytes


def pcm_to_wav(pcm: bytes, sample_rate: int = 44100, encoding: str = "pcm_s16le") -> bytes:
    """Wrap mono little-endian PCM in a WAV container.

    A trailing partial sample is dropped.
    """
    if encoding not in _PCM_FORMATS:
        raise ValueError(f"unsupported PCM encoding: {encoding}")
    dtype, subtype = _PCM_FORMATS[encoding]
    width = np.dtype(dtype).itemsize
    usable = len(pcm) - len(pcm) % width
    samples = np.frombuffer(pcm[:usable], dtype=dtype)

    buf = io.BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV", subtype=subtype)
    return buf.getvalue()


def wav_from_base64_pcm(data: str, sample_rate: int, encoding: str) -> str:
    """Base64 PCM chunk in, base64 WAV chunk out."""
    wav = pcm_to_wav(base64.b64decode(data), sample_rate, encoding)
    return base64.b64encode(wav).decode("ascii")
