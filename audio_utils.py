from __future__ import annotations

import io
import logging
from typing import Sequence

import numpy as np
import soundfile as sf
from pydub import AudioSegment

from errors import DecodeError

logger = logging.getLogger(__name__)

# Analyser defaults: 2048-point FFT, dB range mapped onto 0..255.
FFT_SIZE = 2048
MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0


def trim_silence(
    y: np.ndarray,
    sr: int,
    threshold_db: float = -50.0,
    window_ms: float = 20.0,
    hop_ms: float = 10.0,
    pre_pad_ms: float = 120.0,
    post_pad_ms: float = 280.0,
) -> np.ndarray:
    """
    Trim leading/trailing silence using smoothed RMS in dB with generous padding.
    """
    x = y.astype(np.float32, copy=False)
    n = x.size
    if n == 0:
        return x

    frame_len = max(3, int(sr * (window_ms / 1000.0)))
    hop = max(1, int(sr * (hop_ms / 1000.0)))

    pad = (-(n - frame_len) % hop) if n >= frame_len else (frame_len - n)
    x_pad = np.pad(x, (0, pad), mode="constant", constant_values=0.0)
    num_frames = 1 + max(0, (x_pad.size - frame_len) // hop)
    strided = np.lib.stride_tricks.as_strided(
        x_pad,
        shape=(num_frames, frame_len),
        strides=(x_pad.strides[0] * hop, x_pad.strides[0]),
        writeable=False,
    )
    rms = np.sqrt(np.maximum(1e-12, (strided * strided).mean(axis=1)))

    smooth_win = max(1, int(20.0 / hop_ms))
    kernel = np.ones(smooth_win, dtype=np.float32) / float(smooth_win)
    rms_smooth = np.convolve(rms, kernel, mode="same")

    rms_db = 20.0 * np.log10(np.maximum(rms_smooth, 1e-8))
    active = rms_db > float(threshold_db)
    if not np.any(active):
        return x
    first_f = int(np.argmax(active))
    last_f = int(len(active) - np.argmax(active[::-1]) - 1)

    pre = int(sr * (pre_pad_ms / 1000.0))
    post = int(sr * (post_pad_ms / 1000.0))
    i1 = max(0, first_f * hop - pre)
    i2 = min(n, last_f * hop + frame_len + post)
    if i2 <= i1:
        return x
    return x[i1:i2]


def join_blocks(blocks: Sequence[np.ndarray]) -> np.ndarray:
    if not blocks:
        return np.zeros(0, dtype=np.float32)
    return np.concatenate([np.asarray(b, dtype=np.float32).reshape(-1) for b in blocks])


def encode_audio(samples: np.ndarray, sr: int) -> tuple[bytes, str]:
    """
    Encode mono float32 samples into one audio container.
    Returns (payload, media_type). FLAC first, WAV if FLAC is unavailable.
    """
    data = np.ascontiguousarray(samples, dtype=np.float32).reshape(-1)
    buf = io.BytesIO()
    try:
        sf.write(buf, data, sr, format="FLAC", subtype="PCM_16")
        return buf.getvalue(), "audio/flac"
    except (RuntimeError, ValueError) as e:
        logger.debug("FLAC encode failed, falling back to WAV: %s", e)
    buf = io.BytesIO()
    sf.write(buf, data, sr, format="WAV", subtype="PCM_16")
    return buf.getvalue(), "audio/wav"


def decode_audio_bytes(payload: bytes) -> tuple[np.ndarray, int]:
    """
    Decode an encoded clip into (mono float32 samples, sample_rate).
    Tries soundfile first (WAV, FLAC, OGG, ...), then pydub for compressed
    formats soundfile cannot read. Raises DecodeError when neither works.
    """
    if not payload:
        raise DecodeError("Empty audio payload")
    try:
        data, sr = sf.read(io.BytesIO(payload), dtype="float32", always_2d=True)
        mono = data.mean(axis=1).astype(np.float32)
    except (RuntimeError, TypeError, ValueError) as e:
        try:
            segment = AudioSegment.from_file(io.BytesIO(payload))
            if segment.channels > 1:
                segment = segment.set_channels(1)
            raw = np.array(segment.get_array_of_samples(), dtype=np.float32)
            scale = float(1 << (8 * segment.sample_width - 1))
            mono, sr = raw / scale, segment.frame_rate
        except Exception as pydub_error:
            raise DecodeError(
                "Could not decode correction audio",
                {"soundfile": str(e), "pydub": str(pydub_error), "size": len(payload)},
            ) from pydub_error
    if mono.size == 0:
        raise DecodeError("Decoded correction audio is empty", {"size": len(payload)})
    return mono, int(sr)


def spectrum_level(samples: np.ndarray, fft_size: int = FFT_SIZE) -> float:
    """
    Mean byte-scaled magnitude across the frequency bins of the latest
    ``fft_size`` samples, on the 0..255 scale used for voice activity.
    """
    x = np.asarray(samples, dtype=np.float32).reshape(-1)
    if x.size < fft_size:
        x = np.pad(x, (fft_size - x.size, 0))
    else:
        x = x[-fft_size:]
    spectrum = np.fft.rfft(x * np.blackman(fft_size))[: fft_size // 2]
    mags = np.abs(spectrum) / fft_size
    db = 20.0 * np.log10(np.maximum(mags, 1e-12))
    scaled = (db - MIN_DECIBELS) * (255.0 / (MAX_DECIBELS - MIN_DECIBELS))
    return float(np.clip(scaled, 0.0, 255.0).mean())


def tone_waveform(
    sr: int,
    frequency: float = 440.0,
    duration: float = 0.1,
    gain: float = 0.5,
    end_gain: float = 0.001,
) -> np.ndarray:
    """Short sine beep with an exponential fade to avoid a click."""
    n = max(1, int(sr * duration))
    t = np.arange(n, dtype=np.float32) / float(sr)
    env = gain * (end_gain / gain) ** (t / duration)
    return (np.sin(2.0 * np.pi * frequency * t) * env).astype(np.float32)
