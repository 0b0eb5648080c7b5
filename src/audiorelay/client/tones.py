"""Test tone generation for any supported PCM format."""

import numpy as np

from audiorelay.audio.format import AudioFormat


def sine_wave(
    frequency: float,
    seconds: float,
    audio_format: AudioFormat,
    amplitude: float = 0.5,
) -> bytes:
    """Render a sine tone as interleaved PCM in ``audio_format``.

    Every channel carries the same signal. 24-bit samples are stored the way
    ALSA reads ``S24_LE``/``U24_LE``: in four-byte containers with the top
    byte holding the sign extension.

    Args:
        frequency: Tone frequency in Hz
        seconds: Tone length; rounded to the nearest whole frame
        audio_format: Target format
        amplitude: Peak level as a fraction of full scale (0.0-1.0)

    Returns:
        Raw PCM bytes.
    """
    if frequency <= 0:
        raise ValueError("frequency must be positive")
    if seconds < 0:
        raise ValueError("seconds must not be negative")
    if not 0.0 <= amplitude <= 1.0:
        raise ValueError("amplitude must be between 0.0 and 1.0")

    frame_count = int(round(seconds * audio_format.sample_rate))
    t = np.arange(frame_count, dtype=np.float64) / audio_format.sample_rate
    wave = amplitude * np.sin(2 * np.pi * frequency * t)

    half_scale = 2 ** (audio_format.bit_depth - 1)
    samples = np.round(wave * (half_scale - 1)).astype(np.int64)
    if audio_format.encoding == "unsigned":
        samples += half_scale

    # Interleave: one row per frame, one column per channel
    interleaved = np.repeat(samples[:, np.newaxis], audio_format.channels, axis=1).reshape(-1)
    return pack_samples(interleaved, audio_format)


def pack_samples(samples: np.ndarray, audio_format: AudioFormat) -> bytes:
    """Serialize integer samples with the format's width, sign and byte order."""
    order = "<" if audio_format.endianness == "little" else ">"
    kind = "i" if audio_format.encoding == "signed" else "u"
    dtype = np.dtype(f"{order}{kind}{sample_container_bytes(audio_format)}")
    return samples.astype(dtype).tobytes()


def sample_container_bytes(audio_format: AudioFormat) -> int:
    """Bytes ALSA uses to hold one sample; 24-bit samples sit in four."""
    return 4 if audio_format.bit_depth == 24 else audio_format.bit_depth // 8


def chunked(data: bytes, chunk_size: int) -> list[bytes]:
    """Split PCM into chunks of at most ``chunk_size`` bytes."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return [data[i : i + chunk_size] for i in range(0, len(data), chunk_size)]
