"""Playback completion estimate.

Render tools buffer ahead of the hardware, and their exit lags the end of
audible playback by an unpredictable amount, so playback is considered
complete by wall-clock accounting: the submitted audio duration, scheduled
from the first write, plus a safety margin.

This is not the plain ``now - first_write >= queued + margin`` rule. Each
chunk is scheduled from the later of its arrival and the end of the audio
already queued, so time the renderer spent starved is never counted as
played audio. For a continuous stream both agree; after any underrun this
estimate fires later, by the length of the gap.
"""

from collections.abc import Callable

from audiorelay.audio.format import AudioFormat

Clock = Callable[[], float]


class DrainEstimator:
    """Tracks queued audio time against elapsed wall time.

    All times are in milliseconds on the clock passed at construction.
    """

    def __init__(self, audio_format: AudioFormat, safety_margin_ms: float, clock: Clock) -> None:
        self.audio_format = audio_format
        self.safety_margin_ms = safety_margin_ms
        self._clock = clock
        self.queued_ms = 0.0
        self.first_write_ms: float | None = None
        self._expected_end_ms: float | None = None

    def record(self, byte_count: int) -> float:
        """Account for an accepted chunk and return its duration in ms.

        A chunk that arrives after the renderer has run dry starts playing
        on arrival, so the gap is not counted as audio.
        """
        now = self._clock()
        duration = self.audio_format.duration_ms(byte_count)
        if self.first_write_ms is None:
            self.first_write_ms = now
        start = now if self._expected_end_ms is None else max(self._expected_end_ms, now)
        self._expected_end_ms = start + duration
        self.queued_ms += duration
        return duration

    @property
    def expected_end_ms(self) -> float | None:
        """Clock time at which the queued audio should finish playing."""
        return self._expected_end_ms

    def elapsed_ms(self) -> float:
        if self.first_write_ms is None:
            return 0.0
        return self._clock() - self.first_write_ms

    def remaining_ms(self) -> float | None:
        """Time until the estimate fires, or None before any audio was written."""
        if self._expected_end_ms is None:
            return None
        return max(0.0, self._expected_end_ms + self.safety_margin_ms - self._clock())

    def is_drained(self) -> bool:
        """True once the queued audio plus the margin should have played out."""
        if self._expected_end_ms is None:
            return False
        return self._clock() >= self._expected_end_ms + self.safety_margin_ms
