"""Grain description and rendering.

A grain is a short segment of the source buffer shaped by a triangular gain
envelope that starts and ends at zero, peaking at 1 halfway through.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .build import SampleBuffer


@dataclass(frozen=True)
class Grain:
    """One fire-and-forget playback event; all times in seconds."""

    start_time: float
    duration: float
    buffer_offset: float
    envelope: Tuple[Tuple[float, float], ...]

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


def make_grain(start_time: float, duration: float, buffer_offset: float) -> Grain:
    """Describe a grain starting at ``start_time`` on the audio clock.

    Raises:
        ValueError: If duration or buffer_offset is negative
    """
    if duration < 0:
        raise ValueError("Grain duration must not be negative")
    if buffer_offset < 0:
        raise ValueError("Buffer offset must not be negative")

    envelope = (
        (start_time, 0.0),
        (start_time + duration / 2, 1.0),
        (start_time + duration, 0.0),
    )
    return Grain(start_time, duration, buffer_offset, envelope)


def envelope_gains(grain: Grain, num_samples: int) -> np.ndarray:
    """Sample the grain's envelope at ``num_samples`` points spanning its duration."""
    if num_samples <= 0:
        return np.zeros(0, dtype=np.float32)
    if num_samples == 1:
        return np.zeros(1, dtype=np.float32)

    times, gains = zip(*grain.envelope)
    # First sample sits on the opening breakpoint, last on the closing one
    t = grain.start_time + np.arange(num_samples) * (grain.duration / (num_samples - 1))
    return np.interp(t, times, gains).astype(np.float32)


def render_grain(buffer: SampleBuffer, grain: Grain) -> np.ndarray:
    """Return the enveloped source segment for ``grain``.

    The segment is cut short when it runs past the end of the buffer; the
    envelope is still computed over the full grain duration, so a truncated
    grain ends early rather than fading faster.
    """
    length = int(round(grain.duration * buffer.sample_rate))
    start = int(round(grain.buffer_offset * buffer.sample_rate))
    segment = buffer.samples[start:start + length]
    if len(segment) == 0:
        return np.zeros(0, dtype=np.float32)

    gains = envelope_gains(grain, length)
    return segment * gains[:len(segment)]
