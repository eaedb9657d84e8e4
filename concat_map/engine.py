"""Concatenative grain engine.

On every scheduler tick the engine reads the live control point, looks up the
closest analyzed block and fires a grain starting at that block's position in
the source buffer.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from .build import SampleBuffer
from .errors import EmptyIndexError
from .grain import Grain, make_grain
from .index import FeatureIndex

logger = logging.getLogger(__name__)

DEFAULT_PERIOD = 0.05
DEFAULT_DURATION = 0.2
DEFAULT_JITTER = 0.005
MAX_JITTER = 0.005


@dataclass(frozen=True)
class ControlPoint:
    x: float
    y: float


class ControlContext:
    """Shared slot between the interaction surface and the engine.

    Writers replace the whole point; the engine only ever sees a complete
    ControlPoint or None.
    """

    def __init__(self):
        self._point: Optional[ControlPoint] = None

    def set_point(self, x: float, y: float) -> ControlPoint:
        """Publish a new control point, clamped to the unit square."""
        if not (math.isfinite(x) and math.isfinite(y)):
            raise ValueError(f"Control point must be finite, got ({x}, {y})")
        point = ControlPoint(max(0.0, min(1.0, float(x))), max(0.0, min(1.0, float(y))))
        self._point = point
        return point

    def release(self) -> None:
        """Clear the control point; grains stop firing on the next tick."""
        self._point = None

    def read(self) -> Optional[ControlPoint]:
        return self._point


@dataclass(frozen=True)
class EngineParameters:
    period: float = DEFAULT_PERIOD
    duration: float = DEFAULT_DURATION

    def __post_init__(self):
        if not self.period > 0:
            raise ValueError("Period must be positive")
        if not self.duration >= 0:
            raise ValueError("Duration must not be negative")


class ConcatEngine:
    """Fires grains from the block nearest to the control point.

    Args:
        index: Analyzed feature index (shared, read-only)
        buffer: Source sample buffer (shared, read-only)
        control: Control slot written by the interaction surface
        sink: Receives every emitted Grain (the audio renderer)
        period: Seconds between ticks
        duration: Grain length in seconds
        jitter: Upper bound of the random delay added to each grain
        seed: Seed for the jitter generator
    """

    def __init__(
        self,
        index: FeatureIndex,
        buffer: SampleBuffer,
        control: ControlContext,
        sink: Callable[[Grain], None],
        period: float = DEFAULT_PERIOD,
        duration: float = DEFAULT_DURATION,
        jitter: float = DEFAULT_JITTER,
        seed: Optional[int] = None,
    ):
        if not 0 <= jitter <= MAX_JITTER:
            raise ValueError(f"Jitter must be between 0 and {MAX_JITTER} seconds")
        self.index = index
        self.buffer = buffer
        self.control = control
        self.sink = sink
        self.jitter = jitter
        self._params = EngineParameters(period, duration)
        self._rng = np.random.default_rng(seed)
        self.grains_emitted = 0

    @property
    def parameters(self) -> EngineParameters:
        return self._params

    @property
    def period(self) -> float:
        return self._params.period

    @property
    def duration(self) -> float:
        return self._params.duration

    def set_period(self, period: float) -> None:
        """Change the tick interval; applies from the next tick."""
        self._params = EngineParameters(period, self._params.duration)

    def set_duration(self, duration: float) -> None:
        """Change the grain length; applies from the next tick."""
        self._params = EngineParameters(self._params.period, duration)

    def start(self, scheduler, start_time: Optional[float] = None) -> None:
        """Register with ``scheduler``.

        Raises:
            EmptyIndexError: If analysis produced no blocks
        """
        if self.index.is_empty:
            raise EmptyIndexError("Cannot start engine: analysis produced no blocks")
        scheduler.add(self, start_time)
        logger.info(
            "Engine started: %d blocks, period=%.3fs, duration=%.3fs",
            len(self.index), self.period, self.duration,
        )

    def stop(self, scheduler) -> None:
        scheduler.remove(self)
        logger.info("Engine stopped after %d grains", self.grains_emitted)

    def tick(self, current_time: float, audio_time: float, dt: float) -> float:
        """Emit at most one grain and return the time of the next tick."""
        params = self._params
        point = self.control.read()
        if point is None:
            return current_time + params.period

        block = self.index.nearest(point)
        offset = self.index.buffer_offset_seconds(block)

        # Irregular spacing avoids an audible comb at the tick rate
        grain_time = audio_time + self._rng.random() * self.jitter

        self.sink(make_grain(grain_time, params.duration, offset))
        self.grains_emitted += 1
        return current_time + params.period
