"""Top-level package for concat_map.

A sample is analyzed into short overlapping blocks placed on a 2-D map of
zero-crossing rate against RMS energy. At runtime a control point on that map
selects the nearest block, and the engine fires enveloped grains from it on a
self-rescheduling audio clock.
"""

from .build import BufferAnalysis, SampleBuffer, analyze_buffer, normalize
from .engine import ConcatEngine, ControlContext, ControlPoint, EngineParameters
from .errors import AudioLoadError, ConcatMapError, EmptyIndexError
from .grain import Grain, make_grain
from .index import FeatureIndex
from .scheduler import Scheduler

__all__: list[str] = [
    "AudioLoadError",
    "BufferAnalysis",
    "ConcatEngine",
    "ConcatMapError",
    "ControlContext",
    "ControlPoint",
    "EmptyIndexError",
    "EngineParameters",
    "FeatureIndex",
    "Grain",
    "SampleBuffer",
    "Scheduler",
    "analyze_buffer",
    "make_grain",
    "normalize",
]
