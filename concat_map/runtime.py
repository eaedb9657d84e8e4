"""Realtime playback for concat_map.

This module renders grains submitted by the engine through a low-latency
sounddevice output stream, provides the audio clock the scheduler runs on,
and wires analysis, engine and playback together for the CLI.
"""

import asyncio
import logging
from collections import deque
from typing import Optional

import numpy as np

from .build import DEFAULT_BLOCK_SIZE, DEFAULT_HOP_SIZE, SampleBuffer, analyze_file
from .engine import DEFAULT_DURATION, DEFAULT_JITTER, DEFAULT_PERIOD, ConcatEngine, ControlContext
from .grain import Grain, render_grain
from .index import FeatureIndex
from .scheduler import DEFAULT_LOOKAHEAD, Scheduler

logger = logging.getLogger(__name__)


class GrainMixer:
    """Sums active grains into output blocks and counts rendered frames.

    ``now()`` is the audio clock: frames rendered so far divided by the
    sample rate. Grains arrive from the scheduler thread through a deque and
    are owned by the rendering thread from then on.
    """

    def __init__(self, buffer: SampleBuffer, gain: float = 1.0):
        self.buffer = buffer
        self.sample_rate = buffer.sample_rate
        self.frames_rendered = 0

        self._pending = deque()
        self._voices = []

        self._gain = float(gain)
        self._gain_request = (float(gain), 0)
        self._applied_request = self._gain_request
        self._ramp_from = self._gain
        self._ramp_pos = 0

    def now(self) -> float:
        return self.frames_rendered / self.sample_rate

    @property
    def active_voices(self) -> int:
        return len(self._voices) + len(self._pending)

    def submit(self, grain: Grain) -> None:
        """Queue a grain; the source segment is enveloped here, off the audio thread."""
        voice = render_grain(self.buffer, grain)
        if len(voice) == 0:
            return
        start_frame = int(round(grain.start_time * self.sample_rate))
        self._pending.append((start_frame, voice))

    def set_gain(self, target: float, ramp_time: float = 0.01) -> None:
        """Move the master gain to ``target`` along a linear ramp of ``ramp_time`` seconds."""
        if ramp_time < 0:
            raise ValueError("Ramp time must not be negative")
        self._gain_request = (float(target), int(round(ramp_time * self.sample_rate)))

    def _gain_curve(self, frames: int) -> Optional[np.ndarray]:
        request = self._gain_request
        if request is not self._applied_request:
            self._applied_request = request
            self._ramp_from = self._gain
            self._ramp_pos = 0

        target, ramp_frames = request
        if self._ramp_pos >= ramp_frames:
            self._gain = target
            return None

        pos = self._ramp_pos + np.arange(1, frames + 1)
        curve = self._ramp_from + (target - self._ramp_from) * np.minimum(pos / ramp_frames, 1.0)
        self._ramp_pos += frames
        self._gain = float(curve[-1])
        return curve

    def render(self, frames: int) -> np.ndarray:
        """Produce the next ``frames`` output samples and advance the clock."""
        block_start = self.frames_rendered
        block_end = block_start + frames
        out = np.zeros(frames, dtype=np.float32)

        while self._pending:
            start, voice = self._pending.popleft()
            # A grain that arrives late starts now instead of losing its attack
            self._voices.append((max(start, block_start), voice))

        remaining = []
        for start, voice in self._voices:
            end = start + len(voice)
            lo = max(start, block_start)
            hi = min(end, block_end)
            if lo < hi:
                out[lo - block_start:hi - block_start] += voice[lo - start:hi - start]
            if end > block_end:
                remaining.append((start, voice))
        self._voices = remaining

        curve = self._gain_curve(frames)
        if curve is not None:
            out *= curve
        elif self._gain != 1.0:
            out *= self._gain

        # Soft clipping to prevent distortion when grains overlap
        loud = np.abs(out) > 1.0
        if np.any(loud):
            out[loud] = np.tanh(out[loud])

        self.frames_rendered = block_end
        return out


class GrainPlayer:
    """Output stream feeding a GrainMixer through sounddevice."""

    def __init__(self, mixer: GrainMixer, device=None, buffer_size: int = 256):
        self.mixer = mixer
        self.device = device
        self.buffer_size = buffer_size  # Smaller buffer for lower latency
        self.stream = None

    def callback(self, outdata, frames, time, status):
        """Audio callback for sounddevice."""
        if status:
            logger.warning("Audio callback status: %s", status)
        outdata[:, 0] = self.mixer.render(frames)

    def start_stream(self):
        """Start the audio stream with optimized settings."""
        import sounddevice as sd

        if self.stream is not None and self.stream.active:
            return
        try:
            self.stream = sd.OutputStream(
                samplerate=self.mixer.sample_rate,
                channels=1,
                dtype="float32",
                callback=self.callback,
                device=self.device,
                blocksize=self.buffer_size,
                latency="low",
                clip_off=True,  # Prevent clipping artifacts
                prime_output_buffers_using_stream_callback=True,
            )
            self.stream.start()
        except Exception as e:
            logger.warning("Error starting audio stream: %s", e)
            # Fallback to larger buffer size
            self.buffer_size = 512
            self.stream = sd.OutputStream(
                samplerate=self.mixer.sample_rate,
                channels=1,
                dtype="float32",
                callback=self.callback,
                device=self.device,
                blocksize=self.buffer_size,
                latency="low",
            )
            self.stream.start()
            logger.info("Fallback to buffer size %d", self.buffer_size)

    def stop_stream(self):
        """Stop the audio stream."""
        if self.stream is not None:
            if self.stream.active:
                self.stream.stop()
            self.stream.close()
            self.stream = None


def run_engine(
    file_path: str,
    x: Optional[float] = None,
    y: Optional[float] = None,
    period: float = DEFAULT_PERIOD,
    duration: float = DEFAULT_DURATION,
    jitter: float = DEFAULT_JITTER,
    gain: float = 1.0,
    seconds: Optional[float] = None,
    device: Optional[int] = None,
    block_size: int = DEFAULT_BLOCK_SIZE,
    hop_size: int = DEFAULT_HOP_SIZE,
    sample_rate: Optional[int] = None,
    silence_db: Optional[float] = None,
    lookahead: float = DEFAULT_LOOKAHEAD,
) -> ConcatEngine:
    """Analyze ``file_path`` and play grains steered by a fixed control point.

    Without ``x`` and ``y`` the engine idles silently. Playback runs for
    ``seconds`` of audio clock time, or until interrupted.

    Raises:
        EmptyIndexError: If the file is shorter than one analysis block
    """
    buffer, analysis = analyze_file(
        file_path,
        block_size=block_size,
        hop_size=hop_size,
        target_sr=sample_rate,
        silence_db=silence_db,
        progress=True,
    )
    index = FeatureIndex.from_analysis(analysis)

    control = ControlContext()
    if x is not None and y is not None:
        point = control.set_point(x, y)
        logger.info("Control point: (%.3f, %.3f)", point.x, point.y)
    else:
        logger.info("No control point given; engine will idle")

    mixer = GrainMixer(buffer, gain)
    engine = ConcatEngine(index, buffer, control, mixer.submit,
                          period=period, duration=duration, jitter=jitter)
    scheduler = Scheduler(mixer.now, lookahead=lookahead)

    # Refuses to start on an empty index before any audio device is opened
    engine.start(scheduler)

    player = GrainPlayer(mixer, device=device)
    try:
        player.start_stream()
        asyncio.run(scheduler.run(duration=seconds))
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        engine.stop(scheduler)
        player.stop_stream()

    return engine
