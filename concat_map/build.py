"""Offline analysis for concat_map.

This module loads a recorded sample buffer, cuts it into overlapping blocks,
measures each block (RMS energy and zero-crossing rate) and normalizes the
measures into the 2-D feature space navigated at runtime.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import librosa
import numpy as np
from tqdm import tqdm

from .errors import AudioLoadError

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SIZE = 2048
DEFAULT_HOP_SIZE = 512

# Value assigned to every element when a measure is constant across blocks
DEGENERATE_FILL = 0.5

# Blocks measured per vectorized pass in analyze_buffer
_CHUNK_BLOCKS = 1024


def _readonly(values, dtype) -> np.ndarray:
    array = np.array(values, dtype=dtype, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class SampleBuffer:
    """Decoded mono PCM samples and their sample rate."""

    samples: np.ndarray
    sample_rate: int

    def __post_init__(self):
        samples = np.asarray(self.samples, dtype=np.float32)
        if samples.ndim != 1:
            raise ValueError("Sample buffer must be one-dimensional (mono)")
        if self.sample_rate <= 0:
            raise ValueError("Sample rate must be positive")
        object.__setattr__(self, "samples", _readonly(samples, np.float32))

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def duration(self) -> float:
        """Length of the buffer in seconds."""
        return len(self.samples) / self.sample_rate


@dataclass(frozen=True)
class BufferAnalysis:
    """Per-block measures of a sample buffer.

    ``block_starts``, ``rms`` and ``zcr`` are parallel read-only arrays with
    one entry per analysis block. ``zcr`` is expressed in crossings per second.
    """

    block_starts: np.ndarray
    rms: np.ndarray
    zcr: np.ndarray
    sample_rate: int
    block_size: int
    hop_size: int

    def __post_init__(self):
        if not len(self.block_starts) == len(self.rms) == len(self.zcr):
            raise ValueError("Analysis arrays must have equal length")
        object.__setattr__(self, "block_starts", _readonly(self.block_starts, np.int64))
        object.__setattr__(self, "rms", _readonly(self.rms, np.float64))
        object.__setattr__(self, "zcr", _readonly(self.zcr, np.float64))

    def __len__(self) -> int:
        return len(self.block_starts)

    def feature_coordinates(self) -> Tuple[np.ndarray, np.ndarray]:
        """Return ``(norm_x, norm_y)``: normalized ZCR and normalized RMS."""
        return normalize(self.zcr), normalize(self.rms)


def _check_block_params(block_size: int, hop_size: int) -> None:
    if block_size <= 0:
        raise ValueError("Block size must be positive")
    if hop_size <= 0:
        raise ValueError("Hop size must be positive")


def load_sample_buffer(file_path: str, target_sr: Optional[int] = None) -> SampleBuffer:
    """Load an audio file and convert it to a mono sample buffer.

    Args:
        file_path: Path to the audio file
        target_sr: Resample to this rate when given (default: keep the file's rate)

    Returns:
        SampleBuffer with float32 samples

    Raises:
        FileNotFoundError: If the audio file doesn't exist
        ValueError: If target_sr is not positive
        AudioLoadError: If the audio file cannot be decoded
    """
    if target_sr is not None and target_sr <= 0:
        raise ValueError("Target sample rate must be positive")
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Audio file not found: {file_path}")

    import torch
    import torchaudio
    import torchaudio.transforms as T

    try:
        waveform, original_sr = torchaudio.load(file_path)

        # Convert to mono if stereo
        if waveform.shape[0] > 1:
            waveform = torch.mean(waveform, dim=0, keepdim=True)

        sample_rate = original_sr
        if target_sr is not None and original_sr != target_sr:
            resampler = T.Resample(orig_freq=original_sr, new_freq=target_sr)
            waveform = resampler(waveform)
            sample_rate = target_sr

        samples = waveform[0].numpy()
    except Exception as e:
        raise AudioLoadError(f"Failed to load audio file {file_path}: {e}") from e

    logger.debug("Loaded %s: %d samples at %d Hz", file_path, len(samples), sample_rate)
    return SampleBuffer(samples, int(sample_rate))


def compute_block_starts(num_samples: int, block_size: int, hop_size: int) -> np.ndarray:
    """Return the start offsets of every complete block.

    Offsets are ``0, hop, 2*hop, ...`` while ``offset + block_size <= num_samples``.
    A trailing partial block is discarded, so the result is empty when the
    buffer is shorter than one block.
    """
    _check_block_params(block_size, hop_size)
    if num_samples < block_size:
        return np.empty(0, dtype=np.int64)
    return np.arange(0, num_samples - block_size + 1, hop_size, dtype=np.int64)


def block_rms(block: Sequence[float]) -> float:
    """Root-mean-square amplitude of a block.

    Raises:
        ValueError: If the block is empty
    """
    block = np.asarray(block, dtype=np.float64)
    if block.size == 0:
        raise ValueError("Cannot compute RMS of an empty block")
    return float(np.sqrt(np.mean(np.square(block))))


def zero_crossing_rate(block: Sequence[float], sample_rate: int) -> float:
    """Estimate zero crossings per second for a block.

    Two consecutive samples cross zero when their product is negative; exact
    zeros never count. The count over the ``len(block) - 1`` pairs is divided
    by the block duration.
    """
    block = np.asarray(block, dtype=np.float64)
    if block.size == 0:
        raise ValueError("Cannot compute zero crossings of an empty block")
    if sample_rate <= 0:
        raise ValueError("Sample rate must be positive")
    count = np.count_nonzero(block[:-1] * block[1:] < 0)
    block_duration = block.size / sample_rate
    return count / block_duration


def normalize(values: Sequence[float]) -> np.ndarray:
    """Linearly rescale values into [0, 1] using their own min and max.

    A constant sequence has no range to rescale; every element then maps to
    DEGENERATE_FILL instead of NaN.
    """
    values = np.asarray(values, dtype=np.float64)
    if values.size == 0:
        return np.empty(0, dtype=np.float64)

    lo = values.min()
    hi = values.max()
    if hi == lo:
        logger.warning("Degenerate range (all values %g); filling with %.2f", lo, DEGENERATE_FILL)
        return np.full(values.shape, DEGENERATE_FILL, dtype=np.float64)

    # Clip guards against rounding a hair outside the unit interval
    return np.clip((values - lo) / (hi - lo), 0.0, 1.0)


def analyze_buffer(
    buffer: SampleBuffer,
    block_size: int = DEFAULT_BLOCK_SIZE,
    hop_size: int = DEFAULT_HOP_SIZE,
    progress: bool = False,
) -> BufferAnalysis:
    """Measure RMS and zero-crossing rate for every block of a buffer.

    Args:
        buffer: Sample buffer to analyze
        block_size: Block length in samples (default: 2048)
        hop_size: Distance between consecutive block starts (default: 512)
        progress: Show a tqdm progress bar

    Returns:
        BufferAnalysis whose arrays are empty when the buffer holds fewer
        than block_size samples
    """
    _check_block_params(block_size, hop_size)
    samples = np.asarray(buffer.samples, dtype=np.float64)
    starts = compute_block_starts(len(samples), block_size, hop_size)

    if len(starts) == 0:
        logger.warning(
            "Buffer has %d samples, fewer than one block of %d; analysis is empty",
            len(samples), block_size,
        )
        return BufferAnalysis(starts, np.empty(0), np.empty(0),
                              buffer.sample_rate, block_size, hop_size)

    # Strided view: one row per block, no copy
    blocks = librosa.util.frame(samples, frame_length=block_size, hop_length=hop_size, axis=0)
    rms = np.empty(len(blocks), dtype=np.float64)
    crossings = np.empty(len(blocks), dtype=np.int64)

    for first in tqdm(
        range(0, len(blocks), _CHUNK_BLOCKS),
        desc="Analyzing blocks",
        unit="chunks",
        disable=not progress,
    ):
        chunk = blocks[first:first + _CHUNK_BLOCKS]
        rms[first:first + len(chunk)] = np.sqrt(np.mean(np.square(chunk), axis=1))
        crossings[first:first + len(chunk)] = np.count_nonzero(
            chunk[:, :-1] * chunk[:, 1:] < 0, axis=1
        )

    block_duration = block_size / buffer.sample_rate
    zcr = crossings / block_duration

    logger.info("Analyzed %d blocks (block=%d, hop=%d)", len(starts), block_size, hop_size)
    return BufferAnalysis(starts, rms, zcr, buffer.sample_rate, block_size, hop_size)


def drop_silent_blocks(analysis: BufferAnalysis, threshold_db: float = -40.0) -> BufferAnalysis:
    """Remove blocks whose RMS level is below a threshold.

    Args:
        analysis: Analysis to filter
        threshold_db: Silence threshold in decibels (default: -40.0 dB)

    Returns:
        New BufferAnalysis with the parallel arrays filtered together
    """
    rms_db = 20 * np.log10(analysis.rms + 1e-10)
    keep = rms_db >= threshold_db
    dropped = len(analysis) - int(np.count_nonzero(keep))
    if dropped:
        logger.info("Discarded %d silent blocks below %.1f dB", dropped, threshold_db)

    return BufferAnalysis(
        analysis.block_starts[keep],
        analysis.rms[keep],
        analysis.zcr[keep],
        analysis.sample_rate,
        analysis.block_size,
        analysis.hop_size,
    )


def analyze_file(
    file_path: str,
    block_size: int = DEFAULT_BLOCK_SIZE,
    hop_size: int = DEFAULT_HOP_SIZE,
    target_sr: Optional[int] = None,
    silence_db: Optional[float] = None,
    progress: bool = False,
) -> Tuple[SampleBuffer, BufferAnalysis]:
    """Load a file and analyze it.

    Args:
        file_path: Path to the audio file
        block_size: Block length in samples
        hop_size: Distance between consecutive block starts
        target_sr: Resample to this rate when given
        silence_db: Drop blocks quieter than this level when given
        progress: Show a tqdm progress bar during analysis

    Returns:
        Tuple of (buffer, analysis)
    """
    buffer = load_sample_buffer(file_path, target_sr=target_sr)
    analysis = analyze_buffer(buffer, block_size, hop_size, progress=progress)
    if silence_db is not None:
        analysis = drop_silent_blocks(analysis, silence_db)
    return buffer, analysis
