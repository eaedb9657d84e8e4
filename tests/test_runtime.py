import numpy as np
import pytest

from concat_map import build
from concat_map.build import SampleBuffer
from concat_map.engine import ConcatEngine, ControlContext
from concat_map.errors import EmptyIndexError
from concat_map.grain import make_grain
from concat_map.index import FeatureIndex
from concat_map.runtime import GrainMixer, GrainPlayer, run_engine
from concat_map.scheduler import Scheduler


def _buffer(value: float = 1.0, n: int = 1000, sr: int = 100) -> SampleBuffer:
    return SampleBuffer(np.full(n, value, dtype=np.float32), sr)


def test_clock_advances_with_rendered_frames() -> None:
    mixer = GrainMixer(_buffer())
    assert mixer.now() == 0.0
    mixer.render(50)
    assert mixer.now() == pytest.approx(0.5)
    mixer.render(25)
    assert mixer.frames_rendered == 75


def test_grain_plays_at_its_start_frame() -> None:
    mixer = GrainMixer(_buffer(0.5))
    mixer.submit(make_grain(0.1, 0.05, 0.0))

    out = mixer.render(20)
    expected = np.zeros(20)
    expected[10:15] = 0.5 * np.array([0.0, 0.5, 1.0, 0.5, 0.0])
    assert out.tolist() == pytest.approx(expected.tolist())
    assert mixer.active_voices == 0


def test_grain_spanning_blocks_continues() -> None:
    mixer = GrainMixer(_buffer())
    mixer.submit(make_grain(0.0, 0.04, 0.0))
    first = mixer.render(2)
    assert mixer.active_voices == 1
    second = mixer.render(2)
    combined = np.concatenate([first, second])
    assert combined.tolist() == pytest.approx([0.0, 2 / 3, 2 / 3, 0.0])


def test_late_grain_starts_immediately_with_attack_intact() -> None:
    mixer = GrainMixer(_buffer())
    mixer.render(50)
    mixer.submit(make_grain(0.1, 0.05, 0.0))
    out = mixer.render(10)
    assert out[:5].tolist() == pytest.approx([0.0, 0.5, 1.0, 0.5, 0.0])


def test_overlapping_grains_are_summed_and_soft_clipped() -> None:
    mixer = GrainMixer(_buffer(0.9))
    for _ in range(3):
        mixer.submit(make_grain(0.0, 0.03, 0.0))
    out = mixer.render(3)
    # Middle sample sums to 2.7 and is compressed below 1
    assert 0.9 < out[1] <= 1.0
    assert np.all(np.abs(out) <= 1.0)


def test_gain_ramp_is_linear_and_settles() -> None:
    mixer = GrainMixer(_buffer(), gain=1.0)
    mixer.submit(make_grain(0.0, 10.0, 0.0))
    mixer.render(10)

    mixer.set_gain(0.0, ramp_time=0.04)
    before = mixer.render(1)[0]
    assert before == pytest.approx(0.75 * _triangle_at(10, 1000), rel=1e-5)
    mixer.render(3)
    assert mixer.render(2).tolist() == [0.0, 0.0]


def _triangle_at(frame: int, length: int) -> float:
    gains = np.interp(np.arange(length) / (length - 1), [0.0, 0.5, 1.0], [0.0, 1.0, 0.0])
    return float(gains[frame])


def test_immediate_gain_change() -> None:
    mixer = GrainMixer(_buffer(), gain=0.5)
    mixer.submit(make_grain(0.0, 0.05, 0.0))
    assert mixer.render(5)[2] == pytest.approx(0.5)
    with pytest.raises(ValueError):
        mixer.set_gain(1.0, ramp_time=-1.0)


def test_player_callback_fills_mono_output() -> None:
    mixer = GrainMixer(_buffer())
    player = GrainPlayer(mixer)
    mixer.submit(make_grain(0.0, 0.03, 0.0))
    outdata = np.full((4, 1), 9.0, dtype=np.float32)
    player.callback(outdata, 4, None, None)
    assert outdata[:, 0].tolist() == pytest.approx([0.0, 1.0, 0.0, 0.0])


def test_engine_scheduler_and_mixer_together() -> None:
    sr = 1000
    samples = np.concatenate([np.full(500, 0.2), np.full(500, -0.8)]).astype(np.float32)
    buffer = SampleBuffer(samples, sr)
    index = FeatureIndex([0, 500], [0.0, 1.0], [0.0, 1.0], sr)

    mixer = GrainMixer(buffer)
    control = ControlContext()
    control.set_point(0.9, 0.9)
    engine = ConcatEngine(index, buffer, control, mixer.submit, period=0.05, duration=0.02, jitter=0.0)
    scheduler = Scheduler(mixer.now, lookahead=0.01)
    engine.start(scheduler)

    rendered = []
    for _ in range(20):
        scheduler.process()
        rendered.append(mixer.render(10))
    out = np.concatenate(rendered)

    assert engine.grains_emitted >= 3
    # Only the second half of the buffer (negative samples) was selected
    assert out.min() < -0.5
    assert out.max() <= 0.0


# -----------------------------------------------------------------------------
# run_engine wiring
# -----------------------------------------------------------------------------

@pytest.fixture
def fake_stream(monkeypatch: pytest.MonkeyPatch) -> dict:
    """Replace the sounddevice stream and record start/stop calls."""
    calls = {"start": 0, "stop": 0, "start_error": None}

    def start_stream(self):
        calls["start"] += 1
        if calls["start_error"] is not None:
            raise calls["start_error"]

    def stop_stream(self):
        calls["stop"] += 1

    monkeypatch.setattr(GrainPlayer, "start_stream", start_stream)
    monkeypatch.setattr(GrainPlayer, "stop_stream", stop_stream)
    return calls


def _load_samples(monkeypatch: pytest.MonkeyPatch, samples: np.ndarray, sr: int = 8000) -> None:
    monkeypatch.setattr(build, "load_sample_buffer",
                        lambda file_path, target_sr=None: SampleBuffer(samples, sr))


def _noise(n: int) -> np.ndarray:
    return np.random.default_rng(1).uniform(-0.5, 0.5, n).astype(np.float32)


def test_run_engine_without_point_idles(monkeypatch: pytest.MonkeyPatch, fake_stream: dict) -> None:
    _load_samples(monkeypatch, _noise(8192))

    engine = run_engine("loop.wav", seconds=0.0)

    assert engine.grains_emitted == 0
    assert fake_stream == {"start": 1, "stop": 1, "start_error": None}


def test_run_engine_fires_grains_within_lookahead(monkeypatch: pytest.MonkeyPatch, fake_stream: dict) -> None:
    _load_samples(monkeypatch, _noise(8192))

    engine = run_engine("loop.wav", x=0.5, y=0.5, period=0.05, seconds=0.0, lookahead=0.1)

    # Ticks at 0.0, 0.05 and 0.1 fall inside the first pass
    assert engine.grains_emitted == 3
    assert fake_stream["stop"] == 1


def test_run_engine_refuses_empty_analysis_before_opening_device(
    monkeypatch: pytest.MonkeyPatch, fake_stream: dict
) -> None:
    _load_samples(monkeypatch, np.zeros(100, dtype=np.float32))

    with pytest.raises(EmptyIndexError):
        run_engine("short.wav", x=0.5, y=0.5, seconds=0.0)
    assert fake_stream["start"] == 0


def test_run_engine_refuses_all_silent_analysis(monkeypatch: pytest.MonkeyPatch, fake_stream: dict) -> None:
    _load_samples(monkeypatch, np.zeros(8192, dtype=np.float32))

    with pytest.raises(EmptyIndexError):
        run_engine("silence.wav", x=0.5, y=0.5, seconds=0.0, silence_db=-40.0)
    assert fake_stream["start"] == 0


def test_run_engine_closes_stream_when_playback_fails(
    monkeypatch: pytest.MonkeyPatch, fake_stream: dict
) -> None:
    _load_samples(monkeypatch, _noise(8192))
    fake_stream["start_error"] = RuntimeError("device busy")

    with pytest.raises(RuntimeError, match="device busy"):
        run_engine("loop.wav", x=0.5, y=0.5, seconds=0.0)
    assert fake_stream["stop"] == 1


def test_run_engine_interrupt_shuts_down_cleanly(monkeypatch: pytest.MonkeyPatch, fake_stream: dict) -> None:
    _load_samples(monkeypatch, _noise(8192))
    fake_stream["start_error"] = KeyboardInterrupt()

    engine = run_engine("loop.wav", x=0.5, y=0.5, seconds=0.0)

    assert engine.grains_emitted == 0
    assert fake_stream["stop"] == 1
