import numpy as np
import pytest

from concat_map.build import SampleBuffer, analyze_buffer
from concat_map.engine import ControlPoint
from concat_map.errors import EmptyIndexError
from concat_map.index import FeatureIndex


def _brute_force(norm_x, norm_y, x, y) -> int:
    best, best_d2 = None, float("inf")
    for i in range(len(norm_x)):
        d2 = (norm_x[i] - x) ** 2 + (norm_y[i] - y) ** 2
        if d2 < best_d2:
            best, best_d2 = i, d2
    return best


def _random_index(n: int, seed: int, use_kdtree: bool = True) -> FeatureIndex:
    rng = np.random.default_rng(seed)
    return FeatureIndex(np.arange(n) * 512, rng.random(n), rng.random(n), 44100, use_kdtree)


@pytest.mark.parametrize("use_kdtree", [True, False])
def test_nearest_matches_linear_scan(use_kdtree: bool) -> None:
    index = _random_index(300, seed=11, use_kdtree=use_kdtree)
    rng = np.random.default_rng(12)
    for x, y in rng.random((200, 2)):
        expected = _brute_force(index.norm_x, index.norm_y, x, y)
        assert index.nearest(ControlPoint(x, y)) == expected


@pytest.mark.parametrize("use_kdtree", [True, False])
def test_nearest_tie_goes_to_lowest_index(use_kdtree: bool) -> None:
    # Blocks 1 and 3 are both 0.25 away from (0.5, 0.5)
    index = FeatureIndex(
        [0, 100, 200, 300],
        [0.0, 0.25, 1.0, 0.75],
        [0.0, 0.5, 1.0, 0.5],
        100,
        use_kdtree,
    )
    assert index.nearest((0.5, 0.5)) == 1


@pytest.mark.parametrize("use_kdtree", [True, False])
def test_duplicate_points_resolve_to_first(use_kdtree: bool) -> None:
    index = FeatureIndex([0, 1, 2], [0.3, 0.3, 0.3], [0.6, 0.6, 0.6], 1, use_kdtree)
    assert index.query((0.9, 0.1))[0] == 0


def test_exact_match_returns_index_with_zero_distance() -> None:
    index = _random_index(6, seed=4)
    point = ControlPoint(float(index.norm_x[2]), float(index.norm_y[2]))
    assert index.query(point) == (2, 0.0)
    assert index.nearest(point) == 2


def test_empty_index_raises() -> None:
    index = FeatureIndex([], [], [], 44100)
    assert index.is_empty
    assert len(index) == 0
    with pytest.raises(EmptyIndexError):
        index.nearest((0.5, 0.5))


def test_buffer_offset_seconds() -> None:
    index = FeatureIndex([0, 22050, 44100], [0.0, 0.5, 1.0], [0.0, 0.5, 1.0], 44100)
    assert index.buffer_offset_seconds(0) == 0.0
    assert index.buffer_offset_seconds(1) == pytest.approx(0.5)
    assert index.buffer_offset_seconds(2) == pytest.approx(1.0)


def test_from_analysis_uses_normalized_features() -> None:
    samples = np.random.default_rng(8).uniform(-1, 1, 8192).astype(np.float32)
    samples[:2048] *= 0.01
    analysis = analyze_buffer(SampleBuffer(samples, 44100), block_size=2048, hop_size=512)

    index = FeatureIndex.from_analysis(analysis)
    norm_x, norm_y = index.points()
    assert len(index) == len(analysis)
    assert norm_x.min() == 0.0 and norm_x.max() == 1.0
    assert norm_y.min() == 0.0 and norm_y.max() == 1.0
    # Quietest block sits at the bottom of the map
    assert int(np.argmin(norm_y)) == 0
    assert index.block_starts.tolist() == analysis.block_starts.tolist()


def test_points_returns_copies() -> None:
    index = _random_index(5, seed=2)
    norm_x, _ = index.points()
    norm_x[:] = -1.0
    assert index.norm_x.min() >= 0.0


def test_mismatched_lengths_rejected() -> None:
    with pytest.raises(ValueError):
        FeatureIndex([0, 1], [0.1], [0.2, 0.3], 44100)
