import numpy as np
import pytest

from src.diagnostics import StageResult
from src.edges import (
    DebounceState,
    EdgeDirection,
    Plateau,
    balance_edges,
    debounce_step,
    detect_edges,
    find_plateaus,
    threshold_flat,
)


class TestThreshold:
    def test_flat_within_epsilon_inclusive(self):
        out = threshold_flat([0.01, -0.2, 0.05, -0.05, 0.06], 0.05)
        assert list(out) == [1, 0, 1, 1, 0]

    def test_negative_epsilon_raises(self):
        with pytest.raises(ValueError):
            threshold_flat([0.0], -0.01)


class TestDebounce:
    def test_change_after_spacing_registers(self):
        state, direction = debounce_step(DebounceState(0, 0), 5, 1, 3)
        assert direction is EdgeDirection.RISING
        assert state == DebounceState(current_level=1, last_edge_index=5)

    def test_change_too_soon_is_discarded(self):
        start = DebounceState(1, 5)
        state, direction = debounce_step(start, 7, 0, 3)
        assert direction is None
        assert state == start

    def test_short_pulse_near_start_is_suppressed(self):
        levels = [0] * 3 + [1] * 2 + [0] * 20
        det = detect_edges(levels, 10)
        assert det.rising == []
        assert det.falling == []
        assert det.spurious == [3, 4]
        assert not det.levels.any()

    def test_short_pulse_after_quiet_stretch_registers_rising_edge(self):
        levels = [0] * 50 + [1] * 2 + [0] * 50
        det = detect_edges(levels, 10)
        assert det.rising == [50]
        assert det.falling == [61]
        assert det.spurious == list(range(52, 61))

    def test_clean_pulse_registers_both_edges(self):
        levels = [0] * 15 + [1] * 30 + [0] * 30
        det = detect_edges(levels, 10)
        assert det.rising == [15]
        assert det.falling == [45]
        assert list(det.levels) == levels
        assert [t.index for t in det.transitions()] == [15, 45]

    def test_early_change_registers_once_spacing_elapses(self):
        levels = [0] * 5 + [1] * 30
        det = detect_edges(levels, 10)
        assert det.rising == [11]
        assert det.spurious == list(range(5, 11))
        assert not det.levels[:11].any()
        assert det.levels[11:].all()

    def test_edges_respect_minimum_spacing(self):
        rng = np.random.default_rng(3)
        levels = rng.integers(0, 2, 300)
        det = detect_edges(levels, 7)
        edges = sorted(det.rising + det.falling)
        assert all(b - a > 7 for a, b in zip(edges, edges[1:]))

    def test_negative_spacing_raises(self):
        with pytest.raises(ValueError):
            detect_edges([0, 1], -1)


class TestBalance:
    def test_leading_falling_edges_dropped(self):
        assert balance_edges([20], [5, 40], 99) == ([20], [40])

    def test_missing_final_falling_edge_is_backfilled(self):
        assert balance_edges([10, 50], [30], 99) == ([10, 50], [30, 99])

    def test_larger_mismatch_is_truncated(self):
        assert balance_edges([10, 50, 80], [30], 99) == ([10], [30])

    def test_empty(self):
        assert balance_edges([], [], 0) == ([], [])


class TestFindPlateaus:
    def test_pairs_edges_and_backfills_open_plateau(self, caplog):
        flat = [0] * 20 + [1] * 30 + [0] * 20 + [1] * 30
        result = StageResult(label="edges")
        plateaus, det = find_plateaus(flat, 5, minimum_pairs=5, result=result)
        assert plateaus == [Plateau(20, 50), Plateau(70, 99)]
        assert det.rising == [20, 70]
        assert det.falling == [50, 99]
        assert result.output_count == 2
        assert result.warnings
        assert "Only 2 plateau pairs" in caplog.text

    def test_log_starting_flat_drops_leading_falling_edge(self):
        flat = [1] * 30 + [0] * 20 + [1] * 30 + [0] * 20
        plateaus, _ = find_plateaus(flat, 5, minimum_pairs=1)
        assert plateaus == [Plateau(50, 80)]

    def test_plateau_invariants(self):
        flat = ([0] * 25 + [1] * 40) * 4
        plateaus, _ = find_plateaus(flat, 10, minimum_pairs=4)
        assert len(plateaus) == 4
        for p in plateaus:
            assert p.falling > p.rising
            assert p.length == p.falling - p.rising
        for a, b in zip(plateaus, plateaus[1:]):
            assert a.falling < b.rising
