import math

import numpy as np
import pytest

from src.calibration import (
    CalibrationRange,
    CalibrationSegment,
    baseline_voltage,
    build_ranges,
    build_segments,
    calibrate,
    calibration_commands,
    concentration,
    overall_fit,
    usable_sensitivity,
)
from src.diagnostics import StageResult
from src.edges import Plateau
from src.exceptions import DegenerateCalibrationError
from src.optimizer import OptimizedRegion


def _range(temp, volt, start=0.0):
    return CalibrationRange(
        start_time=start,
        end_time=start + 300.0,
        num_samples=50,
        mean_temperature=temp,
        mean_voltage=volt,
        stdev_voltage=0.001,
    )


def _region(rising, falling, volt=0.25):
    return OptimizedRegion(
        rising=rising,
        falling=falling,
        mean_voltage=volt,
        stdev_voltage=0.001,
        num_samples=falling - rising,
        slope=0.0,
        r_squared=0.1,
        heuristic_score=0.9,
        plateau=Plateau(rising, falling),
    )


SEGMENTS = [
    CalibrationSegment(temperature=20.0, slope=0.002, intercept=0.21),
    CalibrationSegment(temperature=25.0, slope=0.004, intercept=0.16),
]


class TestSegments:
    def test_adjacent_pairs_anchored_at_lower_temperature(self):
        segs = build_segments([_range(20, 0.25), _range(25, 0.26), _range(30, 0.28)])
        assert len(segs) == 2
        assert segs[0].temperature == pytest.approx(20.0)
        assert segs[0].slope == pytest.approx(0.002)
        assert segs[0].intercept == pytest.approx(0.21)
        assert segs[1].temperature == pytest.approx(25.0)
        assert segs[1].slope == pytest.approx(0.004)
        assert segs[1].intercept == pytest.approx(0.16)

    def test_unsorted_ranges_are_ordered_by_temperature(self):
        segs = build_segments([_range(30, 0.28), _range(20, 0.25), _range(25, 0.26)])
        assert [s.temperature for s in segs] == pytest.approx([20.0, 25.0])

    def test_segments_pass_through_both_range_means(self):
        lo, hi = _range(21.3, 0.31), _range(28.9, 0.27)
        (seg,) = build_segments([lo, hi])
        assert seg.slope * lo.mean_temperature + seg.intercept == pytest.approx(0.31)
        assert seg.slope * hi.mean_temperature + seg.intercept == pytest.approx(0.27)

    def test_single_range_has_no_segment(self):
        assert build_segments([_range(20, 0.25)]) == []

    def test_duplicate_temperatures_raise(self):
        with pytest.raises(DegenerateCalibrationError):
            build_segments([_range(20, 0.25), _range(20, 0.26)])


class TestBaselineAndConcentration:
    def test_piecewise_evaluation_and_clamping(self):
        out = baseline_voltage(SEGMENTS, [10.0, 22.0, 27.0, 40.0])
        assert list(out) == pytest.approx([0.23, 0.254, 0.268, 0.32])

    def test_no_segments_gives_nan(self):
        assert np.isnan(baseline_voltage([], [20.0])).all()

    def test_concentration_scales_by_sensitivity(self):
        out = concentration([0.264], [22.0], SEGMENTS, 0.005)
        assert out[0] == pytest.approx(2.0)

    @pytest.mark.parametrize("sensitivity", [None, 0.0])
    def test_concentration_unavailable_is_nan(self, sensitivity):
        assert np.isnan(concentration([0.3, 0.4], [22.0, 23.0], SEGMENTS, sensitivity)).all()


class TestCommands:
    def test_format_with_sensitivity(self):
        cmds = calibration_commands("NO2", 0.0123, SEGMENTS)
        assert cmds == [
            "no2_sen 0.01230000",
            "no2_blv clear",
            "no2_blv add 20.00000000 0.00200000 0.21000000",
            "no2_blv add 25.00000000 0.00400000 0.16000000",
        ]

    def test_missing_sensitivity_omits_sen_command(self, caplog):
        cmds = calibration_commands("CO", None, SEGMENTS[:1])
        assert cmds[0] == "co_blv clear"
        assert not any(c.startswith("co_sen") for c in cmds)
        assert "omitting co_sen" in caplog.text

    @pytest.mark.parametrize("sensitivity", [0.0, float("nan")])
    def test_unusable_sensitivity_omits_sen_command(self, sensitivity):
        cmds = calibration_commands("NO2", sensitivity, SEGMENTS[:1])
        assert cmds == ["no2_blv clear", "no2_blv add 20.00000000 0.00200000 0.21000000"]

    def test_usable_sensitivity(self):
        assert usable_sensitivity(0.0123) == 0.0123
        assert usable_sensitivity(None) is None
        assert usable_sensitivity(0.0) is None
        assert usable_sensitivity(float("inf")) is None


class TestRanges:
    def test_short_ranges_are_dropped(self):
        t = np.arange(100) * 6.0
        temp = np.full(100, 20.0)
        result = StageResult(label="ranges")
        ranges = build_ranges(
            [_region(10, 40), _region(50, 55), _region(60, 70)],
            t,
            temp,
            minimum_sample_count=10,
            minimum_duration_minutes=1.0,
            result=result,
        )
        assert len(ranges) == 1
        assert ranges[0].start_time == 60.0
        assert ranges[0].end_time == 39 * 6.0
        assert ranges[0].num_samples == 30
        assert result.dropped_count == 2
        assert len(result.warnings) == 2

    def test_range_temperature_is_mean_of_filtered_window(self):
        t = np.arange(50) * 6.0
        temp = np.linspace(20.0, 25.0, 50)
        (rng,) = build_ranges([_region(10, 30)], t, temp, 1, 0.0)
        assert rng.mean_temperature == pytest.approx(temp[10:30].mean())
        assert rng.duration_minutes == pytest.approx(19 * 6.0 / 60.0)


class TestOverallFit:
    def test_needs_three_ranges(self):
        assert overall_fit([_range(20, 0.25), _range(25, 0.26)]) == {}

    def test_linear_ranges(self):
        fit = overall_fit([_range(20, 0.25), _range(25, 0.26), _range(30, 0.27)])
        assert fit["slope"] == pytest.approx(0.002)
        assert fit["intercept"] == pytest.approx(0.21)
        assert fit["r_squared"] == pytest.approx(1.0)
        assert fit["n"] == 3


def test_calibrate_builds_full_record():
    t = np.arange(400) * 6.0
    temp = np.concatenate([np.full(200, 20.0), np.full(200, 30.0)])
    cal = calibrate(
        [_region(250, 300, 0.27), _region(50, 100, 0.25)],
        t,
        temp,
        sensor="NO2",
        sensitivity=0.01,
        minimum_sample_count=10,
        minimum_duration_minutes=1.0,
    )
    assert [r.mean_temperature for r in cal.ranges] == [20.0, 30.0]
    assert len(cal.segments) == 1
    assert cal.segments[0].slope == pytest.approx(0.002)
    assert cal.commands[0] == "no2_sen 0.01000000"
    assert len(cal.commands) == 3
    assert cal.sensitivity == 0.01
    assert cal.overall_fit == {}
    assert not math.isnan(cal.segments[0].intercept)


def test_two_point_calibration():
    (seg,) = build_segments([_range(40.0, 2.0), _range(20.0, 1.0)])
    assert seg.temperature == pytest.approx(20.0)
    assert seg.slope == pytest.approx(0.05)
    assert seg.intercept == pytest.approx(0.0)
