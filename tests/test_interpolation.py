import numpy as np
import pytest

from hydroline.interpolation import (
    MonotoneCubicInterpolator,
    linear_interpolate,
    monotone_cubic_interpolate,
)

TEMPERATURES = [0.0, 10.0, 20.0, 30.0, 40.0, 50.0]
VISCOSITY = [1.792, 1.307, 1.002, 0.798, 0.653, 0.547]
STEP = [0.0, 1.0, 2.0, 3.0, 4.0]
STEP_VALUES = [0.0, 0.0, 1.0, 1.0, 1.0]


class TestLinearInterpolate:
    def test_midpoint(self):
        result = linear_interpolate([0.0, 10.0], [1.0, 3.0], 5.0)
        assert result.value == pytest.approx(2.0)
        assert result.clamped is False
        assert result.warning is None

    def test_exact_at_knots(self):
        for x, y in zip(TEMPERATURES, VISCOSITY):
            assert linear_interpolate(TEMPERATURES, VISCOSITY, x).value == pytest.approx(y)

    def test_clamps_below_and_above(self):
        below = linear_interpolate(TEMPERATURES, VISCOSITY, -5.0)
        above = linear_interpolate(TEMPERATURES, VISCOSITY, 80.0)
        assert below.value == pytest.approx(VISCOSITY[0])
        assert above.value == pytest.approx(VISCOSITY[-1])
        assert below.clamped and above.clamped
        assert "clamped" in below.warning

    def test_extrapolates_when_asked(self):
        result = linear_interpolate([0.0, 10.0], [0.0, 10.0], 15.0, extrapolate=True)
        assert result.value == pytest.approx(15.0)
        assert result.clamped is False
        assert "extrapolated" in result.warning

    def test_single_point_table(self):
        assert linear_interpolate([5.0], [2.0], 5.0).value == 2.0
        assert linear_interpolate([5.0], [2.0], 9.0).clamped is True


class TestTableValidation:
    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            linear_interpolate([0.0, 1.0], [1.0], 0.5)

    def test_empty_table(self):
        with pytest.raises(ValueError):
            MonotoneCubicInterpolator([], [])

    def test_not_increasing(self):
        with pytest.raises(ValueError):
            MonotoneCubicInterpolator([0.0, 2.0, 1.0], [1.0, 2.0, 3.0])

    def test_duplicate_x(self):
        with pytest.raises(ValueError):
            linear_interpolate([0.0, 0.0, 1.0], [1.0, 2.0, 3.0], 0.5)


class TestMonotoneCubic:
    def test_exact_at_knots(self):
        interp = MonotoneCubicInterpolator(TEMPERATURES, VISCOSITY)
        for x, y in zip(TEMPERATURES, VISCOSITY):
            assert interp(x).value == pytest.approx(y, abs=1e-12)

    def test_monotone_data_stays_monotone(self):
        interp = MonotoneCubicInterpolator(TEMPERATURES, VISCOSITY)
        values = [interp(x).value for x in np.linspace(0.0, 50.0, 501)]
        assert all(b <= a + 1e-12 for a, b in zip(values, values[1:]))

    def test_no_overshoot_on_step(self):
        interp = MonotoneCubicInterpolator(STEP, STEP_VALUES)
        for x in np.linspace(0.0, 4.0, 401):
            value = interp(float(x)).value
            assert -1e-12 <= value <= 1.0 + 1e-12

    def test_stays_within_bracketing_values(self):
        interp = MonotoneCubicInterpolator(TEMPERATURES, VISCOSITY)
        for i in range(len(TEMPERATURES) - 1):
            x = (TEMPERATURES[i] + TEMPERATURES[i + 1]) / 2
            value = interp(x).value
            assert VISCOSITY[i + 1] <= value <= VISCOSITY[i]

    def test_two_points_fall_back_to_linear(self):
        interp = MonotoneCubicInterpolator([0.0, 10.0], [0.0, 5.0])
        assert interp.slopes is None
        assert interp(4.0).value == pytest.approx(2.0)

    def test_out_of_range_is_clamped_with_warning(self):
        result = monotone_cubic_interpolate(TEMPERATURES, VISCOSITY, 70.0)
        assert result.clamped is True
        assert result.value == pytest.approx(VISCOSITY[-1])
        assert result.warning is not None

    def test_length(self):
        assert len(MonotoneCubicInterpolator(TEMPERATURES, VISCOSITY)) == 6
