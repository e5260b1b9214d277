"""
test_severity.py — Ordinal impact scoring.

Covers:
    • Magnitude bands for hail and wind
    • Distance attenuation and the MINOR floor
    • Tornado floor
    • Missing magnitude
    • Monotonicity in distance and magnitude
"""

from __future__ import annotations

import pytest

from stormwatch.app.alerts.models import EventType, Severity
from stormwatch.app.alerts.severity import DEFAULT_POLICY, SeverityPolicy, score_severity


# ═══════════════════════════════════════════════════════════════════════════
# Bands
# ═══════════════════════════════════════════════════════════════════════════

class TestHailBands:

    @pytest.mark.parametrize("size,expected", [
        (0.75, Severity.MINOR),
        (1.00, Severity.MODERATE),
        (1.50, Severity.MODERATE),
        (1.75, Severity.SEVERE),
        (2.50, Severity.CRITICAL),
        (4.00, Severity.CRITICAL),
    ])
    def test_close_range(self, size, expected):
        assert score_severity(EventType.HAIL, 0.5, hail_size_inches=size) == expected

    def test_scenario_a_golf_ball_hail_two_miles(self):
        severity = score_severity(EventType.HAIL, 2.0, hail_size_inches=1.75)
        assert severity >= Severity.SEVERE

    def test_wind_speed_ignored_for_hail(self):
        assert score_severity(
            EventType.HAIL, 0.5, hail_size_inches=1.0, wind_speed_mph=120,
        ) == Severity.MODERATE


class TestWindBands:

    @pytest.mark.parametrize("speed,expected", [
        (40, Severity.MINOR),
        (58, Severity.MODERATE),
        (75, Severity.SEVERE),
        (90, Severity.CRITICAL),
    ])
    def test_close_range(self, speed, expected):
        assert score_severity(EventType.WIND, 2.0, wind_speed_mph=speed) == expected


class TestAttenuation:

    def test_one_level_beyond_three_miles(self):
        assert score_severity(EventType.HAIL, 3.0, hail_size_inches=1.75) == Severity.SEVERE
        assert score_severity(EventType.HAIL, 3.01, hail_size_inches=1.75) == Severity.MODERATE

    def test_two_levels_beyond_ten_miles(self):
        assert score_severity(EventType.HAIL, 12.0, hail_size_inches=2.75) == Severity.MODERATE

    def test_never_below_minor(self):
        assert score_severity(EventType.WIND, 25.0, wind_speed_mph=30) == Severity.MINOR


class TestTornado:

    def test_critical_when_near(self):
        assert score_severity(EventType.TORNADO, 0.4) == Severity.CRITICAL

    def test_floor_is_severe(self):
        assert score_severity(EventType.TORNADO, 9.0) == Severity.SEVERE
        assert score_severity(EventType.TORNADO, 40.0) == Severity.SEVERE


class TestMissingMagnitude:

    def test_scenario_d_wind_without_speed(self):
        assert score_severity(EventType.WIND, 0.8) == Severity.MODERATE
        assert score_severity(EventType.WIND, 3.5) == Severity.MINOR

    def test_hail_without_size(self):
        assert score_severity(EventType.HAIL, 4.0, hail_size_inches=None) == Severity.MINOR

    def test_accepts_string_event_type(self):
        assert score_severity("tornado", 0.1) == Severity.CRITICAL


# ═══════════════════════════════════════════════════════════════════════════
# Monotonicity
# ═══════════════════════════════════════════════════════════════════════════

DISTANCES = [0.0, 0.5, 1.0, 2.0, 3.0, 3.5, 7.0, 10.0, 10.5, 20.0]


class TestMonotonicity:

    @pytest.mark.parametrize("event_type,kwargs", [
        (EventType.HAIL, {"hail_size_inches": 1.0}),
        (EventType.HAIL, {"hail_size_inches": 2.6}),
        (EventType.WIND, {"wind_speed_mph": 80}),
        (EventType.WIND, {}),
        (EventType.TORNADO, {}),
    ])
    def test_non_increasing_with_distance(self, event_type, kwargs):
        scores = [score_severity(event_type, d, **kwargs) for d in DISTANCES]
        assert all(a >= b for a, b in zip(scores, scores[1:]))

    @pytest.mark.parametrize("distance", [0.5, 2.0, 5.0, 15.0])
    def test_non_decreasing_with_hail_size(self, distance):
        sizes = [0.25, 0.75, 1.0, 1.5, 1.75, 2.0, 2.5, 3.0]
        scores = [score_severity(EventType.HAIL, distance, hail_size_inches=s) for s in sizes]
        assert all(a <= b for a, b in zip(scores, scores[1:]))

    @pytest.mark.parametrize("distance", [0.5, 2.0, 5.0, 15.0])
    def test_non_decreasing_with_wind_speed(self, distance):
        speeds = [20, 50, 58, 70, 75, 89, 90, 110]
        scores = [score_severity(EventType.WIND, distance, wind_speed_mph=s) for s in speeds]
        assert all(a <= b for a, b in zip(scores, scores[1:]))


class TestCustomPolicy:

    def test_bands_are_configurable(self):
        strict = SeverityPolicy(hail_bands=((0.5, Severity.CRITICAL),))
        assert score_severity(EventType.HAIL, 0.5, hail_size_inches=0.6, policy=strict) == Severity.CRITICAL
        assert score_severity(EventType.HAIL, 0.5, hail_size_inches=0.6, policy=DEFAULT_POLICY) == Severity.MINOR
