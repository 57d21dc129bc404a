"""
Tests for threshold pace detection.

The detector is pure, so most tests build ThresholdWorkout lists directly;
the last class runs it against stored activities.
"""
from datetime import date, timedelta

import pytest

from services.threshold_detector import (
    MIN_CONFIDENCE_TO_STORE,
    PaceHrPoint,
    ThresholdSplit,
    ThresholdWorkout,
    compute_coefficient_of_variation,
    detect_threshold,
    filter_valid_workouts,
    find_deflection_point,
    find_sustainability_boundary,
    identify_threshold_efforts,
    load_threshold_workouts,
    update_athlete_threshold,
    validate_against_vdot,
    with_overrides,
)

AS_OF = date(2026, 3, 31)


def _workout(days_ago, pace, duration_s, avg_hr=None, splits=None, elevation_ft=None):
    return ThresholdWorkout(
        date=AS_OF - timedelta(days=days_ago),
        distance_miles=duration_s / pace,
        duration_seconds=duration_s,
        average_pace_seconds_per_mile=pace,
        average_heart_rate=avg_hr,
        elevation_gain_feet=elevation_ft,
        splits=splits or [],
    )


def _training_block():
    """Six easy 45-minute runs at 9:00/mi and three 30-minute tempos at 7:10/mi."""
    easy = [_workout(i * 3 + 1, 540, 2700) for i in range(6)]
    tempo = [_workout(i * 7 + 2, 430, 1800) for i in range(3)]
    return easy + tempo


class TestHelpers:
    @pytest.mark.parametrize("values,expected", [
        ([], 0.0),
        ([5], 0.0),
        ([10, 10, 10], 0.0),
        ([1, 3], 0.5),
    ])
    def test_coefficient_of_variation(self, values, expected):
        assert compute_coefficient_of_variation(values) == pytest.approx(expected)

    def test_filter_drops_implausible_and_old_runs(self):
        workouts = [
            _workout(1, 540, 2700),
            _workout(1, 1000, 2700),    # walking pace
            _workout(1, 540, 200),      # too short
            _workout(400, 540, 2700),   # outside the window
        ]
        workouts.append(ThresholdWorkout(
            date=AS_OF, distance_miles=0.3, duration_seconds=600, average_pace_seconds_per_mile=540,
        ))
        assert len(filter_valid_workouts(workouts, AS_OF)) == 1

    def test_config_overrides(self):
        config = with_overrides(max_age_days=30)
        assert config.max_age_days == 30
        assert config.min_hr_workouts == 5


class TestThresholdEfforts:
    def test_tempos_identified(self):
        efforts = identify_threshold_efforts(_training_block())
        assert len(efforts) == 3
        assert all(e.pace == 430 for e in efforts)
        assert all(0 < e.score <= 1 for e in efforts)

    def test_hilly_runs_excluded(self):
        workouts = _training_block()
        for w in workouts:
            if w.average_pace_seconds_per_mile == 430:
                w.elevation_gain_feet = w.distance_miles * 120
        assert identify_threshold_efforts(workouts) == []

    def test_uneven_splits_excluded(self):
        workouts = _training_block()
        for w in workouts:
            if w.average_pace_seconds_per_mile == 430:
                w.splits = [ThresholdSplit(380, 600), ThresholdSplit(480, 600)]
        assert identify_threshold_efforts(workouts) == []


class TestDeflection:
    @staticmethod
    def _points(hr_by_pace):
        return [PaceHrPoint(pace=p, heart_rate=hr, workout_date=AS_OF) for p, hr in hr_by_pace.items()]

    def test_slope_break_found(self):
        """HR climbs 1 bpm per bin until 9:15/mi, then 5 bpm per bin."""
        points = self._points({600: 130, 585: 131, 570: 132, 555: 133, 540: 138, 525: 143, 510: 148})
        assert find_deflection_point(points) == 555

    def test_linear_response_has_no_deflection(self):
        points = self._points({600: 130, 585: 133, 570: 136, 555: 139, 540: 142, 525: 145, 510: 148})
        assert find_deflection_point(points) is None

    def test_too_few_points(self):
        points = self._points({600: 130, 570: 132, 540: 138})
        assert find_deflection_point(points) is None


class TestSustainability:
    @staticmethod
    def _run(pace, hrs):
        splits = [ThresholdSplit(pace, 480, hr) for hr in hrs]
        return _workout(1, pace, 1920, splits=splits)

    def test_boundary_between_drifting_and_steady_runs(self):
        workouts = [
            self._run(500, [140, 141, 142, 143]),
            self._run(480, [145, 146, 147, 148]),
            self._run(420, [150, 152, 160, 162]),
            self._run(400, [155, 158, 166, 170]),
        ]
        assert find_sustainability_boundary(workouts) == 450

    def test_needs_both_kinds_of_run(self):
        workouts = [
            self._run(500, [140, 141, 142, 143]),
            self._run(480, [145, 146, 147, 148]),
            self._run(470, [145, 146, 147, 148]),
        ]
        assert find_sustainability_boundary(workouts) is None


class TestDetectThreshold:
    def test_insufficient_history(self):
        estimate = detect_threshold(_training_block()[:2], as_of=AS_OF)
        assert estimate.method == "insufficient_data"
        assert estimate.is_usable is False
        assert estimate.confidence == 0.0
        assert estimate.evidence.workouts_analyzed == 2

    def test_old_history_is_insufficient(self):
        old = [_workout(200 + i, 540, 2700) for i in range(5)]
        assert detect_threshold(old, as_of=AS_OF).method == "insufficient_data"

    def test_threshold_from_efforts(self):
        estimate = detect_threshold(_training_block(), as_of=AS_OF)
        assert estimate.method == "threshold_efforts"
        assert estimate.threshold_pace_seconds_per_mile == 430
        assert estimate.confidence >= MIN_CONFIDENCE_TO_STORE
        assert estimate.evidence.signals_used == 1
        assert estimate.evidence.workouts_analyzed == 9
        assert estimate.evidence.latest == AS_OF - timedelta(days=1)

    def test_vdot_comparison_attached(self):
        estimate = detect_threshold(_training_block(), as_of=AS_OF, vdot=50)
        comparison = estimate.vdot_comparison
        assert comparison is not None
        assert comparison.estimated_threshold_pace == 430
        assert comparison.difference_seconds == 430 - comparison.vdot_threshold_pace

    def test_to_dict_is_plain(self):
        data = detect_threshold(_training_block(), as_of=AS_OF).to_dict()
        assert data["method"] == "threshold_efforts"
        assert isinstance(data["evidence"]["threshold_efforts"], list)


class TestVdotAgreement:
    @pytest.mark.parametrize("offset,agreement", [(0, "strong"), (15, "moderate"), (-40, "weak")])
    def test_agreement_bands(self, offset, agreement):
        base = validate_against_vdot(400, 50).vdot_threshold_pace
        assert validate_against_vdot(base + offset, 50).agreement == agreement


class TestStoredActivities:
    """Detection over the database and storing the result on the athlete."""

    @staticmethod
    def _store_block(make_activity, athlete):
        for i in range(6):
            make_activity(athlete, AS_OF - timedelta(days=i * 3 + 1), distance_m=5 * 1609.34, duration_s=2700)
        for i in range(3):
            make_activity(
                athlete, AS_OF - timedelta(days=i * 7 + 2),
                distance_m=1609.34 * 1800 / 430, duration_s=1800, workout_type="tempo",
            )

    def test_load_converts_activities(self, db_session, test_athlete, make_activity):
        self._store_block(make_activity, test_athlete)
        make_activity(test_athlete, AS_OF, distance_m=None, duration_s=600)
        db_session.commit()

        workouts = load_threshold_workouts(db_session, test_athlete.id, as_of=AS_OF)
        assert len(workouts) == 9
        assert workouts[0].date >= workouts[-1].date

    def test_update_stores_confident_estimate(self, db_session, test_athlete, make_activity):
        self._store_block(make_activity, test_athlete)
        db_session.commit()

        estimate = update_athlete_threshold(db_session, test_athlete, as_of=AS_OF)
        assert estimate.is_usable
        assert test_athlete.threshold_pace_per_mile == 430.0
        assert test_athlete.threshold_confidence == estimate.confidence

    def test_update_leaves_athlete_alone_without_data(self, db_session, test_athlete):
        estimate = update_athlete_threshold(db_session, test_athlete, as_of=AS_OF)
        assert estimate.method == "insufficient_data"
        assert test_athlete.threshold_pace_per_mile is None
