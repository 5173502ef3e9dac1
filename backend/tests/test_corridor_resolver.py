"""Tests for corridor resolution of transit drops."""
from datetime import datetime, timedelta

import pytest

from dropwatch.models import Corridor
from dropwatch.models.base import DropReasonEnum
from dropwatch.modules.corridor_resolver import (
    CoordinateValidationError,
    CorridorKey,
    corridor_key_for,
    find_corridor,
    get_or_create_corridor,
    resolve_traversal,
)
from dropwatch.modules.drop_detector import GapEvent

T0 = datetime(2024, 3, 4, 10, 0, 0)
A = (52.50, 13.40)
B = (52.55, 13.40)


def _gap(start=A, end=B, duration=180, reason=DropReasonEnum.TRANSIT):
    return GapEvent(
        start_ts=T0,
        end_ts=T0 + timedelta(seconds=duration),
        start_lat=start[0],
        start_lon=start[1],
        end_lat=end[0],
        end_lon=end[1],
        duration_sec=duration,
        reason=reason,
    )


class TestResolveTraversal:
    def test_transit_gap_resolves(self):
        candidate = resolve_traversal(_gap(), resolution=7)
        assert candidate is not None
        assert candidate.key.a_cell != candidate.key.b_cell
        assert candidate.key.direction == 0  # due north
        assert candidate.travel_sec == 180
        assert candidate.distance_m == pytest.approx(5_560, rel=0.01)
        assert candidate.avg_speed_kmh == pytest.approx(111.2, rel=0.01)

    @pytest.mark.parametrize("reason", [DropReasonEnum.MICRO, DropReasonEnum.EXTENDED])
    def test_non_transit_never_resolves(self, reason):
        assert resolve_traversal(_gap(reason=reason), resolution=7) is None

    def test_self_loop_discarded(self):
        assert resolve_traversal(_gap(start=A, end=A), resolution=7) is None

    def test_short_movement_discarded(self):
        assert resolve_traversal(_gap(), resolution=7, min_distance_m=10_000) is None

    def test_implausible_speed_discarded(self):
        """5.6 km in 80 s is ~250 km/h."""
        assert resolve_traversal(_gap(duration=80), resolution=7) is None

    def test_out_of_range_coordinate_raises(self):
        with pytest.raises(CoordinateValidationError):
            resolve_traversal(_gap(end=(95.0, 13.40)), resolution=7)

    @pytest.mark.parametrize("reason", [DropReasonEnum.MICRO, DropReasonEnum.EXTENDED])
    def test_out_of_range_coordinate_raises_for_any_reason(self, reason):
        with pytest.raises(CoordinateValidationError):
            resolve_traversal(_gap(start=(52.5, 181.0), reason=reason), resolution=7)

    def test_same_endpoints_same_key(self):
        first = resolve_traversal(_gap(), resolution=7)
        second = resolve_traversal(_gap(duration=300), resolution=7)
        assert first.key == second.key

    def test_reverse_direction_is_a_different_corridor(self):
        forward = resolve_traversal(_gap(start=A, end=B), resolution=7)
        backward = resolve_traversal(_gap(start=B, end=A), resolution=7)
        assert backward.key != forward.key
        assert (backward.key.a_cell, backward.key.b_cell) == (forward.key.b_cell, forward.key.a_cell)
        assert backward.key.direction == 8


class TestCorridorKey:
    def test_string_form(self):
        assert str(CorridorKey("871f1d489ffffff", "871f1d48bffffff", 3)) == "871f1d489ffffff:871f1d48bffffff:3"

    def test_key_for_validates_start(self):
        with pytest.raises(CoordinateValidationError):
            corridor_key_for(0.0, 181.0, 0.0, 0.0, 7)


class TestGetOrCreateCorridor:
    def test_creates_once(self, db):
        key = corridor_key_for(*A, *B, 7)
        first = get_or_create_corridor(db, key)
        second = get_or_create_corridor(db, key)
        db.commit()

        assert first.corridor_id == second.corridor_id
        assert db.query(Corridor).count() == 1
        assert first.key_str == str(key)

    def test_find_missing_returns_none(self, db):
        assert find_corridor(db, CorridorKey("a", "b", 0)) is None
