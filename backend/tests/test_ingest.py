"""Tests for fix ingestion and the drop → corridor → baseline → alert pipeline."""
import io
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from dropwatch.models import Alert, Corridor, CorridorBaseline, Drop, GPSFix, Traversal, Trip, Vehicle
from dropwatch.models.base import GLOBAL_BUCKET, AlertSeverityEnum, AlertTypeEnum, DropReasonEnum
from dropwatch.modules.corridor_resolver import resolve_traversal
from dropwatch.modules.drop_detector import GapEvent
from dropwatch.modules.ingest import (
    FixValidationError,
    PipelineConfig,
    TransientStoreError,
    group_by_vehicle,
    ingest_fix_batch,
    load_fixes_csv,
    record_traversal,
    segment_trips,
    validate_fix_batch,
)

T0 = datetime(2024, 3, 4, 10, 0, 0)
A = (52.50, 13.40)
B = (52.55, 13.40)


def _fix(vehicle, minutes, point, **extra):
    return {
        "vehicleId": vehicle,
        "ts": (T0 + timedelta(minutes=minutes)).isoformat() + "Z",
        "lat": point[0],
        "lon": point[1],
        **extra,
    }


class TestValidateFixBatch:
    def test_single_fix_accepted(self):
        [fix] = validate_fix_batch(_fix("bus-1", 0, A, speed=12.5))
        assert fix.vehicle_id == "bus-1"
        assert fix.ts == T0
        assert fix.ts.tzinfo is None
        assert fix.speed == 12.5

    def test_snake_case_and_numeric_vehicle_id(self):
        [fix] = validate_fix_batch([{"vehicle_id": 17, "ts": "2024-03-04T11:00:00+01:00", "lat": 1, "lon": 2}])
        assert fix.vehicle_id == "17"
        assert fix.ts == T0

    @pytest.mark.parametrize("bad", [
        {"lat": 90.5},
        {"lon": -180.1},
        {"ts": "not-a-time"},
        {"lat": float("nan")},
        {"vehicleId": ""},
    ])
    def test_bad_fix_rejects_batch(self, bad):
        batch = [_fix("bus-1", 0, A), {**_fix("bus-1", 3, B), **bad}]
        with pytest.raises(FixValidationError) as exc_info:
            validate_fix_batch(batch)
        assert exc_info.value.errors

    def test_empty_batch(self):
        with pytest.raises(FixValidationError):
            validate_fix_batch([])


class TestGroupingAndSegmentation:
    def test_group_by_vehicle_keeps_first_seen_order(self):
        fixes = validate_fix_batch([_fix("b", 0, A), _fix("a", 0, A), _fix("b", 3, B)])
        grouped = group_by_vehicle(fixes)
        assert list(grouped) == ["b", "a"]
        assert len(grouped["b"]) == 2

    def test_inactivity_splits_trips(self):
        fixes = validate_fix_batch([_fix("bus-1", m, A) for m in (0, 5, 10, 35, 40)])
        segments = segment_trips(fixes, gap_minutes=20)
        assert [len(s) for s in segments] == [3, 2]

    def test_gap_equal_to_limit_stays_in_trip(self):
        fixes = validate_fix_batch([_fix("bus-1", m, A) for m in (0, 20)])
        assert len(segment_trips(fixes, gap_minutes=20)) == 1

    def test_segments_sorted(self):
        fixes = validate_fix_batch([_fix("bus-1", m, A) for m in (6, 0, 3)])
        [segment] = segment_trips(fixes, gap_minutes=20)
        assert [f.ts for f in segment] == sorted(f.ts for f in segment)


class TestLoadFixesCsv:
    def test_reads_bom_and_mixed_case_headers(self):
        data = (
            "\ufeffVehicle_ID,TS,Lat,Lon,Speed\n"
            "007,2024-03-04T10:00:00Z,52.5,13.4,30.5\n"
            "007,2024-03-04T10:03:00Z,52.55,13.4,\n"
        ).encode("utf-8")

        rows = load_fixes_csv(io.BytesIO(data))

        assert rows[0]["vehicle_id"] == "007"
        assert "speed" not in rows[1]
        first, second = validate_fix_batch(rows)
        assert (first.lat, first.lon, first.speed) == (52.5, 13.4, 30.5)
        assert first.ts == T0
        assert second.speed is None

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="missing required columns"):
            load_fixes_csv(io.BytesIO(b"vehicle_id,ts,lat\n1,2024-03-04T10:00:00Z,52.5\n"))


class TestIngestPipeline:
    def test_twenty_fixes_at_180s(self, session_factory, publisher, pipeline_config, shuttle_fixes):
        summary = ingest_fix_batch(shuttle_fixes(), session_factory, publisher, pipeline_config)

        assert summary["ok"] is True
        assert summary["fixes_received"] == 20
        [result] = summary["results"]
        assert result["drops_detected"] == 19
        assert result["traversals_recorded"] == 19
        assert result["alerts_created"] == 0

        db = session_factory()
        try:
            assert db.query(Trip).count() == 1
            assert db.query(GPSFix).count() == 20
            drops = db.query(Drop).all()
            assert len(drops) == 19
            assert {d.reason for d in drops} == {DropReasonEnum.TRANSIT}
            assert db.query(Corridor).count() == 2
            buckets = sorted(
                (b.bucket_hour, b.count) for b in db.query(CorridorBaseline).all()
            )
            assert buckets == [(GLOBAL_BUCKET, 9), (GLOBAL_BUCKET, 10), (10, 9), (10, 10)]
        finally:
            db.close()

    def test_reingest_is_idempotent(self, session_factory, publisher, pipeline_config, shuttle_fixes):
        ingest_fix_batch(shuttle_fixes(), session_factory, publisher, pipeline_config)
        summary = ingest_fix_batch(shuttle_fixes(), session_factory, publisher, pipeline_config)

        assert summary["results"][0]["traversals_recorded"] == 0
        db = session_factory()
        try:
            assert db.query(GPSFix).count() == 20
            assert db.query(Drop).count() == 19
            assert db.query(Traversal).count() == 19
            assert db.query(Trip).count() == 1
        finally:
            db.close()

    def test_later_batch_extends_trip(self, session_factory, publisher, pipeline_config, shuttle_fixes):
        fixes = shuttle_fixes(count=10)
        ingest_fix_batch(fixes[:5], session_factory, publisher, pipeline_config)
        ingest_fix_batch(fixes[5:], session_factory, publisher, pipeline_config)

        db = session_factory()
        try:
            [trip] = db.query(Trip).all()
            assert trip.start_time == T0
            assert trip.end_time == T0 + timedelta(seconds=9 * 180)
            # The gap spanning the two batches is detected too
            assert db.query(Drop).count() == 9
            assert db.query(Traversal).count() == 9
        finally:
            db.close()

    def test_invalid_batch_changes_nothing(self, session_factory, publisher, pipeline_config, shuttle_fixes):
        batch = shuttle_fixes() + [{"vehicleId": "bus-1", "ts": "2024-03-04T12:00:00Z", "lat": 91, "lon": 0}]

        with pytest.raises(FixValidationError):
            ingest_fix_batch(batch, session_factory, publisher, pipeline_config)

        db = session_factory()
        try:
            assert db.query(Vehicle).count() == 0
            assert db.query(GPSFix).count() == 0
        finally:
            db.close()
        assert publisher.received == []

    def test_delay_alert_published_once_per_trip_corridor(self, session_factory, publisher, shuttle_fixes):
        cfg = PipelineConfig.from_settings(max_workers=1, delay_threshold_minutes=5)
        ingest_fix_batch(shuttle_fixes(), session_factory, publisher, cfg)

        # Two slow A→B traversals (540 s vs a 180 s median) on one trip
        slow = [_fix("bus-2", 0, A), _fix("bus-2", 9, B), _fix("bus-2", 12, A), _fix("bus-2", 21, B)]
        summary = ingest_fix_batch(slow, session_factory, publisher, cfg)

        assert summary["results"][0]["traversals_recorded"] == 3
        assert summary["results"][0]["alerts_created"] == 1
        [message] = publisher.received
        assert message.type == "delay"
        assert message.delta_value == 360

        db = session_factory()
        try:
            [alert] = db.query(Alert).all()
            assert alert.alert_type == AlertTypeEnum.DELAY
            assert alert.vehicle.name == "bus-2"
        finally:
            db.close()

    def test_failing_vehicle_does_not_stop_others(self, session_factory, publisher, pipeline_config, shuttle_fixes, monkeypatch):
        import dropwatch.modules.ingest as ingest_module

        real = ingest_module._process_segment

        def flaky(db, vehicle, segment, cfg, pub):
            if vehicle.name == "broken":
                raise RuntimeError("boom")
            return real(db, vehicle, segment, cfg, pub)

        monkeypatch.setattr(ingest_module, "_process_segment", flaky)
        batch = shuttle_fixes("broken", count=3) + shuttle_fixes("bus-1", count=3)

        summary = ingest_fix_batch(batch, session_factory, publisher, pipeline_config)

        assert summary["ok"] is False
        assert len(summary["errors"]) == 1
        assert "broken" in summary["errors"][0]
        assert [r["vehicle"] for r in summary["results"]] == ["bus-1"]


MID = (52.525, 13.40)


class TestLateFixes:
    def test_late_fix_splits_recorded_gap(self, session_factory, publisher, pipeline_config):
        ingest_fix_batch([_fix("bus-1", 0, A), _fix("bus-1", 9, B)], session_factory, publisher, pipeline_config)
        summary = ingest_fix_batch([_fix("bus-1", 3, MID)], session_factory, publisher, pipeline_config)

        assert summary["results"][0]["traversals_recorded"] == 2
        db = session_factory()
        try:
            drops = sorted((d.start_ts, d.end_ts, d.duration_sec) for d in db.query(Drop).all())
            assert drops == [
                (T0, T0 + timedelta(minutes=3), 180.0),
                (T0 + timedelta(minutes=3), T0 + timedelta(minutes=9), 360.0),
            ]
            assert sorted(t.travel_sec for t in db.query(Traversal).all()) == [180.0, 360.0]
            # The A→B corridor lost its only traversal, so its baselines are gone
            baselines = db.query(CorridorBaseline).all()
            assert len(baselines) == 2
            assert {b.count for b in baselines} == {1}
        finally:
            db.close()

    def test_late_fix_matches_in_order_ingest(self, session_factory, publisher, pipeline_config):
        ingest_fix_batch([_fix("bus-1", 0, A), _fix("bus-1", 9, B)], session_factory, publisher, pipeline_config)
        ingest_fix_batch([_fix("bus-1", 3, MID)], session_factory, publisher, pipeline_config)
        ingest_fix_batch(
            [_fix("bus-2", 0, A), _fix("bus-2", 3, MID), _fix("bus-2", 9, B)],
            session_factory, publisher, pipeline_config,
        )

        db = session_factory()
        try:
            per_vehicle = {}
            for trip in db.query(Trip).all():
                per_vehicle[trip.vehicle.name] = (
                    sorted((d.start_ts, d.end_ts) for d in db.query(Drop).filter(Drop.trip_id == trip.trip_id)),
                    sorted(
                        (t.corridor_id, t.travel_sec)
                        for t in db.query(Traversal).filter(Traversal.trip_id == trip.trip_id)
                    ),
                )
            assert per_vehicle["bus-1"] == per_vehicle["bus-2"]
        finally:
            db.close()

    def test_bridging_segment_merges_trips(self, session_factory, publisher, pipeline_config):
        # 27 minutes apart: two trips under the 20-minute inactivity rule
        first = [_fix("bus-1", 0, A), _fix("bus-1", 3, B), _fix("bus-1", 30, A), _fix("bus-1", 33, B)]
        ingest_fix_batch(first, session_factory, publisher, pipeline_config)

        db = session_factory()
        try:
            assert db.query(Trip).count() == 2
        finally:
            db.close()

        ingest_fix_batch([_fix("bus-1", 16, A)], session_factory, publisher, pipeline_config)

        db = session_factory()
        try:
            [trip] = db.query(Trip).all()
            assert trip.start_time == T0
            assert trip.end_time == T0 + timedelta(minutes=33)
            assert {f.trip_id for f in db.query(GPSFix).all()} == {trip.trip_id}
            assert {t.trip_id for t in db.query(Traversal).all()} == {trip.trip_id}
            drops = sorted((d.start_ts, d.reason) for d in db.query(Drop).all())
            assert [d[0] for d in drops] == [T0 + timedelta(minutes=m) for m in (0, 3, 16, 30)]
            assert [d[1] for d in drops] == [
                DropReasonEnum.TRANSIT, DropReasonEnum.EXTENDED, DropReasonEnum.EXTENDED, DropReasonEnum.TRANSIT,
            ]
        finally:
            db.close()

    def test_merge_keeps_one_open_alert_per_corridor_and_type(self, db):
        from dropwatch.modules.ingest import _merge_trips

        vehicle = Vehicle(name="bus-1")
        corridor = Corridor(a_cell="a", b_cell="b", direction=0)
        db.add_all([vehicle, corridor])
        db.flush()
        early = Trip(vehicle_id=vehicle.vehicle_id, start_time=T0, end_time=T0 + timedelta(minutes=3))
        late = Trip(
            vehicle_id=vehicle.vehicle_id,
            start_time=T0 + timedelta(minutes=30),
            end_time=T0 + timedelta(minutes=33),
        )
        db.add_all([early, late])
        db.flush()
        for trip in (early, late):
            db.add(Alert(
                alert_type=AlertTypeEnum.DELAY, severity=AlertSeverityEnum.LOW, corridor_id=corridor.corridor_id,
                trip_id=trip.trip_id, vehicle_id=vehicle.vehicle_id, delta_value=400.0,
            ))
        db.flush()

        _merge_trips(db, early, [late])
        db.commit()

        alerts = db.query(Alert).order_by(Alert.alert_id).all()
        assert {a.trip_id for a in alerts} == {early.trip_id}
        assert alerts[0].resolved_utc is None
        assert alerts[1].resolved_utc is not None
        assert early.end_time == T0 + timedelta(minutes=33)
        assert db.query(Trip).count() == 1


class TestRecordTraversal:
    def _setup(self, session_factory):
        db = session_factory()
        vehicle = Vehicle(name="bus-1")
        db.add(vehicle)
        db.flush()
        trip = Trip(vehicle_id=vehicle.vehicle_id, start_time=T0, end_time=T0 + timedelta(hours=1))
        db.add(trip)
        db.commit()
        gap = GapEvent(T0, T0 + timedelta(seconds=180), *A, *B, 180, DropReasonEnum.TRANSIT)
        return db, trip, vehicle, resolve_traversal(gap, resolution=7)

    def test_redelivery_is_noop(self, session_factory, pipeline_config):
        db, trip, vehicle, candidate = self._setup(session_factory)
        try:
            assert record_traversal(db, candidate, trip.trip_id, vehicle.vehicle_id, pipeline_config) == []
            assert record_traversal(db, candidate, trip.trip_id, vehicle.vehicle_id, pipeline_config) is None
            assert db.query(Traversal).count() == 1
            assert db.query(CorridorBaseline).one().count == 1
        finally:
            db.close()

    def test_retries_exhausted(self, session_factory, pipeline_config, monkeypatch):
        import dropwatch.modules.ingest as ingest_module

        calls = []

        def locked(*args, **kwargs):
            calls.append(1)
            raise OperationalError("UPDATE corridor_baselines", {}, Exception("database is locked"))

        monkeypatch.setattr(ingest_module, "update_corridor_baselines", locked)
        db, trip, vehicle, candidate = self._setup(session_factory)
        try:
            with pytest.raises(TransientStoreError) as exc_info:
                record_traversal(db, candidate, trip.trip_id, vehicle.vehicle_id, pipeline_config)
            assert exc_info.value.attempts == pipeline_config.max_retries
            assert len(calls) == pipeline_config.max_retries
            assert db.query(Traversal).count() == 0
        finally:
            db.close()
