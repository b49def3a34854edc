# -*- coding: utf-8 -*-
"""
tests/test_evaluator.py
超标 / 断线判定：时间窗、节流、空值、每站独立的断线节流。
"""
from datetime import datetime, timedelta

import pytz

from pm10_monitor.evaluator import (
    CATEGORY_OUTAGE,
    CATEGORY_THRESHOLD,
    check_outage,
    evaluate,
    exceeds,
    record_fetch_result,
)
from pm10_monitor.models import AlertState, Record, Station, StationHealth

TZ = pytz.timezone("Asia/Taipei")
STATIONS = [Station("A", "站A"), Station("B", "站B")]


def at(h, m=0, day=17):
    return TZ.localize(datetime(2026, 10, day, h, m))


class TestThreshold:
    def test_one_line_per_exceeding_station(self):
        state = AlertState()
        rec = Record(at(10), {"A": 150.0, "B": 80.0})
        msg = evaluate([rec], 100, 60, state, at(10, 1), stations=STATIONS)
        assert msg is not None
        assert msg.category == CATEGORY_THRESHOLD
        body = msg.text.splitlines()[1:-1]
        assert len(body) == 1
        assert "站A" in body[0] and "150" in body[0]
        assert "站B" not in msg.text
        assert state.last_threshold_alert == at(10, 1)

    def test_lines_chronological_then_station_order(self):
        recs = [
            Record(at(10, 5), {"A": 120.0, "B": 130.0}),
            Record(at(10, 0), {"B": 110.0}),
        ]
        msg = evaluate(recs, 100, 60, AlertState(), at(10, 6), stations=STATIONS)
        body = msg.text.splitlines()[1:-1]
        assert [("站A" in l, "站B" in l) for l in body] == [(False, True), (True, False), (False, True)]
        assert body[0].startswith("10/17 10:00")

    def test_rate_limited_within_interval(self):
        state = AlertState()
        rec = Record(at(10), {"A": 150.0})
        first = evaluate([rec], 100, 60, state, at(10, 0))
        second = evaluate([rec], 100, 60, state, at(10, 5))
        third = evaluate([rec], 100, 60, state, at(11, 5))
        assert first is not None
        assert second is None
        assert third is not None
        assert state.last_threshold_alert == at(11, 5)

    def test_outside_active_hours_no_alert_no_state_change(self):
        state = AlertState()
        rec = Record(at(18), {"A": 500.0})
        assert evaluate([rec], 100, 60, state, at(18, 0)) is None
        assert state.last_threshold_alert is None

    def test_quiet_hours_can_be_disabled(self):
        rec = Record(at(18), {"A": 500.0})
        assert evaluate([rec], 100, 60, AlertState(), at(18, 0), quiet_hours=False) is not None

    def test_active_window_crossing_midnight(self):
        rec = Record(at(23), {"A": 500.0})
        assert evaluate([rec], 100, 60, AlertState(), at(23, 0), active_hours="22:00-06:00") is not None
        assert evaluate([rec], 100, 60, AlertState(), at(12, 0), active_hours="22:00-06:00") is None

    def test_nothing_exceeding_does_not_touch_state(self):
        state = AlertState()
        rec = Record(at(10), {"A": 50.0, "B": None})
        assert evaluate([rec], 100, 60, state, at(10, 1)) is None
        assert state.last_threshold_alert is None

    def test_equal_value_depends_on_compare(self):
        rec = Record(at(10), {"A": 100.0})
        assert evaluate([rec], 100, 60, AlertState(), at(10, 1)) is None
        assert evaluate([rec], 100, 60, AlertState(), at(10, 1), compare="gte") is not None

    def test_filled_values_are_not_evaluated(self):
        rec = Record(at(10), {"A": 150.0}, filled={"A"})
        assert evaluate([rec], 100, 60, AlertState(), at(10, 1)) is None

    def test_exceeds_ignores_null_and_text(self):
        assert not exceeds(None, 100)
        assert not exceeds("--", 100)
        assert exceeds("150", 100)


class TestOutage:
    def test_fires_after_missing_threshold(self):
        now = at(12)
        health = StationHealth("B", last_success_time=now - timedelta(hours=13))
        state = AlertState()
        msg = check_outage("B", health, state, now, missing_data_hours=12, station_name="站B")
        assert msg is not None
        assert msg.category == CATEGORY_OUTAGE
        assert msg.station_id == "B"
        assert "站B" in msg.text
        assert state.last_outage_alert["B"] == now

    def test_not_again_within_window_then_again_after(self):
        now = at(12)
        health = StationHealth("B", last_success_time=now - timedelta(hours=13))
        state = AlertState()
        assert check_outage("B", health, state, now) is not None
        assert check_outage("B", health, state, now + timedelta(hours=1)) is None
        assert check_outage("B", health, state, now + timedelta(hours=13)) is not None

    def test_healthy_station_not_alerted(self):
        now = at(12)
        health = StationHealth("A", last_success_time=now - timedelta(hours=2))
        assert check_outage("A", health, AlertState(), now) is None

    def test_unknown_station_not_evaluated(self):
        assert check_outage("A", StationHealth("A"), AlertState(), at(12)) is None

    def test_never_succeeded_uses_first_failure(self):
        now = at(12, day=18)
        health = StationHealth("B", first_failure_time=now - timedelta(hours=12, minutes=1))
        msg = check_outage("B", health, AlertState(), now)
        assert msg is not None
        assert "從未取得數據" in msg.text

    def test_per_station_limiter_independent(self):
        now = at(12)
        state = AlertState(last_threshold_alert=now, last_outage_alert={"A": now})
        health_b = StationHealth("B", last_success_time=now - timedelta(hours=13))
        assert check_outage("B", health_b, state, now) is not None
        assert state.last_outage_alert["A"] == now

    def test_outage_quiet_hours_optional(self):
        now = at(20)
        health = StationHealth("B", last_success_time=now - timedelta(hours=13))
        assert check_outage("B", health, AlertState(), now, quiet_hours=True) is None
        assert check_outage("B", health, AlertState(), now) is not None


class TestFetchResult:
    def test_success_resets_failure_timer(self):
        h = StationHealth("A", first_failure_time=at(8))
        record_fetch_result(h, True, at(9))
        assert h.last_success_time == at(9)
        assert h.first_failure_time is None

    def test_first_failure_only_when_never_succeeded(self):
        h = StationHealth("A")
        record_fetch_result(h, False, at(8))
        record_fetch_result(h, False, at(9))
        assert h.first_failure_time == at(8)

        h2 = StationHealth("B", last_success_time=at(7))
        record_fetch_result(h2, False, at(8))
        assert h2.first_failure_time is None
        assert h2.last_success_time == at(7)
