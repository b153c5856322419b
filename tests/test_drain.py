import pytest

from batstats.drain import Bucket
from batstats.drain import BucketTotals
from batstats.drain import DeviceState
from batstats.drain import DrainAttributionTracker
from batstats.drain import DrainConfig
from batstats.drain import DrainReading
from batstats.drain import classify
from batstats.drain import drain_rate
from batstats.drain import estimate_battery_mah
from batstats.drain import estimate_time_remaining_h
from batstats.drain import format_drain_rate
from batstats.drain import format_duration
from batstats.drain import is_deep_sleep


T0 = 1_700_000_000_000


def reading(t_s: float, mah: float, *, screen_on=False, charging=False, current_ma=-100, deep_sleep=False, dozing=False):
    return DrainReading(
        timestamp_ms=T0 + int(t_s * 1000),
        battery_level=50,
        battery_mah=mah,
        current_ma=current_ma,
        screen_on=screen_on,
        charging=charging,
        deep_sleep=deep_sleep,
        dozing=dozing,
    )


def make_tracker(**kw) -> DrainAttributionTracker:
    return DrainAttributionTracker(clock_ms=lambda: T0, **kw)


def nonzero_buckets(tracker: DrainAttributionTracker) -> set[Bucket]:
    return {b for b in Bucket if tracker.state.totals(b).duration_ms > 0}


def test_rate_derivation():
    assert drain_rate(0.5, 1_800_000) == pytest.approx(1.0)
    assert BucketTotals(duration_ms=1_800_000, energy_mah=0.5).rate_mah_per_h == pytest.approx(1.0)
    assert drain_rate(5.0, 0) == 0.0


@pytest.mark.parametrize("first,second", [(False, True), (True, False), (True, True)])
def test_charging_exclusion(first, second):
    t = make_tracker()
    t.process(reading(0, 2000, charging=first))
    t.process(reading(60, 1900, charging=second))
    assert nonzero_buckets(t) == set()
    assert t.state.total_drain_mah == 0.0


def test_energy_clamped_to_zero_when_charge_rises():
    t = make_tracker()
    t.process(reading(0, 2000))
    t.process(reading(60, 2010))
    awake = t.state.totals(Bucket.AWAKE)
    assert awake.duration_ms == 60_000
    assert awake.energy_mah == 0.0


def test_non_positive_interval_is_skipped():
    t = make_tracker()
    t.process(reading(60, 2000))
    t.process(reading(60, 1990))
    t.process(reading(30, 1980))
    assert nonzero_buckets(t) == set()
    assert len(t.readings) == 3


def test_screen_on_splits_active_and_idle():
    t = make_tracker()
    t.process(reading(0, 2000, screen_on=True))
    t.process(reading(60, 1995, screen_on=True, current_ma=-500))
    t.process(reading(120, 1994, screen_on=True, current_ma=-50))
    s = t.state
    assert s.totals(Bucket.SCREEN_ON).duration_ms == 120_000
    assert s.totals(Bucket.SCREEN_ON).energy_mah == pytest.approx(6.0)
    assert s.totals(Bucket.ACTIVE).energy_mah == pytest.approx(5.0)
    assert s.totals(Bucket.IDLE).energy_mah == pytest.approx(1.0)
    assert s.totals(Bucket.SCREEN_OFF).duration_ms == 0


@pytest.mark.parametrize(
    "kw,expected",
    [
        ({"screen_on": True}, {Bucket.SCREEN_ON, Bucket.IDLE}),
        ({"deep_sleep": True}, {Bucket.DEEP_SLEEP, Bucket.SCREEN_OFF}),
        ({"deep_sleep": True, "dozing": True}, {Bucket.AWAKE, Bucket.SCREEN_OFF}),
        ({}, {Bucket.AWAKE, Bucket.SCREEN_OFF}),
    ],
)
def test_bucket_exclusivity(kw, expected):
    t = make_tracker()
    t.process(reading(0, 2000))
    t.process(reading(60, 1999, **kw))
    assert nonzero_buckets(t) == expected
    top_level = {Bucket.SCREEN_ON, Bucket.DEEP_SLEEP, Bucket.AWAKE}
    assert len(nonzero_buckets(t) & top_level) == 1


def test_screen_off_aggregate_and_percentages():
    t = make_tracker()
    t.process(reading(0, 2000))
    t.process(reading(1800, 1999, deep_sleep=True))
    t.process(reading(3600, 1997))
    s = t.state
    assert s.totals(Bucket.SCREEN_OFF).duration_ms == 3_600_000
    assert s.totals(Bucket.SCREEN_OFF).energy_mah == pytest.approx(3.0)
    assert s.deep_sleep_percentage == pytest.approx(50.0)
    assert s.rate(Bucket.AWAKE) == pytest.approx(4.0)
    assert s.average_drain_rate == pytest.approx(3.0)
    assert s.session_duration_ms == 3_600_000


def test_classify_precedence():
    assert classify(reading(0, 1, charging=True, screen_on=True)) is DeviceState.CHARGING
    assert classify(reading(0, 1, screen_on=True, deep_sleep=True)) is DeviceState.SCREEN_ON
    assert classify(reading(0, 1, deep_sleep=True)) is DeviceState.DEEP_SLEEP
    assert classify(reading(0, 1, deep_sleep=True, dozing=True)) is DeviceState.AWAKE


def test_is_deep_sleep_threshold():
    assert is_deep_sleep(False, False, 30_001)
    assert not is_deep_sleep(False, False, 30_000)
    assert not is_deep_sleep(True, False, 60_000)
    assert not is_deep_sleep(False, True, 60_000)


def test_estimate_battery_mah():
    assert estimate_battery_mah(50, 2_500_000, 4000) == pytest.approx(2500.0)
    assert estimate_battery_mah(50, None, 4000) == pytest.approx(2000.0)
    assert estimate_battery_mah(50, 0, 4000) == pytest.approx(2000.0)
    assert estimate_battery_mah(None, None, 4000) == 0.0


def test_lifecycle_with_injected_sampler_and_scheduler():
    samples = [reading(0, 2000), reading(60, 1999), reading(120, 1998)]
    calls = []

    def sampler(capacity_mah):
        calls.append(capacity_mah)
        return samples.pop(0) if samples else None

    scheduled = {}

    def scheduler(interval_s, callback):
        scheduled["interval"] = interval_s
        scheduled["cb"] = callback

        def cancel():
            scheduled["cancelled"] = True

        return cancel

    t = DrainAttributionTracker(sampler=sampler, scheduler=scheduler, config=DrainConfig(poll_interval_s=5.0), clock_ms=lambda: T0)
    seen = []
    t.add_listener(seen.append)
    t.start()
    assert t.is_running
    assert scheduled["interval"] == 5.0
    assert len(t.readings) == 1

    scheduled["cb"]()
    scheduled["cb"]()
    assert len(t.readings) == 3
    assert t.state.totals(Bucket.AWAKE).energy_mah == pytest.approx(2.0)
    assert len(seen) == 3

    assert scheduled["cb"]() is None
    t.stop()
    assert not t.is_running
    assert scheduled.get("cancelled") is True
    assert calls == [4000.0] * 4


def test_apply_capacity_only_when_positive():
    t = make_tracker()
    t.apply_capacity(0)
    t.apply_capacity(None)
    assert t.capacity_mah == 4000.0
    t.apply_capacity(5000)
    assert t.capacity_mah == 5000.0


def test_reset_clears_totals_and_history():
    t = make_tracker()
    t.process(reading(0, 2000))
    t.process(reading(60, 1990))
    t.reset()
    assert t.readings == ()
    assert t.last_reading is None
    assert t.state.total_drain_mah == 0.0


def test_history_is_bounded():
    t = make_tracker(config=DrainConfig(history_size=3))
    for i in range(5):
        t.process(reading(i * 60, 2000 - i))
    assert len(t.readings) == 3
    assert t.readings[0].timestamp_ms == T0 + 120_000


def test_screen_event_triggers_immediate_poll():
    polled = []

    def sampler(capacity_mah):
        polled.append(1)
        return reading(len(polled) * 60, 2000 - len(polled), screen_on=len(polled) > 1)

    t = make_tracker(sampler=sampler)
    t.start()
    assert t.notify_screen_state(False) is None
    state = t.notify_screen_state(True)
    assert state is not None
    assert len(polled) == 2


def test_formatting_helpers():
    assert format_duration(45_000) == "45s"
    assert format_duration(125_000) == "2m 5s"
    assert format_duration(3_660_000) == "1h 1m"
    assert format_duration(90_000_000) == "1d 1h"
    assert format_drain_rate(0.05) == "< 0.1 mA"
    assert format_drain_rate(5.0) == "5.0 mA"
    assert format_drain_rate(123.4) == "123 mA"


def test_time_remaining():
    assert estimate_time_remaining_h(50, -500, False, 4000) == pytest.approx(4.0)
    assert estimate_time_remaining_h(50, 1000, True, 4000) == pytest.approx(2.0)
    assert estimate_time_remaining_h(50, 100, False, 4000) is None


def test_capacity_change_restarts_diff_baseline():
    clock = {"t": 0}

    def sampler(capacity_mah):
        clock["t"] += 60
        return DrainReading(
            timestamp_ms=T0 + clock["t"] * 1000,
            battery_level=50,
            battery_mah=estimate_battery_mah(50, None, capacity_mah),
            current_ma=-100,
            screen_on=False,
            charging=False,
        )

    t = make_tracker(sampler=sampler)
    t.start()
    t.apply_capacity(3000)
    t.poll()
    assert t.state.totals(Bucket.AWAKE) == BucketTotals()
    t.poll()
    assert t.state.totals(Bucket.AWAKE).duration_ms == 60_000
    assert t.state.totals(Bucket.AWAKE).energy_mah == 0.0


def test_same_capacity_keeps_baseline():
    t = make_tracker()
    t.process(reading(0, 2000))
    t.apply_capacity(4000)
    t.process(reading(60, 1999))
    assert t.state.totals(Bucket.AWAKE).energy_mah == pytest.approx(1.0)


def test_published_state_is_immutable_value():
    t = make_tracker()
    t.process(reading(0, 2000))
    t.process(reading(60, 1999))
    s = t.state
    assert isinstance(s.buckets, tuple)
    assert hash(s) == hash(t.state)
    assert dict(s.buckets)[Bucket.AWAKE].energy_mah == pytest.approx(1.0)
