"""Attribute battery drain to device states from periodic readings.

Each reading is diffed against the previous one and the interval is charged
to exactly one state bucket:

    charging (either end)  -> skipped
    screen on              -> screen_on, split into active / idle by current
    screen off, deep sleep -> deep_sleep (+ screen_off aggregate)
    screen off otherwise   -> awake      (+ screen_off aggregate)

Rates are mAh per hour of time spent in the bucket, i.e. average mA.

The tracker does no I/O. Readings come from an injected sampler
(``sampler(capacity_mah) -> DrainReading | None``) and periodic polling from an
optional injected scheduler (``scheduler(interval_s, callback) -> cancel``).
Callers must serialize calls into one tracker.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable


logger = logging.getLogger("batstats.drain")

POLL_INTERVAL_S = 60.0
DEEP_SLEEP_THRESHOLD_MS = 30_000
ACTIVE_CURRENT_THRESHOLD_MA = 200
DEFAULT_CAPACITY_MAH = 4000.0
HISTORY_SIZE = 1000
MS_PER_HOUR = 3_600_000.0


class Bucket(Enum):
    SCREEN_ON = "screen_on"
    SCREEN_OFF = "screen_off"
    ACTIVE = "active"
    IDLE = "idle"
    DEEP_SLEEP = "deep_sleep"
    AWAKE = "awake"


class DeviceState(Enum):
    CHARGING = "charging"
    SCREEN_ON = "screen_on"
    DEEP_SLEEP = "deep_sleep"
    AWAKE = "awake"


@dataclass(frozen=True)
class DrainConfig:
    poll_interval_s: float = POLL_INTERVAL_S
    deep_sleep_threshold_ms: int = DEEP_SLEEP_THRESHOLD_MS
    active_current_threshold_ma: int = ACTIVE_CURRENT_THRESHOLD_MA
    default_capacity_mah: float = DEFAULT_CAPACITY_MAH
    history_size: int = HISTORY_SIZE


@dataclass(frozen=True)
class DrainReading:
    timestamp_ms: int
    battery_level: int
    battery_mah: float
    current_ma: int
    screen_on: bool
    charging: bool
    deep_sleep: bool = False
    dozing: bool = False
    cpu_awake_time_ms: int = 0
    deep_sleep_time_ms: int = 0


@dataclass(frozen=True)
class BucketTotals:
    duration_ms: int = 0
    energy_mah: float = 0.0

    @property
    def rate_mah_per_h(self) -> float:
        return drain_rate(self.energy_mah, self.duration_ms)


def drain_rate(energy_mah: float, duration_ms: int) -> float:
    if duration_ms <= 0:
        return 0.0
    return energy_mah / (duration_ms / MS_PER_HOUR)


def is_deep_sleep(screen_on: bool, dozing: bool, sleep_time_ms: int, threshold_ms: int = DEEP_SLEEP_THRESHOLD_MS) -> bool:
    return not screen_on and not dozing and sleep_time_ms > threshold_ms


def classify(reading: DrainReading) -> DeviceState:
    """State of the interval ending at ``reading`` (charging checked separately)."""
    if reading.charging:
        return DeviceState.CHARGING
    if reading.screen_on:
        return DeviceState.SCREEN_ON
    if reading.deep_sleep and not reading.dozing:
        return DeviceState.DEEP_SLEEP
    return DeviceState.AWAKE


def estimate_battery_mah(level: int | None, charge_counter_uah: int | None, capacity_mah: float) -> float:
    """Remaining charge: charge counter when the platform reports one, else level x capacity."""
    if charge_counter_uah is not None and charge_counter_uah > 0:
        return charge_counter_uah / 1000.0
    if level is None:
        return 0.0
    return (level / 100.0) * capacity_mah


@dataclass(frozen=True)
class DrainState:
    """Immutable view of the tracker, published after every update."""

    timestamp_ms: int = 0
    battery_level: int = 0
    battery_mah: float = 0.0
    is_screen_on: bool = False
    is_charging: bool = False
    is_deep_sleep: bool = False
    is_dozing: bool = False
    buckets: tuple[tuple[Bucket, BucketTotals], ...] = ()
    session_start_ms: int = 0
    last_update_ms: int = 0

    def totals(self, bucket: Bucket) -> BucketTotals:
        for b, t in self.buckets:
            if b is bucket:
                return t
        return BucketTotals()

    def rate(self, bucket: Bucket) -> float:
        return self.totals(bucket).rate_mah_per_h

    @property
    def total_drain_mah(self) -> float:
        return self.totals(Bucket.SCREEN_ON).energy_mah + self.totals(Bucket.SCREEN_OFF).energy_mah

    @property
    def session_duration_ms(self) -> int:
        return max(0, self.last_update_ms - self.session_start_ms)

    @property
    def average_drain_rate(self) -> float:
        return drain_rate(self.total_drain_mah, self.session_duration_ms)

    @property
    def screen_on_percentage(self) -> float:
        total = self.session_duration_ms
        if total <= 0:
            return 0.0
        return self.totals(Bucket.SCREEN_ON).duration_ms / total * 100.0

    @property
    def deep_sleep_percentage(self) -> float:
        off = self.totals(Bucket.SCREEN_OFF).duration_ms
        if off <= 0:
            return 0.0
        return self.totals(Bucket.DEEP_SLEEP).duration_ms / off * 100.0


Sampler = Callable[[float], "DrainReading | None"]
Scheduler = Callable[[float, Callable[[], None]], Callable[[], None]]


def _now_ms() -> int:
    return int(time.time() * 1000)


class DrainAttributionTracker:
    def __init__(
        self,
        sampler: Sampler | None = None,
        scheduler: Scheduler | None = None,
        config: DrainConfig | None = None,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self.config = config or DrainConfig()
        self._sampler = sampler
        self._scheduler = scheduler
        self._clock_ms = clock_ms
        self._cancel: Callable[[], None] | None = None
        self._running = False
        self._listeners: list[Callable[[DrainState], None]] = []

        self.capacity_mah = float(self.config.default_capacity_mah)
        self._totals: dict[Bucket, BucketTotals] = {}
        self._history: deque[DrainReading] = deque(maxlen=self.config.history_size)
        self._last: DrainReading | None = None
        self._screen_on: bool | None = None
        self._session_start_ms = 0
        self._state = DrainState()
        self.reset()

    # --- lifecycle ---

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        logger.info("drain tracking: start")
        self._running = True
        self.reset()
        self.poll()
        if self._scheduler is not None:
            self._cancel = self._scheduler(self.config.poll_interval_s, self.poll)

    def stop(self) -> None:
        if not self._running:
            return
        logger.info("drain tracking: stop")
        self._running = False
        if self._cancel is not None:
            self._cancel()
            self._cancel = None

    def reset(self) -> None:
        self._session_start_ms = self._clock_ms()
        self._totals = {b: BucketTotals() for b in Bucket}
        self._history.clear()
        self._last = None
        self._state = DrainState(
            timestamp_ms=self._session_start_ms,
            buckets=tuple(self._totals.items()),
            session_start_ms=self._session_start_ms,
            last_update_ms=self._session_start_ms,
        )
        logger.info("drain tracking: session reset")

    # --- observation ---

    @property
    def state(self) -> DrainState:
        return self._state

    @property
    def readings(self) -> tuple[DrainReading, ...]:
        return tuple(self._history)

    @property
    def last_reading(self) -> DrainReading | None:
        return self._last

    def add_listener(self, listener: Callable[[DrainState], None]) -> None:
        self._listeners.append(listener)

    def apply_capacity(self, capacity_mah: float | int | None) -> None:
        """Use a reported design capacity instead of the default, when positive.

        A changed capacity rescales level-based mAh estimates, so the next
        reading starts a new diff baseline instead of being compared with the
        old scale.
        """
        if capacity_mah is None or capacity_mah <= 0:
            return
        capacity = float(capacity_mah)
        if capacity == self.capacity_mah:
            return
        logger.info("drain tracking: capacity %.0f -> %.0f mAh", self.capacity_mah, capacity)
        self.capacity_mah = capacity
        self._last = None

    # --- inputs ---

    def poll(self) -> DrainState | None:
        if self._sampler is None:
            return None
        reading = self._sampler(self.capacity_mah)
        if reading is None:
            logger.debug("drain tracking: no reading this cycle")
            return None
        return self.process(reading)

    def notify_screen_state(self, screen_on: bool) -> DrainState | None:
        """Screen on/off event: sample right away so the boundary lands in the right bucket."""
        changed = self._screen_on is not None and self._screen_on != screen_on
        self._screen_on = screen_on
        if changed and self._running:
            return self.poll()
        return None

    def process(self, reading: DrainReading) -> DrainState:
        prev = self._last
        self._last = reading
        self._screen_on = reading.screen_on
        self._history.append(reading)

        if prev is not None:
            updated = self._diff(prev, reading)
            if updated is not None:
                self._totals = updated

        self._publish(reading)
        return self._state

    def _diff(self, prev: DrainReading, cur: DrainReading) -> dict[Bucket, BucketTotals] | None:
        if cur.charging or prev.charging:
            logger.debug("drain diff skipped: charging")
            return None
        dt = cur.timestamp_ms - prev.timestamp_ms
        if dt <= 0:
            logger.debug("drain diff skipped: dt=%d", dt)
            return None
        energy = max(0.0, prev.battery_mah - cur.battery_mah)

        hits: list[Bucket]
        state = classify(cur)
        if state is DeviceState.SCREEN_ON:
            sub = Bucket.ACTIVE if abs(cur.current_ma) > self.config.active_current_threshold_ma else Bucket.IDLE
            hits = [Bucket.SCREEN_ON, sub]
        elif state is DeviceState.DEEP_SLEEP:
            hits = [Bucket.DEEP_SLEEP, Bucket.SCREEN_OFF]
        else:
            hits = [Bucket.AWAKE, Bucket.SCREEN_OFF]

        out = dict(self._totals)
        for b in hits:
            t = out[b]
            out[b] = BucketTotals(duration_ms=t.duration_ms + dt, energy_mah=t.energy_mah + energy)
        return out

    def _publish(self, reading: DrainReading) -> None:
        self._state = DrainState(
            timestamp_ms=reading.timestamp_ms,
            battery_level=reading.battery_level,
            battery_mah=reading.battery_mah,
            is_screen_on=reading.screen_on,
            is_charging=reading.charging,
            is_deep_sleep=reading.deep_sleep,
            is_dozing=reading.dozing,
            buckets=tuple(self._totals.items()),
            session_start_ms=self._session_start_ms,
            last_update_ms=reading.timestamp_ms,
        )
        for listener in self._listeners:
            listener(self._state)


# -----------------------------
# Formatting / estimates
# -----------------------------


def format_duration(ms: int) -> str:
    seconds = ms // 1000
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def format_drain_rate(rate: float) -> str:
    if rate < 0.1:
        return "< 0.1 mA"
    if rate < 10:
        return f"{rate:.1f} mA"
    return f"{rate:.0f} mA"


def estimate_time_remaining_h(level: int, current_ma: int, charging: bool, capacity_mah: float) -> float | None:
    """Hours to full (charging, positive current) or to empty (discharging, negative current)."""
    if charging and current_ma > 0:
        return capacity_mah * (100 - level) / 100.0 / current_ma
    if not charging and current_ma < 0:
        return capacity_mah * level / 100.0 / abs(current_ma)
    return None
