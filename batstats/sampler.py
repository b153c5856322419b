from __future__ import annotations

import logging
import time
from typing import Callable

from batstats.adb import dumpsys_text
from batstats.adb import read_checkin
from batstats.checkin import CheckinSnapshot
from batstats.checkin import parse_checkin
from batstats.drain import DEEP_SLEEP_THRESHOLD_MS
from batstats.drain import DrainAttributionTracker
from batstats.drain import DrainReading
from batstats.drain import estimate_battery_mah
from batstats.drain import is_deep_sleep
from batstats.dumpsys import parse_battery_service
from batstats.dumpsys import parse_power_manager


logger = logging.getLogger("batstats.sampler")


class AdbDrainSampler:
    """Build `DrainReading`s from a device over adb.

    Reads `dumpsys battery` and `dumpsys power` every call; with
    ``with_checkin`` also pulls the checkin dump for awake/sleep counters
    (battery realtime minus uptime), which is slow on some devices.
    """

    def __init__(
        self,
        adb: str,
        serial: str | None,
        *,
        with_checkin: bool = True,
        deep_sleep_threshold_ms: int = DEEP_SLEEP_THRESHOLD_MS,
        timeout_s: float = 15.0,
    ) -> None:
        self.adb = adb
        self.serial = serial
        self.with_checkin = with_checkin
        self.deep_sleep_threshold_ms = deep_sleep_threshold_ms
        self.timeout_s = timeout_s
        self.last_capacity_mah: int | None = None

    def _read_checkin(self) -> CheckinSnapshot:
        snap = parse_checkin(read_checkin(self.adb, self.serial, timeout_s=max(self.timeout_s, 60.0)))
        if snap.estimated_capacity_mah > 0:
            self.last_capacity_mah = snap.estimated_capacity_mah
        return snap

    def prime(self) -> int | None:
        """Pull checkin once for the reported capacity, before the first reading."""
        self._read_checkin()
        return self.last_capacity_mah

    def screen_on(self) -> bool | None:
        """Display state only; ``None`` when `dumpsys power` is unavailable."""
        text = dumpsys_text(self.adb, self.serial, ["power"], timeout_s=self.timeout_s)
        if text is None:
            return None
        return parse_power_manager(text).is_screen_on

    def _sleep_counters(self) -> tuple[int, int]:
        if not self.with_checkin:
            return 0, 0
        snap = self._read_checkin()
        awake = snap.battery_uptime_ms
        asleep = max(0, snap.battery_realtime_ms - snap.battery_uptime_ms)
        return awake, asleep

    def __call__(self, capacity_mah: float) -> DrainReading | None:
        batt = parse_battery_service(dumpsys_text(self.adb, self.serial, ["battery"], timeout_s=self.timeout_s))
        if batt is None:
            logger.warning("sampler: dumpsys battery unavailable")
            return None
        if batt.updates_stopped:
            logger.warning("sampler: battery service reports UPDATES STOPPED; values may be stale")

        power = parse_power_manager(dumpsys_text(self.adb, self.serial, ["power"], timeout_s=self.timeout_s))
        awake_ms, sleep_ms = self._sleep_counters()

        level = batt.level_percent or 0
        current_ma = int((batt.current_now_ua or 0) / 1000)
        return DrainReading(
            timestamp_ms=int(time.time() * 1000),
            battery_level=level,
            battery_mah=estimate_battery_mah(level, batt.charge_counter_uah, capacity_mah),
            current_ma=current_ma,
            screen_on=power.is_screen_on,
            charging=batt.plugged,
            deep_sleep=is_deep_sleep(power.is_screen_on, power.is_dozing, sleep_ms, self.deep_sleep_threshold_ms),
            dozing=power.is_dozing,
            cpu_awake_time_ms=awake_ms,
            deep_sleep_time_ms=sleep_ms,
        )


# -----------------------------
# Live loop
# -----------------------------


def run_tracking(
    tracker: DrainAttributionTracker,
    sampler: AdbDrainSampler,
    duration_s: float,
    screen_check_s: float = 5.0,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Prime capacity, start, then poll every interval until ``duration_s``.

    Between polls the display state is checked every ``screen_check_s``; a
    flip goes through `notify_screen_state`, which samples at the boundary.
    ``screen_check_s <= 0`` disables the checks. Stops the tracker on exit.
    """
    tracker.apply_capacity(sampler.prime())
    tracker.start()
    interval_s = tracker.config.poll_interval_s
    step_s = min(screen_check_s, interval_s) if screen_check_s > 0 else interval_s
    t0 = clock()
    next_poll = t0 + interval_s
    try:
        while clock() - t0 < duration_s:
            sleep(step_s)
            now = clock()
            if now >= next_poll:
                tracker.poll()
                next_poll = now + interval_s
                continue
            if screen_check_s > 0:
                screen = sampler.screen_on()
                if screen is not None:
                    tracker.notify_screen_state(screen)
    finally:
        tracker.stop()
