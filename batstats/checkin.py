"""Decode `dumpsys batterystats --checkin` output into a typed snapshot.

The checkin dump is a flat list of comma-separated rows:

    9,0,i,uid,10123,com.example.app
    9,10123,l,pwi,uid,12.5,0,0,0
    9,10123,l,wl,*job*/sync,0,f,0,3500,p,4,0,bp,1,0,w
    9,0,l,sgt,1000,2000,3000,2000,2000

Only the fields this package reports on are extracted. Unknown row types are
ignored and malformed rows are dropped one at a time, so a dump from a newer
platform still decodes.

Typical use:
    snap = parse_checkin(adb_text)
    for app in snap.apps[:10]:
        print(app.package_name, app.power_mah)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

from batstats.records import CATEGORY_INFO
from batstats.records import CATEGORY_LINE
from batstats.records import CheckinRecord
from batstats.records import IdentifierRegistry
from batstats.records import decode_record
from batstats.records import value_around_marker


logger = logging.getLogger("batstats.checkin")

PWI_PER_UID = "uid"
GPS_SENSOR_HANDLE = -10000
HISTOGRAM_LEVELS = 5


# -----------------------------
# Entry types
# -----------------------------


@dataclass(frozen=True)
class AppPowerStats:
    uid: int
    package_name: str
    power_mah: float


class WakelockType(Enum):
    PARTIAL = "partial"
    FULL = "full"
    WINDOW = "window"
    DRAW = "draw"


@dataclass(frozen=True)
class WakelockStats:
    uid: int
    package_name: str
    tag: str
    count: int
    total_time_ms: int
    background_count: int = 0
    background_time_ms: int = 0
    type: WakelockType = WakelockType.PARTIAL


@dataclass(frozen=True)
class KernelWakelockStats:
    name: str
    count: int
    total_time_ms: int


@dataclass(frozen=True)
class AlarmStats:
    uid: int
    package_name: str
    tag: str
    count: int
    wakeups: int
    total_time_ms: int


@dataclass(frozen=True)
class JobStats:
    uid: int
    package_name: str
    job_name: str
    count: int
    total_time_ms: int


@dataclass(frozen=True)
class SyncStats:
    uid: int
    package_name: str
    authority: str
    count: int
    total_time_ms: int


@dataclass(frozen=True)
class NetworkStats:
    uid: int
    package_name: str
    mobile_rx_bytes: int
    mobile_tx_bytes: int
    wifi_rx_bytes: int
    wifi_tx_bytes: int
    mobile_active_time_ms: int = 0
    mobile_active_count: int = 0

    @property
    def total_bytes(self) -> int:
        return self.mobile_rx_bytes + self.mobile_tx_bytes + self.wifi_rx_bytes + self.wifi_tx_bytes


@dataclass(frozen=True)
class SensorStats:
    uid: int
    package_name: str
    sensor_handle: int
    sensor_name: str
    count: int
    total_time_ms: int


@dataclass(frozen=True)
class SignalLevelStats:
    """One bar of a 5-level strength histogram (0 = none .. 4 = great)."""

    level: int
    duration_ms: int
    percent_of_total: float


@dataclass(frozen=True)
class BluetoothStats:
    idle_time_ms: int
    rx_time_ms: int
    tx_time_ms: int
    power_mah: float


@dataclass(frozen=True)
class DozeStats:
    idle_mode_time_ms: int
    idle_mode_count: int
    deep_idle_time_ms: int
    deep_idle_count: int
    light_idle_time_ms: int
    light_idle_count: int
    maintenance_time_ms: int
    maintenance_count: int


@dataclass(frozen=True)
class CpuFrequencyStats:
    index: int
    frequency_khz: int
    time_ms: int
    percent_of_total: float


@dataclass(frozen=True)
class ProcessStats:
    uid: int
    package_name: str
    process_name: str
    user_time_ms: int
    system_time_ms: int
    foreground_time_ms: int
    starts: int

    @property
    def cpu_time_ms(self) -> int:
        return self.user_time_ms + self.system_time_ms


@dataclass(frozen=True)
class PowerSummary:
    capacity_mah: int
    computed_drain_mah: float
    min_drained_mah: float
    max_drained_mah: float


@dataclass(frozen=True)
class CheckinSnapshot:
    captured_at: float | None = None
    battery_realtime_ms: int = 0
    battery_uptime_ms: int = 0
    screen_on_time_ms: int = 0
    screen_on_discharge_percent: float = 0.0
    screen_off_discharge_percent: float = 0.0
    estimated_capacity_mah: int = 0
    power_summary: PowerSummary | None = None
    apps: tuple[AppPowerStats, ...] = ()
    wakelocks: tuple[WakelockStats, ...] = ()
    kernel_wakelocks: tuple[KernelWakelockStats, ...] = ()
    alarms: tuple[AlarmStats, ...] = ()
    jobs: tuple[JobStats, ...] = ()
    syncs: tuple[SyncStats, ...] = ()
    network: tuple[NetworkStats, ...] = ()
    sensors: tuple[SensorStats, ...] = ()
    signal_strength: tuple[SignalLevelStats, ...] = ()
    wifi_signal: tuple[SignalLevelStats, ...] = ()
    bluetooth: BluetoothStats | None = None
    doze: DozeStats | None = None
    cpu_frequency: tuple[CpuFrequencyStats, ...] = ()
    processes: tuple[ProcessStats, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.apps or self.wakelocks or self.kernel_wakelocks or self.battery_realtime_ms)

    def energy_by_package(self) -> dict[str, float]:
        """Per-name cumulative mAh (uids sharing a name are summed)."""
        out: dict[str, float] = {}
        for app in self.apps:
            out[app.package_name] = out.get(app.package_name, 0.0) + app.power_mah
        return out


def sensor_name(handle: int) -> str:
    if handle == GPS_SENSOR_HANDLE:
        return "GPS"
    return f"Sensor #{handle}"


# -----------------------------
# Aggregation
# -----------------------------


class _SnapshotBuilder:
    """Mutable per-pass state; one instance per `parse_checkin` call."""

    def __init__(self) -> None:
        self.registry = IdentifierRegistry()
        self.apps: dict[int, AppPowerStats] = {}
        self.wakelocks: list[WakelockStats] = []
        self.kernel_wakelocks: list[KernelWakelockStats] = []
        self.alarms: list[AlarmStats] = []
        self.jobs: list[JobStats] = []
        self.syncs: list[SyncStats] = []
        self.network: list[NetworkStats] = []
        self.sensors: list[SensorStats] = []
        self.signal_strength: list[SignalLevelStats] = []
        self.wifi_signal: list[SignalLevelStats] = []
        self.bluetooth: BluetoothStats | None = None
        self.doze: DozeStats | None = None
        self.power_summary: PowerSummary | None = None
        self.cpu_freqs_khz: list[int] = []
        self.cpu_times_ms: list[int] = []
        self.processes: list[ProcessStats] = []

        self.battery_realtime_ms = 0
        self.battery_uptime_ms = 0
        self.screen_on_time_ms = 0
        self.screen_on_discharge = 0.0
        self.screen_off_discharge = 0.0
        self.estimated_capacity = 0

        self.handlers: dict[tuple[str, str], Callable[[CheckinRecord], bool]] = {
            (CATEGORY_INFO, "uid"): self._on_uid,
            (CATEGORY_LINE, "pwi"): self._on_power_use_item,
            (CATEGORY_LINE, "wl"): self._on_wakelock,
            (CATEGORY_LINE, "kwl"): self._on_kernel_wakelock,
            (CATEGORY_LINE, "wua"): self._on_alarm,
            (CATEGORY_LINE, "jb"): self._on_job,
            (CATEGORY_LINE, "sy"): self._on_sync,
            (CATEGORY_LINE, "nt"): self._on_network,
            (CATEGORY_LINE, "sr"): self._on_sensor,
            (CATEGORY_LINE, "sgt"): lambda r: self._on_histogram(r, self.signal_strength),
            (CATEGORY_LINE, "wsg"): lambda r: self._on_histogram(r, self.wifi_signal),
            (CATEGORY_LINE, "ble"): self._on_bluetooth,
            (CATEGORY_LINE, "dc"): self._on_discharge_step,
            (CATEGORY_LINE, "bt"): self._on_battery_core,
            (CATEGORY_LINE, "m"): self._on_misc,
            (CATEGORY_LINE, "pws"): self._on_power_summary,
            (CATEGORY_LINE, "di"): self._on_doze,
            (CATEGORY_LINE, "pr"): self._on_process,
            (CATEGORY_LINE, "gcf"): self._on_cpu_freqs,
            (CATEGORY_LINE, "ctf"): self._on_cpu_times_at_freq,
        }

    def feed(self, rec: CheckinRecord) -> bool | None:
        """Route one record. ``None`` = unknown type, ``False`` = dropped."""
        handler = self.handlers.get((rec.category, rec.type_tag))
        if handler is None:
            return None
        return handler(rec)

    def _owner(self, rec: CheckinRecord) -> tuple[int, str] | None:
        uid = rec.owner_id
        if uid is None:
            return None
        return uid, self.registry.resolve(uid)

    # --- identity / per-app power ---

    def _on_uid(self, rec: CheckinRecord) -> bool:
        uid = rec.opt_int_at(4)
        name = rec.text_at(5)
        if uid is None or name is None:
            return False
        self.registry.record_mapping(uid, name)
        return True

    def _on_power_use_item(self, rec: CheckinRecord) -> bool:
        uid = rec.owner_id
        subtype = rec.text_at(4)
        if uid is None or subtype is None:
            return False
        if subtype != PWI_PER_UID:
            return True
        mah = rec.float_at(5)
        existing = self.apps.get(uid)
        if existing is None:
            existing = AppPowerStats(uid=uid, package_name=self.registry.resolve(uid), power_mah=0.0)
        self.apps[uid] = replace(existing, power_mah=existing.power_mah + mah)
        return True

    # --- per-app line items ---

    def _on_wakelock(self, rec: CheckinRecord) -> bool:
        owner = self._owner(rec)
        tag = rec.text_at(4)
        if owner is None or tag is None:
            return False
        partial_ms, partial_count = value_around_marker(rec.fields, "p")
        bg_ms, bg_count = value_around_marker(rec.fields, "bp")
        self.wakelocks.append(
            WakelockStats(
                uid=owner[0],
                package_name=owner[1],
                tag=tag,
                count=partial_count,
                total_time_ms=partial_ms,
                background_count=bg_count,
                background_time_ms=bg_ms,
            )
        )
        return True

    def _on_kernel_wakelock(self, rec: CheckinRecord) -> bool:
        name = rec.text_at(4)
        if name is None:
            return False
        self.kernel_wakelocks.append(
            KernelWakelockStats(name=name, total_time_ms=rec.int_at(5), count=rec.int_at(6))
        )
        return True

    def _on_alarm(self, rec: CheckinRecord) -> bool:
        owner = self._owner(rec)
        tag = rec.text_at(4)
        if owner is None or tag is None:
            return False
        self.alarms.append(
            AlarmStats(
                uid=owner[0],
                package_name=owner[1],
                tag=tag,
                count=rec.int_at(5),
                total_time_ms=rec.int_at(6),
                wakeups=rec.int_at(7),
            )
        )
        return True

    def _on_job(self, rec: CheckinRecord) -> bool:
        owner = self._owner(rec)
        name = rec.text_at(4)
        if owner is None or name is None:
            return False
        self.jobs.append(
            JobStats(uid=owner[0], package_name=owner[1], job_name=name, count=rec.int_at(5), total_time_ms=rec.int_at(6))
        )
        return True

    def _on_sync(self, rec: CheckinRecord) -> bool:
        owner = self._owner(rec)
        authority = rec.text_at(4)
        if owner is None or authority is None:
            return False
        self.syncs.append(
            SyncStats(
                uid=owner[0],
                package_name=owner[1],
                authority=authority,
                count=rec.int_at(5),
                total_time_ms=rec.int_at(6),
            )
        )
        return True

    def _on_network(self, rec: CheckinRecord) -> bool:
        owner = self._owner(rec)
        if owner is None:
            return False
        self.network.append(
            NetworkStats(
                uid=owner[0],
                package_name=owner[1],
                mobile_rx_bytes=rec.int_at(4),
                mobile_tx_bytes=rec.int_at(5),
                wifi_rx_bytes=rec.int_at(6),
                wifi_tx_bytes=rec.int_at(7),
                mobile_active_time_ms=rec.int_at(12),
                mobile_active_count=rec.int_at(13),
            )
        )
        return True

    def _on_sensor(self, rec: CheckinRecord) -> bool:
        owner = self._owner(rec)
        handle = rec.opt_int_at(4)
        if owner is None or handle is None:
            return False
        self.sensors.append(
            SensorStats(
                uid=owner[0],
                package_name=owner[1],
                sensor_handle=handle,
                sensor_name=sensor_name(handle),
                total_time_ms=rec.int_at(5),
                count=rec.int_at(6),
            )
        )
        return True

    def _on_process(self, rec: CheckinRecord) -> bool:
        owner = self._owner(rec)
        process = rec.text_at(4)
        if owner is None or process is None:
            return False
        self.processes.append(
            ProcessStats(
                uid=owner[0],
                package_name=owner[1],
                process_name=process,
                user_time_ms=rec.int_at(5),
                system_time_ms=rec.int_at(6),
                foreground_time_ms=rec.int_at(7),
                starts=rec.int_at(8),
            )
        )
        return True

    # --- global families ---

    def _on_histogram(self, rec: CheckinRecord, out: list[SignalLevelStats]) -> bool:
        times = [rec.opt_int_at(i) for i in range(4, 4 + HISTOGRAM_LEVELS)]
        if any(t is None for t in times):
            return False
        total = float(max(sum(times), 1))
        for level, t in enumerate(times):
            out.append(SignalLevelStats(level=level, duration_ms=t, percent_of_total=t / total))
        return True

    def _on_bluetooth(self, rec: CheckinRecord) -> bool:
        idle = rec.opt_int_at(4)
        if idle is None:
            return False
        self.bluetooth = BluetoothStats(
            idle_time_ms=idle,
            rx_time_ms=rec.int_at(5),
            tx_time_ms=rec.int_at(6),
            power_mah=rec.float_at(7),
        )
        return True

    def _on_doze(self, rec: CheckinRecord) -> bool:
        deep_count = rec.opt_int_at(4)
        if deep_count is None:
            return False
        deep_ms = rec.int_at(5)
        light_count = rec.int_at(6)
        light_ms = rec.int_at(7)
        self.doze = DozeStats(
            idle_mode_time_ms=deep_ms + light_ms,
            idle_mode_count=deep_count + light_count,
            deep_idle_time_ms=deep_ms,
            deep_idle_count=deep_count,
            light_idle_time_ms=light_ms,
            light_idle_count=light_count,
            maintenance_count=rec.int_at(8),
            maintenance_time_ms=rec.int_at(9),
        )
        return True

    def _on_discharge_step(self, rec: CheckinRecord) -> bool:
        on = rec.opt_float_at(5)
        off = rec.opt_float_at(6)
        if on is not None:
            self.screen_on_discharge = on
        if off is not None:
            self.screen_off_discharge = off
        return True

    def _on_battery_core(self, rec: CheckinRecord) -> bool:
        self.battery_realtime_ms = rec.int_at(5)
        self.battery_uptime_ms = rec.int_at(6)
        return True

    def _on_misc(self, rec: CheckinRecord) -> bool:
        self.screen_on_time_ms = rec.int_at(4)
        return True

    def _on_power_summary(self, rec: CheckinRecord) -> bool:
        capacity = rec.opt_float_at(4)
        self.estimated_capacity = int(capacity) if capacity is not None else 0
        self.power_summary = PowerSummary(
            capacity_mah=self.estimated_capacity,
            computed_drain_mah=rec.float_at(5),
            min_drained_mah=rec.float_at(6),
            max_drained_mah=rec.float_at(7),
        )
        return True

    def _on_cpu_freqs(self, rec: CheckinRecord) -> bool:
        freqs = [rec.opt_int_at(i) for i in range(4, len(rec))]
        if not freqs or any(f is None for f in freqs):
            return False
        self.cpu_freqs_khz = freqs
        return True

    def _on_cpu_times_at_freq(self, rec: CheckinRecord) -> bool:
        # 9,<uid>,l,ctf,A,<n>,<t0>..<tn-1>,<m>,<screen-off times...>
        if rec.text_at(4) != "A":
            return True
        n = rec.opt_int_at(5)
        if n is None or n <= 0:
            return False
        if len(self.cpu_times_ms) < n:
            self.cpu_times_ms.extend([0] * (n - len(self.cpu_times_ms)))
        for i in range(n):
            self.cpu_times_ms[i] += rec.int_at(6 + i)
        return True

    def _cpu_frequency(self) -> tuple[CpuFrequencyStats, ...]:
        times = self.cpu_times_ms
        if not times:
            return ()
        total = float(max(sum(times), 1))
        out = []
        for i, t in enumerate(times):
            freq = self.cpu_freqs_khz[i] if i < len(self.cpu_freqs_khz) else 0
            out.append(CpuFrequencyStats(index=i, frequency_khz=freq, time_ms=t, percent_of_total=t / total))
        return tuple(out)

    def build(self, captured_at: float | None) -> CheckinSnapshot:
        return CheckinSnapshot(
            captured_at=captured_at,
            battery_realtime_ms=self.battery_realtime_ms,
            battery_uptime_ms=self.battery_uptime_ms,
            screen_on_time_ms=self.screen_on_time_ms,
            screen_on_discharge_percent=self.screen_on_discharge,
            screen_off_discharge_percent=self.screen_off_discharge,
            estimated_capacity_mah=self.estimated_capacity,
            power_summary=self.power_summary,
            apps=tuple(sorted(self.apps.values(), key=lambda a: a.power_mah, reverse=True)),
            wakelocks=tuple(sorted(self.wakelocks, key=lambda w: w.total_time_ms, reverse=True)),
            kernel_wakelocks=tuple(sorted(self.kernel_wakelocks, key=lambda k: k.total_time_ms, reverse=True)),
            alarms=tuple(sorted(self.alarms, key=lambda a: a.count, reverse=True)),
            jobs=tuple(sorted(self.jobs, key=lambda j: j.total_time_ms, reverse=True)),
            syncs=tuple(sorted(self.syncs, key=lambda s: s.total_time_ms, reverse=True)),
            network=tuple(sorted(self.network, key=lambda n: n.total_bytes, reverse=True)),
            sensors=tuple(sorted(self.sensors, key=lambda s: s.total_time_ms, reverse=True)),
            signal_strength=tuple(self.signal_strength),
            wifi_signal=tuple(self.wifi_signal),
            bluetooth=self.bluetooth,
            doze=self.doze,
            cpu_frequency=self._cpu_frequency(),
            processes=tuple(sorted(self.processes, key=lambda p: p.cpu_time_ms, reverse=True)),
        )


def parse_checkin(text: str | None, *, captured_at: float | None = None) -> CheckinSnapshot:
    """Decode a full checkin dump. Absent or empty text yields an empty snapshot."""
    builder = _SnapshotBuilder()
    if not text:
        return builder.build(captured_at)

    decoded = dropped = unknown = 0
    for line in text.splitlines():
        rec = decode_record(line)
        if rec is None:
            if line.strip():
                dropped += 1
            continue
        result = builder.feed(rec)
        if result is None:
            unknown += 1
        elif result:
            decoded += 1
        else:
            dropped += 1

    logger.debug("checkin: decoded=%d dropped=%d unknown=%d", decoded, dropped, unknown)
    return builder.build(captured_at)
