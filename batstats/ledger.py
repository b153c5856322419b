"""Hourly per-app energy ledger fed by successive checkin snapshots.

Checkin per-app mAh is cumulative since the last full charge, so each poll
contributes only the positive growth since the previous poll. The first poll
after (re)start only records the baseline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import pandas as pd

from batstats.checkin import CheckinSnapshot
from batstats.checkin import parse_checkin
from batstats.drain import DrainReading
from batstats.drain import MS_PER_HOUR


logger = logging.getLogger("batstats.ledger")

NOISE_FLOOR_MAH = 0.0001
MODE_CHECKIN = "CHECKIN"
MODE_FOREGROUND = "FOREGROUND"
HOUR_MS = 3_600_000


def hour_bucket(at_ms: int) -> int:
    return at_ms - (at_ms % HOUR_MS)


@dataclass(frozen=True)
class LedgerDelta:
    bucket_start_ms: int
    identifier: str
    mode: str
    energy_mah: float
    samples: int = 1


@dataclass
class LedgerEntry:
    bucket_start_ms: int
    identifier: str
    mode: str
    energy_mah: float = 0.0
    sample_count: int = 0


class EnergyLedger:
    """In-memory store with the upsert-by-key contract of the persistent one."""

    def __init__(self) -> None:
        self._entries: dict[tuple[int, str, str], LedgerEntry] = {}

    def increment(self, bucket_start_ms: int, identifier: str, mode: str, energy_mah: float, samples: int = 1) -> LedgerEntry:
        key = (bucket_start_ms, identifier, mode)
        entry = self._entries.get(key)
        if entry is None:
            entry = LedgerEntry(bucket_start_ms=bucket_start_ms, identifier=identifier, mode=mode)
            self._entries[key] = entry
        entry.energy_mah += energy_mah
        entry.sample_count += samples
        return entry

    def apply(self, delta: LedgerDelta) -> LedgerEntry:
        return self.increment(delta.bucket_start_ms, delta.identifier, delta.mode, delta.energy_mah, delta.samples)

    def get(self, bucket_start_ms: int, identifier: str, mode: str) -> LedgerEntry | None:
        return self._entries.get((bucket_start_ms, identifier, mode))

    def entries(self) -> list[LedgerEntry]:
        return sorted(self._entries.values(), key=lambda e: (e.bucket_start_ms, e.mode, e.identifier))

    def top(self, n: int = 10, mode: str | None = None) -> list[tuple[str, float]]:
        totals: dict[str, float] = {}
        for e in self._entries.values():
            if mode is not None and e.mode != mode:
                continue
            totals[e.identifier] = totals.get(e.identifier, 0.0) + e.energy_mah
        return sorted(totals.items(), key=lambda kv: kv[1], reverse=True)[:n]

    def __len__(self) -> int:
        return len(self._entries)

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                "bucket_start_ms": e.bucket_start_ms,
                "bucket_start": pd.to_datetime(e.bucket_start_ms, unit="ms", utc=True),
                "identifier": e.identifier,
                "mode": e.mode,
                "energy_mah": e.energy_mah,
                "sample_count": e.sample_count,
            }
            for e in self.entries()
        ]
        cols = ["bucket_start_ms", "bucket_start", "identifier", "mode", "energy_mah", "sample_count"]
        return pd.DataFrame(rows, columns=cols)


class IncrementalEnergyAccumulator:
    def __init__(self, ledger: EnergyLedger, mode: str = MODE_CHECKIN, noise_floor_mah: float = NOISE_FLOOR_MAH) -> None:
        self.ledger = ledger
        self.mode = mode
        self.noise_floor_mah = noise_floor_mah
        self._previous: dict[str, float] | None = None

    @property
    def has_baseline(self) -> bool:
        return self._previous is not None

    def reset(self) -> None:
        self._previous = None

    def compute_deltas(self, current: dict[str, float], at_ms: int) -> list[LedgerDelta]:
        if self._previous is None:
            return []
        bucket = hour_bucket(at_ms)
        out: list[LedgerDelta] = []
        for identifier, cur in current.items():
            prev = self._previous.get(identifier)
            if prev is None:
                continue
            delta = max(0.0, cur - prev)
            if delta <= self.noise_floor_mah:
                continue
            out.append(LedgerDelta(bucket_start_ms=bucket, identifier=identifier, mode=self.mode, energy_mah=delta))
        return out

    def ingest(self, snapshot: CheckinSnapshot | None, at_ms: int) -> list[LedgerDelta]:
        """Diff against the previous poll and upsert the surviving deltas."""
        if snapshot is None:
            return []
        current = snapshot.energy_by_package()
        warmup = self._previous is None
        deltas = self.compute_deltas(current, at_ms)
        try:
            for d in deltas:
                self.ledger.apply(d)
        finally:
            self._previous = current
        if warmup:
            logger.debug("ledger: baseline stored (%d identifiers)", len(current))
        else:
            logger.debug("ledger: applied %d deltas", len(deltas))
        return deltas

    def ingest_text(self, text: str | None, at_ms: int) -> list[LedgerDelta]:
        if not text:
            return []
        return self.ingest(parse_checkin(text), at_ms)


# -----------------------------
# Foreground heuristic
# -----------------------------


SCREEN_ON_BASELINE_MA = 80.0
SCREEN_OFF_BASELINE_MA = 20.0


class ForegroundExcessAttributor:
    """Charge current above a coarse baseline to whichever package is in front.

    Lower fidelity than checkin deltas; used when only readings and the
    foreground package are available.
    """

    def __init__(self, ledger: EnergyLedger, mode: str = MODE_FOREGROUND) -> None:
        self.ledger = ledger
        self.mode = mode
        self._last_ms: int | None = None
        self._last_package: str | None = None

    @staticmethod
    def baseline_ma(screen_on: bool) -> float:
        return SCREEN_ON_BASELINE_MA if screen_on else SCREEN_OFF_BASELINE_MA

    def observe(self, reading: DrainReading, foreground_package: str | None) -> LedgerDelta | None:
        pkg = foreground_package or self._last_package
        last_ms = self._last_ms
        self._last_ms = reading.timestamp_ms
        self._last_package = pkg
        if last_ms is None or pkg is None:
            return None
        dt_h = max(0.0, (reading.timestamp_ms - last_ms) / MS_PER_HOUR)
        if dt_h <= 0.0:
            return None
        excess_ma = max(0.0, abs(reading.current_ma) - self.baseline_ma(reading.screen_on))
        delta = LedgerDelta(
            bucket_start_ms=hour_bucket(reading.timestamp_ms),
            identifier=pkg,
            mode=self.mode,
            energy_mah=excess_ma * dt_h,
        )
        self.ledger.apply(delta)
        return delta
