from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from batstats.checkin import CheckinSnapshot
from batstats.checkin import parse_checkin
from batstats.drain import Bucket
from batstats.drain import DrainAttributionTracker
from batstats.drain import DrainConfig
from batstats.drain import DrainReading
from batstats.drain import DrainState
from batstats.drain import format_duration
from batstats.ledger import EnergyLedger


logger = logging.getLogger("batstats.pipeline_ops")


# -----------------------------
# Checkin exports
# -----------------------------


def _rows(items) -> list[dict]:
    out = []
    for it in items:
        row = asdict(it)
        for k, v in row.items():
            if hasattr(v, "value"):
                row[k] = v.value
        out.append(row)
    return out


def snapshot_to_frames(snap: CheckinSnapshot) -> dict[str, pd.DataFrame]:
    """One DataFrame per non-empty list section, keyed by the section name."""
    sections = {
        "apps": snap.apps,
        "wakelocks": snap.wakelocks,
        "kernel_wakelocks": snap.kernel_wakelocks,
        "alarms": snap.alarms,
        "jobs": snap.jobs,
        "syncs": snap.syncs,
        "network": snap.network,
        "sensors": snap.sensors,
        "signal_strength": snap.signal_strength,
        "wifi_signal": snap.wifi_signal,
        "cpu_frequency": snap.cpu_frequency,
        "processes": snap.processes,
    }
    return {name: pd.DataFrame(_rows(items)) for name, items in sections.items() if items}


def snapshot_summary(snap: CheckinSnapshot) -> dict:
    return {
        "captured_at": snap.captured_at,
        "battery_realtime_ms": snap.battery_realtime_ms,
        "battery_uptime_ms": snap.battery_uptime_ms,
        "screen_on_time_ms": snap.screen_on_time_ms,
        "screen_on_discharge_percent": snap.screen_on_discharge_percent,
        "screen_off_discharge_percent": snap.screen_off_discharge_percent,
        "estimated_capacity_mah": snap.estimated_capacity_mah,
        "power_summary": asdict(snap.power_summary) if snap.power_summary else None,
        "bluetooth": asdict(snap.bluetooth) if snap.bluetooth else None,
        "doze": asdict(snap.doze) if snap.doze else None,
        "counts": {
            "apps": len(snap.apps),
            "wakelocks": len(snap.wakelocks),
            "kernel_wakelocks": len(snap.kernel_wakelocks),
            "alarms": len(snap.alarms),
            "jobs": len(snap.jobs),
            "syncs": len(snap.syncs),
            "network": len(snap.network),
            "sensors": len(snap.sensors),
            "processes": len(snap.processes),
        },
    }


def write_snapshot_outputs(snap: CheckinSnapshot, out_dir: Path) -> list[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []

    summary_path = out_dir / "checkin_summary.json"
    summary_path.write_text(json.dumps(snapshot_summary(snap), ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    written.append(summary_path)

    for name, df in snapshot_to_frames(snap).items():
        p = out_dir / f"{name}.csv"
        df.to_csv(p, index=False)
        written.append(p)
    return written


# -----------------------------
# Drain replay / report
# -----------------------------


READING_COLUMNS = [
    "timestamp_ms",
    "battery_level",
    "battery_mah",
    "current_ma",
    "screen_on",
    "charging",
    "deep_sleep",
    "dozing",
    "cpu_awake_time_ms",
    "deep_sleep_time_ms",
]

_BOOL_COLUMNS = ["screen_on", "charging", "deep_sleep", "dozing"]
_REQUIRED_COLUMNS = ["timestamp_ms", "battery_mah", "screen_on", "charging"]


def readings_to_frame(readings) -> pd.DataFrame:
    return pd.DataFrame([asdict(r) for r in readings], columns=READING_COLUMNS)


def _as_bool(v) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "y")
    try:
        return bool(v) and bool(v == v)
    except (TypeError, ValueError):
        return False


def frame_to_readings(df: pd.DataFrame) -> list[DrainReading]:
    """Rows with missing required numbers are skipped."""
    missing = [c for c in _REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise SystemExit(f"readings CSV missing columns: {', '.join(missing)}")

    df = df.copy()
    for col in READING_COLUMNS:
        if col not in df.columns:
            df[col] = 0
        if col not in _BOOL_COLUMNS:
            df[col] = pd.to_numeric(df[col], errors="coerce")

    out: list[DrainReading] = []
    skipped = 0
    for row in df.itertuples(index=False):
        if pd.isna(row.timestamp_ms) or pd.isna(row.battery_mah):
            skipped += 1
            continue
        out.append(
            DrainReading(
                timestamp_ms=int(row.timestamp_ms),
                battery_level=0 if pd.isna(row.battery_level) else int(row.battery_level),
                battery_mah=float(row.battery_mah),
                current_ma=0 if pd.isna(row.current_ma) else int(row.current_ma),
                screen_on=_as_bool(row.screen_on),
                charging=_as_bool(row.charging),
                deep_sleep=_as_bool(row.deep_sleep),
                dozing=_as_bool(row.dozing),
                cpu_awake_time_ms=0 if pd.isna(row.cpu_awake_time_ms) else int(row.cpu_awake_time_ms),
                deep_sleep_time_ms=0 if pd.isna(row.deep_sleep_time_ms) else int(row.deep_sleep_time_ms),
            )
        )
    if skipped:
        logger.debug("readings: skipped %d incomplete rows", skipped)
    return out


def replay_readings(readings, config: DrainConfig | None = None) -> DrainState:
    """Feed recorded readings through a fresh tracker; session starts at the first reading."""
    readings = list(readings)
    start_ms = readings[0].timestamp_ms if readings else 0
    tracker = DrainAttributionTracker(config=config, clock_ms=lambda: start_ms)
    for r in readings:
        tracker.process(r)
    return tracker.state


@dataclass(frozen=True)
class DrainSummary:
    readings: int
    session_duration_ms: int
    total_drain_mah: float
    average_drain_rate: float
    screen_on_percentage: float
    deep_sleep_percentage: float
    discharge_current_ma_p50: float | None
    discharge_current_ma_p95: float | None


def summarize_drain(state: DrainState, frame: pd.DataFrame) -> DrainSummary:
    cur = pd.to_numeric(frame.get("current_ma", pd.Series(dtype=float)), errors="coerce").dropna()
    if "charging" in frame.columns and len(cur):
        cur = cur[~frame.loc[cur.index, "charging"].map(_as_bool).astype(bool)]
    arr = np.abs(cur.to_numpy(dtype=float))
    p50 = float(np.quantile(arr, 0.5)) if arr.size else None
    p95 = float(np.quantile(arr, 0.95)) if arr.size else None
    return DrainSummary(
        readings=int(len(frame)),
        session_duration_ms=state.session_duration_ms,
        total_drain_mah=state.total_drain_mah,
        average_drain_rate=state.average_drain_rate,
        screen_on_percentage=state.screen_on_percentage,
        deep_sleep_percentage=state.deep_sleep_percentage,
        discharge_current_ma_p50=p50,
        discharge_current_ma_p95=p95,
    )


def buckets_frame(state: DrainState) -> pd.DataFrame:
    rows = []
    for b in Bucket:
        t = state.totals(b)
        rows.append(
            {
                "bucket": b.value,
                "duration_ms": t.duration_ms,
                "energy_mah": t.energy_mah,
                "rate_mah_per_h": t.rate_mah_per_h,
            }
        )
    return pd.DataFrame(rows)


def write_drain_report(state: DrainState, frame: pd.DataFrame, out_dir: Path) -> tuple[Path, Path]:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    out_dir.mkdir(parents=True, exist_ok=True)
    summary = summarize_drain(state, frame)
    buckets = buckets_frame(state)
    buckets.to_csv(out_dir / "buckets.csv", index=False)

    md_path = out_dir / "summary.md"
    png_path = out_dir / "drain.png"

    lines: list[str] = []
    lines.append("# Drain report")
    lines.append("")
    lines.append(f"- readings: {summary.readings}")
    lines.append(f"- session: {format_duration(summary.session_duration_ms)}")
    lines.append(f"- total_drain_mAh: {summary.total_drain_mah:.2f}")
    lines.append(f"- average_drain_mAh_per_h: {summary.average_drain_rate:.2f}")
    lines.append(f"- screen_on_pct: {summary.screen_on_percentage:.1f}")
    lines.append(f"- deep_sleep_pct_of_screen_off: {summary.deep_sleep_percentage:.1f}")
    if summary.discharge_current_ma_p50 is not None:
        lines.append(f"- discharge_current_mA_p50: {summary.discharge_current_ma_p50:.0f}")
    if summary.discharge_current_ma_p95 is not None:
        lines.append(f"- discharge_current_mA_p95: {summary.discharge_current_ma_p95:.0f}")
    lines.append("")
    lines.append("| bucket | time | mAh | mAh/h |")
    lines.append("|---|---|---|---|")
    for row in buckets.itertuples(index=False):
        lines.append(f"| {row.bucket} | {format_duration(int(row.duration_ms))} | {row.energy_mah:.2f} | {row.rate_mah_per_h:.1f} |")
    md_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    fig, axes = plt.subplots(2, 1, figsize=(11, 8))
    if len(frame) and "timestamp_ms" in frame.columns:
        ts = pd.to_numeric(frame["timestamp_ms"], errors="coerce")
        x = (ts - ts.iloc[0]) / 1000.0
        axes[0].plot(x, pd.to_numeric(frame["battery_mah"], errors="coerce"), label="battery_mah")
        axes[0].set_ylabel("mAh")
        axes[0].set_xlabel("t (s)")
        axes[0].legend(loc="best")
    axes[1].bar(buckets["bucket"], buckets["rate_mah_per_h"], color="tab:orange")
    axes[1].set_ylabel("mAh/h")
    fig.tight_layout()
    fig.savefig(png_path, dpi=160)
    plt.close(fig)

    return md_path, png_path


# -----------------------------
# Ledger export
# -----------------------------


def write_ledger_csv(ledger: EnergyLedger, out_csv: Path) -> Path:
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    ledger.to_frame().to_csv(out_csv, index=False)
    return out_csv


# -----------------------------
# Module CLI
# -----------------------------


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="batstats ops (checkin export, drain replay)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_ck = sub.add_parser("parse-checkin", help="Decode a saved `dumpsys batterystats --checkin` dump")
    p_ck.add_argument("dump", type=Path)
    p_ck.add_argument("--out-dir", type=Path, default=Path("artifacts/checkin"))

    p_rp = sub.add_parser("replay-drain", help="Replay a readings CSV and write summary.md + drain.png")
    p_rp.add_argument("--csv", type=Path, required=True)
    p_rp.add_argument("--out-dir", type=Path, default=None)
    p_rp.add_argument("--active-threshold-ma", type=int, default=DrainConfig.active_current_threshold_ma)

    args = ap.parse_args(argv)

    if args.cmd == "parse-checkin":
        text = args.dump.read_text(encoding="utf-8", errors="replace")
        snap = parse_checkin(text, captured_at=args.dump.stat().st_mtime)
        for p in write_snapshot_outputs(snap, args.out_dir):
            print(f"Wrote: {p}")
        return 0

    if args.cmd == "replay-drain":
        frame = pd.read_csv(args.csv)
        readings = frame_to_readings(frame)
        state = replay_readings(readings, DrainConfig(active_current_threshold_ma=args.active_threshold_ma))
        out_dir = args.out_dir or (Path("artifacts") / "reports" / args.csv.stem)
        for p in write_drain_report(state, readings_to_frame(readings), out_dir):
            print(f"Wrote: {p}")
        return 0

    raise SystemExit("unknown command")


if __name__ == "__main__":
    raise SystemExit(main())
