from __future__ import annotations

import argparse
import logging
from datetime import datetime
from pathlib import Path

from _bootstrap import ensure_repo_root_on_sys_path

ensure_repo_root_on_sys_path()

from batstats.adb import ensure_device_ready
from batstats.adb import pick_default_serial
from batstats.adb import resolve_adb
from batstats.drain import Bucket
from batstats.drain import DrainAttributionTracker
from batstats.drain import DrainConfig
from batstats.drain import DrainState
from batstats.drain import format_drain_rate
from batstats.drain import format_duration
from batstats.pipeline_ops import readings_to_frame
from batstats.pipeline_ops import write_drain_report
from batstats.sampler import AdbDrainSampler
from batstats.sampler import run_tracking


def _progress(state: DrainState) -> None:
    mode = "charging" if state.is_charging else ("screen_on" if state.is_screen_on else "screen_off")
    print(
        f"[sample] level={state.battery_level}% mAh={state.battery_mah:.0f} mode={mode} "
        f"on={format_drain_rate(state.rate(Bucket.SCREEN_ON))} "
        f"off={format_drain_rate(state.rate(Bucket.SCREEN_OFF))} "
        f"session={format_duration(state.session_duration_ms)}"
    )


def main() -> int:
    ap = argparse.ArgumentParser(description="Track battery drain per device state over adb")
    ap.add_argument("--adb", default=None, help="Path to adb (default: auto-detect)")
    ap.add_argument("--serial", default=None)
    ap.add_argument("--interval", type=float, default=DrainConfig.poll_interval_s, help="Poll interval seconds")
    ap.add_argument("--duration", type=float, default=3600.0, help="Total duration seconds")
    ap.add_argument("--capacity-mah", type=float, default=DrainConfig.default_capacity_mah)
    ap.add_argument("--deep-sleep-threshold-ms", type=int, default=DrainConfig.deep_sleep_threshold_ms)
    ap.add_argument(
        "--screen-check",
        type=float,
        default=5.0,
        help="Seconds between display-state checks; a flip samples at once (0: screen changes only at --interval)",
    )
    ap.add_argument("--no-checkin", action="store_true", help="Skip checkin pulls (no sleep counters)")
    ap.add_argument("--out-dir", type=Path, default=None, help="Report dir (default: artifacts/drain/<run_id>)")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.interval <= 0:
        raise SystemExit("--interval must be positive")

    adb = resolve_adb(args.adb)
    serial = args.serial or pick_default_serial(adb, timeout_s=8.0)
    if serial is None:
        raise SystemExit("No ADB device found. If using wireless debugging, pair/connect first, then pass --serial <serial>.")
    ensure_device_ready(adb, serial, timeout_s=15.0)

    config = DrainConfig(
        poll_interval_s=args.interval,
        deep_sleep_threshold_ms=args.deep_sleep_threshold_ms,
        default_capacity_mah=args.capacity_mah,
    )
    sampler = AdbDrainSampler(
        adb,
        serial,
        with_checkin=not args.no_checkin,
        deep_sleep_threshold_ms=config.deep_sleep_threshold_ms,
    )
    tracker = DrainAttributionTracker(sampler=sampler, config=config)
    tracker.add_listener(_progress)

    run_id = datetime.now().astimezone().strftime("%Y%m%d_%H%M%S")
    out_dir: Path = args.out_dir if args.out_dir is not None else Path("artifacts") / "drain" / run_id
    print(f"Tracking -> {out_dir} (interval={args.interval}s, duration={args.duration}s)")

    try:
        run_tracking(tracker, sampler, args.duration, screen_check_s=args.screen_check)
    except KeyboardInterrupt:
        print("[track] interrupted")

    frame = readings_to_frame(tracker.readings)
    out_dir.mkdir(parents=True, exist_ok=True)
    readings_csv = out_dir / "readings.csv"
    frame.to_csv(readings_csv, index=False)
    print(f"Wrote: {readings_csv}")
    for p in write_drain_report(tracker.state, frame, out_dir):
        print(f"Wrote: {p}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
