from __future__ import annotations

import argparse
import logging
import time
from datetime import datetime
from pathlib import Path

from _bootstrap import ensure_repo_root_on_sys_path

ensure_repo_root_on_sys_path()

from batstats.adb import ensure_device_ready
from batstats.adb import foreground_package
from batstats.adb import pick_default_serial
from batstats.adb import read_checkin
from batstats.adb import resolve_adb
from batstats.checkin import parse_checkin
from batstats.drain import DEFAULT_CAPACITY_MAH
from batstats.ledger import EnergyLedger
from batstats.ledger import ForegroundExcessAttributor
from batstats.ledger import IncrementalEnergyAccumulator
from batstats.ledger import NOISE_FLOOR_MAH
from batstats.pipeline_ops import write_ledger_csv
from batstats.sampler import AdbDrainSampler


def main() -> int:
    ap = argparse.ArgumentParser(description="Poll checkin per-app mAh and accumulate an hourly ledger")
    ap.add_argument("--adb", default=None, help="Path to adb (default: auto-detect)")
    ap.add_argument("--serial", default=None)
    ap.add_argument("--interval", type=float, default=300.0, help="Poll interval seconds")
    ap.add_argument("--duration", type=float, default=3600.0, help="Total duration seconds")
    ap.add_argument("--noise-floor-mah", type=float, default=NOISE_FLOOR_MAH)
    ap.add_argument("--foreground", action="store_true", help="Also attribute excess current to the foreground app")
    ap.add_argument("--out", type=Path, default=None, help="Ledger CSV (default: artifacts/ledger/<run_id>.csv)")
    ap.add_argument("--top", type=int, default=10)
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    adb = resolve_adb(args.adb)
    serial = args.serial or pick_default_serial(adb, timeout_s=8.0)
    if serial is None:
        raise SystemExit("No ADB device found. Pass --serial <serial>.")
    ensure_device_ready(adb, serial, timeout_s=15.0)

    ledger = EnergyLedger()
    accumulator = IncrementalEnergyAccumulator(ledger, noise_floor_mah=args.noise_floor_mah)
    fg = ForegroundExcessAttributor(ledger) if args.foreground else None
    sampler = AdbDrainSampler(adb, serial, with_checkin=False) if args.foreground else None

    run_id = datetime.now().astimezone().strftime("%Y%m%d_%H%M%S")
    out_path: Path = args.out if args.out is not None else Path("artifacts") / "ledger" / f"{run_id}.csv"

    t0 = time.time()
    seq = 0
    try:
        while True:
            now_ms = int(time.time() * 1000)
            text = read_checkin(adb, serial)
            if text is not None:
                deltas = accumulator.ingest(parse_checkin(text, captured_at=now_ms / 1000.0), now_ms)
                total = sum(d.energy_mah for d in deltas)
                print(f"[poll] seq={seq} deltas={len(deltas)} mAh={total:.3f} entries={len(ledger)}")
            else:
                print(f"[poll] seq={seq} checkin unavailable")
            if fg is not None and sampler is not None:
                reading = sampler(DEFAULT_CAPACITY_MAH)
                if reading is not None:
                    fg.observe(reading, foreground_package(adb, serial))
            seq += 1
            if time.time() - t0 + args.interval > args.duration:
                break
            time.sleep(args.interval)
    except KeyboardInterrupt:
        print("[poll] interrupted")

    write_ledger_csv(ledger, out_path)
    print(f"Wrote: {out_path}")
    for ident, mah in ledger.top(args.top):
        print(f"[top] {mah:8.3f} mAh  {ident}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
