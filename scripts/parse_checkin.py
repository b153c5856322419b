from __future__ import annotations

import argparse
import time
from pathlib import Path

from _bootstrap import ensure_repo_root_on_sys_path

ensure_repo_root_on_sys_path()

from batstats.adb import ensure_device_ready
from batstats.adb import pick_default_serial
from batstats.adb import read_checkin
from batstats.adb import resolve_adb
from batstats.checkin import parse_checkin
from batstats.pipeline_ops import write_snapshot_outputs


def main() -> int:
    ap = argparse.ArgumentParser(description="Decode `dumpsys batterystats --checkin` into JSON/CSV tables")
    ap.add_argument("--dump", type=Path, default=None, help="Saved checkin text (default: pull from device)")
    ap.add_argument("--adb", default=None, help="Path to adb (default: auto-detect)")
    ap.add_argument("--serial", default=None)
    ap.add_argument("--out-dir", type=Path, default=Path("artifacts/checkin"))
    ap.add_argument("--save-raw", action="store_true", help="Also write the raw dump next to the tables")
    ap.add_argument("--top", type=int, default=10, help="Print the top-N apps by mAh")
    args = ap.parse_args()

    if args.dump is not None:
        text = args.dump.read_text(encoding="utf-8", errors="replace")
        captured_at = args.dump.stat().st_mtime
    else:
        adb = resolve_adb(args.adb)
        serial = args.serial or pick_default_serial(adb, timeout_s=8.0)
        if serial is None:
            raise SystemExit("No ADB device found. Pass --dump <file> or connect a device.")
        ensure_device_ready(adb, serial, timeout_s=15.0)
        text = read_checkin(adb, serial)
        if text is None:
            raise SystemExit("dumpsys batterystats --checkin returned no usable output")
        captured_at = time.time()

    snap = parse_checkin(text, captured_at=captured_at)
    if snap.is_empty:
        print("[checkin] no recognised records")

    args.out_dir.mkdir(parents=True, exist_ok=True)
    if args.save_raw:
        raw = args.out_dir / "checkin_raw.txt"
        raw.write_text(text, encoding="utf-8")
        print(f"Wrote: {raw}")
    for p in write_snapshot_outputs(snap, args.out_dir):
        print(f"Wrote: {p}")

    for app in snap.apps[: max(0, args.top)]:
        print(f"[app] {app.power_mah:8.2f} mAh  uid={app.uid}  {app.package_name}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
