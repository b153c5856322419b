from __future__ import annotations

import logging
import os
import re
import subprocess
import time
from pathlib import Path


logger = logging.getLogger("batstats.adb")

CHECKIN_ARGS = ["batterystats", "--checkin"]


def default_adb_candidates() -> list[str]:
    candidates: list[str] = ["adb"]

    sdk = os.environ.get("ANDROID_HOME") or os.environ.get("ANDROID_SDK_ROOT")
    if sdk:
        candidates.append(str(Path(sdk) / "platform-tools" / "adb"))
    local = os.environ.get("LOCALAPPDATA")
    if local:
        candidates.append(str(Path(local) / "Android" / "Sdk" / "platform-tools" / "adb.exe"))
    candidates.append(str(Path.home() / "Android" / "Sdk" / "platform-tools" / "adb"))

    seen: set[str] = set()
    out: list[str] = []
    for c in candidates:
        if c and c not in seen:
            seen.add(c)
            out.append(c)
    return out


def resolve_adb(adb_arg: str | None) -> str:
    if adb_arg:
        return adb_arg
    for cand in default_adb_candidates():
        try:
            proc = subprocess.run([cand, "version"], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            if proc.returncode == 0:
                return cand
        except FileNotFoundError:
            continue
    raise SystemExit("adb not found. Pass --adb <path-to-adb> or add platform-tools to PATH.")


def run_adb(adb: str, args: list[str], timeout_s: float) -> tuple[int, str, str]:
    proc = subprocess.run(
        [adb, *args],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        timeout=timeout_s,
    )
    return proc.returncode, proc.stdout.decode("utf-8", errors="replace"), proc.stderr.decode("utf-8", errors="replace")


def adb_shell(adb: str, serial: str | None, args: list[str], timeout_s: float) -> tuple[int, str, str]:
    base = ["-s", serial] if serial else []
    return run_adb(adb, [*base, "shell", *args], timeout_s=timeout_s)


def list_devices(adb: str, timeout_s: float) -> list[tuple[str, str]]:
    """Return [(serial, state)] from `adb devices` (state is usually 'device', 'offline', 'unauthorized')."""
    rc, out, err = run_adb(adb, ["devices"], timeout_s=timeout_s)
    if rc != 0:
        raise RuntimeError(f"adb devices failed: {err.strip()}")
    devices: list[tuple[str, str]] = []
    for ln in out.splitlines():
        ln = ln.strip()
        if not ln or ln.lower().startswith("list of devices"):
            continue
        parts = ln.split()
        if len(parts) < 2:
            continue
        devices.append((parts[0], parts[1]))
    return devices


def pick_default_serial(adb: str, timeout_s: float) -> str | None:
    devices = [s for s, st in list_devices(adb, timeout_s=timeout_s) if st == "device"]
    if not devices:
        return None
    return devices[0]


def dumpsys_text(adb: str, serial: str | None, service_args: list[str], timeout_s: float = 30.0) -> str | None:
    """Best-effort `dumpsys <service_args>`; None when the output is unusable.

    Failures here are ordinary (device asleep on wireless debugging, service
    missing on an OEM build), so the caller just skips the cycle.
    """
    try:
        rc, out, err = adb_shell(adb, serial, ["dumpsys", *service_args], timeout_s=timeout_s)
    except subprocess.TimeoutExpired:
        logger.warning("dumpsys %s: timeout after %.0fs", " ".join(service_args), timeout_s)
        return None
    except OSError as e:
        logger.warning("dumpsys %s: %s", " ".join(service_args), e)
        return None
    if rc != 0:
        logger.warning("dumpsys %s: rc=%d %s", " ".join(service_args), rc, (err or out).strip()[:200])
        return None
    if not out.strip() or out.startswith("ERROR"):
        return None
    return out


def read_checkin(adb: str, serial: str | None, timeout_s: float = 60.0) -> str | None:
    return dumpsys_text(adb, serial, CHECKIN_ARGS, timeout_s=timeout_s)


def ensure_device_ready(adb: str, serial: str | None, timeout_s: float) -> None:
    """Wait for `get-state` == device, restarting the adb server once along the way."""
    base = ["-s", serial] if serial else []

    rc, out, _ = run_adb(adb, [*base, "get-state"], timeout_s=timeout_s)
    if rc == 0 and out.strip() == "device":
        return

    run_adb(adb, ["start-server"], timeout_s=timeout_s)
    t0 = time.time()
    while time.time() - t0 < timeout_s:
        rc, out, err = run_adb(adb, [*base, "get-state"], timeout_s=timeout_s)
        if rc == 0 and out.strip() == "device":
            return
        if "unauthorized" in (out + err):
            raise SystemExit("Device unauthorized. Accept the USB debugging prompt on the phone.")
        time.sleep(1.0)

    raise TimeoutError("Device not ready (timeout)")


_RE_RESUMED = re.compile(r"(?:mResumedActivity|topResumedActivity|ResumedActivity)[:=].*?\s([\w.]+)/")


def foreground_package(adb: str, serial: str | None, timeout_s: float = 10.0) -> str | None:
    text = dumpsys_text(adb, serial, ["activity", "activities"], timeout_s=timeout_s)
    if text is None:
        return None
    m = _RE_RESUMED.search(text)
    return m.group(1) if m else None
