from __future__ import annotations

import re
from dataclasses import dataclass


# -----------------------------
# dumpsys battery
# -----------------------------


@dataclass(frozen=True)
class BatteryServiceInfo:
    level: int | None
    scale: int | None
    voltage_mv: int | None
    temp_deci_c: int | None
    charge_counter_uah: int | None
    current_now_ua: int | None
    status: int | None
    ac_powered: bool
    usb_powered: bool
    wireless_powered: bool
    updates_stopped: bool

    @property
    def plugged(self) -> bool:
        return self.ac_powered or self.usb_powered or self.wireless_powered

    @property
    def level_percent(self) -> int | None:
        if self.level is None:
            return None
        if self.scale and self.scale != 100:
            return int(round(self.level * 100.0 / self.scale))
        return self.level


_BATT_INT = {
    "level": re.compile(r"^\s*level:\s*(-?\d+)\s*$", re.MULTILINE),
    "scale": re.compile(r"^\s*scale:\s*(-?\d+)\s*$", re.MULTILINE),
    "voltage": re.compile(r"^\s*voltage:\s*(-?\d+)\s*$", re.MULTILINE),
    "temperature": re.compile(r"^\s*temperature:\s*(-?\d+)\s*$", re.MULTILINE),
    "charge_counter": re.compile(r"^\s*Charge counter:\s*(-?\d+)\s*$", re.MULTILINE),
    "current_now": re.compile(r"^\s*current now:\s*(-?\d+)\s*$", re.MULTILINE | re.IGNORECASE),
    "status": re.compile(r"^\s*status:\s*(-?\d+)\s*$", re.MULTILINE),
}

_BATT_BOOL = {
    "ac": re.compile(r"^\s*AC powered:\s*(true|false)\s*$", re.MULTILINE),
    "usb": re.compile(r"^\s*USB powered:\s*(true|false)\s*$", re.MULTILINE),
    "wireless": re.compile(r"^\s*Wireless powered:\s*(true|false)\s*$", re.MULTILINE),
}


def _search_int(regex: re.Pattern[str], text: str) -> int | None:
    m = regex.search(text)
    if not m:
        return None
    try:
        return int(m.group(1))
    except (ValueError, TypeError):
        return None


def _search_bool(regex: re.Pattern[str], text: str) -> bool:
    m = regex.search(text)
    return bool(m) and m.group(1) == "true"


def parse_battery_service(text: str | None) -> BatteryServiceInfo | None:
    """Parse `dumpsys battery`. Returns None if no level line is present."""
    if not text:
        return None
    level = _search_int(_BATT_INT["level"], text)
    if level is None:
        return None
    return BatteryServiceInfo(
        level=level,
        scale=_search_int(_BATT_INT["scale"], text),
        voltage_mv=_search_int(_BATT_INT["voltage"], text),
        temp_deci_c=_search_int(_BATT_INT["temperature"], text),
        charge_counter_uah=_search_int(_BATT_INT["charge_counter"], text),
        current_now_ua=_search_int(_BATT_INT["current_now"], text),
        status=_search_int(_BATT_INT["status"], text),
        ac_powered=_search_bool(_BATT_BOOL["ac"], text),
        usb_powered=_search_bool(_BATT_BOOL["usb"], text),
        wireless_powered=_search_bool(_BATT_BOOL["wireless"], text),
        updates_stopped="UPDATES STOPPED" in text,
    )


# -----------------------------
# dumpsys deviceidle
# -----------------------------


@dataclass(frozen=True)
class DeviceIdleInfo:
    current_state: str = "UNKNOWN"
    light_state: str = "UNKNOWN"
    deep_enabled: bool = True
    light_enabled: bool = True
    screen_on_time: int = 0
    screen_off_time: int = 0
    whitelisted_apps: tuple[str, ...] = ()
    temp_whitelisted_apps: tuple[str, ...] = ()

    @property
    def is_deep_idle(self) -> bool:
        return self.current_state == "IDLE"


def _int_after(prefix: str, line: str) -> int:
    try:
        return int(line[len(prefix) :].strip())
    except ValueError:
        return 0


def parse_device_idle(text: str | None) -> DeviceIdleInfo:
    """Parse `dumpsys deviceidle`.

    Whitelist sections run until the next blank line; temp-whitelist entries
    keep only the package part before ``:``.
    """
    if not text:
        return DeviceIdleInfo()

    current_state = "UNKNOWN"
    light_state = "UNKNOWN"
    deep_enabled = True
    light_enabled = True
    screen_on_time = 0
    screen_off_time = 0
    whitelisted: list[str] = []
    temp_whitelisted: list[str] = []

    section: str | None = None
    for line in text.splitlines():
        s = line.strip()
        if s.startswith("mState="):
            current_state = s[len("mState=") :]
        elif s.startswith("mLightState="):
            light_state = s[len("mLightState=") :]
        elif s.startswith("mDeepEnabled="):
            deep_enabled = "true" in s
        elif s.startswith("mLightEnabled="):
            light_enabled = "true" in s
        elif s.startswith("mScreenOnTime="):
            screen_on_time = _int_after("mScreenOnTime=", s)
        elif s.startswith("mScreenOffTime="):
            screen_off_time = _int_after("mScreenOffTime=", s)
        elif s in ("Whitelist system apps:", "Whitelist apps:"):
            section = "white"
        elif s.startswith("Temp whitelist:"):
            section = "temp"
        elif not s:
            section = None
        elif section == "white":
            whitelisted.append(s)
        elif section == "temp":
            temp_whitelisted.append(s.split(":", 1)[0])

    return DeviceIdleInfo(
        current_state=current_state,
        light_state=light_state,
        deep_enabled=deep_enabled,
        light_enabled=light_enabled,
        screen_on_time=screen_on_time,
        screen_off_time=screen_off_time,
        whitelisted_apps=tuple(whitelisted),
        temp_whitelisted_apps=tuple(temp_whitelisted),
    )


# -----------------------------
# dumpsys power
# -----------------------------


@dataclass(frozen=True)
class PowerManagerInfo:
    screen_brightness: int = 0
    is_screen_on: bool = False
    display_state: str | None = None
    battery_level: int = 0
    battery_status: str = "UNKNOWN"
    low_power_mode: bool = False
    device_idle_mode: str = "UNKNOWN"
    holding_wake_locks: tuple[str, ...] = ()
    suspend_blockers: tuple[str, ...] = ()

    @property
    def is_dozing(self) -> bool:
        return self.device_idle_mode == "true"


_RE_DISPLAY_POWER_STATE = re.compile(r"Display Power:\s*state=(\w+)")


def parse_power_manager(text: str | None) -> PowerManagerInfo:
    """Parse `dumpsys power` for display, idle and wake lock state."""
    if not text:
        return PowerManagerInfo()

    brightness = 0
    display_state: str | None = None
    battery_level = 0
    battery_status = "UNKNOWN"
    low_power = False
    idle_mode = "UNKNOWN"
    wake_locks: list[str] = []
    blockers: list[str] = []

    section: str | None = None
    for line in text.splitlines():
        s = line.strip()
        if s.startswith("mScreenBrightnessSetting="):
            brightness = _int_after("mScreenBrightnessSetting=", s)
        elif s.startswith("Display Power:"):
            m = _RE_DISPLAY_POWER_STATE.search(s)
            display_state = m.group(1) if m else None
        elif s.startswith("mBatteryLevel="):
            battery_level = _int_after("mBatteryLevel=", s)
        elif s.startswith("mBatteryStatus="):
            battery_status = s.split("=", 1)[1]
        elif s.startswith("mLowPowerModeEnabled="):
            low_power = "true" in s
        elif s.startswith("mDeviceIdleMode="):
            idle_mode = s.split("=", 1)[1]
        elif s.startswith("Wake Locks:"):
            section = "wl"
        elif s.startswith("Suspend Blockers:"):
            section = "sb"
        elif not s:
            section = None
        elif section == "wl":
            wake_locks.append(s)
        elif section == "sb":
            blockers.append(s)

    return PowerManagerInfo(
        screen_brightness=brightness,
        is_screen_on=display_state == "ON",
        display_state=display_state,
        battery_level=battery_level,
        battery_status=battery_status,
        low_power_mode=low_power,
        device_idle_mode=idle_mode,
        holding_wake_locks=tuple(wake_locks),
        suspend_blockers=tuple(blockers),
    )
