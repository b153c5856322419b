from __future__ import annotations

import math
from dataclasses import dataclass


FIELD_SEPARATOR = ","
MIN_FIELDS = 4

CATEGORY_INFO = "i"
CATEGORY_LINE = "l"


def parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        out = float(value)
    except (ValueError, TypeError):
        return None
    if not math.isfinite(out):
        return None
    return out


@dataclass(frozen=True)
class CheckinRecord:
    """One tokenized checkin line.

    Layout: ``version, owner_id, category, type_tag, <family fields...>``.
    """

    fields: tuple[str, ...]

    @property
    def version(self) -> str:
        return self.fields[0]

    @property
    def owner_id(self) -> int | None:
        return parse_int(self.fields[1])

    @property
    def category(self) -> str:
        return self.fields[2]

    @property
    def type_tag(self) -> str:
        return self.fields[3]

    def __len__(self) -> int:
        return len(self.fields)

    def text_at(self, index: int) -> str | None:
        if 0 <= index < len(self.fields):
            return self.fields[index]
        return None

    def opt_int_at(self, index: int) -> int | None:
        return parse_int(self.text_at(index))

    def opt_float_at(self, index: int) -> float | None:
        return parse_float(self.text_at(index))

    def int_at(self, index: int, default: int = 0) -> int:
        v = self.opt_int_at(index)
        return default if v is None else v

    def float_at(self, index: int, default: float = 0.0) -> float:
        v = self.opt_float_at(index)
        return default if v is None else v


def decode_record(line: str) -> CheckinRecord | None:
    """Split one checkin line into fields; ``None`` if it has fewer than 4."""
    parts = line.rstrip("\r\n").split(FIELD_SEPARATOR)
    if len(parts) < MIN_FIELDS:
        return None
    return CheckinRecord(fields=tuple(parts))


def value_around_marker(fields: tuple[str, ...] | list[str], marker: str) -> tuple[int, int]:
    """Locate ``marker`` and read the value before it and the count after it.

    Wakelock rows carry ``<time>,<marker>,<count>`` triplets whose absolute
    position moves between platform versions. Returns ``(0, 0)`` when the
    marker is missing; either side falls back to 0 when unparseable.
    """
    try:
        idx = list(fields).index(marker)
    except ValueError:
        return 0, 0

    value = 0
    if idx > 0:
        value = parse_int(fields[idx - 1]) or 0
    count = 0
    if idx + 1 < len(fields):
        count = parse_int(fields[idx + 1]) or 0
    return value, count


class IdentifierRegistry:
    """ownerId -> display name, built from ``i,uid`` rows seen so far."""

    def __init__(self) -> None:
        self._names: dict[int, str] = {}

    def record_mapping(self, owner_id: int, name: str) -> None:
        self._names[owner_id] = name

    def resolve(self, owner_id: int) -> str:
        name = self._names.get(owner_id)
        if name is None:
            return f"id:{owner_id}"
        return name

    def __contains__(self, owner_id: object) -> bool:
        return owner_id in self._names

    def __len__(self) -> int:
        return len(self._names)
