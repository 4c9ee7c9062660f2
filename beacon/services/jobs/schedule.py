from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from arq.cron import next_cron


_FIELD_BOUNDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)


def _parse_field(raw: str, name: str, low: int, high: int) -> frozenset[int] | None:
    # "*" means unrestricted and maps to None, which arq treats as "any".
    if raw == "*":
        return None
    values: set[int] = set()
    for part in raw.split(","):
        if not part:
            raise ValueError(f"empty {name} entry in cron field {raw!r}")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            step = int(step_text)
            if step < 1:
                raise ValueError(f"invalid {name} step in {raw!r}")
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start, end = int(start_text), int(end_text)
        else:
            start = int(part)
            # "5/15" means every 15 starting at 5.
            end = high if step > 1 else start
        if start < low or end > high or start > end:
            raise ValueError(f"{name} value out of range in {raw!r}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    minute: frozenset[int] | None
    hour: frozenset[int] | None
    day: frozenset[int] | None
    month: frozenset[int] | None
    # Python weekday numbering: Monday=0 .. Sunday=6.
    weekday: frozenset[int] | None

    @classmethod
    def parse(cls, expression: str) -> "CronSchedule":
        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(f"cron expression needs 5 fields: {expression!r}")
        parsed = [
            _parse_field(raw, name, low, high)
            for raw, (name, low, high) in zip(fields, _FIELD_BOUNDS)
        ]
        weekday = parsed[4]
        if weekday is not None:
            # Cron counts Sunday as 0 (or 7); Python and arq count Monday as 0.
            weekday = frozenset((value - 1) % 7 for value in weekday)
        return cls(
            expression=expression,
            minute=parsed[0],
            hour=parsed[1],
            day=parsed[2],
            month=parsed[3],
            weekday=weekday,
        )

    def arq_kwargs(self) -> dict[str, Any]:
        # Keyword arguments accepted by arq.cron.cron and arq.cron.next_cron.
        kwargs: dict[str, Any] = {"second": 0, "microsecond": 0}
        for name in ("minute", "hour", "day", "month", "weekday"):
            value = getattr(self, name)
            if value is not None:
                kwargs[name] = set(value)
        return kwargs

    def next_after(self, moment: datetime) -> datetime:
        return next_cron(moment, **self.arq_kwargs())
