from __future__ import annotations

import json
from datetime import UTC, datetime


def dump_amount(value: int) -> str:
    return str(int(value))


def dump_amounts(values: tuple[int, ...]) -> str:
    return json.dumps([str(int(value)) for value in values])


def load_amounts(raw: object) -> tuple[int, ...]:
    return tuple(int(item) for item in json.loads(str(raw)))


def dump_strings(values: tuple[str, ...]) -> str:
    return json.dumps(list(values))


def load_strings(raw: object) -> tuple[str, ...]:
    return tuple(str(item) for item in json.loads(str(raw)))


def dump_datetime(value: datetime) -> str:
    return value.astimezone(UTC).isoformat()


def load_datetime(raw: object) -> datetime:
    parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
