"""
Wait-state deadline resolution.

A Wait state is a pure scheduling delay: it never mutates data. This
module only turns the state's fields into a number of seconds; the
actual waiting happens in the transition loop through
``wait_or_cancel`` so that stop requests and the execution deadline
interrupt it.

Resolution rules:
- seconds / seconds_path: relative delay, must be a non-negative number
- timestamp / timestamp_path: absolute ISO-8601 deadline; a deadline in
  the past means no delay
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

from pyfuncflow.core.errors import DataPathError
from pyfuncflow.core.paths import get_path
from pyfuncflow.models.definition import WaitState

_DATE_TIME = re.compile(r"\d{4}-\d{2}-\d{2}[Tt]\d{2}:\d{2}:\d{2}")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 date-time; a trailing ``Z`` means UTC.

    Both a date and a time of day are required, so ``2024-01-01`` or
    ``20240101T000000`` are not timestamps.

    Returns:
        Aware datetime, or None when the value is not a timestamp.
        Naive values are taken as UTC.
    """
    if not isinstance(value, str) or not _DATE_TIME.match(value):
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def resolve_wait_seconds(state: WaitState, data: Any, now: datetime | None = None) -> float:
    """Compute how long a Wait state suspends the controller.

    Args:
        state: The Wait state
        data: The state's effective input (after input_path)
        now: Reference time for absolute deadlines (default: current UTC time)

    Raises:
        DataPathError: If a *_path field does not resolve to a usable value
    """
    if state.seconds is not None:
        return float(state.seconds)

    if state.seconds_path is not None:
        value = get_path(data, state.seconds_path)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
            raise DataPathError(
                f"seconds_path {state.seconds_path} must point to a non-negative number, "
                f"got {value!r}"
            )
        return float(value)

    if state.timestamp is not None:
        deadline = parse_timestamp(state.timestamp)
    elif state.timestamp_path is not None:
        raw = get_path(data, state.timestamp_path)
        deadline = parse_timestamp(raw)
        if deadline is None:
            raise DataPathError(
                f"timestamp_path {state.timestamp_path} must point to an ISO-8601 timestamp, "
                f"got {raw!r}"
            )
    else:
        return 0.0

    if deadline is None:
        return 0.0
    reference = now or datetime.now(UTC)
    return max(0.0, (deadline - reference).total_seconds())


__all__ = ["parse_timestamp", "resolve_wait_seconds"]
