"""
Status condition aggregation for DexServer resources.

Conditions are merged by type: an update replaces the record of the same type
only when its status, reason or message differ, and records of other types are
kept as they are.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from ..constants import CONDITION_APPLIED, MESSAGE_APPLIED, REASON_APPLIED
from ..models import Condition

_COMPARED_FIELDS = ("status", "reason", "message")


def utc_timestamp(now: datetime | None = None) -> str:
    """RFC 3339 timestamp with second precision, as Kubernetes writes them."""
    now = now or datetime.now(UTC)
    return now.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_condition(
    condition_type: str, status: bool, reason: str, message: str = ""
) -> dict[str, Any]:
    return Condition(
        type=condition_type,
        status="True" if status else "False",
        reason=reason,
        message=message,
    ).model_dump(by_alias=True, exclude_none=True)


def applied_condition() -> dict[str, Any]:
    return build_condition(CONDITION_APPLIED, True, REASON_APPLIED, MESSAGE_APPLIED)


def failed_condition(reason: str, message: str) -> dict[str, Any]:
    return build_condition(CONDITION_APPLIED, False, reason, message)


def merge_conditions(
    existing: Iterable[dict[str, Any]] | None,
    updates: Iterable[dict[str, Any]],
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """
    Merge condition updates into an existing condition list.

    Args:
        existing: Conditions currently persisted on the resource
        updates: Newly computed conditions
        now: Transition time to stamp on changed records (defaults to now)

    Returns:
        A new list; ``existing`` is not modified. Record order is preserved
        and new types are appended.
    """
    timestamp = utc_timestamp(now)
    merged = [dict(condition) for condition in existing or []]

    for update in updates:
        for index, current in enumerate(merged):
            if current.get("type") != update["type"]:
                continue
            if any(current.get(f) != update.get(f) for f in _COMPARED_FIELDS):
                merged[index] = {**update, "lastTransitionTime": timestamp}
            break
        else:
            merged.append(
                {**update, "lastTransitionTime": update.get("lastTransitionTime") or timestamp}
            )

    return merged
