"""
Change events shared by the change feed, the sync dispatcher and the
notification engine.
"""

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from panel.errors import ValidationFailure

# Fractions of any length and a bare "+HH" offset, as Postgres writes them
_FRACTION_RE = re.compile(r"\.(\d+)")
_SHORT_OFFSET_RE = re.compile(r"(\d{2}:\d{2}(?::\d{2})?(?:\.\d+)?[+-]\d{2})$")


class ChangeAction(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, raw: Any) -> "ChangeAction":
        """Case-insensitive lookup; unknown actions are rejected."""
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            raise ValidationFailure(f"Unknown action: {raw}")


@dataclass(frozen=True)
class ChangeEvent:
    """
    One row-level change from the system of record.

    before is None for inserts, after is None for deletes.
    """
    table: str
    action: ChangeAction
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def record_id(self) -> Optional[str]:
        record = self.before if self.action == ChangeAction.DELETE else self.after
        if not record or record.get("id") is None:
            return None
        return str(record["id"])

    @property
    def entity_key(self) -> str:
        """Per-entity ordering key used by the sync worker."""
        return f"{self.table}:{self.record_id}"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChangeEvent":
        """Build an event from an externally delivered JSON payload."""
        if not isinstance(payload, dict):
            raise ValidationFailure("Change event must be an object")
        table = payload.get("table")
        if not table:
            raise ValidationFailure("Change event requires a table")
        action = ChangeAction.parse(payload.get("action"))
        before = payload.get("before") or payload.get("old")
        after = payload.get("after") or payload.get("new")
        if action == ChangeAction.INSERT:
            before = None
        elif action == ChangeAction.DELETE:
            after = None
        if action != ChangeAction.INSERT and before is None:
            raise ValidationFailure(f"{action.value} event requires a before record")
        if action != ChangeAction.DELETE and after is None:
            raise ValidationFailure(f"{action.value} event requires an after record")
        occurred_at = parse_timestamp(payload.get("occurred_at") or payload.get("occurredAt")) or datetime.utcnow()
        return cls(table=str(table), action=action, before=before, after=after, occurred_at=occurred_at)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a record timestamp into a naive UTC datetime (the store's convention).
    Returns None for empty or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value).strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        raw = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), raw, count=1)
        raw = _SHORT_OFFSET_RE.sub(r"\1:00", raw)
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
