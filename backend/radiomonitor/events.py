"""Radio event model shared by the server and the client.

Producers (trunk-recorder plugins and scripts) have used several spellings
for the same fields over time. Documents are normalized into a RadioEvent
once, at the boundary, and every consumer after that works with the
canonical names only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Producer spellings, canonical name first
_SYSTEM_KEYS = ("system", "systemShortName", "shortName")
_RADIO_KEYS = ("radioId", "radioID", "radio_id")
_CORE_KEYS = frozenset(
    _SYSTEM_KEYS
    + _RADIO_KEYS
    + (
        "talkgroupOrSource",
        "eventType",
        "timestamp",
        "patchedTalkgroups",
        "talkgroupInfo",
        "systemInfo",
        "_id",
    )
)


class EventType(str, Enum):
    """Event kinds reported by the recorder."""

    CALL = "call"
    ON = "on"
    OFF = "off"
    JOIN = "join"
    ACKRESP = "ackresp"
    LOCATION = "location"
    DATA = "data"
    ANS_REQ = "ans_req"
    UNKNOWN = "unknown"


class ControlEvent(str, Enum):
    """Registry change notifications sent on the broadcast channel.

    They tell subscribers to re-fetch a registry snapshot; they never carry
    the payload themselves.
    """

    TALKGROUPS_RELOADED = "talkgroups-reloaded"
    SYSTEMS_UPDATED = "systems-updated"
    ALIASES_UPDATED = "system-aliases-updated"


class InvalidEventError(ValueError):
    """Raised when a document cannot be turned into a RadioEvent."""


def is_decimal_id(value: str) -> bool:
    """True for ids made only of ASCII digits ("²" and "٣" are rejected)."""
    return value.isascii() and value.isdigit()


def id_sort_key(value: str) -> tuple[int, int, str]:
    # Numeric ids in numeric order, anything else after them
    return (0, int(value), "") if is_decimal_id(value) else (1, 0, value)


def format_timestamp(moment: datetime | None = None) -> str:
    """Format a moment as ISO-8601 UTC truncated to whole seconds."""
    if moment is None:
        moment = datetime.now(timezone.utc)
    elif moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an event timestamp; returns None for missing or garbled values."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _first(document: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = document.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class RadioEvent:
    """One occurrence reported by the recorder. Never mutated after creation."""

    system: str | None
    radio_id: str | None
    talkgroup_or_source: str | None
    event_type: str
    timestamp: str | None = None
    patched_talkgroups: tuple[str, ...] = ()
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> RadioEvent:
        """Build an event from a log document or wire message."""
        if not isinstance(document, Mapping):
            raise InvalidEventError(f"Event must be a mapping, got {type(document).__name__}")

        event_type = _as_str(document.get("eventType"))
        if event_type is None:
            raise InvalidEventError("eventType is required")

        patched = document.get("patchedTalkgroups") or ()
        if isinstance(patched, (str, int)):
            patched = str(patched).split(",")

        return cls(
            system=_as_str(_first(document, _SYSTEM_KEYS)),
            radio_id=_as_str(_first(document, _RADIO_KEYS)),
            talkgroup_or_source=_as_str(document.get("talkgroupOrSource")),
            event_type=event_type.lower(),
            timestamp=_as_str(document.get("timestamp")),
            patched_talkgroups=tuple(p for p in (_as_str(x) for x in patched) if p),
            extra={k: v for k, v in document.items() if k not in _CORE_KEYS},
        )

    @property
    def dedup_key(self) -> tuple[str | None, str | None, str, str | None]:
        return (self.system, self.radio_id, self.event_type, self.talkgroup_or_source)

    @property
    def is_call(self) -> bool:
        return self.event_type == EventType.CALL.value

    @property
    def is_off(self) -> bool:
        return self.event_type == EventType.OFF.value

    def with_timestamp(self, timestamp: str) -> RadioEvent:
        return RadioEvent(
            system=self.system,
            radio_id=self.radio_id,
            talkgroup_or_source=self.talkgroup_or_source,
            event_type=self.event_type,
            timestamp=timestamp,
            patched_talkgroups=self.patched_talkgroups,
            extra=self.extra,
        )

    def to_dict(self) -> dict[str, Any]:
        """Wire/log representation using the canonical field names."""
        data: dict[str, Any] = dict(self.extra)
        data.update({
            "system": self.system,
            "radioId": self.radio_id,
            "talkgroupOrSource": self.talkgroup_or_source,
            "eventType": self.event_type,
            "timestamp": self.timestamp,
        })
        if self.patched_talkgroups:
            data["patchedTalkgroups"] = list(self.patched_talkgroups)
        return data
