"""Typed results decoded from backend JSON responses."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Generic, TypeVar

from .transport import DecodeError

T = TypeVar("T")


class CampaignState(str, Enum):
    CREATED = "created"
    LAUNCHED = "launched"
    CANCELLED = "cancelled"


# Completion ("finished") is only reported through stats; locally it is
# still a launched campaign.
_STATUS_TO_STATE = {
    "prepared": CampaignState.CREATED,
    "created": CampaignState.CREATED,
    "launched": CampaignState.LAUNCHED,
    "scheduled": CampaignState.LAUNCHED,
    "finished": CampaignState.LAUNCHED,
    "cancelled": CampaignState.CANCELLED,
    "canceled": CampaignState.CANCELLED,
}


def _require_object(doc: Any, label: str) -> dict[str, Any]:
    if not isinstance(doc, dict):
        raise DecodeError(f"{label}: expected JSON object, got {type(doc).__name__}")
    return doc


def _require_str_field(doc: dict[str, Any], key: str, label: str) -> str:
    val = doc.get(key)
    if not isinstance(val, str) or not val.strip():
        raise DecodeError(f"{label}: missing or invalid {key!r}")
    return val


def _optional_str(doc: dict[str, Any], key: str) -> str | None:
    val = doc.get(key)
    if val is None:
        return None
    return str(val)


def _optional_int(doc: dict[str, Any], key: str, label: str) -> int | None:
    val = doc.get(key)
    if val is None:
        return None
    if isinstance(val, bool) or not isinstance(val, int):
        raise DecodeError(f"{label}: {key!r} must be an integer, got {val!r}")
    return val


def _parse_timestamp(raw: Any, key: str, label: str) -> datetime | None:
    if raw is None:
        return None
    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError as e:
        raise DecodeError(f"{label}: {key!r} is not an ISO-8601 timestamp: {raw!r}") from e


def decode_uuid(doc: Any, label: str = "response") -> str:
    if not isinstance(doc, str):
        raise DecodeError(f"{label}: expected a UUID string, got {type(doc).__name__}")
    try:
        return str(uuid.UUID(doc.strip()))
    except ValueError as e:
        raise DecodeError(f"{label}: not a UUID: {doc!r}") from e


@dataclass(frozen=True)
class Campaign:
    id: str
    name: str
    update_id: str
    groups: tuple[str, ...]
    state: CampaignState
    namespace: str | None = None
    status: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def created_at_dt(self) -> datetime | None:
        return _parse_timestamp(self.created_at, "createdAt", "campaign")

    @property
    def updated_at_dt(self) -> datetime | None:
        return _parse_timestamp(self.updated_at, "updatedAt", "campaign")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "namespace": self.namespace,
            "update": self.update_id,
            "groups": list(self.groups),
            "state": self.state.value,
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def decode_campaign(doc: Any) -> Campaign:
    label = "campaign"
    obj = _require_object(doc, label)
    groups = obj.get("groups", [])
    if not isinstance(groups, list) or not all(isinstance(g, str) for g in groups):
        raise DecodeError(f"{label}: 'groups' must be a list of strings")
    status = _optional_str(obj, "status")
    if status is None:
        state = CampaignState.CREATED
    else:
        state = _STATUS_TO_STATE.get(status.strip().lower())
        if state is None:
            raise DecodeError(f"{label}: unknown campaign status {status!r}")
    created_at = _optional_str(obj, "createdAt")
    updated_at = _optional_str(obj, "updatedAt")
    _parse_timestamp(created_at, "createdAt", label)
    _parse_timestamp(updated_at, "updatedAt", label)
    return Campaign(
        id=_require_str_field(obj, "id", label),
        name=_require_str_field(obj, "name", label),
        update_id=_require_str_field(obj, "update", label),
        groups=tuple(groups),
        state=state,
        namespace=_optional_str(obj, "namespace"),
        status=status,
        created_at=created_at,
        updated_at=updated_at,
    )


@dataclass(frozen=True)
class CampaignStats:
    campaign_id: str
    status: str | None
    finished: int | None = None
    failed: int | None = None
    cancelled: int | None = None
    processed: int | None = None
    affected: int | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.raw)


def decode_campaign_stats(campaign_id: str) -> Callable[[Any], CampaignStats]:
    def _decode(doc: Any) -> CampaignStats:
        label = "campaign stats"
        obj = _require_object(doc, label)
        return CampaignStats(
            campaign_id=str(obj.get("campaign") or campaign_id),
            status=_optional_str(obj, "status"),
            finished=_optional_int(obj, "finished", label),
            failed=_count(obj.get("failed"), "failed", label),
            cancelled=_optional_int(obj, "cancelled", label),
            processed=_optional_int(obj, "processed", label),
            affected=_optional_int(obj, "affected", label),
            raw=obj,
        )

    return _decode


def _count(val: Any, key: str, label: str) -> int | None:
    # Some backends report `failed` as the list of failed device ids.
    if isinstance(val, list):
        return len(val)
    return _optional_int({key: val}, key, label)


@dataclass(frozen=True)
class Device:
    uuid: str
    device_name: str
    device_id: str | None = None
    device_type: str | None = None
    status: str | None = None
    last_seen: str | None = None
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "uuid": self.uuid,
            "deviceName": self.device_name,
            "deviceId": self.device_id,
            "deviceType": self.device_type,
            "deviceStatus": self.status,
            "lastSeen": self.last_seen,
            "createdAt": self.created_at,
        }


def decode_device(doc: Any) -> Device:
    label = "device"
    obj = _require_object(doc, label)
    return Device(
        uuid=_require_str_field(obj, "uuid", label),
        device_name=_require_str_field(obj, "deviceName", label),
        device_id=_optional_str(obj, "deviceId"),
        device_type=_optional_str(obj, "deviceType"),
        status=_optional_str(obj, "deviceStatus"),
        last_seen=_optional_str(obj, "lastSeen"),
        created_at=_optional_str(obj, "createdAt"),
    )


@dataclass(frozen=True)
class Group:
    id: str
    name: str
    namespace: str | None = None
    group_type: str | None = None
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "groupName": self.name,
            "namespace": self.namespace,
            "groupType": self.group_type,
            "createdAt": self.created_at,
        }


def decode_group(doc: Any) -> Group:
    label = "group"
    obj = _require_object(doc, label)
    return Group(
        id=_require_str_field(obj, "id", label),
        name=_require_str_field(obj, "groupName", label),
        namespace=_optional_str(obj, "namespace"),
        group_type=_optional_str(obj, "groupType"),
        created_at=_optional_str(obj, "createdAt"),
    )


@dataclass(frozen=True)
class Page(Generic[T]):
    values: tuple[T, ...]
    total: int
    offset: int = 0
    limit: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "values": [v.to_dict() if hasattr(v, "to_dict") else v for v in self.values],
            "total": self.total,
            "offset": self.offset,
            "limit": self.limit,
        }


def decode_page(item: Callable[[Any], T], label: str) -> Callable[[Any], Page[T]]:
    """Decode either a paginated envelope or a bare JSON list."""

    def _decode(doc: Any) -> Page[T]:
        if isinstance(doc, list):
            values = tuple(item(v) for v in doc)
            return Page(values=values, total=len(values))
        obj = _require_object(doc, label)
        raw_values = obj.get("values")
        if not isinstance(raw_values, list):
            raise DecodeError(f"{label}: missing 'values' list")
        values = tuple(item(v) for v in raw_values)
        total = _optional_int(obj, "total", label)
        return Page(
            values=values,
            total=len(values) if total is None else total,
            offset=_optional_int(obj, "offset", label) or 0,
            limit=_optional_int(obj, "limit", label),
        )

    return _decode


def decode_id_list(label: str) -> Callable[[Any], Page[str]]:
    def _item(v: Any) -> str:
        return decode_uuid(v, label)

    return decode_page(_item, label)
