"""Multi-target update descriptors.

A descriptor maps ECU hardware ids to the package each ECU should be updated
to. The primary input is TOML::

    [ecu-hardware-id]
    name = "firmware"
    version = "2.0.0"

Validation is purely local so a bad file never costs a server round trip.
"""

from __future__ import annotations

import json
import re
import tomllib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from .cli_shared import OtaError
from .logging import get_logger

log = get_logger("targets")

PACKAGE_KEYS = {"name", "version", "target", "length", "hash", "method", "format", "generate_diff"}
_HEX_RE = re.compile(r"[0-9a-fA-F]+")


class TargetsError(OtaError):
    kind = "targets"


class TargetsMalformed(TargetsError):
    kind = "targets.malformed"


class EmptyTargets(TargetsError):
    kind = "targets.empty"

    def __init__(self, source: str = "") -> None:
        where = f" in {source}" if source else ""
        super().__init__(f"no targets defined{where}")


class DuplicateHardwareId(TargetsError):
    kind = "targets.duplicate_hardware_id"

    def __init__(self, hardware_id: str) -> None:
        self.hardware_id = hardware_id
        super().__init__(f"hardware id {hardware_id!r} is listed more than once")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "hardwareId": self.hardware_id}


class InvalidPackageRef(TargetsError):
    kind = "targets.invalid_package_ref"

    def __init__(self, hardware_id: str, reason: str) -> None:
        self.hardware_id = hardware_id
        self.reason = reason
        super().__init__(f"invalid package reference for hardware id {hardware_id!r}: {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "hardwareId": self.hardware_id, "reason": self.reason}


class TargetFormat(str, Enum):
    BINARY = "BINARY"
    OSTREE = "OSTREE"


class ChecksumMethod(str, Enum):
    SHA256 = "sha256"
    SHA512 = "sha512"


_HASH_LENGTHS = {ChecksumMethod.SHA256: 64, ChecksumMethod.SHA512: 128}


@dataclass(frozen=True)
class TargetEntry:
    """One unvalidated hardware id -> package mapping as it was read."""

    hardware_id: Any
    package: Any


@dataclass(frozen=True)
class ResolvedTarget:
    hardware_id: str
    target: str
    format: TargetFormat
    generate_diff: bool = False
    length: int | None = None
    hash: str | None = None
    method: ChecksumMethod = ChecksumMethod.SHA256

    def to_wire(self) -> dict[str, Any]:
        to: dict[str, Any] = {"target": self.target}
        if self.length is not None:
            to["targetLength"] = self.length
        if self.hash is not None:
            to["checksum"] = {"method": self.method.value, "hash": self.hash}
        return {
            "to": to,
            "targetFormat": self.format.value,
            "generateDiff": self.generate_diff,
        }


class _Pairs(list):
    pass


def _from_pairs(value: Any) -> Any:
    if isinstance(value, _Pairs):
        return {k: _from_pairs(v) for k, v in value}
    if isinstance(value, list):
        return [_from_pairs(v) for v in value]
    return value


def _looks_like_json(text: str, source: str) -> bool:
    if source.lower().endswith(".json"):
        return True
    return text.lstrip().startswith("{")


def _entries_from_list(items: Any, *, source: str) -> list[TargetEntry]:
    if not isinstance(items, list):
        raise TargetsMalformed(f"{source}: 'targets' must be a list of tables")
    entries: list[TargetEntry] = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise TargetsMalformed(f"{source}: targets[{i}] must be a table")
        package = {k: v for k, v in item.items() if k != "hardware_id"}
        entries.append(TargetEntry(hardware_id=item.get("hardware_id"), package=package))
    return entries


def _parse_json(text: str, *, source: str) -> list[TargetEntry]:
    try:
        doc = json.loads(text, object_pairs_hook=_Pairs)
    except ValueError as e:
        raise TargetsMalformed(f"{source}: invalid JSON: {e}") from e
    if not isinstance(doc, _Pairs):
        raise TargetsMalformed(f"{source}: expected a JSON object of hardware id -> package")
    if len(doc) == 1 and doc[0][0] == "targets" and isinstance(doc[0][1], list):
        return _entries_from_list(_from_pairs(doc[0][1]), source=source)
    return [TargetEntry(hardware_id=k, package=_from_pairs(v)) for k, v in doc]


def _parse_toml(text: str, *, source: str) -> list[TargetEntry]:
    try:
        doc = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise TargetsMalformed(f"{source}: invalid TOML: {e}") from e
    if list(doc.keys()) == ["targets"] and isinstance(doc["targets"], list):
        return _entries_from_list(doc["targets"], source=source)
    return [TargetEntry(hardware_id=k, package=v) for k, v in doc.items()]


def _require_text(hardware_id: str, package: Mapping[str, Any], key: str) -> str:
    val = package.get(key)
    if not isinstance(val, str) or not val.strip():
        raise InvalidPackageRef(hardware_id, f"{key!r} must be a non-empty string")
    if any(c.isspace() for c in val.strip()):
        raise InvalidPackageRef(hardware_id, f"{key!r} must not contain whitespace: {val!r}")
    return val.strip()


def _resolve(entry: TargetEntry) -> ResolvedTarget:
    hardware_id = entry.hardware_id
    if not isinstance(hardware_id, str) or not hardware_id.strip():
        raise InvalidPackageRef(str(hardware_id), "hardware id must be a non-empty string")
    hardware_id = hardware_id.strip()
    package = entry.package
    if not isinstance(package, dict):
        raise InvalidPackageRef(hardware_id, "expected a table with name and version")

    unknown = sorted(set(package) - PACKAGE_KEYS)
    if unknown:
        raise InvalidPackageRef(hardware_id, f"unknown keys: {', '.join(unknown)}")

    if package.get("target") is not None:
        target = _require_text(hardware_id, package, "target")
    else:
        target = f"{_require_text(hardware_id, package, 'name')}-{_require_text(hardware_id, package, 'version')}"

    raw_format = package.get("format", TargetFormat.BINARY.value)
    try:
        fmt = TargetFormat(str(raw_format).upper())
    except ValueError as e:
        raise InvalidPackageRef(hardware_id, f"unknown format {raw_format!r} (binary or ostree)") from e

    raw_method = package.get("method", ChecksumMethod.SHA256.value)
    try:
        method = ChecksumMethod(str(raw_method).lower())
    except ValueError as e:
        raise InvalidPackageRef(hardware_id, f"unknown checksum method {raw_method!r} (sha256 or sha512)") from e

    length = package.get("length")
    if length is not None and (isinstance(length, bool) or not isinstance(length, int) or length < 0):
        raise InvalidPackageRef(hardware_id, f"'length' must be a non-negative integer, got {length!r}")

    digest = package.get("hash")
    if digest is not None:
        if not isinstance(digest, str) or not _HEX_RE.fullmatch(digest):
            raise InvalidPackageRef(hardware_id, "'hash' must be a hex string")
        if len(digest) != _HASH_LENGTHS[method]:
            raise InvalidPackageRef(
                hardware_id,
                f"'hash' has {len(digest)} hex digits; {method.value} needs {_HASH_LENGTHS[method]}",
            )
        digest = digest.lower()
    if (digest is None) != (length is None):
        raise InvalidPackageRef(hardware_id, "'hash' and 'length' must be given together")

    generate_diff = package.get("generate_diff", False)
    if not isinstance(generate_diff, bool):
        raise InvalidPackageRef(hardware_id, "'generate_diff' must be a boolean")

    return ResolvedTarget(
        hardware_id=hardware_id,
        target=target,
        format=fmt,
        generate_diff=generate_diff,
        length=length,
        hash=digest,
        method=method,
    )


@dataclass(frozen=True)
class TargetsDescriptor:
    entries: tuple[TargetEntry, ...]
    source: str = "<input>"

    @classmethod
    def parse(cls, text: str, *, source: str = "<input>") -> "TargetsDescriptor":
        if _looks_like_json(text, source):
            entries = _parse_json(text, source=source)
        else:
            entries = _parse_toml(text, source=source)
        log.debug("parsed %d target entries from %s", len(entries), source)
        return cls(entries=tuple(entries), source=source)

    @classmethod
    def from_file(cls, path: str | Path) -> "TargetsDescriptor":
        p = Path(path).expanduser()
        try:
            text = p.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise TargetsMalformed(f"targets file not found: {p}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise TargetsMalformed(f"cannot read targets file {p}: {e}") from e
        return cls.parse(text, source=str(p))

    @property
    def hardware_ids(self) -> list[str]:
        return [str(e.hardware_id) for e in self.entries]

    def validate(self) -> tuple[ResolvedTarget, ...]:
        if not self.entries:
            raise EmptyTargets(self.source)
        seen: set[str] = set()
        for entry in self.entries:
            if not isinstance(entry.hardware_id, str):
                continue
            hw = entry.hardware_id.strip()
            if hw in seen:
                raise DuplicateHardwareId(hw)
            seen.add(hw)
        return tuple(_resolve(e) for e in self.entries)

    def to_wire(self) -> dict[str, Any]:
        return {"targets": {t.hardware_id: t.to_wire() for t in self.validate()}}
