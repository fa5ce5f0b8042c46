from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class OtaError(Exception):
    """Base class for every error surfaced at the process boundary."""

    kind = "error"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": str(self)}


class UsageError(OtaError):
    kind = "usage"


OTA_CREDENTIALS = "OTA_CREDENTIALS"
OTA_LOG_LEVEL = "OTA_LOG_LEVEL"
OTA_HTTP_TIMEOUT = "OTA_HTTP_TIMEOUT"
OTA_MAX_ATTEMPTS = "OTA_MAX_ATTEMPTS"

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_TIMEOUT_SECONDS = 60
DEFAULT_MAX_ATTEMPTS = 3


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


@dataclass(frozen=True)
class GlobalOpts:
    credentials: str
    pretty: bool
    quiet: bool
    log_level: str = DEFAULT_LOG_LEVEL
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _require_str(val: str | None, name: str, *, hint: str) -> str:
    v = (val or "").strip()
    if not v:
        raise UsageError(f"missing {name} ({hint})")
    return v


def _positive_int(raw: Any, name: str, *, hint: str) -> int:
    try:
        n = int(str(raw).strip())
    except Exception as e:
        raise UsageError(f"invalid {name}: expected an integer ({hint})") from e
    if n < 1:
        raise UsageError(f"invalid {name}: must be >= 1 ({hint})")
    return n


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")


def _unique_values(values: list[str] | tuple[str, ...] | None) -> list[str]:
    out: list[str] = []
    for raw in values or []:
        for part in str(raw).split(","):
            v = part.strip()
            if v:
                out.append(v)
    seen: set[str] = set()
    uniq: list[str] = []
    for v in out:
        if v in seen:
            continue
        seen.add(v)
        uniq.append(v)
    return uniq


def _write_secure_bytes(*, path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    try:
        os.chmod(path, 0o600)
    except Exception as e:
        raise OtaError(f"failed to apply 0600 permissions to {path}: {e}") from e
