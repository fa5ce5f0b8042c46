from __future__ import annotations

import json
import logging
import zipfile
from pathlib import Path
from typing import Any, Callable

import pytest

from ota_cli.transport import TransportError

CAMPAIGN_ID = "7d0c2e32-1f4b-4c63-9a32-3b8f8a3b6c11"
UPDATE_ID = "0f1e2d3c-4b5a-4968-8776-a5b4c3d2e1f0"
DEVICE_ID = "5a9f7c1e-0d2b-4e8a-9c3f-2b1d0e9f8a7c"
GROUP_ID = "c3b2a190-8f7e-4d6c-b5a4-93827160f5e4"

ENDPOINTS = {
    "campaigner": "http://campaigner.test",
    "director": "http://director.test",
    "registry": "http://registry.test",
}


def write_bundle(path: Path, members: dict[str, Any]) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name, value in members.items():
            if isinstance(value, (dict, list)):
                value = json.dumps(value)
            zf.writestr(name, value)
    return path


class FakeTransport:
    """Scripted stand-in for `_http_request`.

    `routes` maps "METHOD path" to a list of outcomes consumed in order; the
    last outcome repeats. An outcome is a (status, body) tuple, where bytes
    bodies are sent raw and anything else as JSON, or an exception to raise.
    """

    def __init__(self, routes: dict[str, list[Any]] | None = None) -> None:
        self.routes = {k: list(v) for k, v in (routes or {}).items()}
        self.calls: list[dict[str, Any]] = []

    def __call__(
        self,
        *,
        method: str,
        url: str,
        headers: dict[str, str],
        body: bytes | None = None,
        timeout_seconds: float = 30,
        ssl_context: Any = None,
    ) -> tuple[int, dict[str, str], bytes]:
        del timeout_seconds, ssl_context
        path = "/" + url.split("://", 1)[-1].split("/", 1)[-1].split("?", 1)[0]
        self.calls.append(
            {
                "method": method,
                "url": url,
                "path": path,
                "headers": dict(headers),
                "body": json.loads(body) if body and headers.get("content-type") == "application/json" else body,
            }
        )
        key = f"{method} {path}"
        outcomes = self.routes.get(key)
        if not outcomes:
            raise AssertionError(f"unexpected request: {key}")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        status, payload = outcome
        if isinstance(payload, bytes):
            data = payload
        else:
            data = json.dumps(payload).encode("utf-8")
        return status, {"content-type": "application/json"}, data

    def paths(self) -> list[str]:
        return [f"{c['method']} {c['path']}" for c in self.calls]


def connection_refused() -> TransportError:
    return TransportError("http request failed: connection refused", sent=False)


def read_timeout() -> TransportError:
    return TransportError("http request failed: timed out", cause="timeout")


@pytest.fixture
def token_bundle(tmp_path: Path) -> Path:
    return write_bundle(
        tmp_path / "credentials.zip",
        {"services.json": ENDPOINTS, "api.token": "static-token\n"},
    )


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    delays: list[float] = []

    def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays  # type: ignore[attr-defined]
    return _sleep


def campaign_doc(**overrides: Any) -> dict[str, Any]:
    doc = {
        "id": CAMPAIGN_ID,
        "name": "spring-rollout",
        "namespace": "default",
        "update": UPDATE_ID,
        "groups": ["g1"],
        "status": "prepared",
        "createdAt": "2026-03-01T10:00:00Z",
        "updatedAt": "2026-03-01T10:00:00Z",
    }
    doc.update(overrides)
    return doc


@pytest.fixture(autouse=True)
def _reset_ota_logger():
    yield
    # CLI invocations attach a handler bound to the runner's stderr.
    logger = logging.getLogger("ota")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
