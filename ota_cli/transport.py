"""HTTP transport, TLS setup and retry policy shared by every backend client."""

from __future__ import annotations

import http.client
import json
import socket
import ssl
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import HTTPSHandler, Request, build_opener

from .bundle import AuthContext, BundleCorrupt, BundleError, CertificateAuth
from .cli_shared import OtaError, _write_secure_bytes
from .logging import TRACE, get_logger, redact_mapping

log = get_logger("transport")

CAUSE_CONNECTION = "connection"
CAUSE_TIMEOUT = "timeout"
CAUSE_TLS = "tls"


class ClientError(OtaError):
    kind = "client"


class TransportError(ClientError):
    """The request never produced an HTTP response."""

    kind = "client.transport"

    def __init__(
        self,
        message: str,
        *,
        cause: str = CAUSE_CONNECTION,
        attempts: int = 1,
        service: str = "",
        sent: bool = True,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.attempts = attempts
        self.service = service
        # False only when the request provably never left this host.
        self.sent = sent

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "cause": self.cause,
            "attempts": self.attempts,
            "service": self.service,
            "sent": self.sent,
        }


class RejectedError(ClientError):
    """The backend answered with a non-2xx status."""

    kind = "client.rejected"

    def __init__(
        self,
        *,
        service: str,
        method: str,
        path: str,
        status: int,
        code: str = "",
        description: str = "",
        body: str = "",
    ) -> None:
        self.service = service
        self.method = method
        self.path = path
        self.status = status
        self.code = code
        self.description = description
        self.body = body
        detail = description or body or "no response body"
        prefix = f"{code}: " if code else ""
        super().__init__(f"{service} rejected {method} {path}: status={status} {prefix}{detail}")

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "service": self.service,
            "method": self.method,
            "path": self.path,
            "status": self.status,
            "code": self.code,
            "description": self.description,
            "body": self.body,
        }


class DecodeError(ClientError):
    """A 2xx response body did not match the expected schema."""

    kind = "client.decode"

    def __init__(self, message: str, *, service: str = "", path: str = "", body: str = "") -> None:
        super().__init__(message)
        self.service = service
        self.path = path
        self.body = body

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "service": self.service, "path": self.path, "body": self.body}


Transport = Callable[..., "tuple[int, dict[str, str], bytes]"]


def _transport_cause(err: BaseException) -> str:
    if isinstance(err, URLError) and isinstance(err.reason, BaseException):
        return _transport_cause(err.reason)
    if isinstance(err, (ssl.SSLError, ssl.CertificateError)):
        return CAUSE_TLS
    if isinstance(err, (socket.timeout, TimeoutError)):
        return CAUSE_TIMEOUT
    return CAUSE_CONNECTION


def _never_sent(err: BaseException) -> bool:
    if isinstance(err, URLError) and isinstance(err.reason, BaseException):
        return _never_sent(err.reason)
    return isinstance(err, (ConnectionRefusedError, socket.gaierror))


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
    timeout_seconds: float = 30,
    ssl_context: ssl.SSLContext | None = None,
) -> tuple[int, dict[str, str], bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    opener = build_opener(HTTPSHandler(context=ssl_context)) if ssl_context is not None else build_opener()
    try:
        with opener.open(req, timeout=timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            hdrs = {k.lower(): v for k, v in dict(resp.headers).items()}
            data = resp.read()
            return int(status), hdrs, data
    except HTTPError as e:
        hdrs = {k.lower(): v for k, v in dict(e.headers or {}).items()}
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), hdrs, data
    except (URLError, OSError, http.client.HTTPException) as e:
        raise TransportError(
            f"http request failed: {e}",
            cause=_transport_cause(e),
            sent=not _never_sent(e),
        ) from e


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transport failures only."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    total_timeout_seconds: float = 60.0
    request_timeout_seconds: float = 30.0

    def delay(self, attempt: int) -> float:
        return min(self.base_delay_seconds * (2 ** max(attempt - 1, 0)), self.max_delay_seconds)


def retrying(
    call: Callable[[float], Any],
    *,
    policy: RetryPolicy,
    label: str,
    service: str = "",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    idempotent: bool = True,
) -> Any:
    """Run `call(timeout)` retrying only on TransportError.

    The whole sequence, backoff included, must finish inside
    `policy.total_timeout_seconds`. A non-idempotent call is retried only
    when the failed attempt never reached the server.
    """

    deadline = clock() + policy.total_timeout_seconds
    max_attempts = max(int(policy.max_attempts), 1)
    last: TransportError | None = None
    attempt = 0
    while attempt < max_attempts:
        remaining = deadline - clock()
        if remaining <= 0:
            break
        attempt += 1
        try:
            return call(min(policy.request_timeout_seconds, remaining))
        except TransportError as e:
            last = e
            if attempt >= max_attempts:
                break
            if not idempotent and e.sent:
                log.warning(
                    "%s: attempt %d failed (%s) after the request was sent; not retrying", label, attempt, e.cause
                )
                break
            delay = policy.delay(attempt)
            if clock() + delay >= deadline:
                log.warning("%s: attempt %d failed (%s); no time left for a retry", label, attempt, e.cause)
                last = TransportError(str(e), cause=CAUSE_TIMEOUT, sent=e.sent)
                break
            log.warning(
                "%s: attempt %d/%d failed (%s); retrying in %.1fs",
                label,
                attempt,
                max_attempts,
                e.cause,
                delay,
            )
            sleep(delay)

    if last is None:
        raise TransportError(
            f"{label} timed out after {policy.total_timeout_seconds:g}s",
            cause=CAUSE_TIMEOUT,
            attempts=attempt,
            service=service,
        )
    raise TransportError(
        f"{label} failed after {attempt} attempt(s): {last}",
        cause=last.cause,
        attempts=attempt,
        service=service,
        sent=last.sent,
    ) from last


def build_ssl_context(auth: AuthContext) -> ssl.SSLContext | None:
    """Build the TLS context for one backend from the bundle material."""

    https = auth.base_url.lower().startswith("https://")
    if isinstance(auth.client_auth, CertificateAuth) and not https:
        raise BundleError(
            f"certificate auth requires an https endpoint; {auth.service} is {auth.base_url}"
        )
    if not https:
        return None
    return _tls_context(
        trust_anchor=auth.trust_anchor,
        client_cert=auth.client_auth if isinstance(auth.client_auth, CertificateAuth) else None,
        label=auth.service,
    )


def _tls_context(
    *,
    trust_anchor: bytes | None,
    client_cert: CertificateAuth | None = None,
    label: str = "",
) -> ssl.SSLContext:
    try:
        if trust_anchor is not None:
            ctx = ssl.create_default_context(cadata=trust_anchor.decode("ascii", errors="replace"))
        else:
            ctx = ssl.create_default_context()
        if client_cert is not None:
            # load_cert_chain only reads from the filesystem.
            with tempfile.TemporaryDirectory(prefix="ota-cli-") as tmp:
                cert_path = Path(tmp) / "client.pem"
                key_path = Path(tmp) / "pkey.pem"
                _write_secure_bytes(path=cert_path, data=client_cert.cert_pem)
                _write_secure_bytes(path=key_path, data=client_cert.key_pem)
                ctx.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    except (ssl.SSLError, ValueError) as e:
        raise BundleCorrupt(f"credential bundle TLS material rejected for {label or 'backend'}: {e}") from e
    return ctx


def trace_request(method: str, url: str, headers: dict[str, str], body: bytes | None) -> None:
    if not log.isEnabledFor(TRACE):
        return
    log.log(TRACE, "request: %s %s headers=%s", method, url, redact_mapping(headers))
    if body:
        log.log(TRACE, "request body: %s", body.decode("utf-8", errors="replace"))


def trace_response(status: int, headers: dict[str, str], data: bytes) -> None:
    if not log.isEnabledFor(TRACE):
        return
    log.log(TRACE, "response: status=%s length=%d headers=%s", status, len(data), redact_mapping(headers))
    if data:
        log.log(TRACE, "response body: %s", data.decode("utf-8", errors="replace"))


def json_body(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":")).encode("utf-8")
