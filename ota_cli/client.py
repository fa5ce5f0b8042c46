from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping
from urllib.parse import quote, urlencode

from . import __version__
from .auth import TokenProvider
from .bundle import AuthContext, BundleError, NoAuth, OAuth2Client, StaticToken
from .logging import get_logger
from .transport import (
    DecodeError,
    RejectedError,
    RetryPolicy,
    Transport,
    _http_request,
    build_ssl_context,
    json_body,
    retrying,
    trace_request,
    trace_response,
)

log = get_logger("client")

NAMESPACE_HEADER = "x-ats-namespace"

# A timeout on these may still have created something server-side.
NON_IDEMPOTENT_METHODS = frozenset({"POST", "PATCH"})

_NO_BODY = object()


@dataclass(frozen=True)
class ServiceRequest:
    """One typed backend operation.

    `decode` turns the parsed JSON body into the operation's result type and
    raises DecodeError on a schema mismatch. A request without `decode`
    ignores the response body.
    """

    method: str
    path: str
    label: str
    query: Mapping[str, Any] = field(default_factory=dict)
    body: Any = _NO_BODY
    decode: Callable[[Any], Any] | None = None
    allow_empty: bool = False


@dataclass(frozen=True)
class ServiceResponse:
    status: int
    value: Any
    headers: Mapping[str, str] = field(default_factory=dict)


def segment(value: Any) -> str:
    return quote(str(value), safe="")


class ServiceClient:
    """Authenticated client permanently bound to one backend."""

    def __init__(
        self,
        auth: AuthContext,
        *,
        policy: RetryPolicy | None = None,
        transport: Transport | None = None,
        token_provider: TokenProvider | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._auth = auth
        self._policy = policy or RetryPolicy()
        self._transport = transport or _http_request
        self._sleep = sleep
        self._clock = clock
        self._ssl_context = build_ssl_context(auth)
        if isinstance(auth.client_auth, OAuth2Client) and token_provider is None:
            token_provider = TokenProvider(
                auth.client_auth,
                trust_anchor=auth.trust_anchor,
                policy=self._policy,
                transport=self._transport,
                sleep=sleep,
                clock=clock,
            )
        self._token_provider = token_provider
        log.debug("%s client bound to %s (auth=%s)", auth.service, auth.base_url, auth.auth_type)

    @property
    def service(self) -> str:
        return self._auth.service

    @property
    def base_url(self) -> str:
        return self._auth.base_url

    def url_for(self, path: str, query: Mapping[str, Any] | None = None) -> str:
        url = self.base_url + path.lstrip("/")
        query_clean = {k: str(v) for k, v in (query or {}).items() if v is not None}
        if query_clean:
            url += f"?{urlencode(query_clean)}"
        return url

    def _auth_headers(self) -> dict[str, str]:
        auth = self._auth.client_auth
        if isinstance(auth, StaticToken):
            return {"authorization": f"Bearer {auth.token}"}
        if isinstance(auth, OAuth2Client):
            if self._token_provider is None:
                raise BundleError(f"{self.service}: oauth2 credentials without a token provider")
            token = self._token_provider.token()
            headers = {"authorization": f"Bearer {token.access_token}"}
            namespace = token.namespace()
            if namespace:
                headers[NAMESPACE_HEADER] = namespace
            return headers
        if isinstance(auth, NoAuth):
            return {}
        # Certificate auth is carried by the TLS handshake.
        return {}

    def send(self, request: ServiceRequest) -> ServiceResponse:
        url = self.url_for(request.path, request.query)
        headers = {
            "accept": "application/json",
            "user-agent": f"ota-cli/{__version__}",
            **self._auth_headers(),
        }
        body: bytes | None = None
        if request.body is not _NO_BODY:
            body = json_body(request.body)
            headers["content-type"] = "application/json"
        method = request.method.upper()
        log.debug("%s: %s %s", request.label, method, url)

        def _call(timeout: float) -> tuple[int, dict[str, str], bytes]:
            trace_request(method, url, headers, body)
            return self._transport(
                method=method,
                url=url,
                headers=headers,
                body=body,
                timeout_seconds=timeout,
                ssl_context=self._ssl_context,
            )

        status, hdrs, data = retrying(
            _call,
            policy=self._policy,
            label=f"{self.service} {request.label}",
            service=self.service,
            sleep=self._sleep,
            clock=self._clock,
            idempotent=method not in NON_IDEMPOTENT_METHODS,
        )
        trace_response(status, hdrs, data)
        if status < 200 or status >= 300:
            raise self._rejected(request, method, status, data)
        return ServiceResponse(status=status, value=self._decode(request, data), headers=hdrs)

    def _rejected(self, request: ServiceRequest, method: str, status: int, data: bytes) -> RejectedError:
        text = data.decode("utf-8", errors="replace")
        code = ""
        description = text.strip()
        try:
            parsed = json.loads(text) if text.strip() else None
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            code = str(parsed.get("code") or "").strip()
            description = str(
                parsed.get("description") or parsed.get("message") or parsed.get("error") or description
            ).strip()
        return RejectedError(
            service=self.service,
            method=method,
            path="/" + request.path.lstrip("/"),
            status=status,
            code=code,
            description=description,
            body=text,
        )

    def _decode(self, request: ServiceRequest, data: bytes) -> Any:
        if request.decode is None:
            return None
        text = data.decode("utf-8", errors="replace")
        path = "/" + request.path.lstrip("/")
        if not text.strip():
            if request.allow_empty:
                return None
            raise DecodeError(f"{self.service} {request.label}: empty response body", service=self.service, path=path)
        try:
            parsed = json.loads(text)
        except ValueError as e:
            raise DecodeError(
                f"{self.service} {request.label}: invalid JSON: {e}",
                service=self.service,
                path=path,
                body=text,
            ) from e
        try:
            return request.decode(parsed)
        except DecodeError as e:
            raise DecodeError(
                f"{self.service} {request.label}: {e}",
                service=self.service,
                path=path,
                body=text,
            ) from e
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(
                f"{self.service} {request.label}: unexpected response shape: {e}",
                service=self.service,
                path=path,
                body=text,
            ) from e
