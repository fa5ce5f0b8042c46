from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .bundle import OAuth2Client
from .logging import get_logger
from .transport import (
    DecodeError,
    RejectedError,
    RetryPolicy,
    Transport,
    _http_request,
    _tls_context,
    retrying,
    trace_request,
    trace_response,
)

log = get_logger("auth")

NAMESPACE_SCOPE_PREFIX = "namespace."


@dataclass(frozen=True)
class AccessToken:
    access_token: str = field(repr=False)
    token_type: str
    expires_in: int
    scope: str

    def namespace(self) -> str | None:
        scopes = [
            s[len(NAMESPACE_SCOPE_PREFIX):]
            for s in self.scope.split()
            if s.startswith(NAMESPACE_SCOPE_PREFIX)
        ]
        if len(scopes) == 1:
            return scopes[0]
        if not scopes:
            log.warning("access token carries no namespace scope")
        else:
            log.warning("access token carries multiple namespace scopes: %s", ", ".join(scopes))
        return None


def decode_access_token(doc: Any) -> AccessToken:
    if not isinstance(doc, dict):
        raise DecodeError("token response: expected JSON object")
    token = str(doc.get("access_token") or "").strip()
    if not token:
        raise DecodeError("token response: missing access_token")
    try:
        expires_in = int(doc.get("expires_in") or 0)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"token response: invalid expires_in: {doc.get('expires_in')!r}") from e
    return AccessToken(
        access_token=token,
        token_type=str(doc.get("token_type") or "bearer"),
        expires_in=expires_in,
        scope=str(doc.get("scope") or ""),
    )


def _basic_auth_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


class TokenProvider:
    """Exchanges OAuth2 client credentials for a bearer token, once per process.

    The client secret is only ever sent to the auth server named in the
    bundle, never to a backend.
    """

    def __init__(
        self,
        oauth2: OAuth2Client,
        *,
        trust_anchor: bytes | None = None,
        policy: RetryPolicy | None = None,
        transport: Transport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._oauth2 = oauth2
        self._trust_anchor = trust_anchor
        self._policy = policy or RetryPolicy()
        self._transport = transport or _http_request
        self._sleep = sleep
        self._clock = clock
        self._token: AccessToken | None = None

    def token(self) -> AccessToken:
        if self._token is None:
            self._token = self._fetch()
        return self._token

    def _fetch(self) -> AccessToken:
        url = f"{self._oauth2.server}/token"
        headers = {
            "authorization": _basic_auth_header(self._oauth2.client_id, self._oauth2.client_secret),
            "content-type": "application/x-www-form-urlencoded",
            "accept": "application/json",
        }
        body = b"grant_type=client_credentials"
        ssl_context = (
            _tls_context(trust_anchor=self._trust_anchor, label="auth server")
            if url.lower().startswith("https://")
            else None
        )
        log.debug("fetching access token from %s", self._oauth2.server)

        def _call(timeout: float) -> tuple[int, dict[str, str], bytes]:
            trace_request("POST", url, headers, body)
            return self._transport(
                method="POST",
                url=url,
                headers=headers,
                body=body,
                timeout_seconds=timeout,
                ssl_context=ssl_context,
            )

        status, hdrs, data = retrying(
            _call,
            policy=self._policy,
            label="access token request",
            service="auth",
            sleep=self._sleep,
            clock=self._clock,
        )
        trace_response(status, hdrs, data)
        text = data.decode("utf-8", errors="replace")
        if status < 200 or status >= 300:
            raise RejectedError(
                service="auth",
                method="POST",
                path="/token",
                status=status,
                description=text.strip(),
                body=text,
            )
        try:
            doc = json.loads(text)
        except ValueError as e:
            raise DecodeError(f"token response: invalid JSON: {e}", service="auth", path="/token", body=text) from e
        return decode_access_token(doc)
