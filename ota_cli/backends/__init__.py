from __future__ import annotations

import time
from typing import Callable

from ..auth import TokenProvider
from ..bundle import CAMPAIGNER, DIRECTOR, REGISTRY, CredentialBundle, OAuth2Client
from ..client import ServiceClient
from ..transport import RetryPolicy, Transport, _http_request
from .campaigner import CampaignerClient
from .director import DirectorClient
from .registry import DeviceType, RegistryClient

__all__ = [
    "Backends",
    "CampaignerClient",
    "DeviceType",
    "DirectorClient",
    "RegistryClient",
]


class Backends:
    """Builds per-service clients from one shared credential bundle.

    Clients are only built on request, so a command fails fast on a missing
    endpoint for the service it actually needs and never for the others.
    """

    def __init__(
        self,
        bundle: CredentialBundle,
        *,
        policy: RetryPolicy | None = None,
        transport: Transport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bundle = bundle
        self._policy = policy or RetryPolicy()
        self._transport = transport or _http_request
        self._sleep = sleep
        self._clock = clock
        self._token_provider: TokenProvider | None = None
        if isinstance(bundle.client_auth, OAuth2Client):
            self._token_provider = TokenProvider(
                bundle.client_auth,
                trust_anchor=bundle.trust_anchor,
                policy=self._policy,
                transport=self._transport,
                sleep=sleep,
                clock=clock,
            )

    def client(self, service: str) -> ServiceClient:
        return ServiceClient(
            self.bundle.auth_for(service),
            policy=self._policy,
            transport=self._transport,
            token_provider=self._token_provider,
            sleep=self._sleep,
            clock=self._clock,
        )

    def campaigner(self) -> CampaignerClient:
        return CampaignerClient(self.client(CAMPAIGNER))

    def director(self) -> DirectorClient:
        return DirectorClient(self.client(DIRECTOR))

    def registry(self) -> RegistryClient:
        return RegistryClient(self.client(REGISTRY))
