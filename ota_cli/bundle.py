"""Credential bundle loading.

A credential bundle is a zip archive issued out-of-band. It carries the client
authentication material and the base URL of every backend the holder may talk
to. Auth material is only ever handed out together with the endpoint of a
service the bundle lists, so a credential cannot leak to a backend the bundle
was not issued for.
"""

from __future__ import annotations

import json
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Union
from urllib.parse import urlparse

from .cli_shared import OtaError
from .logging import get_logger

log = get_logger("bundle")

CAMPAIGNER = "campaigner"
DIRECTOR = "director"
REGISTRY = "registry"
SERVICES = (CAMPAIGNER, DIRECTOR, REGISTRY)

SERVICES_MEMBER = "services.json"
CLIENT_CERT_MEMBER = "client.pem"
CLIENT_KEY_MEMBER = "pkey.pem"
TRUST_ANCHOR_MEMBER = "root.crt"
TREEHUB_MEMBER = "treehub.json"
STATIC_TOKEN_MEMBER = "api.token"


class BundleError(OtaError):
    kind = "bundle"


class BundleNotFound(BundleError):
    kind = "bundle.not_found"


class BundleCorrupt(BundleError):
    kind = "bundle.corrupt"


class BundleMissingField(BundleError):
    kind = "bundle.missing_field"

    def __init__(self, field_name: str, *, path: str | Path = "") -> None:
        self.field = field_name
        where = f"credential bundle {path}" if path else "credential bundle"
        super().__init__(f"{where}: missing {field_name}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "field": self.field}


class NoSuchService(BundleError):
    kind = "bundle.no_such_service"

    def __init__(self, service: str, *, available: tuple[str, ...] = ()) -> None:
        self.service = service
        self.available = available
        listed = ", ".join(available) if available else "none"
        super().__init__(
            f"credential bundle has no endpoint for service {service!r} (available: {listed})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "service": self.service, "available": list(self.available)}


@dataclass(frozen=True)
class CertificateAuth:
    cert_pem: bytes = field(repr=False)
    key_pem: bytes = field(repr=False)


@dataclass(frozen=True)
class OAuth2Client:
    server: str
    client_id: str
    client_secret: str = field(repr=False)


@dataclass(frozen=True)
class StaticToken:
    token: str = field(repr=False)


@dataclass(frozen=True)
class NoAuth:
    pass


ClientAuth = Union[CertificateAuth, OAuth2Client, StaticToken, NoAuth]


@dataclass(frozen=True)
class AuthContext:
    """Auth material bound to exactly one backend."""

    service: str
    base_url: str
    client_auth: ClientAuth
    trust_anchor: bytes | None = field(default=None, repr=False)

    @property
    def auth_type(self) -> str:
        return _auth_type(self.client_auth)


@dataclass(frozen=True)
class CredentialBundle:
    path: str
    client_auth: ClientAuth
    endpoints: Mapping[str, str]
    trust_anchor: bytes | None = field(default=None, repr=False)

    @property
    def services(self) -> tuple[str, ...]:
        return tuple(s for s in SERVICES if s in self.endpoints)

    @property
    def auth_type(self) -> str:
        return _auth_type(self.client_auth)

    def endpoint_for(self, service: str) -> str:
        url = self.endpoints.get(service)
        if not url:
            raise NoSuchService(service, available=self.services)
        return url

    def auth_for(self, service: str) -> AuthContext:
        return AuthContext(
            service=service,
            base_url=self.endpoint_for(service),
            client_auth=self.client_auth,
            trust_anchor=self.trust_anchor,
        )


def _auth_type(auth: ClientAuth) -> str:
    if isinstance(auth, CertificateAuth):
        return "certificate"
    if isinstance(auth, OAuth2Client):
        return "oauth2"
    if isinstance(auth, StaticToken):
        return "token"
    return "none"


def _normalize_base_url(raw: Any, *, service: str, path: str) -> str:
    url = str(raw or "").strip() if isinstance(raw, str) else ""
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise BundleCorrupt(
            f"credential bundle {path}: {SERVICES_MEMBER} has invalid URL for {service!r}: {raw!r}"
        )
    return url.rstrip("/") + "/"


def _read_member(zf: zipfile.ZipFile, name: str, *, path: str) -> bytes | None:
    try:
        return zf.read(name)
    except KeyError:
        return None
    except Exception as e:
        raise BundleCorrupt(f"credential bundle {path}: cannot read {name}: {e}") from e


def _load_json_member(raw: bytes, name: str, *, path: str) -> dict[str, Any]:
    try:
        val = json.loads(raw.decode("utf-8"))
    except Exception as e:
        raise BundleCorrupt(f"credential bundle {path}: invalid {name}: {e}") from e
    if not isinstance(val, dict):
        raise BundleCorrupt(f"credential bundle {path}: invalid {name}: expected JSON object")
    return val


def _parse_endpoints(raw: bytes | None, *, path: str) -> dict[str, str]:
    if raw is None:
        raise BundleMissingField(SERVICES_MEMBER, path=path)
    doc = _load_json_member(raw, SERVICES_MEMBER, path=path)
    endpoints: dict[str, str] = {}
    for name, value in doc.items():
        if name not in SERVICES:
            log.debug("ignoring unknown service %r in %s", name, SERVICES_MEMBER)
            continue
        endpoints[name] = _normalize_base_url(value, service=name, path=path)
    if not endpoints:
        raise BundleMissingField(
            f"service endpoint ({SERVICES_MEMBER} lists none of {', '.join(SERVICES)})",
            path=path,
        )
    return endpoints


def _require_pem(raw: bytes, marker: bytes, name: str, *, path: str) -> bytes:
    if marker not in raw:
        raise BundleCorrupt(f"credential bundle {path}: {name} is not PEM encoded")
    return raw


def _parse_oauth2(block: Any, *, path: str) -> OAuth2Client:
    if not isinstance(block, dict):
        raise BundleCorrupt(f"credential bundle {path}: {TREEHUB_MEMBER} oauth2 must be an object")
    values: dict[str, str] = {}
    for key in ("server", "client_id", "client_secret"):
        v = str(block.get(key) or "").strip()
        if not v:
            raise BundleMissingField(f"{TREEHUB_MEMBER}: oauth2.{key}", path=path)
        values[key] = v
    return OAuth2Client(
        server=values["server"].rstrip("/"),
        client_id=values["client_id"],
        client_secret=values["client_secret"],
    )


def _parse_client_auth(zf: zipfile.ZipFile, *, path: str) -> ClientAuth:
    cert = _read_member(zf, CLIENT_CERT_MEMBER, path=path)
    key = _read_member(zf, CLIENT_KEY_MEMBER, path=path)
    if cert is not None or key is not None:
        if cert is None:
            raise BundleMissingField(CLIENT_CERT_MEMBER, path=path)
        if key is None:
            raise BundleMissingField(CLIENT_KEY_MEMBER, path=path)
        return CertificateAuth(
            cert_pem=_require_pem(cert, b"BEGIN CERTIFICATE", CLIENT_CERT_MEMBER, path=path),
            key_pem=_require_pem(key, b"PRIVATE KEY", CLIENT_KEY_MEMBER, path=path),
        )

    treehub_raw = _read_member(zf, TREEHUB_MEMBER, path=path)
    treehub = _load_json_member(treehub_raw, TREEHUB_MEMBER, path=path) if treehub_raw is not None else {}
    if treehub.get("no_auth") is True:
        return NoAuth()
    if treehub.get("oauth2") is not None:
        return _parse_oauth2(treehub.get("oauth2"), path=path)

    token_raw = _read_member(zf, STATIC_TOKEN_MEMBER, path=path)
    if token_raw is not None:
        token = token_raw.decode("utf-8", errors="replace").strip()
        if not token:
            raise BundleMissingField(f"{STATIC_TOKEN_MEMBER} (file is empty)", path=path)
        return StaticToken(token=token)

    raise BundleMissingField(
        f"client auth ({CLIENT_CERT_MEMBER}+{CLIENT_KEY_MEMBER}, "
        f"{TREEHUB_MEMBER} oauth2, or {STATIC_TOKEN_MEMBER})",
        path=path,
    )


def load(path: str | Path) -> CredentialBundle:
    """Open the bundle at `path` and parse its auth material and endpoints."""

    p = Path(path).expanduser()
    if not p.is_file():
        raise BundleNotFound(f"credential bundle not found: {p}")
    log.debug("reading credential bundle %s", p)
    try:
        zf = zipfile.ZipFile(p, "r")
    except (zipfile.BadZipFile, OSError) as e:
        raise BundleCorrupt(f"credential bundle {p}: cannot unpack archive: {e}") from e
    with zf:
        endpoints = _parse_endpoints(_read_member(zf, SERVICES_MEMBER, path=str(p)), path=str(p))
        client_auth = _parse_client_auth(zf, path=str(p))
        trust_anchor = _read_member(zf, TRUST_ANCHOR_MEMBER, path=str(p))
    if trust_anchor is not None:
        _require_pem(trust_anchor, b"BEGIN CERTIFICATE", TRUST_ANCHOR_MEMBER, path=str(p))

    bundle = CredentialBundle(
        path=str(p),
        client_auth=client_auth,
        endpoints=MappingProxyType(endpoints),
        trust_anchor=trust_anchor,
    )
    log.debug(
        "credential bundle loaded: auth=%s services=%s trust_anchor=%s",
        bundle.auth_type,
        ",".join(bundle.services),
        "yes" if trust_anchor is not None else "no",
    )
    return bundle
