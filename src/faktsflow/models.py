"""Canonical Pydantic models shared across all faktsflow modules.

This is the single source of truth for data shapes in the project. Every other
module imports from here rather than defining its own models. The models fall
into two groups:

**Wire and session models** -- exchanged with a fakts endpoint and persisted
between process runs:
    :class:`FaktsRoutes`, :class:`EndpointDescriptor`, :class:`Requirement`,
    :class:`Manifest`, :class:`Alias`, :class:`Instance`, :class:`FaktsAuth`,
    :class:`ActiveFakts`, :class:`TokenResponse`, :class:`AvailableService`
    and :class:`UnresolvedService`.

**Configuration models** -- serialised as JSON in the user's config directory:
    :class:`ConnectionSettings`, :class:`ManifestConfig`,
    :class:`ServiceConfig`, :class:`OutputConfig` and :class:`GlobalConfig`.

Anything read back from storage is re-validated through these models before
it is trusted; persisted blobs are never repaired field by field.
"""

from __future__ import annotations

import enum
from typing import Literal, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _ensure_absolute_http_url(value: str) -> str:
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"'{value}' is not an absolute http(s) URL")
    return value if value.endswith("/") else f"{value}/"


# --- Endpoint ---


class FaktsRoutes(BaseModel):
    """Route names of a fakts endpoint, relative to its ``base_url``.

    The exact wire layout differs between deployments, so every route is
    configurable instead of being hard-coded in the handshake functions.
    """

    model_config = ConfigDict(frozen=True)

    well_known: str = ".well-known/fakts"
    start: str = "start/"
    challenge: str = "challenge/"
    claim: str = "claim/"
    configure: str = "configure/"


class EndpointDescriptor(BaseModel):
    """The discovered entry point of a fakts ecosystem.

    Produced by :func:`~faktsflow.fakts.discovery.discover` and consumed by
    every later stage of a connection. ``base_url`` always ends with ``/`` so
    that route names can be appended directly.

    Example::

        EndpointDescriptor(base_url="https://go.arkitekt.live/f/", name="go")
    """

    model_config = ConfigDict(frozen=True)

    base_url: str
    name: str = ""
    description: Optional[str] = None
    capabilities: list[str] = Field(default_factory=list)
    ca_crt: Optional[str] = Field(
        default=None, description="PEM bundle advertised by the endpoint"
    )

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        return _ensure_absolute_http_url(value)


# --- Manifest ---


class Requirement(BaseModel):
    """One declared service dependency as sent to the endpoint."""

    model_config = ConfigDict(frozen=True)

    key: str
    service: str
    optional: bool = False
    description: Optional[str] = None


class Manifest(BaseModel):
    """Static description of the connecting application.

    ``requirements`` must always be the projection of the declared service
    set; build it with
    :func:`~faktsflow.services.definitions.build_manifest` rather than
    listing requirements by hand.
    """

    model_config = ConfigDict(frozen=True)

    identifier: str
    version: str
    scopes: list[str] = Field(default_factory=list)
    requirements: list[Requirement] = Field(default_factory=list)
    logo: Optional[str] = None

    def with_requirements(self, requirements: list[Requirement]) -> Manifest:
        """Return a copy of this manifest carrying *requirements*."""
        return self.model_copy(update={"requirements": list(requirements)})


# --- Fakts ---


class Alias(BaseModel):
    """One candidate network address of a service instance.

    Aliases are resolved on every connect and never persisted on their own;
    they only travel inside the persisted :class:`ActiveFakts`.
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    host: str
    port: Optional[int] = None
    ssl: bool = True
    path: Optional[str] = None
    challenge: Optional[str] = Field(
        default=None, description="Route probed to check reachability"
    )
    kind: Optional[str] = None

    @property
    def base_url(self) -> str:
        """Absolute URL of the alias, always ending with ``/``."""
        scheme = "https" if self.ssl else "http"
        netloc = f"{self.host}:{self.port}" if self.port else self.host
        url = f"{scheme}://{netloc}/"
        if self.path and self.path.strip("/"):
            url += self.path.strip("/") + "/"
        return url

    @property
    def challenge_url(self) -> str:
        """URL probed by the alias resolver."""
        if not self.challenge:
            return self.base_url
        return self.base_url + self.challenge.lstrip("/")


class Instance(BaseModel):
    """A service's candidate addresses inside a claimed configuration."""

    service: str
    identifier: Optional[str] = None
    aliases: list[Alias] = Field(default_factory=list)


class FaktsAuth(BaseModel):
    """Client credentials issued by the endpoint for the token exchange."""

    client_id: str
    client_secret: str
    token_url: str
    scopes: list[str] = Field(default_factory=list)
    report_url: Optional[str] = None
    client_token: Optional[str] = None


class SelfInfo(BaseModel):
    """Deployment information the endpoint reports about itself."""

    deployment_name: Optional[str] = None


class ActiveFakts(BaseModel):
    """The configuration bundle obtained by a successful claim.

    Validated against this schema right after the claim and again whenever a
    persisted copy is read back, because storage may be stale or corrupted.
    """

    model_config = ConfigDict(populate_by_name=True)

    self_: Optional[SelfInfo] = Field(default=None, alias="self")
    auth: FaktsAuth
    instances: dict[str, Instance] = Field(default_factory=dict)


class TokenResponse(BaseModel):
    """OAuth2 token response (:rfc:`6749` section 5.1).

    Treated as a secret and persisted only as an opaque JSON blob.
    Unknown provider fields are preserved in ``model_extra``.
    """

    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    id_token: Optional[str] = None


# --- Resolution results ---


class AvailableService(BaseModel):
    """A service that was resolved and built successfully."""

    key: str
    service: str
    resolved: Alias


class UnresolvedService(BaseModel):
    """An optional service that could not be resolved or built."""

    key: str
    service: str
    aliases: Optional[list[Alias]] = None


# --- Configuration ---


class ConnectionSettings(BaseModel):
    """Timeouts and retry budgets for one connection attempt (in seconds)."""

    discovery_timeout: float = Field(default=2.0, description="Bound for the whole discovery")
    request_timeout: float = Field(
        default=10.0, description="Bound for start, claim and login requests"
    )
    alias_timeout: float = Field(default=1.0, description="Bound for one alias probe")
    challenge_timeout: float = Field(default=5.0, description="Bound for one challenge poll")
    max_retries: int = Field(default=60, description="Maximum number of challenge polls")
    poll_interval: float = Field(default=1.0, description="Pause between challenge polls")
    expiration_time: Optional[int] = Field(
        default=None, description="Requested device code lifetime in seconds"
    )
    verify_ssl: bool = Field(default=True, description="Verify TLS certificates")
    routes: FaktsRoutes = Field(default_factory=FaktsRoutes)


class ManifestConfig(BaseModel):
    """Identity of the connecting application as stored in the global config."""

    identifier: str = "live.arkitekt.faktsflow"
    version: str = "0.3.0"
    scopes: list[str] = Field(default_factory=lambda: ["openid"])


class ServiceKind(str, enum.Enum):
    """The closed set of client kinds a declared service can be built as."""

    HTTP = "http"
    GRAPHQL = "graphql"


class ServiceConfig(BaseModel):
    """A declared service dependency as stored in the global config."""

    key: str
    service: str
    optional: bool = False
    kind: ServiceKind = ServiceKind.GRAPHQL
    description: Optional[str] = None


class OutputConfig(BaseModel):
    """Default output format preferences stored in :class:`GlobalConfig`."""

    format: Literal["auto", "json", "plain", "rich"] = Field(
        default="auto", description="Output format used when no flag is given"
    )


def _default_services() -> list[ServiceConfig]:
    return [
        ServiceConfig(key="lok", service="live.arkitekt.lok"),
        ServiceConfig(key="mikro", service="live.arkitekt.mikro"),
        ServiceConfig(key="kabinet", service="live.arkitekt.kabinet", optional=True),
    ]


class GlobalConfig(BaseModel):
    """User-wide configuration persisted at ``~/.config/faktsflow/config.json``.

    Loaded and saved by :func:`~faktsflow.config.load_global_config` and
    :func:`~faktsflow.config.save_global_config`. Fields here have the
    lowest precedence and can be overridden by project config, environment
    variables, or CLI flags. See :func:`~faktsflow.config.resolve_config`.
    """

    model_config = ConfigDict(extra="allow")

    default_url: Optional[str] = None
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    manifest: ManifestConfig = Field(default_factory=ManifestConfig)
    services: list[ServiceConfig] = Field(default_factory=_default_services)
    output: OutputConfig = Field(default_factory=OutputConfig)
