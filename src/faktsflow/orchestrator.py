"""Connection orchestrator -- the session state machine and persistence policy.

:class:`ConnectionOrchestrator` owns one session against one fakts
ecosystem. It sequences the stages of a connection, persists each artifact
as soon as it exists, and exposes the connected context to the application::

    DISCONNECTED --connect--> CONNECTING --success--> CONNECTED
         ^                        |                        |
         +-------failure----------+                        |
         +----------------------disconnect-----------------+

Persistence order during :meth:`~ConnectionOrchestrator.connect`:

1. ``endpoint`` before the consent handshake starts,
2. ``fakts`` right after the claim,
3. ``token`` right after login,

then the service fan-out runs. A failure at any stage returns the session
to ``DISCONNECTED`` but keeps whatever was already persisted; the error
propagates with its ``stage`` attribute set.

Example::

    orchestrator = build_orchestrator(manifest, services, MemoryStorage())
    async with orchestrator:
        if orchestrator.context is None:
            await orchestrator.connect_url("https://go.arkitekt.live")
        mikro = orchestrator.service("mikro")
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Union

import httpx
from pydantic import ValidationError

from faktsflow.cancel import CancelToken, ensure_token
from faktsflow.exceptions import (
    Cancelled,
    FaktsflowError,
    InvalidUsageError,
    NoPersistedEndpoint,
    ServiceNotAvailable,
    SessionValidationFailed,
)
from faktsflow.fakts.consent import ConsentSurface
from faktsflow.fakts.discovery import discover
from faktsflow.fakts.flow import ConsentHandshake, HandshakeState
from faktsflow.fakts.surfaces import BrowserConsentSurface
from faktsflow.models import (
    ActiveFakts,
    AvailableService,
    ConnectionSettings,
    EndpointDescriptor,
    GlobalConfig,
    Manifest,
    TokenResponse,
    UnresolvedService,
)
from faktsflow.oauth.login import login
from faktsflow.services.context import ConnectedContext, build_context
from faktsflow.services.definitions import (
    ServiceDefinition,
    build_manifest,
    definitions_from_config,
    service_map,
)
from faktsflow.storage import (
    ENDPOINT_KEY,
    FAKTS_KEY,
    TOKEN_KEY,
    FileStorage,
    StorageProvider,
)
from faktsflow.transport import create_http_client

logger = logging.getLogger(__name__)

Services = Union[Iterable[ServiceDefinition], Mapping[str, ServiceDefinition]]


class SessionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    RECONNECTING = "reconnecting"
    CONNECTED = "connected"


class ConnectionStage(str, enum.Enum):
    """The stage a connect attempt is in; recorded on errors as ``stage``."""

    DISCOVERING = "discovering"
    AUTHORIZING = "authorizing"
    AWAITING_CONSENT = "awaiting_consent"
    CLAIMING = "claiming"
    LOGGING_IN = "logging_in"
    RESOLVING_SERVICES = "resolving_services"


_HANDSHAKE_STAGES = {
    HandshakeState.SURFACE_OPEN: ConnectionStage.AWAITING_CONSENT,
    HandshakeState.CLAIMING: ConnectionStage.CLAIMING,
}


@dataclass(frozen=True)
class Session:
    """Immutable snapshot of the orchestrator's session.

    Attributes:
        state: Where the session is in its lifecycle.
        stage: The running stage while connecting or reconnecting.
        context: The connected context; set only when ``CONNECTED``.
        endpoint: The endpoint of the current or last connect attempt.
    """

    state: SessionState = SessionState.DISCONNECTED
    stage: Optional[ConnectionStage] = None
    context: Optional[ConnectedContext] = None
    endpoint: Optional[EndpointDescriptor] = None

    @property
    def connected(self) -> bool:
        return self.state is SessionState.CONNECTED


SessionCallback = Callable[[Session], None]


class ConnectionOrchestrator:
    """Connects to a fakts ecosystem and keeps the resulting session.

    Connect, reconnect and try-reconnect are serialised by a lock, so one
    orchestrator never runs two handshakes at once.

    Args:
        manifest: Identity of the connecting application. Its requirements
            are replaced by the ones derived from *services*.
        services: Declared service dependencies.
        storage: Where session records are persisted.
        surface: Consent surface used during the handshake.
        settings: Timeouts and retry budgets.
        http: Shared HTTP client. Created (and owned) on first use when
            omitted.
        on_change: Called with every new :class:`Session` snapshot.
    """

    def __init__(
        self,
        manifest: Manifest,
        services: Services,
        storage: StorageProvider,
        surface: Optional[ConsentSurface] = None,
        *,
        settings: Optional[ConnectionSettings] = None,
        http: Optional[httpx.AsyncClient] = None,
        on_change: Optional[SessionCallback] = None,
    ) -> None:
        if isinstance(services, Mapping):
            services = services.values()
        self._services = service_map(services)
        self._manifest = build_manifest(manifest, self._services)
        self._storage = storage
        self._surface = surface
        self._settings = settings or ConnectionSettings()
        self._http = http
        self._owns_http = http is None
        self._on_change = on_change
        self._lock = asyncio.Lock()
        self._session = Session()
        self._opened = False

    # --- Accessors ---

    @property
    def session(self) -> Session:
        return self._session

    @property
    def context(self) -> Optional[ConnectedContext]:
        return self._session.context

    @property
    def manifest(self) -> Manifest:
        return self._manifest

    @property
    def settings(self) -> ConnectionSettings:
        return self._settings

    @property
    def services(self) -> Mapping[str, ServiceDefinition]:
        return dict(self._services)

    @property
    def token(self) -> Optional[TokenResponse]:
        context = self._session.context
        return context.token if context is not None else None

    @property
    def fakts(self) -> Optional[ActiveFakts]:
        context = self._session.context
        return context.fakts if context is not None else None

    @property
    def available_services(self) -> tuple[AvailableService, ...]:
        context = self._session.context
        return context.available_services if context is not None else ()

    @property
    def unresolved_services(self) -> tuple[UnresolvedService, ...]:
        context = self._session.context
        return context.unresolved_services if context is not None else ()

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = create_http_client(self._settings)
        return self._http

    def service(self, key: str) -> Any:
        """Return the client for *key*.

        Raises:
            ServiceNotAvailable: If not connected or *key* was not resolved.
        """
        context = self._session.context
        if context is None:
            raise ServiceNotAvailable(f"Service '{key}' is not available: not connected")
        return context.service(key)

    def potential_service(self, key: str) -> Any:
        """Return the client for *key*, or ``None`` if it is not available."""
        context = self._session.context
        if context is None:
            return None
        return context.clients.get(key)

    # --- Session snapshots ---

    def _set(self, session: Session) -> None:
        self._session = session
        logger.debug(
            "Session -> %s%s",
            session.state.value,
            f" ({session.stage.value})" if session.stage else "",
        )
        if self._on_change is not None:
            self._on_change(session)

    def _enter_stage(self, state: SessionState, stage: ConnectionStage) -> None:
        self._set(Session(state=state, stage=stage, endpoint=self._session.endpoint))

    async def _drop_context(self) -> None:
        context = self._session.context
        if context is not None:
            self._set(Session(endpoint=self._session.endpoint))
            await context.aclose()

    # --- Operations ---

    async def connect(
        self, endpoint: EndpointDescriptor, cancel: Optional[CancelToken] = None
    ) -> ConnectedContext:
        """Run the full connection against an already discovered endpoint.

        Args:
            endpoint: The endpoint to connect to.
            cancel: Token that aborts the attempt when fired.

        Returns:
            The new :class:`~faktsflow.services.context.ConnectedContext`.

        Raises:
            AuthorizationError: If the handshake or the token exchange failed.
            RequiredServiceResolutionFailed: If a required service failed.
            Cancelled: If *cancel* fired.
        """
        async with self._lock:
            return await self._run(SessionState.CONNECTING, cancel, endpoint=endpoint)

    async def connect_url(
        self, url: str, cancel: Optional[CancelToken] = None
    ) -> ConnectedContext:
        """Discover the endpoint behind *url*, then :meth:`connect` to it.

        Raises:
            DiscoveryError: If discovery failed, in addition to everything
                :meth:`connect` raises.
        """
        async with self._lock:
            return await self._run(SessionState.CONNECTING, cancel, url=url)

    async def reconnect(self, cancel: Optional[CancelToken] = None) -> ConnectedContext:
        """Run the full connection again against the persisted endpoint.

        Raises:
            NoPersistedEndpoint: If no endpoint was ever stored.
            SessionValidationFailed: If the stored endpoint is invalid.
        """
        async with self._lock:
            raw = await self._storage.get(ENDPOINT_KEY)
            if not raw:
                raise NoPersistedEndpoint("No endpoint has been stored; connect first")
            try:
                endpoint = EndpointDescriptor.model_validate_json(raw)
            except ValidationError as exc:
                raise SessionValidationFailed(
                    f"Stored endpoint is invalid: {exc}", ENDPOINT_KEY
                ) from exc
            return await self._run(SessionState.RECONNECTING, cancel, endpoint=endpoint)

    async def _run(
        self,
        state: SessionState,
        cancel: Optional[CancelToken],
        *,
        endpoint: Optional[EndpointDescriptor] = None,
        url: Optional[str] = None,
    ) -> ConnectedContext:
        token = ensure_token(cancel)
        settings = self._settings
        await self._drop_context()

        try:
            if endpoint is None:
                if not url:
                    raise InvalidUsageError("Either an endpoint or a URL is required")
                self._enter_stage(state, ConnectionStage.DISCOVERING)
                endpoint = await discover(
                    url,
                    timeout=settings.discovery_timeout,
                    cancel=token,
                    http=self.http,
                    routes=settings.routes,
                )

            self._set(Session(state=state, stage=ConnectionStage.AUTHORIZING, endpoint=endpoint))
            await self._storage.set(ENDPOINT_KEY, endpoint.model_dump_json())

            def on_handshake(handshake_state: HandshakeState) -> None:
                stage = _HANDSHAKE_STAGES.get(handshake_state)
                if stage is not None:
                    self._enter_stage(state, stage)

            handshake = ConsentHandshake(
                endpoint,
                self._manifest,
                http=self.http,
                surface=self._surface,
                settings=settings,
                cancel=token,
                on_state=on_handshake,
            )
            fakts = await handshake.run()
            await self._storage.set(FAKTS_KEY, fakts.model_dump_json(by_alias=True))

            self._enter_stage(state, ConnectionStage.LOGGING_IN)
            access = await login(
                fakts.auth, http=self.http, cancel=token, timeout=settings.request_timeout
            )
            await self._storage.set(TOKEN_KEY, access.model_dump_json())

            self._enter_stage(state, ConnectionStage.RESOLVING_SERVICES)
            context = await build_context(
                fakts,
                self._manifest,
                self._services,
                access,
                http=self.http,
                cancel=token,
                alias_timeout=settings.alias_timeout,
            )
        except BaseException as exc:
            stage = self._session.stage
            if isinstance(exc, FaktsflowError) and exc.stage is None and stage is not None:
                exc.stage = stage.value
            logger.debug("Connect failed during %s: %s", stage.value if stage else "setup", exc)
            self._set(Session(endpoint=endpoint))
            raise

        self._set(Session(state=SessionState.CONNECTED, context=context, endpoint=endpoint))
        return context

    async def disconnect(self) -> None:
        """Drop the session and forget its fakts and token.

        Closes every service client. The persisted endpoint is kept so that
        :meth:`reconnect` still works. Calling this while disconnected is a
        no-op.
        """
        async with self._lock:
            await self._drop_context()
            if self._session.state is not SessionState.DISCONNECTED:
                self._set(Session(endpoint=self._session.endpoint))
            await self._storage.remove(FAKTS_KEY)
            await self._storage.remove(TOKEN_KEY)

    async def try_reconnect(
        self, cancel: Optional[CancelToken] = None
    ) -> Optional[ConnectedContext]:
        """Restore the session from persisted fakts and token without user interaction.

        Returns ``None`` and stays ``DISCONNECTED`` when nothing is persisted.
        When the persisted records cannot be read, are invalid, or the
        services cannot be built from them, both records are erased. This method never raises
        for those failures; they are logged.
        """
        async with self._lock:
            try:
                fakts_raw = await self._storage.get(FAKTS_KEY)
                token_raw = await self._storage.get(TOKEN_KEY)
            except Exception as exc:
                logger.warning("Persisted session could not be read, erasing it: %s", exc)
                await self._erase_session()
                return None
            if not fakts_raw or not token_raw:
                logger.debug("No persisted session to restore")
                return None

            try:
                fakts = ActiveFakts.model_validate_json(fakts_raw)
                access = TokenResponse.model_validate_json(token_raw)
            except ValidationError as exc:
                logger.warning("Persisted session is invalid, erasing it: %s", exc)
                await self._erase_session()
                return None

            await self._drop_context()
            self._enter_stage(SessionState.RECONNECTING, ConnectionStage.RESOLVING_SERVICES)
            try:
                context = await build_context(
                    fakts,
                    self._manifest,
                    self._services,
                    access,
                    http=self.http,
                    cancel=cancel,
                    alias_timeout=self._settings.alias_timeout,
                )
            except Cancelled:
                logger.info("Restoring the persisted session was cancelled")
                self._set(Session(endpoint=self._session.endpoint))
                return None
            except Exception as exc:
                logger.warning("Restoring the persisted session failed: %s", exc, exc_info=True)
                self._set(Session(endpoint=self._session.endpoint))
                await self._erase_session()
                return None

            self._set(
                Session(
                    state=SessionState.CONNECTED,
                    context=context,
                    endpoint=self._session.endpoint,
                )
            )
            return context

    async def _erase_session(self) -> None:
        for key in (FAKTS_KEY, TOKEN_KEY):
            try:
                await self._storage.remove(key)
            except Exception as exc:
                logger.warning("Could not erase persisted %s record: %s", key, exc)

    async def open(self) -> Optional[ConnectedContext]:
        """Restore a persisted session once per orchestrator.

        Later calls return the current context without touching storage.
        """
        if self._opened:
            return self._session.context
        self._opened = True
        return await self.try_reconnect()

    async def aclose(self) -> None:
        """Close service clients and the owned HTTP client. Storage is left intact."""
        async with self._lock:
            await self._drop_context()
            if self._session.state is not SessionState.DISCONNECTED:
                self._set(Session(endpoint=self._session.endpoint))
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> ConnectionOrchestrator:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def build_orchestrator(
    manifest: Manifest,
    services: Services,
    storage: Optional[StorageProvider] = None,
    surface: Optional[ConsentSurface] = None,
    *,
    settings: Optional[ConnectionSettings] = None,
    http: Optional[httpx.AsyncClient] = None,
    on_change: Optional[SessionCallback] = None,
) -> ConnectionOrchestrator:
    """Create an orchestrator with file storage and a browser consent surface by default.

    The manifest's requirements are derived from *services*.
    """
    return ConnectionOrchestrator(
        manifest,
        services,
        storage if storage is not None else FileStorage(),
        surface if surface is not None else BrowserConsentSurface(),
        settings=settings,
        http=http,
        on_change=on_change,
    )


def orchestrator_from_config(
    config: GlobalConfig,
    *,
    storage: Optional[StorageProvider] = None,
    surface: Optional[ConsentSurface] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> ConnectionOrchestrator:
    """Create an orchestrator from a resolved :class:`~faktsflow.models.GlobalConfig`.

    Raises:
        ConfigError: If a configured service kind has no builder.
    """
    manifest = Manifest(
        identifier=config.manifest.identifier,
        version=config.manifest.version,
        scopes=list(config.manifest.scopes),
    )
    return build_orchestrator(
        manifest,
        definitions_from_config(config.services, config.connection),
        storage,
        surface,
        settings=config.connection,
        http=http,
    )
