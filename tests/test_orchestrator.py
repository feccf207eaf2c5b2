"""Tests for the connection orchestrator and its persistence policy."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import httpx
import pytest

from fakes import (
    BASE_URL,
    FakeFaktsServer,
    RecordingStorage,
    RecordingSurface,
    fast_settings,
    make_fakts,
)
from faktsflow.cancel import CancelToken
from faktsflow.exceptions import (
    ConsentTimeout,
    DiscoveryUnreachable,
    InvalidUsageError,
    NoPersistedEndpoint,
    RequiredServiceResolutionFailed,
    ServiceNotAvailable,
    SessionValidationFailed,
    TokenExchangeFailed,
)
from faktsflow.models import EndpointDescriptor, GlobalConfig, Manifest
from faktsflow.orchestrator import (
    ConnectionOrchestrator,
    ConnectionStage,
    Session,
    SessionState,
    orchestrator_from_config,
)
from faktsflow.services import GraphQLService, ServiceDefinition
from faktsflow.storage import ENDPOINT_KEY, FAKTS_KEY, TOKEN_KEY, FileStorage, MemoryStorage


class StubClient:
    def __init__(self, alias: Any) -> None:
        self.alias = alias
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


def stub_builder(**kwargs: Any) -> StubClient:
    return StubClient(kwargs["alias"])


SERVICES = [
    ServiceDefinition("lok", "live.arkitekt.lok", stub_builder),
    ServiceDefinition("mikro", "live.arkitekt.mikro", stub_builder),
    ServiceDefinition("kabinet", "live.arkitekt.kabinet", stub_builder, optional=True),
]


@pytest.fixture
def storage() -> RecordingStorage:
    return RecordingStorage()


@pytest.fixture
def changes() -> list[Session]:
    return []


@pytest.fixture
def orchestrator(
    http: httpx.AsyncClient,
    manifest: Manifest,
    storage: RecordingStorage,
    surface: RecordingSurface,
    changes: list[Session],
) -> ConnectionOrchestrator:
    return ConnectionOrchestrator(
        manifest,
        SERVICES,
        storage,
        surface,
        settings=fast_settings(max_retries=2),
        http=http,
        on_change=changes.append,
    )


def _seed(storage: MemoryStorage, *, endpoint: bool = True, fakts: Optional[str] = None) -> None:
    if endpoint:
        storage.records[ENDPOINT_KEY] = EndpointDescriptor(base_url=BASE_URL).model_dump_json()
    storage.records[FAKTS_KEY] = fakts if fakts is not None else json.dumps(make_fakts())
    storage.records[TOKEN_KEY] = json.dumps({"access_token": "stored-token"})


def _handshake_requests(server: FakeFaktsServer) -> int:
    return sum(
        server.count(f"{BASE_URL}{route}") for route in ("start/", "challenge/", "claim/")
    )


# -------------------------------------------------------------------------
# connect
# -------------------------------------------------------------------------


class TestConnect:
    async def test_connects_and_persists_in_order(
        self,
        orchestrator: ConnectionOrchestrator,
        endpoint: EndpointDescriptor,
        storage: RecordingStorage,
        surface: RecordingSurface,
    ) -> None:
        context = await orchestrator.connect(endpoint)

        assert orchestrator.session.state is SessionState.CONNECTED
        assert orchestrator.context is context
        assert list(context.clients) == ["lok", "mikro", "kabinet"]
        assert orchestrator.token is not None and orchestrator.token.access_token == "access-1"
        assert storage.log == [("set", ENDPOINT_KEY), ("set", FAKTS_KEY), ("set", TOKEN_KEY)]
        assert json.loads(storage.records[FAKTS_KEY])["self"]["deployment_name"] == "example"
        assert surface.handles[0].close_calls == 1

    async def test_start_carries_derived_requirements(
        self,
        orchestrator: ConnectionOrchestrator,
        server: FakeFaktsServer,
        endpoint: EndpointDescriptor,
    ) -> None:
        await orchestrator.connect(endpoint)
        start_request = next(r for r in server.requests if str(r.url) == f"{BASE_URL}start/")
        requirements = json.loads(start_request.content)["manifest"]["requirements"]
        assert [(r["key"], r["optional"]) for r in requirements] == [
            ("lok", False),
            ("mikro", False),
            ("kabinet", True),
        ]

    async def test_connect_url_reports_every_stage(
        self, orchestrator: ConnectionOrchestrator, changes: list[Session]
    ) -> None:
        await orchestrator.connect_url("https://fakts.example.org")

        stages = [s.stage for s in changes if s.stage is not None]
        assert stages == [
            ConnectionStage.DISCOVERING,
            ConnectionStage.AUTHORIZING,
            ConnectionStage.AWAITING_CONSENT,
            ConnectionStage.CLAIMING,
            ConnectionStage.LOGGING_IN,
            ConnectionStage.RESOLVING_SERVICES,
        ]
        assert changes[-1].connected
        assert changes[-1].endpoint is not None
        assert changes[-1].endpoint.base_url == BASE_URL

    async def test_reconnecting_drops_previous_context(
        self, orchestrator: ConnectionOrchestrator, endpoint: EndpointDescriptor
    ) -> None:
        first = await orchestrator.connect(endpoint)
        second = await orchestrator.connect(endpoint)
        assert first is not second
        assert all(client.closed for client in first.clients.values())
        assert not any(client.closed for client in second.clients.values())

    async def test_optional_service_unavailable(
        self,
        orchestrator: ConnectionOrchestrator,
        server: FakeFaktsServer,
        endpoint: EndpointDescriptor,
    ) -> None:
        server.unreachable.add("kabinet.example.org")
        await orchestrator.connect(endpoint)

        assert [u.key for u in orchestrator.unresolved_services] == ["kabinet"]
        assert [a.key for a in orchestrator.available_services] == ["lok", "mikro"]
        assert orchestrator.potential_service("kabinet") is None
        assert isinstance(orchestrator.service("mikro"), StubClient)
        with pytest.raises(ServiceNotAvailable):
            orchestrator.service("kabinet")


class TestConnectFailures:
    async def test_empty_url_is_rejected(
        self, orchestrator: ConnectionOrchestrator, storage: RecordingStorage
    ) -> None:
        with pytest.raises(InvalidUsageError):
            await orchestrator.connect_url("")
        assert storage.log == []
        assert orchestrator.session.state is SessionState.DISCONNECTED

    async def test_discovery_failure(
        self,
        orchestrator: ConnectionOrchestrator,
        server: FakeFaktsServer,
        storage: RecordingStorage,
    ) -> None:
        server.discovery_hangs = True
        with pytest.raises(DiscoveryUnreachable) as excinfo:
            await orchestrator.connect_url("https://fakts.example.org")
        assert excinfo.value.stage == "discovering"
        assert storage.log == []
        assert orchestrator.session == Session()

    async def test_consent_timeout_keeps_endpoint(
        self,
        orchestrator: ConnectionOrchestrator,
        server: FakeFaktsServer,
        endpoint: EndpointDescriptor,
        storage: RecordingStorage,
    ) -> None:
        server.challenge_script = [{"status": "pending"}]
        with pytest.raises(ConsentTimeout) as excinfo:
            await orchestrator.connect(endpoint)

        assert excinfo.value.stage == "awaiting_consent"
        assert str(excinfo.value).startswith("[awaiting_consent]")
        assert storage.log == [("set", ENDPOINT_KEY)]
        assert orchestrator.session.state is SessionState.DISCONNECTED
        assert orchestrator.session.endpoint == endpoint

    async def test_login_failure_keeps_fakts(
        self,
        orchestrator: ConnectionOrchestrator,
        server: FakeFaktsServer,
        endpoint: EndpointDescriptor,
        storage: RecordingStorage,
    ) -> None:
        server.token_status = 401
        with pytest.raises(TokenExchangeFailed) as excinfo:
            await orchestrator.connect(endpoint)

        assert excinfo.value.stage == "logging_in"
        assert storage.log == [("set", ENDPOINT_KEY), ("set", FAKTS_KEY)]
        assert orchestrator.context is None

    async def test_required_service_failure(
        self,
        orchestrator: ConnectionOrchestrator,
        server: FakeFaktsServer,
        endpoint: EndpointDescriptor,
        storage: RecordingStorage,
    ) -> None:
        server.unreachable.add("mikro.example.org")
        with pytest.raises(RequiredServiceResolutionFailed) as excinfo:
            await orchestrator.connect(endpoint)

        assert excinfo.value.stage == "resolving_services"
        assert excinfo.value.key == "mikro"
        assert set(storage.records) == {ENDPOINT_KEY, FAKTS_KEY, TOKEN_KEY}
        assert orchestrator.session.state is SessionState.DISCONNECTED

    async def test_failing_listener_still_closes_surface(
        self,
        http: httpx.AsyncClient,
        manifest: Manifest,
        endpoint: EndpointDescriptor,
        surface: RecordingSurface,
    ) -> None:
        def on_change(session: Session) -> None:
            if session.stage is ConnectionStage.AWAITING_CONSENT:
                raise RuntimeError("listener broke")

        orchestrator = ConnectionOrchestrator(
            manifest,
            SERVICES,
            MemoryStorage(),
            surface,
            settings=fast_settings(),
            http=http,
            on_change=on_change,
        )
        with pytest.raises(RuntimeError, match="listener broke"):
            await orchestrator.connect(endpoint)

        assert surface.handles[0].close_calls == 1
        assert orchestrator.session.state is SessionState.DISCONNECTED


# -------------------------------------------------------------------------
# disconnect / reconnect
# -------------------------------------------------------------------------


class TestDisconnect:
    async def test_forgets_fakts_and_token(
        self,
        orchestrator: ConnectionOrchestrator,
        endpoint: EndpointDescriptor,
        storage: RecordingStorage,
    ) -> None:
        context = await orchestrator.connect(endpoint)
        await orchestrator.disconnect()

        assert orchestrator.session.state is SessionState.DISCONNECTED
        assert orchestrator.context is None
        assert set(storage.records) == {ENDPOINT_KEY}
        assert all(client.closed for client in context.clients.values())

    async def test_idempotent(
        self, orchestrator: ConnectionOrchestrator, changes: list[Session]
    ) -> None:
        await orchestrator.disconnect()
        await orchestrator.disconnect()
        assert orchestrator.session.state is SessionState.DISCONNECTED
        assert changes == []


class TestReconnect:
    async def test_without_stored_endpoint(self, orchestrator: ConnectionOrchestrator) -> None:
        with pytest.raises(NoPersistedEndpoint):
            await orchestrator.reconnect()

    async def test_invalid_stored_endpoint(
        self, orchestrator: ConnectionOrchestrator, storage: RecordingStorage
    ) -> None:
        storage.records[ENDPOINT_KEY] = '{"base_url": 42}'
        with pytest.raises(SessionValidationFailed) as excinfo:
            await orchestrator.reconnect()
        assert excinfo.value.record == ENDPOINT_KEY

    async def test_runs_handshake_against_stored_endpoint(
        self,
        orchestrator: ConnectionOrchestrator,
        server: FakeFaktsServer,
        storage: RecordingStorage,
        changes: list[Session],
    ) -> None:
        _seed(storage)
        context = await orchestrator.reconnect()

        assert context.token.access_token == "access-1"
        assert not any(".well-known" in path for path in server.paths())
        assert server.count(f"{BASE_URL}start/") == 1
        assert changes[0].state is SessionState.RECONNECTING


class TestTryReconnect:
    async def test_nothing_persisted(
        self, orchestrator: ConnectionOrchestrator, server: FakeFaktsServer
    ) -> None:
        assert await orchestrator.try_reconnect() is None
        assert server.requests == []
        assert orchestrator.session.state is SessionState.DISCONNECTED

    async def test_restores_without_handshake(
        self,
        orchestrator: ConnectionOrchestrator,
        server: FakeFaktsServer,
        storage: RecordingStorage,
    ) -> None:
        _seed(storage)
        context = await orchestrator.try_reconnect()

        assert context is not None
        assert context.token.access_token == "stored-token"
        assert orchestrator.session.state is SessionState.CONNECTED
        assert _handshake_requests(server) == 0

    @pytest.mark.parametrize(
        "fakts",
        [
            json.dumps({"instances": {}}),
            json.dumps({**make_fakts(), "auth": {"client_id": 3}}),
            "{not json",
        ],
    )
    async def test_invalid_fakts_erases_session(
        self,
        orchestrator: ConnectionOrchestrator,
        storage: RecordingStorage,
        fakts: str,
    ) -> None:
        _seed(storage, fakts=fakts)
        assert await orchestrator.try_reconnect() is None

        assert set(storage.records) == {ENDPOINT_KEY}
        assert orchestrator.session.state is SessionState.DISCONNECTED

    async def test_build_failure_erases_session(
        self,
        orchestrator: ConnectionOrchestrator,
        server: FakeFaktsServer,
        storage: RecordingStorage,
    ) -> None:
        _seed(storage)
        server.unreachable.update({"lok.internal", "lok.example.org"})

        assert await orchestrator.try_reconnect() is None
        assert set(storage.records) == {ENDPOINT_KEY}
        assert orchestrator.session.state is SessionState.DISCONNECTED

    async def test_cancel_keeps_session(
        self, orchestrator: ConnectionOrchestrator, storage: RecordingStorage
    ) -> None:
        _seed(storage)
        token = CancelToken()
        token.cancel()

        assert await orchestrator.try_reconnect(token) is None
        assert set(storage.records) == {ENDPOINT_KEY, FAKTS_KEY, TOKEN_KEY}

    async def test_unreadable_storage_is_absorbed(
        self, http: httpx.AsyncClient, manifest: Manifest, surface: RecordingSurface
    ) -> None:
        class UnreadableStorage(RecordingStorage):
            async def get(self, key: str) -> Optional[str]:
                raise PermissionError(f"denied: {key}")

        storage = UnreadableStorage()
        _seed(storage)
        orchestrator = ConnectionOrchestrator(
            manifest, SERVICES, storage, surface, settings=fast_settings(), http=http
        )

        assert await orchestrator.try_reconnect() is None
        assert orchestrator.session.state is SessionState.DISCONNECTED
        assert storage.log == [("remove", FAKTS_KEY), ("remove", TOKEN_KEY)]

    async def test_undecodable_file_record_erases_session(
        self,
        tmp_path: Path,
        http: httpx.AsyncClient,
        manifest: Manifest,
        surface: RecordingSurface,
    ) -> None:
        storage = FileStorage(tmp_path)
        storage.path_for(FAKTS_KEY).write_bytes(b"\xff\xfe\x00garbage")
        await storage.set(TOKEN_KEY, json.dumps({"access_token": "stored-token"}))
        orchestrator = ConnectionOrchestrator(
            manifest, SERVICES, storage, surface, settings=fast_settings(), http=http
        )

        async with orchestrator:
            assert orchestrator.context is None
        assert orchestrator.session.state is SessionState.DISCONNECTED
        assert not storage.path_for(FAKTS_KEY).exists()
        assert not storage.path_for(TOKEN_KEY).exists()


class TestLifecycle:
    async def test_open_restores_once(
        self, orchestrator: ConnectionOrchestrator, storage: RecordingStorage
    ) -> None:
        _seed(storage)
        first = await orchestrator.open()
        storage.records.clear()
        assert await orchestrator.open() is first

    async def test_context_manager_closes_clients(
        self, orchestrator: ConnectionOrchestrator, storage: RecordingStorage
    ) -> None:
        _seed(storage)
        async with orchestrator as entered:
            context = entered.context
            assert context is not None
        assert orchestrator.context is None
        assert all(client.closed for client in context.clients.values())
        assert FAKTS_KEY in storage.records

    async def test_manifest_is_derived(self, orchestrator: ConnectionOrchestrator) -> None:
        assert [r.key for r in orchestrator.manifest.requirements] == ["lok", "mikro", "kabinet"]
        assert list(orchestrator.services) == ["lok", "mikro", "kabinet"]


class TestFromConfig:
    async def test_builds_configured_services(
        self, server: FakeFaktsServer, http: httpx.AsyncClient, endpoint: EndpointDescriptor
    ) -> None:
        config = GlobalConfig()
        config.connection.max_retries = 2
        config.connection.poll_interval = 0.0
        orchestrator = orchestrator_from_config(
            config, storage=MemoryStorage(), surface=RecordingSurface(), http=http
        )

        assert orchestrator.manifest.identifier == "live.arkitekt.faktsflow"
        context = await orchestrator.connect(endpoint)
        assert isinstance(context.service("mikro"), GraphQLService)
        assert context.service("mikro").base_url == "https://mikro.example.org/mikro/"
        await orchestrator.aclose()
