"""Session commands -- connect to, inspect and leave a fakts ecosystem.

Registered on the root app by :mod:`faktsflow.app`::

    faktsflow discover https://go.arkitekt.live   # show the endpoint only
    faktsflow connect https://go.arkitekt.live    # full consent handshake
    faktsflow status --check                      # restore and probe services
    faktsflow reconnect                           # handshake again, same endpoint
    faktsflow disconnect                          # forget fakts and token

Every command resolves its settings through
:func:`~faktsflow.config.resolve_config` and persists the session with
:class:`~faktsflow.storage.FileStorage`.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import typer
from pydantic import ValidationError

from faktsflow.config import resolve_config
from faktsflow.exceptions import (
    FaktsflowError,
    NoPersistedEndpoint,
    RequiredServiceResolutionFailed,
)
from faktsflow.exit_codes import EXIT_INVALID_USAGE, EXIT_SESSION_ERROR
from faktsflow.fakts.consent import ConsentSurface
from faktsflow.fakts.discovery import discover
from faktsflow.fakts.surfaces import BrowserConsentSurface, TerminalConsentSurface
from faktsflow.models import EndpointDescriptor, GlobalConfig
from faktsflow.orchestrator import ConnectionOrchestrator, orchestrator_from_config
from faktsflow.output import error, info, print_record, print_table, success, suggest
from faktsflow.services.context import ConnectedContext
from faktsflow.storage import ENDPOINT_KEY, FAKTS_KEY, TOKEN_KEY, FileStorage
from faktsflow.transport import create_http_client


def build_cli_orchestrator(
    config: GlobalConfig, surface: Optional[ConsentSurface] = None
) -> ConnectionOrchestrator:
    """Create the orchestrator used by every session command."""
    return orchestrator_from_config(config, storage=FileStorage(), surface=surface)


def _surface(no_browser: bool) -> ConsentSurface:
    return TerminalConsentSurface() if no_browser else BrowserConsentSurface()


def _fail(exc: FaktsflowError) -> typer.Exit:
    error(str(exc))
    if isinstance(exc, NoPersistedEndpoint):
        suggest("Connect first: faktsflow connect <URL>")
    elif isinstance(exc, RequiredServiceResolutionFailed):
        suggest("Check that the service is running, then: faktsflow reconnect")
    return typer.Exit(code=exc.exit_code)


def _endpoint_record(endpoint: EndpointDescriptor) -> dict[str, Any]:
    return {
        "name": endpoint.name,
        "base_url": endpoint.base_url,
        "description": endpoint.description,
        "capabilities": endpoint.capabilities,
    }


def _print_context(context: ConnectedContext) -> None:
    rows = [
        [service.key, service.service, "available", service.resolved.base_url]
        for service in context.available_services
    ]
    rows.extend(
        [service.key, service.service, "unresolved", "-"]
        for service in context.unresolved_services
    )
    print_table(["key", "service", "status", "address"], rows, title="Services")


async def _with_orchestrator(orchestrator: ConnectionOrchestrator, operation: Any) -> Any:
    try:
        return await operation(orchestrator)
    finally:
        await orchestrator.aclose()


def discover_command(
    url: str = typer.Argument(help="Base URL of the ecosystem, e.g. go.arkitekt.live."),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Discovery timeout in seconds."
    ),
) -> None:
    """Discover the fakts endpoint behind URL without connecting."""
    config, _ = resolve_config()
    settings = config.connection

    async def _run() -> EndpointDescriptor:
        async with create_http_client(settings) as http:
            return await discover(
                url,
                timeout=timeout if timeout is not None else settings.discovery_timeout,
                http=http,
                routes=settings.routes,
            )

    try:
        endpoint = asyncio.run(_run())
    except FaktsflowError as exc:
        raise _fail(exc) from None
    print_record(_endpoint_record(endpoint), title="Endpoint")


def connect_command(
    url: Optional[str] = typer.Argument(
        None, help="Base URL of the ecosystem. Defaults to the configured URL."
    ),
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the authorization URL instead of opening a browser."
    ),
) -> None:
    """Connect to an ecosystem, asking for consent in the browser."""
    config, resolved_url = resolve_config(cli_url=url)
    if not resolved_url:
        error("No URL given and no default URL configured.")
        suggest("Pass one: faktsflow connect https://go.arkitekt.live")
        raise typer.Exit(code=EXIT_INVALID_USAGE)

    orchestrator = build_cli_orchestrator(config, _surface(no_browser))
    info(f"Connecting to {resolved_url}...")
    try:
        context = asyncio.run(
            _with_orchestrator(orchestrator, lambda o: o.connect_url(resolved_url))
        )
    except FaktsflowError as exc:
        raise _fail(exc) from None

    _print_context(context)
    success("Connected.")


def reconnect_command(
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the authorization URL instead of opening a browser."
    ),
) -> None:
    """Run the consent handshake again against the stored endpoint."""
    config, _ = resolve_config()
    orchestrator = build_cli_orchestrator(config, _surface(no_browser))
    try:
        context = asyncio.run(_with_orchestrator(orchestrator, lambda o: o.reconnect()))
    except FaktsflowError as exc:
        raise _fail(exc) from None

    _print_context(context)
    success("Reconnected.")


def disconnect_command() -> None:
    """Forget the stored fakts and token. The endpoint is kept for reconnect."""
    config, _ = resolve_config()
    orchestrator = build_cli_orchestrator(config)
    try:
        asyncio.run(_with_orchestrator(orchestrator, lambda o: o.disconnect()))
    except FaktsflowError as exc:
        raise _fail(exc) from None
    success("Disconnected.")


def status_command(
    check: bool = typer.Option(
        False, "--check", help="Restore the session and probe every service."
    ),
) -> None:
    """Show the stored session and, with --check, which services are reachable."""
    config, _ = resolve_config()
    storage = FileStorage()

    async def _stored() -> dict[str, Optional[str]]:
        return {key: await storage.get(key) for key in (ENDPOINT_KEY, FAKTS_KEY, TOKEN_KEY)}

    records = asyncio.run(_stored())
    endpoint: Optional[EndpointDescriptor] = None
    if records[ENDPOINT_KEY]:
        try:
            endpoint = EndpointDescriptor.model_validate_json(records[ENDPOINT_KEY])
        except ValidationError:
            endpoint = None

    print_record(
        {
            "endpoint": endpoint.base_url if endpoint else None,
            "name": endpoint.name if endpoint else None,
            "fakts": "stored" if records[FAKTS_KEY] else "missing",
            "token": "stored" if records[TOKEN_KEY] else "missing",
            "services": [service.key for service in config.services],
        },
        title="Session",
    )

    if not check:
        return
    if not (records[FAKTS_KEY] and records[TOKEN_KEY]):
        info("No stored session to check.")
        suggest("Connect first: faktsflow connect <URL>")
        raise typer.Exit(code=EXIT_SESSION_ERROR)

    orchestrator = build_cli_orchestrator(config)
    context = asyncio.run(_with_orchestrator(orchestrator, lambda o: o.open()))
    if context is None:
        error("The stored session could not be restored and was cleared.")
        suggest("Run: faktsflow reconnect")
        raise typer.Exit(code=EXIT_SESSION_ERROR)
    _print_context(context)
