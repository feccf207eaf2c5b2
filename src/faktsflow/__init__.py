"""faktsflow -- bootstrap sessions against a fakts service ecosystem.

This package turns a human-supplied base URL into a fully connected session:
it discovers the ecosystem's fakts endpoint, runs a device-code consent
handshake, exchanges the claimed configuration for an access token, and
builds clients for every declared service, tolerating failures of optional
services. The resulting session is persisted so that the next process start
can reconnect without user interaction.

Typical usage::

    from faktsflow import build_orchestrator
    from faktsflow.storage import FileStorage

    orchestrator = build_orchestrator(manifest, services, FileStorage())
    async with orchestrator:
        if orchestrator.context is None:
            await orchestrator.connect_url("https://go.arkitekt.live")

Modules:
    models: Pydantic schemas for endpoints, manifests, fakts and tokens.
    orchestrator: The connection state machine and persistence policy.
    fakts: Discovery and the device-code consent handshake.
    services: Service declarations, builders and the resolution fan-out.
    app: Typer CLI entry point.
"""

__version__ = "0.3.0"

from faktsflow.orchestrator import ConnectionOrchestrator, build_orchestrator  # noqa: E402

__all__ = ["ConnectionOrchestrator", "build_orchestrator", "__version__"]
