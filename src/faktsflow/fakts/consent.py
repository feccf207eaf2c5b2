"""Consent surface capability -- trigger the external approval step.

Opening the surface only *triggers* the user's interaction; its outcome is
observed separately by polling the challenge route
(:mod:`faktsflow.fakts.challenge`). The two concerns share nothing but the
device code.

:func:`open_consent_surface` wraps whatever the surface returns in a
:class:`ConsentHandle` whose :meth:`~ConsentHandle.close` runs the
underlying ``close`` at most once and never raises.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Optional, Protocol
from urllib.parse import urlencode

from faktsflow.exceptions import ConsentSurfaceUnavailable
from faktsflow.models import EndpointDescriptor, FaktsRoutes

logger = logging.getLogger(__name__)


class Closable(Protocol):
    """Handle returned by a consent surface. ``close`` may be sync or async."""

    def close(self) -> Any: ...


class ConsentSurface(Protocol):
    """Something that can show a configuration URL to the user."""

    def open(self, url: str) -> Closable: ...


def build_configure_url(
    endpoint: EndpointDescriptor, code: str, routes: Optional[FaktsRoutes] = None
) -> str:
    """Return the URL the user visits to approve *code*."""
    routes = routes or FaktsRoutes()
    query = urlencode({"device_code": code, "grant": "device_code"})
    return f"{endpoint.base_url}{routes.configure}?{query}"


class ConsentHandle:
    """Close-once wrapper around the closable returned by a surface.

    Args:
        closable: The object returned by :meth:`ConsentSurface.open`.
        url: The URL that was opened, for diagnostics.
    """

    def __init__(self, closable: Closable, url: str) -> None:
        self._closable = closable
        self.url = url
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Close the surface. Later calls are no-ops; errors are logged only."""
        if self._closed:
            return
        self._closed = True
        try:
            result = self._closable.close()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.error("Closing the consent surface for %s failed", self.url, exc_info=True)


def open_consent_surface(
    endpoint: EndpointDescriptor,
    code: str,
    surface: Optional[ConsentSurface],
    routes: Optional[FaktsRoutes] = None,
) -> ConsentHandle:
    """Open *surface* on the configuration URL for *code*.

    Args:
        endpoint: The discovered endpoint.
        code: Device code issued by the start route.
        surface: The consent surface capability.
        routes: Route names; ``routes.configure`` is used.

    Returns:
        A :class:`ConsentHandle` that must be closed by the caller.

    Raises:
        ConsentSurfaceUnavailable: If *surface* is ``None``, fails to open,
            or returns no handle.
    """
    if surface is None:
        raise ConsentSurfaceUnavailable("No consent surface is configured")

    url = build_configure_url(endpoint, code, routes)
    logger.debug("Opening consent surface at %s", url)
    try:
        closable = surface.open(url)
    except Exception as exc:
        raise ConsentSurfaceUnavailable(f"Could not open consent surface: {exc}") from exc
    if closable is None:
        raise ConsentSurfaceUnavailable("Consent surface did not return a handle")
    return ConsentHandle(closable, url)
