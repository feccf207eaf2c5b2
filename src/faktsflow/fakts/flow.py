"""Consent handshake -- start, open surface, poll, close, claim.

:class:`ConsentHandshake` runs the device-code handshake as an explicit
state machine::

    IDLE -> SURFACE_OPEN -> POLLING -> SURFACE_CLOSED -> CLAIMING -> CLAIMED
                                              |
                                              +-> TIMED_OUT | REJECTED | ERRORED

The consent surface is closed exactly once, before any outcome is reported
to the caller, whether polling succeeded, timed out, was rejected, was
cancelled or raised anything else.

Example::

    handshake = ConsentHandshake(endpoint, manifest, http=client, surface=surface)
    fakts = await handshake.run()
    assert handshake.state is HandshakeState.CLAIMED
"""

from __future__ import annotations

import enum
import logging
from typing import Callable, Optional

import httpx

from faktsflow.cancel import CancelToken, ensure_token
from faktsflow.exceptions import ConsentRejected, ConsentTimeout
from faktsflow.fakts.challenge import challenge
from faktsflow.fakts.claim import claim
from faktsflow.fakts.consent import ConsentHandle, ConsentSurface, open_consent_surface
from faktsflow.fakts.start import start
from faktsflow.models import ActiveFakts, ConnectionSettings, EndpointDescriptor, Manifest

logger = logging.getLogger(__name__)


class HandshakeState(str, enum.Enum):
    """States of a single consent handshake."""

    IDLE = "idle"
    SURFACE_OPEN = "surface_open"
    POLLING = "polling"
    SURFACE_CLOSED = "surface_closed"
    CLAIMING = "claiming"
    CLAIMED = "claimed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    ERRORED = "errored"


TERMINAL_STATES = frozenset(
    {
        HandshakeState.CLAIMED,
        HandshakeState.TIMED_OUT,
        HandshakeState.REJECTED,
        HandshakeState.ERRORED,
    }
)

StateCallback = Callable[[HandshakeState], None]


class ConsentHandshake:
    """One device-code handshake against a discovered endpoint.

    A handshake instance is single-use: its device code is bound to exactly
    one run.

    Args:
        endpoint: The discovered endpoint.
        manifest: Manifest of the connecting application.
        http: Shared HTTP client.
        surface: Consent surface capability.
        settings: Timeouts, poll budget and route names.
        cancel: Token threaded through every request.
        on_state: Called with every state the handshake enters.
    """

    def __init__(
        self,
        endpoint: EndpointDescriptor,
        manifest: Manifest,
        *,
        http: httpx.AsyncClient,
        surface: Optional[ConsentSurface],
        settings: Optional[ConnectionSettings] = None,
        cancel: Optional[CancelToken] = None,
        on_state: Optional[StateCallback] = None,
    ) -> None:
        self._endpoint = endpoint
        self._manifest = manifest
        self._http = http
        self._surface = surface
        self._settings = settings or ConnectionSettings()
        self._cancel = ensure_token(cancel)
        self._on_state = on_state
        self.state = HandshakeState.IDLE
        self.history: list[HandshakeState] = [HandshakeState.IDLE]
        self.device_code: Optional[str] = None

    def _enter(self, state: HandshakeState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("Consent handshake -> %s", state.value)
        if self._on_state is not None:
            self._on_state(state)

    async def run(self) -> ActiveFakts:
        """Run the handshake to completion.

        Returns:
            The claimed :class:`~faktsflow.models.ActiveFakts`.

        Raises:
            AuthorizationStartFailed: If no device code was issued.
            ConsentSurfaceUnavailable: If the surface could not be opened.
            ConsentTimeout: If the poll budget ran out.
            ConsentRejected: If the user denied the request.
            ClaimFailed: If the claim was refused or invalid.
            Cancelled: If the cancel token fired.
            RuntimeError: If the handshake was already run.
        """
        if self.state is not HandshakeState.IDLE:
            raise RuntimeError("A consent handshake can only be run once")

        settings = self._settings
        try:
            self.device_code = await start(
                self._endpoint,
                self._manifest,
                http=self._http,
                expiration_time=settings.expiration_time,
                cancel=self._cancel,
                timeout=settings.request_timeout,
                routes=settings.routes,
            )
            handle = open_consent_surface(
                self._endpoint, self.device_code, self._surface, settings.routes
            )
        except BaseException:
            self._enter(HandshakeState.ERRORED)
            raise

        issued = await self._poll(handle, self.device_code)

        self._enter(HandshakeState.CLAIMING)
        try:
            fakts = await claim(
                self._endpoint,
                issued,
                http=self._http,
                cancel=self._cancel,
                timeout=settings.request_timeout,
                routes=settings.routes,
            )
        except BaseException:
            self._enter(HandshakeState.ERRORED)
            raise

        self._enter(HandshakeState.CLAIMED)
        return fakts

    async def _poll(self, handle: ConsentHandle, code: str) -> str:
        settings = self._settings
        outcome = HandshakeState.ERRORED
        try:
            self._enter(HandshakeState.SURFACE_OPEN)
            self._enter(HandshakeState.POLLING)
            issued = await challenge(
                self._endpoint,
                code,
                http=self._http,
                challenge_timeout=settings.challenge_timeout,
                max_retries=settings.max_retries,
                poll_interval=settings.poll_interval,
                cancel=self._cancel,
                routes=settings.routes,
            )
            outcome = HandshakeState.SURFACE_CLOSED
            return issued
        except ConsentTimeout:
            outcome = HandshakeState.TIMED_OUT
            raise
        except ConsentRejected:
            outcome = HandshakeState.REJECTED
            raise
        finally:
            await handle.close()
            self._enter(HandshakeState.SURFACE_CLOSED)
            if outcome is not HandshakeState.SURFACE_CLOSED:
                self._enter(outcome)


async def flow(
    endpoint: EndpointDescriptor,
    manifest: Manifest,
    *,
    http: httpx.AsyncClient,
    surface: Optional[ConsentSurface],
    settings: Optional[ConnectionSettings] = None,
    cancel: Optional[CancelToken] = None,
    on_state: Optional[StateCallback] = None,
) -> ActiveFakts:
    """Run a complete consent handshake and return the claimed fakts.

    Shortcut for ``await ConsentHandshake(...).run()``; see
    :class:`ConsentHandshake` for arguments and errors.
    """
    handshake = ConsentHandshake(
        endpoint,
        manifest,
        http=http,
        surface=surface,
        settings=settings,
        cancel=cancel,
        on_state=on_state,
    )
    return await handshake.run()
