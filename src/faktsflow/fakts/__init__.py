"""Fakts handshake: discovery, device authorization, consent, challenge, claim."""

from faktsflow.fakts.challenge import challenge
from faktsflow.fakts.claim import claim
from faktsflow.fakts.consent import (
    ConsentHandle,
    ConsentSurface,
    build_configure_url,
    open_consent_surface,
)
from faktsflow.fakts.discovery import discover, normalize_url
from faktsflow.fakts.flow import ConsentHandshake, HandshakeState, flow
from faktsflow.fakts.start import start
from faktsflow.fakts.surfaces import BrowserConsentSurface, TerminalConsentSurface

__all__ = [
    "BrowserConsentSurface",
    "ConsentHandle",
    "ConsentHandshake",
    "ConsentSurface",
    "HandshakeState",
    "TerminalConsentSurface",
    "build_configure_url",
    "challenge",
    "claim",
    "discover",
    "flow",
    "normalize_url",
    "open_consent_surface",
    "start",
]
