"""Built-in consent surfaces.

* :class:`BrowserConsentSurface` opens the configuration URL in the system
  browser.
* :class:`TerminalConsentSurface` prints the URL to stderr for headless
  sessions (SSH, containers).

Both return handles whose ``close`` is safe to call any number of times;
:class:`~faktsflow.fakts.consent.ConsentHandle` still guarantees it is only
called once.
"""

from __future__ import annotations

import logging
import sys
import threading
import webbrowser
from typing import IO, Optional

logger = logging.getLogger(__name__)


class _SurfaceHandle:
    def __init__(self, url: str, stream: Optional[IO[str]] = None) -> None:
        self.url = url
        self._stream = stream

    def close(self) -> None:
        logger.debug("Consent surface for %s closed", self.url)
        if self._stream is not None:
            self._stream.write("Authorization finished.\n")
            self._stream.flush()


class BrowserConsentSurface:
    """Open the configuration URL in the default web browser.

    The browser is launched on a daemon thread so a slow or hanging launcher
    never blocks the event loop. Browser tabs cannot be closed from here;
    ``close`` only records that the handshake is over.

    Args:
        new: Passed to :func:`webbrowser.open` (``2`` opens a new tab).
    """

    def __init__(self, new: int = 2) -> None:
        self._new = new

    def open(self, url: str) -> _SurfaceHandle:
        thread = threading.Thread(
            target=self._launch, args=(url,), name="faktsflow-browser", daemon=True
        )
        thread.start()
        return _SurfaceHandle(url)

    def _launch(self, url: str) -> None:
        try:
            opened = webbrowser.open(url, new=self._new)
        except webbrowser.Error as exc:
            logger.warning("Could not launch a browser for %s: %s", url, exc)
            return
        if not opened:
            logger.warning("No browser available; visit %s manually", url)


class TerminalConsentSurface:
    """Print the configuration URL for the user to open manually.

    Args:
        stream: Where to write. Defaults to ``sys.stderr`` so stdout stays
            clean for ``--json`` output.
    """

    def __init__(self, stream: Optional[IO[str]] = None) -> None:
        self._stream = stream

    def open(self, url: str) -> _SurfaceHandle:
        stream = self._stream or sys.stderr
        stream.write("\n")
        stream.write(f"Open this URL to authorize: {url}\n")
        stream.write("\nWaiting for authorization...\n")
        stream.flush()
        return _SurfaceHandle(url, stream=stream)
