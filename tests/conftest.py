"""Fixtures shared by every test module.

``isolated_config`` points all on-disk state at ``tmp_path``. The remaining
fixtures hand out the scripted fakts ecosystem from :mod:`fakes` and a
Typer ``CliRunner``.
"""

from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Iterator

import httpx
import pytest
from typer.testing import CliRunner

from fakes import BASE_URL, FakeFaktsServer, RecordingSurface
from faktsflow.models import EndpointDescriptor, Manifest
from faktsflow.output import reset_output


@pytest.fixture(autouse=True)
def _fresh_output() -> Iterator[None]:
    """Forget the installed OutputManager once a test is done.

    A manager holds on to whatever ``sys.stdout`` was when it was built,
    and CliRunner replaces the streams on each invoke.
    """
    yield
    reset_output()


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep config files and session records inside ``tmp_path``.

    Both XDG variables point below ``tmp_path``, the FAKTSFLOW_* variables
    are removed and ``tmp_path`` becomes the working directory so that no
    stray ``faktsflow.json`` is picked up.
    """
    monkeypatch.setattr("faktsflow.config._is_xdg_platform", lambda: True)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.delenv("FAKTSFLOW_URL", raising=False)
    monkeypatch.delenv("FAKTSFLOW_VERIFY_SSL", raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


# ---------------------------------------------------------------------------
# Fakts ecosystem fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def server() -> FakeFaktsServer:
    return FakeFaktsServer()


@pytest.fixture
async def http(server: FakeFaktsServer) -> AsyncIterator[httpx.AsyncClient]:
    async with server.client() as client:
        yield client


@pytest.fixture
def surface() -> RecordingSurface:
    return RecordingSurface()


@pytest.fixture
def endpoint() -> EndpointDescriptor:
    return EndpointDescriptor(base_url=BASE_URL, name="example")


@pytest.fixture
def manifest() -> Manifest:
    return Manifest(identifier="org.example.app", version="1.0.0", scopes=["openid"])
