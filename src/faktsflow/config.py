"""Where faktsflow keeps its files and how the effective settings are chosen.

Two kinds of state live on disk. User settings sit in ``config.json`` under
the config directory and may be overridden per working directory by a
``faktsflow.json`` file. Session records (endpoint, fakts, token) sit under
the data directory and are written by :mod:`faktsflow.storage`.

On Linux and the BSDs both directories honour ``XDG_CONFIG_HOME`` and
``XDG_DATA_HOME``. Elsewhere everything goes under ``~/.faktsflow``.

Layering is done by :func:`resolve_config`; every write goes through
:func:`atomic_write` so a crash never leaves a half-written file behind.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from faktsflow.exceptions import ConfigError
from faktsflow.models import GlobalConfig

_APP_NAME = "faktsflow"
_CONFIG_FILENAME = "config.json"
_PROJECT_CONFIG_FILENAME = "faktsflow.json"

ENV_URL = "FAKTSFLOW_URL"
ENV_VERIFY_SSL = "FAKTSFLOW_VERIFY_SSL"

_FALSE_VALUES = {"0", "false", "no", "off"}

# kind -> (XDG variable, default below $HOME, subdirectory of ~/.faktsflow)
_DIR_LAYOUT: dict[str, tuple[str, str, str]] = {
    "config": ("XDG_CONFIG_HOME", ".config", ""),
    "data": ("XDG_DATA_HOME", ".local/share", "data"),
}


# ---------------------------------------------------------------------------
# Directories
# ---------------------------------------------------------------------------


def _is_xdg_platform() -> bool:
    system = platform.system()
    return system == "Linux" or system.endswith("BSD")


def _resolve_dir(kind: str) -> Path:
    env_var, home_default, legacy_sub = _DIR_LAYOUT[kind]
    if _is_xdg_platform():
        root = os.environ.get(env_var) or str(Path.home() / home_default)
        path = Path(root) / _APP_NAME
    else:
        path = Path.home() / f".{_APP_NAME}"
        if legacy_sub:
            path = path / legacy_sub
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_config_dir() -> Path:
    """Directory holding ``config.json``. Created on first use."""
    return _resolve_dir("config")


def get_data_dir() -> Path:
    """Directory for runtime data such as session records and crash logs."""
    return _resolve_dir("data")


def get_session_dir() -> Path:
    """Directory holding the persisted session records."""
    path = get_data_dir() / "session"
    path.mkdir(parents=True, exist_ok=True)
    return path


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


def atomic_write(path: Path, data: str, mode: Optional[int] = None) -> None:
    """Replace *path* with *data* without ever exposing a partial file.

    The text goes to a sibling temp file which is fsynced and then renamed
    over the target. If anything fails the temp file is removed and the
    original is left untouched.

    Args:
        path: File to create or replace. Missing parents are created.
        data: New file content.
        mode: Optional permission bits, set before the content is written
            so that secrets are never world readable.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    handle, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}-", suffix=".part")
    try:
        if mode is not None:
            os.chmod(tmp_name, mode)
        with os.fdopen(handle, "w", encoding="utf-8") as stream:
            stream.write(data)
            stream.flush()
            os.fsync(stream.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def _read_json(path: Path, label: str) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Invalid {label} at {path}: {exc}") from exc


def load_global_config() -> GlobalConfig:
    """Read the user-wide ``config.json``.

    A missing file yields the defaults.

    Raises:
        ConfigError: The file is not JSON or does not match the schema.
    """
    path = get_config_dir() / _CONFIG_FILENAME
    if not path.is_file():
        return GlobalConfig()
    raw = _read_json(path, "global config")
    try:
        return GlobalConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid global config at {path}: {exc}") from exc


def save_global_config(config: GlobalConfig) -> None:
    """Write *config* to the user-wide ``config.json``."""
    payload = json.dumps(config.model_dump(mode="json"), indent=2)
    atomic_write(get_config_dir() / _CONFIG_FILENAME, payload + "\n")


def load_project_config() -> Optional[dict[str, Any]]:
    """Read ``faktsflow.json`` from the current directory, if there is one.

    Raises:
        ConfigError: The file exists but is not a JSON object.
    """
    path = Path.cwd() / _PROJECT_CONFIG_FILENAME
    if not path.is_file():
        return None
    raw = _read_json(path, "project config")
    if not isinstance(raw, dict):
        raise ConfigError(f"Project config at {path} must be a JSON object")
    return raw


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def _overlay(base: GlobalConfig, overrides: dict[str, Any]) -> GlobalConfig:
    # Sections such as "connection" are merged field by field.
    merged = base.model_dump(mode="json")
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            value = {**current, **value}
        merged[key] = value
    try:
        return GlobalConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def resolve_config(
    cli_url: Optional[str] = None,
    cli_format: Optional[str] = None,
) -> tuple[GlobalConfig, Optional[str]]:
    """Compute the settings a command should run with.

    Later sources win: defaults, then ``config.json``, then
    ``./faktsflow.json``, then ``FAKTSFLOW_URL`` / ``FAKTSFLOW_VERIFY_SSL``,
    then the ``--url`` and output flags.

    Returns:
        The effective config and the fakts URL to connect to, which is
        ``None`` when no source names one.
    """
    config = load_global_config()
    project = load_project_config()
    if project is not None:
        config = _overlay(config, project)

    verify = os.environ.get(ENV_VERIFY_SSL)
    if verify:
        enabled = verify.strip().lower() not in _FALSE_VALUES
        config = _overlay(config, {"connection": {"verify_ssl": enabled}})

    url = cli_url or os.environ.get(ENV_URL) or config.default_url
    if cli_format is not None:
        config.output.format = cli_format
    return config, url
