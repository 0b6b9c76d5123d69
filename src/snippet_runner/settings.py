from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"
_ENVIRONMENTS = {"development", "staging", "production"}


def resolve_docker_host(docker_host: str | None) -> str:
    """Return `docker_host`, falling back to DOCKER_HOST and then the local socket.

    Example:
        ```python
        url = resolve_docker_host(None)
        ```
    """
    return docker_host or os.environ.get("DOCKER_HOST") or DEFAULT_DOCKER_HOST


def _default_settings_path() -> Path:
    """Return bundled default settings TOML path.

    Example:
        ```python
        path = _default_settings_path()
        ```
    """
    return Path(__file__).with_name("default_settings.toml")


def _read_settings_toml(path: Path) -> dict[str, Any]:
    """Read settings TOML and return the `[runner]` table (or the top level).

    Example:
        ```python
        raw = _read_settings_toml(Path("/etc/snippet-runner.toml"))
        ```
    """
    if not path.exists():
        raise ValueError(f"Settings file not found: {path}")
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    table = raw.get("runner", raw)
    if not isinstance(table, dict):
        raise ValueError("Settings config must be a TOML table")
    return table


def _command(value: Any) -> tuple[str, ...]:
    """Validate and normalize the container entry command.

    Example:
        ```python
        cmd = _command(["go", "run", "main.go"])
        ```
    """
    if isinstance(value, str):
        value = value.split()
    if not isinstance(value, (list, tuple)) or not value:
        raise ValueError("'command' must be a non-empty list of strings")
    if not all(isinstance(part, str) for part in value):
        raise ValueError("'command' must contain only strings")
    return tuple(value)


_DEFAULTS = _read_settings_toml(_default_settings_path())


@dataclass(frozen=True, slots=True)
class RunnerSettings:
    """External configuration consumed by the orchestrator and the API server.

    Example:
        ```python
        settings = RunnerSettings(image="python:3.12-alpine", command=("python", "main.py"), filename="main.py")
        ```
    """

    image: str = str(_DEFAULTS["image"])
    command: tuple[str, ...] = _command(_DEFAULTS["command"])
    workdir: str = str(_DEFAULTS["workdir"])
    filename: str = str(_DEFAULTS["filename"])
    file_mode: int = int(_DEFAULTS["file_mode"])
    tty: bool = bool(_DEFAULTS["tty"])
    network_disabled: bool = bool(_DEFAULTS["network_disabled"])
    timeout_seconds: float = float(_DEFAULTS["timeout_seconds"])
    cleanup_timeout_seconds: float = float(_DEFAULTS["cleanup_timeout_seconds"])
    max_output_kb: int = int(_DEFAULTS["max_output_kb"])
    docker_host: str | None = None
    api_version: str = str(_DEFAULTS["api_version"])
    host: str = str(_DEFAULTS["host"])
    port: int = int(_DEFAULTS["port"])
    env: str = str(_DEFAULTS["env"])

    def __post_init__(self) -> None:
        """Validate field values after dataclass initialization.

        Example:
            ```python
            RunnerSettings(timeout_seconds=0)  # raises ValueError
            ```
        """
        if not self.image.strip():
            raise ValueError("'image' must not be empty")
        if not self.workdir.startswith("/"):
            raise ValueError("'workdir' must be an absolute container path")
        if not self.filename or "/" in self.filename:
            raise ValueError("'filename' must be a plain file name")
        if not 0 <= self.file_mode <= 0o7777:
            raise ValueError("'file_mode' must be a permission mask")
        if self.timeout_seconds <= 0:
            raise ValueError("'timeout_seconds' must be positive")
        if self.cleanup_timeout_seconds <= 0:
            raise ValueError("'cleanup_timeout_seconds' must be positive")
        if self.max_output_kb < 0:
            raise ValueError("'max_output_kb' must be zero (unlimited) or positive")
        if self.env not in _ENVIRONMENTS:
            raise ValueError("env must be one of: development, staging, production")
        if not 0 < self.port < 65536:
            raise ValueError("'port' must be a valid TCP port")

    @property
    def resolved_docker_host(self) -> str:
        """Return the Docker endpoint, falling back to DOCKER_HOST and the local socket.

        Example:
            ```python
            url = RunnerSettings().resolved_docker_host
            ```
        """
        return resolve_docker_host(self.docker_host)

    @property
    def max_output_bytes(self) -> int | None:
        """Return the synchronous output cap in bytes, or None when unlimited.

        Example:
            ```python
            cap = RunnerSettings(max_output_kb=64).max_output_bytes
            ```
        """
        return self.max_output_kb * 1024 if self.max_output_kb else None

    @classmethod
    def from_file(cls, config_path: str | Path) -> "RunnerSettings":
        """Create settings from a TOML file, keeping defaults for absent keys.

        Example:
            ```python
            settings = RunnerSettings.from_file("/etc/snippet-runner.toml")
            ```
        """
        raw = _read_settings_toml(Path(config_path))
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(unknown)}")
        if "command" in raw:
            raw["command"] = _command(raw["command"])
        return cls(**raw)

    def with_overrides(self, **changes: Any) -> "RunnerSettings":
        """Return a copy with non-None overrides applied.

        Example:
            ```python
            settings = settings.with_overrides(port=8080, docker_host=None)
            ```
        """
        applied = {key: value for key, value in changes.items() if value is not None}
        if "command" in applied:
            applied["command"] = _command(applied["command"])
        return replace(self, **applied)
