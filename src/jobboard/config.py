from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass(slots=True)
class ServerConfig:
    base_url: str
    run_path: str = "/api/jobs/run"
    jobs_path: str = "/api/jobs"
    connect_timeout_seconds: float = 10.0


@dataclass(slots=True)
class PathsConfig:
    db: Path
    log: Path


@dataclass(slots=True)
class InboxConfig:
    max_results: int = 50


@dataclass(slots=True)
class StartupConfig:
    stale_minutes: int = 30


@dataclass(slots=True)
class AppConfig:
    server: ServerConfig
    paths: PathsConfig
    inbox: InboxConfig = field(default_factory=InboxConfig)
    startup: StartupConfig = field(default_factory=StartupConfig)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _mapping(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _endpoint_path(value: object, key: str) -> str:
    text = str(value)
    if not text.startswith("/"):
        raise ValueError(f"`server.{key}` must start with `/`")
    return text


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    server_raw = _require(raw, "server", "root")
    paths_raw = _require(raw, "paths", "root")
    if not isinstance(server_raw, dict):
        raise ValueError("`server` must be a mapping")
    if not isinstance(paths_raw, dict):
        raise ValueError("`paths` must be a mapping")
    inbox_raw = _mapping(raw, "inbox")
    startup_raw = _mapping(raw, "startup")

    def to_path(key: str) -> Path:
        value = _require(paths_raw, key, "paths")
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    base_url = str(_require(server_raw, "base_url", "server")).rstrip("/")
    if not base_url.startswith(("http://", "https://")):
        raise ValueError("`server.base_url` must be an http(s) URL")

    server = ServerConfig(
        base_url=base_url,
        run_path=_endpoint_path(server_raw.get("run_path", "/api/jobs/run"), "run_path"),
        jobs_path=_endpoint_path(server_raw.get("jobs_path", "/api/jobs"), "jobs_path"),
        connect_timeout_seconds=float(server_raw.get("connect_timeout_seconds", 10.0)),
    )
    if server.connect_timeout_seconds <= 0:
        raise ValueError("`server.connect_timeout_seconds` must be > 0")

    inbox = InboxConfig(max_results=int(inbox_raw.get("max_results", 50)))
    if inbox.max_results < 1:
        raise ValueError("`inbox.max_results` must be >= 1")

    startup = StartupConfig(stale_minutes=int(startup_raw.get("stale_minutes", 30)))
    if startup.stale_minutes < 0:
        raise ValueError("`startup.stale_minutes` must be >= 0")

    return AppConfig(
        server=server,
        paths=PathsConfig(db=to_path("db"), log=to_path("log")),
        inbox=inbox,
        startup=startup,
    )


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
