from __future__ import annotations

import secrets
import time
from datetime import UTC, datetime
from pathlib import PurePosixPath

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def generate_run_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(7))
    return f"run_{int(time.time() * 1000)}_{suffix}"


def project_name_from_path(path: str) -> str:
    name = PurePosixPath(path.rstrip("/")).name
    return name or path
