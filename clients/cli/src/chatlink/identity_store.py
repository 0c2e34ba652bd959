"""Persist the CLI's signed-in principal between invocations."""

from __future__ import annotations

import json
import os
from dataclasses import asdict
from pathlib import Path

from .models import Participant

DEFAULT_IDENTITY_PATH = Path.home() / ".chatlink" / "identity.json"


def _atomic_write_json(path: Path, payload: dict) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def save_identity(principal: Participant, path: Path | str = DEFAULT_IDENTITY_PATH) -> None:
    payload = asdict(principal)
    payload["providers"] = list(principal.providers)
    _atomic_write_json(Path(path), payload)


def load_identity(path: Path | str = DEFAULT_IDENTITY_PATH) -> Participant | None:
    """Return the stored principal, or ``None`` when missing or unreadable."""

    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, ValueError):
        return None

    if not isinstance(data, dict):
        return None
    try:
        uid = str(data["uid"])
        display_name = str(data["display_name"])
    except KeyError:
        return None
    if not uid:
        return None
    providers = data.get("providers") or []
    return Participant(
        uid=uid,
        display_name=display_name,
        email=str(data.get("email") or ""),
        phone_number=str(data.get("phone_number") or ""),
        photo_url=str(data.get("photo_url") or ""),
        phone_verified=bool(data.get("phone_verified", False)),
        providers=tuple(str(p) for p in providers) if isinstance(providers, list) else (),
    )


def clear_identity(path: Path | str = DEFAULT_IDENTITY_PATH) -> bool:
    try:
        Path(path).expanduser().unlink()
    except FileNotFoundError:
        return False
    return True
