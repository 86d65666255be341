"""
Configuration Store

Profile lookup by instance id. The relay only ever resolves routing and
credentials through a store; request bodies are never trusted for either.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Iterable, Protocol

import structlog

from flowchat.relay.profiles import ConnectionProfile, profile_from_instance

logger = structlog.get_logger()


class ConfigurationStore(Protocol):
    async def get_profile(self, instance_id: str) -> ConnectionProfile | None: ...


class InMemoryConfigurationStore:
    def __init__(self, profiles: Iterable[ConnectionProfile] = ()) -> None:
        self._profiles = {profile.instance_id: profile for profile in profiles}

    def put(self, profile: ConnectionProfile) -> None:
        self._profiles[profile.instance_id] = profile

    async def get_profile(self, instance_id: str) -> ConnectionProfile | None:
        return self._profiles.get(instance_id)


class JsonFileConfigurationStore:
    """Profiles from a JSON file: either `{instance_id: {...}}` or a list of
    objects that each carry `instance_id` (or `id`).

    The file is re-read when its modification time changes, so operators can
    edit it without restarting the relay.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._profiles: dict[str, ConnectionProfile] = {}
        self._mtime: float | None = None
        self._missing_reported = False
        self._lock = asyncio.Lock()

    async def get_profile(self, instance_id: str) -> ConnectionProfile | None:
        async with self._lock:
            self._reload_if_changed()
        return self._profiles.get(instance_id)

    def _reload_if_changed(self) -> None:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            if not self._missing_reported:
                logger.warning("Instances file not found", path=str(self.path))
                self._missing_reported = True
            self._profiles = {}
            self._mtime = None
            return
        if mtime == self._mtime:
            return

        raw = json.loads(self.path.read_text(encoding="utf-8"))
        self._profiles = dict(_parse_profiles(raw))
        self._mtime = mtime
        self._missing_reported = False
        logger.info("Instances file loaded", path=str(self.path), instances=len(self._profiles))


def _parse_profiles(raw: Any) -> Iterable[tuple[str, ConnectionProfile]]:
    if isinstance(raw, dict):
        items = raw.items()
    elif isinstance(raw, list):
        items = ((entry.get("instance_id") or entry.get("id"), entry) for entry in raw)
    else:
        raise ValueError("Instances file must contain a JSON object or array")

    for instance_id, data in items:
        if not instance_id or not isinstance(data, dict):
            logger.warning("Skipping instance entry without id")
            continue
        instance_id = str(instance_id)
        yield instance_id, profile_from_instance(instance_id, data)
