"""
store.py – Runtime state persistence.

Collections, their media, exclusions, collection logs and the last run
summary live in one JSON document (``state.json`` next to ``config.json``).
The document is rewritten atomically on :meth:`Store.save`.  A store created
without a path keeps everything in memory (used by the tests).
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

from models import (
    ArrAction,
    Collection,
    CollectionLog,
    CollectionMedia,
    EnforcementAction,
    Exclusion,
    MediaServerType,
    MediaType,
    RuleGroup,
)

logger = logging.getLogger(__name__)

# Collection settings a rule group may carry in its ``collection`` block.
_COLLECTION_SETTINGS: tuple[str, ...] = (
    "description",
    "is_active",
    "arr_action",
    "manual_collection",
    "manual_collection_name",
    "list_exclusions",
    "sync_to_plex_collection",
    "delete_after_days",
    "radarr_quality_profile_id",
    "sonarr_quality_profile_id",
)

# Keep at most this many log lines per collection.
MAX_LOGS_PER_COLLECTION = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Store:
    """In-process view of the persisted runtime state."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path
        self.collections: dict[int, Collection] = {}
        self.media: list[CollectionMedia] = []
        self.exclusions: list[Exclusion] = []
        self.logs: list[CollectionLog] = []
        self.last_run: dict[str, Any] | None = None

    # -- persistence ---------------------------------------------------------

    @classmethod
    def load(cls, path: str) -> "Store":
        """Load the state file at *path*; a missing or corrupt file yields an empty store."""
        store = cls(path)
        try:
            with open(path, "r") as fh:
                data: dict[str, Any] = json.load(fh)
        except FileNotFoundError:
            return store
        except (OSError, ValueError):
            logger.warning("State file %s is unreadable; starting with an empty state", path)
            return store

        for raw in data.get("collections", []):
            collection = Collection.from_dict(raw)
            store.collections[collection.id] = collection
        store.media = [CollectionMedia.from_dict(m) for m in data.get("media", [])]
        store.exclusions = [Exclusion.from_dict(e) for e in data.get("exclusions", [])]
        store.logs = [CollectionLog.from_dict(entry) for entry in data.get("logs", [])]
        store.last_run = data.get("last_run")
        return store

    def to_dict(self) -> dict[str, Any]:
        return {
            "collections": [c.to_dict() for c in self.collections.values()],
            "media": [m.to_dict() for m in self.media],
            "exclusions": [e.to_dict() for e in self.exclusions],
            "logs": [entry.to_dict() for entry in self.logs],
            "last_run": self.last_run,
        }

    def save(self) -> None:
        if not self.path:
            return
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w") as fh:
            json.dump(self.to_dict(), fh, indent=4)
        os.replace(tmp_path, self.path)

    # -- collections ---------------------------------------------------------

    def get_collection(self, collection_id: int) -> Collection | None:
        return self.collections.get(collection_id)

    def collection_for_group(self, rule_group: RuleGroup) -> Collection:
        """Return the collection owned by *rule_group*, creating it on first use.

        Settings from the group's ``collection`` block are applied on every
        call; run-time fields (media server id, counters) are kept.
        """
        collection = None
        if rule_group.collection_id is not None:
            collection = self.collections.get(int(rule_group.collection_id))
        if collection is None:
            collection = next(
                (c for c in self.collections.values() if c.rule_group_id == rule_group.id), None
            )
        if collection is None:
            collection_id = (
                int(rule_group.collection_id)
                if rule_group.collection_id is not None
                else max(self.collections, default=0) + 1
            )
            collection = Collection(
                id=collection_id,
                library_id=rule_group.library_id,
                title=rule_group.name,
                type=rule_group.media_type,
                media_server_type=MediaServerType.JELLYFIN,
            )
            self.collections[collection_id] = collection
            logger.info("Created collection %r for rule group %r", collection.title, rule_group.name)

        rule_group.collection_id = collection.id
        collection.rule_group_id = rule_group.id
        collection.title = rule_group.name
        collection.library_id = rule_group.library_id
        collection.type = MediaType(rule_group.media_type)
        collection.is_active = rule_group.is_active
        for key in _COLLECTION_SETTINGS:
            if key in rule_group.collection:
                value = rule_group.collection[key]
                if key == "arr_action":
                    value = ArrAction(int(value))
                setattr(collection, key, value)
        # The group's own action and profiles apply unless the block overrides them.
        if "arr_action" not in rule_group.collection:
            if rule_group.action is EnforcementAction.CHANGE_QUALITY_PROFILE:
                collection.arr_action = ArrAction.CHANGE_QUALITY_PROFILE
            elif rule_group.action is EnforcementAction.DELETE:
                collection.arr_action = ArrAction.DELETE
        for key in ("radarr_quality_profile_id", "sonarr_quality_profile_id"):
            if key not in rule_group.collection and getattr(rule_group, key) is not None:
                setattr(collection, key, int(getattr(rule_group, key)))
        return collection

    def delete_collection(self, collection_id: int) -> None:
        """Remove a collection together with its media and logs."""
        self.collections.pop(collection_id, None)
        self.media = [m for m in self.media if m.collection_id != collection_id]
        self.logs = [entry for entry in self.logs if entry.collection_id != collection_id]

    # -- collection media ----------------------------------------------------

    def media_for_collection(self, collection_id: int) -> list[CollectionMedia]:
        return [m for m in self.media if m.collection_id == collection_id]

    def add_media(
        self,
        collection_id: int,
        media_server_id: str,
        *,
        tmdb_id: int | None = None,
        is_manual: bool = False,
        add_date: datetime | None = None,
    ) -> CollectionMedia:
        for existing in self.media:
            if existing.collection_id == collection_id and existing.media_server_id == media_server_id:
                return existing
        media = CollectionMedia(
            id=max((m.id for m in self.media), default=0) + 1,
            collection_id=collection_id,
            media_server_id=media_server_id,
            add_date=add_date or _utcnow(),
            tmdb_id=tmdb_id,
            is_manual=is_manual,
        )
        self.media.append(media)
        return media

    def remove_media(self, collection_id: int, media_server_id: str) -> bool:
        before = len(self.media)
        self.media = [
            m
            for m in self.media
            if not (m.collection_id == collection_id and m.media_server_id == media_server_id)
        ]
        return len(self.media) != before

    # -- exclusions ----------------------------------------------------------

    def exclusions_for_group(self, rule_group_id: int) -> list[Exclusion]:
        """Global exclusions plus the ones scoped to *rule_group_id*."""
        return [e for e in self.exclusions if e.rule_group_id is None or e.rule_group_id == rule_group_id]

    def add_exclusion(
        self,
        media_server_id: str,
        rule_group_id: int | None = None,
        *,
        parent: str | None = None,
        media_type: MediaType | None = None,
    ) -> Exclusion:
        for existing in self.exclusions:
            if existing.media_server_id == media_server_id and existing.rule_group_id == rule_group_id:
                return existing
        exclusion = Exclusion(
            id=max((e.id for e in self.exclusions), default=0) + 1,
            media_server_id=media_server_id,
            rule_group_id=rule_group_id,
            parent=parent,
            type=media_type,
        )
        self.exclusions.append(exclusion)
        return exclusion

    # -- logs ----------------------------------------------------------------

    def add_log(self, collection_id: int, message: str, kind: str = "info") -> CollectionLog:
        entry = CollectionLog(collection_id=collection_id, timestamp=_utcnow(), message=message, kind=kind)
        self.logs.append(entry)
        own = [e for e in self.logs if e.collection_id == collection_id]
        if len(own) > MAX_LOGS_PER_COLLECTION:
            drop = {id(e) for e in own[: len(own) - MAX_LOGS_PER_COLLECTION]}
            self.logs = [e for e in self.logs if id(e) not in drop]
        return entry

    def logs_for(self, collection_id: int) -> list[CollectionLog]:
        return [e for e in self.logs if e.collection_id == collection_id]
