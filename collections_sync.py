"""
collections_sync.py – Collection state machine.

A collection is either *unsynced* (no mirror on the media server, or
syncing disabled) or *linked* (``media_server_id`` points at a live mirror).
:class:`CollectionStateMachine` keeps that state consistent with the media
server:

* Automatic collections are looked up by their stored id, then by title;
  a mirror found by title is relinked.  A mirror with no children is
  deleted and the id cleared.
* Manual collections are looked up by their manual collection name.
* A lookup that fails in transport leaves the collection untouched; only a
  lookup that *succeeded* and found nothing counts as "mirror absent".
* Mirror writes never roll back the local state.  Failures come back as a
  :class:`MirrorResult` with ``ok=False``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from errors import ExternalCallFailed, MirrorInconsistent
from models import Collection
from store import Store

logger = logging.getLogger(__name__)

UNSYNCED = "unsynced"
LINKED = "linked"


@dataclass
class MirrorResult:
    ok: bool
    reason: str = ""
    media_server_id: str | None = None


class CollectionStateMachine:
    def __init__(self, mirror: Any, store: Store) -> None:
        self.mirror = mirror
        self.store = store

    def state(self, collection: Collection) -> str:
        if collection.sync_to_plex_collection and collection.media_server_id:
            return LINKED
        return UNSYNCED

    def _link(self, collection: Collection, media_server_id: str | None) -> None:
        if collection.media_server_id != media_server_id:
            logger.info(
                "Collection %r: media server id %s -> %s",
                collection.title,
                collection.media_server_id,
                media_server_id,
            )
            collection.media_server_id = media_server_id
            self.store.save()

    def _find_by_id(self, collection: Collection) -> Any:
        if not collection.media_server_id:
            return None
        try:
            return self.mirror.find_collection_by_id(collection.media_server_id)
        except MirrorInconsistent as exc:
            logger.warning("Collection %r: %s; treating it as not synced", collection.title, exc)
            return None

    # -- reconciliation ------------------------------------------------------

    def reconcile(self, collection: Collection) -> MirrorResult:
        if collection.manual_collection:
            return self.relink_manual_collection(collection)
        return self.check_automatic_link(collection)

    def check_automatic_link(self, collection: Collection) -> MirrorResult:
        """Relink an automatic collection to its mirror and drop an empty mirror."""
        if not collection.sync_to_plex_collection or collection.manual_collection:
            return MirrorResult(True, "skipped", collection.media_server_id)

        try:
            mirror = self._find_by_id(collection)
            if mirror is None:
                mirror = self.mirror.find_collection_by_title(collection.library_id, collection.title.strip())
                if mirror is not None:
                    logger.info("Collection %r relinked to mirror %s by title", collection.title, mirror.id)
                self._link(collection, mirror.id if mirror is not None else None)

            if mirror is not None and mirror.child_count <= 0:
                logger.info("Collection %r: mirror %s is empty, deleting it", collection.title, mirror.id)
                self.mirror.delete_collection(mirror.id)
                self._link(collection, None)
        except ExternalCallFailed as exc:
            logger.warning("Collection %r: mirror lookup failed, state kept: %s", collection.title, exc)
            return MirrorResult(False, str(exc), collection.media_server_id)
        return MirrorResult(True, "", collection.media_server_id)

    def relink_manual_collection(self, collection: Collection) -> MirrorResult:
        """Link a manual collection to the mirror named ``manual_collection_name``."""
        if not collection.manual_collection:
            return MirrorResult(True, "skipped", collection.media_server_id)
        name = (collection.manual_collection_name or "").strip()
        if not name:
            logger.warning("Manual collection %r has no collection name configured", collection.title)
            return MirrorResult(False, "no manual collection name", collection.media_server_id)

        try:
            mirror = self._find_by_id(collection)
            if mirror is None or mirror.title.strip() != name:
                mirror = self.mirror.find_collection_by_title(collection.library_id, name)
        except ExternalCallFailed as exc:
            logger.warning("Collection %r: mirror lookup failed, state kept: %s", collection.title, exc)
            return MirrorResult(False, str(exc), collection.media_server_id)

        if mirror is None:
            logger.warning("Manual collection %r not found on the media server", name)
            self._link(collection, None)
            return MirrorResult(False, "manual collection not found")
        self._link(collection, mirror.id)
        return MirrorResult(True, "", mirror.id)

    # -- mirror writes -------------------------------------------------------

    def create_mirror(self, collection: Collection, item_ids: list[str] | None = None) -> MirrorResult:
        """Create the media server mirror of an automatic collection."""
        if not collection.sync_to_plex_collection:
            logger.warning("Collection %r is not synced to the media server; not creating a mirror", collection.title)
            return MirrorResult(False, "sync disabled")
        if collection.manual_collection:
            return MirrorResult(False, "manual collections are created on the media server")
        if collection.media_server_id:
            return MirrorResult(True, "already linked", collection.media_server_id)
        try:
            mirror = self.mirror.create_collection(collection, item_ids)
        except ExternalCallFailed as exc:
            logger.warning("Collection %r: mirror creation failed: %s", collection.title, exc)
            return MirrorResult(False, str(exc))
        self._link(collection, mirror.id)
        return MirrorResult(True, "", mirror.id)

    def update_mirror(self, collection: Collection) -> MirrorResult:
        if self.state(collection) != LINKED:
            logger.warning("Collection %r has no mirror to update", collection.title)
            return MirrorResult(False, "not linked")
        try:
            self.mirror.update_collection(collection)
        except ExternalCallFailed as exc:
            logger.warning("Collection %r: mirror update failed: %s", collection.title, exc)
            return MirrorResult(False, str(exc), collection.media_server_id)
        return MirrorResult(True, "", collection.media_server_id)

    def delete_collection(self, collection: Collection) -> MirrorResult:
        """Delete a collection locally, and its mirror when this engine owns it."""
        result = MirrorResult(True)
        if collection.sync_to_plex_collection and not collection.manual_collection and collection.media_server_id:
            try:
                self.mirror.delete_collection(collection.media_server_id)
            except ExternalCallFailed as exc:
                logger.warning("Collection %r: mirror deletion failed: %s", collection.title, exc)
                result = MirrorResult(False, str(exc), collection.media_server_id)
        self.store.delete_collection(collection.id)
        self.store.save()
        logger.info("Collection %r deleted", collection.title)
        return result

    def sync_manual_media(self, collection: Collection) -> MirrorResult:
        """Adopt membership changes made by hand on the media server.

        Children of the mirror unknown locally are added as manual media;
        local media that is no longer in the mirror is dropped.
        """
        if self.state(collection) != LINKED:
            return MirrorResult(True, "skipped")
        try:
            children = set(self.mirror.get_children(str(collection.media_server_id)))
        except ExternalCallFailed as exc:
            logger.warning("Collection %r: cannot read mirror children: %s", collection.title, exc)
            return MirrorResult(False, str(exc), collection.media_server_id)

        local = {m.media_server_id for m in self.store.media_for_collection(collection.id)}
        for media_server_id in sorted(children - local):
            self.store.add_media(collection.id, media_server_id, is_manual=True)
            logger.info("Collection %r: adopted manually added item %s", collection.title, media_server_id)
        for media_server_id in sorted(local - children):
            self.store.remove_media(collection.id, media_server_id)
            logger.info("Collection %r: item %s was removed on the media server", collection.title, media_server_id)
        if children != local:
            self.store.save()
        return MirrorResult(True, "", collection.media_server_id)
