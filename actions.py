"""
actions.py – Action dispatcher.

Turns a decision ("delete this item", "move it to quality profile 4", "put
it in that collection") into calls against Radarr, Sonarr and the media
server mirror.  Each call is handled per item: an
:class:`~errors.ExternalCallFailed` is logged with the item, the action and
the reason, and reported back as a failed :class:`DispatchResult` instead of
being raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from errors import ExternalCallFailed
from models import ArrAction, Collection, MediaItem, MediaType
from servarr import RadarrApi, SonarrApi
from store import Store

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    ok: bool
    reason: str = ""


_OK = DispatchResult(True)


class ActionDispatcher:
    """Apply enforcement actions to single media items.

    Args:
        radarr: Radarr client, or ``None`` when not configured.
        sonarr: Sonarr client, or ``None`` when not configured.
        mirror: Media server mirror (see :class:`jellyfin.JellyfinMirror`).
        store: Runtime state, used for collection membership.
    """

    def __init__(
        self,
        radarr: RadarrApi | None,
        sonarr: SonarrApi | None,
        mirror: Any,
        store: Store,
    ) -> None:
        self.radarr = radarr
        self.sonarr = sonarr
        self.mirror = mirror
        self.store = store

    # -- helpers -------------------------------------------------------------

    def _guard(self, item: MediaItem, action: str, call: Callable[[], DispatchResult]) -> DispatchResult:
        try:
            return call()
        except ExternalCallFailed as exc:
            logger.warning("%s failed for %r (%s): %s", action, item.title, item.media_server_id, exc)
            return DispatchResult(False, str(exc))

    def _movie_id(self, item: MediaItem) -> int | None:
        if self.radarr is None or item.tmdb_id is None:
            return None
        movie = self.radarr.get_movie_by_tmdb_id(item.tmdb_id)
        return int(movie["id"]) if movie else None

    def _series_id(self, item: MediaItem) -> int | None:
        if self.sonarr is None or item.tvdb_id is None:
            return None
        series = self.sonarr.get_series_by_tvdb_id(item.tvdb_id)
        return int(series["id"]) if series else None

    def _season_number(self, item: MediaItem) -> int | None:
        return item.index if item.type is MediaType.SEASONS else item.parent_index

    def _delete_from_media_server(self, item: MediaItem, manager: str) -> DispatchResult:
        logger.info(
            "%r (%s) is not managed by %s; deleting it on the media server",
            item.title,
            item.media_server_id,
            manager,
        )
        self.mirror.delete_item(item.media_server_id)
        return _OK

    # -- enforcement actions -------------------------------------------------

    def delete(self, item: MediaItem, collection: Collection | None = None) -> DispatchResult:
        """Remove *item* and its files.

        Movies and shows are deleted in their manager; seasons and episodes
        are unmonitored with their files deleted.  Items no manager knows
        about are deleted on the media server.
        """
        return self.handle_media(item, ArrAction.DELETE, collection)

    def change_quality_profile(self, item: MediaItem, profile_id: int | None) -> DispatchResult:
        if profile_id is None:
            logger.warning("No target quality profile configured for %r; skipping", item.title)
            return DispatchResult(False, "no quality profile configured")
        return self.handle_media(
            item,
            ArrAction.CHANGE_QUALITY_PROFILE,
            None,
            profile_id=int(profile_id),
        )

    def handle_media(
        self,
        item: MediaItem,
        arr_action: ArrAction,
        collection: Collection | None = None,
        *,
        profile_id: int | None = None,
    ) -> DispatchResult:
        """Apply one acquisition manager action to *item*, by media type."""
        if item.type is MediaType.MOVIES:
            return self._guard(
                item, arr_action.name, lambda: self._handle_movie(item, arr_action, collection, profile_id)
            )
        return self._guard(
            item, arr_action.name, lambda: self._handle_episodic(item, arr_action, collection, profile_id)
        )

    def handle_collection_media(self, collection: Collection, item: MediaItem) -> DispatchResult:
        """Apply the collection's ``arr_action`` to an item whose grace period ran out."""
        profile_id = (
            collection.radarr_quality_profile_id
            if item.type is MediaType.MOVIES
            else collection.sonarr_quality_profile_id
        )
        if collection.arr_action is ArrAction.CHANGE_QUALITY_PROFILE and profile_id is None:
            logger.warning("Collection %r has no target quality profile; skipping", collection.title)
            return DispatchResult(False, "no quality profile configured")
        return self.handle_media(item, collection.arr_action, collection, profile_id=profile_id)

    def _handle_movie(
        self,
        item: MediaItem,
        arr_action: ArrAction,
        collection: Collection | None,
        profile_id: int | None,
    ) -> DispatchResult:
        movie_id = self._movie_id(item)
        if movie_id is None:
            if arr_action is ArrAction.DELETE:
                return self._delete_from_media_server(item, "Radarr")
            logger.warning("%r (tmdb %s) not found in Radarr; skipping %s", item.title, item.tmdb_id, arr_action.name)
            return DispatchResult(False, "not found in Radarr")

        if arr_action is ArrAction.DELETE:
            exclude = bool(collection and collection.list_exclusions)
            self.radarr.delete_movie(movie_id, delete_files=True, import_exclusion=exclude)
        elif arr_action is ArrAction.UNMONITOR:
            self.radarr.unmonitor_movie(movie_id, delete_files=False)
        elif arr_action in (ArrAction.UNMONITOR_DELETE_ALL, ArrAction.UNMONITOR_DELETE_EXISTING):
            self.radarr.unmonitor_movie(movie_id, delete_files=True)
        elif arr_action is ArrAction.CHANGE_QUALITY_PROFILE:
            self.radarr.update_quality_profile(movie_id, int(profile_id))  # type: ignore[arg-type]
        logger.info("Radarr: %s applied to %r", arr_action.name, item.title)
        return _OK

    def _handle_episodic(
        self,
        item: MediaItem,
        arr_action: ArrAction,
        collection: Collection | None,
        profile_id: int | None,
    ) -> DispatchResult:
        series_id = self._series_id(item)
        if series_id is None:
            if arr_action is ArrAction.DELETE:
                return self._delete_from_media_server(item, "Sonarr")
            logger.warning("%r (tvdb %s) not found in Sonarr; skipping %s", item.title, item.tvdb_id, arr_action.name)
            return DispatchResult(False, "not found in Sonarr")

        if arr_action is ArrAction.CHANGE_QUALITY_PROFILE:
            self.sonarr.update_quality_profile(series_id, int(profile_id))  # type: ignore[arg-type]
            failed: list[int] = []
        elif item.type is MediaType.SHOWS:
            failed = self._handle_show(series_id, arr_action, collection)
        elif item.type is MediaType.SEASONS:
            season = self._season_number(item)
            if arr_action is ArrAction.UNMONITOR_DELETE_EXISTING:
                existing = [
                    e["episodeNumber"]
                    for e in self.sonarr.get_episodes(series_id, season)
                    if e.get("hasFile")
                ]
                failed = self.sonarr.unmonitor_episodes(series_id, int(season or 0), existing, delete_files=True)
            else:
                delete_files = arr_action is not ArrAction.UNMONITOR
                failed = self.sonarr.unmonitor_seasons(series_id, int(season or 0), delete_files=delete_files)
        else:
            delete_files = arr_action is not ArrAction.UNMONITOR
            failed = self.sonarr.unmonitor_episodes(
                series_id, int(item.parent_index or 0), [int(item.index or 0)], delete_files=delete_files
            )
        if failed:
            return DispatchResult(False, f"episodes {failed} could not be handled")
        logger.info("Sonarr: %s applied to %r", arr_action.name, item.title)
        return _OK

    def _handle_show(self, series_id: int, arr_action: ArrAction, collection: Collection | None) -> list[int]:
        if arr_action is ArrAction.DELETE:
            exclude = bool(collection and collection.list_exclusions)
            self.sonarr.delete_series(series_id, delete_files=True, import_list_exclusion=exclude)
            return []
        if arr_action is ArrAction.UNMONITOR:
            return self.sonarr.unmonitor_seasons(series_id, "all", delete_files=False)
        if arr_action is ArrAction.UNMONITOR_DELETE_ALL:
            return self.sonarr.unmonitor_seasons(series_id, "all", delete_files=True)
        return self.sonarr.unmonitor_seasons(series_id, "existing", delete_files=True)

    # -- collection membership -----------------------------------------------

    def add_to_collection(
        self, collection: Collection, items: Iterable[MediaItem], manual: bool = False
    ) -> DispatchResult:
        """Add *items* to the collection, mirroring them when the collection is linked."""
        failures: list[str] = []
        for item in items:
            self.store.add_media(collection.id, item.media_server_id, tmdb_id=item.tmdb_id, is_manual=manual)
            if collection.sync_to_plex_collection and collection.media_server_id:
                result = self._guard(
                    item,
                    "add to collection",
                    lambda item=item: self._mirror_call(self.mirror.add_child, collection, item),
                )
                if not result.ok:
                    failures.append(item.media_server_id)
        return DispatchResult(not failures, f"mirror add failed for {failures}" if failures else "")

    def remove_from_collection(self, collection: Collection, items: Iterable[MediaItem]) -> DispatchResult:
        failures: list[str] = []
        for item in items:
            self.store.remove_media(collection.id, item.media_server_id)
            if collection.sync_to_plex_collection and collection.media_server_id:
                result = self._guard(
                    item,
                    "remove from collection",
                    lambda item=item: self._mirror_call(self.mirror.remove_child, collection, item),
                )
                if not result.ok:
                    failures.append(item.media_server_id)
        return DispatchResult(not failures, f"mirror remove failed for {failures}" if failures else "")

    def _mirror_call(self, call: Callable[[str, str], None], collection: Collection, item: MediaItem) -> DispatchResult:
        call(str(collection.media_server_id), item.media_server_id)
        return _OK
