"""
resolver.py – Attribute resolution for rule evaluation.

An :class:`AttributeResolver` looks a catalog entry up, picks the provider
registered for the entry's application and asks it for the value.  Anything
a provider cannot supply (no record in that service, attribute not
applicable, transport failure) comes back as :data:`UNAVAILABLE`; the
evaluator turns that into a ``False`` comparison.

Providers keep a small per-item cache of the records they fetched so that
several attributes of the same item only cost one request.  Call
:meth:`AttributeResolver.reset` between runs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from catalog import RuleCatalog, RuleCatalogEntry
from errors import AttributeUnavailable, ExternalCallFailed, UnknownAttribute
from models import AttributeRef, MediaItem, MediaType
import jellyfin
from servarr import ApiClient, RadarrApi, SonarrApi

logger = logging.getLogger(__name__)


class _Unavailable:
    """Marker for "this attribute has no value for this item"."""

    def __repr__(self) -> str:
        return "UNAVAILABLE"

    def __bool__(self) -> bool:
        return False


UNAVAILABLE = _Unavailable()


class AttributeProvider(Protocol):
    def get_attribute(self, item: MediaItem, entry: RuleCatalogEntry) -> Any: ...

    def reset(self) -> None: ...


class AttributeSnapshot:
    """Lazily resolved, memoized attribute values of one media item."""

    def __init__(self, resolver: "AttributeResolver", item: MediaItem) -> None:
        self._resolver = resolver
        self.item = item
        self._values: dict[AttributeRef, Any] = {}

    def get(self, ref: AttributeRef) -> Any:
        ref = tuple(ref)  # type: ignore[assignment]
        if ref not in self._values:
            self._values[ref] = self._resolver.resolve(self.item, ref)
        return self._values[ref]


class AttributeResolver:
    """Route attribute lookups to the provider registered per application name."""

    def __init__(self, catalog: RuleCatalog, providers: dict[str, AttributeProvider]) -> None:
        self.catalog = catalog
        self.providers = providers

    def snapshot(self, item: MediaItem) -> AttributeSnapshot:
        return AttributeSnapshot(self, item)

    def reset(self) -> None:
        for provider in self.providers.values():
            provider.reset()

    def resolve(self, item: MediaItem, ref: AttributeRef) -> Any:
        try:
            entry = self.catalog.resolve_ref(ref)
        except UnknownAttribute as exc:
            logger.warning("%s", exc)
            return UNAVAILABLE

        identifier = self.catalog.identifier_of(entry)
        if not entry.supports(item.type):
            logger.debug("%s does not apply to %s items", identifier, item.type.name.lower())
            return UNAVAILABLE

        provider = self.providers.get(entry.application)
        if provider is None:
            logger.debug("No provider configured for %s", entry.application)
            return UNAVAILABLE

        try:
            value = provider.get_attribute(item, entry)
        except (AttributeUnavailable, ExternalCallFailed) as exc:
            logger.info("%s unavailable for item %s: %s", identifier, item.media_server_id, exc)
            return UNAVAILABLE
        return UNAVAILABLE if value is None else value


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_MB = 1024 * 1024


def _dispatch(provider: Any, item: MediaItem, entry: RuleCatalogEntry) -> Any:
    getter: Callable[[MediaItem], Any] | None = getattr(provider, f"_attr_{entry.name}", None)
    if getter is None:
        raise AttributeUnavailable(f"{entry.application}.{entry.name} is not supported by this provider")
    return getter(item)


def _latest(values: list[datetime | None]) -> datetime | None:
    present = [v for v in values if v is not None]
    return max(present) if present else None


def _earliest(values: list[datetime | None]) -> datetime | None:
    present = [v for v in values if v is not None]
    return min(present) if present else None


# ---------------------------------------------------------------------------
# Jellyfin
# ---------------------------------------------------------------------------


class JellyfinAttributeProvider:
    """Metadata, play state and collection membership read from Jellyfin."""

    def __init__(self, base_url: str, api_key: str, *, timeout: float = 10) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.reset()

    def reset(self) -> None:
        self._users: list[dict[str, Any]] | None = None
        self._collection_index: dict[str, list[str]] | None = None
        self._user_data: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        self._episode_plays: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        self._episodes: dict[str, list[dict[str, Any]]] = {}

    def get_attribute(self, item: MediaItem, entry: RuleCatalogEntry) -> Any:
        return _dispatch(self, item, entry)

    # -- cached lookups ------------------------------------------------------

    def _get_users(self) -> list[dict[str, Any]]:
        if self._users is None:
            self._users = jellyfin.get_users(self.base_url, self.api_key, timeout=self.timeout)
        return self._users

    def _plays(self, item: MediaItem) -> list[tuple[str, dict[str, Any]]]:
        """``(username, UserData)`` for every user, for *item* itself."""
        if item.media_server_id not in self._user_data:
            self._user_data[item.media_server_id] = [
                (
                    str(user.get("Name", "")),
                    jellyfin.get_user_item_data(
                        self.base_url, self.api_key, user["Id"], item.media_server_id, timeout=self.timeout
                    ),
                )
                for user in self._get_users()
            ]
        return self._user_data[item.media_server_id]

    def _played_episodes(self, item: MediaItem) -> list[tuple[str, dict[str, Any]]]:
        """``(username, episode)`` for every episode below *item* a user has played."""
        if item.media_server_id not in self._episode_plays:
            self._episode_plays[item.media_server_id] = [
                (str(user.get("Name", "")), episode)
                for user in self._get_users()
                for episode in jellyfin.get_user_played_children(
                    self.base_url, self.api_key, user["Id"], item.media_server_id, timeout=self.timeout
                )
            ]
        return self._episode_plays[item.media_server_id]

    def _all_episodes(self, item: MediaItem) -> list[dict[str, Any]]:
        if item.media_server_id not in self._episodes:
            self._episodes[item.media_server_id] = jellyfin.get_children(
                self.base_url,
                self.api_key,
                item.media_server_id,
                "Episode",
                recursive=True,
                timeout=self.timeout,
            )
        return self._episodes[item.media_server_id]

    def _collections_of(self, item: MediaItem) -> list[str]:
        if self._collection_index is None:
            index: dict[str, list[str]] = {}
            for collection in jellyfin.get_collections(self.base_url, self.api_key, timeout=self.timeout):
                name = str(collection.get("Name", ""))
                for child in jellyfin.get_collection_children(
                    self.base_url, self.api_key, collection["Id"], timeout=self.timeout
                ):
                    index.setdefault(str(child.get("Id")), []).append(name)
            self._collection_index = index
        return self._collection_index.get(item.media_server_id, [])

    def _video_stream(self, item: MediaItem) -> dict[str, Any]:
        for source in item.raw.get("MediaSources") or []:
            for stream in source.get("MediaStreams") or []:
                if stream.get("Type") == "Video":
                    return stream
        raise AttributeUnavailable(f"Item {item.media_server_id} has no video stream")

    # -- attributes ----------------------------------------------------------

    def _attr_addDate(self, item: MediaItem) -> datetime | None:
        return item.added_at or jellyfin.parse_date(item.raw.get("DateCreated"))

    def _attr_seenBy(self, item: MediaItem) -> list[str]:
        if item.type in (MediaType.SHOWS, MediaType.SEASONS):
            return sorted({user for user, _ in self._played_episodes(item)})
        return [user for user, data in self._plays(item) if data.get("Played")]

    def _attr_releaseDate(self, item: MediaItem) -> datetime | None:
        return jellyfin.parse_date(item.raw.get("PremiereDate"))

    def _attr_rating_critics(self, item: MediaItem) -> float | None:
        rating = item.raw.get("CriticRating")
        return float(rating) / 10 if rating is not None else None

    def _attr_rating_audience(self, item: MediaItem) -> float | None:
        rating = item.raw.get("CommunityRating")
        return float(rating) if rating is not None else None

    def _attr_viewCount(self, item: MediaItem) -> int:
        return sum(int(data.get("PlayCount") or 0) for _, data in self._plays(item))

    def _attr_collections(self, item: MediaItem) -> int:
        return len(self._collections_of(item))

    def _attr_lastViewedAt(self, item: MediaItem) -> datetime | None:
        return _latest([jellyfin.parse_date(data.get("LastPlayedDate")) for _, data in self._plays(item)])

    def _attr_fileVideoResolution(self, item: MediaItem) -> str:
        height = int(self._video_stream(item).get("Height") or 0)
        if height >= 2160:
            return "4k"
        if height >= 1080:
            return "1080"
        if height >= 720:
            return "720"
        return "sd"

    def _attr_fileBitrate(self, item: MediaItem) -> int | None:
        sources = item.raw.get("MediaSources") or []
        return sources[0].get("Bitrate") if sources else None

    def _attr_fileVideoCodec(self, item: MediaItem) -> str | None:
        return self._video_stream(item).get("Codec")

    def _attr_genre(self, item: MediaItem) -> list[str]:
        return list(item.raw.get("Genres") or [])

    def _attr_labels(self, item: MediaItem) -> list[str]:
        return list(item.raw.get("Tags") or [])

    def _attr_people(self, item: MediaItem) -> list[str]:
        return [p["Name"] for p in item.raw.get("People") or [] if p.get("Name")]

    def _attr_collection_names(self, item: MediaItem) -> list[str]:
        return self._collections_of(item)

    def _attr_sw_episodes(self, item: MediaItem) -> int:
        return len(self._all_episodes(item))

    def _attr_sw_viewedEpisodes(self, item: MediaItem) -> int:
        return len({str(episode.get("Id")) for _, episode in self._played_episodes(item)})

    def _attr_sw_lastWatched(self, item: MediaItem) -> datetime | None:
        return _latest(
            [
                jellyfin.parse_date((episode.get("UserData") or {}).get("LastPlayedDate"))
                for _, episode in self._played_episodes(item)
            ]
        )

    def _attr_sw_lastEpisodeAddedAt(self, item: MediaItem) -> datetime | None:
        return _latest([jellyfin.parse_date(e.get("DateCreated")) for e in self._all_episodes(item)])

    def _attr_sw_amountOfViews(self, item: MediaItem) -> int:
        return sum(
            int((episode.get("UserData") or {}).get("PlayCount") or 1) for _, episode in self._played_episodes(item)
        )


# ---------------------------------------------------------------------------
# Radarr / Sonarr
# ---------------------------------------------------------------------------


class RadarrAttributeProvider:
    """Movie records from Radarr, matched by TMDB id."""

    def __init__(self, radarr: RadarrApi) -> None:
        self.radarr = radarr
        self.reset()

    def reset(self) -> None:
        self._movies: dict[int, dict[str, Any] | None] = {}
        self._tags: dict[int, str] | None = None

    def get_attribute(self, item: MediaItem, entry: RuleCatalogEntry) -> Any:
        return _dispatch(self, item, entry)

    def _movie(self, item: MediaItem) -> dict[str, Any]:
        if item.tmdb_id is None:
            raise AttributeUnavailable(f"Item {item.media_server_id} has no TMDB id")
        if item.tmdb_id not in self._movies:
            self._movies[item.tmdb_id] = self.radarr.get_movie_by_tmdb_id(item.tmdb_id)
        movie = self._movies[item.tmdb_id]
        if movie is None:
            raise AttributeUnavailable(f"TMDB id {item.tmdb_id} is not in Radarr")
        return movie

    def _file(self, item: MediaItem) -> dict[str, Any]:
        movie_file = self._movie(item).get("movieFile")
        if not movie_file:
            raise AttributeUnavailable(f"Radarr has no file for TMDB id {item.tmdb_id}")
        return movie_file

    def _attr_addDate(self, item: MediaItem) -> datetime | None:
        return jellyfin.parse_date(self._movie(item).get("added"))

    def _attr_fileDate(self, item: MediaItem) -> datetime | None:
        return jellyfin.parse_date(self._file(item).get("dateAdded"))

    def _attr_filePath(self, item: MediaItem) -> str | None:
        return self._file(item).get("path")

    def _attr_fileQuality(self, item: MediaItem) -> str | None:
        return ((self._file(item).get("quality") or {}).get("quality") or {}).get("name")

    def _attr_profile(self, item: MediaItem) -> int | None:
        return self._movie(item).get("qualityProfileId")

    def _attr_monitored(self, item: MediaItem) -> bool:
        return bool(self._movie(item).get("monitored"))

    def _attr_tags(self, item: MediaItem) -> list[str]:
        if self._tags is None:
            self._tags = self.radarr.get_tags()
        return [self._tags.get(int(t), str(t)) for t in self._movie(item).get("tags") or []]

    def _attr_runTime(self, item: MediaItem) -> int | None:
        return self._movie(item).get("runtime")

    def _attr_fileSize(self, item: MediaItem) -> float:
        return float(self._movie(item).get("sizeOnDisk") or 0) / _MB

    def _attr_releaseDate(self, item: MediaItem) -> datetime | None:
        movie = self._movie(item)
        return jellyfin.parse_date(
            movie.get("digitalRelease") or movie.get("physicalRelease") or movie.get("inCinemas")
        )

    def _attr_originalLanguage(self, item: MediaItem) -> str | None:
        return (self._movie(item).get("originalLanguage") or {}).get("name")

    def _attr_rating_imdb(self, item: MediaItem) -> float | None:
        return ((self._movie(item).get("ratings") or {}).get("imdb") or {}).get("value")


class SonarrAttributeProvider:
    """Series, season and episode records from Sonarr, matched by TVDB id."""

    def __init__(self, sonarr: SonarrApi) -> None:
        self.sonarr = sonarr
        self.reset()

    def reset(self) -> None:
        self._series: dict[int, dict[str, Any] | None] = {}
        self._episodes: dict[tuple[int, int], list[dict[str, Any]]] = {}
        self._tags: dict[int, str] | None = None

    def get_attribute(self, item: MediaItem, entry: RuleCatalogEntry) -> Any:
        return _dispatch(self, item, entry)

    def _show(self, item: MediaItem) -> dict[str, Any]:
        if item.tvdb_id is None:
            raise AttributeUnavailable(f"Item {item.media_server_id} has no TVDB id")
        if item.tvdb_id not in self._series:
            self._series[item.tvdb_id] = self.sonarr.get_series_by_tvdb_id(item.tvdb_id)
        series = self._series[item.tvdb_id]
        if series is None:
            raise AttributeUnavailable(f"TVDB id {item.tvdb_id} is not in Sonarr")
        return series

    def _season(self, item: MediaItem) -> dict[str, Any]:
        number = item.index if item.type is MediaType.SEASONS else item.parent_index
        for season in self._show(item).get("seasons") or []:
            if season.get("seasonNumber") == number:
                return season
        raise AttributeUnavailable(f"Season {number} of TVDB id {item.tvdb_id} is not in Sonarr")

    def _episode(self, item: MediaItem) -> dict[str, Any]:
        series_id = int(self._show(item)["id"])
        key = (series_id, int(item.parent_index or 0))
        if key not in self._episodes:
            self._episodes[key] = self.sonarr.get_episodes(series_id, item.parent_index)
        for episode in self._episodes[key]:
            if episode.get("episodeNumber") == item.index:
                return episode
        raise AttributeUnavailable(f"Episode {item.media_server_id} is not in Sonarr")

    def _attr_addDate(self, item: MediaItem) -> datetime | None:
        return jellyfin.parse_date(self._show(item).get("added"))

    def _attr_diskSizeEntireShow(self, item: MediaItem) -> float:
        return float((self._show(item).get("statistics") or {}).get("sizeOnDisk") or 0) / _MB

    def _attr_tags(self, item: MediaItem) -> list[str]:
        if self._tags is None:
            self._tags = self.sonarr.get_tags()
        return [self._tags.get(int(t), str(t)) for t in self._show(item).get("tags") or []]

    def _attr_qualityProfileId(self, item: MediaItem) -> int | None:
        return self._show(item).get("qualityProfileId")

    def _attr_firstAirDate(self, item: MediaItem) -> datetime | None:
        return jellyfin.parse_date(self._show(item).get("firstAired"))

    def _attr_seasons(self, item: MediaItem) -> int:
        return len([s for s in self._show(item).get("seasons") or [] if s.get("seasonNumber", 0) > 0])

    def _attr_status(self, item: MediaItem) -> str | None:
        return self._show(item).get("status")

    def _attr_ended(self, item: MediaItem) -> bool:
        return bool(self._show(item).get("ended"))

    def _attr_monitored(self, item: MediaItem) -> bool:
        if item.type is MediaType.SEASONS:
            return bool(self._season(item).get("monitored"))
        if item.type is MediaType.EPISODES:
            return bool(self._episode(item).get("monitored"))
        return bool(self._show(item).get("monitored"))

    def _attr_episodeFileCount(self, item: MediaItem) -> int:
        if item.type is MediaType.SEASONS:
            return int((self._season(item).get("statistics") or {}).get("episodeFileCount") or 0)
        return int((self._show(item).get("statistics") or {}).get("episodeFileCount") or 0)

    def _attr_network(self, item: MediaItem) -> str | None:
        return self._show(item).get("network")


# ---------------------------------------------------------------------------
# Tautulli / Seerr
# ---------------------------------------------------------------------------


class TautulliApi(ApiClient):
    service_name = "tautulli"

    def _headers(self) -> dict[str, str]:
        return {}

    def get_history(self, **filters: Any) -> list[dict[str, Any]]:
        params = {"apikey": self.api_key, "cmd": "get_history", "length": 1000, **filters}
        payload = self._request("get", "/api/v2", params=params) or {}
        return ((payload.get("response") or {}).get("data") or {}).get("data") or []


class SeerrApi(ApiClient):
    service_name = "seerr"

    def get_media(self, media_type: MediaType, tmdb_id: int) -> dict[str, Any] | None:
        kind = "movie" if media_type is MediaType.MOVIES else "tv"
        try:
            return self._request("get", f"/api/v1/{kind}/{tmdb_id}")
        except ExternalCallFailed as exc:
            if exc.status == 404:
                return None
            raise


class TautulliAttributeProvider:
    """Watch history from Tautulli, keyed by the item's rating key."""

    _KEY_BY_TYPE: dict[MediaType, str] = {
        MediaType.MOVIES: "rating_key",
        MediaType.EPISODES: "rating_key",
        MediaType.SEASONS: "parent_rating_key",
        MediaType.SHOWS: "grandparent_rating_key",
    }

    def __init__(self, api: TautulliApi) -> None:
        self.api = api
        self.reset()

    def reset(self) -> None:
        self._history: dict[str, list[dict[str, Any]]] = {}

    def get_attribute(self, item: MediaItem, entry: RuleCatalogEntry) -> Any:
        return _dispatch(self, item, entry)

    def _watched(self, item: MediaItem) -> list[dict[str, Any]]:
        if item.media_server_id not in self._history:
            key = self._KEY_BY_TYPE[item.type]
            self._history[item.media_server_id] = self.api.get_history(**{key: item.media_server_id})
        return [h for h in self._history[item.media_server_id] if h.get("watched_status") == 1]

    def _attr_lastWatched(self, item: MediaItem) -> datetime | None:
        return _latest(
            [datetime.fromtimestamp(int(h["date"]), tz=timezone.utc) for h in self._watched(item) if h.get("date")]
        )

    def _attr_viewCount(self, item: MediaItem) -> int:
        return len(self._watched(item))

    def _attr_seenBy(self, item: MediaItem) -> list[str]:
        return sorted({str(h.get("user")) for h in self._watched(item) if h.get("user")})

    def _attr_watchedPercentage(self, item: MediaItem) -> int:
        history = self._history.get(item.media_server_id)
        if history is None:
            self._watched(item)
            history = self._history[item.media_server_id]
        return max((int(h.get("percent_complete") or 0) for h in history), default=0)


class SeerrAttributeProvider:
    """Request information from Overseerr / Jellyseerr, matched by TMDB id."""

    def __init__(self, api: SeerrApi) -> None:
        self.api = api
        self.reset()

    def reset(self) -> None:
        self._media: dict[tuple[MediaType, int], dict[str, Any] | None] = {}

    def get_attribute(self, item: MediaItem, entry: RuleCatalogEntry) -> Any:
        return _dispatch(self, item, entry)

    def _record(self, item: MediaItem) -> dict[str, Any]:
        if item.tmdb_id is None:
            raise AttributeUnavailable(f"Item {item.media_server_id} has no TMDB id")
        kind = MediaType.MOVIES if item.type is MediaType.MOVIES else MediaType.SHOWS
        key = (kind, item.tmdb_id)
        if key not in self._media:
            self._media[key] = self.api.get_media(kind, item.tmdb_id)
        record = self._media[key]
        if record is None:
            raise AttributeUnavailable(f"TMDB id {item.tmdb_id} is unknown to Seerr")
        return record

    def _requests(self, item: MediaItem) -> list[dict[str, Any]]:
        requests_ = (self._record(item).get("mediaInfo") or {}).get("requests") or []
        if item.type in (MediaType.SEASONS, MediaType.EPISODES):
            season = item.index if item.type is MediaType.SEASONS else item.parent_index
            requests_ = [
                r
                for r in requests_
                if not r.get("seasons") or any(s.get("seasonNumber") == season for s in r["seasons"])
            ]
        return requests_

    def _attr_addUser(self, item: MediaItem) -> list[str]:
        users = []
        for request in self._requests(item):
            user = request.get("requestedBy") or {}
            name = user.get("displayName") or user.get("username") or user.get("plexUsername")
            if name and name not in users:
                users.append(name)
        return users

    def _attr_requestDate(self, item: MediaItem) -> datetime | None:
        return _earliest([jellyfin.parse_date(r.get("createdAt")) for r in self._requests(item)])

    def _attr_releaseDate(self, item: MediaItem) -> datetime | None:
        record = self._record(item)
        return jellyfin.parse_date(record.get("releaseDate") or record.get("firstAirDate"))

    def _attr_approvalDate(self, item: MediaItem) -> datetime | None:
        return _earliest(
            [jellyfin.parse_date(r.get("updatedAt")) for r in self._requests(item) if r.get("status") == 2]
        )

    def _attr_isRequested(self, item: MediaItem) -> bool:
        return bool(self._requests(item))

    def _attr_amountRequested(self, item: MediaItem) -> int:
        return len(self._requests(item))
