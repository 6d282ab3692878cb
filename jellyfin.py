"""
jellyfin.py – Jellyfin API client helpers.

Thin functions around ``requests`` for the Jellyfin endpoints the engine
needs: paging through a library, reading items and per-user play state, and
managing collections ("BoxSets").  Every call carries an explicit timeout;
transport errors and non-2xx answers are raised as
:class:`~errors.ExternalCallFailed`.

:class:`JellyfinMirror` bundles the collection helpers into the mirror object
used by the collection state machine and the action dispatcher, and
:class:`JellyfinMediaSource` turns library pages into :class:`~models.MediaItem`
objects for the enforcement run.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import requests

from errors import ExternalCallFailed, MirrorInconsistent
from models import Collection, MediaItem, MediaType

logger = logging.getLogger(__name__)

# Jellyfin item types per media type.
ITEM_TYPES: dict[MediaType, str] = {
    MediaType.MOVIES: "Movie",
    MediaType.SHOWS: "Series",
    MediaType.SEASONS: "Season",
    MediaType.EPISODES: "Episode",
}

_MEDIA_TYPES: dict[str, MediaType] = {v: k for k, v in ITEM_TYPES.items()}

_FRACTION = re.compile(r"\.(\d+)")

# Fields requested for every item so the attribute providers can work from
# the raw payload without another round trip.
ITEM_FIELDS: str = ",".join(
    [
        "DateCreated",
        "PremiereDate",
        "ProviderIds",
        "Genres",
        "Tags",
        "People",
        "MediaSources",
        "Path",
        "ChildCount",
        "CriticRating",
        "CommunityRating",
        "ParentId",
    ]
)

# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


def _call(
    method: str,
    base_url: str,
    api_key: str,
    path: str,
    *,
    params: dict[str, Any] | None = None,
    json: Any = None,
    timeout: float = 10,
) -> Any:
    """Perform one Jellyfin request and return the decoded JSON body (or ``None``).

    Raises:
        ExternalCallFailed: On a transport error or a non-2xx status.
    """
    url = f"{base_url.rstrip('/')}{path}"
    try:
        response = requests.request(
            method,
            url,
            params=params,
            json=json,
            headers={"X-Emby-Token": api_key},
            timeout=timeout,
        )
        response.raise_for_status()
    except requests.exceptions.RequestException as exc:
        msg = f"Jellyfin {method.upper()} {path} failed"
        status = None
        if getattr(exc, "response", None) is not None:
            status = exc.response.status_code
            msg += f" (Status {status}): {exc.response.text}"
        else:
            msg += f": {exc!s}"
        raise ExternalCallFailed(msg, status=status) from exc

    if response.status_code == 204 or not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


def fetch_library_page(
    base_url: str,
    api_key: str,
    library_id: str,
    media_type: MediaType,
    start_index: int,
    limit: int,
    *,
    timeout: float = 10,
) -> tuple[list[dict[str, Any]], int]:
    """Fetch one page of a library, sorted by name then id for stable paging.

    Returns:
        ``(items, total_record_count)``.
    """
    payload = _call(
        "get",
        base_url,
        api_key,
        "/Items",
        params={
            "ParentId": library_id,
            "Recursive": "true",
            "IncludeItemTypes": ITEM_TYPES[media_type],
            "StartIndex": start_index,
            "Limit": limit,
            "SortBy": "SortName,Id",
            "SortOrder": "Ascending",
            "Fields": ITEM_FIELDS,
        },
        timeout=timeout,
    ) or {}
    items = payload.get("Items", [])
    return items, int(payload.get("TotalRecordCount", len(items)))


def get_item(base_url: str, api_key: str, item_id: str, *, timeout: float = 10) -> dict[str, Any] | None:
    """Return the raw item with id *item_id*, or ``None`` when it no longer exists."""
    payload = _call(
        "get",
        base_url,
        api_key,
        "/Items",
        params={"Ids": item_id, "Fields": ITEM_FIELDS},
        timeout=timeout,
    ) or {}
    items = payload.get("Items", [])
    return items[0] if items else None


def get_children(
    base_url: str,
    api_key: str,
    parent_id: str,
    item_types: str | None = None,
    *,
    recursive: bool = False,
    timeout: float = 10,
) -> list[dict[str, Any]]:
    params: dict[str, Any] = {"ParentId": parent_id, "Fields": ITEM_FIELDS}
    if recursive:
        params["Recursive"] = "true"
    if item_types:
        params["IncludeItemTypes"] = item_types
    payload = _call("get", base_url, api_key, "/Items", params=params, timeout=timeout) or {}
    return payload.get("Items", [])


def get_users(base_url: str, api_key: str, *, timeout: float = 10) -> list[dict[str, Any]]:
    return _call("get", base_url, api_key, "/Users", timeout=timeout) or []


def get_user_item_data(
    base_url: str, api_key: str, user_id: str, item_id: str, *, timeout: float = 10
) -> dict[str, Any]:
    """Return the ``UserData`` block (play count, played flag, last played) of one item."""
    item = _call("get", base_url, api_key, f"/Users/{user_id}/Items/{item_id}", timeout=timeout) or {}
    return item.get("UserData", {})


def get_user_played_children(
    base_url: str,
    api_key: str,
    user_id: str,
    parent_id: str,
    item_types: str = "Episode",
    *,
    timeout: float = 10,
) -> list[dict[str, Any]]:
    """Return the descendants of *parent_id* that *user_id* has played."""
    payload = _call(
        "get",
        base_url,
        api_key,
        f"/Users/{user_id}/Items",
        params={
            "ParentId": parent_id,
            "Recursive": "true",
            "IncludeItemTypes": item_types,
            "IsPlayed": "true",
            "Fields": "DateCreated",
        },
        timeout=timeout,
    ) or {}
    return payload.get("Items", [])


def delete_item(base_url: str, api_key: str, item_id: str, *, timeout: float = 10) -> None:
    """Delete an item (and its files) from the media server."""
    _call("delete", base_url, api_key, f"/Items/{item_id}", timeout=timeout)


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


def get_collections(base_url: str, api_key: str, *, timeout: float = 10) -> list[dict[str, Any]]:
    """Return every BoxSet on the server.

    Jellyfin keeps collections in their own virtual library, so they cannot
    be filtered by the library their children live in.
    """
    payload = _call(
        "get",
        base_url,
        api_key,
        "/Items",
        params={"Recursive": "true", "IncludeItemTypes": "BoxSet", "Fields": "ChildCount"},
        timeout=timeout,
    ) or {}
    return payload.get("Items", [])


def find_collection_by_title(
    base_url: str, api_key: str, title: str, *, timeout: float = 10
) -> dict[str, Any] | None:
    wanted = title.strip()
    for collection in get_collections(base_url, api_key, timeout=timeout):
        if str(collection.get("Name", "")).strip() == wanted and collection.get("Type", "BoxSet") == "BoxSet":
            return collection
    return None


def find_collection_by_id(
    base_url: str, api_key: str, collection_id: str, *, timeout: float = 10
) -> dict[str, Any] | None:
    """Return the collection with id *collection_id*, or ``None`` if it is gone.

    Raises:
        MirrorInconsistent: If the id points at something that is not a BoxSet.
    """
    item = get_item(base_url, api_key, collection_id, timeout=timeout)
    if item is None:
        return None
    if item.get("Type") != "BoxSet":
        raise MirrorInconsistent(f"Jellyfin item {collection_id} is a {item.get('Type')!r}, not a collection")
    return item


def create_collection(
    base_url: str,
    api_key: str,
    title: str,
    item_ids: list[str] | None = None,
    *,
    timeout: float = 10,
) -> str:
    params: dict[str, Any] = {"Name": title}
    if item_ids:
        params["Ids"] = ",".join(item_ids)
    payload = _call("post", base_url, api_key, "/Collections", params=params, timeout=timeout) or {}
    collection_id = payload.get("Id")
    if not collection_id:
        raise ExternalCallFailed(f"Jellyfin did not return an id for new collection {title!r}")
    return str(collection_id)


def update_collection(
    base_url: str,
    api_key: str,
    collection_id: str,
    title: str,
    description: str | None = None,
    *,
    timeout: float = 10,
) -> None:
    item = get_item(base_url, api_key, collection_id, timeout=timeout)
    if item is None:
        raise ExternalCallFailed(f"Jellyfin collection {collection_id} not found", status=404)
    item["Name"] = title
    if description is not None:
        item["Overview"] = description
    _call("post", base_url, api_key, f"/Items/{collection_id}", json=item, timeout=timeout)


def delete_collection(base_url: str, api_key: str, collection_id: str, *, timeout: float = 10) -> None:
    _call("delete", base_url, api_key, f"/Items/{collection_id}", timeout=timeout)


def add_to_collection(
    base_url: str, api_key: str, collection_id: str, item_ids: list[str], *, timeout: float = 10
) -> None:
    _call(
        "post",
        base_url,
        api_key,
        f"/Collections/{collection_id}/Items",
        params={"Ids": ",".join(item_ids)},
        timeout=timeout,
    )


def remove_from_collection(
    base_url: str, api_key: str, collection_id: str, item_ids: list[str], *, timeout: float = 10
) -> None:
    _call(
        "delete",
        base_url,
        api_key,
        f"/Collections/{collection_id}/Items",
        params={"Ids": ",".join(item_ids)},
        timeout=timeout,
    )


def get_collection_children(
    base_url: str, api_key: str, collection_id: str, *, timeout: float = 10
) -> list[dict[str, Any]]:
    return get_children(base_url, api_key, collection_id, timeout=timeout)


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def parse_date(value: Any) -> datetime | None:
    """Parse a Jellyfin timestamp (``2023-01-02T03:04:05.0000000Z``) as aware UTC."""
    if not value:
        return None
    text = str(value).strip().replace("Z", "+00:00")
    # Jellyfin emits 7 fractional digits; fromisoformat accepts at most 6.
    match = _FRACTION.search(text)
    if match:
        text = f"{text[: match.start()]}.{match.group(1)[:6]}{text[match.end():]}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def to_media_item(raw: dict[str, Any], library_id: str = "") -> MediaItem:
    """Convert a raw Jellyfin item into a :class:`MediaItem`.

    Seasons point at their show through ``parent_id``; episodes point at
    their season (``parent_id``) and show (``grandparent_id``).
    """
    media_type = _MEDIA_TYPES.get(str(raw.get("Type")), MediaType.MOVIES)
    provider_ids = {str(k).lower(): v for k, v in (raw.get("ProviderIds") or {}).items()}

    parent_id = grandparent_id = None
    if media_type is MediaType.SEASONS:
        parent_id = raw.get("SeriesId") or raw.get("ParentId")
    elif media_type is MediaType.EPISODES:
        parent_id = raw.get("SeasonId") or raw.get("ParentId")
        grandparent_id = raw.get("SeriesId")

    sizes = [s.get("Size") for s in raw.get("MediaSources") or [] if s.get("Size")]
    return MediaItem(
        media_server_id=str(raw["Id"]),
        title=str(raw.get("Name", "")),
        type=media_type,
        library_id=library_id,
        parent_id=parent_id,
        grandparent_id=grandparent_id,
        index=_int_or_none(raw.get("IndexNumber")),
        parent_index=_int_or_none(raw.get("ParentIndexNumber")),
        tmdb_id=_int_or_none(provider_ids.get("tmdb")),
        tvdb_id=_int_or_none(provider_ids.get("tvdb")),
        imdb_id=provider_ids.get("imdb"),
        added_at=parse_date(raw.get("DateCreated")),
        size_bytes=sum(sizes) if sizes else None,
        raw=raw,
    )


# ---------------------------------------------------------------------------
# Mirror / media source objects
# ---------------------------------------------------------------------------


@dataclass
class Mirror:
    """A collection as it exists on the media server."""

    id: str
    title: str
    child_count: int


class JellyfinMirror:
    """Media server mirror capability backed by Jellyfin BoxSets."""

    def __init__(self, base_url: str, api_key: str, *, timeout: float = 10) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _to_mirror(self, raw: dict[str, Any]) -> Mirror:
        child_count = raw.get("ChildCount")
        if child_count is None:
            child_count = len(self.get_children(str(raw["Id"])))
        return Mirror(id=str(raw["Id"]), title=str(raw.get("Name", "")), child_count=int(child_count))

    def find_collection_by_title(self, library_id: str, title: str) -> Mirror | None:
        raw = find_collection_by_title(self.base_url, self.api_key, title, timeout=self.timeout)
        return self._to_mirror(raw) if raw else None

    def find_collection_by_id(self, collection_id: str) -> Mirror | None:
        raw = find_collection_by_id(self.base_url, self.api_key, collection_id, timeout=self.timeout)
        return self._to_mirror(raw) if raw else None

    def create_collection(self, collection: Collection, item_ids: list[str] | None = None) -> Mirror:
        collection_id = create_collection(
            self.base_url, self.api_key, collection.mirror_title, item_ids, timeout=self.timeout
        )
        if collection.description:
            update_collection(
                self.base_url,
                self.api_key,
                collection_id,
                collection.mirror_title,
                collection.description,
                timeout=self.timeout,
            )
        return Mirror(id=collection_id, title=collection.mirror_title, child_count=len(item_ids or []))

    def update_collection(self, collection: Collection) -> None:
        if not collection.media_server_id:
            raise ExternalCallFailed(f"Collection {collection.title!r} has no media server id")
        update_collection(
            self.base_url,
            self.api_key,
            collection.media_server_id,
            collection.mirror_title,
            collection.description,
            timeout=self.timeout,
        )

    def delete_collection(self, collection_id: str) -> None:
        delete_collection(self.base_url, self.api_key, collection_id, timeout=self.timeout)

    def add_child(self, collection_id: str, item_id: str) -> None:
        add_to_collection(self.base_url, self.api_key, collection_id, [item_id], timeout=self.timeout)

    def remove_child(self, collection_id: str, item_id: str) -> None:
        remove_from_collection(self.base_url, self.api_key, collection_id, [item_id], timeout=self.timeout)

    def get_children(self, collection_id: str) -> list[str]:
        children = get_collection_children(self.base_url, self.api_key, collection_id, timeout=self.timeout)
        return [str(child["Id"]) for child in children if "Id" in child]

    def delete_item(self, item_id: str) -> None:
        delete_item(self.base_url, self.api_key, item_id, timeout=self.timeout)


class JellyfinMediaSource:
    """Pages library items as :class:`MediaItem` objects.

    Seasons and episodes carry the provider ids of their show so that the
    acquisition managers (which index by show) can be queried directly.
    """

    def __init__(self, base_url: str, api_key: str, *, timeout: float = 10) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._series_ids: dict[str, tuple[int | None, int | None]] = {}

    def fetch_page(
        self, library_id: str, media_type: MediaType, start_index: int, limit: int
    ) -> tuple[list[MediaItem], int]:
        raw_items, total = fetch_library_page(
            self.base_url, self.api_key, library_id, media_type, start_index, limit, timeout=self.timeout
        )
        return [self._convert(raw, library_id) for raw in raw_items], total

    def get_item(self, item_id: str) -> MediaItem | None:
        raw = get_item(self.base_url, self.api_key, item_id, timeout=self.timeout)
        return self._convert(raw) if raw else None

    def _convert(self, raw: dict[str, Any], library_id: str = "") -> MediaItem:
        item = to_media_item(raw, library_id)
        series_id = raw.get("SeriesId")
        if item.type in (MediaType.SEASONS, MediaType.EPISODES) and series_id:
            item.tmdb_id, item.tvdb_id = self._series_provider_ids(str(series_id))
        return item

    def _series_provider_ids(self, series_id: str) -> tuple[int | None, int | None]:
        if series_id not in self._series_ids:
            raw = get_item(self.base_url, self.api_key, series_id, timeout=self.timeout) or {}
            show = to_media_item({"Id": series_id, **raw}) if raw else None
            self._series_ids[series_id] = (show.tmdb_id, show.tvdb_id) if show else (None, None)
        return self._series_ids[series_id]
