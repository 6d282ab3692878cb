"""
catalog.py – Registry of the attributes a rule can compare.

Every rule operand points at a ``(application_id, property_id)`` pair.  The
catalog maps those pairs to a human-readable ``"application.property"``
identifier (used by the rule document codec), the value type that drives
comparison semantics, and the media types the attribute applies to.

The catalog is constructed explicitly and passed to whoever needs it;
:func:`build_default_catalog` returns the registry used by the application,
tests are free to build a smaller one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

from errors import UnknownAttribute
from models import AttributeRef, MediaType, ValueType

_ALL: tuple[MediaType, ...] = tuple(MediaType)
_MOVIES: tuple[MediaType, ...] = (MediaType.MOVIES,)
_EPISODIC: tuple[MediaType, ...] = (MediaType.SHOWS, MediaType.SEASONS, MediaType.EPISODES)


@dataclass(frozen=True)
class RuleCatalogEntry:
    application_id: int
    property_id: int
    application: str
    name: str
    value_type: ValueType
    human_name: str = ""
    media_types: tuple[MediaType, ...] = _ALL

    @property
    def ref(self) -> AttributeRef:
        return (self.application_id, self.property_id)

    def supports(self, media_type: MediaType) -> bool:
        return media_type in self.media_types


class RuleCatalog:
    """Immutable lookup table of :class:`RuleCatalogEntry` objects."""

    def __init__(self, entries: Iterable[RuleCatalogEntry]) -> None:
        self._by_ref: dict[AttributeRef, RuleCatalogEntry] = {}
        self._by_identifier: dict[str, RuleCatalogEntry] = {}
        self._applications: dict[int, str] = {}
        for entry in entries:
            if entry.ref in self._by_ref:
                raise ValueError(f"Duplicate catalog entry for {entry.ref}")
            identifier = self.identifier_of(entry).lower()
            if identifier in self._by_identifier:
                raise ValueError(f"Duplicate catalog identifier {identifier!r}")
            known_app = self._applications.setdefault(entry.application_id, entry.application)
            if known_app != entry.application:
                raise ValueError(
                    f"Application id {entry.application_id} registered as both "
                    f"{known_app!r} and {entry.application!r}"
                )
            self._by_ref[entry.ref] = entry
            self._by_identifier[identifier] = entry

    def __iter__(self) -> Iterator[RuleCatalogEntry]:
        return iter(self._by_ref.values())

    def __len__(self) -> int:
        return len(self._by_ref)

    def resolve(self, application_id: int, property_id: int) -> RuleCatalogEntry:
        """Return the entry registered for ``(application_id, property_id)``.

        Raises:
            UnknownAttribute: If the pair is not registered.
        """
        try:
            return self._by_ref[(int(application_id), int(property_id))]
        except (KeyError, TypeError, ValueError):
            raise UnknownAttribute((application_id, property_id)) from None

    def resolve_ref(self, ref: AttributeRef) -> RuleCatalogEntry:
        return self.resolve(ref[0], ref[1])

    def resolve_by_identifier(self, identifier: str) -> RuleCatalogEntry:
        """Return the entry for a case-insensitive ``"application.property"`` identifier.

        Raises:
            UnknownAttribute: If the identifier is malformed or not registered.
        """
        key = str(identifier or "").strip().lower()
        entry = self._by_identifier.get(key)
        if entry is None:
            raise UnknownAttribute(identifier)
        return entry

    @staticmethod
    def identifier_of(entry: RuleCatalogEntry) -> str:
        return f"{entry.application}.{entry.name}"

    def application_name(self, application_id: int) -> str:
        try:
            return self._applications[application_id]
        except KeyError:
            raise UnknownAttribute(application_id) from None

    def entries_for(self, application: int | str) -> list[RuleCatalogEntry]:
        """Return the entries of one application, by id or (case-insensitive) name."""
        if isinstance(application, str):
            name = application.lower()
            return [e for e in self if e.application.lower() == name]
        return [e for e in self if e.application_id == application]


# ---------------------------------------------------------------------------
# Default catalog
# ---------------------------------------------------------------------------

JELLYFIN, RADARR, SONARR, SEERR, TAUTULLI = 0, 1, 2, 3, 4

# (property_id, name, value_type, human name, media types)
_JELLYFIN_PROPS: list[tuple[int, str, ValueType, str, tuple[MediaType, ...]]] = [
    (0, "addDate", ValueType.DATE, "Date added", _ALL),
    (1, "seenBy", ValueType.TEXT_ARRAY, "Viewed by (username)", _ALL),
    (2, "releaseDate", ValueType.DATE, "Release date", _ALL),
    (3, "rating_critics", ValueType.NUMBER, "Critics rating (scale 1-10)", _ALL),
    (4, "rating_audience", ValueType.NUMBER, "Community rating (scale 1-10)", _ALL),
    (5, "viewCount", ValueType.NUMBER, "Times viewed", _ALL),
    (6, "collections", ValueType.NUMBER, "Present in amount of other collections", _ALL),
    (7, "lastViewedAt", ValueType.DATE, "Last view date", _ALL),
    (8, "fileVideoResolution", ValueType.TEXT, "Video resolution", (MediaType.MOVIES, MediaType.EPISODES)),
    (9, "fileBitrate", ValueType.NUMBER, "Bitrate", (MediaType.MOVIES, MediaType.EPISODES)),
    (10, "fileVideoCodec", ValueType.TEXT, "Video codec", (MediaType.MOVIES, MediaType.EPISODES)),
    (11, "genre", ValueType.TEXT_ARRAY, "Genres", _ALL),
    (12, "labels", ValueType.TEXT_ARRAY, "Tags", _ALL),
    (13, "people", ValueType.TEXT_ARRAY, "People involved", _ALL),
    (14, "collection_names", ValueType.TEXT_ARRAY, "Collections (names)", _ALL),
    (15, "sw_episodes", ValueType.NUMBER, "Amount of available episodes", (MediaType.SHOWS, MediaType.SEASONS)),
    (16, "sw_viewedEpisodes", ValueType.NUMBER, "Amount of watched episodes", (MediaType.SHOWS, MediaType.SEASONS)),
    (17, "sw_lastWatched", ValueType.DATE, "Newest episode view date", (MediaType.SHOWS, MediaType.SEASONS)),
    (18, "sw_lastEpisodeAddedAt", ValueType.DATE, "Last episode added at", (MediaType.SHOWS, MediaType.SEASONS)),
    (19, "sw_amountOfViews", ValueType.NUMBER, "Total views", (MediaType.SHOWS, MediaType.SEASONS)),
]

_RADARR_PROPS: list[tuple[int, str, ValueType, str, tuple[MediaType, ...]]] = [
    (0, "addDate", ValueType.DATE, "Date added", _MOVIES),
    (1, "fileDate", ValueType.DATE, "Date file downloaded", _MOVIES),
    (2, "filePath", ValueType.TEXT, "File path", _MOVIES),
    (3, "fileQuality", ValueType.TEXT, "File quality", _MOVIES),
    (4, "profile", ValueType.NUMBER, "Quality profile id", _MOVIES),
    (5, "monitored", ValueType.BOOL, "Is monitored", _MOVIES),
    (6, "tags", ValueType.TEXT_ARRAY, "Tags", _MOVIES),
    (7, "runTime", ValueType.NUMBER, "Runtime (minutes)", _MOVIES),
    (8, "fileSize", ValueType.NUMBER, "File size (MB)", _MOVIES),
    (9, "releaseDate", ValueType.DATE, "Digital release date", _MOVIES),
    (10, "originalLanguage", ValueType.TEXT, "Original language", _MOVIES),
    (11, "rating_imdb", ValueType.NUMBER, "IMDb rating (scale 1-10)", _MOVIES),
]

_SONARR_PROPS: list[tuple[int, str, ValueType, str, tuple[MediaType, ...]]] = [
    (0, "addDate", ValueType.DATE, "Date added", _EPISODIC),
    (1, "diskSizeEntireShow", ValueType.NUMBER, "Disk size of entire show (MB)", _EPISODIC),
    (2, "tags", ValueType.TEXT_ARRAY, "Tags", _EPISODIC),
    (3, "qualityProfileId", ValueType.NUMBER, "Quality profile id", _EPISODIC),
    (4, "firstAirDate", ValueType.DATE, "First air date", _EPISODIC),
    (5, "seasons", ValueType.NUMBER, "Number of seasons", (MediaType.SHOWS,)),
    (6, "status", ValueType.TEXT, "Show status", _EPISODIC),
    (7, "ended", ValueType.BOOL, "Show ended", _EPISODIC),
    (8, "monitored", ValueType.BOOL, "Is monitored", _EPISODIC),
    (9, "episodeFileCount", ValueType.NUMBER, "Downloaded episodes", (MediaType.SHOWS, MediaType.SEASONS)),
    (10, "network", ValueType.TEXT, "Network", _EPISODIC),
]

_SEERR_PROPS: list[tuple[int, str, ValueType, str, tuple[MediaType, ...]]] = [
    (0, "addUser", ValueType.TEXT_ARRAY, "Requested by user", _ALL),
    (1, "requestDate", ValueType.DATE, "Request date", _ALL),
    (2, "releaseDate", ValueType.DATE, "Release date", _ALL),
    (3, "approvalDate", ValueType.DATE, "Approval date", _ALL),
    (4, "isRequested", ValueType.BOOL, "Is requested", _ALL),
    (5, "amountRequested", ValueType.NUMBER, "Amount of requests", _ALL),
]

_TAUTULLI_PROPS: list[tuple[int, str, ValueType, str, tuple[MediaType, ...]]] = [
    (0, "lastWatched", ValueType.DATE, "Last watched", _ALL),
    (1, "viewCount", ValueType.NUMBER, "Times viewed", _ALL),
    (2, "seenBy", ValueType.TEXT_ARRAY, "Viewed by (username)", _ALL),
    (3, "watchedPercentage", ValueType.NUMBER, "Highest watched percentage", _ALL),
]


def build_default_catalog() -> RuleCatalog:
    """Build the catalog of every attribute the bundled providers can resolve."""
    tables = [
        (JELLYFIN, "jellyfin", _JELLYFIN_PROPS),
        (RADARR, "radarr", _RADARR_PROPS),
        (SONARR, "sonarr", _SONARR_PROPS),
        (SEERR, "seerr", _SEERR_PROPS),
        (TAUTULLI, "tautulli", _TAUTULLI_PROPS),
    ]
    return RuleCatalog(
        RuleCatalogEntry(app_id, prop_id, app_name, name, value_type, human, media_types)
        for app_id, app_name, props in tables
        for prop_id, name, value_type, human, media_types in props
    )
