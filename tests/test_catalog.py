import pytest

from catalog import JELLYFIN, RADARR, RuleCatalog, RuleCatalogEntry
from errors import UnknownAttribute
from models import MediaType, ValueType


def test_resolve_by_ref(catalog):
    entry = catalog.resolve(RADARR, 5)
    assert entry.name == "monitored"
    assert entry.value_type is ValueType.BOOL
    assert catalog.resolve_ref((RADARR, 5)) is entry


def test_resolve_unknown_raises(catalog):
    with pytest.raises(UnknownAttribute):
        catalog.resolve(99, 0)
    with pytest.raises(UnknownAttribute):
        catalog.resolve("x", "y")


def test_identifier_lookup_is_case_insensitive(catalog):
    entry = catalog.resolve_by_identifier("  Jellyfin.ADDDATE ")
    assert entry.ref == (JELLYFIN, 0)
    assert catalog.identifier_of(entry) == "jellyfin.addDate"
    with pytest.raises(UnknownAttribute):
        catalog.resolve_by_identifier("jellyfin")


def test_media_type_support(catalog):
    assert catalog.resolve_by_identifier("radarr.monitored").supports(MediaType.MOVIES)
    assert not catalog.resolve_by_identifier("radarr.monitored").supports(MediaType.SHOWS)
    assert catalog.resolve_by_identifier("sonarr.seasons").media_types == (MediaType.SHOWS,)


def test_entries_for_application(catalog):
    by_name = catalog.entries_for("Tautulli")
    assert {e.name for e in by_name} == {"lastWatched", "viewCount", "seenBy", "watchedPercentage"}
    assert catalog.entries_for(RADARR) == catalog.entries_for("radarr")
    assert catalog.application_name(RADARR) == "radarr"
    with pytest.raises(UnknownAttribute):
        catalog.application_name(42)


def test_identifiers_are_unique(catalog):
    identifiers = [catalog.identifier_of(e).lower() for e in catalog]
    assert len(identifiers) == len(set(identifiers)) == len(catalog)


def test_duplicate_entries_rejected():
    entry = RuleCatalogEntry(0, 0, "jellyfin", "addDate", ValueType.DATE)
    with pytest.raises(ValueError):
        RuleCatalog([entry, RuleCatalogEntry(0, 0, "jellyfin", "other", ValueType.DATE)])
    with pytest.raises(ValueError):
        RuleCatalog([entry, RuleCatalogEntry(0, 1, "jellyfin", "AddDate", ValueType.DATE)])
    with pytest.raises(ValueError):
        RuleCatalog([entry, RuleCatalogEntry(0, 1, "radarr", "tags", ValueType.TEXT_ARRAY)])
