from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from catalog import JELLYFIN, RADARR, SEERR, SONARR, TAUTULLI
from errors import ExternalCallFailed
from models import MediaItem, MediaType
from resolver import (
    UNAVAILABLE,
    AttributeResolver,
    JellyfinAttributeProvider,
    RadarrAttributeProvider,
    SeerrAttributeProvider,
    SonarrAttributeProvider,
    TautulliAttributeProvider,
)


def ref(catalog, identifier):
    return catalog.resolve_by_identifier(identifier).ref


def test_unknown_attribute_is_unavailable(catalog, movie):
    resolver = AttributeResolver(catalog, {})
    assert resolver.resolve(movie, (42, 0)) is UNAVAILABLE
    assert not UNAVAILABLE


def test_missing_provider_is_unavailable(catalog, movie):
    resolver = AttributeResolver(catalog, {})
    assert resolver.resolve(movie, (RADARR, 5)) is UNAVAILABLE


def test_attribute_not_applicable_to_media_type(catalog, movie, mock_sonarr):
    provider = SonarrAttributeProvider(mock_sonarr)
    resolver = AttributeResolver(catalog, {"sonarr": provider})
    assert resolver.resolve(movie, (SONARR, 8)) is UNAVAILABLE
    mock_sonarr.get_series_by_tvdb_id.assert_not_called()


def test_transport_failure_is_unavailable(catalog, movie, mock_radarr):
    mock_radarr.get_movie_by_tmdb_id.side_effect = ExternalCallFailed("radarr down")
    resolver = AttributeResolver(catalog, {"radarr": RadarrAttributeProvider(mock_radarr)})
    assert resolver.resolve(movie, ref(catalog, "radarr.monitored")) is UNAVAILABLE


def test_none_value_is_unavailable(catalog, movie, mock_radarr):
    mock_radarr.get_movie_by_tmdb_id.return_value = {"id": 7}
    resolver = AttributeResolver(catalog, {"radarr": RadarrAttributeProvider(mock_radarr)})
    assert resolver.resolve(movie, ref(catalog, "radarr.runTime")) is UNAVAILABLE


def test_radarr_attributes_share_one_lookup(catalog, movie, mock_radarr):
    mock_radarr.get_movie_by_tmdb_id.return_value = {
        "id": 7,
        "monitored": True,
        "added": "2023-01-01T00:00:00Z",
        "sizeOnDisk": 3 * 1024 * 1024,
        "tags": [1, 2],
        "movieFile": {"path": "/movies/Inception.mkv", "quality": {"quality": {"name": "Bluray-1080p"}}},
    }
    mock_radarr.get_tags.return_value = {1: "keep"}
    resolver = AttributeResolver(catalog, {"radarr": RadarrAttributeProvider(mock_radarr)})

    assert resolver.resolve(movie, ref(catalog, "radarr.monitored")) is True
    assert resolver.resolve(movie, ref(catalog, "radarr.addDate")) == datetime(2023, 1, 1, tzinfo=timezone.utc)
    assert resolver.resolve(movie, ref(catalog, "radarr.fileSize")) == 3.0
    assert resolver.resolve(movie, ref(catalog, "radarr.tags")) == ["keep", "2"]
    assert resolver.resolve(movie, ref(catalog, "radarr.fileQuality")) == "Bluray-1080p"
    mock_radarr.get_movie_by_tmdb_id.assert_called_once_with(27205)

    resolver.reset()
    resolver.resolve(movie, ref(catalog, "radarr.monitored"))
    assert mock_radarr.get_movie_by_tmdb_id.call_count == 2


def test_radarr_item_not_managed(catalog, movie, mock_radarr):
    mock_radarr.get_movie_by_tmdb_id.return_value = None
    resolver = AttributeResolver(catalog, {"radarr": RadarrAttributeProvider(mock_radarr)})
    assert resolver.resolve(movie, ref(catalog, "radarr.monitored")) is UNAVAILABLE

    movie.tmdb_id = None
    assert resolver.resolve(movie, ref(catalog, "radarr.addDate")) is UNAVAILABLE


def test_snapshot_memoizes(catalog, movie):
    provider = MagicMock()
    provider.get_attribute.return_value = 3
    resolver = AttributeResolver(catalog, {"jellyfin": provider})
    snapshot = resolver.snapshot(movie)
    assert snapshot.get((JELLYFIN, 5)) == 3
    assert snapshot.get([JELLYFIN, 5]) == 3
    provider.get_attribute.assert_called_once()


def test_sonarr_season_and_episode_monitoring(catalog, mock_sonarr):
    mock_sonarr.get_series_by_tvdb_id.return_value = {
        "id": 9,
        "monitored": True,
        "seasons": [
            {"seasonNumber": 0, "monitored": False},
            {"seasonNumber": 1, "monitored": False, "statistics": {"episodeFileCount": 4}},
            {"seasonNumber": 2, "monitored": True},
        ],
    }
    mock_sonarr.get_episodes.return_value = [{"episodeNumber": 3, "monitored": True}]
    resolver = AttributeResolver(catalog, {"sonarr": SonarrAttributeProvider(mock_sonarr)})
    monitored = ref(catalog, "sonarr.monitored")

    show = MediaItem("show1", "Dark", MediaType.SHOWS, tvdb_id=334824)
    season = MediaItem("s1", "Season 1", MediaType.SEASONS, tvdb_id=334824, index=1)
    episode = MediaItem("e3", "Episode 3", MediaType.EPISODES, tvdb_id=334824, index=3, parent_index=2)
    missing = MediaItem("e9", "Episode 9", MediaType.EPISODES, tvdb_id=334824, index=9, parent_index=2)

    assert resolver.resolve(show, monitored) is True
    assert resolver.resolve(season, monitored) is False
    assert resolver.resolve(episode, monitored) is True
    assert resolver.resolve(missing, monitored) is UNAVAILABLE
    assert resolver.resolve(show, ref(catalog, "sonarr.seasons")) == 2
    assert resolver.resolve(season, ref(catalog, "sonarr.episodeFileCount")) == 4
    mock_sonarr.get_series_by_tvdb_id.assert_called_once_with(334824)
    mock_sonarr.get_episodes.assert_called_once_with(9, 2)


def test_tautulli_history(catalog, movie):
    api = MagicMock()
    api.get_history.return_value = [
        {"date": 1700000000, "user": "bob", "watched_status": 1, "percent_complete": 95},
        {"date": 1710000000, "user": "alice", "watched_status": 1, "percent_complete": 100},
        {"date": 1720000000, "user": "carol", "watched_status": 0, "percent_complete": 20},
    ]
    resolver = AttributeResolver(catalog, {"tautulli": TautulliAttributeProvider(api)})

    assert resolver.resolve(movie, (TAUTULLI, 0)) == datetime.fromtimestamp(1710000000, tz=timezone.utc)
    assert resolver.resolve(movie, (TAUTULLI, 1)) == 2
    assert resolver.resolve(movie, (TAUTULLI, 2)) == ["alice", "bob"]
    assert resolver.resolve(movie, (TAUTULLI, 3)) == 100
    api.get_history.assert_called_once_with(rating_key="m1")


def test_tautulli_never_watched(catalog, movie):
    api = MagicMock()
    api.get_history.return_value = []
    resolver = AttributeResolver(catalog, {"tautulli": TautulliAttributeProvider(api)})
    assert resolver.resolve(movie, (TAUTULLI, 0)) is UNAVAILABLE
    assert resolver.resolve(movie, (TAUTULLI, 1)) == 0


def test_tautulli_show_uses_grandparent_key(catalog):
    api = MagicMock()
    api.get_history.return_value = []
    resolver = AttributeResolver(catalog, {"tautulli": TautulliAttributeProvider(api)})
    resolver.resolve(MediaItem("show1", "Dark", MediaType.SHOWS), (TAUTULLI, 1))
    api.get_history.assert_called_once_with(grandparent_rating_key="show1")


def test_seerr_requests_filtered_by_season(catalog):
    api = MagicMock()
    api.get_media.return_value = {
        "mediaInfo": {
            "requests": [
                {"requestedBy": {"displayName": "Alice"}, "seasons": [{"seasonNumber": 1}],
                 "createdAt": "2024-02-01T00:00:00Z", "status": 2, "updatedAt": "2024-02-02T00:00:00Z"},
                {"requestedBy": {"username": "bob"}, "seasons": [{"seasonNumber": 2}],
                 "createdAt": "2024-01-01T00:00:00Z", "status": 1},
            ]
        }
    }
    resolver = AttributeResolver(catalog, {"seerr": SeerrAttributeProvider(api)})
    season = MediaItem("s1", "Season 1", MediaType.SEASONS, tmdb_id=70523, index=1)

    assert resolver.resolve(season, (SEERR, 0)) == ["Alice"]
    assert resolver.resolve(season, (SEERR, 1)) == datetime(2024, 2, 1, tzinfo=timezone.utc)
    assert resolver.resolve(season, (SEERR, 3)) == datetime(2024, 2, 2, tzinfo=timezone.utc)
    assert resolver.resolve(season, (SEERR, 4)) is True

    show = MediaItem("show1", "Dark", MediaType.SHOWS, tmdb_id=70523)
    assert resolver.resolve(show, (SEERR, 5)) == 2
    api.get_media.assert_called_once_with(MediaType.SHOWS, 70523)


def test_seerr_unknown_media(catalog, movie):
    api = MagicMock()
    api.get_media.return_value = None
    resolver = AttributeResolver(catalog, {"seerr": SeerrAttributeProvider(api)})
    assert resolver.resolve(movie, (SEERR, 4)) is UNAVAILABLE


@patch('resolver.jellyfin.get_user_item_data')
@patch('resolver.jellyfin.get_users')
def test_jellyfin_play_state(mock_users, mock_data, catalog, movie):
    mock_users.return_value = [{"Id": "u1", "Name": "Admin"}, {"Id": "u2", "Name": "Guest"}]
    mock_data.side_effect = lambda url, key, user_id, item_id, timeout: {
        "u1": {"Played": True, "PlayCount": 2, "LastPlayedDate": "2024-05-01T10:00:00Z"},
        "u2": {"Played": False, "PlayCount": 0},
    }[user_id]
    provider = JellyfinAttributeProvider("http://jf", "key")
    resolver = AttributeResolver(catalog, {"jellyfin": provider})

    assert resolver.resolve(movie, ref(catalog, "jellyfin.viewCount")) == 2
    assert resolver.resolve(movie, ref(catalog, "jellyfin.seenBy")) == ["Admin"]
    assert resolver.resolve(movie, ref(catalog, "jellyfin.lastViewedAt")) == datetime(
        2024, 5, 1, 10, tzinfo=timezone.utc
    )
    mock_users.assert_called_once()
    assert mock_data.call_count == 2


def test_jellyfin_metadata(catalog, movie):
    movie.raw = {
        "Genres": ["Sci-Fi"],
        "CriticRating": 87,
        "People": [{"Name": "Christopher Nolan"}, {"Role": "nameless"}],
        "MediaSources": [{"Bitrate": 8000, "MediaStreams": [{"Type": "Audio"}, {"Type": "Video", "Height": 1080, "Codec": "hevc"}]}],
    }
    resolver = AttributeResolver(catalog, {"jellyfin": JellyfinAttributeProvider("http://jf", "key")})

    assert resolver.resolve(movie, ref(catalog, "jellyfin.genre")) == ["Sci-Fi"]
    assert resolver.resolve(movie, ref(catalog, "jellyfin.rating_critics")) == 8.7
    assert resolver.resolve(movie, ref(catalog, "jellyfin.people")) == ["Christopher Nolan"]
    assert resolver.resolve(movie, ref(catalog, "jellyfin.fileVideoResolution")) == "1080"
    assert resolver.resolve(movie, ref(catalog, "jellyfin.fileVideoCodec")) == "hevc"
    assert resolver.resolve(movie, ref(catalog, "jellyfin.fileBitrate")) == 8000
    assert resolver.resolve(movie, ref(catalog, "jellyfin.addDate")) == movie.added_at


def test_jellyfin_missing_video_stream(catalog, movie):
    resolver = AttributeResolver(catalog, {"jellyfin": JellyfinAttributeProvider("http://jf", "key")})
    assert resolver.resolve(movie, ref(catalog, "jellyfin.fileVideoResolution")) is UNAVAILABLE


@patch('resolver.jellyfin.get_collection_children')
@patch('resolver.jellyfin.get_collections')
def test_jellyfin_collection_membership_is_indexed_once(mock_collections, mock_children, catalog, movie):
    mock_collections.return_value = [{"Id": "c1", "Name": "Nolan"}, {"Id": "c2", "Name": "Favourites"}]
    mock_children.side_effect = lambda url, key, cid, timeout: {
        "c1": [{"Id": "m1"}],
        "c2": [{"Id": "m1"}, {"Id": "m2"}],
    }[cid]
    resolver = AttributeResolver(catalog, {"jellyfin": JellyfinAttributeProvider("http://jf", "key")})

    assert resolver.resolve(movie, ref(catalog, "jellyfin.collections")) == 2
    assert resolver.resolve(movie, ref(catalog, "jellyfin.collection_names")) == ["Nolan", "Favourites"]
    other = MediaItem("m3", "Arrival", MediaType.MOVIES)
    assert resolver.resolve(other, ref(catalog, "jellyfin.collections")) == 0
    mock_collections.assert_called_once()


@patch('resolver.jellyfin.get_children')
@patch('resolver.jellyfin.get_user_played_children')
@patch('resolver.jellyfin.get_users')
def test_jellyfin_show_watch_state(mock_users, mock_played, mock_children, catalog):
    mock_users.return_value = [{"Id": "u1", "Name": "Admin"}, {"Id": "u2", "Name": "Guest"}]
    mock_played.side_effect = lambda url, key, user_id, item_id, timeout: {
        "u1": [{"Id": "e1", "UserData": {"PlayCount": 2, "LastPlayedDate": "2024-03-01T00:00:00Z"}}],
        "u2": [{"Id": "e1", "UserData": {"LastPlayedDate": "2024-04-01T00:00:00Z"}}, {"Id": "e2", "UserData": {}}],
    }[user_id]
    mock_children.return_value = [
        {"Id": "e1", "DateCreated": "2023-01-01T00:00:00Z"},
        {"Id": "e2", "DateCreated": "2023-02-01T00:00:00Z"},
        {"Id": "e3"},
    ]
    show = MediaItem("show1", "Dark", MediaType.SHOWS)
    resolver = AttributeResolver(catalog, {"jellyfin": JellyfinAttributeProvider("http://jf", "key")})

    assert resolver.resolve(show, ref(catalog, "jellyfin.seenBy")) == ["Admin", "Guest"]
    assert resolver.resolve(show, ref(catalog, "jellyfin.sw_viewedEpisodes")) == 2
    assert resolver.resolve(show, ref(catalog, "jellyfin.sw_episodes")) == 3
    assert resolver.resolve(show, ref(catalog, "jellyfin.sw_amountOfViews")) == 4
    assert resolver.resolve(show, ref(catalog, "jellyfin.sw_lastWatched")) == datetime(2024, 4, 1, tzinfo=timezone.utc)
    assert resolver.resolve(show, ref(catalog, "jellyfin.sw_lastEpisodeAddedAt")) == datetime(
        2023, 2, 1, tzinfo=timezone.utc
    )
    assert mock_played.call_count == 2
