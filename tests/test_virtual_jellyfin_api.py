import pytest

from errors import ExternalCallFailed, MirrorInconsistent
from jellyfin import JellyfinMediaSource, JellyfinMirror, get_user_item_data, get_users
from models import Collection, MediaType
from tests import virtual_jellyfin as jelly_mock


@pytest.fixture
def jellyfin_url(virtual_jellyfin):
    jelly_mock.reset()
    return virtual_jellyfin


@pytest.fixture
def mirror(jellyfin_url):
    return JellyfinMirror(jellyfin_url, "test_key")


def test_paging_is_stable(jellyfin_url):
    source = JellyfinMediaSource(jellyfin_url, "test_key")
    first, total = source.fetch_page("movies_id", MediaType.MOVIES, 0, 2)
    second, _ = source.fetch_page("movies_id", MediaType.MOVIES, 2, 2)
    assert total == 3
    assert [i.title for i in first + second] == ["Arrival", "Inception", "The Matrix"]
    assert first[1].tmdb_id == 27205


def test_season_gets_show_provider_ids(jellyfin_url):
    source = JellyfinMediaSource(jellyfin_url, "test_key")
    seasons, _ = source.fetch_page("tvshows_id", MediaType.SEASONS, 0, 10)
    assert len(seasons) == 1
    assert seasons[0].parent_id == "show1"
    assert seasons[0].tvdb_id == 334824


def test_get_item(jellyfin_url):
    source = JellyfinMediaSource(jellyfin_url, "test_key")
    assert source.get_item("2").title == "The Matrix"
    assert source.get_item("404") is None


def test_bad_key(jellyfin_url):
    source = JellyfinMediaSource(jellyfin_url, "BAD_KEY")
    with pytest.raises(ExternalCallFailed) as excinfo:
        source.fetch_page("movies_id", MediaType.MOVIES, 0, 10)
    assert excinfo.value.status == 401


def test_collection_lifecycle(mirror):
    collection = Collection(id=1, library_id="movies_id", title="Leaving soon", description="Going away")
    created = mirror.create_collection(collection, ["1"])
    assert created.child_count == 1

    found = mirror.find_collection_by_title("movies_id", "Leaving soon")
    assert found.id == created.id

    mirror.add_child(created.id, "2")
    assert sorted(mirror.get_children(created.id)) == ["1", "2"]
    mirror.remove_child(created.id, "1")
    assert mirror.get_children(created.id) == ["2"]
    assert mirror.find_collection_by_id(created.id).child_count == 1

    collection.media_server_id = created.id
    collection.title = "Leaving very soon"
    mirror.update_collection(collection)
    assert mirror.find_collection_by_title("movies_id", "Leaving very soon").id == created.id

    mirror.delete_collection(created.id)
    assert mirror.find_collection_by_id(created.id) is None


def test_find_collection_by_id_on_a_movie(mirror):
    with pytest.raises(MirrorInconsistent):
        mirror.find_collection_by_id("1")


def test_create_collection_failure(mirror):
    with pytest.raises(ExternalCallFailed):
        mirror.create_collection(Collection(id=1, library_id="movies_id", title="FAIL_CREATE"))


def test_delete_item(mirror):
    mirror.delete_item("3")
    with pytest.raises(ExternalCallFailed):
        mirror.delete_item("3")


def test_users_and_play_state(jellyfin_url):
    users = get_users(jellyfin_url, "test_key")
    assert [u["Name"] for u in users] == ["Admin", "Guest"]
    assert get_user_item_data(jellyfin_url, "test_key", "admin_id", "1")["PlayCount"] == 2
    assert get_user_item_data(jellyfin_url, "test_key", "guest_id", "1")["Played"] is False
