import pytest

from collections_sync import LINKED, UNSYNCED, CollectionStateMachine
from errors import MirrorInconsistent
from models import Collection


@pytest.fixture
def machine(fake_mirror, store):
    return CollectionStateMachine(fake_mirror, store)


def make_collection(store, **kwargs):
    defaults = dict(id=1, library_id="movies_id", title="Leaving soon")
    defaults.update(kwargs)
    collection = Collection(**defaults)
    store.collections[collection.id] = collection
    return collection


def test_create_mirror_links(machine, fake_mirror, store):
    collection = make_collection(store)
    assert machine.state(collection) == UNSYNCED
    result = machine.create_mirror(collection, ["m1"])
    assert result.ok
    assert collection.media_server_id == result.media_server_id
    assert machine.state(collection) == LINKED
    assert fake_mirror.get_children(result.media_server_id) == ["m1"]

    # A second call does not create another mirror
    assert machine.create_mirror(collection).reason == "already linked"
    assert len(fake_mirror.collections) == 1


def test_create_mirror_refused_when_sync_disabled(machine, fake_mirror, store):
    collection = make_collection(store, sync_to_plex_collection=False)
    assert not machine.create_mirror(collection).ok
    assert fake_mirror.collections == {}


def test_empty_mirror_is_deleted_and_id_cleared(machine, fake_mirror, store):
    collection = make_collection(store)
    machine.create_mirror(collection, [])
    mirror_id = collection.media_server_id

    assert machine.check_automatic_link(collection).ok
    assert collection.media_server_id is None
    assert mirror_id not in fake_mirror.collections


def test_relink_by_title(machine, fake_mirror, store):
    existing = fake_mirror.create_collection(Collection(id=9, library_id="movies_id", title="Leaving soon"), ["m1"])
    collection = make_collection(store, media_server_id="stale")

    assert machine.check_automatic_link(collection).ok
    assert collection.media_server_id == existing.id


def test_absent_mirror_clears_link(machine, store):
    collection = make_collection(store, media_server_id="gone")
    assert machine.check_automatic_link(collection).ok
    assert collection.media_server_id is None


def test_transport_failure_keeps_state(machine, fake_mirror, store):
    collection = make_collection(store, media_server_id="101")
    fake_mirror.fail = True
    result = machine.check_automatic_link(collection)
    assert not result.ok
    assert collection.media_server_id == "101"


def test_inconsistent_mirror_is_treated_as_absent(machine, fake_mirror, store, monkeypatch):
    def smart_collection(collection_id):
        raise MirrorInconsistent("smart collection")

    monkeypatch.setattr(fake_mirror, "find_collection_by_id", smart_collection)
    collection = make_collection(store, media_server_id="smart")
    assert machine.check_automatic_link(collection).ok
    assert collection.media_server_id is None


def test_manual_collection_relinks_by_name(machine, fake_mirror, store):
    existing = fake_mirror.create_collection(Collection(id=9, library_id="movies_id", title="Favourites"), ["m1"])
    collection = make_collection(store, manual_collection=True, manual_collection_name=" Favourites ")

    result = machine.reconcile(collection)
    assert result.ok
    assert collection.media_server_id == existing.id

    # Manual mirrors are never created or deleted by the engine
    assert not machine.create_mirror(make_collection(store, id=2, manual_collection=True)).ok
    machine.delete_collection(collection)
    assert existing.id in fake_mirror.collections


def test_manual_collection_missing(machine, store):
    collection = make_collection(store, manual_collection=True, manual_collection_name="Nope", media_server_id="x")
    result = machine.relink_manual_collection(collection)
    assert not result.ok
    assert collection.media_server_id is None

    unnamed = make_collection(store, id=2, manual_collection=True)
    assert machine.relink_manual_collection(unnamed).reason == "no manual collection name"


def test_update_mirror(machine, fake_mirror, store):
    collection = make_collection(store)
    assert not machine.update_mirror(collection).ok
    machine.create_mirror(collection, ["m1"])
    collection.title = "Leaving very soon"
    assert machine.update_mirror(collection).ok
    assert fake_mirror.collections[collection.media_server_id]["title"] == collection.mirror_title


def test_sync_manual_media(machine, fake_mirror, store):
    collection = make_collection(store)
    machine.create_mirror(collection, ["m1", "m2"])
    store.add_media(collection.id, "m1")
    store.add_media(collection.id, "m3")

    assert machine.sync_manual_media(collection).ok
    media = {m.media_server_id: m for m in store.media_for_collection(collection.id)}
    assert set(media) == {"m1", "m2"}
    assert media["m2"].is_manual is True
    assert media["m1"].is_manual is False


def test_delete_collection_removes_mirror_and_state(machine, fake_mirror, store):
    collection = make_collection(store)
    machine.create_mirror(collection, ["m1"])
    store.add_media(collection.id, "m1")

    assert machine.delete_collection(collection).ok
    assert fake_mirror.collections == {}
    assert store.get_collection(collection.id) is None
    assert store.media == []


def test_delete_collection_mirror_failure_still_deletes_locally(machine, fake_mirror, store):
    collection = make_collection(store)
    machine.create_mirror(collection, ["m1"])
    fake_mirror.fail = True

    result = machine.delete_collection(collection)
    assert not result.ok
    assert store.get_collection(collection.id) is None
