"""In-memory stand-ins for the media server used across the test suite."""

from datetime import datetime, timezone

from errors import ExternalCallFailed
from jellyfin import Mirror

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeMirror:
    """In-memory media server mirror."""

    def __init__(self):
        self.collections = {}
        self.deleted_items = []
        self.fail = False
        self._next_id = 100

    def _check(self):
        if self.fail:
            raise ExternalCallFailed("media server unreachable")

    def find_collection_by_title(self, library_id, title):
        self._check()
        for cid, c in self.collections.items():
            if c["title"].strip() == title.strip():
                return Mirror(cid, c["title"], len(c["children"]))
        return None

    def find_collection_by_id(self, collection_id):
        self._check()
        c = self.collections.get(collection_id)
        return Mirror(collection_id, c["title"], len(c["children"])) if c else None

    def create_collection(self, collection, item_ids=None):
        self._check()
        self._next_id += 1
        cid = str(self._next_id)
        self.collections[cid] = {"title": collection.mirror_title, "children": list(item_ids or [])}
        return Mirror(cid, collection.mirror_title, len(item_ids or []))

    def update_collection(self, collection):
        self._check()
        self.collections[collection.media_server_id]["title"] = collection.mirror_title

    def delete_collection(self, collection_id):
        self._check()
        self.collections.pop(collection_id, None)

    def add_child(self, collection_id, item_id):
        self._check()
        children = self.collections[collection_id]["children"]
        if item_id not in children:
            children.append(item_id)

    def remove_child(self, collection_id, item_id):
        self._check()
        children = self.collections[collection_id]["children"]
        if item_id in children:
            children.remove(item_id)

    def get_children(self, collection_id):
        self._check()
        return list(self.collections[collection_id]["children"])

    def delete_item(self, item_id):
        self._check()
        self.deleted_items.append(item_id)


class FakeMediaSource:
    """Serves a fixed list of items page by page."""

    def __init__(self, items):
        self.items = list(items)
        self.pages = []

    def fetch_page(self, library_id, media_type, start_index, limit):
        self.pages.append((start_index, limit))
        matching = [i for i in self.items if i.type is media_type]
        return matching[start_index:start_index + limit], len(matching)

    def get_item(self, item_id):
        return next((i for i in self.items if i.media_server_id == item_id), None)
