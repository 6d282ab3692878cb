import copy
import uuid

from flask import Flask, request, jsonify

app = Flask(__name__)

INITIAL_DATA = {
    "users": [
        {"Name": "Admin", "Id": "admin_id"},
        {"Name": "Guest", "Id": "guest_id"},
    ],
    "items": [
        {
            "Id": "1",
            "Name": "Inception",
            "Type": "Movie",
            "ParentId": "movies_id",
            "ProviderIds": {"Tmdb": "27205", "Imdb": "tt1375666"},
            "DateCreated": "2023-01-02T03:04:05.0000000Z",
            "Genres": ["Action", "Sci-Fi"],
            "MediaSources": [{"Size": 1000}],
        },
        {
            "Id": "2",
            "Name": "The Matrix",
            "Type": "Movie",
            "ParentId": "movies_id",
            "ProviderIds": {"Tmdb": "603", "Imdb": "tt0133093"},
            "DateCreated": "2022-05-06T07:08:09.1234567Z",
            "Genres": ["Action", "Sci-Fi"],
            "MediaSources": [{"Size": 2000}],
        },
        {
            "Id": "3",
            "Name": "Arrival",
            "Type": "Movie",
            "ParentId": "movies_id",
            "ProviderIds": {"Tmdb": "329865"},
            "DateCreated": "2021-09-10T11:12:13Z",
            "Genres": ["Drama"],
        },
        {
            "Id": "show1",
            "Name": "Dark",
            "Type": "Series",
            "ParentId": "tvshows_id",
            "ProviderIds": {"Tvdb": "334824", "Tmdb": "70523"},
        },
        {
            "Id": "season1",
            "Name": "Season 1",
            "Type": "Season",
            "ParentId": "show1",
            "SeriesId": "show1",
            "IndexNumber": 1,
        },
    ],
    "user_data": {
        "admin_id": {"1": {"PlayCount": 2, "Played": True, "LastPlayedDate": "2024-01-01T00:00:00Z"}},
    },
    "collections": {},
}

# In-memory storage
data = copy.deepcopy(INITIAL_DATA)


def reset():
    global data
    data = copy.deepcopy(INITIAL_DATA)


def _authorised():
    api_key = request.args.get('api_key') or request.headers.get('X-Emby-Token')
    return bool(api_key) and api_key != "BAD_KEY"


def _ids_param():
    return [i for i in (request.args.get('Ids') or "").split(",") if i]


def _collection_items():
    return [
        {"Id": cid, "Name": c["Name"], "Type": "BoxSet", "ChildCount": len(c["Children"]), "Overview": c.get("Overview")}
        for cid, c in data["collections"].items()
    ]


@app.route('/Items', methods=['GET'])
def get_items():
    # MAGIC: 401 Unauthorized
    if not _authorised():
        return "Unauthorized", 401
    # MAGIC: 500 Server Error
    if request.headers.get('X-Emby-Token') == "SERVER_ERROR_KEY":
        return "Internal Error", 500

    items = data["items"] + _collection_items()
    ids = _ids_param()
    if ids:
        items = [i for i in items if i["Id"] in ids]

    parent_id = request.args.get('ParentId')
    if parent_id in data["collections"]:
        children = data["collections"][parent_id]["Children"]
        items = [i for i in data["items"] if i["Id"] in children]
    elif parent_id:
        recursive = request.args.get('Recursive') == "true"
        allowed = {parent_id}
        if recursive:
            changed = True
            while changed:
                changed = False
                for item in data["items"]:
                    if item.get("ParentId") in allowed and item["Id"] not in allowed:
                        allowed.add(item["Id"])
                        changed = True
        items = [i for i in items if i.get("ParentId") in allowed]

    types = request.args.get('IncludeItemTypes')
    if types:
        wanted = set(types.split(","))
        items = [i for i in items if i["Type"] in wanted]

    if request.args.get('SortBy'):
        items = sorted(items, key=lambda i: (i["Name"], i["Id"]))

    total = len(items)
    start = int(request.args.get('StartIndex', 0))
    limit = request.args.get('Limit')
    items = items[start:start + int(limit)] if limit else items[start:]
    return jsonify({"Items": items, "TotalRecordCount": total})


@app.route('/Items/<item_id>', methods=['POST'])
def update_item(item_id):
    if item_id in data["collections"]:
        body = request.json or {}
        data["collections"][item_id]["Name"] = body.get("Name", data["collections"][item_id]["Name"])
        data["collections"][item_id]["Overview"] = body.get("Overview")
        return "", 204
    return "Not Found", 404


@app.route('/Items/<item_id>', methods=['DELETE'])
def delete_item(item_id):
    # MAGIC: DELETE 500
    if item_id == "FAIL_DELETE_500":
        return "Server Error", 500
    if item_id in data["collections"]:
        del data["collections"][item_id]
        return "", 204
    before = len(data["items"])
    data["items"] = [i for i in data["items"] if i["Id"] != item_id]
    if len(data["items"]) == before:
        return "Not Found", 404
    return "", 204


@app.route('/Collections', methods=['POST'])
def create_collection():
    name = request.args.get('Name')
    # MAGIC: 500 Server Error on Create
    if name == "FAIL_CREATE":
        return "Create Failed", 500
    collection_id = uuid.uuid4().hex
    data["collections"][collection_id] = {"Name": name, "Children": _ids_param()}
    return jsonify({"Id": collection_id})


@app.route('/Collections/<collection_id>/Items', methods=['POST'])
def add_collection_items(collection_id):
    if collection_id not in data["collections"]:
        return "Not Found", 404
    children = data["collections"][collection_id]["Children"]
    for item_id in _ids_param():
        if item_id not in children:
            children.append(item_id)
    return "", 204


@app.route('/Collections/<collection_id>/Items', methods=['DELETE'])
def remove_collection_items(collection_id):
    if collection_id not in data["collections"]:
        return "Not Found", 404
    removed = set(_ids_param())
    collection = data["collections"][collection_id]
    collection["Children"] = [c for c in collection["Children"] if c not in removed]
    return "", 204


@app.route('/Users', methods=['GET'])
def get_users():
    api_key = request.headers.get('X-Emby-Token')
    if api_key == "USER_GET_500":
        return "Internal Error", 500
    if api_key == "BAD_KEY":
        return "Unauthorized", 401
    return jsonify(data["users"])


@app.route('/Users/<user_id>/Items/<item_id>', methods=['GET'])
def get_user_item(user_id, item_id):
    item = next((i for i in data["items"] if i["Id"] == item_id), None)
    if item is None:
        return "Not Found", 404
    user_data = data["user_data"].get(user_id, {}).get(item_id, {"PlayCount": 0, "Played": False})
    return jsonify({**item, "UserData": user_data})


@app.route('/System/Info', methods=['GET'])
def system_info():
    if not _authorised():
        return "Unauthorized", 401
    return jsonify({"ServerName": "Virtual Jellyfin", "Version": "10.9.0"})


@app.route('/', methods=['GET'])
def dashboard():
    rows = ''.join(
        f"<tr><td>{i.get('Name')}</td><td>{i.get('Id')}</td><td>{i.get('Type')}</td></tr>" for i in data['items']
    )
    collections = ''.join(
        f"<tr><td>{c['Name']}</td><td>{cid}</td><td>{len(c['Children'])}</td></tr>"
        for cid, c in data['collections'].items()
    )
    return f"""
    <!DOCTYPE html>
    <html>
    <head><title>Virtual Jellyfin Dashboard</title></head>
    <body>
        <h1>Virtual Jellyfin State</h1>
        <h2>Items</h2>
        <table><tr><th>Name</th><th>Id</th><th>Type</th></tr>{rows}</table>
        <h2>Collections</h2>
        <table><tr><th>Name</th><th>Id</th><th>Children</th></tr>{collections}</table>
    </body>
    </html>
    """


if __name__ == '__main__':
    app.run(port=8096, debug=True)
