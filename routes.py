"""
routes.py – Flask Blueprint containing all HTTP route handlers.

Every route is registered on the ``bp`` Blueprint which is imported and
registered with the Flask application in ``app.py``.  Route handlers are
intentionally thin: they validate inputs, delegate to service functions in
other modules, and serialise results back to JSON.
"""

from __future__ import annotations

import logging
from typing import Any

import requests
from flask import Blueprint, jsonify, request
from flask.typing import ResponseReturnValue

from catalog import build_default_catalog
from codec import decode, encode
from config import find_rule_group, load_config, save_config, state_file_path
from enforcement import build_enforcer, is_running, run_exclusively
from errors import AlreadyRunning, ReclaimarrError
from models import MediaType
from scheduler import update_scheduler_jobs
from store import Store

bp = Blueprint("main", __name__)


def _error(message: str, code: int) -> ResponseReturnValue:
    return jsonify({"status": "error", "message": message}), code


def _json_body() -> dict[str, Any] | None:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# Config routes
# ---------------------------------------------------------------------------


@bp.route("/api/config", methods=["GET"])
def get_config() -> ResponseReturnValue:
    """Return the current application configuration as JSON.

    Returns:
        JSON-serialised configuration dictionary.
    """
    return jsonify(load_config())


@bp.route("/api/config", methods=["POST"])
def update_config() -> ResponseReturnValue:
    """Persist a new application configuration supplied in the request body.

    The entire configuration object is replaced with the POSTed JSON.

    Returns:
        JSON with ``status`` and the saved ``config``, or a 500 error if the
        config file could not be written.
    """
    new_config = _json_body()
    if new_config is None:
        return _error("Request body must be a JSON object", 400)
    try:
        save_config(new_config)
    except OSError as exc:
        logging.exception("Failed to write config file")
        return _error(f"Config file write failed: {exc}", 500)

    # Update background jobs based on new config
    try:
        update_scheduler_jobs()
    except Exception:
        logging.exception("Failed to update scheduler jobs")

    return jsonify({"status": "success", "config": new_config})


# ---------------------------------------------------------------------------
# Connection test
# ---------------------------------------------------------------------------


@bp.route("/api/test-server", methods=["POST"])
def test_server() -> ResponseReturnValue:
    """Verify connectivity to a Jellyfin server.

    Expects a JSON body with ``jellyfin_url`` and ``api_key`` fields.

    Returns:
        JSON with ``status`` and a human-readable ``message``.
    """
    data = _json_body()
    if data is None:
        return _error("Request body must be a JSON object", 400)
    url: str = str(data.get("jellyfin_url", "")).rstrip("/")
    api_key: str = str(data.get("api_key", ""))

    if not url or not api_key:
        return _error("URL and API Key are required", 400)

    try:
        response = requests.get(
            f"{url}/System/Info",
            headers={"X-Emby-Token": api_key},
            timeout=5,
        )
    except requests.exceptions.RequestException as exc:
        return _error(f"Connection error: {exc!s}", 400)
    if response.status_code == 200:
        return jsonify({"status": "success", "message": "Connected to Jellyfin successfully!"})
    return _error(f"Server returned status {response.status_code}", 400)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@bp.route("/api/rules/catalog", methods=["GET"])
def get_rule_catalog() -> ResponseReturnValue:
    """List every attribute a rule can reference, optionally for one media type.

    Query parameters:
        media_type: Media type name (``movies``, ``shows``, ...) to filter by.
    """
    catalog = build_default_catalog()
    media_type = request.args.get("media_type")
    try:
        wanted = MediaType.from_name(media_type) if media_type else None
    except ValueError as exc:
        return _error(str(exc), 400)
    entries = [
        {
            "id": catalog.identifier_of(entry),
            "application_id": entry.application_id,
            "property_id": entry.property_id,
            "human_name": entry.human_name,
            "type": entry.value_type.human_name,
            "media_types": [m.name for m in entry.media_types],
        }
        for entry in catalog
        if wanted is None or entry.supports(wanted)
    ]
    return jsonify({"status": "success", "attributes": entries})


@bp.route("/api/rules/execute", methods=["POST"])
def execute_rules() -> ResponseReturnValue:
    """Start the rule handler in the background.

    The optional JSON body may carry ``rule_group_id`` and/or ``library_id``
    to restrict the run.

    Returns:
        202 when the run was started, 409 when a run is already in progress.
    """
    data = _json_body() or {}
    kwargs: dict[str, Any] = {}
    if data.get("rule_group_id") is not None:
        try:
            kwargs["rule_group_id"] = int(data["rule_group_id"])
        except (TypeError, ValueError):
            return _error(f"Invalid rule_group_id: {data['rule_group_id']!r}", 400)
    if data.get("library_id"):
        kwargs["library_id"] = str(data["library_id"])

    try:
        build_enforcer(load_config()).start_background("rules", **kwargs)
    except AlreadyRunning as exc:
        return _error(str(exc), 409)
    except ValueError as exc:
        return _error(f"{exc!s}", 400)
    return jsonify({"status": "success", "message": "Rule handler started"}), 202


@bp.route("/api/rules/<int:rule_group_id>/export", methods=["GET"])
def export_rules(rule_group_id: int) -> ResponseReturnValue:
    """Return the rules of one rule group as a YAML document."""
    rule_group = find_rule_group(load_config(), rule_group_id)
    if rule_group is None:
        return _error(f"Rule group {rule_group_id} not found", 404)
    try:
        document = encode(rule_group.rules, rule_group.media_type, build_default_catalog())
    except ReclaimarrError as exc:
        return _error(str(exc), 400)
    return jsonify({"status": "success", "yaml": document})


@bp.route("/api/rules/import", methods=["POST"])
def import_rules() -> ResponseReturnValue:
    """Decode a YAML rule document for a rule group of the given media type.

    Expects a JSON body with ``yaml`` (the document) and ``media_type`` (the
    media type of the target rule group, by name or number).

    Returns:
        JSON with the decoded ``rules``, or 400 with the reason the document
        was rejected.
    """
    data = _json_body()
    if data is None:
        return _error("Request body must be a JSON object", 400)
    document = data.get("yaml")
    if not isinstance(document, str) or not document.strip():
        return _error("A YAML document is required", 400)
    raw_type = data.get("media_type")
    try:
        media_type = MediaType(int(raw_type)) if str(raw_type).isdigit() else MediaType.from_name(str(raw_type))
    except ValueError:
        return _error(f"Unknown media type: {raw_type!r}", 400)

    try:
        draft = decode(document, media_type, build_default_catalog())
    except ReclaimarrError as exc:
        return _error(str(exc), 400)
    return jsonify(
        {
            "status": "success",
            "media_type": int(draft.media_type),
            "rules": [rule.to_dict() for rule in draft.rules],
        }
    )


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


@bp.route("/api/collections", methods=["GET"])
def get_collections() -> ResponseReturnValue:
    """Return every collection with its current media."""
    store = Store.load(state_file_path())
    collections = []
    for collection in store.collections.values():
        entry = collection.to_dict()
        entry["media"] = [m.to_dict() for m in store.media_for_collection(collection.id)]
        collections.append(entry)
    return jsonify({"status": "success", "collections": collections})


@bp.route("/api/collections/<int:collection_id>/logs", methods=["GET"])
def get_collection_logs(collection_id: int) -> ResponseReturnValue:
    store = Store.load(state_file_path())
    if store.get_collection(collection_id) is None:
        return _error(f"Collection {collection_id} not found", 404)
    return jsonify({"status": "success", "logs": [e.to_dict() for e in store.logs_for(collection_id)]})


@bp.route("/api/collections/<int:collection_id>", methods=["DELETE"])
def delete_collection(collection_id: int) -> ResponseReturnValue:
    """Delete a collection, and its media server mirror when this app created it."""
    try:
        with run_exclusively():
            enforcer = build_enforcer(load_config())
            collection = enforcer.store.get_collection(collection_id)
            if collection is None:
                return _error(f"Collection {collection_id} not found", 404)
            result = enforcer.state_machine.delete_collection(collection)
    except AlreadyRunning:
        return _error("A run is in progress; try again when it has finished", 409)
    except ValueError as exc:
        return _error(f"{exc!s}", 400)
    return jsonify({"status": "success", "mirror_deleted": result.ok, "message": result.reason})


@bp.route("/api/collections/handle", methods=["POST"])
def handle_collections() -> ResponseReturnValue:
    """Start the collection handler in the background."""
    try:
        build_enforcer(load_config()).start_background("collections")
    except AlreadyRunning as exc:
        return _error(str(exc), 409)
    except ValueError as exc:
        return _error(f"{exc!s}", 400)
    return jsonify({"status": "success", "message": "Collection handler started"}), 202


# ---------------------------------------------------------------------------
# Exclusions
# ---------------------------------------------------------------------------


@bp.route("/api/exclusions", methods=["POST"])
def add_exclusion() -> ResponseReturnValue:
    """Exclude a media item from one rule group, or from all of them.

    Expects a JSON body with ``media_server_id`` and an optional
    ``rule_group_id`` (omitted for a global exclusion).
    """
    data = _json_body()
    if data is None or not data.get("media_server_id"):
        return _error("media_server_id is required", 400)
    rule_group_id = data.get("rule_group_id")
    try:
        rule_group_id = int(rule_group_id) if rule_group_id is not None else None
    except (TypeError, ValueError):
        return _error(f"Invalid rule_group_id: {rule_group_id!r}", 400)
    try:
        with run_exclusively():
            store = Store.load(state_file_path())
            exclusion = store.add_exclusion(str(data["media_server_id"]), rule_group_id)
            store.save()
    except AlreadyRunning:
        return _error("A run is in progress; try again when it has finished", 409)
    return jsonify({"status": "success", "exclusion": exclusion.to_dict()})


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@bp.route("/api/runs/last", methods=["GET"])
def get_last_run() -> ResponseReturnValue:
    """Return the summary of the last finished run and whether one is active."""
    store = Store.load(state_file_path())
    return jsonify({"status": "success", "running": is_running(), "last_run": store.last_run})
