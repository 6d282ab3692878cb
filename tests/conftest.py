import threading
import time
from datetime import timedelta

import requests
import pytest
from unittest.mock import MagicMock, patch
from tests.virtual_jellyfin import app as jelly_mock_app

from catalog import RuleCatalog, RuleCatalogEntry, build_default_catalog
from models import MediaItem, MediaType, ValueType
from store import Store
from tests.fakes import NOW, FakeMirror


@pytest.fixture(scope="session")
def virtual_jellyfin():
    """Fixture to run a virtual Jellyfin server in a background thread."""
    server_thread = threading.Thread(target=lambda: jelly_mock_app.run(port=8096, debug=False, use_reloader=False))
    server_thread.daemon = True
    server_thread.start()

    # Wait for server to be ready
    base_url = "http://localhost:8096"
    timeout = 5
    start_time = time.time()
    while time.time() - start_time < timeout:
        try:
            requests.get(f"{base_url}/System/Info")
            break
        except requests.exceptions.ConnectionError:
            time.sleep(0.1)
    else:
        pytest.fail("Virtual Jellyfin server failed to start")

    return base_url


@pytest.fixture(autouse=True)
def mock_scheduler():
    patcher = patch('scheduler._scheduler')
    mock_bg_sched_instance = patcher.start()
    yield mock_bg_sched_instance
    patcher.stop()


from app import app as flask_app


@pytest.fixture
def app():
    from copy import deepcopy
    old_config = deepcopy(flask_app.config)
    flask_app.config.update({
        "TESTING": True,
    })

    with flask_app.app_context():
        yield flask_app

    flask_app.config = old_config


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def temp_config(tmp_path):
    """Fixture to provide a temporary configuration file."""
    test_config_dir = tmp_path / "config"
    test_config_dir.mkdir()
    test_config_file = test_config_dir / "config.json"

    # Mock CONFIG_FILE in config module
    import config
    original_config_file = config.CONFIG_FILE
    original_config_dir = config.CONFIG_DIR

    config.CONFIG_FILE = str(test_config_file)
    config.CONFIG_DIR = str(test_config_dir)

    yield test_config_file

    # Restore original paths
    config.CONFIG_FILE = original_config_file
    config.CONFIG_DIR = original_config_dir


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_mirror():
    return FakeMirror()


@pytest.fixture
def store(tmp_path):
    return Store(str(tmp_path / "state.json"))


@pytest.fixture
def catalog():
    return build_default_catalog()


@pytest.fixture
def minimal_catalog():
    """A tiny catalog with fixed ids, independent of the default numbering."""
    return RuleCatalog([
        RuleCatalogEntry(0, 0, "jellyfin", "addDate", ValueType.DATE),
        RuleCatalogEntry(0, 1, "jellyfin", "viewCount", ValueType.NUMBER),
        RuleCatalogEntry(0, 2, "jellyfin", "genre", ValueType.TEXT_ARRAY),
        RuleCatalogEntry(1, 0, "tautulli", "lastWatched", ValueType.DATE),
        RuleCatalogEntry(2, 5, "radarr", "monitored", ValueType.BOOL, media_types=(MediaType.MOVIES,)),
        RuleCatalogEntry(2, 6, "radarr", "tags", ValueType.TEXT_ARRAY, media_types=(MediaType.MOVIES,)),
    ])


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def movie():
    return MediaItem(
        media_server_id="m1",
        title="Inception",
        type=MediaType.MOVIES,
        library_id="movies_id",
        tmdb_id=27205,
        added_at=NOW - timedelta(days=400),
        size_bytes=1000,
    )


@pytest.fixture
def mock_radarr():
    radarr = MagicMock()
    radarr.get_movie_by_tmdb_id.return_value = {"id": 7, "title": "Inception"}
    return radarr


@pytest.fixture
def mock_sonarr():
    sonarr = MagicMock()
    sonarr.get_series_by_tvdb_id.return_value = {"id": 9, "title": "Dark"}
    sonarr.unmonitor_episodes.return_value = []
    sonarr.unmonitor_seasons.return_value = []
    return sonarr
