"""
servarr.py – Radarr / Sonarr API clients.

Both managers share :class:`ApiClient`, which adds the ``X-Api-Key`` header,
a time budget on every call (retries included) and a bounded retry loop
for transient failures (5xx, 429, connection errors, timeouts).  Any
failure that survives the retries is raised as
:class:`~errors.ExternalCallFailed`.

Sonarr additionally exposes the season / episode operations used for
episodic content.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Iterable

import requests

from errors import ExternalCallFailed

logger = logging.getLogger(__name__)

# Status codes worth another attempt.
_RETRY_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})


class ApiClient:
    """Small ``requests`` wrapper shared by the *arr style services.

    Args:
        url: Service base URL, e.g. ``"http://localhost:7878"``.
        api_key: Service API key.
        timeout: Time budget of one call in seconds, retries included.
        retry_attempts: Extra attempts after the first failure.
        retry_backoff: Base delay of the exponential backoff, in seconds.
        session: Optional :class:`requests.Session` (injected by tests).
    """

    service_name: str = "api"

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        timeout: float = 10,
        retry_attempts: int = 2,
        retry_backoff: float = 1.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        return {"X-Api-Key": self.api_key}

    def _sleep_before_retry(self, attempt: int, deadline: float) -> bool:
        """Back off before another attempt; ``False`` when the call budget is spent."""
        delay = self.retry_backoff * (2 ** (attempt - 1)) * (1 + random.uniform(0, 0.25))
        if time.monotonic() + delay >= deadline:
            return False
        if delay > 0:
            time.sleep(delay)
        return True

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Perform one API call and return the decoded JSON body (or ``None``).

        ``timeout`` bounds the whole call: every attempt gets what is left of
        it, and no retry starts once it is used up.

        Raises:
            ExternalCallFailed: On a non-2xx status or a transport error that
                persisted through every retry.
        """
        url = f"{self.url}{path}"
        deadline = time.monotonic() + self.timeout
        attempts = 0
        while True:
            remaining = deadline - time.monotonic()
            try:
                if remaining <= 0:
                    raise requests.Timeout(f"no time left of the {self.timeout}s budget")
                response = self.session.request(
                    method,
                    url,
                    headers=self._headers(),
                    params=params,
                    json=json,
                    timeout=remaining,
                )
                if (
                    response.status_code in _RETRY_STATUSES
                    and attempts < self.retry_attempts
                    and self._sleep_before_retry(attempts + 1, deadline)
                ):
                    attempts += 1
                    logger.warning(
                        "%s %s %s returned %s; retried (attempt %d/%d)",
                        self.service_name,
                        method.upper(),
                        path,
                        response.status_code,
                        attempts,
                        self.retry_attempts,
                    )
                    continue
                response.raise_for_status()
            except (requests.ConnectionError, requests.Timeout) as exc:
                if attempts < self.retry_attempts and self._sleep_before_retry(attempts + 1, deadline):
                    attempts += 1
                    logger.warning(
                        "%s %s %s network/timeout error; retried (attempt %d/%d)",
                        self.service_name,
                        method.upper(),
                        path,
                        attempts,
                        self.retry_attempts,
                    )
                    continue
                raise ExternalCallFailed(
                    f"{self.service_name} {method.upper()} {path} failed: {exc!s}"
                ) from exc
            except requests.RequestException as exc:
                status = exc.response.status_code if exc.response is not None else None
                raise ExternalCallFailed(
                    f"{self.service_name} {method.upper()} {path} failed (status {status}): {exc!s}",
                    status=status,
                ) from exc

            if response.status_code == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError:
                return None

    def get_tags(self) -> dict[int, str]:
        """Return the service's tag labels keyed by tag id."""
        tags = self._request("get", "/api/v3/tag") or []
        return {int(tag["id"]): str(tag.get("label", "")) for tag in tags if "id" in tag}


# ---------------------------------------------------------------------------
# Radarr
# ---------------------------------------------------------------------------


class RadarrApi(ApiClient):
    service_name = "radarr"

    def get_movie_by_tmdb_id(self, tmdb_id: int) -> dict[str, Any] | None:
        movies = self._request("get", "/api/v3/movie", params={"tmdbId": tmdb_id}) or []
        return movies[0] if movies else None

    def get_movie(self, movie_id: int) -> dict[str, Any]:
        return self._request("get", f"/api/v3/movie/{movie_id}")

    def update_movie(self, movie: dict[str, Any]) -> dict[str, Any] | None:
        return self._request("put", f"/api/v3/movie/{movie['id']}", json=movie)

    def delete_movie(self, movie_id: int, delete_files: bool = True, import_exclusion: bool = False) -> None:
        """Remove a movie from Radarr, optionally with its files."""
        self._request(
            "delete",
            f"/api/v3/movie/{movie_id}",
            params={
                "deleteFiles": str(delete_files).lower(),
                "addImportExclusion": str(import_exclusion).lower(),
            },
        )
        logger.info("Radarr: deleted movie %s (files: %s)", movie_id, delete_files)

    def unmonitor_movie(self, movie_id: int, delete_files: bool = False) -> None:
        """Unmonitor a movie; with *delete_files* its file is removed afterwards.

        The monitor update is persisted before any file is deleted.
        """
        movie = self.get_movie(movie_id)
        movie["monitored"] = False
        self.update_movie(movie)
        movie_file = movie.get("movieFile") or {}
        if delete_files and movie_file.get("id"):
            self._request("delete", f"/api/v3/moviefile/{movie_file['id']}")
        logger.info("Radarr: unmonitored movie %s (files deleted: %s)", movie_id, delete_files)

    def update_quality_profile(self, movie_id: int, profile_id: int) -> None:
        movie = self.get_movie(movie_id)
        movie["qualityProfileId"] = int(profile_id)
        self.update_movie(movie)
        logger.info("Radarr: movie %s moved to quality profile %s", movie_id, profile_id)


# ---------------------------------------------------------------------------
# Sonarr
# ---------------------------------------------------------------------------


class SonarrApi(ApiClient):
    service_name = "sonarr"

    def get_series_by_tvdb_id(self, tvdb_id: int) -> dict[str, Any] | None:
        series = self._request("get", "/api/v3/series", params={"tvdbId": tvdb_id}) or []
        return series[0] if series else None

    def get_series(self, series_id: int) -> dict[str, Any]:
        return self._request("get", f"/api/v3/series/{series_id}")

    def update_series(self, series: dict[str, Any]) -> dict[str, Any] | None:
        return self._request("put", f"/api/v3/series/{series['id']}", json=series)

    def delete_series(self, series_id: int, delete_files: bool = True, import_list_exclusion: bool = False) -> None:
        self._request(
            "delete",
            f"/api/v3/series/{series_id}",
            params={
                "deleteFiles": str(delete_files).lower(),
                "addImportListExclusion": str(import_list_exclusion).lower(),
            },
        )
        logger.info("Sonarr: deleted series %s (files: %s)", series_id, delete_files)

    def update_quality_profile(self, series_id: int, profile_id: int) -> None:
        series = self.get_series(series_id)
        series["qualityProfileId"] = int(profile_id)
        self.update_series(series)
        logger.info("Sonarr: series %s moved to quality profile %s", series_id, profile_id)

    def get_episodes(self, series_id: int, season_number: int | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"seriesId": series_id}
        if season_number is not None:
            params["seasonNumber"] = season_number
        return self._request("get", "/api/v3/episode", params=params) or []

    def unmonitor_seasons(
        self,
        series_id: int,
        scope: str | int = "all",
        delete_files: bool = True,
    ) -> list[int]:
        """Unmonitor seasons of a series.

        Args:
            series_id: Sonarr series id.
            scope: ``"all"`` unmonitors every season (and the series itself),
                an ``int`` unmonitors that season only, ``"existing"``
                unmonitors the episodes that have a file without touching the
                seasons' own monitored flag.
            delete_files: Delete the files of the affected episodes after the
                monitor state has been saved.

        Returns:
            The episode numbers whose update or file deletion failed.
        """
        series = self.get_series(series_id)

        if scope == "existing":
            episodes = [e for e in self.get_episodes(series_id) if e.get("hasFile")]
            return self._unmonitor_episode_list(series_id, episodes, delete_files)

        for season in series.get("seasons", []):
            if scope == "all" or season.get("seasonNumber") == scope:
                season["monitored"] = False
        if scope == "all":
            series["monitored"] = False
        self.update_series(series)

        if not delete_files:
            return []
        season_number = None if scope == "all" else int(scope)
        episodes = [e for e in self.get_episodes(series_id, season_number) if e.get("episodeFileId")]
        return self._delete_episode_files(series_id, episodes)

    def unmonitor_episodes(
        self,
        series_id: int,
        season_number: int,
        episode_numbers: Iterable[int],
        delete_files: bool = True,
    ) -> list[int]:
        """Unmonitor single episodes, deleting their files afterwards when asked.

        Episodes are updated one at a time; a failing episode is logged and the
        remaining ones are still processed.

        Returns:
            The episode numbers that could not be handled.
        """
        wanted = {int(n) for n in episode_numbers}
        episodes = [
            e for e in self.get_episodes(series_id, season_number) if e.get("episodeNumber") in wanted
        ]
        missing = wanted - {int(e["episodeNumber"]) for e in episodes}
        for number in sorted(missing):
            logger.warning(
                "Sonarr: series %s S%02dE%02d not found", series_id, season_number, number
            )
        return sorted(missing) + self._unmonitor_episode_list(series_id, episodes, delete_files)

    def _unmonitor_episode_list(
        self, series_id: int, episodes: list[dict[str, Any]], delete_files: bool
    ) -> list[int]:
        failed: list[int] = []
        for episode in episodes:
            try:
                episode["monitored"] = False
                self._request("put", f"/api/v3/episode/{episode['id']}", json=episode)
                if delete_files and episode.get("episodeFileId"):
                    self._request("delete", f"/api/v3/episodefile/{episode['episodeFileId']}")
            except ExternalCallFailed as exc:
                logger.warning(
                    "Sonarr: series %s episode %s could not be unmonitored: %s",
                    series_id,
                    episode.get("id"),
                    exc,
                )
                failed.append(int(episode.get("episodeNumber", -1)))
        return failed

    def _delete_episode_files(self, series_id: int, episodes: list[dict[str, Any]]) -> list[int]:
        failed: list[int] = []
        for episode in episodes:
            try:
                self._request("delete", f"/api/v3/episodefile/{episode['episodeFileId']}")
            except ExternalCallFailed as exc:
                logger.warning(
                    "Sonarr: series %s episode file %s could not be deleted: %s",
                    series_id,
                    episode.get("episodeFileId"),
                    exc,
                )
                failed.append(int(episode.get("episodeNumber", -1)))
        return failed
