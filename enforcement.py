"""
enforcement.py – Enforcement run coordinator.

:class:`Enforcer` is the scheduled entry point.  :meth:`Enforcer.run_handler`
walks every active rule group (optionally one group or one library):

1. reconcile the group's collection with its media server mirror,
2. page through the library with a stable page size, skipping excluded
   items (global and group exclusions, including exclusions of a parent),
3. evaluate each item,
4. apply the group's action to the matches,
5. update the collection counters and write a collection log entry.

:meth:`Enforcer.handle_collections` is the collection handler: media that
sat in a collection longer than ``delete_after_days`` get the collection's
``arr_action`` applied and leave the collection.

Both runs are single-flight: they share one module-level lock, acquired
without blocking, and a second trigger fails with
:class:`~errors.AlreadyRunning`.  The lock is process-local; several
processes working on the same state file are not coordinated.  A run has no
cancellation; it ends when every group is done or on a fatal error.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator

from actions import ActionDispatcher, DispatchResult
from catalog import RADARR, SEERR, SONARR, TAUTULLI, build_default_catalog
from collections_sync import LINKED, CollectionStateMachine
from config import get_rule_groups, state_file_path
from errors import AlreadyRunning, ReclaimarrError
from jellyfin import JellyfinMediaSource, JellyfinMirror
from models import Collection, EnforcementAction, MediaItem, MediaType, RuleGroup
from resolver import (
    AttributeResolver,
    JellyfinAttributeProvider,
    RadarrAttributeProvider,
    SeerrApi,
    SeerrAttributeProvider,
    SonarrAttributeProvider,
    TautulliApi,
    TautulliAttributeProvider,
)
from rules import RuleEvaluator
from servarr import RadarrApi, SonarrApi
from store import Store

logger = logging.getLogger(__name__)

_run_lock = threading.Lock()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_running() -> bool:
    return _run_lock.locked()


@contextmanager
def run_exclusively() -> Iterator[None]:
    """Hold the run lock, without waiting, for the duration of the block.

    State changes made outside a run (deleting a collection, adding an
    exclusion) happen inside this block.

    Raises:
        AlreadyRunning: If a run holds the lock.
    """
    if not _run_lock.acquire(blocking=False):
        raise AlreadyRunning()
    try:
        yield
    finally:
        _run_lock.release()


# ---------------------------------------------------------------------------
# Run bookkeeping
# ---------------------------------------------------------------------------


@dataclass
class RunContext:
    """Counters and cursor of one rule group within a run."""

    rule_group: RuleGroup
    collection: Collection
    started: float = field(default_factory=time.monotonic)
    start_index: int = 0
    total_size: int = 0
    evaluated: int = 0
    excluded: int = 0
    handled: int = 0
    failed: int = 0
    matched: list[MediaItem] = field(default_factory=list)
    dispatched: set[str] = field(default_factory=set)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started


@dataclass
class GroupSummary:
    rule_group_id: int
    name: str
    evaluated: int = 0
    matched: int = 0
    excluded: int = 0
    handled: int = 0
    failed: int = 0
    duration_seconds: float = 0.0
    error: str | None = None


@dataclass
class RunSummary:
    kind: str
    started_at: str
    finished_at: str | None = None
    duration_seconds: float = 0.0
    groups: list[GroupSummary] = field(default_factory=list)
    handled: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Enforcer
# ---------------------------------------------------------------------------


class Enforcer:
    """Coordinates rule evaluation and enforcement for all rule groups."""

    def __init__(
        self,
        rule_groups: list[RuleGroup],
        store: Store,
        evaluator: RuleEvaluator,
        resolver: AttributeResolver,
        dispatcher: ActionDispatcher,
        state_machine: CollectionStateMachine,
        media_source: Any,
        *,
        page_size: int = 50,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.rule_groups = rule_groups
        self.store = store
        self.evaluator = evaluator
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.state_machine = state_machine
        self.media_source = media_source
        self.page_size = max(1, int(page_size))
        self.clock = clock

    # -- single flight -------------------------------------------------------

    def run_handler(
        self,
        rule_group_id: int | None = None,
        library_id: str | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> RunSummary:
        """Run every active rule group (or the selected one) to completion.

        Raises:
            AlreadyRunning: If another run holds the lock.
        """
        with run_exclusively():
            return self._run_rules(rule_group_id, library_id, exclude_ids)

    def handle_collections(self) -> RunSummary:
        """Apply the collection action to media past their grace period.

        Raises:
            AlreadyRunning: If another run holds the lock.
        """
        with run_exclusively():
            return self._handle_collections()

    def start_background(self, target: str = "rules", **kwargs: Any) -> threading.Thread:
        """Take the run lock now and execute the run on a daemon thread.

        The conflict check happens in the caller's thread, so a second
        trigger gets :class:`AlreadyRunning` immediately.
        """
        if not _run_lock.acquire(blocking=False):
            raise AlreadyRunning()
        run = self._run_rules if target == "rules" else self._handle_collections

        def _worker() -> None:
            try:
                run(**kwargs)
            except Exception:
                logger.exception("Background %s run failed", target)
            finally:
                _run_lock.release()

        try:
            thread = threading.Thread(target=_worker, name=f"enforcement-{target}", daemon=True)
            thread.start()
        except RuntimeError:
            _run_lock.release()
            raise
        return thread

    # -- rule handler --------------------------------------------------------

    def _selected_groups(
        self, rule_group_id: int | None, library_id: str | None, exclude_ids: Iterable[int]
    ) -> list[RuleGroup]:
        excluded = set(exclude_ids)
        return [
            g
            for g in self.rule_groups
            if g.is_active
            and g.id not in excluded
            and (rule_group_id is None or g.id == rule_group_id)
            and (library_id is None or g.library_id == library_id)
        ]

    def _run_rules(
        self,
        rule_group_id: int | None = None,
        library_id: str | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> RunSummary:
        started = time.monotonic()
        summary = RunSummary(kind="rules", started_at=self.clock().isoformat())
        self.resolver.reset()

        groups = self._selected_groups(rule_group_id, library_id, exclude_ids)
        logger.info("Rule handler started for %d rule group(s)", len(groups))
        for rule_group in groups:
            group_summary = GroupSummary(rule_group_id=rule_group.id, name=rule_group.name)
            ctx = RunContext(rule_group, self.store.collection_for_group(rule_group))
            try:
                self._run_group(ctx)
            except Exception as exc:
                processed = ctx.evaluated + ctx.excluded + sum(g.evaluated + g.excluded for g in summary.groups)
                if processed == 0:
                    raise
                if isinstance(exc, ReclaimarrError):
                    logger.error("Rule group %r aborted: %s", rule_group.name, exc)
                else:
                    logger.exception("Rule group %r aborted", rule_group.name)
                group_summary.error = str(exc)
                summary.groups.append(group_summary)
                continue

            group_summary.evaluated = ctx.evaluated
            group_summary.matched = len(ctx.matched)
            group_summary.excluded = ctx.excluded
            group_summary.handled = ctx.handled
            group_summary.failed = ctx.failed
            group_summary.duration_seconds = round(ctx.elapsed, 3)
            summary.groups.append(group_summary)
            summary.handled += ctx.handled
            summary.failed += ctx.failed
            summary.skipped += ctx.excluded

        summary.finished_at = self.clock().isoformat()
        summary.duration_seconds = round(time.monotonic() - started, 3)
        self.store.last_run = summary.to_dict()
        self.store.save()
        logger.info(
            "Rule handler finished in %.1fs: %d handled, %d failed, %d skipped",
            summary.duration_seconds,
            summary.handled,
            summary.failed,
            summary.skipped,
        )
        return summary

    def _run_group(self, ctx: RunContext) -> None:
        rule_group, collection = ctx.rule_group, ctx.collection
        logger.info("Processing rule group %r (library %s)", rule_group.name, rule_group.library_id)

        self.state_machine.reconcile(collection)
        if self.state_machine.state(collection) == LINKED:
            self.state_machine.sync_manual_media(collection)

        excluded_ids = {e.media_server_id for e in self.store.exclusions_for_group(rule_group.id)}
        while True:
            items, total = self.media_source.fetch_page(
                rule_group.library_id, rule_group.media_type, ctx.start_index, self.page_size
            )
            for item in items:
                if self._is_excluded(item, excluded_ids):
                    ctx.excluded += 1
                    continue
                ctx.evaluated += 1
                try:
                    stats = self.evaluator.evaluate(rule_group, item, self.resolver.snapshot(item))
                except Exception:
                    logger.exception(
                        "Rule group %r: evaluation failed for %r (%s); action %s skipped",
                        rule_group.name,
                        item.title,
                        item.media_server_id,
                        rule_group.action.value,
                    )
                    ctx.failed += 1
                    continue
                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug("Rule group %r: %s", rule_group.name, json.dumps(stats.to_dict(), default=str))
                if stats.result:
                    ctx.matched.append(item)
                    ctx.total_size += item.size_bytes or 0
            ctx.start_index += len(items)
            if not items or ctx.start_index >= total:
                break

        self._apply_action(ctx)

        collection.last_duration_in_seconds = int(ctx.elapsed)
        collection.total_size_bytes = ctx.total_size
        collection.handled_media_amount += ctx.handled
        self.store.add_log(
            collection.id,
            f"Rule group {rule_group.name!r}: {ctx.evaluated} evaluated, {len(ctx.matched)} matched, "
            f"{ctx.excluded} excluded, {ctx.handled} handled, {ctx.failed} failed",
            kind="error" if ctx.failed else "info",
        )
        self.store.save()

    @staticmethod
    def _is_excluded(item: MediaItem, excluded_ids: set[str]) -> bool:
        return any(i in excluded_ids for i in (item.media_server_id, item.parent_id, item.grandparent_id) if i)

    def _stages_in_collection(self, ctx: RunContext) -> bool:
        action = ctx.rule_group.action
        if action is EnforcementAction.ADD_TO_COLLECTION:
            return True
        return action in (EnforcementAction.DELETE, EnforcementAction.CHANGE_QUALITY_PROFILE) and bool(
            ctx.collection.delete_after_days
        )

    def _apply_action(self, ctx: RunContext) -> None:
        rule_group, collection = ctx.rule_group, ctx.collection

        if self._stages_in_collection(ctx):
            self._sync_membership(ctx)
            return

        if rule_group.action is EnforcementAction.EXCLUDE:
            for item in ctx.matched:
                self.store.add_exclusion(
                    item.media_server_id,
                    None,
                    parent=item.parent_id,
                    media_type=item.type,
                )
                ctx.handled += 1
                logger.info("Rule group %r: excluded %r", rule_group.name, item.title)
            return

        for item in ctx.matched:
            if item.media_server_id in ctx.dispatched:
                continue
            ctx.dispatched.add(item.media_server_id)
            try:
                result = self._dispatch(rule_group, collection, item)
            except Exception as exc:
                logger.exception(
                    "Rule group %r: %s raised for %r (%s)",
                    rule_group.name,
                    rule_group.action.value,
                    item.title,
                    item.media_server_id,
                )
                result = DispatchResult(False, str(exc))
            if result.ok:
                ctx.handled += 1
            else:
                ctx.failed += 1
                logger.warning(
                    "Rule group %r: %s failed for %r (%s): %s",
                    rule_group.name,
                    rule_group.action.value,
                    item.title,
                    item.media_server_id,
                    result.reason,
                )

    def _dispatch(self, rule_group: RuleGroup, collection: Collection, item: MediaItem) -> DispatchResult:
        if rule_group.action is EnforcementAction.DELETE:
            return self.dispatcher.delete(item, collection)
        profile_id = (
            rule_group.radarr_quality_profile_id
            if item.type is MediaType.MOVIES
            else rule_group.sonarr_quality_profile_id
        )
        return self.dispatcher.change_quality_profile(item, profile_id)

    def _sync_membership(self, ctx: RunContext) -> None:
        collection = ctx.collection
        current = self.store.media_for_collection(collection.id)
        current_ids = {m.media_server_id for m in current}
        matched_ids = {item.media_server_id for item in ctx.matched}

        to_add = [item for item in ctx.matched if item.media_server_id not in current_ids]
        stale = [m for m in current if not m.is_manual and m.media_server_id not in matched_ids]

        if to_add and not collection.manual_collection and self.state_machine.state(collection) != LINKED:
            if collection.sync_to_plex_collection:
                self.state_machine.create_mirror(collection)

        if to_add:
            result = self.dispatcher.add_to_collection(collection, to_add)
            if not result.ok:
                ctx.failed += 1
        if stale:
            stale_items = [
                MediaItem(media_server_id=m.media_server_id, title=m.media_server_id, type=collection.type)
                for m in stale
            ]
            result = self.dispatcher.remove_from_collection(collection, stale_items)
            if not result.ok:
                ctx.failed += 1
        logger.info(
            "Collection %r: %d added, %d removed", collection.title, len(to_add), len(stale)
        )
        # An emptied mirror is dropped.
        if stale and not to_add:
            self.state_machine.check_automatic_link(collection)

    # -- collection handler --------------------------------------------------

    def _handle_collections(self) -> RunSummary:
        started = time.monotonic()
        summary = RunSummary(kind="collections", started_at=self.clock().isoformat())
        now = self.clock()

        for collection in list(self.store.collections.values()):
            if not collection.is_active or not collection.delete_after_days:
                continue
            group_summary = GroupSummary(rule_group_id=collection.id, name=collection.title)
            cutoff = now - timedelta(days=int(collection.delete_after_days))
            due = [m for m in self.store.media_for_collection(collection.id) if _aware(m.add_date) <= cutoff]
            logger.info("Collection %r: %d item(s) due for handling", collection.title, len(due))

            for media in due:
                group_summary.evaluated += 1
                try:
                    item = self.media_source.get_item(media.media_server_id)
                except ReclaimarrError as exc:
                    logger.warning("Collection %r: cannot load item %s: %s", collection.title, media.media_server_id, exc)
                    group_summary.failed += 1
                    continue
                if item is None:
                    self.store.remove_media(collection.id, media.media_server_id)
                    self.store.add_log(collection.id, f"Item {media.media_server_id} no longer exists; removed")
                    group_summary.excluded += 1
                    continue

                try:
                    result = self.dispatcher.handle_collection_media(collection, item)
                except Exception as exc:
                    logger.exception(
                        "Collection %r: %s raised for %r (%s)",
                        collection.title,
                        collection.arr_action.name,
                        item.title,
                        item.media_server_id,
                    )
                    result = DispatchResult(False, str(exc))
                if not result.ok:
                    group_summary.failed += 1
                    self.store.add_log(
                        collection.id, f"{collection.arr_action.name} failed for {item.title!r}: {result.reason}", "error"
                    )
                    continue
                self.dispatcher.remove_from_collection(collection, [item])
                collection.handled_media_amount += 1
                group_summary.handled += 1
                self.store.add_log(collection.id, f"{collection.arr_action.name} applied to {item.title!r}")

            if due:
                self.state_machine.check_automatic_link(collection)
            summary.groups.append(group_summary)
            summary.handled += group_summary.handled
            summary.failed += group_summary.failed
            summary.skipped += group_summary.excluded
            self.store.save()

        summary.finished_at = self.clock().isoformat()
        summary.duration_seconds = round(time.monotonic() - started, 3)
        self.store.last_run = summary.to_dict()
        self.store.save()
        logger.info(
            "Collection handler finished: %d handled, %d failed", summary.handled, summary.failed
        )
        return summary


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_enforcer(config: dict[str, Any], store: Store | None = None) -> Enforcer:
    """Construct an :class:`Enforcer` with the clients configured in *config*.

    Raises:
        ValueError: If the media server is not configured.
    """
    url = str(config.get("jellyfin_url", "")).rstrip("/")
    api_key = str(config.get("api_key", ""))
    if not url or not api_key:
        raise ValueError("Jellyfin URL and API key must be configured")

    timeout = float(config.get("request_timeout") or 10)
    catalog = build_default_catalog()

    radarr = sonarr = None
    providers: dict[str, Any] = {
        "jellyfin": JellyfinAttributeProvider(url, api_key, timeout=timeout),
    }
    if config.get("radarr_url") and config.get("radarr_api_key"):
        radarr = RadarrApi(config["radarr_url"], config["radarr_api_key"], timeout=timeout)
        providers[catalog.application_name(RADARR)] = RadarrAttributeProvider(radarr)
    if config.get("sonarr_url") and config.get("sonarr_api_key"):
        sonarr = SonarrApi(config["sonarr_url"], config["sonarr_api_key"], timeout=timeout)
        providers[catalog.application_name(SONARR)] = SonarrAttributeProvider(sonarr)
    if config.get("tautulli_url") and config.get("tautulli_api_key"):
        tautulli = TautulliApi(config["tautulli_url"], config["tautulli_api_key"], timeout=timeout)
        providers[catalog.application_name(TAUTULLI)] = TautulliAttributeProvider(tautulli)
    if config.get("seerr_url") and config.get("seerr_api_key"):
        seerr = SeerrApi(config["seerr_url"], config["seerr_api_key"], timeout=timeout)
        providers[catalog.application_name(SEERR)] = SeerrAttributeProvider(seerr)

    store = store or Store.load(state_file_path())
    mirror = JellyfinMirror(url, api_key, timeout=timeout)
    return Enforcer(
        rule_groups=get_rule_groups(config),
        store=store,
        evaluator=RuleEvaluator(catalog),
        resolver=AttributeResolver(catalog, providers),
        dispatcher=ActionDispatcher(radarr, sonarr, mirror, store),
        state_machine=CollectionStateMachine(mirror, store),
        media_source=JellyfinMediaSource(url, api_key, timeout=timeout),
        page_size=int(config.get("page_size") or 50),
    )
