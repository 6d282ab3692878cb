"""
scheduler.py – Background scheduling for the rule and collection handlers.

Manages a BackgroundScheduler that triggers the rule handler according to
either the global schedule (for every rule group without its own schedule)
or per-group schedules, plus the collection handler.  A job that finds a run
already in progress logs it and returns.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_rule_groups, load_config
from enforcement import build_enforcer
from errors import AlreadyRunning

# Initialize the scheduler
_scheduler = BackgroundScheduler()
logger = logging.getLogger(__name__)


def start_scheduler() -> None:
    """Start the background scheduler and load jobs from config."""
    if not _scheduler.running:
        _scheduler.start()
        logger.info("Background scheduler started")
    update_scheduler_jobs()


def update_scheduler_jobs() -> None:
    """Synchronise the scheduled jobs with the current configuration."""
    _scheduler.remove_all_jobs()

    config = load_config()
    sched_cfg = config.get("scheduler", {})
    groups = [g for g in get_rule_groups(config) if g.is_active]
    own_schedule = [g.id for g in groups if g.rule_handler_cron_schedule]

    # 1. Global rule handler
    if sched_cfg.get("rule_handler_enabled"):
        cron_expr = sched_cfg.get("rule_handler_schedule")
        if cron_expr:
            try:
                _scheduler.add_job(
                    _run_rule_handler_job,
                    CronTrigger.from_crontab(cron_expr),
                    id="rule_handler",
                    name="Rule handler (all rule groups)",
                    args=[own_schedule],
                )
                logger.info("Scheduled rule handler: %s (excluding: %s)", cron_expr, own_schedule)
            except ValueError:
                logger.exception("Failed to schedule rule handler")

    # 2. Per-group schedules
    for group in groups:
        if not group.rule_handler_cron_schedule:
            continue
        cron_expr = group.rule_handler_cron_schedule
        try:
            _scheduler.add_job(
                _run_rule_group_job,
                CronTrigger.from_crontab(cron_expr),
                id=f"rule_group_{group.id}",
                name=f"Rule group: {group.name}",
                args=[group.id],
            )
            logger.info("Scheduled rule group %r: %s", group.name, cron_expr)
        except ValueError:
            logger.exception("Failed to schedule rule group %r", group.name)

    # 3. Collection handler
    if sched_cfg.get("collection_handler_enabled", True):
        collection_cron = sched_cfg.get("collection_handler_schedule", "0 */12 * * *")
        if collection_cron:
            try:
                _scheduler.add_job(
                    _run_collection_handler_job,
                    CronTrigger.from_crontab(collection_cron),
                    id="collection_handler",
                    name="Collection handler",
                )
                logger.info("Scheduled collection handler: %s", collection_cron)
            except ValueError:
                logger.exception("Failed to schedule collection handler")


def _run_rule_handler_job(exclude_ids: list[int]) -> None:
    """Job handler for the global rule handler."""
    config = load_config()
    logger.info("Background rule handler starting")
    try:
        build_enforcer(config).run_handler(exclude_ids=exclude_ids)
    except AlreadyRunning:
        logger.warning("Rule handler skipped: a run is already in progress")
    except ValueError as exc:
        logger.error("Rule handler skipped: %s", exc)


def _run_rule_group_job(rule_group_id: int) -> None:
    """Job handler for a single rule group."""
    config = load_config()
    logger.info("Background rule handler starting for rule group %s", rule_group_id)
    try:
        build_enforcer(config).run_handler(rule_group_id=rule_group_id)
    except AlreadyRunning:
        logger.warning("Rule group %s skipped: a run is already in progress", rule_group_id)
    except ValueError as exc:
        logger.error("Rule group %s skipped: %s", rule_group_id, exc)


def _run_collection_handler_job() -> None:
    """Job handler for the collection handler."""
    config = load_config()
    logger.info("Background collection handler starting")
    try:
        summary = build_enforcer(config).handle_collections()
        logger.info("Background collection handler finished: handled %d item(s)", summary.handled)
    except AlreadyRunning:
        logger.warning("Collection handler skipped: a run is already in progress")
    except ValueError as exc:
        logger.error("Collection handler skipped: %s", exc)
