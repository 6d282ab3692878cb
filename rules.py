"""
rules.py – Rule evaluation engine.

:class:`RuleEvaluator` evaluates a rule group against one media item:

1. Rules within a section are folded left to right using each rule's
   operator (the first rule seeds the result; a later rule without an
   operator is treated as AND).
2. Sections are OR-combined: a rule group matches when *any* section does.

Every comparison is evaluated and recorded in the returned
:class:`~models.MediaComparisonStatistics`, even when the final verdict is
already decided.  A comparison whose operand cannot be resolved yields
``False`` and is logged; it never aborts the rest of the tree.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator, Mapping

from catalog import RuleCatalog
from errors import UnknownAttribute
from models import (
    SECONDS_PER_DAY,
    ComparisonResult,
    CustomValue,
    MediaComparisonStatistics,
    MediaItem,
    Rule,
    RuleAction,
    RuleGroup,
    RuleOperator,
    SectionComparisonResult,
    ValueType,
)
from resolver import UNAVAILABLE

logger = logging.getLogger(__name__)

_ARRAY_TYPES: frozenset[ValueType] = frozenset({ValueType.NUMBER_ARRAY, ValueType.TEXT_ARRAY})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def to_datetime(value: Any) -> datetime | None:
    """Coerce *value* to a timezone-aware UTC datetime, or ``None``."""
    if value is None or value is UNAVAILABLE:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _to_number(value: Any) -> float | None:
    if value is None or value is UNAVAILABLE or isinstance(value, (list, tuple)):
        return None
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_bool(value: Any) -> bool | None:
    if value is None or value is UNAVAILABLE:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in ("1", "true", "yes"):
        return True
    if text in ("0", "false", "no"):
        return False
    return None


def _norm_text(value: Any) -> str:
    return str(value).strip().casefold()


def _to_list(value: Any) -> list[Any]:
    """Interpret a literal or attribute value as a list of elements."""
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return parsed
        return [text]
    return [value]


def coerce_custom_value(custom: CustomValue) -> Any:
    """Turn a stored literal into a comparable Python value.

    NUMBER literals stay numeric; when compared against a date they are read
    as an offset in seconds (``custom_days`` documents are stored that way).
    """
    if custom.type is ValueType.NUMBER:
        return _to_number(custom.value)
    if custom.type is ValueType.DATE:
        return to_datetime(custom.value)
    if custom.type is ValueType.BOOL:
        return _to_bool(custom.value)
    if custom.type in _ARRAY_TYPES:
        return _to_list(custom.value)
    return str(custom.value)


# ---------------------------------------------------------------------------
# Comparisons
# ---------------------------------------------------------------------------


def _compare_dates(action: RuleAction, first: datetime, second: Any, now: datetime) -> bool:
    second_date = to_datetime(second) if not isinstance(second, (int, float)) else None
    if second_date is not None:
        if action is RuleAction.EQUALS:
            return first.date() == second_date.date()
        if action is RuleAction.NOT_EQUALS:
            return first.date() != second_date.date()
        if action in (RuleAction.BEFORE, RuleAction.SMALLER):
            return first < second_date
        if action is RuleAction.BIGGER:
            return first > second_date
        if action is RuleAction.IN_LAST:
            return second_date <= first <= now
        if action is RuleAction.IN_NEXT:
            return now <= first <= second_date
        raise ValueError(f"{action.name} is not a date comparison")

    seconds = _to_number(second)
    if seconds is None:
        raise ValueError(f"Cannot compare a date with {second!r}")
    offset = timedelta(seconds=seconds)
    age = now - first
    if action is RuleAction.BEFORE:
        return first <= now - offset
    if action is RuleAction.IN_LAST:
        return now - offset <= first <= now
    if action is RuleAction.IN_NEXT:
        return now <= first <= now + offset
    if action is RuleAction.BIGGER:
        return age > offset
    if action is RuleAction.SMALLER:
        return age < offset
    if action is RuleAction.EQUALS:
        return age.days == int(seconds // SECONDS_PER_DAY)
    if action is RuleAction.NOT_EQUALS:
        return age.days != int(seconds // SECONDS_PER_DAY)
    raise ValueError(f"{action.name} is not a date comparison")


def _compare_arrays(action: RuleAction, first: list[Any], second: Any) -> bool:
    if action in (RuleAction.COUNT_EQUALS, RuleAction.COUNT_NOT_EQUALS, RuleAction.COUNT_BIGGER, RuleAction.COUNT_SMALLER):
        count = _to_number(second)
        if count is None:
            raise ValueError(f"Cannot count-compare with {second!r}")
        size = len(first)
        return {
            RuleAction.COUNT_EQUALS: size == count,
            RuleAction.COUNT_NOT_EQUALS: size != count,
            RuleAction.COUNT_BIGGER: size > count,
            RuleAction.COUNT_SMALLER: size < count,
        }[action]

    haystack = [_norm_text(v) for v in first]
    needles = [_norm_text(v) for v in _to_list(second)]

    if action is RuleAction.CONTAINS:
        return any(n in haystack for n in needles)
    if action is RuleAction.NOT_CONTAINS:
        return not any(n in haystack for n in needles)
    if action is RuleAction.CONTAINS_ALL:
        return bool(needles) and all(n in haystack for n in needles)
    if action is RuleAction.NOT_CONTAINS_ALL:
        return not (bool(needles) and all(n in haystack for n in needles))
    if action is RuleAction.CONTAINS_PARTIAL:
        return any(n in h for n in needles for h in haystack)
    if action is RuleAction.NOT_CONTAINS_PARTIAL:
        return not any(n in h for n in needles for h in haystack)
    if action is RuleAction.EQUALS:
        return sorted(haystack) == sorted(needles)
    if action is RuleAction.NOT_EQUALS:
        return sorted(haystack) != sorted(needles)
    raise ValueError(f"{action.name} is not a list comparison")


def compare(action: RuleAction, value_type: ValueType, first: Any, second: Any, now: datetime) -> bool:
    """Apply one comparison.

    Raises:
        ValueError: If the operands cannot be compared with *action*.
    """
    if value_type in _ARRAY_TYPES or isinstance(first, (list, tuple)):
        return _compare_arrays(action, _to_list(first), second)

    if value_type is ValueType.DATE:
        first_date = to_datetime(first)
        if first_date is None:
            raise ValueError(f"Not a date: {first!r}")
        return _compare_dates(action, first_date, second, now)

    if value_type is ValueType.NUMBER:
        a, b = _to_number(first), _to_number(second)
        if a is None or b is None:
            raise ValueError(f"Cannot compare {first!r} with {second!r} as numbers")
        if action is RuleAction.BIGGER:
            return a > b
        if action is RuleAction.SMALLER:
            return a < b
        if action is RuleAction.EQUALS:
            return a == b
        if action is RuleAction.NOT_EQUALS:
            return a != b
        raise ValueError(f"{action.name} is not a number comparison")

    if value_type is ValueType.BOOL:
        a_bool, b_bool = _to_bool(first), _to_bool(second)
        if a_bool is None or b_bool is None:
            raise ValueError(f"Cannot compare {first!r} with {second!r} as booleans")
        if action is RuleAction.EQUALS:
            return a_bool == b_bool
        if action is RuleAction.NOT_EQUALS:
            return a_bool != b_bool
        raise ValueError(f"{action.name} is not a boolean comparison")

    a_text, b_text = _norm_text(first), _norm_text(second)
    if action is RuleAction.EQUALS:
        return a_text == b_text
    if action is RuleAction.NOT_EQUALS:
        return a_text != b_text
    if action in (RuleAction.CONTAINS, RuleAction.CONTAINS_PARTIAL):
        return b_text in a_text
    if action in (RuleAction.NOT_CONTAINS, RuleAction.NOT_CONTAINS_PARTIAL):
        return b_text not in a_text
    raise ValueError(f"{action.name} is not a text comparison")


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class RuleEvaluator:
    """Evaluate rule groups against resolved media attributes.

    Args:
        catalog: Catalog used to name and type rule operands.
        clock: Returns "now" as an aware datetime; injectable for tests.
    """

    def __init__(self, catalog: RuleCatalog, clock: Callable[[], datetime] = _utcnow) -> None:
        self.catalog = catalog
        self.clock = clock

    def evaluate(
        self,
        rule_group: RuleGroup,
        item: MediaItem,
        snapshot: Mapping[Any, Any] | Any,
    ) -> MediaComparisonStatistics:
        """Evaluate *rule_group* against *item*.

        Args:
            rule_group: The rule group to evaluate.
            item: The media item being evaluated.
            snapshot: Attribute values for *item*; anything with a
                ``get(ref)`` method returning the value, ``None`` or
                :data:`resolver.UNAVAILABLE`.

        Returns:
            The verdict plus the trace of every comparison.
        """
        now = self.clock()
        section_results: list[SectionComparisonResult] = []
        for section in rule_group.sections:
            section_value: bool | None = None
            rule_results: list[ComparisonResult] = []
            for rule in section.rules:
                comparison = self._evaluate_rule(rule_group, item, rule, snapshot, now)
                rule_results.append(comparison)
                if section_value is None:
                    section_value = comparison.result
                elif rule.operator is RuleOperator.OR:
                    section_value = section_value or comparison.result
                else:
                    section_value = section_value and comparison.result
            section_results.append(
                SectionComparisonResult(id=section.id, result=bool(section_value), rule_results=rule_results)
            )

        verdict = any(s.result for s in section_results)
        return MediaComparisonStatistics(
            media_server_id=item.media_server_id,
            result=verdict,
            section_results=section_results,
        )

    def evaluate_many(
        self,
        rule_group: RuleGroup,
        items: Iterable[MediaItem],
        resolver: Any,
    ) -> Iterator[tuple[MediaItem, MediaComparisonStatistics]]:
        """Yield ``(item, statistics)`` for every item, resolving attributes lazily."""
        for item in items:
            yield item, self.evaluate(rule_group, item, resolver.snapshot(item))

    def _evaluate_rule(
        self,
        rule_group: RuleGroup,
        item: MediaItem,
        rule: Rule,
        snapshot: Any,
        now: datetime,
    ) -> ComparisonResult:
        operator = rule.operator.name if rule.operator is not None else None
        try:
            first_entry = self.catalog.resolve_ref(rule.first_value)
        except UnknownAttribute as exc:
            logger.warning("Rule group %r: %s; comparison treated as false", rule_group.name, exc)
            return ComparisonResult(str(rule.first_value), None, "", None, rule.action.name, False, operator)

        first_name = self.catalog.identifier_of(first_entry)
        first = snapshot.get(rule.first_value)
        second_name, second = self._second_operand(rule_group, rule, snapshot)

        result = False
        if first is UNAVAILABLE or first is None:
            logger.info(
                "Rule group %r: %s unavailable for item %s; comparison treated as false",
                rule_group.name,
                first_name,
                item.media_server_id,
            )
            first = None
        elif rule.last_value is None and rule.custom_value is None:
            # No second operand: the attribute merely has to be truthy.
            result = bool(first)
        elif second is UNAVAILABLE or second is None:
            logger.info(
                "Rule group %r: %s unavailable for item %s; comparison treated as false",
                rule_group.name,
                second_name,
                item.media_server_id,
            )
            second = None
        else:
            try:
                result = compare(rule.action, first_entry.value_type, first, second, now)
            except (ValueError, OverflowError, TypeError) as exc:
                logger.warning(
                    "Rule group %r: cannot evaluate %s %s for item %s: %s",
                    rule_group.name,
                    first_name,
                    rule.action.name,
                    item.media_server_id,
                    exc,
                )
                result = False

        return ComparisonResult(
            first_value_name=first_name,
            first_value=first,
            second_value_name=second_name,
            second_value=second,
            action=rule.action.name,
            result=result,
            operator=operator,
        )

    def _second_operand(
        self, rule_group: RuleGroup, rule: Rule, snapshot: Any
    ) -> tuple[str, Any]:
        if rule.last_value is not None:
            try:
                entry = self.catalog.resolve_ref(rule.last_value)
            except UnknownAttribute as exc:
                logger.warning("Rule group %r: %s", rule_group.name, exc)
                return str(rule.last_value), None
            return self.catalog.identifier_of(entry), snapshot.get(rule.last_value)
        if rule.custom_value is not None:
            return rule.custom_value.type.human_name, coerce_custom_value(rule.custom_value)
        return "", None
