"""
codec.py – Import / export of rule sets as YAML documents.

A document looks like::

    mediaType: MOVIES
    rules:
    - 0:
      - firstValue: jellyfin.viewCount
        action: EQUALS
        customValue:
          type: number
          value: 0
      - operator: AND
        firstValue: jellyfin.addDate
        action: BEFORE
        customValue:
          type: custom_days
          value: '30'

Each entry of ``rules`` is a one-key mapping from a section index to the
rules of that section.  Attribute operands are written as catalog
identifiers, so documents survive catalog id renumbering.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable

import yaml

from catalog import RuleCatalog
from errors import IncompatibleMediaType, InvalidRuleDocument
from models import (
    SECONDS_PER_DAY,
    CustomValue,
    MediaType,
    Rule,
    RuleAction,
    RuleGroupDraft,
    RuleOperator,
    Section,
    ValueType,
    group_into_sections,
)

logger = logging.getLogger(__name__)

CUSTOM_DAYS = "custom_days"

# Names accepted for a custom value's ``type`` on import.
_CUSTOM_TYPES: dict[str, ValueType] = {
    "number": ValueType.NUMBER,
    "date": ValueType.DATE,
    "text": ValueType.TEXT,
    "boolean": ValueType.BOOL,
    "bool": ValueType.BOOL,
    "number_list": ValueType.NUMBER_ARRAY,
    "text_list": ValueType.TEXT_ARRAY,
}


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _encode_custom_value(custom: CustomValue) -> dict[str, Any]:
    if custom.type is ValueType.NUMBER:
        try:
            number = float(custom.value)
        except ValueError:
            return {"type": ValueType.NUMBER.human_name, "value": custom.value}
        # Non-zero whole multiples of a day were entered as a day count.
        if number != 0 and number % SECONDS_PER_DAY == 0:
            return {"type": CUSTOM_DAYS, "value": str(int(number // SECONDS_PER_DAY))}
        return {"type": ValueType.NUMBER.human_name, "value": int(number) if number.is_integer() else number}
    if custom.type is ValueType.BOOL:
        return {"type": ValueType.BOOL.human_name, "value": "true" if custom.value == "1" else "false"}
    return {"type": custom.type.human_name, "value": custom.value}


def encode(rules: Iterable[Rule], media_type: MediaType | int, catalog: RuleCatalog) -> str:
    """Serialize *rules* into a YAML rule document.

    Args:
        rules: The rules of one rule group; sections are taken from
            :attr:`Rule.section`.
        media_type: Media type the rules were written for.
        catalog: Catalog used to turn attribute references into identifiers.

    Returns:
        The YAML document.

    Raises:
        UnknownAttribute: If a rule references an unregistered attribute.
    """
    media_type = MediaType(int(media_type))
    sections_out: list[dict[int, list[dict[str, Any]]]] = []
    for section in group_into_sections(list(rules)):
        encoded: list[dict[str, Any]] = []
        for rule in section.rules:
            entry: dict[str, Any] = {}
            if rule.operator is not None:
                entry["operator"] = rule.operator.name
            entry["firstValue"] = catalog.identifier_of(catalog.resolve_ref(rule.first_value))
            entry["action"] = rule.action.name
            if rule.last_value is not None:
                entry["lastValue"] = catalog.identifier_of(catalog.resolve_ref(rule.last_value))
            if rule.custom_value is not None:
                entry["customValue"] = _encode_custom_value(rule.custom_value)
            encoded.append(entry)
        sections_out.append({section.id: encoded})

    document = {"mediaType": media_type.name, "rules": sections_out}
    return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _decode_custom_value(raw: Any) -> CustomValue:
    if not isinstance(raw, dict) or "type" not in raw or "value" not in raw:
        raise InvalidRuleDocument(f"customValue must have a type and a value, got {raw!r}")
    kind = str(raw["type"]).strip().lower()
    value = raw["value"]
    if kind == CUSTOM_DAYS:
        try:
            days = float(value)
        except (TypeError, ValueError):
            raise InvalidRuleDocument(f"custom_days value is not a number: {value!r}") from None
        seconds = days * SECONDS_PER_DAY
        return CustomValue(ValueType.NUMBER, str(int(seconds) if seconds.is_integer() else seconds))
    value_type = _CUSTOM_TYPES.get(kind)
    if value_type is None:
        raise InvalidRuleDocument(f"Unknown customValue type: {raw['type']!r}")
    if value_type is ValueType.BOOL:
        truthy = value is True or str(value).strip().lower() == "true"
        return CustomValue(ValueType.BOOL, "1" if truthy else "0")
    if isinstance(value, (list, tuple)):
        return CustomValue(value_type, json.dumps(list(value)))
    return CustomValue(value_type, str(value))


def _decode_rule(raw: Any, section_id: int, catalog: RuleCatalog) -> Rule:
    if not isinstance(raw, dict):
        raise InvalidRuleDocument(f"Rule must be a mapping, got {raw!r}")
    if "firstValue" not in raw or "action" not in raw:
        raise InvalidRuleDocument(f"Rule needs firstValue and action: {raw!r}")

    try:
        action = RuleAction.from_name(raw["action"])
        operator = RuleOperator[str(raw["operator"]).strip().upper()] if raw.get("operator") else None
    except (KeyError, ValueError) as exc:
        raise InvalidRuleDocument(str(exc)) from exc

    first = catalog.resolve_by_identifier(str(raw["firstValue"]))
    last = catalog.resolve_by_identifier(str(raw["lastValue"])) if raw.get("lastValue") else None
    custom = _decode_custom_value(raw["customValue"]) if raw.get("customValue") is not None else None

    try:
        return Rule(
            action=action,
            first_value=first.ref,
            operator=operator,
            last_value=last.ref if last else None,
            custom_value=custom,
            section=section_id,
        )
    except ValueError as exc:
        raise InvalidRuleDocument(str(exc)) from exc


def decode(document: str, expected_media_type: MediaType | int, catalog: RuleCatalog) -> RuleGroupDraft:
    """Parse a YAML rule document.

    The declared media type is checked before any rule is looked at; a
    mismatch fails without touching the catalog.  The import is atomic: the
    draft is only returned once every rule decoded.

    Raises:
        InvalidRuleDocument: If the text is not a well-formed rule document.
        IncompatibleMediaType: If the document targets another media type.
        UnknownAttribute: If a rule references an unregistered attribute.
    """
    expected = MediaType(int(expected_media_type))
    try:
        parsed = yaml.safe_load(document)
    except yaml.YAMLError as exc:
        raise InvalidRuleDocument(f"Rule document is not valid YAML: {exc}") from exc
    if not isinstance(parsed, dict):
        raise InvalidRuleDocument("Rule document must be a mapping")

    declared = parsed.get("mediaType")
    if not isinstance(declared, str) or not declared.strip():
        raise InvalidRuleDocument("Rule document has no mediaType")
    try:
        declared_type = MediaType.from_name(declared)
    except ValueError:
        declared_type = None
    if declared_type is not expected:
        logger.warning("Rule import rejected: document is for %r, expected %s", declared, expected.name)
        raise IncompatibleMediaType(declared, expected.name)

    raw_sections = parsed.get("rules")
    if not isinstance(raw_sections, list):
        raise InvalidRuleDocument("Rule document has no rules list")

    sections: list[Section] = []
    for section_id, raw_section in enumerate(raw_sections):
        if not isinstance(raw_section, dict) or len(raw_section) != 1:
            raise InvalidRuleDocument(f"Section {section_id} must be a one-key mapping")
        raw_rules = next(iter(raw_section.values()))
        if not isinstance(raw_rules, list) or not raw_rules:
            raise InvalidRuleDocument(f"Section {section_id} has no rules")
        sections.append(Section(section_id, [_decode_rule(r, section_id, catalog) for r in raw_rules]))

    for rule in (r for s in sections for r in s.rules):
        entry = catalog.resolve_ref(rule.first_value)
        if not entry.supports(expected):
            logger.warning(
                "Imported rule uses %s, which has no value for %s",
                catalog.identifier_of(entry),
                expected.name.lower(),
            )

    return RuleGroupDraft(media_type=expected, sections=sections)
