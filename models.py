"""
models.py – Domain types for rule groups, collections and evaluation traces.

Rule groups and collections are loaded from the JSON configuration and the
state file; the evaluation trace types are transient and only live for the
duration of one run (they are logged, never persisted).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ValueType(IntEnum):
    NUMBER = 0
    DATE = 1
    TEXT = 2
    BOOL = 3
    NUMBER_ARRAY = 4
    TEXT_ARRAY = 5

    @property
    def human_name(self) -> str:
        return _VALUE_TYPE_NAMES[self]


_VALUE_TYPE_NAMES: dict[ValueType, str] = {
    ValueType.NUMBER: "number",
    ValueType.DATE: "date",
    ValueType.TEXT: "text",
    ValueType.BOOL: "boolean",
    ValueType.NUMBER_ARRAY: "number_list",
    ValueType.TEXT_ARRAY: "text_list",
}


class RuleOperator(IntEnum):
    AND = 0
    OR = 1


class RuleAction(IntEnum):
    """The comparison a rule performs (not to be confused with an enforcement action)."""

    BIGGER = 0
    SMALLER = 1
    EQUALS = 2
    NOT_EQUALS = 3
    CONTAINS = 4
    BEFORE = 5
    IN_LAST = 6
    IN_NEXT = 7
    NOT_CONTAINS = 8
    CONTAINS_PARTIAL = 9
    NOT_CONTAINS_PARTIAL = 10
    CONTAINS_ALL = 11
    NOT_CONTAINS_ALL = 12
    COUNT_EQUALS = 13
    COUNT_NOT_EQUALS = 14
    COUNT_BIGGER = 15
    COUNT_SMALLER = 16

    @classmethod
    def from_name(cls, name: str) -> "RuleAction":
        key = str(name).strip().upper().replace(" ", "_")
        key = _RULE_ACTION_ALIASES.get(key, key)
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"Unknown rule action: {name!r}") from None


_RULE_ACTION_ALIASES: dict[str, str] = {
    "GREATERTHAN": "BIGGER",
    "GREATER_THAN": "BIGGER",
    "LESSTHAN": "SMALLER",
    "LESS_THAN": "SMALLER",
    "NOTEQUALS": "NOT_EQUALS",
    "AFTER": "IN_NEXT",
}


class MediaType(IntEnum):
    MOVIES = 1
    SHOWS = 2
    SEASONS = 3
    EPISODES = 4

    @classmethod
    def from_name(cls, name: str) -> "MediaType":
        key = str(name).strip().upper()
        key = {"MOVIE": "MOVIES", "SHOW": "SHOWS", "SEASON": "SEASONS", "EPISODE": "EPISODES"}.get(key, key)
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"Unknown media type: {name!r}") from None

    @property
    def is_episodic(self) -> bool:
        return self is not MediaType.MOVIES


class EnforcementAction(str, Enum):
    DELETE = "delete"
    EXCLUDE = "exclude"
    ADD_TO_COLLECTION = "add_to_collection"
    CHANGE_QUALITY_PROFILE = "change_quality_profile"


class ArrAction(IntEnum):
    DELETE = 0
    UNMONITOR = 1
    UNMONITOR_DELETE_ALL = 2
    UNMONITOR_DELETE_EXISTING = 3
    CHANGE_QUALITY_PROFILE = 4


class MediaServerType(str, Enum):
    PLEX = "plex"
    JELLYFIN = "jellyfin"


# ``(application_id, property_id)`` pair pointing into the rule catalog.
AttributeRef = tuple[int, int]

SECONDS_PER_DAY: int = 86400

# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass
class CustomValue:
    """A literal right-hand operand.

    ``custom_days`` documents are stored as a NUMBER literal holding seconds
    (see :func:`codec.decode`).
    """

    type: ValueType
    value: str


@dataclass
class Rule:
    action: RuleAction
    first_value: AttributeRef
    operator: RuleOperator | None = None
    last_value: AttributeRef | None = None
    custom_value: CustomValue | None = None
    section: int = 0

    def __post_init__(self) -> None:
        if self.last_value is not None and self.custom_value is not None:
            raise ValueError("A rule cannot compare against both an attribute and a literal")
        self.first_value = tuple(self.first_value)  # type: ignore[assignment]
        if self.last_value is not None:
            self.last_value = tuple(self.last_value)  # type: ignore[assignment]

    @classmethod
    def from_dict(cls, data: dict[str, Any], section: int = 0) -> "Rule":
        operator = data.get("operator")
        custom = data.get("custom_value")
        return cls(
            action=RuleAction(int(data["action"])),
            first_value=tuple(data["first_value"]),
            operator=RuleOperator(int(operator)) if operator is not None else None,
            last_value=tuple(data["last_value"]) if data.get("last_value") else None,
            custom_value=(
                CustomValue(ValueType(int(custom["type"])), str(custom["value"]))
                if isinstance(custom, dict)
                else None
            ),
            section=int(data.get("section", section)),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "action": int(self.action),
            "first_value": list(self.first_value),
            "section": self.section,
        }
        if self.operator is not None:
            out["operator"] = int(self.operator)
        if self.last_value is not None:
            out["last_value"] = list(self.last_value)
        if self.custom_value is not None:
            out["custom_value"] = {"type": int(self.custom_value.type), "value": self.custom_value.value}
        return out


@dataclass
class Section:
    id: int
    rules: list[Rule] = field(default_factory=list)


def group_into_sections(rules: list[Rule]) -> list[Section]:
    """Group a flat rule list into sections, preserving first-seen section order."""
    sections: dict[int, Section] = {}
    for rule in rules:
        sections.setdefault(rule.section, Section(rule.section)).rules.append(rule)
    return list(sections.values())


@dataclass
class RuleGroup:
    id: int
    name: str
    media_type: MediaType
    library_id: str
    sections: list[Section] = field(default_factory=list)
    action: EnforcementAction = EnforcementAction.ADD_TO_COLLECTION
    is_active: bool = True
    description: str = ""
    collection_id: int | None = None
    radarr_quality_profile_id: int | None = None
    sonarr_quality_profile_id: int | None = None
    rule_handler_cron_schedule: str | None = None
    # Settings for the owning collection (arr_action, delete_after_days, ...).
    collection: dict[str, Any] = field(default_factory=dict)

    @property
    def rules(self) -> list[Rule]:
        return [rule for section in self.sections for rule in section.rules]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RuleGroup":
        rules = [Rule.from_dict(r) for r in data.get("rules") or []]
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or f"Rule group {data['id']}"),
            media_type=MediaType(int(data.get("media_type", MediaType.MOVIES))),
            library_id=str(data.get("library_id", "")),
            sections=group_into_sections(rules),
            action=EnforcementAction(data.get("action", EnforcementAction.ADD_TO_COLLECTION.value)),
            is_active=bool(data.get("is_active", True)),
            description=str(data.get("description") or ""),
            collection_id=data.get("collection_id"),
            radarr_quality_profile_id=data.get("radarr_quality_profile_id"),
            sonarr_quality_profile_id=data.get("sonarr_quality_profile_id"),
            rule_handler_cron_schedule=data.get("rule_handler_cron_schedule") or None,
            collection=dict(data.get("collection") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "media_type": int(self.media_type),
            "library_id": self.library_id,
            "is_active": self.is_active,
            "action": self.action.value,
            "collection_id": self.collection_id,
            "radarr_quality_profile_id": self.radarr_quality_profile_id,
            "sonarr_quality_profile_id": self.sonarr_quality_profile_id,
            "rule_handler_cron_schedule": self.rule_handler_cron_schedule,
            "collection": dict(self.collection),
            "rules": [rule.to_dict() for rule in self.rules],
        }


@dataclass
class RuleGroupDraft:
    """Decoded rule document, ready to be attached to a new or existing rule group."""

    media_type: MediaType
    sections: list[Section]

    @property
    def rules(self) -> list[Rule]:
        return [rule for section in self.sections for rule in section.rules]


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


@dataclass
class MediaItem:
    media_server_id: str
    title: str
    type: MediaType
    library_id: str = ""
    parent_id: str | None = None
    grandparent_id: str | None = None
    index: int | None = None
    parent_index: int | None = None
    tmdb_id: int | None = None
    tvdb_id: int | None = None
    imdb_id: str | None = None
    added_at: datetime | None = None
    size_bytes: int | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


@dataclass
class Collection:
    id: int
    library_id: str
    title: str
    type: MediaType = MediaType.MOVIES
    description: str | None = None
    is_active: bool = True
    arr_action: ArrAction = ArrAction.DELETE
    manual_collection: bool = False
    manual_collection_name: str | None = None
    list_exclusions: bool = False
    sync_to_plex_collection: bool = True
    delete_after_days: int | None = None
    media_server_id: str | None = None
    media_server_type: MediaServerType = MediaServerType.JELLYFIN
    radarr_quality_profile_id: int | None = None
    sonarr_quality_profile_id: int | None = None
    total_size_bytes: int | None = None
    handled_media_amount: int = 0
    last_duration_in_seconds: int = 0
    rule_group_id: int | None = None

    @property
    def mirror_title(self) -> str:
        """The title used to find this collection on the media server."""
        if self.manual_collection and self.manual_collection_name:
            return self.manual_collection_name
        return self.title

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Collection":
        return cls(
            id=int(data["id"]),
            library_id=str(data.get("library_id", "")),
            title=str(data.get("title", "")),
            type=MediaType(int(data.get("type", MediaType.MOVIES))),
            description=data.get("description"),
            is_active=bool(data.get("is_active", True)),
            arr_action=ArrAction(int(data.get("arr_action", ArrAction.DELETE))),
            manual_collection=bool(data.get("manual_collection", False)),
            manual_collection_name=data.get("manual_collection_name"),
            list_exclusions=bool(data.get("list_exclusions", False)),
            sync_to_plex_collection=bool(data.get("sync_to_plex_collection", True)),
            delete_after_days=data.get("delete_after_days"),
            media_server_id=data.get("media_server_id"),
            media_server_type=MediaServerType(data.get("media_server_type", MediaServerType.JELLYFIN.value)),
            radarr_quality_profile_id=data.get("radarr_quality_profile_id"),
            sonarr_quality_profile_id=data.get("sonarr_quality_profile_id"),
            total_size_bytes=data.get("total_size_bytes"),
            handled_media_amount=int(data.get("handled_media_amount") or 0),
            last_duration_in_seconds=int(data.get("last_duration_in_seconds") or 0),
            rule_group_id=data.get("rule_group_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["type"] = int(self.type)
        out["arr_action"] = int(self.arr_action)
        out["media_server_type"] = self.media_server_type.value
        return out


@dataclass
class CollectionMedia:
    id: int
    collection_id: int
    media_server_id: str
    add_date: datetime
    tmdb_id: int | None = None
    image_path: str | None = None
    is_manual: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CollectionMedia":
        return cls(
            id=int(data["id"]),
            collection_id=int(data["collection_id"]),
            media_server_id=str(data["media_server_id"]),
            add_date=datetime.fromisoformat(data["add_date"]),
            tmdb_id=data.get("tmdb_id"),
            image_path=data.get("image_path"),
            is_manual=bool(data.get("is_manual", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["add_date"] = self.add_date.isoformat()
        return out


@dataclass
class Exclusion:
    id: int
    media_server_id: str
    rule_group_id: int | None = None
    parent: str | None = None
    type: MediaType | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Exclusion":
        typ = data.get("type")
        return cls(
            id=int(data["id"]),
            media_server_id=str(data["media_server_id"]),
            rule_group_id=data.get("rule_group_id"),
            parent=data.get("parent"),
            type=MediaType(int(typ)) if typ else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "media_server_id": self.media_server_id,
            "rule_group_id": self.rule_group_id,
            "parent": self.parent,
            "type": int(self.type) if self.type else None,
        }


@dataclass
class CollectionLog:
    collection_id: int
    timestamp: datetime
    message: str
    kind: str = "info"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CollectionLog":
        return cls(
            collection_id=int(data["collection_id"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            message=str(data.get("message", "")),
            kind=str(data.get("kind", "info")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection_id": self.collection_id,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "kind": self.kind,
        }


# ---------------------------------------------------------------------------
# Evaluation trace
# ---------------------------------------------------------------------------


@dataclass
class ComparisonResult:
    first_value_name: str
    first_value: Any
    second_value_name: str
    second_value: Any
    action: str
    result: bool
    operator: str | None = None


@dataclass
class SectionComparisonResult:
    id: int
    result: bool
    rule_results: list[ComparisonResult] = field(default_factory=list)
    operator: str | None = None


@dataclass
class MediaComparisonStatistics:
    media_server_id: str
    result: bool
    section_results: list[SectionComparisonResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
