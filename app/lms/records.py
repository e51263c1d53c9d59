"""Resource kinds, field aliases and the canonical resolved record.

Remote records are loosely typed: the same logical field shows up under
different names depending on which API surface produced the record
(``id`` vs ``course_id`` vs ``idCourse``). Every read goes through an
ordered alias list instead of a fixed schema.
"""
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


class ResourceKind(str, Enum):
    USER = "user"
    COURSE = "course"
    LEARNING_PLAN = "learning_plan"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def schema(self) -> "KindSchema":
        return KIND_SCHEMAS[self]

    @classmethod
    def parse(cls, value: str) -> "ResourceKind":
        normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
        aliases = {"lp": cls.LEARNING_PLAN, "learningplan": cls.LEARNING_PLAN, "plan": cls.LEARNING_PLAN}
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


_LABELS = {
    ResourceKind.USER: "User",
    ResourceKind.COURSE: "Course",
    ResourceKind.LEARNING_PLAN: "Learning plan",
}


@dataclass(frozen=True)
class KindSchema:
    list_path: str
    get_path: str
    id_fields: Tuple[str, ...]
    name_fields: Tuple[str, ...]
    code_fields: Tuple[str, ...]
    description_fields: Tuple[str, ...] = ("description", "summary")

    def item_path(self, resource_id: str) -> str:
        return self.get_path.format(id=resource_id)


KIND_SCHEMAS: Dict[ResourceKind, KindSchema] = {
    ResourceKind.USER: KindSchema(
        list_path="/manage/v1/user",
        get_path="/manage/v1/user/{id}",
        id_fields=("user_id", "id", "idst"),
        name_fields=("fullname", "username"),
        code_fields=("email", "username", "userid"),
    ),
    ResourceKind.COURSE: KindSchema(
        list_path="/learn/v1/courses",
        get_path="/learn/v1/courses/{id}",
        id_fields=("id", "course_id", "idCourse", "id_course"),
        name_fields=("name", "title", "course_name"),
        code_fields=("code", "course_code"),
    ),
    ResourceKind.LEARNING_PLAN: KindSchema(
        list_path="/learningplan/v1/learningplans",
        get_path="/learningplan/v1/learningplans/{id}",
        id_fields=("learning_plan_id", "id", "lp_id"),
        name_fields=("name", "title", "learning_plan_name", "lp_name", "learningplan_name", "plan_name"),
        code_fields=("code", "lp_code"),
    ),
}


def first_non_empty(record: Mapping[str, Any], aliases: Iterable[str]) -> Optional[str]:
    """Return the first alias whose value is present and non-blank, as a string."""
    for key in aliases:
        value = record.get(key)
        if value is None or isinstance(value, bool):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def record_id(kind: ResourceKind, record: Mapping[str, Any]) -> Optional[str]:
    return first_non_empty(record, kind.schema.id_fields)


def record_name(kind: ResourceKind, record: Mapping[str, Any]) -> Optional[str]:
    name = first_non_empty(record, kind.schema.name_fields)
    if name is None and kind is ResourceKind.USER:
        joined = " ".join(
            part for part in (first_non_empty(record, ("first_name",)), first_non_empty(record, ("last_name",))) if part
        )
        name = joined or None
    return name


def record_codes(kind: ResourceKind, record: Mapping[str, Any]) -> Tuple[str, ...]:
    """All non-empty short-code style values (email/username for users)."""
    codes = []
    for key in kind.schema.code_fields:
        value = first_non_empty(record, (key,))
        if value:
            codes.append(value)
    return tuple(codes)


def record_description(kind: ResourceKind, record: Mapping[str, Any]) -> str:
    return first_non_empty(record, kind.schema.description_fields) or ""


class MatchTier(IntEnum):
    """Resolution tiers, most confident first."""
    DIRECT = 0
    EXACT = 1
    CODE = 2
    PREFIX = 3
    CONTAINS = 4
    FALLBACK = 5

    @property
    def confident(self) -> bool:
        return self <= MatchTier.CODE

    @property
    def annotation(self) -> Optional[str]:
        if self is MatchTier.CONTAINS:
            return "ambiguous match"
        if self is MatchTier.FALLBACK:
            return "unconfirmed"
        return None


@dataclass(frozen=True)
class ResolvedResource:
    id: str
    display_name: str
    kind: ResourceKind
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
    tier: MatchTier = MatchTier.EXACT

    @property
    def annotation(self) -> Optional[str]:
        return self.tier.annotation

    @property
    def email(self) -> Optional[str]:
        return first_non_empty(self.raw, ("email",))

    @classmethod
    def from_record(cls, kind: ResourceKind, record: Mapping[str, Any], tier: MatchTier) -> "ResolvedResource":
        resource_id = record_id(kind, record)
        if resource_id is None:
            raise ValueError(f"{kind.label} record carries no id field: {sorted(record)}")
        name = record_name(kind, record) or f"{kind.label} {resource_id}"
        return cls(id=resource_id, display_name=name, kind=kind, raw=dict(record), tier=tier)
