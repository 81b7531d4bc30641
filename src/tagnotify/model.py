import re
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from .durations import is_valid_duration, is_valid_time
from .errors import InvalidRule, InvalidRuleField, InvalidTimeFormat

FIELD_REGEX = re.compile(r"^[A-Za-z0-9_-]+$")
TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class Channel(str, Enum):
    IN_APP = "in-app"
    SYSTEM = "system"


class Repeat(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


ChannelName = Literal["in-app", "system"]
RepeatName = Literal["none", "daily", "weekly", "monthly", "yearly"]


def new_rule_id() -> str:
    return uuid4().hex


# ─── Rules ─────────────────────────────────────────────────────────
class Rule(BaseModel):
    """
    A user-authored notification rule.

    Field names and the default time are checked whenever a rule is loaded;
    offsets are deliberately left unchecked here so that a stored rule with
    a bad offset still loads and only that offset is skipped when
    scheduling. ``validate_rule`` applies the full set of checks used when
    a rule is created or edited.
    """

    id: str = Field(default_factory=new_rule_id)
    field: str = Field(..., pattern=r"^[A-Za-z0-9_-]+$")
    default_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    offsets: list[str] = []
    repeat: RepeatName = "none"
    message_template: str = "{title}: {field} on {date}"
    channels: list[ChannelName] = ["in-app"]
    enabled: bool = True
    ignore_year: bool = False

    @field_validator("default_time", mode="before")
    @classmethod
    def _blank_time_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("channels")
    @classmethod
    def _dedupe_channels(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for channel in value:
            if channel not in seen:
                seen.append(channel)
        return seen


def _rule_data(rule: Rule | dict[str, Any]) -> dict[str, Any]:
    """Plain dict for ``rule``; keys missing from a dict take the model defaults."""
    if isinstance(rule, Rule):
        return rule.model_dump()
    data = {
        name: info.get_default(call_default_factory=True)
        for name, info in Rule.model_fields.items()
        if not info.is_required()
    }
    data.update(rule)
    return data


def validate_rule(rule: Rule | dict[str, Any]) -> list[str]:
    """
    Return every problem with ``rule`` as a list of user facing messages;
    an empty list means the rule is acceptable.
    """
    data = _rule_data(rule)
    errors: list[str] = []

    fld = data.get("field") or ""
    if not FIELD_REGEX.match(fld):
        errors.append(str(InvalidRuleField(fld)))

    default_time = data.get("default_time")
    if default_time and not is_valid_time(default_time):
        errors.append(str(InvalidTimeFormat(default_time)))

    for offset in data.get("offsets") or []:
        if not is_valid_duration(offset):
            errors.append(f"Invalid ISO 8601 duration: {offset!r}")

    repeat = data.get("repeat", "none")
    if repeat not in [r.value for r in Repeat]:
        errors.append(f"Invalid repeat: {repeat!r}")

    template = data.get("message_template") or ""
    if not template.strip():
        errors.append("Message template cannot be empty")

    channels = data.get("channels") or []
    if not channels:
        errors.append("At least one notification channel must be selected")
    for channel in channels:
        if channel not in [c.value for c in Channel]:
            errors.append(f"Unknown channel: {channel!r}")

    return errors


def check_rule(rule: Rule | dict[str, Any]) -> Rule:
    """
    Validate a rule at the editing boundary and return it as a ``Rule``.

    Raises:
        InvalidRuleField: the field name is the only problem.
        InvalidTimeFormat: the default time is the only problem.
        InvalidRule: any other problem, or several at once.
    """
    errors = validate_rule(rule)
    if len(errors) == 1:
        data = _rule_data(rule)
        fld = data.get("field") or ""
        if not FIELD_REGEX.match(fld):
            raise InvalidRuleField(fld)
        default_time = data.get("default_time")
        if default_time and not is_valid_time(default_time):
            raise InvalidTimeFormat(default_time)
    if errors:
        raise InvalidRule(errors)
    return rule if isinstance(rule, Rule) else Rule.model_validate(rule)


# ─── Index entries ──────────────────────────────────────────────────
@dataclass
class ExtractedDate:
    field: str
    value: str  # ISO 8601 date or date-time
    raw_value: str = ""
    source: str = "frontmatter"  # or "inline-tag"


@dataclass
class DocumentEntry:
    path: str
    title: str
    dates: list[ExtractedDate] = field(default_factory=list)
    last_modified: float = 0.0

    def dates_for(self, name: str) -> list[ExtractedDate]:
        return [d for d in self.dates if d.field == name]


# ─── Occurrences ────────────────────────────────────────────────────
@dataclass
class ScheduledOccurrence:
    id: str
    rule_id: str
    rule_field: str
    document_path: str
    document_title: str
    original_date: datetime
    fire_time: datetime
    message: str
    channels: list[str]
    fired: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    repeat: str = "none"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("original_date", "fire_time", "created_at"):
            data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduledOccurrence":
        values = dict(data)
        for key in ("original_date", "fire_time", "created_at"):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        values["channels"] = list(values.get("channels") or [])
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in values.items() if k in known})
