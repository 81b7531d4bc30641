"""
Turning rules and indexed dates into scheduled notification occurrences.
"""

import hashlib
from datetime import datetime, tzinfo
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import ValidationError

from .durations import (
    ZERO,
    advance_to_next_occurrence,
    apply_duration,
    combine_date_and_time,
    normalize_year_for_recurring,
    parse_duration,
    parse_instant,
)
from .errors import InvalidDurationFormat, InvalidTimeFormat
from .index import DocumentIndex, as_mapping
from .model import DocumentEntry, ExtractedDate, Rule, ScheduledOccurrence
from .shared import DATE_FMT, log_msg

PLACEHOLDERS = ("title", "field", "date", "path")


def resolve_message(template: str, context: Mapping[str, str]) -> str:
    """
    Literal substitution of {title}, {field}, {date} and {path}; any other
    brace expression is left exactly as written.
    """
    message = template
    for name in PLACEHOLDERS:
        message = message.replace("{" + name + "}", str(context.get(name, "")))
    return message


def occurrence_id(
    rule_id: str,
    path: str,
    field: str,
    date_index: int,
    raw_value: str,
    offset_index: int,
) -> str:
    """Stable id for one (rule, document date, offset) combination."""
    key = "\x1f".join(
        [rule_id, path, field, str(date_index), raw_value, str(offset_index)]
    )
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:20]


def _as_rule(rule: Union[Rule, dict[str, Any]]) -> Optional[Rule]:
    if isinstance(rule, Rule):
        return rule
    try:
        return Rule.model_validate(rule)
    except ValidationError as e:
        log_msg(f"skipping malformed rule {rule!r}: {e}")
        return None


class ScheduleGenerator:
    """
    Computes the complete set of future occurrences for a set of rules.

    ``generate`` is a pure function of its arguments: it never touches a
    store, and calling it twice with the same inputs yields occurrences
    with the same ids, fire times and messages.
    """

    def __init__(self, default_time: Optional[str] = None, zone: tzinfo | None = None):
        self.default_time = default_time
        self.zone = zone

    def generate(
        self,
        rules: Iterable[Union[Rule, dict[str, Any]]],
        index: Union[DocumentIndex, Mapping[str, DocumentEntry]],
        now: Optional[datetime] = None,
        default_time: Optional[str] = None,
    ) -> list[ScheduledOccurrence]:
        now = now or datetime.now()
        default_time = default_time or self.default_time
        documents = as_mapping(index)
        occurrences: list[ScheduledOccurrence] = []

        for candidate in rules:
            rule = _as_rule(candidate)
            if rule is None or not rule.enabled:
                continue
            for path in sorted(documents):
                entry = documents[path]
                # positions count only this field, so ids do not move when
                # other fields of the note are indexed
                for date_index, extracted in enumerate(entry.dates_for(rule.field)):
                    occurrences.extend(
                        self._occurrences_for_date(
                            rule, entry, date_index, extracted, now, default_time
                        )
                    )

        occurrences.sort(key=lambda o: (o.fire_time, o.id))
        log_msg(
            f"generated {len(occurrences)} occurrences from {len(documents)} documents"
        )
        return occurrences

    def base_instant(
        self,
        rule: Rule,
        value: str,
        now: datetime,
        default_time: Optional[str] = None,
    ) -> datetime:
        """
        The instant offsets are measured from: the parsed value, moved into
        the current year for ``ignore_year`` rules, with the default time
        applied when the value carries no time of day.

        Raises:
            ValueError: when ``value`` cannot be parsed.
        """
        base, has_time = parse_instant(value, self.zone)
        if rule.ignore_year:
            base = normalize_year_for_recurring(base, now)
        time_of_day = rule.default_time or default_time or self.default_time
        if not has_time and time_of_day:
            try:
                base = combine_date_and_time(base, time_of_day)
            except InvalidTimeFormat as e:
                log_msg(f"rule {rule.id}: {e}; keeping midnight")
        return base

    def fire_time(self, rule: Rule, base: datetime, offset: Optional[str], now: datetime):
        """
        Apply one offset (None for "no offset") and the rule's cadence to
        ``base``. Returns None when nothing should be scheduled.

        Raises:
            InvalidDurationFormat: when ``offset`` is malformed.
        """
        duration = ZERO if offset is None else parse_duration(offset)
        candidate = apply_duration(base, duration)
        if rule.repeat == "none":
            return candidate if candidate > now else None
        return advance_to_next_occurrence(candidate, rule.repeat, now)

    def _occurrences_for_date(
        self,
        rule: Rule,
        entry: DocumentEntry,
        date_index: int,
        extracted: ExtractedDate,
        now: datetime,
        default_time: Optional[str],
    ) -> list[ScheduledOccurrence]:
        try:
            base = self.base_instant(rule, extracted.value, now, default_time)
        except (ValueError, OverflowError):
            # unparseable values are the index layer's concern
            return []

        results: list[ScheduledOccurrence] = []
        offsets: list[Optional[str]] = list(rule.offsets) or [None]
        message = resolve_message(
            rule.message_template,
            {
                "title": entry.title,
                "field": rule.field,
                "date": base.strftime(DATE_FMT),
                "path": entry.path,
            },
        )
        for offset_index, offset in enumerate(offsets):
            try:
                when = self.fire_time(rule, base, offset, now)
            except InvalidDurationFormat as e:
                log_msg(f"rule {rule.id} ({rule.field}): {e}; offset skipped")
                continue
            except OverflowError as e:
                log_msg(f"rule {rule.id}: offset {offset!r} out of range: {e}")
                continue
            if when is None:
                continue
            results.append(
                ScheduledOccurrence(
                    id=occurrence_id(
                        rule.id,
                        entry.path,
                        rule.field,
                        date_index,
                        extracted.raw_value or extracted.value,
                        offset_index,
                    ),
                    rule_id=rule.id,
                    rule_field=rule.field,
                    document_path=entry.path,
                    document_title=entry.title,
                    original_date=base,
                    fire_time=when,
                    message=message,
                    channels=list(rule.channels),
                    fired=False,
                    created_at=now,
                    repeat=rule.repeat,
                )
            )
        return results

    def preview(
        self,
        rule: Rule,
        value: str,
        now: Optional[datetime] = None,
        default_time: Optional[str] = None,
    ) -> list[tuple[str, Optional[datetime]]]:
        """
        (offset, fire time) pairs that ``rule`` would schedule for one date
        value. Invalid offsets and discarded past times map to None.
        """
        now = now or datetime.now()
        base = self.base_instant(rule, value, now, default_time)
        results: list[tuple[str, Optional[datetime]]] = []
        for offset in list(rule.offsets) or [None]:
            try:
                when = self.fire_time(rule, base, offset, now)
            except InvalidDurationFormat:
                when = None
            results.append((offset or "PT0S", when))
        return results


class OccurrenceStore:
    """
    In-memory occurrences keyed by id.

    ``replace_all`` is a full replacement: fired flags from the previous
    generation are not carried over.
    """

    def __init__(self, occurrences: Optional[Iterable[ScheduledOccurrence]] = None):
        self._occurrences: dict[str, ScheduledOccurrence] = {}
        if occurrences:
            self.replace_all(occurrences)

    def __len__(self) -> int:
        return len(self._occurrences)

    def __contains__(self, occurrence_id: str) -> bool:
        return occurrence_id in self._occurrences

    def size(self) -> int:
        return len(self._occurrences)

    def replace_all(self, occurrences: Iterable[ScheduledOccurrence]) -> None:
        self._occurrences = {o.id: o for o in occurrences}

    def clear(self) -> None:
        self._occurrences = {}

    def get(self, occurrence_id: str) -> Optional[ScheduledOccurrence]:
        return self._occurrences.get(occurrence_id)

    def all(self) -> list[ScheduledOccurrence]:
        return sorted(self._occurrences.values(), key=lambda o: (o.fire_time, o.id))

    def due_as_of(self, instant: datetime) -> list[ScheduledOccurrence]:
        return [o for o in self.all() if not o.fired and o.fire_time <= instant]

    def upcoming(
        self, limit: int = 10, instant: Optional[datetime] = None
    ) -> list[ScheduledOccurrence]:
        instant = instant or datetime.now()
        pending = [o for o in self.all() if not o.fired and o.fire_time > instant]
        return pending[: max(limit, 0)]

    def mark_fired(self, occurrence_id: str) -> bool:
        occurrence = self._occurrences.get(occurrence_id)
        if occurrence is None:
            return False
        occurrence.fired = True
        return True
