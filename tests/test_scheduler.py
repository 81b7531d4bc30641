"""
Tests for schedule generation and message resolution.
"""

import pytest
from datetime import datetime

from tagnotify.scheduler import ScheduleGenerator, occurrence_id, resolve_message

NOW = datetime(2025, 2, 1, 0, 0, 0)


@pytest.fixture
def generator():
    return ScheduleGenerator()


@pytest.mark.unit
class TestScenarios:
    def test_birthday_every_year(self, generator, rule_factory, index_factory):
        rule = rule_factory(
            "birthday",
            offsets=["-P1D"],
            repeat="yearly",
            default_time="09:00",
            ignore_year=True,
        )
        index = index_factory({"people/ada.md": ("Ada", [("birthday", "1985-02-20")])})

        occurrences = generator.generate([rule], index, NOW)

        assert len(occurrences) == 1
        occ = occurrences[0]
        assert occ.fire_time == datetime(2025, 2, 19, 9, 0)
        assert occ.original_date == datetime(2025, 2, 20, 9, 0)
        assert occ.message == "Ada: birthday on 2025-02-20"
        assert occ.repeat == "yearly"
        assert not occ.fired

    def test_due_half_hour_before(self, generator, rule_factory, index_factory):
        rule = rule_factory("due", offsets=["-PT30M"])
        index = index_factory({"task.md": ("Task", [("due", "2025-10-01T14:00:00")])})

        occurrences = generator.generate([rule], index, NOW)
        assert [o.fire_time for o in occurrences] == [datetime(2025, 10, 1, 13, 30)]

        later = datetime(2025, 10, 1, 13, 31)
        assert generator.generate([rule], index, later) == []

    def test_bad_offset_skipped(self, generator, rule_factory, index_factory):
        rule = rule_factory("due", offsets=["-P1D", "bad-offset"])
        index = index_factory({"task.md": ("Task", [("due", "2025-10-01T14:00:00")])})

        occurrences = generator.generate([rule], index, NOW)

        assert len(occurrences) == 1
        assert occurrences[0].fire_time == datetime(2025, 9, 30, 14, 0)


@pytest.mark.unit
class TestGenerate:
    def test_no_offsets_fires_at_base(self, generator, rule_factory, index_factory):
        rule = rule_factory("due", default_time="08:15")
        index = index_factory({"a.md": ("A", [("due", "2025-03-01")])})

        occurrences = generator.generate([rule], index, NOW)
        assert [o.fire_time for o in occurrences] == [datetime(2025, 3, 1, 8, 15)]

    def test_generator_default_time_used(self, rule_factory, index_factory):
        rule = rule_factory("due")
        index = index_factory({"a.md": ("A", [("due", "2025-03-01")])})

        occurrences = ScheduleGenerator(default_time="07:00").generate([rule], index, NOW)
        assert occurrences[0].fire_time == datetime(2025, 3, 1, 7, 0)

    def test_rule_time_ignored_when_value_has_time(self, generator, rule_factory, index_factory):
        rule = rule_factory("due", default_time="09:00")
        index = index_factory({"a.md": ("A", [("due", "2025-03-01T17:45")])})

        assert generator.generate([rule], index, NOW)[0].fire_time == datetime(2025, 3, 1, 17, 45)

    def test_no_past_fire_times(self, generator, rule_factory, index_factory):
        rules = [
            rule_factory("due", offsets=["-P30D", "-P1D", "PT0S", "P1D"]),
            rule_factory("review", id="r2", offsets=["P1W"], repeat="weekly"),
        ]
        index = index_factory(
            {
                "a.md": ("A", [("due", "2025-02-10T10:00"), ("review", "2024-06-01")]),
                "b.md": ("B", [("due", "2024-12-24")]),
            }
        )

        occurrences = generator.generate(rules, index, NOW)

        assert occurrences
        assert all(o.fire_time > NOW for o in occurrences)
        # -P30D from Feb 10 is in the past and dropped
        a_due = [o for o in occurrences if o.document_path == "a.md" and o.rule_field == "due"]
        assert len(a_due) == 3

    def test_disabled_rule_excluded(self, generator, rule_factory, index_factory):
        rule = rule_factory("due", enabled=False)
        index = index_factory({"a.md": ("A", [("due", "2025-03-01")])})
        assert generator.generate([rule], index, NOW) == []

    def test_other_fields_ignored(self, generator, rule_factory, index_factory):
        rule = rule_factory("due")
        index = index_factory({"a.md": ("A", [("start", "2025-03-01")])})
        assert generator.generate([rule], index, NOW) == []

    def test_unparseable_value_skipped(self, generator, rule_factory, index_factory):
        rule = rule_factory("due")
        index = index_factory(
            {"a.md": ("A", [("due", "not a date"), ("due", "2025-03-01")])}
        )
        assert len(generator.generate([rule], index, NOW)) == 1

    def test_repeated_dates_scheduled_independently(self, generator, rule_factory, index_factory):
        rule = rule_factory("due", offsets=["-P1D"])
        index = index_factory(
            {"a.md": ("A", [("due", "2025-03-01"), ("due", "2025-03-01"), ("due", "2025-04-01")])}
        )

        occurrences = generator.generate([rule], index, NOW)

        assert len(occurrences) == 3
        assert len({o.id for o in occurrences}) == 3

    def test_ids_unique_across_rules(self, generator, rule_factory, index_factory):
        rules = [
            rule_factory("due", id="one", offsets=["-P1D", "-PT1H"]),
            rule_factory("due", id="two", offsets=["-P1D"]),
        ]
        index = index_factory({"a.md": ("A", [("due", "2025-03-01")])})

        occurrences = generator.generate(rules, index, NOW)
        assert len(occurrences) == 3
        assert len({o.id for o in occurrences}) == 3

    def test_idempotent(self, generator, rule_factory, index_factory):
        rules = [
            rule_factory("due", offsets=["-P1D", "-PT2H"]),
            rule_factory("birthday", repeat="yearly", ignore_year=True),
        ]
        index = index_factory(
            {
                "a.md": ("A", [("due", "2025-03-01T10:00")]),
                "b.md": ("B", [("birthday", "1990-07-04")]),
            }
        )

        first = generator.generate(rules, index, NOW)
        second = generator.generate(rules, index, NOW)

        def key(o):
            return (o.id, o.fire_time, o.message)

        assert [key(o) for o in first] == [key(o) for o in second]

    def test_ids_unaffected_by_other_fields(self, generator, rule_factory, index_factory):
        rule = rule_factory("due", offsets=["-P1D"])
        before = index_factory({"a.md": ("A", [("due", "2025-03-01T10:00")])})
        after = index_factory(
            {
                "a.md": (
                    "A",
                    [("birthday", "1990-07-04"), ("start", "2025-02-20"), ("due", "2025-03-01T10:00")],
                )
            }
        )

        (first,) = generator.generate([rule], before, NOW)
        (second,) = generator.generate([rule], after, NOW)
        assert first.id == second.id
        assert first.id == occurrence_id(rule.id, "a.md", "due", 0, "2025-03-01T10:00", 0)

    def test_sorted_by_fire_time(self, generator, rule_factory, index_factory):
        rule = rule_factory("due")
        index = index_factory(
            {
                "z.md": ("Z", [("due", "2025-03-01T08:00")]),
                "a.md": ("A", [("due", "2025-05-01T08:00")]),
                "m.md": ("M", [("due", "2025-04-01T08:00")]),
            }
        )
        times = [o.fire_time for o in generator.generate([rule], index, NOW)]
        assert times == sorted(times)

    def test_rules_as_dicts(self, generator, index_factory):
        index = index_factory({"a.md": ("A", [("due", "2025-03-01T08:00")])})
        rules = [{"id": "d", "field": "due"}, {"field": "bad field!"}]

        occurrences = generator.generate(rules, index, NOW)
        assert [o.rule_id for o in occurrences] == ["d"]

    def test_plain_mapping_index(self, generator, rule_factory, index_factory):
        index = index_factory({"a.md": ("A", [("due", "2025-03-01T08:00")])})
        occurrences = generator.generate([rule_factory("due")], index.snapshot(), NOW)
        assert len(occurrences) == 1

    def test_uses_current_time_by_default(self, generator, rule_factory, index_factory, freeze_at):
        index = index_factory({"a.md": ("A", [("due", "2025-03-01T08:00")])})
        with freeze_at("2025-03-01 09:00:00"):
            assert generator.generate([rule_factory("due")], index) == []
        with freeze_at("2025-03-01 07:00:00"):
            assert len(generator.generate([rule_factory("due")], index)) == 1


@pytest.mark.unit
class TestMessages:
    def test_all_placeholders(self):
        context = {"title": "Ada", "field": "birthday", "date": "2025-02-20", "path": "ada.md"}
        template = "{title} {field} {date} {path}"
        assert resolve_message(template, context) == "Ada birthday 2025-02-20 ada.md"

    def test_unknown_placeholders_left_alone(self):
        context = {"title": "Ada", "field": "f", "date": "d", "path": "p"}
        assert resolve_message("{title} {nope} {", context) == "Ada {nope} {"

    def test_custom_template(self, generator, rule_factory, index_factory):
        rule = rule_factory("due", message_template="Due: {title} ({path}) {unknown}")
        index = index_factory({"work/a.md": ("Report", [("due", "2025-03-01T08:00")])})

        occ = generator.generate([rule], index, NOW)[0]
        assert occ.message == "Due: Report (work/a.md) {unknown}"


@pytest.mark.unit
class TestPreview:
    def test_preview_marks_invalid_and_past(self, generator, rule_factory):
        rule = rule_factory("due", offsets=["-P1D", "oops", "-P60D"])
        pairs = generator.preview(rule, "2025-03-01T10:00", NOW)
        assert pairs == [
            ("-P1D", datetime(2025, 2, 28, 10, 0)),
            ("oops", None),
            ("-P60D", None),
        ]

    def test_occurrence_id_stable(self):
        first = occurrence_id("r", "a.md", "due", 0, "2025-03-01", 1)
        assert first == occurrence_id("r", "a.md", "due", 0, "2025-03-01", 1)
        assert first != occurrence_id("r", "a.md", "due", 0, "2025-03-01", 0)
