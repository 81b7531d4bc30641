"""
Shared pytest fixtures for tagnotify tests.

This module provides common fixtures used across all test files, including:
- Time freezing utilities
- An isolated tagnotify home directory
- Simulated timers and a recording deliverer
- Test data factories
"""

import pytest
from datetime import datetime
from freezegun import freeze_time

from tagnotify.controller import Controller
from tagnotify.errors import DeliveryUnsupported
from tagnotify.index import DocumentIndex
from tagnotify.model import Rule
from tagnotify.persistence import ScheduleFile
from tagnotify.tagnotify_env import TagnotifyConfig
from tagnotify.timers import ManualTimers


@pytest.fixture(autouse=True)
def tagnotify_home(tmp_path, monkeypatch):
    """
    Points TAGNOTIFY_HOME at a temporary directory so that log files and
    configuration never touch the real home directory.
    """
    home = tmp_path / "tagnotify-home"
    monkeypatch.setenv("TAGNOTIFY_HOME", str(home))
    return home


@pytest.fixture
def frozen_time():
    """
    Provides a freezegun context that freezes time to 2025-01-01 12:00:00.

    Usage:
        def test_something(frozen_time):
            frozen_time.tick(delta=timedelta(hours=2))
    """
    with freeze_time("2025-01-01 12:00:00") as frozen:
        yield frozen


@pytest.fixture
def freeze_at():
    """
    Returns a function that freezes time to a specific datetime.

    Usage:
        def test_something(freeze_at):
            with freeze_at("2025-01-15 10:00:00"):
                now = datetime.now()
    """
    return freeze_time


@pytest.fixture
def manual_timers():
    """Simulated timers starting at 2025-01-01 12:00:00."""
    return ManualTimers(start=datetime(2025, 1, 1, 12, 0, 0))


class RecordingDeliverer:
    """Collects (channel, occurrence) pairs; channels in ``failing`` raise."""

    def __init__(self):
        self.calls = []
        self.failing = {}

    def __call__(self, channel, occurrence):
        if channel in self.failing:
            raise self.failing[channel]
        self.calls.append((channel, occurrence))

    @property
    def messages(self):
        return [occ.message for _, occ in self.calls]

    def fail(self, channel, error=None):
        self.failing[channel] = error or DeliveryUnsupported(channel, "not available")


@pytest.fixture
def recorder():
    return RecordingDeliverer()


@pytest.fixture
def rule_factory():
    """
    Returns a function building a Rule with sensible defaults.

    Usage:
        rule = rule_factory("due", offsets=["-PT30M"])
    """

    def _create(field: str = "due", **kwargs) -> Rule:
        kwargs.setdefault("id", f"rule-{field}")
        return Rule(field=field, **kwargs)

    return _create


@pytest.fixture
def index_factory():
    """
    Returns a function building a DocumentIndex from
    ``{path: (title, [(field, iso value), ...])}``.
    """

    def _create(documents: dict) -> DocumentIndex:
        index = DocumentIndex()
        for path, (title, dates) in documents.items():
            index.add(path, title, dates)
        return index

    return _create


@pytest.fixture
def controller_factory(tmp_path, manual_timers, recorder):
    """
    Returns a function building a Controller wired to simulated timers, the
    recording deliverer and a schedule file under tmp_path.
    """

    def _create(config: TagnotifyConfig | None = None, index=None, **kwargs) -> Controller:
        kwargs.setdefault("schedule_file", ScheduleFile(tmp_path / "schedule.json"))
        return Controller(
            config or TagnotifyConfig(),
            deliver=recorder,
            timers=manual_timers,
            clock=manual_timers.clock,
            index=index,
            **kwargs,
        )

    return _create


@pytest.fixture
def vault(tmp_path):
    """
    An empty notes folder. Use ``write(rel_path, text)`` to add notes.
    """

    root = tmp_path / "vault"
    root.mkdir()

    class Vault:
        path = root

        def write(self, rel_path: str, text: str):
            target = root / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding="utf-8")
            return target

    return Vault()
