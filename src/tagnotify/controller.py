from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from .delivery import Deliverer
from .dispatcher import DeliverFn, Dispatcher
from .errors import IndexUnavailable, PersistenceFailure
from .index import DocumentIndex
from .indexer import VaultIndexer
from .model import DocumentEntry, Rule, ScheduledOccurrence, check_rule
from .persistence import ScheduleFile
from .scheduler import OccurrenceStore, ScheduleGenerator
from .shared import log_msg
from .tagnotify_env import TagnotifyConfig, TagnotifyEnvironment
from .timers import AsyncioTimers, TimerHandle, Timers

DEBOUNCE_SECONDS = 1.0


class RebuildCoordinator:
    """
    Coalesces bursts of change notifications into one rebuild that runs
    after ``delay`` seconds without further changes.
    """

    def __init__(
        self,
        timers: Timers,
        rebuild: Callable[[], Any],
        delay: float = DEBOUNCE_SECONDS,
    ):
        self.timers = timers
        self.rebuild = rebuild
        self.delay = delay
        self.enabled = True
        self.rebuilds = 0
        self._handle: Optional[TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def touch(self) -> None:
        if not self.enabled:
            return
        self.cancel()
        self._handle = self.timers.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def flush(self) -> None:
        """Run a pending rebuild right away."""
        if self._handle is not None:
            self.cancel()
            self._fire()

    def _fire(self) -> None:
        self._handle = None
        self.rebuilds += 1
        log_msg("debounced rebuild triggered")
        self.rebuild()


class Controller:
    """
    The control surface: owns the occurrence store, dispatcher, index and
    persistence, and exposes the operations used by the command line.

    Configuration is passed in explicitly; nothing here reads global state.
    """

    def __init__(
        self,
        config: TagnotifyConfig,
        env: Optional[TagnotifyEnvironment] = None,
        deliver: Optional[DeliverFn] = None,
        timers: Optional[Timers] = None,
        clock: Callable[[], datetime] = datetime.now,
        index: Optional[DocumentIndex] = None,
        schedule_file: Optional[ScheduleFile] = None,
    ):
        self.config = config
        self.env = env
        self.clock = clock
        self.timers = timers or AsyncioTimers()
        self.store = OccurrenceStore()
        self.index = index if index is not None else DocumentIndex()
        zone = env.zone if env is not None else None
        self.generator = ScheduleGenerator(default_time=config.default_time, zone=zone)
        self.deliver = deliver or Deliverer.from_config(config.delivery)
        self.dispatcher = Dispatcher(
            self.store,
            self.deliver,
            self.timers,
            interval=config.dispatch.interval,
            clock=clock,
            paused=config.dispatch.paused,
        )
        self.coordinator = RebuildCoordinator(
            self.timers, self._coordinated_rebuild, config.dispatch.debounce
        )
        if schedule_file is None and env is not None:
            schedule_file = ScheduleFile(env.schedule_path)
        self.schedule_file = schedule_file
        self.indexer: Optional[VaultIndexer] = None
        if config.index.root:
            self.indexer = VaultIndexer.from_config(
                config.index, index=self.index, watched_fields=self.watched_fields()
            )
        self._reindex_needed = False
        self._config_text = self._read_config_text()

    @classmethod
    def from_env(cls, env: TagnotifyEnvironment, **kwargs) -> Controller:
        return cls(env.config, env=env, **kwargs)

    @property
    def rules(self) -> list[Rule]:
        return self.config.rules

    @property
    def privacy_mode(self) -> bool:
        return self.config.privacy_mode

    def watched_fields(self) -> set[str]:
        return {rule.field for rule in self.config.rules if rule.enabled}

    # ─── schedule ───────────────────────────────────────────────

    def rebuild(
        self,
        rules: Optional[Iterable[Union[Rule, dict]]] = None,
        index: Optional[Union[DocumentIndex, Mapping[str, DocumentEntry]]] = None,
    ) -> int:
        """
        Regenerate every occurrence and replace the store's contents.
        Returns the number of occurrences generated.

        While the dispatcher is running, occurrences that are already due
        but not yet fired (the backlog since the last tick, or everything
        that fell due while paused) are carried into the new store with
        their ids unchanged, since generation only yields future times.
        """
        rules = self.config.rules if rules is None else list(rules)
        index = self.index if index is None else index
        now = self.clock()
        try:
            occurrences = self.generator.generate(rules, index, now)
        except IndexUnavailable as e:
            log_msg(f"index unavailable, no occurrences this cycle: {e}")
            occurrences = []
        backlog: list[ScheduledOccurrence] = []
        if self.dispatcher.is_running():
            fresh = {o.id for o in occurrences}
            backlog = [o for o in self.store.due_as_of(now) if o.id not in fresh]
        self.store.replace_all(backlog + occurrences)
        log_msg(
            f"schedule rebuilt: {len(occurrences)} occurrences, {len(backlog)} due carried over"
        )
        self.save_schedule()
        return len(occurrences)

    def _coordinated_rebuild(self) -> None:
        if self._reindex_needed and self.indexer is not None:
            self._reindex_needed = False
            self.reindex()
        self.rebuild()

    def reindex(self) -> int:
        """Blocking full re-index; returns the number of indexed notes."""
        if self.indexer is None:
            return len(self.index)
        self.indexer.set_watched_fields(self.watched_fields())
        try:
            self.indexer.reindex()
        except IndexUnavailable:
            return 0
        return len(self.index)

    async def index_vault(self) -> int:
        if self.indexer is None:
            return len(self.index)
        self.indexer.set_watched_fields(self.watched_fields())
        try:
            await self.indexer.index_vault()
        except IndexUnavailable:
            return 0
        return len(self.index)

    def load_schedule(self) -> int:
        """Load the previously persisted occurrences verbatim."""
        if self.privacy_mode or self.schedule_file is None:
            return 0
        try:
            prior = self.schedule_file.load()
        except PersistenceFailure as e:
            log_msg(f"failed to load schedule: {e}")
            return 0
        if prior is None:
            return 0
        self.store.replace_all(prior)
        log_msg(f"loaded {len(prior)} scheduled occurrences")
        return len(prior)

    def save_schedule(self) -> bool:
        if self.privacy_mode or self.schedule_file is None:
            return False
        try:
            count = self.schedule_file.persist(self.store.all())
        except PersistenceFailure as e:
            log_msg(f"failed to save schedule: {e}")
            return False
        log_msg(f"saved {count} scheduled occurrences")
        return True

    def get_upcoming(self, limit: int = 20) -> list[ScheduledOccurrence]:
        return self.store.upcoming(limit, self.clock())

    # ─── dispatcher ─────────────────────────────────────────────

    def start(self) -> None:
        self.dispatcher.start()

    def stop(self) -> None:
        self.coordinator.cancel()
        self.dispatcher.stop()
        self.save_schedule()

    def pause(self, remember: bool = True) -> None:
        self.dispatcher.pause()
        self._remember_paused(True, remember)

    def resume(self, remember: bool = True) -> None:
        self.dispatcher.resume()
        self._remember_paused(False, remember)

    def is_paused(self) -> bool:
        return self.dispatcher.is_paused()

    def _remember_paused(self, paused: bool, remember: bool) -> None:
        self.config.dispatch.paused = paused
        if remember:
            self._save_config()

    def fire_now(self, occurrence_id: str) -> ScheduledOccurrence:
        """
        Raises:
            KeyError: when no occurrence has this id.
        """
        occurrence = self.dispatcher.fire_now(occurrence_id)
        self.save_schedule()
        return occurrence

    def test_notification(
        self, message: str, channels: Iterable[str] = ("in-app", "system")
    ) -> list[str]:
        now = self.clock()
        occurrence = ScheduledOccurrence(
            id="test",
            rule_id="test",
            rule_field="test",
            document_path="",
            document_title="Test Note",
            original_date=now,
            fire_time=now,
            message=message,
            channels=list(channels),
            created_at=now,
        )
        return self.dispatcher.fire(occurrence)

    # ─── host events ────────────────────────────────────────────

    def document_changed(self, rel_path: str) -> None:
        if self.indexer is not None:
            try:
                self.indexer.update_file(rel_path)
            except IndexUnavailable as e:
                log_msg(f"cannot index {rel_path}: {e}")
        self.coordinator.touch()

    def document_removed(self, rel_path: str) -> None:
        self.index.remove(rel_path)
        self.coordinator.touch()

    def document_renamed(self, old_path: str, new_path: str) -> None:
        self.index.rename(old_path, new_path)
        self.document_changed(new_path)

    def rescan(self) -> int:
        """Feed changed and removed files to the coordinator; returns how many."""
        if self.indexer is None:
            return 0
        try:
            changed, removed = self.indexer.scan_changes()
        except IndexUnavailable as e:
            log_msg(f"rescan skipped: {e}")
            return 0
        for rel_path in removed:
            self.document_removed(rel_path)
        for rel_path in changed:
            self.document_changed(rel_path)
        return len(changed) + len(removed)

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """
        Startup sequence followed by the watch loop: load the prior schedule,
        index, rebuild, start the dispatcher, then poll config.toml and the
        vault for changes until ``stop`` is set.
        """
        stop = stop or asyncio.Event()
        self.coordinator.enabled = False
        self.load_schedule()
        await self.index_vault()
        self.rebuild()
        self.start()
        self.coordinator.enabled = True
        try:
            while not stop.is_set():
                try:
                    await asyncio.wait_for(
                        stop.wait(), timeout=self.config.index.rescan_interval
                    )
                except asyncio.TimeoutError:
                    self.reload_config()
                    self.rescan()
        finally:
            self.stop()

    # ─── rules ──────────────────────────────────────────────────

    def find_rule(self, rule_id: str) -> Optional[Rule]:
        matches = [r for r in self.config.rules if r.id.startswith(rule_id)]
        return matches[0] if len(matches) == 1 else None

    def add_rule(self, rule: Union[Rule, dict]) -> Rule:
        """
        Raises:
            InvalidRuleField, InvalidTimeFormat, InvalidRule: on bad input.
        """
        checked = check_rule(rule)
        self.config.rules.append(checked)
        self._rules_changed()
        return checked

    def update_rule(self, rule_id: str, **changes) -> Rule:
        """
        Raises:
            KeyError: unknown rule id.
            InvalidRuleField, InvalidTimeFormat, InvalidRule: on bad input.
        """
        current = self.find_rule(rule_id)
        if current is None:
            raise KeyError(rule_id)
        data = current.model_dump()
        data.update(changes)
        data["id"] = current.id
        checked = check_rule(data)
        self.config.rules[self.config.rules.index(current)] = checked
        self._rules_changed()
        return checked

    def remove_rule(self, rule_id: str) -> Rule:
        current = self.find_rule(rule_id)
        if current is None:
            raise KeyError(rule_id)
        self.config.rules.remove(current)
        self._rules_changed()
        return current

    def _rules_changed(self, save: bool = True) -> None:
        if save:
            self._save_config()
        self._reindex_needed = True
        self.coordinator.touch()

    # ─── configuration ──────────────────────────────────────────

    def _read_config_text(self) -> Optional[str]:
        if self.env is None:
            return None
        try:
            return self.env.config_path.read_text(encoding="utf-8")
        except OSError:
            return None

    def _save_config(self) -> bool:
        if self.env is None:
            return False
        saved = self.env.save_config(self.config)
        self._config_text = self._read_config_text()
        return saved

    def reload_config(self) -> bool:
        """
        Adopt edits made to config.toml since it was last read, such as a
        ``pause`` or ``rules add`` from another process. The pause state is
        applied at once and changed rules go through the debounced rebuild.
        A file that fails to load is ignored and the running configuration
        kept. Returns True when a new configuration was adopted.
        """
        text = self._read_config_text()
        if text is None or text == self._config_text:
            return False
        config = self.env.load_config()
        self._config_text = self._read_config_text()
        if self.env.degraded:
            log_msg("config.toml has errors, keeping the running configuration")
            return False

        old_rules = [rule.model_dump() for rule in self.config.rules]
        self.config = config
        self.generator.default_time = config.default_time
        if config.dispatch.paused and not self.is_paused():
            self.pause(remember=False)
        elif not config.dispatch.paused and self.is_paused():
            self.resume(remember=False)
        if [rule.model_dump() for rule in config.rules] != old_rules:
            log_msg("rules changed in config.toml")
            self._rules_changed(save=False)
        log_msg(f"reloaded {self.env.config_path}")
        return True
