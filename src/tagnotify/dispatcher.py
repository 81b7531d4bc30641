"""
Periodic firing of due occurrences.

    IDLE --start()--> RUNNING --pause()--> PAUSED --resume()--> RUNNING
      any state --stop()--> STOPPED (terminal)

``start`` and ``resume`` each run one immediate due-check; after that the
store is polled every ``interval`` seconds. A paused dispatcher keeps its
timer but ignores the ticks, so whatever fell due while paused is fired
once, as a batch, on ``resume``.
"""

from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .errors import DeliveryUnsupported
from .model import ScheduledOccurrence
from .scheduler import OccurrenceStore
from .shared import log_msg
from .timers import TimerHandle, Timers

CHECK_INTERVAL = 30.0  # seconds; the worst case delivery latency

DeliverFn = Callable[[str, ScheduledOccurrence], None]


class DispatcherState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class Dispatcher:
    def __init__(
        self,
        store: OccurrenceStore,
        deliver: DeliverFn,
        timers: Timers,
        interval: float = CHECK_INTERVAL,
        clock: Callable[[], datetime] = datetime.now,
        paused: bool = False,
    ):
        self.store = store
        self.deliver = deliver
        self.timers = timers
        self.interval = interval
        self.clock = clock
        self._paused = paused
        self._started = False
        self._stopped = False
        self._handle: Optional[TimerHandle] = None

    @property
    def state(self) -> DispatcherState:
        if self._stopped:
            return DispatcherState.STOPPED
        if not self._started:
            return DispatcherState.IDLE
        return DispatcherState.PAUSED if self._paused else DispatcherState.RUNNING

    def is_paused(self) -> bool:
        return self._paused

    def is_running(self) -> bool:
        return self.state in (DispatcherState.RUNNING, DispatcherState.PAUSED)

    def start(self) -> None:
        if self._stopped:
            log_msg("start() ignored: dispatcher has been stopped")
            return
        if self._started:
            return
        self._started = True
        log_msg(f"starting dispatcher, checking every {self.interval}s")
        self._handle = self.timers.call_repeating(self.interval, self._tick)
        if not self._paused:
            self.check_due()

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if not self._stopped:
            self._stopped = True
            log_msg("dispatcher stopped")

    def pause(self) -> None:
        self._paused = True
        log_msg("notifications paused")

    def resume(self) -> None:
        self._paused = False
        log_msg("notifications resumed")
        if self.is_running():
            self.check_due()

    def _tick(self) -> None:
        if self._paused or self._stopped:
            return
        self.check_due()

    def check_due(self, now: Optional[datetime] = None) -> int:
        """
        Fire every due occurrence in the store and mark it fired. Runs to
        completion without yielding, so a regeneration cannot swap the store
        halfway through. Returns the number fired.
        """
        now = now or self.clock()
        due = self.store.due_as_of(now)
        for occurrence in due:
            self.fire(occurrence)
            self.store.mark_fired(occurrence.id)
        if due:
            log_msg(f"fired {len(due)} due occurrence(s) as of {now:%Y-%m-%d %H:%M:%S}")
        return len(due)

    def fire(self, occurrence: ScheduledOccurrence) -> list[str]:
        """
        Deliver ``occurrence`` on each of its channels. A failing channel is
        logged and does not stop the others; nothing is retried. Returns the
        channels that accepted the delivery.
        """
        delivered: list[str] = []
        for channel in occurrence.channels:
            try:
                self.deliver(channel, occurrence)
            except DeliveryUnsupported as e:
                log_msg(f"{occurrence.id}: {e}")
                continue
            except Exception as e:
                log_msg(f"{occurrence.id}: delivery on {channel!r} failed: {e}")
                continue
            delivered.append(channel)
        log_msg(f"fired notification: {occurrence.message}")
        return delivered

    def fire_now(self, occurrence_id: str) -> ScheduledOccurrence:
        """
        Fire one occurrence immediately regardless of its fire time.

        Raises:
            KeyError: when no occurrence has this id.
        """
        occurrence = self.store.get(occurrence_id)
        if occurrence is None:
            raise KeyError(occurrence_id)
        self.fire(occurrence)
        self.store.mark_fired(occurrence.id)
        return occurrence
