import shlex
import shutil
import subprocess
from typing import Callable, Optional

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from .errors import DeliveryUnsupported
from .model import Channel, ScheduledOccurrence
from .shared import fmt_user, log_msg

DEFAULT_SYSTEM_COMMAND = (
    "notify-send --app-name={app_name} --expire-time={timeout_ms} {app_name} {message}"
)
EXPIRE_MS = 10_000  # non-persistent notifications


class _Fields(dict):
    """format_map mapping that leaves unknown {names} untouched."""

    def __missing__(self, key):
        return "{" + key + "}"


class Deliverer:
    """
    Delivery capability handed to the dispatcher.

    ``in-app`` prints a panel on the console; ``system`` launches a desktop
    notification command (``notify-send`` by default) without waiting for
    it. A missing command raises ``DeliveryUnsupported``.

    System notifications expire after ten seconds unless ``persistent``, in
    which case they stay for ``timeout`` seconds, or until dismissed when
    ``timeout`` is 0.
    """

    def __init__(
        self,
        app_name: str = "tagnotify",
        system_command: str = DEFAULT_SYSTEM_COMMAND,
        console: Optional[Console] = None,
        launcher: Callable[..., object] = subprocess.Popen,
        persistent: bool = False,
        timeout: int = 10,
    ):
        self.app_name = app_name
        self.system_command = system_command
        self.persistent = persistent
        self.timeout = timeout
        self.console = console or Console()
        self.launcher = launcher

    @classmethod
    def from_config(cls, delivery_config, **kwargs) -> "Deliverer":
        return cls(
            app_name=delivery_config.app_name,
            system_command=delivery_config.system_command,
            persistent=delivery_config.persistent,
            timeout=delivery_config.timeout,
            **kwargs,
        )

    @property
    def expire_ms(self) -> int:
        """Milliseconds before a system notification closes; 0 is never."""
        if not self.persistent:
            return EXPIRE_MS
        return self.timeout * 1000

    def __call__(self, channel: str, occurrence: ScheduledOccurrence) -> None:
        self.deliver(channel, occurrence)

    def deliver(self, channel: str, occurrence: ScheduledOccurrence) -> None:
        if channel == Channel.IN_APP.value:
            self.deliver_in_app(occurrence)
        elif channel == Channel.SYSTEM.value:
            self.deliver_system(occurrence)
        else:
            raise DeliveryUnsupported(channel, "unknown channel")

    def deliver_in_app(self, occurrence: ScheduledOccurrence) -> None:
        subtitle = occurrence.document_path or fmt_user(occurrence.fire_time)
        self.console.print(
            Panel(
                Text(occurrence.message),
                title=f"🔔 {self.app_name}",
                subtitle=subtitle,
                expand=False,
            )
        )

    def system_args(self, occurrence: ScheduledOccurrence) -> list[str]:
        """The system command split into arguments, each one formatted."""
        fields = _Fields(
            app_name=self.app_name,
            message=occurrence.message,
            title=occurrence.document_title,
            field=occurrence.rule_field,
            path=occurrence.document_path,
            fire_time=fmt_user(occurrence.fire_time),
            id=occurrence.id,
            timeout_ms=str(self.expire_ms),
        )
        return [part.format_map(fields) for part in shlex.split(self.system_command)]

    def deliver_system(self, occurrence: ScheduledOccurrence) -> None:
        if not self.system_command.strip():
            raise DeliveryUnsupported(Channel.SYSTEM.value, "no system command configured")
        args = self.system_args(occurrence)
        if shutil.which(args[0]) is None:
            raise DeliveryUnsupported(
                Channel.SYSTEM.value, f"command not found: {args[0]}"
            )
        try:
            self.launcher(
                args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
        except OSError as e:
            raise DeliveryUnsupported(Channel.SYSTEM.value, str(e)) from e
        log_msg(f"launched {args[0]} for {occurrence.id}")
