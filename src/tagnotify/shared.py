import inspect
import textwrap
import shutil
import os
from datetime import date, datetime, timedelta, tzinfo
from pathlib import Path

from dateutil import tz

ELLIPSIS_CHAR = "…"
REPEATING = "↻"  # Flag for occurrences of repeating rules

# Status colors for console output
FIRED_COLOR = "dim"
DUE_COLOR = "dark_orange"
UPCOMING_COLOR = "light_sky_blue1"
PAUSED_COLOR = "yellow"

DATE_FMT = "%Y-%m-%d"
DT_FMT = "%Y-%m-%d %H:%M"


def is_date(obj) -> bool:
    return isinstance(obj, date) and not isinstance(obj, datetime)


def to_local_naive(dt: datetime, zone: tzinfo | None = None) -> datetime:
    """
    Convert an aware datetime to naive wall-clock time in ``zone`` (the
    machine's local zone when omitted); naive values are returned unchanged.
    """
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(zone or tz.tzlocal()).replace(tzinfo=None)


def fmt_user(dt: datetime | None) -> str:
    """
    User friendly formatting for instants: midnight collapses to the date.
    """
    if dt is None:
        return "unscheduled"
    if is_date(dt):
        return dt.strftime(DATE_FMT)
    if dt.hour == dt.minute == dt.second == 0:
        return dt.strftime(DATE_FMT)
    return dt.strftime(DT_FMT)


def format_timedelta(seconds: int, short: bool = False) -> str:
    """
    Express a timedelta (seconds) using tokens like '+1h30m' or '-2d'.
    When ``short`` is True limit output to the first two non-zero units.
    """
    sign = "+" if seconds >= 0 else "-"
    total_seconds = abs(int(seconds))
    units = [
        ("w", 604800),
        ("d", 86400),
        ("h", 3600),
        ("m", 60),
        ("s", 1),
    ]
    parts: list[str] = []
    for label, unit_seconds in units:
        value, total_seconds = divmod(total_seconds, unit_seconds)
        if value:
            parts.append(f"{value}{label}")
    if not parts:
        return "now"
    body = "".join(parts[:2]) if short else "".join(parts)
    return sign + body


def time_until(when: datetime, now: datetime | None = None) -> str:
    """'+2d3h' style distance from ``now`` to ``when``."""
    now = now or datetime.now()
    delta: timedelta = when - now
    return format_timedelta(int(delta.total_seconds()), short=True)


def truncate_string(s: str, max_length: int) -> str:
    if len(s) > max_length:
        return f"{s[: max_length - 2]} {ELLIPSIS_CHAR}"
    else:
        return s


def _get_runtime_home() -> Path:
    override = os.environ.get("TAGNOTIFY_HOME")
    if override:
        return Path(override).expanduser()
    from tagnotify.tagnotify_env import TagnotifyEnvironment

    return TagnotifyEnvironment().home


def _resolve_log_file_path(file_path: str | Path) -> Path:
    path = Path(file_path)
    if path.is_absolute():
        return path
    return _get_runtime_home() / path


def _default_log_relative_path(kind: str) -> Path:
    """Return logs/log_<YYMMDD>.md style paths under the runtime home."""
    suffix = datetime.now().strftime("%y%m%d")
    return Path("logs") / f"{kind}_{suffix}.md"


def log_msg(
    msg: str,
    file_path: str | Path | None = None,
    print_output: bool = False,
):
    """
    Log a message and save it directly to a file.

    Args:
        msg (str): The message to log.
        file_path (str | Path | None, optional): Overrides the default path when
            provided. Defaults to ``None`` which writes to ``logs/log_<YYMMDD>.md``.
        print_output (bool, optional): If True, also print to console.
    """
    frame = inspect.stack()[1].frame
    func_name = frame.f_code.co_name

    # Default: just function name
    caller_name = func_name

    # Detect instance/class/static context
    if "self" in frame.f_locals:  # instance method
        cls_name = frame.f_locals["self"].__class__.__name__
        caller_name = f"{cls_name}.{func_name}"
    elif "cls" in frame.f_locals:  # classmethod
        cls_name = frame.f_locals["cls"].__name__
        caller_name = f"{cls_name}.{func_name}"

    lines = [
        f"- {datetime.now().strftime('%H:%M:%S')} log_msg ({caller_name}):  ",
    ]
    lines.extend(
        [
            f"\n{x}"
            for x in textwrap.wrap(
                msg.strip(),
                width=max(shutil.get_terminal_size()[0] - 6, 40),
                initial_indent="   ",
                subsequent_indent="   ",
            )
        ]
    )
    lines.append("\n\n")

    # Best-effort file logging; fall back to console when the file is unwritable.
    if file_path is None:
        file_path = _default_log_relative_path("log")
    try:
        log_path = _resolve_log_file_path(file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as f:
            f.writelines(lines)
    except OSError:
        print_output = True

    if print_output:
        print("".join(lines))
