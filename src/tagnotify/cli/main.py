import asyncio
import os
import sys
from datetime import datetime

import click
from rich import print
from rich.console import Console
from rich.markup import escape

from tagnotify import __version__
from tagnotify.controller import Controller
from tagnotify.errors import TagnotifyError
from tagnotify.model import ScheduledOccurrence
from tagnotify.shared import (
    DUE_COLOR,
    FIRED_COLOR,
    PAUSED_COLOR,
    REPEATING,
    UPCOMING_COLOR,
    fmt_user,
    time_until,
    truncate_string,
)
from tagnotify.tagnotify_env import TagnotifyEnvironment
from tagnotify.timers import ManualTimers

VERSION = __version__


def _controller(ctx) -> Controller:
    """
    Controller for one-shot commands. Nothing here runs an event loop, so
    debounced rebuilds are queued on inert timers and flushed explicitly.
    """
    return Controller.from_env(ctx.obj["ENV"], timers=ManualTimers())


def _require_valid_config(ctx) -> None:
    """Settings changes are refused while config.toml fails to load."""
    env = ctx.obj["ENV"]
    if env.degraded:
        print(
            "[red]✘ config.toml has errors;[/red] fix it before changing settings: "
            f"{escape(str(env.config_path))}"
        )
        sys.exit(1)


def _ensure_schedule(controller: Controller) -> None:
    """Use the saved schedule when there is one, otherwise index and rebuild."""
    if controller.load_schedule():
        return
    controller.reindex()
    controller.rebuild()


def _resolve_occurrence(controller: Controller, prefix: str) -> ScheduledOccurrence:
    matches = [o for o in controller.store.all() if o.id.startswith(prefix)]
    if len(matches) != 1:
        what = "No" if not matches else "Ambiguous"
        print(f"[red]✘ {what} occurrence matching[/red] {escape(prefix)}")
        sys.exit(1)
    return matches[0]


def _occurrence_line(occ: ScheduledOccurrence, now: datetime, width: int) -> str:
    color = FIRED_COLOR if occ.fired else (
        DUE_COLOR if occ.fire_time <= now else UPCOMING_COLOR
    )
    flag = f" {REPEATING}" if occ.repeat != "none" else ""
    when = f"{fmt_user(occ.fire_time):<16} {time_until(occ.fire_time, now):>7}"
    text = truncate_string(f"{occ.message}{flag}", max(width - 36, 20))
    return f"[{color}]{when}  {escape(text)}[/{color}]  [dim]{occ.id[:8]}[/dim]"


@click.group()
@click.version_option(
    VERSION, prog_name="tagnotify", message="%(prog)s version %(version)s"
)
@click.option(
    "--home",
    help="Override the tagnotify home directory (equivalent to setting $TAGNOTIFY_HOME).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, home, verbose):
    """Tagnotify CLI – notifications from the dates in your notes."""
    if home:
        os.environ["TAGNOTIFY_HOME"] = (
            home  # Must be set before TagnotifyEnvironment is instantiated
        )

    env = TagnotifyEnvironment()
    env.ensure(init_config=True)
    config = env.load_config()

    ctx.ensure_object(dict)
    ctx.obj["ENV"] = env
    ctx.obj["CONFIG"] = config
    ctx.obj["VERBOSE"] = verbose


@cli.command()
@click.pass_context
def index(ctx):
    """Scan the notes folder and report the watched dates found."""
    controller = _controller(ctx)
    if not controller.config.index.root:
        print("[yellow]⚠️ [/yellow]No notes folder configured: set index.root in config.toml")
        sys.exit(1)
    count = controller.reindex()
    if controller.index.unavailable:
        print(f"[red]✘ {escape(controller.index.unavailable)}[/red]")
        sys.exit(1)
    print(f"[green]✔ Indexed {count} notes[/green]")
    for name in sorted(controller.watched_fields()):
        docs = controller.index.documents_with_field(name)
        print(f"  {name}: {len(docs)} notes")
    if ctx.obj["VERBOSE"]:
        for entry in controller.index:
            for extracted in entry.dates:
                print(f"  {escape(entry.path)}  {extracted.field} = {extracted.value}")


@cli.command()
@click.pass_context
def rebuild(ctx):
    """Re-index the notes and regenerate the schedule."""
    controller = _controller(ctx)
    controller.reindex()
    count = controller.rebuild()
    print(f"[green]✔ Scheduled {count} notifications[/green]")
    if controller.privacy_mode:
        print("[yellow]privacy mode: schedule not saved[/yellow]")


@cli.command()
@click.option("--limit", "-n", type=click.IntRange(1, 500), default=20, show_default=True)
@click.option(
    "--width",
    type=click.IntRange(40, 200),
    default=80,
    help="Maximum line width.",
)
@click.pass_context
def upcoming(ctx, limit, width):
    """List the next notifications that will fire."""
    controller = _controller(ctx)
    _ensure_schedule(controller)
    now = controller.clock()
    console = Console(highlight=False)
    if controller.is_paused():
        console.print(f"[{PAUSED_COLOR}]notifications are paused[/{PAUSED_COLOR}]")
    due = controller.store.due_as_of(now)
    for occ in due:
        console.print(_occurrence_line(occ, now, width))
    pending = controller.get_upcoming(limit)
    if not due and not pending:
        console.print("No upcoming notifications")
        return
    for occ in pending:
        console.print(_occurrence_line(occ, now, width))


@cli.command()
@click.pass_context
def run(ctx):
    """Index, schedule and deliver notifications until interrupted."""
    env = ctx.obj["ENV"]
    if ctx.obj["VERBOSE"]:
        print(f"tagnotify version: {VERSION}")
        print(f"using home directory: {env.home}")
        print(f"time zone: {env.zone_name}")

    async def main():
        controller = Controller.from_env(env)
        await controller.run()

    print("[green]tagnotify running[/green], press Ctrl-C to stop")
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n[yellow]stopped[/yellow]")


@cli.command()
@click.pass_context
def pause(ctx):
    """
    Suppress notifications until resumed. A running `tagnotify run` picks
    this up at its next check of config.toml.
    """
    _require_valid_config(ctx)
    controller = _controller(ctx)
    controller.pause()
    print(f"[{PAUSED_COLOR}]notifications paused[/{PAUSED_COLOR}]")


@cli.command()
@click.pass_context
def resume(ctx):
    """
    Resume notifications. A running `tagnotify run` picks this up at its
    next check of config.toml and delivers whatever fell due while paused.
    """
    _require_valid_config(ctx)
    controller = _controller(ctx)
    controller.resume()
    print("[green]notifications resumed[/green]")


@cli.command()
@click.argument("occurrence_id")
@click.pass_context
def fire(ctx, occurrence_id):
    """Deliver one scheduled notification now (ID may be a prefix)."""
    controller = _controller(ctx)
    _ensure_schedule(controller)
    occ = _resolve_occurrence(controller, occurrence_id)
    controller.fire_now(occ.id)
    print(f"[green]✔ Fired[/green] {escape(occ.message)}")


@cli.command()
@click.argument("message", required=False, default="This is a test notification")
@click.option(
    "--channel",
    "-c",
    "channels",
    multiple=True,
    type=click.Choice(["in-app", "system"]),
    help="Channel to test; repeatable. Default: both.",
)
@click.pass_context
def test(ctx, message, channels):
    """Send a test notification."""
    controller = _controller(ctx)
    requested = list(channels) or ["in-app", "system"]
    delivered = controller.test_notification(message, requested)
    for channel in requested:
        if channel in delivered:
            print(f"[green]✔ {channel}[/green]")
        else:
            print(f"[red]✘ {channel}[/red] unavailable, see the log for details")


# ─── rules ──────────────────────────────────────────────────────────


@cli.group()
def rules():
    """List, add and remove notification rules."""


@rules.command("list")
@click.pass_context
def rules_list(ctx):
    controller = _controller(ctx)
    if not controller.rules:
        print("No rules defined")
        return
    for rule in controller.rules:
        state = "" if rule.enabled else " [dim](disabled)[/dim]"
        offsets = ", ".join(rule.offsets) or "at the date"
        year = ", every year" if rule.ignore_year else ""
        print(
            f"[bold]{rule.id[:8]}[/bold] {rule.field}{state}\n"
            f"    {offsets}; repeat {rule.repeat}{year}; {', '.join(rule.channels)}\n"
            f"    {escape(rule.message_template)}"
        )


@rules.command("add")
@click.argument("field")
@click.option("--offset", "-o", "offsets", multiple=True, help="ISO 8601 duration such as -P1D; repeatable.")
@click.option("--time", "-t", "default_time", help="HH:MM used for date-only values.")
@click.option(
    "--repeat",
    "-r",
    type=click.Choice(["none", "daily", "weekly", "monthly", "yearly"]),
    default="none",
    show_default=True,
)
@click.option("--message", "-m", "message_template", help="Template using {title} {field} {date} {path}.")
@click.option(
    "--channel",
    "-c",
    "channels",
    multiple=True,
    type=click.Choice(["in-app", "system"]),
    help="Repeatable. Default: in-app.",
)
@click.option("--ignore-year", is_flag=True, help="Treat the date as an anniversary.")
@click.option("--disabled", is_flag=True, help="Add the rule switched off.")
@click.pass_context
def rules_add(ctx, field, offsets, default_time, repeat, message_template, channels, ignore_year, disabled):
    """Add a rule watching FIELD."""
    _require_valid_config(ctx)
    controller = _controller(ctx)
    data = {
        "field": field,
        "default_time": default_time,
        "offsets": list(offsets),
        "repeat": repeat,
        "channels": list(channels) or ["in-app"],
        "ignore_year": ignore_year,
        "enabled": not disabled,
    }
    if message_template:
        data["message_template"] = message_template
    try:
        rule = controller.add_rule(data)
    except TagnotifyError as e:
        print(f"[red]✘ Invalid rule:[/red] {escape(str(e))}")
        sys.exit(1)
    controller.coordinator.flush()
    print(f"[green]✔ Added rule[/green] {rule.id[:8]} for {rule.field}")


@rules.command("remove")
@click.argument("rule_id")
@click.pass_context
def rules_remove(ctx, rule_id):
    """Remove the rule whose id starts with RULE_ID."""
    _require_valid_config(ctx)
    controller = _controller(ctx)
    try:
        rule = controller.remove_rule(rule_id)
    except KeyError:
        print(f"[red]✘ No single rule matching[/red] {escape(rule_id)}")
        sys.exit(1)
    controller.coordinator.flush()
    print(f"[green]✔ Removed rule[/green] {rule.id[:8]} ({rule.field})")


@rules.command("enable")
@click.argument("rule_id")
@click.option("--off", is_flag=True, help="Disable instead.")
@click.pass_context
def rules_enable(ctx, rule_id, off):
    """Switch a rule on (or off with --off)."""
    _require_valid_config(ctx)
    controller = _controller(ctx)
    try:
        rule = controller.update_rule(rule_id, enabled=not off)
    except KeyError:
        print(f"[red]✘ No single rule matching[/red] {escape(rule_id)}")
        sys.exit(1)
    controller.coordinator.flush()
    print(f"{rule.id[:8]} {'disabled' if off else 'enabled'}")


@rules.command("preview")
@click.argument("rule_id")
@click.argument("value")
@click.pass_context
def rules_preview(ctx, rule_id, value):
    """Show when a rule would fire for the date VALUE."""
    controller = _controller(ctx)
    rule = controller.find_rule(rule_id)
    if rule is None:
        print(f"[red]✘ No single rule matching[/red] {escape(rule_id)}")
        sys.exit(1)
    now = controller.clock()
    try:
        pairs = controller.generator.preview(rule, value, now)
    except ValueError as e:
        print(f"[red]✘ Cannot parse date:[/red] {escape(str(e))}")
        sys.exit(1)
    for offset, when in pairs:
        if when is None:
            print(f"  {offset:>10}  [dim]nothing scheduled[/dim]")
        else:
            print(f"  {offset:>10}  {fmt_user(when)}  ({time_until(when, now)})")


if __name__ == "__main__":
    cli()
