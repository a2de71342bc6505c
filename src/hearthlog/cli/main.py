import os
import sys
import click
from rich import print
from rich.console import Console
from rich.table import Table

from datetime import date, datetime
from dateutil.parser import parse as dateutil_parse

from hearthlog import __version__ as VERSION
from hearthlog.agenda import AgendaEntry
from hearthlog.controller import Controller
from hearthlog.errors import HearthlogError
from hearthlog.hearthlog_env import HearthlogEnvironment
from hearthlog.item import ITEM_TYPES, POSTPONE_KINDS, Item, RecurrenceRule
from hearthlog.model import DatabaseManager
from hearthlog.shared import (
    POSTPONED,
    REPEATING,
    format_day_header,
    get_local_tz,
    iso_z,
    local_now,
    local_zone_name,
    normalize_instant,
    truncate_string,
)


def ensure_database(db_path: str, env: HearthlogEnvironment):
    if not os.path.exists(db_path):
        print(
            f"[yellow]⚠️ [/yellow]Database not found. Creating new database at {db_path}"
        )
        DatabaseManager(db_path, env).close()


def _fail(msg: str):
    print(f"[bold red]✘ {msg}[/bold red]")
    sys.exit(1)


def _get_controller(ctx) -> Controller:
    return Controller.from_database(str(ctx.obj["DB"]), ctx.obj["ENV"])


def _parse_when(text: str | None, zone) -> datetime | None:
    """User text → normalized instant; times without a zone are local."""
    if not text:
        return None
    s = text.strip().lower()
    if s == "now":
        return normalize_instant(local_now(zone))
    try:
        dt = dateutil_parse(text)
    except (ValueError, OverflowError):
        _fail(f"Could not understand {text!r} as a date and time")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=zone)
    return normalize_instant(dt)


def _parse_target(text: str | None, zone) -> datetime | date | None:
    """Like ``_parse_when`` but a bare YYYY-MM-DD stays a date."""
    if not text:
        return None
    try:
        return datetime.strptime(text.strip(), "%Y-%m-%d").date()
    except ValueError:
        return _parse_when(text, zone)


def _resolve_id(controller: Controller, ref: str) -> str:
    """Accept a full item id or an unambiguous prefix of one."""
    if controller.items.get(ref) is not None:
        return ref
    matches = [item.id for item in controller.items.list() if item.id.startswith(ref)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        # deleted items may still have ledger entries to purge
        return ref
    _fail(f"{ref!r} matches {len(matches)} items; use more characters")


def _format_entry(entry: AgendaEntry, zone, timefmt: str, show_day: bool) -> str:
    item = entry.item
    flags = REPEATING if item.is_recurring else " "
    if entry.postponed_from is not None:
        flags = POSTPONED
    if entry.instant is None:
        when = ""
    else:
        local = entry.instant.astimezone(zone)
        when = local.strftime(f"%a %b %-d {timefmt}" if show_day else timefmt)
    title = truncate_string(item.title, 48)
    line = f"  {flags} {when:>12} {title}  [dim]{item.id[:8]}[/dim]"
    if entry.status == "cancelled":
        line += " [dim](cancelled)[/dim]"
    if entry.fault:
        line += f" [red]⚠ {entry.fault}[/red]"
    return line


def _occurrence_options(f):
    f = click.option("--user", "acting_user_id", help="Id of the acting user.")(f)
    f = click.option("--reason", help="Why the action was taken.")(f)
    f = click.option(
        "--at",
        "at_text",
        help="Occurrence to act on (required for repeating items), e.g. '2024-01-08 08:00'.",
    )(f)
    return f


@click.group()
@click.version_option(VERSION, prog_name="hearthlog", message="%(prog)s version %(version)s")
@click.option(
    "--home",
    help="Override the Hearthlog workspace directory (equivalent to setting $HEARTHLOG_HOME).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, home, verbose):
    """Hearthlog CLI – reminders, events and tasks that repeat."""
    if home:
        os.environ["HEARTHLOG_HOME"] = (
            home  # Must be set before HearthlogEnvironment is instantiated
        )

    env = HearthlogEnvironment()
    env.ensure(init_config=True, init_db_fn=lambda path: ensure_database(str(path), env))
    config = env.load_config()

    ctx.ensure_object(dict)
    ctx.obj["ENV"] = env
    ctx.obj["DB"] = env.db_path
    ctx.obj["CONFIG"] = config
    ctx.obj["ZONE"] = get_local_tz(config.ui.timezone)
    ctx.obj["VERBOSE"] = verbose


@cli.command()
@click.argument("title", nargs=-1, required=True)
@click.option("--type", "item_type", type=click.Choice(ITEM_TYPES), default="reminder")
@click.option("--due", help="Due date and time (reminders and tasks).")
@click.option("--start", help="Start (events).")
@click.option("--end", help="End (events).")
@click.option("--rrule", help="Recurrence rule, e.g. 'FREQ=WEEKLY;BYDAY=MO'.")
@click.option("--description", help="Longer description.")
@click.option("--user", "user_id", help="Id of the creating user.")
@click.option("--assign", "responsible_user_id", help="Id of the responsible user.")
@click.pass_context
def add(ctx, title, item_type, due, start, end, rrule, description, user_id, responsible_user_id):
    """Add a reminder, event or task."""
    zone = ctx.obj["ZONE"]
    config = ctx.obj["CONFIG"]
    controller = _get_controller(ctx)

    due_at = _parse_when(due, zone)
    start_at = _parse_when(start, zone)
    end_at = _parse_when(end, zone)
    anchor = start_at if item_type == "event" else due_at
    rule = None
    if rrule:
        if anchor is None:
            _fail("A repeating item needs --due (or --start for events)")
        rule = RecurrenceRule(
            rrule=rrule,
            anchor=anchor,
            timezone=local_zone_name(config.ui.timezone) or "local",
        )
    try:
        item = controller.add_item(
            Item(
                title=" ".join(title),
                type=item_type,
                description=description,
                due_at=due_at,
                start_at=start_at,
                end_at=end_at,
                rule=rule,
                user_id=user_id,
                responsible_user_id=responsible_user_id,
            )
        )
    except (HearthlogError, ValueError) as e:
        _fail(str(e))
    print(f"[green]✔ Added[/green] {item.title} [dim]{item.id}[/dim]")


@cli.command()
@click.option("--now", "now_text", help="Show the agenda as of this date and time.")
@click.pass_context
def agenda(ctx, now_text):
    """Display the current agenda."""
    zone = ctx.obj["ZONE"]
    config = ctx.obj["CONFIG"]
    verbose = ctx.obj["VERBOSE"]
    controller = _get_controller(ctx)

    now = local_now(zone)
    if now_text:
        now = _parse_when(now_text, zone).astimezone(zone)
    result = controller.get_agenda(now)
    if verbose:
        print(f"[blue]Agenda as of[/blue] {now.isoformat()} from {ctx.obj['DB']}")

    console = Console(highlight=False)
    today = now.date()
    timefmt = config.ui.timefmt
    limit = config.agenda.completed_limit
    for name, entries in result.buckets():
        if name in ("Overdue", "Today", "Tomorrow", "Completed"):
            header = name
        else:
            header = format_day_header(date.fromisoformat(name), today, config.ui.datefmt)
        if name == "Completed" and limit:
            entries = entries[:limit]
        console.print(f"[bold deep_sky_blue1]{header}[/bold deep_sky_blue1]")
        show_day = name in ("Overdue", "Completed")
        for entry in entries:
            console.print(_format_entry(entry, zone, timefmt, show_day))

    progress = result.progress()
    if progress["total"]:
        console.print(
            f"\n{progress['completed']} of {progress['total']} complete "
            f"({progress['percentage']}%)"
        )
    else:
        console.print("[dim]Nothing scheduled.[/dim]")


def _report(result, verb: str):
    if result.duplicate:
        print(f"[yellow]• Already {verb}:[/yellow] {result.item.title}")
        return
    print(f"[green]✔ {verb.capitalize()}:[/green] {result.item.title}")


@cli.command()
@click.argument("item_ref")
@_occurrence_options
@click.option("--assign", "reassign_to", help="Hand the item to another user.")
@click.pass_context
def complete(ctx, item_ref, at_text, reason, acting_user_id, reassign_to):
    """Mark an item (or one occurrence of it) completed."""
    controller = _get_controller(ctx)
    try:
        result = controller.complete(
            _resolve_id(controller, item_ref),
            _parse_when(at_text, ctx.obj["ZONE"]),
            reason,
            acting_user_id=acting_user_id,
            reassign_to=reassign_to,
        )
    except HearthlogError as e:
        _fail(e.message)
    _report(result, "completed")


@cli.command()
@click.argument("item_ref")
@_occurrence_options
@click.option("--assign", "reassign_to", help="Hand the item to another user.")
@click.pass_context
def cancel(ctx, item_ref, at_text, reason, acting_user_id, reassign_to):
    """Cancel an item (or one occurrence of it)."""
    controller = _get_controller(ctx)
    try:
        result = controller.cancel(
            _resolve_id(controller, item_ref),
            _parse_when(at_text, ctx.obj["ZONE"]),
            reason,
            acting_user_id=acting_user_id,
            reassign_to=reassign_to,
        )
    except HearthlogError as e:
        _fail(e.message)
    _report(result, "cancelled")


@cli.command()
@click.argument("item_ref")
@_occurrence_options
@click.pass_context
def reopen(ctx, item_ref, at_text, reason, acting_user_id):
    """Undo a completion, cancellation or postponement."""
    controller = _get_controller(ctx)
    try:
        result = controller.reopen(
            _resolve_id(controller, item_ref),
            _parse_when(at_text, ctx.obj["ZONE"]),
            reason,
            acting_user_id=acting_user_id,
        )
    except HearthlogError as e:
        _fail(e.message)
    _report(result, "reopened")


@cli.command()
@click.argument("item_ref")
@_occurrence_options
@click.option(
    "--kind",
    type=click.Choice(POSTPONE_KINDS),
    default="next_occurrence",
    show_default=True,
)
@click.option("--to", "to_text", help="Target for --kind custom: a date or a date and time.")
@click.option("--assign", "reassign_to", help="Hand the item to another user.")
@click.pass_context
def postpone(ctx, item_ref, at_text, reason, acting_user_id, kind, to_text, reassign_to):
    """Postpone an item (or one occurrence of it)."""
    zone = ctx.obj["ZONE"]
    controller = _get_controller(ctx)
    try:
        result = controller.postpone(
            _resolve_id(controller, item_ref),
            _parse_when(at_text, zone),
            kind,
            reason,
            _parse_target(to_text, zone),
            acting_user_id=acting_user_id,
            reassign_to=reassign_to,
        )
    except (HearthlogError, ValueError) as e:
        _fail(getattr(e, "message", str(e)))
    _report(result, "postponed")
    if result.postponed_to is not None and not result.duplicate:
        local = result.postponed_to.astimezone(zone)
        print(f"  next: {local:%a %b %-d %H:%M}")


@cli.command()
@click.argument("item_ref", required=False)
@click.option("--orphans", is_flag=True, help="Purge ledger entries of deleted items.")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def delete(ctx, item_ref, orphans, yes):
    """Delete an item together with its occurrence history."""
    controller = _get_controller(ctx)
    if orphans:
        removed = controller.repair_orphans()
        print(f"[green]✔ Removed {removed} orphaned entries[/green]")
        return
    if not item_ref:
        _fail("Give an item id, or --orphans")
    item_id = _resolve_id(controller, item_ref)
    item = controller.items.get(item_id)
    label = item.title if item else item_id
    if not yes and not click.confirm(f"Delete {label!r}?"):
        return
    try:
        purged = controller.delete(item_id)
    except HearthlogError as e:
        _fail(e.message)
    print(f"[green]✔ Deleted[/green] {label} ({purged} occurrence actions)")


@cli.command()
@click.argument("item_ref")
@click.pass_context
def history(ctx, item_ref):
    """List every action recorded for an item, oldest first."""
    controller = _get_controller(ctx)
    item_id = _resolve_id(controller, item_ref)
    entries = controller.history(item_id)
    if not entries:
        print("[dim]No actions recorded.[/dim]")
        return
    table = Table(title=f"History of {item_id[:8]}")
    for column in ("recorded", "occurrence", "action", "to", "by", "reason"):
        table.add_column(column)
    for e in entries:
        table.add_row(
            e.created_at.isoformat(timespec="seconds"),
            iso_z(e.occurrence_at),
            e.kind if not e.postpone_kind else f"{e.kind} ({e.postpone_kind})",
            iso_z(e.postponed_to) or "",
            e.created_by or "",
            e.reason or "",
        )
    Console().print(table)


@cli.command()
@click.argument("item_ref")
@click.pass_context
def stats(ctx, item_ref):
    """Show completion statistics for an item."""
    controller = _get_controller(ctx)
    item_id = _resolve_id(controller, item_ref)
    result = controller.stats(item_id)
    print(f"completed:  {result.completed_count}")
    print(f"postponed:  {result.postponed_count}")
    print(f"cancelled:  {result.cancelled_count}")
    print(f"reopened:   {result.reopened_count}")
    print(f"actions:    {result.total_actions}")
    if result.last_completed_at:
        print(f"last done:  {result.last_completed_at.isoformat(timespec='seconds')}")


if __name__ == "__main__":
    cli()
