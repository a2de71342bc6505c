import inspect
import textwrap
import shutil
import re
import os
from datetime import date, datetime, time, timedelta, tzinfo
from pathlib import Path
from dateutil import tz
from dateutil.parser import isoparse
from dateutil.parser import parse as dateutil_parse

from hearthlog.hearthlog_env import HearthlogEnvironment

ELLIPSIS_CHAR = "…"

REPEATING = "↻"  # Flag for items with a recurrence rule
POSTPONED = "⇢"  # Flag for occurrences moved by a postponement

UTC = tz.UTC
UTC_Z_FMT = "%Y%m%dT%H%MZ"


# ─── Instants ───────────────────────────────────────────────


def local_zone_name(name: str | None = "local") -> str | None:
    """
    The IANA name behind a configured zone. ``local`` is looked up from
    ``$TZ`` and then from the ``/etc/localtime`` link; ``None`` when the
    machine does not say.
    """
    if name and name != "local":
        return name
    candidates = []
    env_tz = os.environ.get("TZ", "").lstrip(":")
    if env_tz:
        candidates.append(env_tz)
    localtime = Path("/etc/localtime")
    if localtime.is_symlink():
        target = str(localtime.resolve())
        if "zoneinfo/" in target:
            candidates.append(target.split("zoneinfo/", 1)[1])
    for candidate in candidates:
        if "/" in candidate and tz.gettz(candidate) is not None:
            return candidate
        if candidate.upper() in ("UTC", "Z"):
            return "UTC"
    return None


def get_local_tz(name: str | None = "local") -> tzinfo:
    """
    Return the tzinfo for a configured zone name. ``local`` (or an empty
    value) means the zone of the machine running the engine.
    """
    name = local_zone_name(name)
    if name is None:
        return tz.tzlocal()
    zone = tz.gettz(name)
    if zone is None:
        raise ValueError(f"Unknown timezone: {name!r}")
    return zone


def local_now(zone: str | tzinfo | None = "local") -> datetime:
    """Aware 'now' in the given zone."""
    if not isinstance(zone, tzinfo):
        zone = get_local_tz(zone)
    return datetime.now(zone)


def normalize_instant(dt: datetime) -> datetime:
    """
    Aware/naive → UTC aware with seconds and microseconds dropped.

    Naive values are taken to be UTC. Two datetimes naming the same minute
    always normalize to equal values, which is what makes an occurrence key
    unambiguous.
    """
    if not isinstance(dt, datetime):
        raise TypeError(f"Expected a datetime, got {type(dt).__name__}: {dt!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).replace(second=0, microsecond=0)


def fmt_utc_z(dt: datetime) -> str:
    """Aware/naive → UTC aware → 'YYYYMMDDTHHMMZ' (no seconds)."""
    return normalize_instant(dt).strftime(UTC_Z_FMT)


def parse_utc_z(s: str) -> datetime:
    """
    'YYYYMMDDTHHMMZ' or 'YYYYMMDDTHHMMSSZ' → aware datetime in UTC.
    Accept seconds if present; normalize to tz-aware UTC object.
    """
    body = s.strip().rstrip("Z")
    fmt = "%Y%m%dT%H%M%S" if len(body) == 15 else "%Y%m%dT%H%M"
    dt = datetime.strptime(body, fmt)
    return dt.replace(tzinfo=UTC)


def parse_instant(value: str | datetime | None) -> datetime | None:
    """
    Parse an ISO-8601 instant (or the compact 'YYYYMMDDTHHMMZ' storage
    form) and return it normalized. ``None`` and empty strings pass through
    as ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return normalize_instant(value)
    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r"\d{8}T\d{4}(\d{2})?Z", text):
        return parse_utc_z(text)
    try:
        dt = isoparse(text)
    except ValueError:
        dt = dateutil_parse(text)
    return normalize_instant(dt)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """
    Like ``parse_instant`` but keeps seconds and microseconds; used for
    the created/updated stamps that order ledger entries.
    """
    if value is None or value == "":
        return None
    dt = value if isinstance(value, datetime) else isoparse(str(value).strip())
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def iso_z(dt: datetime | None) -> str | None:
    """Normalized instant → '2024-01-08T08:00:00Z'."""
    if dt is None:
        return None
    return normalize_instant(dt).strftime("%Y-%m-%dT%H:%M:%SZ")


def start_of_week(dt: datetime) -> datetime:
    """
    Monday 00:00 of the ISO week containing ``dt``, in the zone of ``dt``.
    """
    monday = dt.date() - timedelta(days=dt.weekday())
    return datetime.combine(monday, time(0, 0), tzinfo=dt.tzinfo)


def with_time_of(day: date, source: datetime, zone: tzinfo) -> datetime:
    """
    Combine ``day`` with the wall-clock time of ``source`` as seen in
    ``zone``; used when a picked date comes without a time.
    """
    local = normalize_instant(source).astimezone(zone)
    return datetime.combine(day, local.time(), tzinfo=zone)


def td_str_to_td(duration_str: str) -> timedelta:
    """Convert a duration string like '1h30m20s' into a timedelta."""
    duration_str = duration_str.strip()
    sign = "+"
    if duration_str and duration_str[0] in ["+", "-"]:
        sign = duration_str[0]
        duration_str = duration_str[1:]

    pattern = r"(?:(\d+)w)?(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?"
    match = re.fullmatch(pattern, duration_str.strip())
    if not match or not duration_str:
        raise ValueError(f"Invalid duration format: '{duration_str}'")
    weeks, days, hours, minutes, seconds = [int(x) if x else 0 for x in match.groups()]
    td = timedelta(
        weeks=weeks, days=days, hours=hours, minutes=minutes, seconds=seconds
    )
    return -td if sign == "-" else td


def truncate_string(s: str, max_length: int) -> str:
    if len(s) > max_length:
        return f"{s[: max_length - 2]} {ELLIPSIS_CHAR}"
    else:
        return s


def format_day_header(day: date, today: date, datefmt: str = "%a %b %-d") -> str:
    dtstr = day.strftime(datefmt)
    if day == today:
        return f"{dtstr} (Today)"
    if day == today + timedelta(days=1):
        return f"{dtstr} (Tomorrow)"
    return dtstr


# ─── Logging ───────────────────────────────────────────────


def _get_runtime_home() -> Path:
    override = os.environ.get("HEARTHLOG_HOME")
    if override:
        return Path(override).expanduser()
    return HearthlogEnvironment().home


def _resolve_log_file_path(file_path: str | Path) -> Path:
    path = Path(file_path)
    if path.is_absolute():
        return path
    return _get_runtime_home() / path


def _default_log_relative_path(kind: str) -> Path:
    """Return logs/log_<YYMMDD>.md style paths under the runtime home."""
    suffix = datetime.now().strftime("%y%m%d")
    return Path("logs") / f"{kind}_{suffix}.md"


def _caller_name(frame) -> str:
    func_name = frame.f_code.co_name
    # Detect instance/class/static context
    if "self" in frame.f_locals:  # instance method
        return f"{frame.f_locals['self'].__class__.__name__}.{func_name}"
    if "cls" in frame.f_locals:  # classmethod
        return f"{frame.f_locals['cls'].__name__}.{func_name}"
    return func_name


def _write_msg(
    kind: str,
    caller_name: str,
    msg: str,
    file_path: str | Path | None,
    print_output: bool,
):
    lines = [
        f"- {datetime.now().strftime('%H:%M:%S')} {kind}_msg ({caller_name}):  ",
    ]
    # Wrap the message text
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
        file_path = _default_log_relative_path(kind)
    log_path = _resolve_log_file_path(file_path)

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as f:
            f.writelines(lines)
    except OSError:
        print_output = True

    if print_output:
        print("".join(lines))


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
    caller = _caller_name(inspect.stack()[1].frame)
    _write_msg("log", caller, msg, file_path, print_output)

