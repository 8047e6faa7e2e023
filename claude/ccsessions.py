#!/usr/bin/env -S uv run --script
#
# /// script
# requires-python = ">=3.12"
# dependencies = ["orjson", "rich"]
# ///
"""Track Claude Code session usage against the monthly quota from local JSONL logs."""

import argparse
import calendar
import json
import math
import re
import sys
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import orjson
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

CLAUDE_DIR = Path.home() / ".claude"
PROJECTS_DIR = CLAUDE_DIR / "projects"
PROJECTS_MARKER = "projects"
LOG_SUFFIX = ".jsonl"

SESSION_DURATION = timedelta(hours=5)
MAX_SESSIONS_PER_MONTH = 50
DEFAULT_HISTORY_DAYS = 7

# Usage percentage at or above which the status line changes severity
DANGER_PERCENT = 90
WARNING_PERCENT = 70


class SessionLogError(Exception):
    """Base error for problems loading session logs."""


class ProjectsDirNotFoundError(SessionLogError):
    """Raised when the Claude projects directory does not exist."""


@dataclass(frozen=True)
class Session:
    session_id: str
    start_time: datetime
    file_path: Path
    project: str

    @property
    def end_time(self) -> datetime:
        return self.start_time + SESSION_DURATION


@dataclass(frozen=True)
class Forecast:
    used: int
    days_elapsed: int
    days_in_month: int
    daily_rate: float
    projected: int
    over_quota: bool

    @property
    def remaining_days(self) -> int:
        return self.days_in_month - self.days_elapsed

    @property
    def remaining_budget(self) -> int:
        return MAX_SESSIONS_PER_MONTH - self.used

    @property
    def recommended_pace(self) -> float | None:
        """Sessions per day that keep the month within quota, or None on the last day."""
        if self.remaining_days <= 0:
            return None
        return self.remaining_budget / self.remaining_days


def round_half_up(x: float) -> int:
    return math.floor(x + 0.5)


# --- Loading ---

def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            ts = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value:
        try:
            ts = datetime.fromisoformat(value)
        except ValueError:
            return None
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
    else:
        return None

    # The session window, viewed from any UTC offset, must stay representable
    try:
        ts - timedelta(days=1)
        ts + SESSION_DURATION + timedelta(days=1)
    except OverflowError:
        return None
    return ts


def find_first_user_record(lines: Iterable[bytes]) -> tuple[dict, datetime] | None:
    """Return the first user record carrying a timestamp, with its parsed start time.

    Lines that are blank, malformed (e.g. a partial line still being written)
    or not JSON objects are skipped. Scanning stops at the first match.
    """
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            rec = orjson.loads(line)
        except orjson.JSONDecodeError:
            continue
        if not isinstance(rec, dict) or rec.get("type") != "user":
            continue
        ts = parse_timestamp(rec.get("timestamp"))
        if ts is None:
            continue
        return rec, ts
    return None


def extract_project_name(path: Path) -> str:
    """Turn '.../projects/-Users-ove-git-foo/x.jsonl' into '/Users/ove/git/foo'."""
    parts = path.parts
    try:
        idx = parts.index(PROJECTS_MARKER)
    except ValueError:
        return "unknown"
    if idx == len(parts) - 1:
        return "unknown"
    return parts[idx + 1].replace("-", "/")


def parse_session_file(path: Path) -> Session | None:
    """Build a Session from a single JSONL log, or None if it has no user record."""
    try:
        with open(path, "rb") as f:
            found = find_first_user_record(f)
    except OSError as exc:
        print(f"Warning: Could not read {path}: {exc}", file=sys.stderr)
        return None

    if found is None:
        return None

    rec, start_time = found
    return Session(
        session_id=str(rec.get("sessionId") or path.stem),
        start_time=start_time,
        file_path=path,
        project=extract_project_name(path),
    )


def discover_session_files(projects_dir: Path) -> list[Path]:
    """List the JSONL logs one level below each project directory."""
    if not projects_dir.is_dir():
        raise ProjectsDirNotFoundError(f"Claude projects directory not found: {projects_dir}")

    files = []
    for project_dir in sorted(projects_dir.iterdir()):
        if not project_dir.is_dir():
            continue
        files.extend(p for p in project_dir.glob(f"*{LOG_SUFFIX}") if p.is_file())
    return sorted(files)


def load_all_sessions(projects_dir: Path | None = None) -> list[Session]:
    """Load one session per log file, sorted by start time ascending."""
    root = projects_dir if projects_dir is not None else PROJECTS_DIR
    sessions = []
    for path in discover_session_files(root):
        session = parse_session_file(path)
        if session is not None:
            sessions.append(session)

    sessions.sort(key=lambda s: s.start_time)
    return sessions


# --- Queries ---
#
# A naive `now` is system-local wall-clock time: timestamps are then converted
# with the local rules in force at their own instant, so DST changes between a
# session and `now` do not shift its calendar day. An aware `now` puts every
# timestamp on the calendar of its tzinfo.

def as_instant(now: datetime) -> datetime:
    return now if now.tzinfo is not None else now.astimezone()


def to_local(ts: datetime, now: datetime) -> datetime:
    """Convert *ts* to the wall-clock calendar that *now* is expressed in."""
    if now.tzinfo is None:
        return ts.astimezone().replace(tzinfo=None)
    return ts.astimezone(now.tzinfo)


def current_month_sessions(sessions: list[Session], now: datetime) -> list[Session]:
    result = []
    for s in sessions:
        local = to_local(s.start_time, now)
        if local.year == now.year and local.month == now.month:
            result.append(s)
    return result


def current_session(sessions: list[Session], now: datetime) -> Session | None:
    """Return the first session whose window contains now.

    Windows may overlap; the earliest-starting one wins.
    """
    instant = as_instant(now)
    for s in sessions:
        if s.start_time <= instant <= s.end_time:
            return s
    return None


def recent_sessions(sessions: list[Session], now: datetime, days: int) -> list[Session]:
    since = as_instant(now) - timedelta(days=days)
    return [s for s in sessions if s.start_time >= since]


def month_progress(now: datetime) -> tuple[int, int]:
    """Return (days elapsed including today, days in month)."""
    return now.day, calendar.monthrange(now.year, now.month)[1]


def usage_forecast(used: int, now: datetime) -> Forecast:
    """Project month-end usage linearly from the pace so far."""
    days_elapsed, days_in_month = month_progress(now)
    daily_rate = used / days_elapsed
    projected = round_half_up(daily_rate * days_in_month)
    return Forecast(
        used=used,
        days_elapsed=days_elapsed,
        days_in_month=days_in_month,
        daily_rate=daily_rate,
        projected=projected,
        over_quota=daily_rate * days_in_month > MAX_SESSIONS_PER_MONTH,
    )


# --- Formatting ---

console = Console(soft_wrap=True)


def severity(percent: int) -> tuple[str, str]:
    """Return (icon, style) for a quota usage percentage."""
    if percent >= DANGER_PERCENT:
        return "🔴", "bold red"
    if percent >= WARNING_PERCENT:
        return "🟡", "yellow"
    return "🟢", "green"


def fmt_duration(delta: timedelta) -> str:
    """Format a duration as 'Hh Mm', rounded to the nearest minute."""
    minutes = round_half_up(delta.total_seconds() / 60)
    return f"{minutes // 60}h {minutes % 60}m"


def short_project(project: str) -> str:
    return project.split("/")[-1]


# --- Reports ---

def report_status(sessions: list[Session], now: datetime, out: Console | None = None) -> None:
    """Print current-month usage, projection and the active session."""
    out = out if out is not None else console
    used = len(current_month_sessions(sessions, now))
    percent = round_half_up(used / MAX_SESSIONS_PER_MONTH * 100)
    icon, style = severity(percent)

    out.print("[bold]🤖 Claude Code session usage[/bold]")
    out.print()
    out.print(f"{icon} This month: [{style}]{used}/{MAX_SESSIONS_PER_MONTH} sessions ({percent}%)[/{style}]")

    forecast = usage_forecast(used, now)
    if forecast.remaining_days > 0:
        flag = "⚠️ " if forecast.projected > MAX_SESSIONS_PER_MONTH else "✅"
        out.print(
            f"{flag} Projected month-end: {forecast.projected} sessions "
            f"(current pace: {forecast.daily_rate:.1f}/day)"
        )

    out.print()
    active = current_session(sessions, now)
    if active is not None:
        instant = as_instant(now)
        elapsed = fmt_duration(instant - active.start_time)
        remaining = fmt_duration(active.end_time - instant)
        out.print(f"⏱️  Current session: {elapsed} elapsed ({remaining} remaining)")
        out.print(f"📁 Project: [magenta]{escape(active.project)}[/magenta]")
    else:
        out.print("⭕ No active session")
    out.print()


def report_history(
    sessions: list[Session],
    now: datetime,
    days: int = DEFAULT_HISTORY_DAYS,
    out: Console | None = None,
) -> None:
    """Print sessions from the last *days* days grouped by local calendar day."""
    out = out if out is not None else console
    recent = recent_sessions(sessions, now, days)

    out.print(f"[bold]📅 Session history for the last {days} days[/bold]")
    out.print()

    if not recent:
        out.print("No sessions found.")
        return

    # dicts keep insertion order, so days appear as first encountered
    by_day: dict[str, list[Session]] = {}
    for s in recent:
        day = to_local(s.start_time, now).strftime("%Y-%m-%d (%a)")
        by_day.setdefault(day, []).append(s)

    table = Table(box=box.ROUNDED, expand=False, show_header=True)
    table.add_column("Date", style="white", no_wrap=True)
    table.add_column("Time", style="cyan", no_wrap=True)
    table.add_column("Project", style="magenta", no_wrap=True)

    for i, (day, day_sessions) in enumerate(by_day.items()):
        if i:
            table.add_section()
        table.add_row(f"[bold]{day}[/bold]", "", f"[dim]{len(day_sessions)} sessions[/dim]")
        for s in day_sessions:
            time_str = to_local(s.start_time, now).strftime("%H:%M")
            table.add_row("", time_str, escape(short_project(s.project)))

    out.print(table)
    out.print()


def report_prediction(sessions: list[Session], now: datetime, out: Console | None = None) -> None:
    """Print the month-end projection and the pace that stays within quota."""
    out = out if out is not None else console
    used = len(current_month_sessions(sessions, now))

    out.print("[bold]📊 Usage prediction[/bold]")
    out.print()

    if used == 0:
        out.print("No data for this month.")
        return

    forecast = usage_forecast(used, now)
    out.print(f"Daily average: {forecast.daily_rate:.1f} sessions")
    out.print(f"Projected month-end: {forecast.projected} sessions")
    out.print()
    out.print(f"{forecast.remaining_budget} sessions left over {forecast.remaining_days} days")
    pace = forecast.recommended_pace
    if pace is not None:
        out.print(f"Recommended pace: at most {pace:.1f} sessions/day")

    out.print()
    if forecast.over_quota:
        out.print("[yellow]⚠️  At the current pace you may hit the monthly limit[/yellow]")
    else:
        out.print("[green]✅ Current pace is safe[/green]")


def report_json(sessions: list[Session]) -> None:
    """Output all sessions as JSON for programmatic use."""
    output = []
    for s in sessions:
        output.append({
            "session_id": s.session_id,
            "project": s.project,
            "start_time": s.start_time.isoformat(),
            "end_time": s.end_time.isoformat(),
            "file_path": str(s.file_path),
        })
    print(json.dumps(output, indent=2))


def parse_days(value: str | None) -> int:
    """Parse the leading integer of the history window ('3.5' -> 3).

    Anything without a leading integer, or zero, means the default.
    """
    if value is None:
        return DEFAULT_HISTORY_DAYS
    m = re.match(r"\s*([+-]?\d+)", value)
    if not m:
        return DEFAULT_HISTORY_DAYS
    return int(m.group(1)) or DEFAULT_HISTORY_DAYS


def _now() -> datetime:
    """Return naive system-local time; see to_local."""
    return datetime.now()


COMMANDS = ("status", "history", "predict")


def build_parser() -> argparse.ArgumentParser:
    return argparse.ArgumentParser(
        prog="ccsessions",
        description="Track Claude Code session usage against the monthly quota.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Commands:\n"
               "  status           current month usage (default)\n"
               "  history [days]   sessions from the last N days (default 7)\n"
               "  predict          month-end projection and recommended pace\n",
    )


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    parser.add_argument("command", nargs="?", default="status", help="Report to show")
    parser.add_argument("days", nargs="?", help="History window in days")
    parser.add_argument("--json", "-j", action="store_true", help="Output sessions as JSON")

    args, extra = parser.parse_known_args(argv)

    if extra or args.command not in COMMANDS:
        parser.print_help()
        return

    try:
        sessions = load_all_sessions()
    except Exception as exc:  # noqa: BLE001
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        report_json(sessions)
        return

    now = _now()
    if args.command == "history":
        report_history(sessions, now, days=parse_days(args.days))
    elif args.command == "predict":
        report_prediction(sessions, now)
    else:
        report_status(sessions, now)


if __name__ == "__main__":
    main()
