"""
Pure renderers over cached records, plus the board's intent-to-mutation map.

Nothing in here touches a store. Every function takes a tuple (or any
iterable) of records, usually SyncedCollection.records, and returns text or
plain data. Each view has an explicit empty state.
"""
import calendar
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from .schema import (
    STATUS_LABELS, Event, Issue, Record, Task, TaskStatus, Urgency,
)

NO_EVENTS = "📭 No events found."
NO_EVENTS_THIS_MONTH = "📭 No events this month."
NO_TASKS = "📭 The board is empty. Add a task to get started."
EMPTY_COLUMN = "(nothing here)"
NO_ISSUES = "✅ No issues reported."

STATUS_EMOJI = {
    TaskStatus.TODO: "📝",
    TaskStatus.DOING: "🚀",
    TaskStatus.COMPLETE: "✅",
}

URGENCY_EMOJI = {
    Urgency.LOW: "⚪",
    Urgency.MEDIUM: "🟡",
    Urgency.HIGH: "🟠",
    Urgency.URGENT: "🔴",
}

HIGHLIGHTED = (Urgency.HIGH, Urgency.URGENT)


def short_id(record_id: str) -> str:
    """Display form of a store id (enough to resolve by prefix)."""
    return record_id[:8]


# ──────────────────────────────────────────
# Events list
# ──────────────────────────────────────────

def _event_sort_key(event: Event):
    start = event.start_day
    return (start is None, start or date.min, event.name.lower())


def search_events(events: Iterable[Event], query: str = "") -> List[Event]:
    """Case-insensitive match on name, POC or attendees; sorted by start date."""
    needle = (query or "").strip().lower()
    matched = [
        e for e in events
        if not needle
        or needle in e.name.lower()
        or needle in e.poc.lower()
        or needle in e.attendees.lower()
    ]
    return sorted(matched, key=_event_sort_key)


def format_event(event: Event) -> str:
    dates = event.start_date
    if event.end_date and event.end_date != event.start_date:
        dates = f"{event.start_date} → {event.end_date}"
    where = event.location
    if event.room:
        where = f"{event.location} / {event.room}" if event.location else event.room
    lines = [
        f"📅 {short_id(event.id)}: {event.name}",
        f"   🗓 {dates}  📍 {where or '-'}",
        f"   👤 POC: {event.poc or '-'}  🏷 {event.session_type or '-'}",
    ]
    if event.resources:
        lines.append(f"   🧰 {', '.join(event.resources)}")
    return "\n".join(lines)


def render_event_list(events: Iterable[Event], query: str = "") -> str:
    matched = search_events(events, query)
    if not matched:
        return f"{NO_EVENTS} (search: {query!r})" if query else NO_EVENTS
    header = f"📋 Events ({len(matched)})"
    if query:
        header += f" matching {query!r}"
    return "\n".join([header] + [format_event(e) for e in matched])


# ──────────────────────────────────────────
# Calendar
# ──────────────────────────────────────────

@dataclass
class CalendarDay:
    day: date
    events: List[Event] = field(default_factory=list)
    is_today: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "today": self.is_today,
            "events": [e.id for e in self.events],
        }


def events_on(events: Iterable[Event], day: date) -> List[Event]:
    """Events running on the given day, start to end inclusive."""
    return sorted((e for e in events if e.covers(day)), key=_event_sort_key)


def month_grid(events: Iterable[Event], year: int, month: int,
               today: date = None) -> List[List[Optional[CalendarDay]]]:
    """
    Weeks of the month starting on Sunday. Days outside the month are None.
    """
    events = list(events)
    today = today or date.today()
    weeks = []
    # Day numbers, not dates: padding days around January 1 and December 9999 fall
    # outside the date range
    for week in calendar.Calendar(firstweekday=6).monthdayscalendar(year, month):
        row: List[Optional[CalendarDay]] = []
        for number in week:
            if not number:
                row.append(None)
            else:
                day = date(year, month, number)
                row.append(CalendarDay(day, events_on(events, day), day == today))
        weeks.append(row)
    return weeks


def render_calendar(events: Iterable[Event], year: int, month: int,
                    today: date = None) -> str:
    """
    Text month view. Event days are marked with *, today is bracketed.
    The month's events are listed under the grid.
    """
    events = list(events)
    grid = month_grid(events, year, month, today)
    lines = [f"🗓 {calendar.month_name[month]} {year}", " Su  Mo  Tu  We  Th  Fr  Sa"]
    for week in grid:
        cells = []
        for cell in week:
            if cell is None:
                cells.append("    ")
                continue
            num = f"{cell.day.day:2d}"
            mark = "*" if cell.events else " "
            cells.append(f"[{num}]" if cell.is_today else f" {num}{mark}")
        lines.append("".join(cells).rstrip())

    in_month = []
    for week in grid:
        for cell in week:
            if cell is None:
                continue
            for event in cell.events:
                if event not in in_month:
                    in_month.append(event)
    if not in_month:
        lines.append(NO_EVENTS_THIS_MONTH)
    else:
        lines.append("")
        for event in in_month:
            lines.append(f"• {event.start_date} {event.name} ({short_id(event.id)})")
    return "\n".join(lines)


def render_day(events: Iterable[Event], day: date) -> str:
    on_day = events_on(events, day)
    if not on_day:
        return f"📭 No events on {day.isoformat()}."
    return "\n".join([f"🗓 {day.isoformat()}"] + [format_event(e) for e in on_day])


def export_event(event: Event) -> str:
    """Plain-text block for pasting into the ticketing system."""
    return "\n".join([
        f"Event Name: {event.name}",
        f"Start Date: {event.start_date}",
        f"End Date: {event.end_date}",
        f"Event POC: {event.poc}",
        f"Location: {event.room or event.location}",
        f"Classification: {event.classification}",
        f"Session Type: {event.session_type}",
        f"Attendees: {event.attendees}",
        f"Resources: {', '.join(event.resources)}",
    ])


# ──────────────────────────────────────────
# Task board
# ──────────────────────────────────────────

def board_columns(tasks: Iterable[Task]) -> Dict[TaskStatus, List[Task]]:
    """Tasks grouped by status, columns in board order, oldest first."""
    columns: Dict[TaskStatus, List[Task]] = {status: [] for status in TaskStatus}
    for task in sorted(tasks, key=lambda t: (t.created_at, t.id)):
        columns[task.status].append(task)
    return columns


def render_board(tasks: Iterable[Task]) -> str:
    columns = board_columns(tasks)
    if not any(columns.values()):
        return NO_TASKS
    lines = []
    for status, column in columns.items():
        lines.append(f"{STATUS_EMOJI[status]} {STATUS_LABELS[status]} ({len(column)})")
        if not column:
            lines.append(f"   {EMPTY_COLUMN}")
        for task in column:
            lines.append(f"   {short_id(task.id)}: {task.title}")
    return "\n".join(lines)


@dataclass(frozen=True)
class Mutation:
    """An update a view asks the collection to perform."""
    record_id: str
    fields: Dict[str, Any]


def move(task: Task, status) -> Optional[Mutation]:
    """Move a task to any column. None when it is already there."""
    target = TaskStatus.parse(status)
    if task.status == target:
        return None
    return Mutation(task.id, {"status": target.value})


def advance(task: Task) -> Optional[Mutation]:
    """One column to the right; None on the last column."""
    return move(task, task.status.advance())


def retreat(task: Task) -> Optional[Mutation]:
    """One column to the left; None on the first column."""
    return move(task, task.status.retreat())


# ──────────────────────────────────────────
# Issues
# ──────────────────────────────────────────

def sort_issues(issues: Iterable[Issue]) -> List[Issue]:
    """Most urgent first; within a tier, the longest-waiting first."""
    return sorted(issues, key=lambda i: (-i.urgency.rank, i.created_at, i.id))


def format_issue(issue: Issue) -> str:
    flag = " ‼️" if issue.urgency in HIGHLIGHTED else ""
    lines = [
        f"{URGENCY_EMOJI[issue.urgency]} {short_id(issue.id)}: {issue.title}"
        f" [{issue.urgency.value}]{flag}",
        f"   {issue.description}",
    ]
    if issue.steps_taken:
        lines.append(f"   🔧 Tried: {issue.steps_taken}")
    if issue.contact:
        lines.append(f"   👤 {issue.contact}")
    return "\n".join(lines)


def render_issue_list(issues: Iterable[Issue]) -> str:
    ordered = sort_issues(issues)
    if not ordered:
        return NO_ISSUES
    return "\n".join([f"🛠 Issues ({len(ordered)})"] + [format_issue(i) for i in ordered])


# ──────────────────────────────────────────
# Stats
# ──────────────────────────────────────────

def stats(kind: str, records: Iterable[Record], today: date = None) -> Dict[str, int]:
    """Counts per status (tasks), urgency (issues) or timing (events)."""
    records = list(records)
    counts: Dict[str, int] = {"total": len(records)}
    if kind == "tasks":
        for status in TaskStatus:
            counts[status.value] = sum(1 for r in records if r.status == status)
    elif kind == "issues":
        for urgency in Urgency:
            counts[urgency.value] = sum(1 for r in records if r.urgency == urgency)
    elif kind == "events":
        today = today or date.today()
        counts["upcoming"] = sum(
            1 for r in records if r.start_day is not None and r.start_day > today
        )
        counts["ongoing"] = sum(1 for r in records if r.covers(today))
        counts["past"] = sum(
            1 for r in records if r.end_day is not None and r.end_day < today
        )
    else:
        raise ValueError(f"Unknown collection: {kind!r}")
    return counts
