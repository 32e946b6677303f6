"""
Prompt builders for the AI assistant, and normalization of what comes back.

Extraction output is only ever a draft: normalize_extraction() keeps known
keys and coerces option fields, but nothing here writes to a collection.
"""
import re
from typing import Any, Dict, Iterable, List

from .schema import (
    CLASSIFICATIONS, DEFAULT_LOCATION, RESOURCE_OPTIONS, SESSION_TYPES,
    STATUS_LABELS, Event, Issue, Record, TaskStatus, parse_day,
)


# Structured output schema for event extraction (Gemini OpenAPI subset)
EVENT_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "name": {"type": "STRING"},
        "start_date": {"type": "STRING", "description": "YYYY-MM-DD"},
        "end_date": {"type": "STRING", "description": "YYYY-MM-DD"},
        "poc": {"type": "STRING"},
        "location": {"type": "STRING"},
        "room": {"type": "STRING"},
        "classification": {"type": "STRING", "enum": CLASSIFICATIONS},
        "session_type": {"type": "STRING", "enum": SESSION_TYPES},
        "attendees": {"type": "STRING"},
        "resources": {"type": "ARRAY", "items": {"type": "STRING", "enum": RESOURCE_OPTIONS}},
    },
}

EXTRACTION_PROMPT = """You are an expert assistant that extracts structured data from event reports.
Carefully extract the following information from the text provided below.
Be precise. Return a single JSON object with these keys:

- name: the event name
- start_date, end_date: dates as YYYY-MM-DD (use start_date for both if only one day is given)
- poc: the point of contact
- location: the site (default "{location}")
- room: room or sub-location, if mentioned
- classification: one of {classifications}
- session_type: one of {session_types}
- attendees: attendee names or organizations, comma-separated
- resources: any of {resources}

Leave a key out if the text does not mention it.

The following is the report text:
{text}"""


def extraction_prompt(text: str) -> str:
    """Build the event extraction prompt for pasted report text."""
    return EXTRACTION_PROMPT.format(
        location=DEFAULT_LOCATION,
        classifications=", ".join(CLASSIFICATIONS),
        session_types=", ".join(SESSION_TYPES),
        resources=", ".join(RESOURCE_OPTIONS),
        text=text.strip()[:20000],
    )


def events_summary_prompt(events: Iterable[Event]) -> str:
    """Concise summary of upcoming events."""
    lines = [
        f"Event Name: {e.name}, Date: {e.start_date}, "
        f"Location: {e.room or e.location}, POC: {e.poc}"
        for e in events
    ]
    return (
        "Please provide a concise and professional summary of the team's upcoming events "
        "based on the following list. Organize the summary by key details like event name, "
        "date, location, and POC.\n"
        f"Events:\n{'; '.join(lines) or 'None'}"
    )


def board_summary_prompt(tasks: Iterable[Record]) -> str:
    """Progress summary of the task board, grouped by column."""
    by_status: Dict[TaskStatus, List[str]] = {s: [] for s in TaskStatus}
    for task in tasks:
        by_status[task.status].append(task.title)
    parts = [
        f"{STATUS_LABELS[status]}: {', '.join(titles) or 'none'}"
        for status, titles in by_status.items()
    ]
    return (
        "Provide a professional summary of the team's project progress. "
        f"Tasks: {'; '.join(parts)}."
    )


def diagnosis_prompt(issue: Issue) -> str:
    """Three short diagnostic steps for a reported blocker."""
    prompt = f"Diagnose this tech blocker: {issue.title} - {issue.description}."
    if issue.steps_taken:
        prompt += f" Steps already taken: {issue.steps_taken}."
    return prompt + " Provide 3 short diagnostic steps."


# ──────────────────────────────────────────
# Extraction normalization
# ──────────────────────────────────────────

def _match_option(value: Any, options: List[str]) -> str:
    """Case/spacing-insensitive match against a fixed option list."""
    key = re.sub(r"[\s_-]+", "", str(value or "")).lower()
    for option in options:
        if re.sub(r"[\s_-]+", "", option).lower() == key:
            return option
    return ""


def _clean_date(value: Any) -> str:
    try:
        return parse_day(value).isoformat()
    except ValueError:
        return ""


def normalize_extraction(raw: Any) -> Dict[str, Any]:
    """
    Turn a model response into an event draft.

    Unknown keys are dropped (legacy names are mapped first), option fields
    that don't match a known value are left out, dates that don't parse are
    cleared, and resources are split and filtered to known tags.
    """
    if not isinstance(raw, dict):
        return {}
    known = set(Event.field_names())
    draft: Dict[str, Any] = {}
    for key, value in raw.items():
        key = Event.ALIASES.get(key, key)
        if key not in known or key in draft or value in (None, "", []):
            continue
        draft[key] = value

    for key in ("start_date", "end_date"):
        if key in draft:
            draft[key] = _clean_date(draft[key])
    if draft.get("start_date") and not draft.get("end_date"):
        draft["end_date"] = draft["start_date"]

    if "classification" in draft:
        draft["classification"] = _match_option(draft["classification"], CLASSIFICATIONS)
    if "session_type" in draft:
        draft["session_type"] = _match_option(draft["session_type"], SESSION_TYPES)

    if "resources" in draft:
        items = draft["resources"]
        if isinstance(items, str):
            items = items.split(",")
        if not isinstance(items, (list, tuple)):
            items = []
        tags = []
        for item in items:
            tag = _match_option(item, RESOURCE_OPTIONS)
            if tag and tag not in tags:
                tags.append(tag)
        draft["resources"] = tags

    for key, value in list(draft.items()):
        if key != "resources" and not isinstance(value, str):
            draft[key] = str(value)

    return {k: v for k, v in draft.items() if v not in ("", [])}
