"""
TeamHub record schema.

Three flat record kinds (events, tasks, issues) share one shape:
  - a store-assigned string id (immutable, unique per collection)
  - a set of mutable fields
  - a store-assigned created_at timestamp

Task status is a fully connected three-state machine:
  todo ⇄ doing ⇄ complete   (and todo ⇄ complete directly)
Transitions only ever happen on an explicit user intent.
"""
from enum import Enum
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type


# Collection kinds
EVENTS = "events"
TASKS = "tasks"
ISSUES = "issues"
KINDS = (EVENTS, TASKS, ISSUES)

# Event option lists (the values the event form offers)
DEFAULT_LOCATION = "NYIH"
CLASSIFICATIONS = ["Unclassified", "Confidential", "Secret"]
SESSION_TYPES = [
    "Client Meeting",
    "Internal Meeting",
    "Tech Innovation Meeting",
    "Demo",
    "CIC Meeting",
]
RESOURCE_OPTIONS = [
    "Surface Hubs",
    "Proto",
    "Spot",
    "Hypervsn",
    "GenAI",
    "Vestaboard",
    "Loaner Laptop",
    "Clicker",
    "Teams Call",
    "Vu AI",
    "Other",
]

# Fields the store owns; callers may never write them
SYSTEM_FIELDS = ("id", "created_at")


class TaskStatus(Enum):
    """Board columns, in display order."""
    TODO = "todo"
    DOING = "doing"
    COMPLETE = "complete"

    @classmethod
    def from_str(cls, value: Any) -> "TaskStatus":
        """Lenient read: unknown stored values land in TODO."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.TODO

    @classmethod
    def parse(cls, value: Any) -> "TaskStatus":
        """Strict parse for user input."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid status: {value!r}. "
                f"Allowed: {', '.join(s.value for s in cls)}"
            )

    def advance(self) -> "TaskStatus":
        """Next column to the right (stays put on the last column)."""
        order = list(TaskStatus)
        return order[min(order.index(self) + 1, len(order) - 1)]

    def retreat(self) -> "TaskStatus":
        """Next column to the left (stays put on the first column)."""
        order = list(TaskStatus)
        return order[max(order.index(self) - 1, 0)]


STATUS_LABELS = {
    TaskStatus.TODO: "To Do",
    TaskStatus.DOING: "Doing",
    TaskStatus.COMPLETE: "Complete",
}


class Urgency(Enum):
    """Issue urgency tiers, lowest first. Used for sorting and highlighting only."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return list(Urgency).index(self)

    @classmethod
    def from_str(cls, value: Any) -> "Urgency":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.MEDIUM

    @classmethod
    def parse(cls, value: Any) -> "Urgency":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid urgency: {value!r}. "
                f"Allowed: {', '.join(u.value for u in cls)}"
            )


def parse_day(value: Any) -> date:
    """Parse a calendar day from a date, datetime or ISO string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not text:
        raise ValueError("empty date")
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        raise ValueError(f"Invalid date: {text!r} (expected YYYY-MM-DD)")


def _day_or_none(value: Any) -> Optional[date]:
    try:
        return parse_day(value)
    except ValueError:
        return None


def _split_tags(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        parts = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        parts = list(value)
    else:
        raise ValueError(f"Expected a list of tags, got {type(value).__name__}")
    tags = []
    for p in parts:
        p = str(p).strip()
        if p and p not in tags:
            tags.append(p)
    return tags


@dataclass
class Record:
    """Common shape of every hub record."""

    id: str = ""
    created_at: str = ""

    KIND: ClassVar[str] = ""
    REQUIRED: ClassVar[Tuple[str, ...]] = ()
    DEFAULTS: ClassVar[Dict[str, Any]] = {}
    ALIASES: ClassVar[Dict[str, str]] = {"timestamp": "created_at"}
    # Fields validated against each other; an update touching one is checked
    # together with the stored values of the rest
    LINKED_FIELDS: ClassVar[Tuple[str, ...]] = ()

    @classmethod
    def field_names(cls) -> List[str]:
        """Caller-writable field names."""
        return [f.name for f in fields(cls) if f.name not in SYSTEM_FIELDS]

    def to_fields(self) -> Dict[str, Any]:
        """Mutable fields only (the shape create/update accept)."""
        return {name: _copy(getattr(self, name)) for name in self.field_names()}

    def to_dict(self) -> Dict[str, Any]:
        """Full record including id and created_at."""
        data = {"id": self.id}
        data.update(self.to_fields())
        data["created_at"] = self.created_at
        return data

    @classmethod
    def from_doc(cls, doc_id: str, data: Dict[str, Any]) -> "Record":
        """Build a record from a stored document, tolerating legacy field names."""
        known = set(cls.field_names()) | {"created_at"}
        values: Dict[str, Any] = {}
        data = data or {}
        for raw, value in data.items():
            key = cls.ALIASES.get(raw, raw)
            if key not in known:
                continue
            if raw == key:
                values[key] = value
            elif key not in data:
                # Canonical names win over aliases when a document carries both
                values.setdefault(key, value)
        values = cls._coerce(values)
        return cls(id=doc_id, **values)

    @classmethod
    def _coerce(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        for key, value in list(values.items()):
            if value is None:
                values[key] = ""
            elif not isinstance(value, (list, dict)):
                values[key] = str(value)
        return values

    @classmethod
    def validate(cls, data: Dict[str, Any], partial: bool = False,
                 current: Dict[str, Any] = None) -> Dict[str, Any]:
        """
        Validate caller-supplied fields and return the normalized dict.

        partial=False (create): required fields must be present and defaults
        are filled in. partial=True (update): only the given fields are checked,
        plus the cross-field rules against `current`, the record's stored
        fields, when given.

        Raises ValueError with a user-facing message.
        """
        if not isinstance(data, dict):
            raise ValueError("fields must be an object")
        for key in SYSTEM_FIELDS:
            if key in data:
                raise ValueError(f"'{key}' is assigned by the store and cannot be written")
        unknown = set(data) - set(cls.field_names())
        if unknown:
            raise ValueError(f"Unknown fields for {cls.KIND}: {', '.join(sorted(unknown))}")
        if partial and not data:
            raise ValueError("No fields to update")

        result: Dict[str, Any] = {}
        for key, value in data.items():
            result[key] = cls._normalize(key, value)

        if not partial:
            for key in cls.REQUIRED:
                if not str(result.get(key, "")).strip():
                    raise ValueError(f"Missing required field: {key}")
            for key, default in cls.DEFAULTS.items():
                result.setdefault(key, _copy(default))
        else:
            for key in cls.REQUIRED:
                if key in result and not str(result[key]).strip():
                    raise ValueError(f"Field {key} cannot be empty")

        cls._check({**(current or {}), **result} if partial else result)
        return result

    @classmethod
    def _normalize(cls, key: str, value: Any) -> Any:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError(f"Field {key} must be a string")
        return value

    @classmethod
    def _check(cls, result: Dict[str, Any]) -> None:
        pass


def _copy(value: Any) -> Any:
    return list(value) if isinstance(value, list) else value


@dataclass
class Event(Record):
    """A scheduled meeting, demo or session."""

    name: str = ""
    start_date: str = ""
    end_date: str = ""
    poc: str = ""                  # point of contact
    location: str = ""             # site (e.g. NYIH)
    room: str = ""                 # room / sub-location within the site
    classification: str = ""
    session_type: str = ""
    attendees: str = ""            # free text, comma-separated by convention
    resources: List[str] = field(default_factory=list)

    KIND: ClassVar[str] = EVENTS
    REQUIRED: ClassVar[Tuple[str, ...]] = ("name", "start_date", "end_date", "poc")
    LINKED_FIELDS: ClassVar[Tuple[str, ...]] = ("start_date", "end_date")
    DEFAULTS: ClassVar[Dict[str, Any]] = {
        "location": DEFAULT_LOCATION,
        "room": "",
        "classification": CLASSIFICATIONS[0],
        "session_type": SESSION_TYPES[0],
        "attendees": "",
        "resources": [],
    }
    ALIASES: ClassVar[Dict[str, str]] = {
        "timestamp": "created_at",
        "eventName": "name",
        "startDate": "start_date",
        "endDate": "end_date",
        "eventPoc": "poc",
        "eventPOC": "poc",
        "eventLocation": "room",
        "sessionType": "session_type",
        "demoResources": "resources",
        "selectResources": "resources",
    }

    @property
    def start_day(self) -> Optional[date]:
        try:
            return parse_day(self.start_date)
        except ValueError:
            return None

    @property
    def end_day(self) -> Optional[date]:
        try:
            return parse_day(self.end_date)
        except ValueError:
            return self.start_day

    def covers(self, day: date) -> bool:
        """True if the event runs on the given day (inclusive of both ends)."""
        start, end = self.start_day, self.end_day
        if start is None:
            return False
        return start <= day <= (end or start)

    @classmethod
    def _coerce(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        resources = values.pop("resources", [])
        values = super()._coerce(values)
        try:
            values["resources"] = _split_tags(resources)
        except ValueError:
            values["resources"] = []
        return values

    @classmethod
    def _normalize(cls, key: str, value: Any) -> Any:
        if key == "resources":
            tags = _split_tags(value)
            unknown = [t for t in tags if t not in RESOURCE_OPTIONS]
            if unknown:
                raise ValueError(
                    f"Unknown resources: {', '.join(unknown)}. "
                    f"Allowed: {', '.join(RESOURCE_OPTIONS)}"
                )
            return tags
        value = super()._normalize(key, value)
        if key in ("start_date", "end_date") and value:
            parse_day(value)
        if key == "classification" and value and value not in CLASSIFICATIONS:
            raise ValueError(
                f"Invalid classification: {value!r}. Allowed: {', '.join(CLASSIFICATIONS)}"
            )
        if key == "session_type" and value and value not in SESSION_TYPES:
            raise ValueError(
                f"Invalid session type: {value!r}. Allowed: {', '.join(SESSION_TYPES)}"
            )
        return value

    @classmethod
    def _check(cls, result: Dict[str, Any]) -> None:
        # Stored legacy values may not parse; only real dates are compared
        start = _day_or_none(result.get("start_date"))
        end = _day_or_none(result.get("end_date"))
        if start and end and end < start:
            raise ValueError("End date is before start date")


@dataclass
class Task(Record):
    """A card on the task board."""

    title: str = ""
    status: TaskStatus = TaskStatus.TODO
    steps: str = ""                # free-text notes / steps

    KIND: ClassVar[str] = TASKS
    REQUIRED: ClassVar[Tuple[str, ...]] = ("title",)
    DEFAULTS: ClassVar[Dict[str, Any]] = {"status": TaskStatus.TODO.value, "steps": ""}
    ALIASES: ClassVar[Dict[str, str]] = {
        "timestamp": "created_at",
        "description": "steps",
    }

    def to_fields(self) -> Dict[str, Any]:
        data = super().to_fields()
        data["status"] = self.status.value
        return data

    @classmethod
    def _coerce(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        status = values.pop("status", None)
        values = super()._coerce(values)
        values["status"] = TaskStatus.from_str(status)
        return values

    @classmethod
    def _normalize(cls, key: str, value: Any) -> Any:
        if key == "status":
            return TaskStatus.parse(value).value
        return super()._normalize(key, value)


@dataclass
class Issue(Record):
    """A technical issue / blocker report."""

    title: str = ""
    description: str = ""
    urgency: Urgency = Urgency.MEDIUM
    steps_taken: str = ""
    contact: str = ""

    KIND: ClassVar[str] = ISSUES
    REQUIRED: ClassVar[Tuple[str, ...]] = ("title", "description")
    DEFAULTS: ClassVar[Dict[str, Any]] = {
        "urgency": Urgency.MEDIUM.value,
        "steps_taken": "",
        "contact": "",
    }
    ALIASES: ClassVar[Dict[str, str]] = {
        "timestamp": "created_at",
        "issueTitle": "title",
        "issueDescription": "description",
        "stepsTaken": "steps_taken",
        "contactPerson": "contact",
    }

    def to_fields(self) -> Dict[str, Any]:
        data = super().to_fields()
        data["urgency"] = self.urgency.value
        return data

    @classmethod
    def _coerce(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        urgency = values.pop("urgency", None)
        values = super()._coerce(values)
        values["urgency"] = Urgency.from_str(urgency)
        return values

    @classmethod
    def _normalize(cls, key: str, value: Any) -> Any:
        if key == "urgency":
            return Urgency.parse(value).value
        return super()._normalize(key, value)


RECORD_TYPES: Dict[str, Type[Record]] = {
    EVENTS: Event,
    TASKS: Task,
    ISSUES: Issue,
}


def record_type(kind: str) -> Type[Record]:
    """Record class for a collection kind."""
    try:
        return RECORD_TYPES[kind]
    except KeyError:
        raise ValueError(f"Unknown collection: {kind!r}. Available: {', '.join(KINDS)}")
