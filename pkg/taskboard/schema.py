"""
Taskboard record schema.

Mirrors the relational tables behind the dashboard:

  profiles         - one row per identity, display + preference fields
  projects         - owned by one identity
  project_members  - project <-> identity join
  boards           - ordered columns inside a project
  tasks            - cards on a board

Status and priority columns are free text in the database. At this boundary
they become closed enums: writes are validated with ``parse()``, reads fall
back to ``UNSPECIFIED`` through ``from_str()``.
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional, Dict, Any


class ValidationError(ValueError):
    """Raised when user input fails validation before any gateway call."""
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime/date)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class _LabelledEnum(Enum):
    """Enum over display strings with a lenient reader and a strict writer."""

    @classmethod
    def from_str(cls, value: Optional[str]):
        if not value:
            return cls.UNSPECIFIED
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.UNSPECIFIED

    @classmethod
    def parse(cls, value: Optional[str]):
        """Strict parse for writes. ``None``/empty map to UNSPECIFIED."""
        if value is None or value == "":
            return cls.UNSPECIFIED
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(m.value for m in cls if m.value)
            raise ValidationError(
                f"Invalid {cls.__name__} '{value}'. Allowed: {allowed}"
            )

    @property
    def db_value(self) -> Optional[str]:
        return self.value or None


class TaskStatus(_LabelledEnum):
    """Kanban columns a task can sit in."""
    TODO = "To Do"
    IN_PROGRESS = "In Progress"
    UNDER_REVIEW = "Under Review"
    COMPLETED = "Completed"
    UNSPECIFIED = ""


class TaskPriority(_LabelledEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"
    UNSPECIFIED = ""


class ProjectStatus(_LabelledEnum):
    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    ON_HOLD = "On Hold"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    UNSPECIFIED = ""


class MemberRole(Enum):
    OWNER = "owner"
    MEMBER = "member"

    @classmethod
    def from_str(cls, value: Optional[str]) -> "MemberRole":
        try:
            return cls((value or "member").lower())
        except ValueError:
            return cls.MEMBER


class ThemePreference(Enum):

    LIGHT = "light"
    DARK = "dark"

    @classmethod
    def from_str(cls, value: Optional[str]) -> "ThemePreference":
        try:
            return cls((value or "light").lower())
        except ValueError:
            return cls.LIGHT


# Applied once, when the profile row is created on first sign-in
PROFILE_DEFAULTS: Dict[str, Any] = {
    "theme_preference": ThemePreference.LIGHT.value,
    "compact_mode": False,
    "language_preference": "English (US)",
    "email_notifications": True,
    "browser_notifications": True,
    "task_reminders": True,
    "mentions": True,
    "auto_save": True,
    "usage_analytics": False,
}

PREFERENCE_FIELDS = tuple(PROFILE_DEFAULTS)
PROFILE_FIELDS = ("first_name", "last_name", "avatar_url") + PREFERENCE_FIELDS


@dataclass
class Profile:
    """Application profile attached one-to-one to an identity."""

    id: str
    first_name: str = ""
    last_name: str = ""
    avatar_url: Optional[str] = None

    # Preferences
    theme_preference: ThemePreference = ThemePreference.LIGHT
    compact_mode: bool = False
    language_preference: str = "English (US)"
    email_notifications: bool = True
    browser_notifications: bool = True
    task_reminders: bool = True
    mentions: bool = True
    auto_save: bool = True
    usage_analytics: bool = False

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "avatar_url": self.avatar_url,
            "theme_preference": self.theme_preference.value,
            "compact_mode": self.compact_mode,
            "language_preference": self.language_preference,
            "email_notifications": self.email_notifications,
            "browser_notifications": self.browser_notifications,
            "task_reminders": self.task_reminders,
            "mentions": self.mentions,
            "auto_save": self.auto_save,
            "usage_analytics": self.usage_analytics,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        # Nullable booleans fall back to the creation defaults
        def flag(name: str) -> bool:
            value = data.get(name)
            return PROFILE_DEFAULTS[name] if value is None else bool(value)

        return cls(
            id=data["id"],
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            avatar_url=data.get("avatar_url"),
            theme_preference=ThemePreference.from_str(data.get("theme_preference")),
            compact_mode=flag("compact_mode"),
            language_preference=data.get("language_preference") or PROFILE_DEFAULTS["language_preference"],
            email_notifications=flag("email_notifications"),
            browser_notifications=flag("browser_notifications"),
            task_reminders=flag("task_reminders"),
            mentions=flag("mentions"),
            auto_save=flag("auto_save"),
            usage_analytics=flag("usage_analytics"),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(data.get("updated_at")) or utc_now(),
        )


@dataclass
class Project:
    """A project owned by exactly one identity."""

    id: str
    title: str
    owner_id: str
    description: str = ""
    deadline: Optional[datetime] = None
    status: ProjectStatus = ProjectStatus.NOT_STARTED
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "deadline": to_iso(self.deadline),
            "status": self.status.value,
            "owner_id": self.owner_id,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            owner_id=data.get("owner_id", ""),
            description=data.get("description") or "",
            deadline=parse_timestamp(data.get("deadline")),
            status=ProjectStatus.from_str(data.get("status")),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(data.get("updated_at")) or utc_now(),
        )


@dataclass
class ProjectMember:
    id: str
    project_id: str
    user_id: str
    role: MemberRole = MemberRole.MEMBER
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role": self.role.value,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectMember":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            user_id=data["user_id"],
            role=MemberRole.from_str(data.get("role")),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
        )


@dataclass
class Board:
    """Ordered grouping of tasks inside a project."""

    id: str
    project_id: str
    title: str
    position: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "position": self.position,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Board":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            title=data.get("title", ""),
            position=int(data.get("position") or 0),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(data.get("updated_at")) or utc_now(),
        )


@dataclass
class Task:
    """A task card. Belongs to a board, reaches its project through the board."""

    id: str
    board_id: str
    title: str
    created_by: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    assignee_id: Optional[str] = None
    position: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    # Filled from the nested board -> project join, when selected
    board_title: str = ""
    project_id: Optional[str] = None
    project_title: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "board_id": self.board_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "due_date": to_iso(self.due_date),
            "assignee_id": self.assignee_id,
            "created_by": self.created_by,
            "position": self.position,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }
        if self.project_id:
            data["board"] = {
                "id": self.board_id,
                "title": self.board_title,
                "project": {"id": self.project_id, "title": self.project_title},
            }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        board = data.get("board") or {}
        project = board.get("project") or {}
        return cls(
            id=data["id"],
            board_id=data.get("board_id", ""),
            title=data.get("title", ""),
            created_by=data.get("created_by", ""),
            description=data.get("description") or "",
            status=TaskStatus.from_str(data.get("status")),
            priority=TaskPriority.from_str(data.get("priority")),
            due_date=parse_timestamp(data.get("due_date")),
            assignee_id=data.get("assignee_id"),
            position=int(data.get("position") or 0),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(data.get("updated_at")) or utc_now(),
            board_title=board.get("title", ""),
            project_id=project.get("id"),
            project_title=project.get("title", ""),
        )
