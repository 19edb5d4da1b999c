"""
Dashboard aggregators.

Pure functions that turn fetched records into what the views render:
status/priority histograms, per-project progress, the daily creation trend,
calendar day buckets, due-date classes and the local task filters.

Due dates and creation timestamps are compared as UTC calendar dates.
"""
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from .schema import Project, Task, TaskStatus

NO_STATUS = "No Status"
NO_PRIORITY = "No Priority"


def utc_date(value) -> Optional[date]:
    """Calendar date of a timestamp in UTC (naive timestamps are taken as UTC)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def utc_today() -> date:
    """Today's calendar date in UTC, the frame every due date is compared in."""
    return datetime.now(timezone.utc).date()


def progress_percent(completed: int, total: int) -> int:
    """Completion percentage, rounded half up; 0 for an empty bucket.

    A partially completed bucket is clamped to 1..99.
    """
    percent = int(math.floor(completed / max(total, 1) * 100 + 0.5))
    if 0 < completed < total:
        percent = min(max(percent, 1), 99)
    return percent



# ── Histograms ───────────────────────────────────────────────────────────────


def histogram(tasks: Iterable[Task], key: Callable[[Task], str]) -> List[Dict]:
    """Count tasks per key as ``{name, value}`` pairs in first-seen order."""
    counts: Dict[str, int] = {}
    for task in tasks:
        name = key(task)
        counts[name] = counts.get(name, 0) + 1
    return [{"name": name, "value": value} for name, value in counts.items()]


def status_histogram(tasks: Iterable[Task]) -> List[Dict]:
    return histogram(tasks, lambda t: t.status.value or NO_STATUS)


def priority_histogram(tasks: Iterable[Task]) -> List[Dict]:
    return histogram(tasks, lambda t: t.priority.value or NO_PRIORITY)


def project_progress(tasks: Iterable[Task]) -> List[Dict]:
    """Completed/total per parent project, for tasks carrying the board join.

    Tasks without a resolvable project are skipped.
    """
    buckets: Dict[str, Dict] = {}
    for task in tasks:
        if not task.project_id:
            continue
        bucket = buckets.setdefault(
            task.project_id,
            {"id": task.project_id, "name": task.project_title, "completed": 0, "total": 0},
        )
        bucket["total"] += 1
        if task.status == TaskStatus.COMPLETED:
            bucket["completed"] += 1

    for bucket in buckets.values():
        bucket["progress"] = progress_percent(bucket["completed"], bucket["total"])
    return list(buckets.values())


# ── Daily trend ──────────────────────────────────────────────────────────────


def trend_window(days: int, now: Optional[datetime] = None):
    """(start, end) dates covering ``days`` calendar days ending today (UTC)."""
    if days < 1:
        raise ValueError("days must be >= 1")
    end = utc_date(now or datetime.now(timezone.utc))
    return end - timedelta(days=days - 1), end


def daily_trend(tasks: Iterable[Task], start: date, end: date) -> List[Dict]:
    """Tasks created per day, one zero-seeded bucket for every day in range."""
    counts: Dict[str, int] = {}
    day = start
    while day <= end:
        counts[day.isoformat()] = 0
        day += timedelta(days=1)

    for task in tasks:
        key = utc_date(task.created_at).isoformat()
        if key in counts:
            counts[key] += 1

    return [{"date": d, "count": c} for d, c in sorted(counts.items())]


# ── Calendar ─────────────────────────────────────────────────────────────────


def tasks_for_day(tasks: Iterable[Task], day: date) -> List[Task]:
    """Tasks whose due date falls on ``day``."""
    return [t for t in tasks if t.due_date and utc_date(t.due_date) == day]


def busy_days(tasks: Iterable[Task]) -> Set[date]:
    """Every date that has at least one task due (calendar markers)."""
    return {utc_date(t.due_date) for t in tasks if t.due_date}


def month_range(day: date):
    """First and last calendar day of the month containing ``day``."""
    first = day.replace(day=1)
    following = (first + timedelta(days=32)).replace(day=1)
    return first, following - timedelta(days=1)


# ── Due dates ────────────────────────────────────────────────────────────────


class DueClass(Enum):
    OVERDUE = "overdue"
    DUE_TODAY = "due_today"
    DUE_TOMORROW = "due_tomorrow"
    DUE_THIS_WEEK = "due_this_week"
    DUE_LATER = "due_later"
    NO_DUE_DATE = "no_due_date"


class DueColor(Enum):
    RED = "red"
    ORANGE = "orange"
    GREEN = "green"
    NEUTRAL = "neutral"


DUE_COLORS = {
    DueClass.OVERDUE: DueColor.RED,
    DueClass.DUE_TODAY: DueColor.ORANGE,
    DueClass.DUE_TOMORROW: DueColor.ORANGE,
    DueClass.DUE_THIS_WEEK: DueColor.GREEN,
    DueClass.DUE_LATER: DueColor.NEUTRAL,
    DueClass.NO_DUE_DATE: DueColor.NEUTRAL,
}


@dataclass(frozen=True)
class DueInfo:
    due_class: DueClass
    label: str
    color: DueColor

    def to_dict(self) -> Dict[str, str]:
        return {"class": self.due_class.value, "label": self.label, "color": self.color.value}


def short_date(day: date) -> str:
    return f"{day:%b} {day.day}"


def classify_due_date(due, today: date) -> DueInfo:
    """Classify a due date against ``today`` at calendar-day granularity."""
    due_day = utc_date(due)
    if due_day is None:
        due_class, label = DueClass.NO_DUE_DATE, "No due date"
    elif due_day < today:
        due_class, label = DueClass.OVERDUE, f"Overdue - {short_date(due_day)}"
    elif due_day == today:
        due_class, label = DueClass.DUE_TODAY, "Due today"
    elif due_day == today + timedelta(days=1):
        due_class, label = DueClass.DUE_TOMORROW, "Due tomorrow"
    elif due_day < today + timedelta(days=7):
        due_class, label = DueClass.DUE_THIS_WEEK, f"Due {short_date(due_day)}"
    else:
        due_class, label = DueClass.DUE_LATER, f"Due {short_date(due_day)}"
    return DueInfo(due_class=due_class, label=label, color=DUE_COLORS[due_class])


# ── Filters ──────────────────────────────────────────────────────────────────


class TaskFilter(Enum):
    ALL = "all"
    UPCOMING = "upcoming"
    COMPLETED = "completed"

    @classmethod
    def from_str(cls, value: Optional[str]) -> "TaskFilter":
        try:
            return cls((value or "all").lower())
        except ValueError:
            return cls.ALL


def filter_tasks(tasks: Sequence[Task], mode: TaskFilter, today: date) -> List[Task]:
    if mode == TaskFilter.UPCOMING:
        return [t for t in tasks if t.due_date and utc_date(t.due_date) >= today]
    if mode == TaskFilter.COMPLETED:
        return [t for t in tasks if t.status == TaskStatus.COMPLETED]
    return list(tasks)


# ── Overview ─────────────────────────────────────────────────────────────────


def project_summaries(projects: Iterable[Project], tasks: Iterable[Task]) -> List[Dict]:
    """Project cards: each project with its task totals and progress."""
    totals = {p["id"]: p for p in project_progress(tasks)}
    summaries = []
    for project in projects:
        bucket = totals.get(project.id, {"completed": 0, "total": 0})
        summary = project.to_dict()
        summary["tasks"] = {"completed": bucket["completed"], "total": bucket["total"]}
        summary["progress"] = progress_percent(bucket["completed"], bucket["total"])
        summaries.append(summary)
    return summaries


def overview_stats(projects: Sequence[Project], tasks: Sequence[Task], today: date) -> Dict[str, int]:
    return {
        "projects": len(projects),
        "tasks": len(tasks),
        "completed": sum(1 for t in tasks if t.status == TaskStatus.COMPLETED),
        "in_progress": sum(1 for t in tasks if t.status == TaskStatus.IN_PROGRESS),
        "overdue": sum(
            1 for t in tasks
            if t.status != TaskStatus.COMPLETED and t.due_date and utc_date(t.due_date) < today
        ),
    }
