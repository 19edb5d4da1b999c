"""
Dashboard view loaders.

Each loader fetches the records one view needs for the identity in the
given ``SessionContext`` and derives its display data with the aggregators.

Loaders keep ``loading``/``error`` flags and the last good ``data``. Every
``load()`` takes a new generation number; a response that finishes after a
newer load started is dropped, so late replies cannot overwrite fresher
state. A failed fetch notifies and keeps the previous data.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional

from . import aggregators
from .aggregators import TaskFilter
from .gateway import DataGateway, GatewayError
from .notifications import Notifier
from .schema import Project, ProjectMember, Task, TaskStatus, ValidationError
from .session import SessionContext

logger = logging.getLogger(__name__)

ANALYTICS_RANGES = (7, 30, 90, 180)


class ViewLoader:
    """Base loader: generation tracking, loading flag, stale-but-consistent errors."""

    name = "view"

    def __init__(self, gateway: DataGateway, notifier: Notifier):
        self.gateway = gateway
        self.notifier = notifier
        self.loading = False
        self.error: Optional[str] = None
        self.data = self.empty()
        self._generation = 0

    def empty(self):
        return None

    async def fetch(self, ctx: SessionContext, **params):
        raise NotImplementedError

    async def load(self, ctx: SessionContext, **params):
        """Fetch and replace ``data``; returns the data now held."""
        self._generation += 1
        generation = self._generation
        self.loading = True
        try:
            data = await self.fetch(ctx, **params)
        except GatewayError as e:
            logger.error(f"{self.name} fetch failed ({e.code}): {e.message}")
            if generation == self._generation:
                self.error = e.message
                self.notifier.error(f"Error loading {self.name}: {e.message}")
            return self.data
        finally:
            if generation == self._generation:
                self.loading = False

        if generation != self._generation:
            logger.debug(f"Dropping stale {self.name} response (generation {generation})")
            return self.data
        self.data = data
        self.error = None
        return self.data


async def _visible_projects(gateway: DataGateway, identity_id: str) -> List[Project]:
    """Projects the identity owns or is a member of, newest first."""
    memberships = await gateway.select("project_members", eq={"user_id": identity_id})
    member_ids = {ProjectMember.from_dict(m).project_id for m in memberships}
    owned = await gateway.select("projects", eq={"owner_id": identity_id})
    owned_ids = {p["id"] for p in owned}
    shared = []
    if member_ids - owned_ids:
        shared = await gateway.select("projects", in_={"id": member_ids - owned_ids})
    projects = [Project.from_dict(r) for r in owned + shared]
    projects.sort(key=lambda p: p.created_at, reverse=True)
    return projects


async def _my_tasks(gateway: DataGateway, identity_id: str) -> List[Task]:
    rows = await gateway.select_tasks(
        any_eq={"assignee_id": identity_id, "created_by": identity_id},
        order_by="created_at",
        ascending=False,
    )
    return [Task.from_dict(r) for r in rows]


# ── Overview ─────────────────────────────────────────────────────────────────


class OverviewView(ViewLoader):
    name = "overview"

    def empty(self):
        return {"stats": {}, "projects": [], "upcoming": []}

    async def fetch(self, ctx: SessionContext, today: Optional[date] = None, **params):
        today = today or aggregators.utc_today()
        projects = await _visible_projects(self.gateway, ctx.identity_id)
        tasks = await _my_tasks(self.gateway, ctx.identity_id)
        project_tasks = [
            Task.from_dict(r)
            for r in await self.gateway.select_tasks(project_ids=[p.id for p in projects])
        ]
        upcoming = sorted(
            (t for t in aggregators.filter_tasks(tasks, TaskFilter.UPCOMING, today)
             if t.status != TaskStatus.COMPLETED),
            key=lambda t: aggregators.utc_date(t.due_date),
        )[:5]
        return {
            "stats": aggregators.overview_stats(projects, tasks, today),
            "projects": aggregators.project_summaries(projects[:3], project_tasks),
            "upcoming": [
                dict(t.to_dict(), due=aggregators.classify_due_date(t.due_date, today).to_dict())
                for t in upcoming
            ],
        }


# ── Projects ─────────────────────────────────────────────────────────────────


class ProjectsView(ViewLoader):
    name = "projects"

    def empty(self):
        return []

    async def fetch(self, ctx: SessionContext, **params):
        projects = await _visible_projects(self.gateway, ctx.identity_id)
        rows = await self.gateway.select_tasks(project_ids=[p.id for p in projects])
        return aggregators.project_summaries(projects, [Task.from_dict(r) for r in rows])

    def filtered(self, status: str = "all") -> List[Dict[str, Any]]:
        if not status or status == "all":
            return list(self.data)
        return [p for p in self.data if p["status"] == status]

    def find(self, project_id: str) -> Optional[Dict[str, Any]]:
        return next((p for p in self.data if p["id"] == project_id), None)

    def prepend(self, project: Project) -> None:
        summary = aggregators.project_summaries([project], [])[0]
        self.data = [summary] + [p for p in self.data if p["id"] != project.id]

    def remove(self, project_id: str) -> None:
        self.data = [p for p in self.data if p["id"] != project_id]


# ── Tasks ────────────────────────────────────────────────────────────────────


class TasksView(ViewLoader):
    name = "tasks"

    def empty(self):
        return []

    async def fetch(self, ctx: SessionContext, **params):
        return await _my_tasks(self.gateway, ctx.identity_id)

    def visible(self, mode: TaskFilter = TaskFilter.ALL, today: Optional[date] = None) -> List[Task]:
        return aggregators.filter_tasks(self.data, mode, today or aggregators.utc_today())

    def rows(self, mode: TaskFilter = TaskFilter.ALL, today: Optional[date] = None) -> List[Dict[str, Any]]:
        """Filtered tasks with their due-date label and color."""
        today = today or aggregators.utc_today()
        return [
            dict(t.to_dict(), due=aggregators.classify_due_date(t.due_date, today).to_dict())
            for t in self.visible(mode, today)
        ]

    def find(self, task_id: str) -> Optional[Task]:
        return next((t for t in self.data if t.id == task_id), None)

    def prepend(self, task: Task) -> None:
        self.data = [task] + [t for t in self.data if t.id != task.id]

    def remove(self, task_id: str) -> None:
        self.data = [t for t in self.data if t.id != task_id]


# ── Calendar ─────────────────────────────────────────────────────────────────


class CalendarView(ViewLoader):
    """Tasks due in the visible month, plus the clicked day's detail list."""

    name = "calendar"

    def __init__(self, gateway: DataGateway, notifier: Notifier):
        super().__init__(gateway, notifier)
        self.month: Optional[date] = None
        self.selected_day: Optional[date] = None
        self.selected_tasks: List[Task] = []

    def empty(self):
        return []

    async def fetch(self, ctx: SessionContext, month: Optional[date] = None, **params):
        month = month or aggregators.utc_today()
        first, last = aggregators.month_range(month)
        rows = await self.gateway.select_tasks(
            eq={"assignee_id": ctx.identity_id},
            gte={"due_date": datetime.combine(first, time.min, tzinfo=timezone.utc)},
            lte={"due_date": datetime.combine(last, time.max, tzinfo=timezone.utc)},
            order_by="due_date",
        )
        self.month = first
        return [Task.from_dict(r) for r in rows]

    def tasks_for_day(self, day: date) -> List[Task]:
        return aggregators.tasks_for_day(self.data, day)

    def is_busy(self, day: date) -> bool:
        return day in aggregators.busy_days(self.data)

    def busy_days(self) -> List[date]:
        return sorted(aggregators.busy_days(self.data))

    def select_day(self, day: date) -> List[Task]:
        self.selected_day = day
        self.selected_tasks = self.tasks_for_day(day)
        return self.selected_tasks


# ── Analytics ────────────────────────────────────────────────────────────────


@dataclass
class AnalyticsData:
    tasks_by_status: List[Dict] = field(default_factory=list)
    tasks_by_priority: List[Dict] = field(default_factory=list)
    project_progress: List[Dict] = field(default_factory=list)
    tasks_trend: List[Dict] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[Dict]]:
        return {
            "tasks_by_status": self.tasks_by_status,
            "tasks_by_priority": self.tasks_by_priority,
            "project_progress": self.project_progress,
            "tasks_trend": self.tasks_trend,
        }


class AnalyticsView(ViewLoader):
    name = "analytics"

    def empty(self):
        return AnalyticsData()

    async def fetch(self, ctx: SessionContext, days: int = 30, now: Optional[datetime] = None, **params):
        if days not in ANALYTICS_RANGES:
            raise ValidationError(
                f"Unsupported range {days}. Allowed: {', '.join(map(str, ANALYTICS_RANGES))}"
            )
        start, end = aggregators.trend_window(days, now)
        rows = await self.gateway.select_tasks(
            eq={"assignee_id": ctx.identity_id},
            gte={"created_at": datetime.combine(start, time.min, tzinfo=timezone.utc)},
            lte={"created_at": datetime.combine(end, time.max, tzinfo=timezone.utc)},
        )
        tasks = [Task.from_dict(r) for r in rows]
        return AnalyticsData(
            tasks_by_status=aggregators.status_histogram(tasks),
            tasks_by_priority=aggregators.priority_histogram(tasks),
            project_progress=aggregators.project_progress(tasks),
            tasks_trend=aggregators.daily_trend(tasks, start, end),
        )
