"""
Project and task mutation handlers.

Each handler runs the same protocol:

  1. validate locally; invalid input never reaches the gateway
  2. ``mutate``  - one gateway write, guarded by the dialog's saving flag
  3. ``refresh`` - re-read the view to pick up server-computed fields

Creates merge the new record into the local list before the refresh.
Updates are confirmed by the refresh only. Deletes need a prior
``request_delete`` on the same record and remove it locally on success.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from .gateway import NOT_FOUND, DataGateway, GatewayError, encode_value
from .notifications import Notifier
from .schema import (
    Board,
    MemberRole,
    Project,
    ProjectStatus,
    Task,
    TaskPriority,
    TaskStatus,
    ValidationError,
    parse_timestamp,
)
from .session import SessionContext
from .views import ProjectsView, TasksView

logger = logging.getLogger(__name__)

DEFAULT_BOARD_TITLE = "To Do"


class NoBoardFoundError(Exception):
    """Raised when a task is created for a project that has no board."""

    def __init__(self, project_id: str):
        super().__init__(f"No board found for project {project_id}")
        self.project_id = project_id


class ConfirmationRequiredError(Exception):
    """Raised when a delete was not confirmed for the same record."""
    pass


class MutationInProgressError(Exception):
    """Raised when a dialog is submitted again while still saving."""
    pass


class Dialog:
    """Open/closed state plus the saving flag that blocks double submits."""

    def __init__(self, name: str):
        self.name = name
        self.is_open = False
        self.saving = False
        self.target_id: Optional[str] = None

    def open(self, target_id: Optional[str] = None) -> None:
        self.is_open = True
        self.target_id = target_id

    def close(self) -> None:
        self.is_open = False
        self.target_id = None

    @asynccontextmanager
    async def submitting(self):
        if self.saving:
            raise MutationInProgressError(f"{self.name} is already saving")
        self.saving = True
        try:
            yield self
        finally:
            self.saving = False


def _clean_title(title: Optional[str]) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    return title


def _parse_date(value: Any, name: str) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {name}: {value!r}")


def changed_fields(current, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Only the entries of ``changes`` that differ from the record ``current``."""
    return {
        k: v for k, v in changes.items()
        if encode_value(getattr(current, k, None)) != encode_value(v)
    }


async def select_default_board(gateway: DataGateway, project_id: str) -> Board:
    """Lowest-position board of a project.

    Stand-in policy until tasks can be created on a chosen board.
    """
    rows = await gateway.select(
        "boards", eq={"project_id": project_id}, order_by="position", limit=1
    )
    if not rows:
        raise NoBoardFoundError(project_id)
    return Board.from_dict(rows[0])


class ProjectMutations:
    """Create / update / delete projects for the Projects view."""

    def __init__(self, gateway: DataGateway, notifier: Notifier, view: ProjectsView):
        self.gateway = gateway
        self.notifier = notifier
        self.view = view
        self.create_dialog = Dialog("create project")
        self.edit_dialog = Dialog("edit project")
        self.delete_dialog = Dialog("delete project")

    async def refresh(self, ctx: SessionContext):
        return await self.view.load(ctx)

    @staticmethod
    def validate(fields: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
        cleaned: Dict[str, Any] = {}
        if not partial or "title" in fields:
            cleaned["title"] = _clean_title(fields.get("title"))
        if "description" in fields:
            cleaned["description"] = (fields.get("description") or "").strip()
        if "deadline" in fields:
            cleaned["deadline"] = _parse_date(fields.get("deadline"), "deadline")
        if "status" in fields:
            cleaned["status"] = ProjectStatus.parse(fields.get("status"))
        unknown = set(fields) - {"title", "description", "deadline", "status"}
        if unknown:
            raise ValidationError(f"Unknown project fields: {', '.join(sorted(unknown))}")
        return cleaned

    async def _owned(self, ctx: SessionContext, project_id: str) -> Project:
        # Rows owned by someone else read as missing
        row = await self.gateway.select_one(
            "projects", eq={"id": project_id, "owner_id": ctx.identity_id}
        )
        return Project.from_dict(row)

    async def mutate_create(self, ctx: SessionContext, fields: Dict[str, Any]) -> Project:
        fields.setdefault("status", ProjectStatus.NOT_STARTED)
        row = await self.gateway.insert("projects", dict(fields, owner_id=ctx.identity_id))
        project = Project.from_dict(row)
        try:
            await self.gateway.insert(
                "project_members",
                {"project_id": project.id, "user_id": ctx.identity_id, "role": MemberRole.OWNER},
            )
            await self.gateway.insert(
                "boards", {"project_id": project.id, "title": DEFAULT_BOARD_TITLE, "position": 0}
            )
        except GatewayError as e:
            # Members and boards go with the project through the FK cascade
            logger.warning(f"Rolling back project {project.id}: {e.message}")
            await self.gateway.delete("projects", project.id)
            raise
        return project

    async def create(self, ctx: SessionContext, **fields) -> Project:
        try:
            cleaned = self.validate(fields)
        except ValidationError as e:
            self.notifier.error(str(e))
            raise

        async with self.create_dialog.submitting():
            try:
                project = await self.mutate_create(ctx, cleaned)
            except GatewayError as e:
                self.notifier.error(f"Error creating project: {e.message}")
                raise

        self.view.prepend(project)
        self.create_dialog.close()
        self.notifier.success("Project created successfully!")
        await self.refresh(ctx)
        return project

    async def update(self, ctx: SessionContext, project_id: str, **fields) -> Project:
        try:
            cleaned = self.validate(fields, partial=True)
        except ValidationError as e:
            self.notifier.error(str(e))
            raise

        async with self.edit_dialog.submitting():
            try:
                current = await self._owned(ctx, project_id)
                changes = changed_fields(current, cleaned)
                if changes:
                    row = await self.gateway.update("projects", project_id, changes)
                    current = Project.from_dict(row)
            except GatewayError as e:
                self.notifier.error(f"Error updating project: {e.message}")
                raise

        self.edit_dialog.close()
        self.notifier.success("Project updated successfully!")
        await self.refresh(ctx)
        return current

    def request_delete(self, project_id: str) -> None:
        self.delete_dialog.open(project_id)

    async def confirm_delete(self, ctx: SessionContext, project_id: str) -> None:
        if not self.delete_dialog.is_open or self.delete_dialog.target_id != project_id:
            raise ConfirmationRequiredError(f"Confirm deletion of project {project_id} first")

        async with self.delete_dialog.submitting():
            try:
                await self._owned(ctx, project_id)
                await self.gateway.delete("projects", project_id)
            except GatewayError as e:
                self.notifier.error(f"Error deleting project: {e.message}")
                raise

        self.view.remove(project_id)
        self.delete_dialog.close()
        self.notifier.success("Project deleted successfully!")


class TaskMutations:
    """Create / update / delete tasks for the Tasks view."""

    FIELDS = {"title", "description", "status", "priority", "due_date", "assignee_id", "project_id"}

    def __init__(self, gateway: DataGateway, notifier: Notifier, view: TasksView):
        self.gateway = gateway
        self.notifier = notifier
        self.view = view
        self.create_dialog = Dialog("create task")
        self.edit_dialog = Dialog("edit task")
        self.delete_dialog = Dialog("delete task")

    async def refresh(self, ctx: SessionContext):
        return await self.view.load(ctx)

    @classmethod
    def validate(cls, fields: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
        unknown = set(fields) - cls.FIELDS
        if unknown:
            raise ValidationError(f"Unknown task fields: {', '.join(sorted(unknown))}")
        cleaned: Dict[str, Any] = {}
        if not partial or "title" in fields:
            cleaned["title"] = _clean_title(fields.get("title"))
        if partial and "project_id" in fields:
            raise ValidationError("A task cannot be moved to another project")
        if not partial:
            if not fields.get("project_id"):
                raise ValidationError("Please select a project")
            cleaned["project_id"] = fields["project_id"]
        if "description" in fields:
            cleaned["description"] = (fields.get("description") or "").strip()
        if "status" in fields:
            cleaned["status"] = TaskStatus.parse(fields.get("status"))
        if "priority" in fields:
            cleaned["priority"] = TaskPriority.parse(fields.get("priority"))
        if "due_date" in fields:
            cleaned["due_date"] = _parse_date(fields.get("due_date"), "due date")
        if "assignee_id" in fields:
            cleaned["assignee_id"] = fields.get("assignee_id") or None
        return cleaned

    async def mutate_create(self, ctx: SessionContext, fields: Dict[str, Any]) -> Task:
        project_id = fields.pop("project_id")
        board = await select_default_board(self.gateway, project_id)
        siblings = await self.gateway.select("tasks", eq={"board_id": board.id})
        row = dict(fields)
        row.setdefault("status", TaskStatus.TODO)
        row.setdefault("priority", TaskPriority.MEDIUM)
        row.setdefault("assignee_id", ctx.identity_id)
        row.update(board_id=board.id, created_by=ctx.identity_id, position=len(siblings))
        inserted = await self.gateway.insert("tasks", row)
        stored = await self.gateway.select_tasks(eq={"id": inserted["id"]})
        return Task.from_dict(stored[0])

    async def create(self, ctx: SessionContext, **fields) -> Task:
        try:
            cleaned = self.validate(fields)
        except ValidationError as e:
            self.notifier.error(str(e))
            raise

        async with self.create_dialog.submitting():
            try:
                task = await self.mutate_create(ctx, cleaned)
            except NoBoardFoundError as e:
                self.notifier.error(str(e))
                raise
            except GatewayError as e:
                self.notifier.error(f"Error creating task: {e.message}")
                raise

        self.view.prepend(task)
        self.create_dialog.close()
        self.notifier.success("Task created successfully!")
        await self.refresh(ctx)
        return task

    async def _visible(self, ctx: SessionContext, task_id: str) -> Task:
        rows = await self.gateway.select_tasks(
            eq={"id": task_id},
            any_eq={"assignee_id": ctx.identity_id, "created_by": ctx.identity_id},
        )
        if not rows:
            raise GatewayError(NOT_FOUND, f"No tasks row with id {task_id}")
        return Task.from_dict(rows[0])

    async def update(self, ctx: SessionContext, task_id: str, **fields) -> Task:
        try:
            cleaned = self.validate(fields, partial=True)
        except ValidationError as e:
            self.notifier.error(str(e))
            raise

        async with self.edit_dialog.submitting():
            try:
                current = await self._visible(ctx, task_id)
                changes = changed_fields(current, cleaned)
                if changes:
                    await self.gateway.update("tasks", task_id, changes)
                    current = await self._visible(ctx, task_id)
            except GatewayError as e:
                self.notifier.error(f"Error updating task: {e.message}")
                raise

        self.edit_dialog.close()
        self.notifier.success("Task updated successfully!")
        await self.refresh(ctx)
        return current

    def request_delete(self, task_id: str) -> None:
        self.delete_dialog.open(task_id)

    async def confirm_delete(self, ctx: SessionContext, task_id: str) -> None:
        if not self.delete_dialog.is_open or self.delete_dialog.target_id != task_id:
            raise ConfirmationRequiredError(f"Confirm deletion of task {task_id} first")

        async with self.delete_dialog.submitting():
            try:
                await self._visible(ctx, task_id)
                await self.gateway.delete("tasks", task_id)
            except GatewayError as e:
                self.notifier.error(f"Error deleting task: {e.message}")
                raise

        self.view.remove(task_id)
        self.delete_dialog.close()
        self.notifier.success("Task deleted successfully!")

