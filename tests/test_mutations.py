"""
Tests for project and task mutation handlers.
"""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from pkg.taskboard.gateway import GatewayError
from pkg.taskboard.mutations import (
    ConfirmationRequiredError,
    MutationInProgressError,
    NoBoardFoundError,
    ProjectMutations,
    TaskMutations,
    changed_fields,
    select_default_board,
)
from pkg.taskboard.notifications import NotificationKind
from pkg.taskboard.schema import Project, ProjectStatus, TaskPriority, TaskStatus, ValidationError
from pkg.taskboard.views import ProjectsView, TasksView


@pytest.fixture
def projects(gateway, notifier):
    return ProjectMutations(gateway, notifier, ProjectsView(gateway, notifier))


@pytest.fixture
def tasks(gateway, notifier):
    return TaskMutations(gateway, notifier, TasksView(gateway, notifier))


def test_changed_fields():
    project = Project(id="p1", title="Site", owner_id="u1", status=ProjectStatus.IN_PROGRESS)
    changes = changed_fields(project, {"title": "Site", "status": ProjectStatus.ON_HOLD, "description": ""})
    assert changes == {"status": ProjectStatus.ON_HOLD}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Projects
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCreateProject:

    def test_empty_title_never_reaches_gateway(self, projects, gateway, notifier, ctx):
        gateway.insert = AsyncMock()
        with pytest.raises(ValidationError):
            asyncio.run(projects.create(ctx, title="   "))
        gateway.insert.assert_not_awaited()
        assert notifier.messages(NotificationKind.ERROR) == ["Title is required"]

    def test_creates_owner_membership_and_board(self, projects, gateway, notifier, ctx):
        project = asyncio.run(projects.create(ctx, title=" Website ", description="Relaunch"))
        assert project.title == "Website"
        assert project.status == ProjectStatus.NOT_STARTED
        members = asyncio.run(gateway.select("project_members", eq={"project_id": project.id}))
        assert [(m["user_id"], m["role"]) for m in members] == [("user-1", "owner")]
        boards = asyncio.run(gateway.select("boards", eq={"project_id": project.id}))
        assert [(b["title"], b["position"]) for b in boards] == [("To Do", 0)]
        assert projects.view.data[0]["id"] == project.id
        assert projects.create_dialog.saving is False
        assert "Project created successfully!" in notifier.messages(NotificationKind.SUCCESS)

    def test_invalid_status(self, projects, ctx):
        with pytest.raises(ValidationError, match="Invalid ProjectStatus"):
            asyncio.run(projects.create(ctx, title="Site", status="Paused"))

    def test_unknown_field(self, projects, ctx):
        with pytest.raises(ValidationError, match="Unknown project fields: owner_id"):
            asyncio.run(projects.create(ctx, title="Site", owner_id="someone-else"))

    def test_double_submit_blocked(self, projects, ctx):
        projects.create_dialog.saving = True
        with pytest.raises(MutationInProgressError):
            asyncio.run(projects.create(ctx, title="Site"))

    def test_gateway_failure_notifies(self, projects, gateway, notifier, ctx):
        gateway.insert = AsyncMock(side_effect=GatewayError("XX000", "disk I/O error"))
        with pytest.raises(GatewayError):
            asyncio.run(projects.create(ctx, title="Site"))
        assert notifier.messages(NotificationKind.ERROR) == ["Error creating project: disk I/O error"]
        assert projects.create_dialog.saving is False
        assert projects.view.data == []

    def test_board_failure_rolls_back_project(self, projects, gateway, notifier, ctx):
        real_insert = gateway.insert

        async def insert(table, row):
            if table == "boards":
                raise GatewayError("XX000", "disk full")
            return await real_insert(table, row)

        gateway.insert = insert
        with pytest.raises(GatewayError):
            asyncio.run(projects.create(ctx, title="Site"))
        assert asyncio.run(gateway.select("projects")) == []
        assert asyncio.run(gateway.select("project_members")) == []
        assert notifier.messages(NotificationKind.ERROR) == ["Error creating project: disk full"]



class TestUpdateProject:

    def test_only_changed_fields_sent(self, projects, seed, ctx):
        project, _ = seed.project("user-1", "Site")
        with patch.object(projects.gateway, "update", new_callable=AsyncMock) as update:
            asyncio.run(projects.update(ctx, project["id"], title="Site"))
        update.assert_not_awaited()

    def test_update(self, projects, seed, notifier, ctx):
        project, _ = seed.project("user-1", "Site")
        updated = asyncio.run(projects.update(
            ctx, project["id"], status="In Progress", deadline="2026-12-01T00:00:00Z"
        ))
        assert updated.status == ProjectStatus.IN_PROGRESS
        assert updated.deadline == datetime(2026, 12, 1, tzinfo=timezone.utc)
        assert updated.title == "Site"
        assert "Project updated successfully!" in notifier.messages()

    def test_other_owner_reads_as_missing(self, projects, seed, notifier, ctx):
        project, _ = seed.project("user-2", "Theirs")
        with pytest.raises(GatewayError) as exc:
            asyncio.run(projects.update(ctx, project["id"], title="Mine now"))
        assert exc.value.is_not_found
        assert notifier.messages(NotificationKind.ERROR)[0].startswith("Error updating project:")

    def test_bad_deadline(self, projects, seed, ctx):
        project, _ = seed.project("user-1", "Site")
        with pytest.raises(ValidationError, match="Invalid deadline"):
            asyncio.run(projects.update(ctx, project["id"], deadline="someday"))


class TestDeleteProject:

    def test_requires_confirmation(self, projects, seed, ctx):
        project, _ = seed.project("user-1")
        with pytest.raises(ConfirmationRequiredError):
            asyncio.run(projects.confirm_delete(ctx, project["id"]))

    def test_confirmation_is_per_record(self, projects, seed, ctx):
        first, _ = seed.project("user-1", "First")
        second, _ = seed.project("user-1", "Second")
        projects.request_delete(first["id"])
        with pytest.raises(ConfirmationRequiredError):
            asyncio.run(projects.confirm_delete(ctx, second["id"]))

    def test_delete_cascades_and_removes_locally(self, projects, gateway, seed, notifier, ctx):
        project, board = seed.project("user-1")
        seed.task(board["id"], "user-1")
        asyncio.run(projects.refresh(ctx))
        projects.request_delete(project["id"])
        asyncio.run(projects.confirm_delete(ctx, project["id"]))
        assert projects.view.data == []
        assert asyncio.run(gateway.select("tasks")) == []
        assert projects.delete_dialog.is_open is False
        assert "Project deleted successfully!" in notifier.messages()

    def test_delete_failure_keeps_record(self, projects, gateway, seed, notifier, ctx):
        project, _ = seed.project("user-1")
        asyncio.run(projects.refresh(ctx))
        projects.request_delete(project["id"])
        gateway.delete = AsyncMock(side_effect=GatewayError("23503", "still referenced"))
        with pytest.raises(GatewayError):
            asyncio.run(projects.confirm_delete(ctx, project["id"]))
        assert projects.view.find(project["id"]) is not None
        assert projects.delete_dialog.saving is False
        assert notifier.messages(NotificationKind.ERROR) == ["Error deleting project: still referenced"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Tasks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCreateTask:

    def test_project_required(self, tasks, notifier, ctx):
        with pytest.raises(ValidationError):
            asyncio.run(tasks.create(ctx, title="Copy"))
        assert notifier.messages(NotificationKind.ERROR) == ["Please select a project"]

    def test_no_board(self, tasks, seed, notifier, ctx):
        project, _ = seed.project("user-1", board=False)
        with pytest.raises(NoBoardFoundError):
            asyncio.run(tasks.create(ctx, title="Copy", project_id=project["id"]))
        assert notifier.messages(NotificationKind.ERROR) == [f"No board found for project {project['id']}"]
        assert asyncio.run(tasks.gateway.select("tasks")) == []

    def test_defaults(self, tasks, seed, ctx):
        project, board = seed.project("user-1")
        seed.task(board["id"], "user-1", "existing")
        task = asyncio.run(tasks.create(ctx, title="Copy", project_id=project["id"]))
        assert task.board_id == board["id"]
        assert task.status == TaskStatus.TODO
        assert task.priority == TaskPriority.MEDIUM
        assert task.assignee_id == "user-1"
        assert task.created_by == "user-1"
        assert task.position == 1
        assert task.project_title == "Website"
        assert tasks.view.find(task.id) is not None

    def test_lowest_position_board(self, seed, gateway):
        project, first = seed.project("user-1")
        seed.board(project["id"], "Done", position=5)
        board = asyncio.run(select_default_board(gateway, project["id"]))
        assert board.id == first["id"]

    def test_explicit_fields(self, tasks, seed, ctx):
        project, _ = seed.project("user-1")
        task = asyncio.run(tasks.create(
            ctx, title="Ship", project_id=project["id"], priority="Urgent",
            status="In Progress", due_date="2026-10-20", assignee_id="user-9",
        ))
        assert task.priority == TaskPriority.URGENT
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.assignee_id == "user-9"
        assert task.due_date == datetime(2026, 10, 20, tzinfo=timezone.utc)


class TestUpdateTask:

    def test_status_change(self, tasks, seed, notifier, ctx):
        _, board = seed.project("user-1")
        row = seed.task(board["id"], "user-1")
        task = asyncio.run(tasks.update(ctx, row["id"], status="Completed"))
        assert task.status == TaskStatus.COMPLETED
        assert "Task updated successfully!" in notifier.messages()

    def test_invalid_priority(self, tasks, seed, ctx):
        _, board = seed.project("user-1")
        row = seed.task(board["id"], "user-1")
        with pytest.raises(ValidationError, match="Invalid TaskPriority"):
            asyncio.run(tasks.update(ctx, row["id"], priority="Whenever"))

    def test_project_cannot_change(self, tasks, seed, notifier, ctx):
        _, board = seed.project("user-1")
        row = seed.task(board["id"], "user-1")
        other, _ = seed.project("user-1", "Other")
        with pytest.raises(ValidationError, match="cannot be moved"):
            asyncio.run(tasks.update(ctx, row["id"], project_id=other["id"]))
        assert notifier.messages(NotificationKind.ERROR) == ["A task cannot be moved to another project"]


    def test_invisible_task(self, tasks, seed, ctx):
        _, board = seed.project("user-2")
        row = seed.task(board["id"], "user-2")
        with pytest.raises(GatewayError) as exc:
            asyncio.run(tasks.update(ctx, row["id"], title="Hijack"))
        assert exc.value.is_not_found


class TestDeleteTask:

    def test_confirmed_delete(self, tasks, gateway, seed, ctx):
        _, board = seed.project("user-1")
        row = seed.task(board["id"], "user-1")
        asyncio.run(tasks.refresh(ctx))
        tasks.request_delete(row["id"])
        asyncio.run(tasks.confirm_delete(ctx, row["id"]))
        assert tasks.view.find(row["id"]) is None
        assert asyncio.run(gateway.select("tasks")) == []

    def test_unconfirmed(self, tasks, seed, ctx):
        _, board = seed.project("user-1")
        row = seed.task(board["id"], "user-1")
        with pytest.raises(ConfirmationRequiredError):
            asyncio.run(tasks.confirm_delete(ctx, row["id"]))
