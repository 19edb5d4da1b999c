"""
Tests for the record schema: enums, timestamps, and dict conversion.
"""
from datetime import datetime, timezone

import pytest

from pkg.taskboard.schema import (
    PROFILE_DEFAULTS,
    MemberRole,
    Profile,
    Project,
    ProjectMember,
    ProjectStatus,
    Task,
    TaskPriority,
    TaskStatus,
    ThemePreference,
    ValidationError,
    parse_timestamp,
)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Enums
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestLabelledEnums:

    def test_from_str_known_value(self):
        assert TaskStatus.from_str("In Progress") == TaskStatus.IN_PROGRESS
        assert TaskPriority.from_str("Urgent") == TaskPriority.URGENT

    def test_from_str_unknown_falls_back(self):
        assert TaskStatus.from_str("Blocked") == TaskStatus.UNSPECIFIED
        assert ProjectStatus.from_str(None) == ProjectStatus.UNSPECIFIED

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValidationError, match="Allowed: To Do, In Progress"):
            TaskStatus.parse("Done")

    def test_parse_accepts_member(self):
        assert TaskPriority.parse(TaskPriority.HIGH) == TaskPriority.HIGH
        assert ProjectStatus.parse("On Hold") == ProjectStatus.ON_HOLD

    def test_unspecified_stores_null(self):
        assert TaskStatus.UNSPECIFIED.db_value is None
        assert TaskStatus.COMPLETED.db_value == "Completed"

    def test_theme_lenient(self):
        assert ThemePreference.from_str("DARK") == ThemePreference.DARK
        assert ThemePreference.from_str("sepia") == ThemePreference.LIGHT


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Timestamps
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_parse_timestamp_zulu():
    value = parse_timestamp("2026-10-18T10:30:00Z")
    assert value == datetime(2026, 10, 18, 10, 30, tzinfo=timezone.utc)


def test_parse_timestamp_empty():
    assert parse_timestamp("") is None
    assert parse_timestamp(None) is None


def test_parse_timestamp_bad_input():
    with pytest.raises(ValueError):
        parse_timestamp("next tuesday")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Records
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestProfile:

    def test_null_flags_use_defaults(self):
        profile = Profile.from_dict({"id": "u1", "task_reminders": None, "compact_mode": 1})
        assert profile.task_reminders is PROFILE_DEFAULTS["task_reminders"]
        assert profile.compact_mode is True
        assert profile.usage_analytics is False

    def test_display_name(self):
        assert Profile(id="u1", first_name="Ada", last_name="Lovelace").display_name == "Ada Lovelace"
        assert Profile(id="u1", first_name="Ada").display_name == "Ada"

    def test_to_dict_uses_theme_value(self):
        profile = Profile(id="u1", theme_preference=ThemePreference.DARK)
        assert profile.to_dict()["theme_preference"] == "dark"


def test_project_unknown_status_reads_as_unspecified():
    project = Project.from_dict({"id": "p1", "title": "Site", "owner_id": "u1", "status": "Archived"})
    assert project.status == ProjectStatus.UNSPECIFIED
    assert project.to_dict()["status"] == ""


def test_member_role():
    member = ProjectMember.from_dict({"id": "m1", "project_id": "p1", "user_id": "u1", "role": "Owner"})
    assert member.role == MemberRole.OWNER
    assert member.to_dict()["role"] == "owner"
    assert ProjectMember.from_dict({"id": "m2", "project_id": "p1", "user_id": "u2"}).role == MemberRole.MEMBER



class TestTask:

    def test_nested_join(self):
        task = Task.from_dict({
            "id": "t1",
            "board_id": "b1",
            "title": "Write copy",
            "created_by": "u1",
            "status": "Completed",
            "board": {"id": "b1", "title": "To Do", "project": {"id": "p1", "title": "Website"}},
        })
        assert task.status == TaskStatus.COMPLETED
        assert task.project_id == "p1"
        assert task.project_title == "Website"
        assert task.to_dict()["board"]["project"] == {"id": "p1", "title": "Website"}

    def test_missing_project(self):
        task = Task.from_dict({
            "id": "t1", "board_id": "b1", "title": "Orphan", "created_by": "u1",
            "board": {"id": "b1", "title": "", "project": None},
        })
        assert task.project_id is None
        assert "board" not in task.to_dict()

    def test_defaults(self):
        task = Task(id="t1", board_id="b1", title="New", created_by="u1")
        assert task.status == TaskStatus.TODO
        assert task.priority == TaskPriority.MEDIUM
        assert task.due_date is None
