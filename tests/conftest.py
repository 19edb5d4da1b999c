"""Shared test fixtures for the taskboard tests."""

import asyncio
import sys
from pathlib import Path

import pytest

# Ensure the repo root (pkg/, taskboard_server.py) is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from pkg.taskboard.gateway import DataGateway
from pkg.taskboard.identity import IdentityProvider
from pkg.taskboard.notifications import Notifier
from pkg.taskboard.session import SessionContext


class Seeder:
    """Writes fixture rows straight through the gateway."""

    def __init__(self, gateway: DataGateway):
        self.gateway = gateway

    def project(self, owner_id, title="Website", board=True, **extra):
        async def go():
            project = await self.gateway.insert(
                "projects", dict({"title": title, "owner_id": owner_id}, **extra)
            )
            board_row = None
            if board:
                board_row = await self.gateway.insert(
                    "boards", {"project_id": project["id"], "title": "To Do", "position": 0}
                )
            return project, board_row
        return asyncio.run(go())

    def board(self, project_id, title="Backlog", position=0):
        return asyncio.run(self.gateway.insert(
            "boards", {"project_id": project_id, "title": title, "position": position}
        ))

    def member(self, project_id, user_id, role="member"):
        return asyncio.run(self.gateway.insert(
            "project_members", {"project_id": project_id, "user_id": user_id, "role": role}
        ))

    def task(self, board_id, created_by, title="Task", **extra):
        row = {"board_id": board_id, "title": title, "created_by": created_by}
        row.setdefault("assignee_id", created_by)
        row.update(extra)
        return asyncio.run(self.gateway.insert("tasks", row))


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "taskboard.db")


@pytest.fixture
def gateway(db_path):
    return DataGateway(db_path)


@pytest.fixture
def provider(db_path):
    return IdentityProvider(db_path)


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def seed(gateway):
    return Seeder(gateway)


@pytest.fixture
def ctx():
    return SessionContext(identity_id="user-1", token="token-1")
