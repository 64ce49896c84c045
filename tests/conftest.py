"""Shared fixtures: a fresh SQLite-backed engine per test and a controllable clock."""

from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

# Cheap argon2 parameters BEFORE importing quorum so module-level hashers pick them up.
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from quorum.db import create_db_engine
from quorum.services import Services, build_services
from tests.helpers import PASSWORD


class MutableClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def services(tmp_path: Path, clock: MutableClock) -> Services:
    engine = create_db_engine(f"sqlite:///{tmp_path / 'quorum.db'}")
    svc = build_services(engine, clock=clock)
    yield svc
    engine.dispose()


@pytest.fixture
def make_user(services: Services) -> Callable[..., dict]:
    """Register a user with the shared test password."""

    def _make(username: str, password: str = PASSWORD) -> dict:
        return services.accounts.register(username, password, display_name=username.title())

    return _make


@pytest.fixture
def make_project(services: Services) -> Callable[..., dict]:
    """Create a project owned by ``admin`` with the given editors already active."""

    def _make(name: str, admin: dict, members: list[dict] = (), role: str = "editor") -> dict:
        project = services.registry.create_project(name, admin["id"])
        for m in members:
            services.registry.add_member(project["id"], m["id"], role, admin["id"])
        return project

    return _make
