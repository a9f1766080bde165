# tests/conftest.py
"""
Pytest configuration and fixtures.

SQL store tests run against an in-memory SQLite database, so no external
database is needed. Tests using the SQL fixtures are marked requires_db
automatically; run "pytest -m 'not requires_db'" to skip them.
"""

from contextlib import contextmanager

import pytest
from sqlalchemy.orm import sessionmaker

from delivery.db.engine import build_engine
from delivery.fulfillment.progress import ProgressLog
from delivery.fulfillment.context import GoalInvocation
from delivery.fulfillment.project import ProjectLoader
from delivery.goals.models import (
    Fulfillment,
    FulfillmentMethod,
    Goal,
    GoalKey,
    GoalState,
    PushRef,
    RepoRef,
)
from delivery.goals.sql_store import SqlGoalStore
from delivery.goals.store import InMemoryGoalStore
from delivery.settings import Settings

GOAL_SET_ID = "61d3a0b2-5c8e-4f57-9a0e-1c2b3d4e5f60"
SHA = "9f1c2e7a4b5d6c8e0f1a2b3c4d5e6f7a8b9c0d1e"


def make_goal(
    unique_name: str,
    state: GoalState = GoalState.PLANNED,
    pre_conditions=(),
    method: FulfillmentMethod = FulfillmentMethod.SDM,
    fulfillment: str = None,
    goal_set_id: str = GOAL_SET_ID,
    environment: str = "0-code",
    **kwargs,
) -> Goal:
    """
    Build a goal record.

    pre_conditions may be unique names (same environment) or GoalKeys.
    """
    name = unique_name.split("#")[0]
    keys = tuple(
        p if isinstance(p, GoalKey) else GoalKey(environment=environment, unique_name=p, name=p)
        for p in pre_conditions
    )
    return Goal(
        unique_name=unique_name,
        name=kwargs.pop("name", name),
        environment=environment,
        goal_set_id=goal_set_id,
        goal_set="push",
        state=state,
        push=PushRef(
            sha=SHA,
            branch="main",
            repo=RepoRef(owner="atomist", name="sample-app", provider_id="github"),
            version="1.0.0",
        ),
        fulfillment=Fulfillment(method=method, name=fulfillment or name, registration="goal-delivery"),
        pre_conditions=keys,
        **kwargs,
    )


class FakeProjectLoader(ProjectLoader):
    """Serves a fixed directory and records which goals were loaded."""

    def __init__(self, path: str):
        self.path = path
        self.loaded = []

    @contextmanager
    def load(self, goal: Goal):
        self.loaded.append(goal.unique_name)
        yield self.path


@pytest.fixture
def goal_factory():
    return make_goal


@pytest.fixture
def settings() -> Settings:
    """Settings of a plain (non-isolated) orchestrator."""
    return Settings(
        registration_name="goal-delivery",
        registration_version="0.1.0",
        signing_enabled=False,
        isolated_goal=False,
        isolated_goal_init=False,
        goal_set_id=None,
        goal_unique_name=None,
        goal_scheduler="",
        workspace_id="T29E48P34",
        workspace_name="atomist-community",
        pod_name="goal-delivery-6d8f9c-abcde",
        pod_namespace="sdm",
        cache_enabled=False,
        log_json=False,
    )


@pytest.fixture
def store() -> InMemoryGoalStore:
    return InMemoryGoalStore()


@pytest.fixture
def project_dir(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    (path / "README.md").write_text("# sample-app\n")
    return str(path)


@pytest.fixture
def project_loader(project_dir) -> FakeProjectLoader:
    return FakeProjectLoader(project_dir)


@pytest.fixture
def invocation_factory(settings, project_dir):
    """Build GoalInvocations for executor level tests."""

    def factory(goal: Goal, project: str = None, invocation_settings: Settings = None) -> GoalInvocation:
        return GoalInvocation(
            goal=goal,
            project_dir=project or project_dir,
            progress_log=ProgressLog(goal.unique_name, goal.goal_set_id),
            settings=invocation_settings or settings,
        )

    return factory


@pytest.fixture
def engine():
    """In-memory SQLite engine shared by every session of a test."""
    eng = build_engine("sqlite://")
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def sql_store(session_factory) -> SqlGoalStore:
    return SqlGoalStore(session_factory=session_factory)


# ============================================================
# AUTO-MARKER FOR DATABASE TESTS
# ============================================================
# Automatically apply @pytest.mark.requires_db to tests that use
# database fixtures.

DB_FIXTURES = {"engine", "session_factory", "sql_store"}


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests that use database fixtures."""
    requires_db_marker = pytest.mark.requires_db

    for item in items:
        if hasattr(item, "fixturenames"):
            if any(fixture in DB_FIXTURES for fixture in item.fixturenames):
                if not any(mark.name == "requires_db" for mark in item.iter_markers()):
                    item.add_marker(requires_db_marker)
