"""
Pytest configuration and fixtures for all tests.

This file ensures the project root is in the Python path
so that imports work correctly for all test modules.
"""

import os
import sys
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

# Add project root to Python path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

os.environ.setdefault("DATABASE_URL", "sqlite://")

# Import pytest for fixtures
import pytest
from sqlalchemy.orm import sessionmaker

from database import crud
from database.connection import create_db_engine, init_db
from src.conversation.access import AccessContext
from src.conversation.entity_resolver import EntityResolver
from src.conversation.task_query import TaskQueryBuilder


@pytest.fixture
def project_root_path():
    """Return the project root path."""
    return project_root


@pytest.fixture
def db_session():
    """Fresh in-memory database per test."""
    engine = create_db_engine("sqlite://")
    init_db(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def seed(db_session):
    """
    Project "Apollo" (kanban) owned by Olivia with members Alice and Bob.

    Tasks, in creation order:
        1 Fix login bug    todo        high    Alice  due 3 days ago
        2 Write docs       inprogress  medium  Bob    due yesterday
        3 Release notes    done        low     Alice  due 5 days ago
        4 Design review    review      urgent  -      due in 7 days, milestone Beta Launch
        5 Setup CI         todo        medium  -      no due date
    Eve is a user who is not a member of the project.
    """
    now = datetime.now()
    owner = crud.create_user(db_session, "olivia@example.com", "Olivia Owner")
    alice = crud.create_user(db_session, "alice@example.com", "Alice Smith")
    bob = crud.create_user(db_session, "bob@example.com", "Bob Jones")
    eve = crud.create_user(db_session, "eve@example.com", "Eve Outsider")

    project = crud.create_project(db_session, "Apollo", created_by=owner.id, description="Moon shot")
    crud.add_project_member(db_session, project.id, alice.id)
    crud.add_project_member(db_session, project.id, bob.id)
    milestone = crud.create_milestone(db_session, project.id, "Beta Launch", due_date=now + timedelta(days=14))

    tasks = [
        crud.create_task(db_session, project.id, "Fix login bug", description="Users can't sign in",
                         status="todo", priority="high", end_date=now - timedelta(days=3),
                         creator_id=owner.id, assignee_id=alice.id),
        crud.create_task(db_session, project.id, "Write docs", status="inprogress", priority="medium",
                         end_date=now - timedelta(days=1), creator_id=alice.id, assignee_id=bob.id),
        crud.create_task(db_session, project.id, "Release notes", status="done", priority="low",
                         end_date=now - timedelta(days=5), creator_id=owner.id, assignee_id=alice.id),
        crud.create_task(db_session, project.id, "Design review", status="review", priority="urgent",
                         end_date=now + timedelta(days=7), creator_id=bob.id, milestone_id=milestone.id),
        crud.create_task(db_session, project.id, "Setup CI", status="todo", priority="medium",
                         creator_id=owner.id),
    ]

    return SimpleNamespace(
        db=db_session,
        owner=owner,
        alice=alice,
        bob=bob,
        eve=eve,
        project=project,
        milestone=milestone,
        tasks=tasks,
    )


@pytest.fixture
def resolver(seed):
    """Resolver acting as the project owner."""
    return EntityResolver(AccessContext(seed.db, seed.owner.id))


@pytest.fixture
def queries(resolver):
    return TaskQueryBuilder(resolver)
