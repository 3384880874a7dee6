"""Pytest configuration and fixtures for the schedule cascade tests."""

import os
from dataclasses import replace
from datetime import date

import pytest

os.environ['DATABASE_URL'] = 'sqlite://'

from app import app as flask_app  # noqa: E402
from cascade import DependencyEdge, StoreError, TaskRecord  # noqa: E402
from models import db  # noqa: E402


class FakeStore:
    """In-memory store with switchable read and write failures."""

    def __init__(self, tasks, edges):
        self.tasks = {t.id: t for t in tasks}
        self.edges = list(edges)
        self.writes = []
        self.batch_calls = 0
        self.fail_fetch = False
        self.fail_batch = False
        self.fail_ids = set()

    def list_tasks(self, schedule_id):
        if self.fail_fetch:
            raise StoreError('connection reset')
        return [t for t in self.tasks.values() if t.schedule_id == schedule_id]

    def list_dependencies(self, schedule_id):
        if self.fail_fetch:
            raise StoreError('connection reset')
        return list(self.edges)

    def update_task_dates(self, task_id, start_date, end_date):
        if task_id in self.fail_ids:
            raise StoreError(f'write rejected for {task_id}')
        self.tasks[task_id] = replace(
            self.tasks[task_id], start_date=start_date, end_date=end_date,
            duration_days=(end_date - start_date).days,
        )
        self.writes.append(task_id)

    def update_task_dates_batch(self, updates):
        self.batch_calls += 1
        if self.fail_batch or any(u.task_id in self.fail_ids for u in updates):
            raise StoreError('batch rejected')
        for u in updates:
            self.update_task_dates(u.task_id, u.start_date, u.end_date)


class SequentialStore(FakeStore):
    """A store without batch support."""

    update_task_dates_batch = None


@pytest.fixture
def make_task():
    """Build a TaskRecord from ISO date strings."""
    def _make(task_id, start, end, duration=None, schedule_id='s1'):
        s, e = date.fromisoformat(start), date.fromisoformat(end)
        return TaskRecord(
            id=task_id, schedule_id=schedule_id, start_date=s, end_date=e,
            duration_days=(e - s).days if duration is None else duration,
        )
    return _make


@pytest.fixture
def edge():
    def _edge(source, target, dependency_type='finish_to_start', lag_days=0):
        return DependencyEdge(source, target, dependency_type, lag_days)
    return _edge


@pytest.fixture
def make_store():
    def _make(tasks, edges, batch=True):
        return (FakeStore if batch else SequentialStore)(tasks, edges)
    return _make


@pytest.fixture
def app():
    """Flask app bound to a fresh in-memory SQLite database."""
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()
