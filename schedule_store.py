"""SQLAlchemy-backed store the cascade engine reads from and writes to."""

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from cascade import DependencyEdge, StoreError, TaskRecord
from models import ScheduleDependency, ScheduleEditLog, ScheduleTask, db
from schedule_dates import fmt, to_date

logger = logging.getLogger(__name__)


class SqlScheduleStore:
    """
    Reads tasks and dependency edges for one schedule and writes cascaded
    dates back, leaving an edit-log row for every field it moves.
    """

    def __init__(self, reason='', edited_by='cascade'):
        self.reason = reason
        self.edited_by = edited_by

    def list_tasks(self, schedule_id):
        try:
            rows = ScheduleTask.query.filter_by(schedule_id=schedule_id).all()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StoreError(f'Failed to load tasks: {e}') from e

        records = []
        for t in rows:
            start, end = to_date(t.start_date), to_date(t.end_date)
            if not start or not end:
                logger.warning(f'Task {t.id} has no usable dates, leaving it out of the cascade')
                continue
            records.append(TaskRecord(
                id=t.id, schedule_id=t.schedule_id,
                start_date=start, end_date=end,
                duration_days=t.duration_days,
            ))
        return records

    def list_dependencies(self, schedule_id):
        try:
            rows = (
                ScheduleDependency.query
                .join(ScheduleTask, ScheduleDependency.source_task_id == ScheduleTask.id)
                .filter(ScheduleTask.schedule_id == schedule_id)
                .all()
            )
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StoreError(f'Failed to load dependencies: {e}') from e
        return [
            DependencyEdge(
                source_task_id=d.source_task_id, target_task_id=d.target_task_id,
                dependency_type=d.dependency_type, lag_days=d.lag_days or 0,
            )
            for d in rows
        ]

    def update_task_dates(self, task_id, start_date, end_date):
        try:
            task = db.session.get(ScheduleTask, task_id)
            if task is None:
                raise StoreError(f'Task {task_id} not found')
            self._apply(task, start_date, end_date, datetime.utcnow().isoformat())
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StoreError(f'Failed to update task {task_id}: {e}') from e

    def update_task_dates_batch(self, updates):
        """All updates land in one transaction or none do."""
        ids = [u.task_id for u in updates]
        try:
            tasks = {t.id: t for t in ScheduleTask.query.filter(ScheduleTask.id.in_(ids)).all()}
            missing = [i for i in ids if i not in tasks]
            if missing:
                raise StoreError(f'Tasks not found: {missing}')
            now = datetime.utcnow().isoformat()
            for u in updates:
                self._apply(tasks[u.task_id], u.start_date, u.end_date, now)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StoreError(f'Batch update failed: {e}') from e

    def _apply(self, task, start_date, end_date, now):
        new_values = {'start_date': fmt(start_date), 'end_date': fmt(end_date)}
        for k, v in new_values.items():
            old = getattr(task, k)
            if old == v:
                continue
            db.session.add(ScheduleEditLog(
                task_id=task.id, schedule_id=task.schedule_id, task_name=task.name,
                field_changed=k, old_value=old or '', new_value=v,
                reason=self.reason, edited_by=self.edited_by, edited_at=now,
            ))
            setattr(task, k, v)
        task.sync_duration()
