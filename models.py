from flask_sqlalchemy import SQLAlchemy

from cascade import FINISH_TO_START
from schedule_dates import day_span

db = SQLAlchemy()


# ============================================================
# MODELS
# ============================================================

class Schedule(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=True)
    name = db.Column(db.String(200), default='')
    start_date = db.Column(db.String(10), default='')
    target_end_date = db.Column(db.String(10), default='')
    actual_end_date = db.Column(db.String(10), default='')
    status = db.Column(db.String(20), default='draft')  # draft | active | completed | on_hold
    dates_from_tasks = db.Column(db.Boolean, default=False)

    def to_dict(self):
        return {
            'id': self.id, 'project_id': self.project_id, 'name': self.name,
            'start_date': self.start_date, 'target_end_date': self.target_end_date,
            'actual_end_date': self.actual_end_date or '',
            'status': self.status,
            'dates_from_tasks': self.dates_from_tasks or False,
        }


class ScheduleTask(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    schedule_id = db.Column(db.Integer, db.ForeignKey('schedule.id'), nullable=False)
    name = db.Column(db.String(200), default='')
    description = db.Column(db.Text, default='')
    start_date = db.Column(db.String(10), nullable=False)
    end_date = db.Column(db.String(10), nullable=False)
    duration_days = db.Column(db.Integer, default=0)
    progress = db.Column(db.Integer, default=0)
    status = db.Column(db.String(20), default='not_started')  # not_started | in_progress | completed | on_hold
    parent_task_id = db.Column(db.Integer, nullable=True)
    sort_order = db.Column(db.Integer, default=0)
    contractor_id = db.Column(db.Integer, nullable=True)
    budget_category_id = db.Column(db.Integer, nullable=True)
    is_milestone = db.Column(db.Boolean, default=False)

    def sync_duration(self):
        span = day_span(self.start_date, self.end_date)
        if span is not None:
            self.duration_days = span

    def to_dict(self):
        return {
            'id': self.id, 'schedule_id': self.schedule_id, 'name': self.name,
            'description': self.description or '',
            'start_date': self.start_date, 'end_date': self.end_date,
            'duration_days': self.duration_days,
            'progress': self.progress, 'status': self.status,
            'parent_task_id': self.parent_task_id, 'sort_order': self.sort_order,
            'contractor_id': self.contractor_id,
            'budget_category_id': self.budget_category_id,
            'is_milestone': bool(self.is_milestone) if self.is_milestone else False,
        }


class ScheduleDependency(db.Model):
    __table_args__ = (db.UniqueConstraint('source_task_id', 'target_task_id'),)

    id = db.Column(db.Integer, primary_key=True)
    source_task_id = db.Column(db.Integer, db.ForeignKey('schedule_task.id'), nullable=False)
    target_task_id = db.Column(db.Integer, db.ForeignKey('schedule_task.id'), nullable=False)
    dependency_type = db.Column(db.String(20), nullable=False, default=FINISH_TO_START)
    lag_days = db.Column(db.Integer, default=0)

    def to_dict(self):
        return {
            'id': self.id, 'source_task_id': self.source_task_id,
            'target_task_id': self.target_task_id,
            'dependency_type': self.dependency_type, 'lag_days': self.lag_days or 0,
        }


class ScheduleEditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, nullable=False)
    schedule_id = db.Column(db.Integer, nullable=False)
    task_name = db.Column(db.String(200), default='')
    field_changed = db.Column(db.String(50), default='')
    old_value = db.Column(db.String(200), default='')
    new_value = db.Column(db.String(200), default='')
    reason = db.Column(db.Text, default='')
    edited_by = db.Column(db.String(100), default='')
    edited_at = db.Column(db.String(30), default='')

    def to_dict(self):
        return {
            'id': self.id, 'task_id': self.task_id, 'schedule_id': self.schedule_id,
            'task_name': self.task_name, 'field_changed': self.field_changed,
            'old_value': self.old_value, 'new_value': self.new_value,
            'reason': self.reason, 'edited_by': self.edited_by, 'edited_at': self.edited_at,
        }
