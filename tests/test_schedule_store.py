"""Tests for the SQLAlchemy store."""

from datetime import date

import pytest

from cascade import StoreError, TaskDateUpdate
from models import Schedule, ScheduleDependency, ScheduleEditLog, ScheduleTask, db
from schedule_store import SqlScheduleStore


@pytest.fixture
def seeded(app):
    s1, s2 = Schedule(name='Lot 1'), Schedule(name='Lot 2')
    db.session.add_all([s1, s2])
    db.session.flush()
    a = ScheduleTask(schedule_id=s1.id, name='Framing', start_date='2024-01-01', end_date='2024-01-05', duration_days=4)
    b = ScheduleTask(schedule_id=s1.id, name='Roofing', start_date='2024-01-10', end_date='2024-01-12', duration_days=2)
    c = ScheduleTask(schedule_id=s2.id, name='Grading', start_date='2024-02-01', end_date='2024-02-03', duration_days=2)
    db.session.add_all([a, b, c])
    db.session.flush()
    db.session.add(ScheduleDependency(source_task_id=a.id, target_task_id=b.id, lag_days=1))
    db.session.commit()
    return {'s1': s1.id, 's2': s2.id, 'a': a.id, 'b': b.id, 'c': c.id}


def test_list_tasks(seeded):
    records = SqlScheduleStore().list_tasks(seeded['s1'])
    by_id = {r.id: r for r in records}
    assert set(by_id) == {seeded['a'], seeded['b']}
    assert by_id[seeded['a']].start_date == date(2024, 1, 1)
    assert by_id[seeded['a']].duration == 4


def test_list_tasks_skips_undated(seeded):
    db.session.add(ScheduleTask(schedule_id=seeded['s1'], name='TBD', start_date='', end_date=''))
    db.session.commit()
    assert len(SqlScheduleStore().list_tasks(seeded['s1'])) == 2


def test_list_dependencies_scoped(seeded):
    edges = SqlScheduleStore().list_dependencies(seeded['s1'])
    assert len(edges) == 1
    assert edges[0].source_task_id == seeded['a']
    assert edges[0].dependency_type == 'finish_to_start'
    assert edges[0].lag_days == 1
    assert SqlScheduleStore().list_dependencies(seeded['s2']) == []


def test_batch_update_writes_dates_and_log(seeded):
    store = SqlScheduleStore(reason='Cascaded from task 1', edited_by='cascade')
    store.update_task_dates_batch([
        TaskDateUpdate(seeded['b'], date(2024, 1, 9), date(2024, 1, 11)),
        TaskDateUpdate(seeded['c'], date(2024, 2, 5), date(2024, 2, 7)),
    ])

    b = db.session.get(ScheduleTask, seeded['b'])
    assert (b.start_date, b.end_date, b.duration_days) == ('2024-01-09', '2024-01-11', 2)
    logs = ScheduleEditLog.query.filter_by(task_id=seeded['b']).all()
    assert {l.field_changed for l in logs} == {'start_date', 'end_date'}
    assert all(l.reason == 'Cascaded from task 1' for l in logs)


def test_batch_update_is_all_or_nothing(seeded):
    with pytest.raises(StoreError):
        SqlScheduleStore().update_task_dates_batch([
            TaskDateUpdate(seeded['b'], date(2024, 1, 9), date(2024, 1, 11)),
            TaskDateUpdate(9999, date(2024, 1, 9), date(2024, 1, 11)),
        ])
    db.session.rollback()
    assert db.session.get(ScheduleTask, seeded['b']).start_date == '2024-01-10'


def test_single_update(seeded):
    store = SqlScheduleStore()
    store.update_task_dates(seeded['a'], date(2024, 1, 2), date(2024, 1, 6))
    a = db.session.get(ScheduleTask, seeded['a'])
    assert (a.start_date, a.end_date, a.duration_days) == ('2024-01-02', '2024-01-06', 4)

    with pytest.raises(StoreError):
        store.update_task_dates(9999, date(2024, 1, 2), date(2024, 1, 6))
