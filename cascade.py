"""
Schedule dependency cascade.

When a task's dates change, every task that depends on it (directly or
transitively) is rescheduled according to its dependency type and lag,
keeping its own duration. Updated dates are written back through an
injected store:

    store.list_tasks(schedule_id) -> [TaskRecord]
    store.list_dependencies(schedule_id) -> [DependencyEdge]
    store.update_task_dates(task_id, start_date, end_date)
    store.update_task_dates_batch([TaskDateUpdate])   (optional)
"""

import logging
import threading
import uuid
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from schedule_dates import add_days, fmt, to_date

logger = logging.getLogger(__name__)

FINISH_TO_START = 'finish_to_start'
START_TO_START = 'start_to_start'
FINISH_TO_FINISH = 'finish_to_finish'
START_TO_FINISH = 'start_to_finish'

DEPENDENCY_TYPES = (FINISH_TO_START, START_TO_START, FINISH_TO_FINISH, START_TO_FINISH)


class CascadeError(Exception):
    """Base class for cascade failures."""


class DataAccessError(CascadeError):
    """Tasks or dependencies could not be loaded; nothing was written."""


class CascadeLimitExceeded(CascadeError):
    """The run processed more tasks than the schedule holds."""


class InvariantViolation(CascadeError):
    """Recomputed dates would break end >= start or the task's duration."""


class StoreError(Exception):
    """Raised by a store when a read or write fails."""


@dataclass(frozen=True)
class TaskRecord:
    id: Any
    schedule_id: Any
    start_date: date
    end_date: date
    duration_days: Optional[int] = None

    @property
    def duration(self) -> int:
        if self.duration_days is not None:
            return self.duration_days
        return (self.end_date - self.start_date).days


@dataclass(frozen=True)
class DependencyEdge:
    source_task_id: Any
    target_task_id: Any
    dependency_type: str = FINISH_TO_START
    lag_days: int = 0


@dataclass(frozen=True)
class TaskDateUpdate:
    task_id: Any
    start_date: date
    end_date: date

    @property
    def duration_days(self) -> int:
        return (self.end_date - self.start_date).days

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.task_id,
            'start_date': fmt(self.start_date),
            'end_date': fmt(self.end_date),
            'duration_days': self.duration_days,
        }


@dataclass
class CascadeResult:
    """Outcome of one cascade run."""

    cascade_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    schedule_id: Any = None
    source_task_id: Any = None

    # task id -> TaskDateUpdate that was persisted
    updated: dict = field(default_factory=dict)
    # task id -> error message, for writes that did not land
    failed: dict = field(default_factory=dict)
    # task id -> invariant violation, never written
    skipped: dict = field(default_factory=dict)

    cycles_detected: list = field(default_factory=list)
    nodes_processed: int = 0

    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def updated_task_ids(self) -> list:
        return list(self.updated)

    @property
    def partial(self) -> bool:
        return bool(self.failed)

    @property
    def warning(self) -> Optional[str]:
        if self.failed:
            return f'{len(self.failed)} dependent task(s) were not rescheduled'
        if self.skipped:
            return f'{len(self.skipped)} dependent task(s) were skipped due to invalid dates'
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            'cascade_id': self.cascade_id,
            'schedule_id': self.schedule_id,
            'source_task_id': self.source_task_id,
            'updated': [u.to_dict() for u in self.updated.values()],
            'failed': [{'id': k, 'error': v} for k, v in self.failed.items()],
            'skipped': [{'id': k, 'error': v} for k, v in self.skipped.items()],
            'cycles_detected': self.cycles_detected,
            'nodes_processed': self.nodes_processed,
            'warning': self.warning,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


# ============================================================
# PER-SCHEDULE SERIALIZATION
# ============================================================

_schedule_locks = {}
_schedule_locks_guard = threading.Lock()


@contextmanager
def schedule_lock(schedule_id):
    """Serialize cascades (and the edits that trigger them) for one schedule.

    Process-local only: two worker processes editing the same schedule can
    still interleave, and the last successor write wins.
    """
    with _schedule_locks_guard:
        lock = _schedule_locks.setdefault(schedule_id, threading.RLock())
    with lock:
        yield


def release_schedule_lock(schedule_id):
    """Forget a deleted schedule's lock. Current holders keep their reference."""
    with _schedule_locks_guard:
        _schedule_locks.pop(schedule_id, None)


# ============================================================
# DATE RULES
# ============================================================

def successor_dates(edge, pred_start, pred_end, duration):
    """Start/end a successor must take under one dependency edge."""
    lag = int(edge.lag_days or 0)
    kind = edge.dependency_type
    if kind == FINISH_TO_START:
        start = add_days(pred_end, 1 + lag)
        return start, add_days(start, duration)
    if kind == START_TO_START:
        start = add_days(pred_start, lag)
        return start, add_days(start, duration)
    if kind == FINISH_TO_FINISH:
        end = add_days(pred_end, lag)
        return add_days(end, -duration), end
    if kind == START_TO_FINISH:
        end = add_days(pred_start, lag)
        return add_days(end, -duration), end
    raise ValueError(f'Unknown dependency type: {kind}')


def check_dates(task_id, start, end, duration):
    if end < start:
        raise InvariantViolation(f'task {task_id}: end {fmt(end)} is before start {fmt(start)}')
    if (end - start).days != duration:
        raise InvariantViolation(
            f'task {task_id}: span {(end - start).days}d does not match duration {duration}d'
        )


def check_record(task):
    """Stored dates must agree with the stored duration before a reschedule."""
    span = (task.end_date - task.start_date).days
    if span < 0:
        raise InvariantViolation(
            f'task {task.id}: stored end {fmt(task.end_date)} is before start {fmt(task.start_date)}'
        )
    if task.duration_days is not None and task.duration_days != span:
        raise InvariantViolation(
            f'task {task.id}: stored span {span}d does not match duration {task.duration_days}d'
        )


def would_create_cycle(edges, predecessor_id, successor_id):
    """True if adding predecessor -> successor closes a loop.

    Walks forward from the successor; reaching the predecessor means the new
    edge would complete a cycle of any length.
    """
    if predecessor_id == successor_id:
        return True
    outgoing = defaultdict(list)
    for edge in edges:
        outgoing[edge.source_task_id].append(edge.target_task_id)

    visited = set()
    stack = [successor_id]
    while stack:
        current = stack.pop()
        if current == predecessor_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        stack.extend(t for t in outgoing[current] if t not in visited)
    return False


# ============================================================
# CASCADE
# ============================================================

def run_cascade(store, schedule_id, changed_task_id, new_end_date,
                new_start_date=None, max_nodes=None):
    """
    Reschedule every task downstream of ``changed_task_id``.

    Args:
        store: Data access object (see module docstring)
        schedule_id: Schedule the task belongs to
        changed_task_id: Task whose dates were just edited
        new_end_date: The task's new end date
        new_start_date: The task's new start date, if it changed too
        max_nodes: Cap on processed tasks (defaults to the schedule's task count)

    Returns:
        CascadeResult listing updated, failed and skipped tasks

    Raises:
        DataAccessError: tasks or dependencies could not be loaded
        CascadeLimitExceeded: the iteration cap was hit
    """
    result = CascadeResult(schedule_id=schedule_id, source_task_id=changed_task_id)

    with schedule_lock(schedule_id):
        try:
            tasks = {t.id: t for t in store.list_tasks(schedule_id)}
            edges = list(store.list_dependencies(schedule_id))
        except Exception as e:
            raise DataAccessError(f'Could not load schedule {schedule_id}: {e}') from e

        seed = tasks.get(changed_task_id)
        if seed is None:
            raise DataAccessError(f'Task {changed_task_id} not found in schedule {schedule_id}')

        seed_dates = (to_date(new_start_date) or seed.start_date, to_date(new_end_date) or seed.end_date)
        limit = max_nodes or len(tasks)

        staged = _propagate(tasks, edges, changed_task_id, seed_dates, limit, result)
        _write_back(store, staged, result)

    result.completed_at = datetime.utcnow()
    logger.info(
        f'Cascade {result.cascade_id} from task {changed_task_id}: '
        f'{len(result.updated)} updated, {len(result.failed)} failed, '
        f'{len(result.skipped)} skipped, {result.nodes_processed} processed'
    )
    return result


def _propagate(tasks, edges, seed_id, seed_dates, limit, result):
    outgoing = defaultdict(list)
    incoming = defaultdict(list)
    for edge in edges:
        src, tgt = edge.source_task_id, edge.target_task_id
        if src == tgt:
            logger.warning(f'Ignoring self-dependency on task {src}')
            continue
        if src not in tasks or tgt not in tasks:
            continue
        outgoing[src].append(edge)
        incoming[tgt].append(edge)

    # Everything reachable from the seed, in discovery order
    discovered = [seed_id]
    affected = {seed_id}
    queue = deque([seed_id])
    while queue:
        current = queue.popleft()
        for edge in outgoing[current]:
            succ = edge.target_task_id
            if succ == seed_id:
                logger.debug(f'Dependency cycle: task {current} leads back to task {seed_id}')
                result.cycles_detected.append(current)
                continue
            if succ not in affected:
                affected.add(succ)
                discovered.append(succ)
                queue.append(succ)

    waiting = {
        tid: sum(1 for e in incoming[tid] if e.source_task_id in affected)
        for tid in discovered[1:]
    }

    effective = {seed_id: seed_dates}
    moved = {seed_id}
    visited = set()
    staged = {}

    ready = deque([seed_id])
    cursor = 1
    while True:
        while ready:
            current = ready.popleft()
            if current in visited:
                continue
            visited.add(current)
            result.nodes_processed += 1
            if result.nodes_processed > limit:
                raise CascadeLimitExceeded(
                    f'Cascade from task {seed_id} exceeded {limit} processed tasks'
                )

            if current != seed_id:
                _settle(current, tasks, incoming, affected, visited, effective, moved, staged, result)

            for edge in outgoing[current]:
                succ = edge.target_task_id
                if succ == seed_id or succ in visited:
                    continue
                waiting[succ] -= 1
                if waiting[succ] == 0:
                    ready.append(succ)

        # Anything still waiting sits on a cycle; settle it from what is known
        while cursor < len(discovered) and discovered[cursor] in visited:
            cursor += 1
        if cursor == len(discovered):
            break
        stuck = discovered[cursor]
        logger.debug(f'Dependency cycle through task {stuck}; settling from finalized predecessors')
        result.cycles_detected.append(stuck)
        ready.append(stuck)

    return staged


def _settle(task_id, tasks, incoming, affected, visited, effective, moved, staged, result):
    task = tasks[task_id]
    current = (task.start_date, task.end_date)
    preds = incoming[task_id]

    if not any(e.source_task_id in moved for e in preds):
        effective[task_id] = current
        return

    try:
        check_record(task)
    except InvariantViolation as e:
        logger.error(f'Skipping reschedule of task {task_id}: {e}')
        result.skipped[task_id] = str(e)
        effective[task_id] = current
        return

    duration = task.duration
    best = None
    for edge in preds:
        src = edge.source_task_id
        if src in affected and src not in visited:
            continue
        if src in effective:
            pred_start, pred_end = effective[src]
        else:
            pred_start, pred_end = tasks[src].start_date, tasks[src].end_date
        try:
            candidate = successor_dates(edge, pred_start, pred_end, duration)
        except ValueError as e:
            logger.error(f'Ignoring dependency {src} -> {task_id}: {e}')
            continue
        # Most constraining: latest start, then latest end
        if best is None or candidate > best:
            best = candidate

    if best is None or best == current:
        effective[task_id] = current
        return

    try:
        check_dates(task_id, best[0], best[1], duration)
    except InvariantViolation as e:
        logger.error(f'Skipping reschedule of task {task_id}: {e}')
        result.skipped[task_id] = str(e)
        effective[task_id] = current
        return

    staged[task_id] = TaskDateUpdate(task_id, best[0], best[1])
    effective[task_id] = best
    moved.add(task_id)
    logger.debug(f'Staged task {task_id}: {fmt(best[0])} -> {fmt(best[1])}')


def _write_back(store, staged, result):
    if not staged:
        return
    updates = list(staged.values())

    batch = getattr(store, 'update_task_dates_batch', None)
    if batch is not None:
        try:
            batch(updates)
        except Exception as e:
            logger.warning(f'Batch write of {len(updates)} task(s) failed, retrying one by one: {e}')
        else:
            for update in updates:
                result.updated[update.task_id] = update
            return

    for update in updates:
        try:
            store.update_task_dates(update.task_id, update.start_date, update.end_date)
        except Exception as e:
            logger.error(f'Failed to reschedule task {update.task_id}: {e}')
            result.failed[update.task_id] = str(e)
        else:
            result.updated[update.task_id] = update
