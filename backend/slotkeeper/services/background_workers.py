"""
Background Workers Service
In-process job queue and asyncio worker pool for waitlist jobs.

Delivery is at-least-once: a handler that raises is re-run according to the
task's backoff policy until its attempts are used up. Handlers must treat a
re-run for an already-resolved event as a no-op.
"""

import asyncio
import heapq
import itertools
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from slotkeeper.core.clock import Clock, system_clock
from slotkeeper.core.errors import BusinessRuleError, NotFoundError
from slotkeeper.core.metrics import metrics
from slotkeeper.core.observability import reset_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Background task status"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskPriority(str, Enum):
    """Background task priority"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.NORMAL: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.CRITICAL: 3,
}


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before re-running a failed task."""
    kind: str = "exponential"  # "exponential" or "fixed"
    delay_seconds: float = 1.0

    def delay_for(self, attempts_made: int) -> float:
        if self.kind == "fixed":
            return self.delay_seconds
        return self.delay_seconds * (2 ** max(0, attempts_made - 1))


@dataclass
class BackgroundTask:
    """Background task definition"""
    id: str
    name: str
    task_type: str
    tenant_id: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.NORMAL
    scheduled_at: datetime = field(default_factory=system_clock.now)
    created_at: datetime = field(default_factory=system_clock.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "task_type": self.task_type,
            "tenant_id": self.tenant_id,
            "payload": self.payload,
            "status": self.status.value,
            "priority": self.priority.value,
            "scheduled_at": self.scheduled_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "result": self.result,
        }


TaskHandler = Callable[[Any, BackgroundTask], Awaitable[Optional[Dict[str, Any]]]]


class BackgroundWorkerManager:
    """
    Manages background workers and task queue.
    Uses asyncio for concurrent task execution.

    Pending tasks sit in a heap ordered by due time, then priority, then
    enqueue order. Due times come from the injected clock, so tests can
    advance a ``ManualClock`` and call ``run_pending()``.
    """

    def __init__(
        self,
        max_workers: int = 4,
        clock: Clock = system_clock,
        poll_interval: float = 0.5,
        max_history: int = 1000,
    ):
        self.max_workers = max_workers
        self.clock = clock
        self.poll_interval = poll_interval
        self.max_history = max_history
        self.workers: List[asyncio.Task] = []
        self.running = False
        self.session_factory: Optional[Callable[[], Any]] = None
        self.task_handlers: Dict[str, TaskHandler] = {}
        self.task_history: Dict[str, BackgroundTask] = {}
        self.stats = defaultdict(int)
        self._heap: List[Tuple[datetime, int, int, str]] = []
        self._sequence = itertools.count()
        self._paused_types: Set[str] = set()
        self._all_paused = False

    def register_handler(self, task_type: str, handler: TaskHandler) -> None:
        self.task_handlers[task_type] = handler

    async def start(self, session_factory):
        """Start the worker manager."""
        if self.running:
            return

        self.running = True
        self.session_factory = session_factory

        for i in range(self.max_workers):
            worker = asyncio.create_task(self._worker(f"worker-{i}"))
            self.workers.append(worker)

        logger.info(f"Background worker manager started with {self.max_workers} workers")

    async def stop(self):
        """Stop the worker manager."""
        self.running = False

        for worker in self.workers:
            worker.cancel()

        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []

        logger.info("Background worker manager stopped")

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def _push(self, task: BackgroundTask) -> None:
        heapq.heappush(
            self._heap,
            (task.scheduled_at, -PRIORITY_RANK[task.priority], next(self._sequence), task.id),
        )

    async def enqueue(self, task: BackgroundTask):
        """Add a task to the queue."""
        self.task_history[task.id] = task
        self._push(task)
        self.stats["tasks_enqueued"] += 1
        self._prune_history()
        logger.debug(f"Task enqueued: {task.name} ({task.id})")

    async def schedule(
        self,
        task_type: str,
        name: str,
        payload: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[int] = None,
        delay_seconds: float = 0,
        priority: TaskPriority = TaskPriority.NORMAL,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
    ) -> str:
        """Schedule a task for execution."""
        now = self.clock.now()
        task = BackgroundTask(
            id=str(uuid.uuid4()),
            name=name,
            task_type=task_type,
            tenant_id=tenant_id,
            payload=payload or {},
            priority=priority,
            scheduled_at=now + timedelta(seconds=delay_seconds),
            created_at=now,
            max_attempts=max_attempts,
            backoff=backoff or BackoffPolicy(),
        )

        await self.enqueue(task)
        return task.id

    # ------------------------------------------------------------------
    # Inspection and control
    # ------------------------------------------------------------------

    def get_task_status(self, task_id: str) -> Optional[BackgroundTask]:
        """Get task status by ID."""
        return self.task_history.get(task_id)

    def list_tasks(
        self,
        task_type: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        limit: int = 50,
    ) -> List[BackgroundTask]:
        tasks = [
            t for t in self.task_history.values()
            if (task_type is None or t.task_type == task_type)
            and (status is None or t.status == status)
        ]
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks[:limit]

    def is_paused(self, task_type: str) -> bool:
        return self._all_paused or task_type in self._paused_types

    def pause(self, task_type: Optional[str] = None) -> None:
        """Stop handing out tasks of one type, or of every type. Queued tasks are kept."""
        if task_type is None:
            self._all_paused = True
        else:
            self._paused_types.add(task_type)
        logger.info(f"Queue paused: {task_type or 'all job types'}")

    def resume(self, task_type: Optional[str] = None) -> None:
        if task_type is None:
            self._all_paused = False
            self._paused_types.clear()
        else:
            self._paused_types.discard(task_type)
        logger.info(f"Queue resumed: {task_type or 'all job types'}")

    def get_queue_counts(self, task_type: Optional[str] = None) -> Dict[str, int]:
        """Depth counts in the shape used for queue health reporting."""
        now = self.clock.now()
        counts = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0, "paused": 0}
        for task in self.task_history.values():
            if task_type is not None and task.task_type != task_type:
                continue
            if task.status == TaskStatus.PENDING:
                if self.is_paused(task.task_type):
                    counts["paused"] += 1
                elif task.scheduled_at > now:
                    counts["delayed"] += 1
                else:
                    counts["waiting"] += 1
            elif task.status == TaskStatus.RUNNING:
                counts["active"] += 1
            elif task.status == TaskStatus.COMPLETED:
                counts["completed"] += 1
            elif task.status == TaskStatus.FAILED:
                counts["failed"] += 1
        return counts

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics."""
        return {
            **dict(self.stats),
            "queue_size": len(self._heap),
            "active_workers": sum(1 for w in self.workers if not w.done()),
            "pending_tasks": sum(1 for t in self.task_history.values()
                                 if t.status == TaskStatus.PENDING),
            "running_tasks": sum(1 for t in self.task_history.values()
                                 if t.status == TaskStatus.RUNNING),
        }

    async def retry_task(self, task_id: str) -> bool:
        """Re-queue a failed task with its attempt counter reset."""
        task = self.task_history.get(task_id)
        if task is None or task.status != TaskStatus.FAILED:
            return False
        task.status = TaskStatus.PENDING
        task.attempts_made = 0
        task.error_message = None
        task.completed_at = None
        task.scheduled_at = self.clock.now()
        self._push(task)
        self.stats["tasks_manually_retried"] += 1
        return True

    def clear_failed(self, task_type: Optional[str] = None) -> int:
        failed = [
            t.id for t in self.task_history.values()
            if t.status == TaskStatus.FAILED and (task_type is None or t.task_type == task_type)
        ]
        for task_id in failed:
            del self.task_history[task_id]
        return len(failed)

    def reset(self) -> None:
        """Drop every queued and finished task. Handlers and pause state are kept."""
        self._heap.clear()
        self.task_history.clear()
        self.stats.clear()

    def _prune_history(self) -> None:
        finished = [t for t in self.task_history.values() if t.status == TaskStatus.COMPLETED]
        overflow = len(self.task_history) - self.max_history
        if overflow <= 0:
            return
        finished.sort(key=lambda t: t.completed_at or t.created_at)
        for task in finished[:overflow]:
            del self.task_history[task.id]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _pop_next_due(self) -> Optional[BackgroundTask]:
        now = self.clock.now()
        skipped = []
        found = None
        while self._heap:
            item = self._heap[0]
            if item[0] > now:
                break
            heapq.heappop(self._heap)
            task = self.task_history.get(item[3])
            if task is None or task.status != TaskStatus.PENDING:
                continue
            if self.is_paused(task.task_type):
                skipped.append(item)
                continue
            found = task
            break
        for item in skipped:
            heapq.heappush(self._heap, item)
        return found

    async def run_pending(self, session_factory=None) -> int:
        """Process every task that is due now, one at a time.

        Tasks that become due while running (zero-delay follow-ups) are
        processed in the same call. Returns the number of tasks run.
        """
        if session_factory is not None:
            self.session_factory = session_factory
        if self.session_factory is None:
            raise RuntimeError("run_pending() needs a session factory")

        processed = 0
        while True:
            task = self._pop_next_due()
            if task is None:
                return processed
            await self._process_task(task, "inline")
            processed += 1

    async def _worker(self, worker_name: str):
        """Worker coroutine that processes tasks from the queue."""
        logger.info(f"Worker {worker_name} started")

        while self.running:
            try:
                task = self._pop_next_due()
                if task is None:
                    await asyncio.sleep(self.poll_interval)
                    continue

                await self._process_task(task, worker_name)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Worker {worker_name} error: {e}")
                self.stats["worker_errors"] += 1

        logger.info(f"Worker {worker_name} stopped")

    async def _process_task(self, task: BackgroundTask, worker_name: str):
        """Process a single task."""
        task.status = TaskStatus.RUNNING
        task.started_at = self.clock.now()
        task.attempts_made += 1
        self.stats["tasks_started"] += 1

        token = set_correlation_id(task.id)
        context = {"job_id": task.id, "job_type": task.task_type, "tenant_id": task.tenant_id}
        started = time.perf_counter()

        logger.info(f"[{worker_name}] Processing task: {task.name} ({task.task_type})", extra=context)

        try:
            handler = self.task_handlers.get(task.task_type)
            if not handler:
                raise ValueError(f"Unknown task type: {task.task_type}")

            with self.session_factory() as db:
                task.result = await handler(db, task)

            task.status = TaskStatus.COMPLETED
            task.completed_at = self.clock.now()
            task.error_message = None
            self.stats["tasks_completed"] += 1
            metrics.record_job(task.task_type, "completed", time.perf_counter() - started)

            logger.info(f"[{worker_name}] Task completed: {task.name}", extra=context)

        except (NotFoundError, BusinessRuleError) as e:
            # Retrying cannot make a missing entity appear or a rule pass
            task.error_message = str(e)
            self._mark_failed(task, started)
            logger.error(f"Task {task.name} failed without retry: {e}", extra=context)

        except Exception as e:
            task.error_message = str(e)

            if task.attempts_made < task.max_attempts:
                delay = task.backoff.delay_for(task.attempts_made)
                task.status = TaskStatus.PENDING
                task.scheduled_at = self.clock.now() + timedelta(seconds=delay)
                self._push(task)
                self.stats["tasks_retried"] += 1
                metrics.record_job(task.task_type, "retried", time.perf_counter() - started)
                logger.warning(
                    f"Task {task.name} failed, attempt {task.attempts_made}/{task.max_attempts}, "
                    f"retrying in {delay:g}s: {e}",
                    extra=context,
                )
            else:
                self._mark_failed(task, started)
                logger.error(f"Task {task.name} failed permanently: {e}", exc_info=True, extra=context)

        finally:
            reset_correlation_id(token)

    def _mark_failed(self, task: BackgroundTask, started: float):
        task.status = TaskStatus.FAILED
        task.completed_at = self.clock.now()
        self.stats["tasks_failed"] += 1
        metrics.record_job(task.task_type, "failed", time.perf_counter() - started)


# Global worker manager instance
worker_manager = BackgroundWorkerManager()
