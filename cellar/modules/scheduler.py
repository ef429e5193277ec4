# cellar/modules/scheduler.py
"""
Parallel build scheduler.

Runs a BuildPlan on a bounded thread pool:
 - a task becomes `ready` when its count of unfinished prerequisites reaches zero
   (skipped prerequisites count as finished)
 - ready tasks start in plan order, at most `jobs` at a time
 - a failed task marks every transitive dependent `failed` without running it;
   unrelated branches keep going (unless keep_going is off)
 - cancel() (or Ctrl-C) stops new starts; in-flight tasks get `grace_period`
   seconds to finish before their processes are killed
All status transitions happen on the scheduling thread; workers only run
BuildExecutor.execute().
"""

from __future__ import annotations
import heapq
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Tuple

from cellar.modules.config import config
from cellar.modules.errors import BuildError, CancelledError, DependencyFailedError, TaskError
from cellar.modules.resolver import (DONE, FAILED, PENDING, READY, RUNNING, SKIPPED, SUCCEEDED,
                                     BuildPlan, BuildTask)
from cellar.modules import logger as _logger

EventCallback = Callable[[str, BuildTask], None]


class Scheduler:
    def __init__(self, executor, jobs: Optional[int] = None, grace_period: Optional[float] = None,
                 keep_going: bool = True, on_event: Optional[EventCallback] = None,
                 poll_interval: float = 0.5):
        self.executor = executor
        self.jobs = max(1, jobs or config.getint("build", "jobs", fallback=4))
        if grace_period is None:
            grace_period = config.getfloat("build", "grace_period", fallback=30.0)
        self.grace_period = grace_period
        self.keep_going = keep_going
        self.on_event = on_event
        self.poll_interval = poll_interval
        self.interrupted = False
        self._cancel = threading.Event()
        self._stop_reason: Optional[str] = None
        self.log = _logger.Logger("scheduler")

    def cancel(self, reason: str = "interrupted"):
        if not self._cancel.is_set():
            self.log.warning(f"Cancellation requested ({reason}); no new builds will start")
            self._stop_reason = reason
            self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _emit(self, event: str, task: BuildTask):
        if self.on_event:
            self.on_event(event, task)

    # ---------------------------
    # Bookkeeping
    # ---------------------------
    def _fail(self, plan: BuildPlan, task: BuildTask, error: Exception):
        task.status = FAILED
        task.error = error
        self.log.error(f"{task.identity} failed: {error}")
        self._emit("failed", task)
        for dependent in plan.transitive_dependents(task.identity):
            if dependent.status in (PENDING, READY):
                dependent.status = FAILED
                dependent.error = DependencyFailedError(dependent.identity, task.identity)
                self.log.warning(str(dependent.error))
                self._emit("dependency-failed", dependent)
        if not self.keep_going:
            self.cancel(f"{task.identity} failed")

    def _settle(self, plan: BuildPlan, future: Future, task: BuildTask,
                remaining: Dict[str, int], ready: List[Tuple[int, str]]):
        try:
            task.result = future.result()
        except TaskError as e:
            self._fail(plan, task, e)
            return
        except Exception as e:
            self._fail(plan, task, BuildError(f"{task.identity}: unexpected error: {e}",
                                              formula=task.identity))
            return
        task.status = SUCCEEDED
        self._emit("succeeded", task)
        self._release(plan, task, remaining, ready)

    def _release(self, plan: BuildPlan, task: BuildTask, remaining: Dict[str, int],
                 ready: List[Tuple[int, str]]):
        for identity in task.dependents:
            if identity not in remaining:
                continue
            remaining[identity] -= 1
            dependent = plan.get(identity)
            if remaining[identity] == 0 and dependent.status == PENDING:
                dependent.status = READY
                heapq.heappush(ready, (dependent.order, identity))

    # ---------------------------
    # Main loop
    # ---------------------------
    def run(self, plan: BuildPlan) -> BuildPlan:
        remaining: Dict[str, int] = {}
        ready: List[Tuple[int, str]] = []
        for task in plan:
            if task.status != PENDING:
                continue
            remaining[task.identity] = sum(
                1 for dep in task.prerequisites if plan.get(dep).status not in DONE)
            if remaining[task.identity] == 0:
                task.status = READY
                heapq.heappush(ready, (task.order, task.identity))

        todo = len(remaining)
        self.log.info(f"Scheduling {todo} build(s) with {self.jobs} worker(s); "
                      f"{len(plan.with_status(SKIPPED))} already installed")
        running: Dict[Future, BuildTask] = {}
        pool = ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="cellar-build")
        try:
            while ready or running:
                while ready and len(running) < self.jobs and not self.cancelled:
                    _, identity = heapq.heappop(ready)
                    task = plan.get(identity)
                    if task.status != READY:
                        continue
                    task.status = RUNNING
                    self._emit("started", task)
                    running[pool.submit(self.executor.execute, task)] = task
                if not running or self.cancelled:
                    break
                done, _ = wait(list(running), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for future in done:
                    self._settle(plan, future, running.pop(future), remaining, ready)
        except KeyboardInterrupt:
            self.interrupted = True
            self.cancel("interrupted")
        finally:
            if running:
                self._drain(plan, running, remaining, ready)
            pool.shutdown(wait=True)

        reason = self._stop_reason or "cancelled"
        for task in plan:
            if task.status in (PENDING, READY):
                task.status = FAILED
                task.error = CancelledError(task.identity, reason)
                self._emit("cancelled", task)
        return plan

    def _drain(self, plan: BuildPlan, running: Dict[Future, BuildTask],
               remaining: Dict[str, int], ready: List[Tuple[int, str]]):
        """Let in-flight builds finish within the grace period, then kill them."""
        self.log.info(f"Waiting up to {self.grace_period}s for {len(running)} running build(s)")
        done, not_done = wait(list(running), timeout=self.grace_period)
        if not_done:
            self.log.warning(f"Grace period over; terminating {len(not_done)} build(s)")
            self.executor.terminate()
            wait(not_done)
        for future in list(running):
            self._settle(plan, future, running.pop(future), remaining, ready)
