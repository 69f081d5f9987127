import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

TaskT = TypeVar("TaskT")
ResultT = TypeVar("ResultT")


@dataclass
class TaskOutcome(Generic[TaskT, ResultT]):
    task: TaskT
    value: ResultT | None
    success: bool
    error: Exception | None = None
    timed_out: bool = False
    duration_ms: int | None = None


class ParallelExecutor(Generic[TaskT, ResultT]):
    def __init__(self, max_workers: int = 4, *, overall_timeout: float = 90.0):
        self.max_workers = max_workers
        self.overall_timeout = overall_timeout

    def execute_ordered(
        self,
        tasks: list[TaskT],
        fn: Callable[[TaskT], ResultT],
    ) -> list[TaskOutcome[TaskT, ResultT]]:
        """Run ``fn`` over ``tasks`` concurrently; outcomes come back in input order."""
        if not tasks:
            return []

        workers = max(1, min(self.max_workers, len(tasks)))
        logger.debug(f"Executing {len(tasks)} tasks with {workers} workers")

        if workers == 1:
            return [self._run_inline(fn, task) for task in tasks]

        executor = ThreadPoolExecutor(max_workers=workers)
        try:
            futures: list[Future] = [executor.submit(self._timed, fn, task) for task in tasks]
            done, pending = wait(futures, timeout=self.overall_timeout)
            if pending:
                logger.error(f"Parallel execution timed out with {len(pending)} task(s) pending")

            outcomes: list[TaskOutcome[TaskT, ResultT]] = []
            for task, future in zip(tasks, futures):
                if future in pending:
                    future.cancel()
                    outcomes.append(
                        TaskOutcome(
                            task=task,
                            value=None,
                            success=False,
                            error=TimeoutError("Overall timeout"),
                            timed_out=True,
                        )
                    )
                    continue
                try:
                    value, duration_ms = future.result()
                    outcomes.append(
                        TaskOutcome(task=task, value=value, success=True, duration_ms=duration_ms)
                    )
                except Exception as e:
                    outcomes.append(TaskOutcome(task=task, value=None, success=False, error=e))
            return outcomes
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _run_inline(self, fn: Callable[[TaskT], ResultT], task: TaskT) -> TaskOutcome[TaskT, ResultT]:
        try:
            value, duration_ms = self._timed(fn, task)
            return TaskOutcome(task=task, value=value, success=True, duration_ms=duration_ms)
        except Exception as e:
            return TaskOutcome(task=task, value=None, success=False, error=e)

    @staticmethod
    def _timed(fn: Callable[[TaskT], ResultT], task: TaskT) -> tuple[ResultT, int]:
        start = time.monotonic()
        value = fn(task)
        return value, int((time.monotonic() - start) * 1000)
