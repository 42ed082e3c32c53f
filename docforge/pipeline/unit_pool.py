"""
Bounded worker pool for the per-unit generation stage.

Runs one generation function per unit on a ThreadPoolExecutor, but submits
lazily: at most ``max_workers`` units are in flight, and the cancellation
token is checked before every submission. Once cancellation is observed no
new unit is started; units already in flight finish and are reported.
"""

from __future__ import annotations

import contextvars
import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, Optional, TypeVar

from ..exceptions import PipelineCancelledError
from .cancellation import CancellationToken
from .resilience import RetryExhausted

logger = logging.getLogger(__name__)

TaskT = TypeVar("TaskT")
ResultT = TypeVar("ResultT")


@dataclass
class UnitOutcome(Generic[TaskT, ResultT]):
    task: TaskT
    result: Optional[ResultT] = None
    error: Optional[str] = None
    attempts: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


class UnitPool:
    """Runs per-unit work with a concurrency bound and cooperative cancellation.

    Responsibilities:
      - Keep at most ``max_workers`` units in flight
      - Check the cancellation token before each submission
      - Turn per-unit exceptions into failed outcomes so siblings continue
      - Report every outcome on the calling thread, in completion order

    Args:
        max_workers: Concurrency limit for in-flight generation calls.
        token: Run cancellation token.
    """

    def __init__(self, max_workers: int, token: CancellationToken) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self.token = token

    def run(
        self,
        tasks: Iterable[TaskT],
        work_fn: Callable[[TaskT], tuple[ResultT, int]],
        on_done: Callable[[UnitOutcome], None],
        label: Callable[[TaskT], str] = str,
    ) -> tuple[list[UnitOutcome], list[TaskT]]:
        """Run *work_fn* for each task.

        Args:
            tasks: Units to generate, in scheduling order.
            work_fn: Callable(task) -> (result, attempts). Runs in a worker thread.
            on_done: Called on the calling thread after each unit finishes.
            label: Names a task in logs.

        Returns:
            Tuple of (outcomes in completion order, tasks never started).
        """
        pending = list(tasks)
        pending.reverse()
        outcomes: list[UnitOutcome] = []

        def _submit_next(executor: ThreadPoolExecutor, in_flight: dict[Future, TaskT]) -> None:
            while pending and len(in_flight) < self.max_workers:
                if self.token.is_cancelled:
                    return
                task = pending.pop()
                ctx = contextvars.copy_context()
                in_flight[executor.submit(ctx.run, work_fn, task)] = task

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="unit") as executor:
            in_flight: dict[Future, TaskT] = {}
            _submit_next(executor, in_flight)

            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    task = in_flight.pop(future)
                    outcome: UnitOutcome = UnitOutcome(task=task)
                    try:
                        outcome.result, outcome.attempts = future.result()
                    except PipelineCancelledError:
                        outcome.cancelled = True
                    except RetryExhausted as e:
                        logger.error("Unit %s failed: %s", label(task), e)
                        outcome.error = str(e.last_error)
                        outcome.attempts = e.attempts
                    except Exception as e:
                        logger.error("Unit %s failed: %s", label(task), e)
                        outcome.error = str(e)
                    outcomes.append(outcome)
                    on_done(outcome)
                _submit_next(executor, in_flight)

        pending.reverse()
        if pending:
            logger.info("Cancellation observed: %d unit(s) not started", len(pending))
        return outcomes, pending
