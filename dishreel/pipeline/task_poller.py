"""
Submit-then-poll driver for asynchronous external tasks.

Polls at a fixed interval until the task reaches a terminal state or the
ceiling elapses. A timeout is reported as its own outcome, separate from a
failure the service reported.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from ..errors import PipelineError, TransientServiceError
from .models import PollOutcome, PollResult, TaskState, TaskStatus

logger = logging.getLogger(__name__)

POLL_INTERVAL = 5.0   # seconds
POLL_TIMEOUT = 300.0  # 5 minutes per task


class TaskPoller:
    def __init__(
        self,
        poll_interval: float = POLL_INTERVAL,
        timeout: float = POLL_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    async def run(
        self,
        submit: Callable[[], Awaitable[str]],
        check: Callable[[str], Awaitable[TaskStatus]],
        label: str = "task",
    ) -> PollResult:
        try:
            task_id = await submit()
        except PipelineError as e:
            logger.warning(f"{label}: submission failed: {e}")
            return PollResult(outcome=PollOutcome.SUBMIT_FAILED, error=str(e))

        logger.info(f"{label}: submitted task_id={task_id}")
        return await self.wait(task_id, check, label)

    async def wait(
        self,
        task_id: str,
        check: Callable[[str], Awaitable[TaskStatus]],
        label: str = "task",
    ) -> PollResult:
        deadline = self._clock() + self.timeout
        polls = 0
        last_state: Optional[TaskState] = None

        while True:
            await self._sleep(self.poll_interval)
            polls += 1

            try:
                status = await check(task_id)
            except TransientServiceError as e:
                logger.warning(f"{label}: poll #{polls} transient error, continuing: {e}")
                status = None
            except PipelineError as e:
                logger.error(f"{label}: poll #{polls} failed: {e}")
                return PollResult(
                    outcome=PollOutcome.FAILED, task_id=task_id, error=str(e), polls=polls
                )

            if status is not None:
                if status.state != last_state:
                    logger.info(f"{label}: poll #{polls} state={status.state.value}")
                    last_state = status.state

                if status.state == TaskState.SUCCEEDED:
                    return PollResult(
                        outcome=PollOutcome.SUCCEEDED, task_id=task_id,
                        output_url=status.output_url, polls=polls,
                    )
                if status.state == TaskState.FAILED:
                    return PollResult(
                        outcome=PollOutcome.FAILED, task_id=task_id,
                        error=status.error or "Task failed", polls=polls,
                    )

            if self._clock() >= deadline:
                logger.warning(f"{label}: timed out after {self.timeout:.0f}s ({polls} polls)")
                return PollResult(
                    outcome=PollOutcome.TIMED_OUT, task_id=task_id,
                    error=f"Timed out after {self.timeout:.0f}s waiting for task {task_id}",
                    polls=polls,
                )
