"""
Work Submission

One interface for running handler work whether the runtime can defer it
(FastAPI BackgroundTasks, after the response is sent) or not (inline, e.g.
tests or a CLI trigger). Both paths run the same coroutine through the same
guard, so results differ only in latency.

The guard is the outermost dispatch boundary: any exception escaping a
handler is logged here and never reaches the inbound acknowledgement.
"""

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from fastapi import BackgroundTasks

logger = logging.getLogger("standup.submitter")

Work = Callable[[], Awaitable[None]]


async def run_guarded(label: str, work: Work) -> None:
    try:
        await work()
    except Exception as e:
        logger.error(f"Background task failed | task={label} | error={e}", exc_info=True)


class WorkSubmitter(ABC):

    @abstractmethod
    async def submit(self, label: str, work: Work) -> None:
        ...


class InlineSubmitter(WorkSubmitter):
    """Runs work before returning."""

    async def submit(self, label: str, work: Work) -> None:
        await run_guarded(label, work)


class BackgroundSubmitter(WorkSubmitter):
    """Defers work until after the HTTP response has been sent."""

    def __init__(self, tasks: BackgroundTasks):
        self._tasks = tasks

    async def submit(self, label: str, work: Work) -> None:
        self._tasks.add_task(run_guarded, label, work)
