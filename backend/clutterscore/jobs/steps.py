from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clutterscore.domain.job_events.db_models import JobRun

logger = logging.getLogger(__name__)


class JobSteps:
    """Named, memoised steps of one job run.

    Each completed step's JSON result is committed to `job_runs` under the run key,
    so a retried handler replays finished steps from the cursor instead of running
    them again. Step results must be JSON serialisable.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], run_key: str, job_name: str) -> None:
        self.session_factory = session_factory
        self.run_key = run_key
        self.job_name = job_name
        self._completed: dict[str, Any] | None = None

    async def _load(self) -> dict[str, Any]:
        if self._completed is None:
            async with self.session_factory() as session:
                run = await session.get(JobRun, self.run_key)
                if run is None:
                    run = JobRun(run_key=self.run_key, job_name=self.job_name, completed_steps={}, attempts=0)
                    session.add(run)
                run.attempts = (run.attempts or 0) + 1
                run.status = "running"
                self._completed = dict(run.completed_steps or {})
                await session.commit()
        return self._completed

    async def run(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        completed = await self._load()
        if name in completed:
            logger.debug("job_step_replayed", extra={"extra": {"run_key": self.run_key, "step": name}})
            return completed[name]
        result = await fn()
        completed[name] = result
        async with self.session_factory() as session:
            run = await session.get(JobRun, self.run_key)
            run.completed_steps = dict(completed)
            await session.commit()
        return result

    async def finish(self, *, error: str | None = None) -> None:
        async with self.session_factory() as session:
            run = await session.get(JobRun, self.run_key)
            if run is None:
                return
            run.status = "failed" if error else "completed"
            run.last_error = error
            await session.commit()
