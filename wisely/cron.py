"""Cron-triggered workflow dispatch."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from croniter import croniter
from pydantic import BaseModel, Field

from .contracts import WorkflowSpec
from .dispatch import DispatchResult, WorkflowDispatcher
from .errors import WiselyError
from .utils.time import Clock, utcnow
from .workflows.loader import WorkflowLoader

logger = logging.getLogger(__name__)


def next_run(spec: WorkflowSpec, after: datetime) -> datetime | None:
    """Next time ``spec``'s cron trigger fires strictly after ``after``."""
    expression = spec.trigger.cron
    if not expression or not croniter.is_valid(expression):
        return None
    return croniter(expression, after).get_next(datetime)


class TickResult(BaseModel):
    at: datetime
    workflows: List[str] = Field(default_factory=list)
    dispatched: Dict[str, List[DispatchResult]] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)


class CronScheduler:
    """Dispatch workflows whose cron trigger matches the current minute."""

    def __init__(
        self,
        dispatcher: WorkflowDispatcher,
        loader: Optional[WorkflowLoader] = None,
        now: Optional[Clock] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.loader = loader or dispatcher.loader
        self._now = now or utcnow

    def due_workflows(self, at: Optional[datetime] = None) -> List[WorkflowSpec]:
        at = at or self._now()
        due = []
        for spec in self.loader.all():
            expression = spec.trigger.cron
            if not expression:
                continue
            if not croniter.is_valid(expression):
                logger.error(f"Workflow {spec.key} has invalid cron '{expression}'")
                continue
            if croniter.match(expression, at):
                due.append(spec)
        return due

    async def tick(
        self, user_ids: Optional[Iterable[str]] = None, at: Optional[datetime] = None
    ) -> TickResult:
        """Dispatch every due workflow for every user.

        Without ``user_ids`` every user known to the store is ticked. A failure
        for one user is recorded and does not stop the others.
        """
        at = at or self._now()
        due = self.due_workflows(at)
        result = TickResult(at=at, workflows=[spec.key for spec in due])
        if not due:
            return result
        if user_ids is None:
            user_ids = await self.dispatcher.store.list_user_ids()
        for user_id in user_ids:
            dispatched = []
            try:
                for spec in due:
                    dispatched.append(
                        await self.dispatcher.dispatch(
                            user_id, spec.key, trigger_event_id=f"cron:{at.isoformat()}"
                        )
                    )
            except WiselyError as e:
                logger.error(f"Cron dispatch failed for user {user_id}: {e}")
                result.errors[user_id] = str(e)
            result.dispatched[user_id] = dispatched
        logger.info(
            f"Cron tick at {at.isoformat()} dispatched {result.workflows} "
            f"for {len(result.dispatched)} user(s)"
        )
        return result
