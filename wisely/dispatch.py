"""Workflow dispatcher for wisely."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .contracts import WorkflowRun
from .errors import ValidationError, WiselyError
from .jobs import new_job
from .persistence.models import AuditEvent
from .persistence.repository import AuditStore, WorkflowStore
from .utils.time import Clock, utcnow
from .workflows.loader import WorkflowLoader

logger = logging.getLogger(__name__)


class DispatchResult(BaseModel):
    run_id: str
    status: str = "dispatched"
    steps_enqueued: int
    workflow_key: str


class WorkflowDispatcher:
    """Service responsible for starting new workflow runs."""

    def __init__(
        self,
        store: WorkflowStore,
        loader: Optional[WorkflowLoader] = None,
        audit: Optional[AuditStore] = None,
        now: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.loader = loader or WorkflowLoader()
        self.audit = audit
        self._now = now or utcnow

    async def dispatch(
        self,
        user_id: str,
        workflow_key: str,
        intent_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        trigger_event_id: Optional[str] = None,
    ) -> DispatchResult:
        """Create a run for ``workflow_key`` and queue its root steps.

        Args:
            user_id: User the run acts for.
            workflow_key: Key of the workflow definition to run.
            intent_id: Optional learning intent the run belongs to.
            payload: Request body for root steps that declare none.
            trigger_event_id: Optional id of the event that caused the dispatch.

        Returns:
            The new run id and how many jobs were queued.

        Nothing is written when the definition is unknown or malformed.
        """
        if not user_id or not workflow_key:
            raise ValidationError("Missing required fields: user_id, workflow_key")
        spec = self.loader.load(workflow_key)

        now = self._now()
        run = WorkflowRun(
            workflow_key=workflow_key,
            user_id=user_id,
            intent_id=intent_id,
            trigger_event_id=trigger_event_id,
            spec=spec,
            payload=payload or {},
            created_at=now,
            updated_at=now,
        )
        jobs = [new_job(run, step, now) for step in spec.root_steps()]
        await self.store.create_run(run, jobs)
        logger.info(
            f"Workflow {workflow_key} dispatched for user {user_id}, run {run.run_id}"
        )

        await self._record(
            AuditEvent(
                user_id=user_id,
                intent_id=intent_id,
                type=f"workflow_dispatched:{workflow_key}",
                payload={
                    "workflow_run_id": run.run_id,
                    "steps_count": len(jobs),
                    "workflow_spec": spec.key,
                },
                created_at=now,
            )
        )
        return DispatchResult(
            run_id=run.run_id, steps_enqueued=len(jobs), workflow_key=workflow_key
        )

    async def dispatch_event(
        self,
        user_id: str,
        event_type: str,
        intent_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        trigger_event_id: Optional[str] = None,
    ) -> List[DispatchResult]:
        """Dispatch every workflow whose trigger lists ``event_type``."""
        results = []
        for spec in self.loader.all():
            if event_type in spec.trigger.event_types:
                results.append(
                    await self.dispatch(
                        user_id,
                        spec.key,
                        intent_id=intent_id,
                        payload=payload,
                        trigger_event_id=trigger_event_id,
                    )
                )
        if not results:
            logger.info(f"No workflow listens to event {event_type}")
        return results

    async def _record(self, event: AuditEvent) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.record_event(event)
        except WiselyError as e:
            logger.warning(f"Failed to record audit event {event.type}: {e}")
