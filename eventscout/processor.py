"""Batch processor: the periodic driver behind the cron trigger.

Each tick lists a bounded number of due jobs per kind and advances every job
by one slice of its frozen target list::

    PENDING --(selected)--> IN_PROGRESS --(slice, checkpoint < total)--> IN_PROGRESS
    IN_PROGRESS --(checkpoint == total)--> COMPLETED
    PENDING | IN_PROGRESS --(setup error, e.g. no objectives)--> FAILED

The checkpoint only moves after the slice's per-item writes have committed,
so a crash mid-slice means the slice is redone on the next tick. Item writes
are upserts (scores) or idempotent column updates (enrichment), which makes
that replay safe. Overlapping ticks are not locked out: the losing pass gets
``NoopError`` / ``StaleCheckpointError`` from the job store and moves on.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from eventscout.config import Settings, get_settings
from eventscout.db import get_session
from eventscout.enricher import EnrichmentProvider, EnrichmentResult, LLMEnrichmentProvider
from eventscout.jobs import (
    JobSetupError, NoopError, StaleCheckpointError, advance_checkpoint, fail_job, get_job,
    list_due_jobs, transition_status,
)
from eventscout.llm import LLMCallError, LLMClient, get_llm_client
from eventscout.models import (
    DUE_STATUSES, Contact, EnrichmentStatus, Event, Job, JobKind, JobStatus,
)
from eventscout.schemas import ContactPatch
from eventscout.scorer import (
    ContactSnapshot, EventContext, load_objectives, save_score_result, score_contact,
)
from eventscout.services import apply_contact_patch
from eventscout.tasks import TaskHandler, dispatch_pending_tasks
from eventscout.waitlist import PROMOTE_TASK, handle_promote_task

log = logging.getLogger(__name__)

TASK_HANDLERS: dict[str, TaskHandler] = {
    PROMOTE_TASK: handle_promote_task,
}

_TICK_KEYS = {
    JobKind.ENRICHMENT: "enrichment_processed",
    JobKind.SCORING: "scoring_processed",
}


class BatchProcessor:
    """Advances due jobs one slice at a time.

    *session_factory* is called once per tick; the session is closed when
    the tick ends. *client* and *enrichment_provider* are created lazily from
    settings when not injected.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        client: LLMClient | None = None,
        enrichment_provider: EnrichmentProvider | None = None,
        settings: Settings | None = None,
        task_handlers: Mapping[str, TaskHandler] | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._client = client
        self._enrichment_provider = enrichment_provider
        self.task_handlers = dict(TASK_HANDLERS if task_handlers is None else task_handlers)

    @property
    def client(self) -> LLMClient:
        if self._client is None:
            self._client = get_llm_client()
        return self._client

    @property
    def enrichment_provider(self) -> EnrichmentProvider:
        if self._enrichment_provider is None:
            self._enrichment_provider = LLMEnrichmentProvider(self.client)
        return self._enrichment_provider

    # -- tick -------------------------------------------------------------

    async def run_tick(self) -> dict[str, int]:
        """One scheduled invocation. Returns items advanced per kind plus tasks run."""
        counts = {key: 0 for key in _TICK_KEYS.values()}
        counts["tasks_dispatched"] = 0
        session = self.session_factory()
        try:
            for kind, key in _TICK_KEYS.items():
                for job in list_due_jobs(session, kind, self.settings.due_jobs_limit):
                    try:
                        counts[key] += await self.process_job(session, job.id)
                    except Exception:
                        session.rollback()
                        log.exception("Unexpected error processing %s job %s; retrying next tick", kind, job.id)
            counts["tasks_dispatched"] = dispatch_pending_tasks(
                session,
                self.task_handlers,
                limit=self.settings.task_batch_limit,
                max_attempts=self.settings.task_max_attempts,
            )
        finally:
            session.close()
        log.info(
            "Tick done: %d enriched, %d scored, %d tasks",
            counts["enrichment_processed"], counts["scoring_processed"], counts["tasks_dispatched"],
        )
        return counts

    # -- one job ----------------------------------------------------------

    async def process_job(self, session: Session, job_id: str) -> int:
        """Advance *job_id* by one slice. Returns the number of items checkpointed."""
        job = get_job(session, job_id)
        if job.status not in DUE_STATUSES:
            return 0

        if job.status == JobStatus.PENDING:
            try:
                transition_status(session, job.id, JobStatus.PENDING, JobStatus.IN_PROGRESS)
            except NoopError:
                log.debug("Job %s already started by another pass", job.id)
            job = get_job(session, job.id)
            if job.status != JobStatus.IN_PROGRESS:
                return 0

        start = job.completed_count
        batch = list(job.target_ids[start:start + self.settings.batch_size])
        if not batch:
            if start >= job.total:
                self._complete(session, job)
            else:
                log.error("Job %s: empty slice at %d/%d (batch_size=%d)",
                          job.id, start, job.total, self.settings.batch_size)
            return 0

        try:
            if job.kind == JobKind.SCORING:
                delta_failed = await self._score_slice(session, job, batch)
            else:
                delta_failed = await self._enrich_slice(session, job, batch)
        except JobSetupError as exc:
            log.error("Job %s cannot run: %s", job.id, exc)
            fail_job(session, job.id, str(exc))
            return 0

        new_count = start + len(batch)
        try:
            advance_checkpoint(session, job.id, new_count, delta_failed)
        except StaleCheckpointError as exc:
            log.info("Job %s: %s (another pass got there first)", job.id, exc)
            return 0

        log.info(
            "Job %s: checkpoint %d/%d (%d failed in slice)", job.id, new_count, job.total, delta_failed,
        )
        if new_count >= job.total:
            self._complete(session, job)
        return len(batch)

    def _complete(self, session: Session, job: Job) -> None:
        try:
            transition_status(session, job.id, JobStatus.IN_PROGRESS, JobStatus.COMPLETED)
        except NoopError:
            log.debug("Job %s already completed by another pass", job.id)

    def _load_contacts(self, session: Session, job: Job, batch: Sequence[str]) -> dict[str, ContactSnapshot]:
        rows = session.execute(
            select(Contact).where(Contact.id.in_(batch), Contact.workspace_id == job.workspace_id)
        ).scalars().all()
        return {c.id: ContactSnapshot.from_contact(c) for c in rows}

    async def _gather_bounded(self, func, items: Sequence[Any]) -> list[Any]:
        """Run ``func(item)`` for every item, at most ``fan_out`` at a time.

        Results keep the order of *items*; exceptions are returned, not raised.
        """
        sem = asyncio.Semaphore(self.settings.fan_out)
        timeout = self.settings.provider_timeout_seconds

        async def _bounded(item):
            async with sem:
                return await asyncio.wait_for(func(item), timeout)

        results = await asyncio.gather(*(_bounded(i) for i in items), return_exceptions=True)
        for res in results:
            if isinstance(res, BaseException) and not isinstance(res, Exception):
                raise res
        return results

    # -- scoring ----------------------------------------------------------

    async def _score_slice(self, session: Session, job: Job, batch: list[str]) -> int:
        event = session.execute(
            select(Event).where(Event.id == job.event_id, Event.workspace_id == job.workspace_id)
        ).scalars().first()
        if event is None:
            raise JobSetupError(f"Event {job.event_id} not found")
        objectives = load_objectives(session, event.id, job.workspace_id)
        if not objectives:
            raise JobSetupError("Event has no objectives")
        context = EventContext(event_id=event.id, workspace_id=job.workspace_id, title=event.title)
        contacts = self._load_contacts(session, job, batch)
        client = self.client

        present = [cid for cid in batch if cid in contacts]
        results = await self._gather_bounded(
            lambda cid: score_contact(contacts[cid], objectives, context, client), present,
        )
        outcomes = dict(zip(present, results))

        failed = 0
        for cid in batch:
            if cid not in outcomes:
                log.warning("Job %s: contact %s no longer exists", job.id, cid)
                failed += 1
                continue
            result = outcomes[cid]
            if isinstance(result, Exception):
                log.warning("Job %s: scoring contact %s failed: %s", job.id, cid, _describe(result))
                failed += 1
                continue
            save_score_result(session, cid, event.id, job.workspace_id, result)
            session.commit()
            if result.degraded:
                failed += 1
        return failed

    # -- enrichment -------------------------------------------------------

    async def _enrich_slice(self, session: Session, job: Job, batch: list[str]) -> int:
        contacts = self._load_contacts(session, job, batch)
        provider = self.enrichment_provider

        present = [cid for cid in batch if cid in contacts]
        for cid in present:
            apply_contact_patch(
                session, cid, job.workspace_id,
                ContactPatch(enrichment_status=EnrichmentStatus.IN_PROGRESS),
            )
            session.commit()

        results = await self._gather_bounded(lambda cid: provider.enrich(contacts[cid]), present)
        outcomes = dict(zip(present, results))

        failed = 0
        for cid in batch:
            if cid not in outcomes:
                log.warning("Job %s: contact %s no longer exists", job.id, cid)
                failed += 1
                continue
            result = outcomes[cid]
            if isinstance(result, Exception):
                result = EnrichmentResult(success=False, provider=provider.name, error=_describe(result))
            if not self._save_enrichment(session, job, cid, result):
                failed += 1
        return failed

    def _save_enrichment(self, session: Session, job: Job, contact_id: str, result: EnrichmentResult) -> bool:
        if not result.success:
            log.warning("Job %s: enrichment of %s failed: %s", job.id, contact_id, result.error)
            apply_contact_patch(
                session, contact_id, job.workspace_id,
                ContactPatch(enrichment_status=EnrichmentStatus.FAILED),
            )
            session.commit()
            return False
        patch = ContactPatch(
            ai_summary=result.ai_summary,
            industry=result.industry,
            role_seniority=result.role_seniority,
            enrichment_status=EnrichmentStatus.COMPLETED,
            enrichment_data_json=json.dumps({"provider": result.provider, **result.raw_data}),
            enriched_at=datetime.now(UTC),
        )
        apply_contact_patch(session, contact_id, job.workspace_id, patch, add_cost_cents=result.cost_cents)
        session.commit()
        return True


def _describe(exc: Exception) -> str:
    if isinstance(exc, TimeoutError):
        return "provider call timed out"
    if isinstance(exc, LLMCallError):
        return f"{exc} (retryable={exc.retryable})"
    return f"{type(exc).__name__}: {exc}"


async def run_tick(client: LLMClient | None = None, settings: Settings | None = None) -> dict[str, int]:
    """Convenience wrapper used by the cron endpoint and the CLI."""
    return await BatchProcessor(client=client, settings=settings).run_tick()
