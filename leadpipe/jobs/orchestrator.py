"""Job orchestration: discovery → extraction pool → scoring → persistence → ranking."""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from leadpipe.core.catalogue import PatternCatalogue, load_catalogue
from leadpipe.core.config import Settings, get_settings
from leadpipe.core.discovery import PlaceDiscovery, PlacesProvider, build_provider
from leadpipe.core.errors import JobStateError, PersistenceError, ProviderError, ValidationError
from leadpipe.core.models import Candidate, Job, JobProgress, JobStatus, Lead, Query, Signal, utcnow
from leadpipe.core.profiles import ProfileRegistry, ScoringProfile, load_profiles
from leadpipe.core.query import SORT_OPTIONS, parse_query, query_summary
from leadpipe.core.scoring import match_constraints, score
from leadpipe.core.signals import SignalExtractor
from leadpipe.core.store import InMemoryLeadStore, LeadStore, assign_ranks, sort_leads, with_retries

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled"
_WORKER_DONE = object()


def build_store(settings: Optional[Settings] = None) -> LeadStore:
    """PostgreSQL when DATABASE_URL is set, otherwise an in-memory store."""
    settings = settings or get_settings()
    if not settings.database_url:
        return InMemoryLeadStore()
    from leadpipe.core.db import PostgresLeadStore

    store = PostgresLeadStore(settings.database_url, maxconn=max(5, settings.max_concurrent_jobs * 2))
    store.ensure_schema()
    return store


@dataclass
class ExtractionResult:
    candidate: Candidate
    position: int
    signals: List[Signal]
    error: Optional[str] = None


@dataclass
class JobRun:
    """State owned by one running job; discarded when the run ends."""

    job: Job
    profile: ScoringProfile
    candidate_queue: "queue.Queue[Optional[tuple]]"
    result_queue: "queue.Queue[Any]" = field(default_factory=queue.Queue)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    leads: Dict[str, Lead] = field(default_factory=dict)
    found: int = 0
    cancel_requested: bool = False
    discovery_error: Optional[Exception] = None
    started: float = field(default_factory=time.monotonic)


class JobOrchestrator:
    def __init__(
        self,
        store: Optional[LeadStore] = None,
        *,
        settings: Optional[Settings] = None,
        provider_factory: Optional[Callable[[Settings], PlacesProvider]] = None,
        extractor: Optional[SignalExtractor] = None,
        profiles: Optional[ProfileRegistry] = None,
        catalogue: Optional[PatternCatalogue] = None,
        executor: Optional[Executor] = None,
        policy: str = "most_recent",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store if store is not None else build_store(self.settings)
        self.catalogue = catalogue or load_catalogue(self.settings.pattern_catalogue_path or None)
        self.profiles = profiles or load_profiles(self.settings.profiles_path or None)
        self.extractor = extractor or SignalExtractor(self.settings, self.catalogue)
        self.provider_factory = provider_factory or build_provider
        self.policy = policy
        self._sleep = sleep
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_jobs, thread_name_prefix="leadpipe-job"
        )
        self._lock = threading.Lock()
        self._runs: Dict[str, JobRun] = {}
        self._pending_profiles: Dict[str, ScoringProfile] = {}

    def _retry(self, operation: str, fn: Callable[[], Any]) -> Any:
        return with_retries(
            operation,
            fn,
            retries=self.settings.persistence_retries,
            backoff=self.settings.persistence_backoff,
            sleep=self._sleep,
        )

    # ---------- Submission ----------

    def create_job(
        self,
        query_or_payload: Union[Query, Mapping[str, Any]],
        profile: Union[str, Mapping[str, Any], ScoringProfile, None] = None,
    ) -> Job:
        """Validate and store a queued job without scheduling it."""
        query = parse_query(query_or_payload)
        scoring_profile = self.profiles.resolve(
            profile if profile is not None else query.lead_profile or self.settings.default_profile
        )
        job = Job(
            id=str(uuid.uuid4()),
            query=query,
            profile=scoring_profile.name,
            progress=JobProgress(processed=0, target=query.target),
        )
        self._retry("create_job", lambda: self.store.create_job(job))
        with self._lock:
            self._pending_profiles[job.id] = scoring_profile
        logger.info("Queued job %s: %s profile=%s", job.id, query_summary(query), job.profile)
        return job

    def submit_query(
        self,
        query_or_payload: Union[Query, Mapping[str, Any]],
        profile: Union[str, Mapping[str, Any], ScoringProfile, None] = None,
    ) -> Job:
        job = self.create_job(query_or_payload, profile)
        self._executor.submit(self._run_job_safe, job.id)
        return job

    def _run_job_safe(self, job_id: str) -> None:
        try:
            self.run_job(job_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Job %s crashed: %s", job_id, exc)

    # ---------- Execution ----------

    def run_job(self, job_id: str) -> Job:
        with self._lock:
            job = self.store.get_job(job_id)
            profile = self._pending_profiles.pop(job_id, None)
            if job.status is not JobStatus.QUEUED:
                logger.info("Job %s is %s; not running it", job_id, job.status.value)
                return job
            if profile is None:
                profile = self.profiles.resolve(job.profile)
            run = JobRun(
                job=job,
                profile=profile,
                candidate_queue=queue.Queue(maxsize=self.settings.extraction_workers * 2),
            )
            job.status = JobStatus.RUNNING
            job.updated_at = utcnow()
            self._retry("update_job", lambda: self.store.update_job(job))
            self._runs[job_id] = run

        logger.info("Job %s running with profile %s", job_id, profile.name)
        try:
            return self._execute(run)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Job %s failed unexpectedly", job_id)
            return self._finish(run, JobStatus.FAILED, f"internal error: {exc}")
        finally:
            with self._lock:
                self._runs.pop(job_id, None)

    def _execute(self, run: JobRun) -> Job:
        job = run.job
        try:
            provider = self.provider_factory(self.settings)
        except ProviderError as exc:
            logger.error("Job %s cannot start discovery: %s", job.id, exc)
            return self._finish(run, JobStatus.FAILED, str(exc))

        discovery = PlaceDiscovery(provider, self.settings, self.catalogue, sleep=self._sleep)
        workers = self.settings.extraction_workers
        persist_error: Optional[PersistenceError] = None

        with ThreadPoolExecutor(max_workers=workers + 1, thread_name_prefix=f"job-{job.id[:8]}") as pool:
            pool.submit(self._discover, run, discovery, workers)
            for _ in range(workers):
                pool.submit(self._extraction_worker, run)

            done = 0
            while done < workers:
                item = run.result_queue.get()
                if item is _WORKER_DONE:
                    done += 1
                    continue
                if persist_error is not None:
                    continue
                try:
                    self._record_result(run, item)
                except PersistenceError as exc:
                    logger.error("Job %s could not persist %s: %s", job.id, item.candidate.name, exc)
                    persist_error = exc
                    run.cancel_event.set()
                except Exception:
                    run.cancel_event.set()
                    raise

        try:
            self._rank(run)
        except PersistenceError as exc:
            logger.error("Job %s ranking failed: %s", job.id, exc)
            persist_error = persist_error or exc

        if persist_error is not None:
            return self._finish(run, JobStatus.FAILED, f"persistence failure: {persist_error}")
        if run.discovery_error is not None:
            return self._finish(run, JobStatus.FAILED, str(run.discovery_error))
        if run.cancel_requested:
            return self._finish(run, JobStatus.FAILED, CANCELLED_ERROR)
        return self._finish(run, JobStatus.COMPLETED)

    def _discover(self, run: JobRun, discovery: PlaceDiscovery, workers: int) -> None:
        try:
            for candidate in discovery.discover(run.job.query, should_stop=run.cancel_event.is_set):
                if run.cancel_event.is_set():
                    logger.info("Job %s cancelled; stopping discovery", run.job.id)
                    break
                run.candidate_queue.put((run.found, candidate))
                run.found += 1
        # Candidates already queued are still extracted and scored.
        except ProviderError as exc:
            logger.error("Job %s discovery failed: %s", run.job.id, exc)
            run.discovery_error = exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("Job %s discovery crashed", run.job.id)
            run.discovery_error = exc
        finally:
            for _ in range(workers):
                run.candidate_queue.put(None)

    def _extraction_worker(self, run: JobRun) -> None:
        try:
            while True:
                item = run.candidate_queue.get()
                if item is None:
                    break
                if run.cancel_event.is_set():
                    continue
                position, candidate = item
                try:
                    result = ExtractionResult(candidate, position, self.extractor.extract(candidate))
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Extraction crashed for %s: %s", candidate.name, exc)
                    result = ExtractionResult(candidate, position, [], error=str(exc))
                run.result_queue.put(result)
        finally:
            run.result_queue.put(_WORKER_DONE)

    def _record_result(self, run: JobRun, result: ExtractionResult) -> None:
        """Persist one candidate's signals and lead. Runs on the job's own thread only."""
        job = run.job
        candidate = result.candidate
        self._retry("upsert_candidate", lambda: self.store.upsert_candidate(candidate))
        self._retry("append_signals", lambda: self.store.append_signals(result.signals))
        history = self._retry("get_signals", lambda: self.store.get_signals(candidate.id))
        lead = self._build_lead(job, candidate.id, candidate.name, result.position, history, run.profile)
        self._retry("upsert_lead", lambda: self.store.upsert_lead(lead))
        run.leads[candidate.id] = lead

        if result.error is None:
            job.summary.total_enriched += 1
        job.summary.total_scored += 1
        job.progress.processed += 1
        job.cancel_requested = run.cancel_requested
        job.updated_at = utcnow()
        self._retry("update_job", lambda: self.store.update_job(job))
        logger.info(
            "Job %s scored %s: %d (%d/%d)",
            job.id, candidate.name, lead.score, job.progress.processed, job.progress.target,
        )

    def _build_lead(
        self, job: Job, business_id: str, name: str, position: int, history: List[Signal], profile: ScoringProfile
    ) -> Lead:
        result = score(history, profile, self.policy)
        matched = match_constraints(history, job.query.constraints, self.policy)
        return Lead(
            job_id=job.id,
            business_id=business_id,
            score=result.score,
            subscores=result.subscores,
            weighted_subscores=result.weighted_subscores,
            justifications=result.justifications,
            position=position,
            profile=profile.name,
            name=name,
            constraints_matched=matched.must_satisfied,
        )

    def _rank(self, run: JobRun) -> int:
        """Rank the leads scored during this run; the store is only written, not re-read."""
        ranks = assign_ranks(run.leads.values())
        self._retry("update_ranks", lambda: self.store.update_ranks(run.job.id, ranks))
        return len(ranks)

    def _finish(self, run: JobRun, status: JobStatus, error: Optional[str] = None) -> Job:
        job = run.job
        job.status = status
        job.error = error
        job.summary.total_found = run.found
        job.summary.processing_time_ms = int((time.monotonic() - run.started) * 1000)
        job.cancel_requested = run.cancel_requested
        job.updated_at = utcnow()
        try:
            self._retry("update_job", lambda: self.store.update_job(job))
        except PersistenceError as exc:
            logger.error("Job %s final state could not be saved: %s", job.id, exc)
        if status is JobStatus.COMPLETED:
            logger.info("Job %s completed: %s", job.id, job.to_dict()["summary"])
        else:
            logger.error("Job %s failed: %s", job.id, error)
        return replace(job)

    # ---------- Queries and follow-up operations ----------

    def get_job(self, job_id: str) -> Job:
        return self.store.get_job(job_id)

    def list_leads(self, job_id: str, sort_by: Optional[str] = None, only_matching: bool = False) -> List[Lead]:
        job = self.store.get_job(job_id)
        order = sort_by or job.query.sort_by
        if order not in SORT_OPTIONS:
            raise ValidationError(f"sort_by must be one of {', '.join(SORT_OPTIONS)}")
        leads = self.store.list_leads(job_id)
        if only_matching:
            leads = [lead for lead in leads if lead.constraints_matched]
        return sort_leads(leads, order)

    def rescore_job(
        self, job_id: str, profile_or_weights: Union[str, Mapping[str, Any], ScoringProfile, None]
    ) -> Dict[str, int]:
        """Rescore a completed job's leads from stored signals with another profile."""
        job = self.store.get_job(job_id)
        if job.status is not JobStatus.COMPLETED:
            raise JobStateError(f"job {job_id} is {job.status.value}; only completed jobs can be rescored")
        profile = self.profiles.resolve(profile_or_weights, default=job.profile)

        leads = self._retry("list_leads", lambda: self.store.list_leads(job_id))
        rescored: List[Lead] = []
        for lead in leads:
            history = self._retry("get_signals", lambda: self.store.get_signals(lead.business_id))
            rescored.append(self._build_lead(job, lead.business_id, lead.name, lead.position, history, profile))

        ranks = assign_ranks(rescored)
        for lead in rescored:
            lead.rank = ranks[lead.business_id]
            self._retry("upsert_lead", partial(self.store.upsert_lead, lead))
        logger.info("Rescored %d leads of job %s with profile %s", len(rescored), job_id, profile.name)
        return {"updated_count": len(rescored)}

    def cancel_job(self, job_id: str) -> Job:
        with self._lock:
            job = self.store.get_job(job_id)
            if job.status.is_terminal:
                raise JobStateError(f"job {job_id} is already {job.status.value}")
            run = self._runs.get(job_id)
            if run is not None:
                run.cancel_requested = True
                run.cancel_event.set()
                job.cancel_requested = True
                logger.info("Cancellation requested for running job %s", job_id)
                return job
            job.status = JobStatus.FAILED
            job.error = CANCELLED_ERROR
            job.cancel_requested = True
            job.updated_at = utcnow()
            self._pending_profiles.pop(job_id, None)
            self._retry("update_job", lambda: self.store.update_job(job))
            logger.info("Cancelled queued job %s", job_id)
            return job

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
