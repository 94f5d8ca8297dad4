"""Lead store contract, the in-memory store and the ranker."""

from __future__ import annotations

import copy
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from leadpipe.core.errors import JobNotFoundError, PersistenceError
from leadpipe.core.models import Candidate, Job, Lead, Signal

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LeadStore:
    """Persistence contract used by the orchestrator.

    Signals are append-only and returned in insertion order. Leads are
    upserted by ``(job_id, business_id)``. Implementations must be
    thread-safe and raise PersistenceError on failure.
    """

    def create_job(self, job: Job) -> None:
        raise NotImplementedError

    def update_job(self, job: Job) -> None:
        raise NotImplementedError

    def get_job(self, job_id: str) -> Job:
        raise NotImplementedError

    def upsert_candidate(self, candidate: Candidate) -> None:
        raise NotImplementedError

    def get_candidate(self, business_id: str) -> Optional[Candidate]:
        raise NotImplementedError

    def append_signals(self, signals: Sequence[Signal]) -> None:
        raise NotImplementedError

    def get_signals(self, business_id: str) -> List[Signal]:
        raise NotImplementedError

    def upsert_lead(self, lead: Lead) -> None:
        raise NotImplementedError

    def list_leads(self, job_id: str) -> List[Lead]:
        """Leads of one job ordered by position."""
        raise NotImplementedError

    def update_ranks(self, job_id: str, ranks: Dict[str, int]) -> None:
        raise NotImplementedError


class InMemoryLeadStore(LeadStore):
    """Process-local store used when no database is configured and in tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._candidates: Dict[str, Candidate] = {}
        self._signals: Dict[str, List[Signal]] = {}
        self._leads: Dict[str, Dict[str, Lead]] = {}

    def create_job(self, job: Job) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise PersistenceError("create_job", f"job {job.id} already exists")
            self._jobs[job.id] = copy.deepcopy(job)
            self._leads.setdefault(job.id, {})

    def update_job(self, job: Job) -> None:
        with self._lock:
            if job.id not in self._jobs:
                raise JobNotFoundError(f"job {job.id} not found")
            self._jobs[job.id] = copy.deepcopy(job)

    def get_job(self, job_id: str) -> Job:
        with self._lock:
            try:
                return copy.deepcopy(self._jobs[job_id])
            except KeyError:
                raise JobNotFoundError(f"job {job_id} not found") from None

    def upsert_candidate(self, candidate: Candidate) -> None:
        with self._lock:
            self._candidates[candidate.id] = copy.deepcopy(candidate)

    def get_candidate(self, business_id: str) -> Optional[Candidate]:
        with self._lock:
            candidate = self._candidates.get(business_id)
            return copy.deepcopy(candidate) if candidate else None

    def append_signals(self, signals: Sequence[Signal]) -> None:
        with self._lock:
            for signal in signals:
                self._signals.setdefault(signal.business_id, []).append(signal)

    def get_signals(self, business_id: str) -> List[Signal]:
        with self._lock:
            return list(self._signals.get(business_id, ()))

    def upsert_lead(self, lead: Lead) -> None:
        with self._lock:
            if lead.job_id not in self._jobs:
                raise JobNotFoundError(f"job {lead.job_id} not found")
            self._leads[lead.job_id][lead.business_id] = copy.deepcopy(lead)

    def list_leads(self, job_id: str) -> List[Lead]:
        with self._lock:
            if job_id not in self._jobs:
                raise JobNotFoundError(f"job {job_id} not found")
            leads = [copy.deepcopy(lead) for lead in self._leads[job_id].values()]
        return sorted(leads, key=lambda lead: lead.position)

    def update_ranks(self, job_id: str, ranks: Dict[str, int]) -> None:
        with self._lock:
            leads = self._leads.get(job_id)
            if leads is None:
                raise JobNotFoundError(f"job {job_id} not found")
            for business_id, rank in ranks.items():
                if business_id in leads:
                    leads[business_id].rank = rank


def assign_ranks(leads: Iterable[Lead]) -> Dict[str, int]:
    """Dense 1..N ranks: score descending, ties by ascending position."""
    ordered = sorted(leads, key=lambda lead: (-lead.score, lead.position))
    return {lead.business_id: index for index, lead in enumerate(ordered, start=1)}


_SORT_KEYS: Dict[str, Callable[[Lead], tuple]] = {
    "score_desc": lambda lead: (-lead.score, lead.position),
    "score_asc": lambda lead: (lead.score, lead.position),
    "name_asc": lambda lead: (lead.name.lower(), lead.position),
}


def sort_leads(leads: Iterable[Lead], sort_by: str = "score_desc") -> List[Lead]:
    try:
        key = _SORT_KEYS[sort_by]
    except KeyError:
        raise ValueError(f"sort_by must be one of {sorted(_SORT_KEYS)}") from None
    return sorted(leads, key=key)


def with_retries(
    operation: str,
    fn: Callable[[], T],
    *,
    retries: int,
    backoff: float,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn``, retrying transient PersistenceErrors with exponential backoff."""
    attempt = 0
    while True:
        try:
            return fn()
        except PersistenceError as exc:
            if not exc.transient or attempt >= retries:
                raise
            delay = backoff * (2 ** attempt)
            attempt += 1
            logger.warning("%s failed (%s); retry %d/%d in %.2fs", operation, exc, attempt, retries, delay)
            sleep(delay)
