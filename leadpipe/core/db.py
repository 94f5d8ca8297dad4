"""PostgreSQL implementation of the lead store."""

import logging
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg2
from psycopg2 import extras, pool

from leadpipe.core.config import get_settings
from leadpipe.core.errors import JobNotFoundError, PersistenceError
from leadpipe.core.models import Candidate, Job, JobProgress, JobStatus, JobSummary, Lead, Signal
from leadpipe.core.query import parse_query
from leadpipe.core.store import LeadStore

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.ThreadedConnectionPool] = None


def init_pool(minconn: int = 1, maxconn: int = 5, database_url: Optional[str] = None) -> pool.ThreadedConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        dsn = database_url or get_settings().database_url
        if not dsn:
            raise RuntimeError("DATABASE_URL is required for database connections")
        _connection_pool = pool.ThreadedConnectionPool(
            minconn,
            maxconn,
            dsn=dsn,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    finally:
        pg_pool.putconn(conn)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS search_jobs (
    id UUID PRIMARY KEY,
    query JSONB NOT NULL,
    profile TEXT NOT NULL,
    status TEXT NOT NULL,
    summary JSONB NOT NULL,
    progress JSONB NOT NULL,
    error TEXT,
    cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS businesses (
    id UUID PRIMARY KEY,
    name TEXT NOT NULL,
    address TEXT NOT NULL,
    phone TEXT,
    website TEXT,
    provider TEXT NOT NULL,
    provider_ref TEXT,
    lat DOUBLE PRECISION,
    lng DOUBLE PRECISION,
    franchise_guess BOOLEAN,
    rating DOUBLE PRECISION,
    review_count INTEGER,
    hours_listed BOOLEAN NOT NULL DEFAULT FALSE,
    types JSONB NOT NULL DEFAULT '[]'::jsonb,
    raw JSONB,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS signals (
    seq BIGSERIAL PRIMARY KEY,
    business_id UUID NOT NULL REFERENCES businesses (id),
    type TEXT NOT NULL,
    value JSONB NOT NULL,
    confidence DOUBLE PRECISION NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
    source_key TEXT NOT NULL,
    evidence_url TEXT,
    evidence_snippet TEXT,
    detected_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS signals_business_type_idx ON signals (business_id, type, seq);

CREATE TABLE IF NOT EXISTS lead_views (
    search_job_id UUID NOT NULL REFERENCES search_jobs (id),
    business_id UUID NOT NULL REFERENCES businesses (id),
    name TEXT NOT NULL DEFAULT '',
    score INTEGER NOT NULL,
    subscores JSONB NOT NULL,
    weighted_subscores JSONB NOT NULL,
    justifications JSONB NOT NULL,
    position INTEGER NOT NULL,
    profile TEXT NOT NULL,
    rank INTEGER,
    constraints_matched BOOLEAN NOT NULL DEFAULT TRUE,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (search_job_id, business_id)
);
"""

_INSERT_JOB = """
INSERT INTO search_jobs (
    id, query, profile, status, summary, progress, error, cancel_requested, created_at, updated_at
) VALUES (
    %(id)s, %(query)s, %(profile)s, %(status)s, %(summary)s, %(progress)s,
    %(error)s, %(cancel_requested)s, %(created_at)s, %(updated_at)s
);
"""

_UPDATE_JOB = """
UPDATE search_jobs SET
    profile = %(profile)s,
    status = %(status)s,
    summary = %(summary)s,
    progress = %(progress)s,
    error = %(error)s,
    cancel_requested = %(cancel_requested)s,
    updated_at = %(updated_at)s
WHERE id = %(id)s;
"""

_UPSERT_BUSINESS = """
INSERT INTO businesses (
    id, name, address, phone, website, provider, provider_ref, lat, lng,
    franchise_guess, rating, review_count, hours_listed, types, raw, updated_at
) VALUES (
    %(id)s, %(name)s, %(address)s, %(phone)s, %(website)s, %(provider)s, %(provider_ref)s,
    %(lat)s, %(lng)s, %(franchise_guess)s, %(rating)s, %(review_count)s, %(hours_listed)s,
    %(types)s, %(raw)s, NOW()
)
ON CONFLICT (id) DO UPDATE SET
    name = EXCLUDED.name,
    address = EXCLUDED.address,
    phone = COALESCE(EXCLUDED.phone, businesses.phone),
    website = COALESCE(EXCLUDED.website, businesses.website),
    provider = EXCLUDED.provider,
    provider_ref = COALESCE(EXCLUDED.provider_ref, businesses.provider_ref),
    lat = COALESCE(EXCLUDED.lat, businesses.lat),
    lng = COALESCE(EXCLUDED.lng, businesses.lng),
    franchise_guess = EXCLUDED.franchise_guess,
    rating = COALESCE(EXCLUDED.rating, businesses.rating),
    review_count = COALESCE(EXCLUDED.review_count, businesses.review_count),
    hours_listed = EXCLUDED.hours_listed,
    types = EXCLUDED.types,
    raw = COALESCE(EXCLUDED.raw, businesses.raw),
    updated_at = NOW();
"""

_INSERT_SIGNAL = """
INSERT INTO signals (
    business_id, type, value, confidence, source_key, evidence_url, evidence_snippet, detected_at
) VALUES (
    %(business_id)s, %(type)s, %(value)s, %(confidence)s, %(source_key)s,
    %(evidence_url)s, %(evidence_snippet)s, %(detected_at)s
);
"""

_UPSERT_LEAD = """
INSERT INTO lead_views (
    search_job_id, business_id, name, score, subscores, weighted_subscores, justifications,
    position, profile, rank, constraints_matched, updated_at
) VALUES (
    %(job_id)s, %(business_id)s, %(name)s, %(score)s, %(subscores)s, %(weighted_subscores)s,
    %(justifications)s, %(position)s, %(profile)s, %(rank)s, %(constraints_matched)s, NOW()
)
ON CONFLICT (search_job_id, business_id) DO UPDATE SET
    name = EXCLUDED.name,
    score = EXCLUDED.score,
    subscores = EXCLUDED.subscores,
    weighted_subscores = EXCLUDED.weighted_subscores,
    justifications = EXCLUDED.justifications,
    position = EXCLUDED.position,
    profile = EXCLUDED.profile,
    rank = EXCLUDED.rank,
    constraints_matched = EXCLUDED.constraints_matched,
    updated_at = NOW();
"""

_UPDATE_RANK = """
UPDATE lead_views SET rank = %(rank)s, updated_at = NOW()
WHERE search_job_id = %(job_id)s AND business_id = %(business_id)s;
"""


def _job_params(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "query": extras.Json(job.query.to_dict()),
        "profile": job.profile,
        "status": job.status.value,
        "summary": extras.Json(asdict(job.summary)),
        "progress": extras.Json(asdict(job.progress)),
        "error": job.error,
        "cancel_requested": job.cancel_requested,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
    }


def _candidate_params(candidate: Candidate) -> Dict[str, Any]:
    return {
        "id": candidate.id,
        "name": candidate.name,
        "address": candidate.address,
        "phone": candidate.phone,
        "website": candidate.website,
        "provider": candidate.provider,
        "provider_ref": candidate.provider_ref,
        "lat": candidate.lat,
        "lng": candidate.lng,
        "franchise_guess": candidate.franchise_guess,
        "rating": candidate.rating,
        "review_count": candidate.review_count,
        "hours_listed": candidate.hours_listed,
        "types": extras.Json(list(candidate.types)),
        "raw": extras.Json(candidate.raw_snapshot) if candidate.raw_snapshot is not None else None,
    }


def _signal_params(signal: Signal) -> Dict[str, Any]:
    return {
        "business_id": signal.business_id,
        "type": signal.type,
        "value": extras.Json(signal.value),
        "confidence": signal.confidence,
        "source_key": signal.source_key,
        "evidence_url": signal.evidence_url,
        "evidence_snippet": signal.evidence_snippet,
        "detected_at": signal.detected_at,
    }


def _lead_params(lead: Lead) -> Dict[str, Any]:
    return {
        "job_id": lead.job_id,
        "business_id": lead.business_id,
        "name": lead.name,
        "score": lead.score,
        "subscores": extras.Json(lead.subscores),
        "weighted_subscores": extras.Json(lead.weighted_subscores),
        "justifications": extras.Json(lead.justifications),
        "position": lead.position,
        "profile": lead.profile,
        "rank": lead.rank,
        "constraints_matched": lead.constraints_matched,
    }


def _row_to_job(row: Dict[str, Any]) -> Job:
    summary = row.get("summary") or {}
    progress = row.get("progress") or {}
    return Job(
        id=str(row["id"]),
        query=parse_query(row["query"]),
        profile=row["profile"],
        status=JobStatus(row["status"]),
        summary=JobSummary(**summary),
        progress=JobProgress(**progress),
        error=row.get("error"),
        cancel_requested=bool(row.get("cancel_requested")),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_signal(row: Dict[str, Any]) -> Signal:
    detected_at = row["detected_at"]
    if isinstance(detected_at, str):
        detected_at = datetime.fromisoformat(detected_at)
    return Signal(
        business_id=str(row["business_id"]),
        type=row["type"],
        value=row["value"],
        confidence=float(row["confidence"]),
        source_key=row["source_key"],
        evidence_url=row.get("evidence_url"),
        evidence_snippet=row.get("evidence_snippet"),
        detected_at=detected_at,
    )


def _row_to_lead(row: Dict[str, Any]) -> Lead:
    return Lead(
        job_id=str(row["search_job_id"]),
        business_id=str(row["business_id"]),
        score=int(row["score"]),
        subscores=row["subscores"],
        weighted_subscores=row["weighted_subscores"],
        justifications=list(row["justifications"]),
        position=int(row["position"]),
        profile=row["profile"],
        name=row.get("name") or "",
        rank=row.get("rank"),
        constraints_matched=bool(row.get("constraints_matched", True)),
    )


def _row_to_candidate(row: Dict[str, Any]) -> Candidate:
    return Candidate(
        id=str(row["id"]),
        name=row["name"],
        address=row["address"],
        provider_ref=row.get("provider_ref"),
        provider=row.get("provider") or "google_places",
        website=row.get("website"),
        phone=row.get("phone"),
        lat=row.get("lat"),
        lng=row.get("lng"),
        franchise_guess=row.get("franchise_guess"),
        rating=row.get("rating"),
        review_count=row.get("review_count"),
        hours_listed=bool(row.get("hours_listed")),
        types=tuple(row.get("types") or ()),
        raw_snapshot=row.get("raw"),
    )


class PostgresLeadStore(LeadStore):
    """Lead store backed by the shared psycopg2 connection pool."""

    def __init__(self, database_url: Optional[str] = None, *, maxconn: int = 5) -> None:
        self.database_url = database_url
        self.maxconn = maxconn

    @contextmanager
    def _cursor(self, operation: str) -> Iterator[Any]:
        init_pool(maxconn=self.maxconn, database_url=self.database_url)
        try:
            with get_connection() as conn:
                try:
                    with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                        yield cur
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            raise PersistenceError(operation, str(exc).strip(), transient=True) from exc
        except psycopg2.Error as exc:
            raise PersistenceError(operation, str(exc).strip()) from exc

    def ensure_schema(self) -> None:
        with self._cursor("ensure_schema") as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("Database schema ensured")

    def create_job(self, job: Job) -> None:
        with self._cursor("create_job") as cur:
            cur.execute(_INSERT_JOB, _job_params(job))

    def update_job(self, job: Job) -> None:
        with self._cursor("update_job") as cur:
            cur.execute(_UPDATE_JOB, _job_params(job))
            if cur.rowcount == 0:
                raise JobNotFoundError(f"job {job.id} not found")

    def get_job(self, job_id: str) -> Job:
        with self._cursor("get_job") as cur:
            cur.execute("SELECT * FROM search_jobs WHERE id = %(id)s;", {"id": job_id})
            row = cur.fetchone()
        if row is None:
            raise JobNotFoundError(f"job {job_id} not found")
        return _row_to_job(row)

    def upsert_candidate(self, candidate: Candidate) -> None:
        with self._cursor("upsert_candidate") as cur:
            cur.execute(_UPSERT_BUSINESS, _candidate_params(candidate))
        logger.debug("Upserted business %s", candidate.name)

    def get_candidate(self, business_id: str) -> Optional[Candidate]:
        with self._cursor("get_candidate") as cur:
            cur.execute("SELECT * FROM businesses WHERE id = %(id)s;", {"id": business_id})
            row = cur.fetchone()
        return _row_to_candidate(row) if row else None

    def append_signals(self, signals: Sequence[Signal]) -> None:
        if not signals:
            return
        with self._cursor("append_signals") as cur:
            extras.execute_batch(cur, _INSERT_SIGNAL, [_signal_params(signal) for signal in signals])

    def get_signals(self, business_id: str) -> List[Signal]:
        with self._cursor("get_signals") as cur:
            cur.execute(
                "SELECT * FROM signals WHERE business_id = %(business_id)s ORDER BY seq;",
                {"business_id": business_id},
            )
            rows = cur.fetchall()
        return [_row_to_signal(row) for row in rows]

    def upsert_lead(self, lead: Lead) -> None:
        with self._cursor("upsert_lead") as cur:
            cur.execute(_UPSERT_LEAD, _lead_params(lead))

    def list_leads(self, job_id: str) -> List[Lead]:
        with self._cursor("list_leads") as cur:
            cur.execute("SELECT 1 FROM search_jobs WHERE id = %(id)s;", {"id": job_id})
            if cur.fetchone() is None:
                raise JobNotFoundError(f"job {job_id} not found")
            cur.execute(
                "SELECT * FROM lead_views WHERE search_job_id = %(job_id)s ORDER BY position;",
                {"job_id": job_id},
            )
            rows = cur.fetchall()
        return [_row_to_lead(row) for row in rows]

    def update_ranks(self, job_id: str, ranks: Dict[str, int]) -> None:
        if not ranks:
            return
        params = [{"job_id": job_id, "business_id": business_id, "rank": rank} for business_id, rank in ranks.items()]
        with self._cursor("update_ranks") as cur:
            extras.execute_batch(cur, _UPDATE_RANK, params)
