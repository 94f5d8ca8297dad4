"""CLI job that discovers, scores and ranks leads for one query."""

import argparse
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from leadpipe.core.config import get_settings
from leadpipe.core.models import Job, JobStatus
from leadpipe.core.query import DEFAULT_RADIUS_KM, SORT_OPTIONS
from leadpipe.jobs.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


def run_query_job(
    *,
    vertical: str,
    city: str,
    state: str,
    radius_km: float,
    target: int,
    profile: Optional[str],
    exclusions: Optional[List[str]] = None,
    sort_by: str = "score_desc",
    orchestrator: Optional[JobOrchestrator] = None,
) -> Job:
    payload = {
        "version": 1,
        "vertical": vertical,
        "geo": {"city": city, "state": state, "radius_km": radius_km},
        "result_size": {"target": target},
        "exclusions": exclusions or [],
        "sort_by": sort_by,
    }

    owns_orchestrator = orchestrator is None
    if orchestrator is None:
        orchestrator = JobOrchestrator(executor=ThreadPoolExecutor(max_workers=1))
    try:
        job = orchestrator.create_job(payload, profile=profile)
        logger.info("Assigned job_id=%s", job.id)
        job = orchestrator.run_job(job.id)

        for lead in orchestrator.list_leads(job.id):
            logger.info(
                "#%s %-40s score=%3d ICP=%.0f Pain=%.0f Reach=%.0f Risk=%.0f",
                lead.rank,
                lead.name[:40],
                lead.score,
                lead.subscores["ICP"],
                lead.subscores["Pain"],
                lead.subscores["Reachability"],
                lead.subscores["ComplianceRisk"],
            )

        summary = job.summary
        logger.info(
            "Completed run: status=%s found=%d enriched=%d scored=%d time_ms=%d",
            job.status.value,
            summary.total_found,
            summary.total_enriched,
            summary.total_scored,
            summary.processing_time_ms,
        )
        if job.error:
            logger.error("Job error: %s", job.error)
        return job
    finally:
        if owns_orchestrator:
            orchestrator.shutdown()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Discover and score leads for a vertical in a city")
    parser.add_argument("--vertical", dest="vertical", required=True, help="Business vertical, e.g. dentist")
    parser.add_argument("--city", dest="city", required=True, help="City to search")
    parser.add_argument("--state", dest="state", required=True, help="State or region code")
    parser.add_argument("--radius-km", dest="radius_km", type=float, default=DEFAULT_RADIUS_KM,
                        help="Search radius in kilometres")
    parser.add_argument("--target", dest="target", type=int, default=25, help="Number of unique candidates")
    parser.add_argument("--profile", dest="profile", default=None,
                        help="Scoring profile name (defaults to DEFAULT_PROFILE)")
    parser.add_argument("--exclude", dest="exclusions", action="append", default=[],
                        help="Skip businesses whose name contains this text (repeatable)")
    parser.add_argument("--sort-by", dest="sort_by", choices=SORT_OPTIONS, default="score_desc")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)

    job = run_query_job(
        vertical=args.vertical,
        city=args.city,
        state=args.state,
        radius_km=args.radius_km,
        target=args.target,
        profile=args.profile or get_settings().default_profile,
        exclusions=args.exclusions,
        sort_by=args.sort_by,
    )
    return 0 if job.status is JobStatus.COMPLETED else 1


if __name__ == "__main__":
    raise SystemExit(main())
