"""
Dispatch service: preview route optimizations and apply them.

Optimize and apply are separate calls and nothing is stored in between; the
caller echoes the change list back. The optimization id carries a fingerprint
of the jobs it covered so apply can refuse a list that went stale.
"""

import hashlib
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .distance import Coordinates, DistanceProvider
from .errors import InvalidRequestError, NotFoundError, PreconditionFailedError, StaleOptimizationError
from .eta import carer_origin, pool_location
from .models import Job, JobStatus
from .repo import DatabaseRepository
from .router import RouteOptimizationResult, RouteOptimizer
from .schemas import (
    AppConfig, ApplyResponse, OptimizationSummary, OptimizeResponse, RouteChange
)
from .solver_greedy import Stop
from .util.time_utils import day_bounds


logger = logging.getLogger(__name__)


def job_fingerprint(jobs: List[Job]) -> str:
    """Digest of the fields an optimization depends on. Sequence is left out so re-applying is idempotent."""
    digest = hashlib.sha256()
    for job in sorted(jobs, key=lambda j: j.id):
        digest.update(
            f"{job.id}|{JobStatus(job.status).value}|{job.assigned_carer_id}|{job.pool_id}|"
            f"{job.window_start.isoformat()}|{job.window_end.isoformat()};".encode()
        )
    return digest.hexdigest()[:16]


def split_optimization_id(optimization_id: str) -> Optional[str]:
    """Fingerprint part of 'opt_<ms>_<fingerprint>'; None for ids without one."""
    if not optimization_id.startswith("opt_"):
        raise InvalidRequestError(f"Malformed optimizationId '{optimization_id}'")
    parts = optimization_id.split("_")
    return parts[2] if len(parts) >= 3 and parts[2] else None


class DispatchService:
    """Optimize and apply same-day routes."""

    def __init__(
        self,
        config: AppConfig,
        repo: DatabaseRepository,
        distance_provider: DistanceProvider,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.config = config
        self.repo = repo
        self.distance_provider = distance_provider
        self.optimizer = RouteOptimizer(config, distance_provider)
        self.clock = clock

    async def optimize(self, org_id: int, date: str, carer_id: Optional[int] = None) -> OptimizeResponse:
        """
        Preview a reordering of the day's scheduled jobs.

        With a carer id only that carer's jobs are ordered; otherwise each
        carer's jobs (and the unassigned ones) form their own route.
        """
        if carer_id is not None and self.repo.get_carer(org_id, carer_id) is None:
            raise NotFoundError("Carer not found")

        jobs = self.repo.get_jobs_by_date(org_id, date, carer_id=carer_id, statuses=[JobStatus.SCHEDULED])
        api_key = self.repo.get_org_maps_key(org_id)
        day_start, _ = day_bounds(date)

        groups: "OrderedDict[Optional[int], List[Job]]" = OrderedDict()
        for job in sorted(jobs, key=lambda j: (j.assigned_carer_id is None, j.assigned_carer_id or 0)):
            groups.setdefault(job.assigned_carer_id, []).append(job)

        changes: List[RouteChange] = []
        current_m = optimized_m = saved_m = saved_min = 0.0
        for group_carer_id, group_jobs in groups.items():
            result = await self._optimize_group(org_id, group_carer_id, group_jobs, day_start, api_key)
            changes.extend(result.changes)
            current_m += result.current_distance_meters
            optimized_m += result.optimized_distance_meters
            saved_m += result.distance_saved_meters
            saved_min += result.time_saved_minutes

        optimization_id = f"opt_{int(self.clock().timestamp() * 1000)}_{job_fingerprint(jobs)}"
        logger.info(f"Optimization {optimization_id}: {len(changes)} changes across {len(groups)} routes")
        return OptimizeResponse(
            optimization_id=optimization_id,
            summary=OptimizationSummary(
                savings_km=round(saved_m / 1000.0, 2),
                savings_min=round(saved_min, 1),
                current_distance_km=round(current_m / 1000.0, 2),
                optimized_distance_km=round(optimized_m / 1000.0, 2),
            ),
            changes=changes,
        )

    async def _optimize_group(
        self,
        org_id: int,
        carer_id: Optional[int],
        jobs: List[Job],
        day_start: datetime,
        api_key: Optional[str]
    ) -> RouteOptimizationResult:
        carer = self.repo.get_carer(org_id, carer_id) if carer_id is not None else None
        stops = []
        for position, job in enumerate(jobs, start=1):
            stops.append(Stop(
                job_id=job.id,
                window_start=job.window_start,
                location=pool_location(self.repo.get_pool(org_id, job.pool_id)),
                original_sequence=job.sequence or position,
            ))
        start: Optional[Coordinates] = carer_origin(carer)
        return await self.optimizer.optimize(stops, start, day_start, api_key)

    async def apply(self, org_id: int, optimization_id: str, changes: List[RouteChange]) -> ApplyResponse:
        """Write each change's toSeq onto its job. Re-applying the same list is a no-op."""
        expected = split_optimization_id(optimization_id)
        if not changes:
            return ApplyResponse(success=True, optimization_id=optimization_id, jobs_updated=0)

        sequences: Dict[int, int] = {c.job_id: c.to_seq for c in changes}
        jobs = self.repo.get_jobs_by_ids(org_id, list(sequences))
        missing = sorted(set(sequences) - {j.id for j in jobs})
        if missing:
            raise NotFoundError(f"Jobs not found: {', '.join(str(i) for i in missing)}")

        closed = [j.id for j in jobs if JobStatus(j.status).terminal]
        if closed:
            raise PreconditionFailedError(
                f"Jobs already closed: {', '.join(str(i) for i in sorted(closed))}"
            )

        if expected is not None and job_fingerprint(jobs) != expected:
            raise StaleOptimizationError(
                "Jobs changed since this optimization was computed; optimize again"
            )

        updated = self.repo.set_sequences(org_id, sequences)
        logger.info(f"Applied optimization {optimization_id}: {updated} jobs resequenced")
        return ApplyResponse(success=True, optimization_id=optimization_id, jobs_updated=updated)
