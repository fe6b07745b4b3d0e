"""
ETA maintenance for assigned jobs.
Recomputes and persists eta_minutes/distance_meters from the carer's position.
"""

import logging
import math
from datetime import datetime
from typing import Callable, Optional

from .distance import Coordinates, DistanceProvider
from .errors import NotFoundError
from .models import Carer, Job, JobStatus, Pool
from .repo import DatabaseRepository
from .schemas import AppConfig


logger = logging.getLogger(__name__)


def carer_origin(carer: Optional[Carer]) -> Optional[Coordinates]:
    """Live location when known, else home base."""
    if carer is None:
        return None
    if carer.current_lat is not None and carer.current_lng is not None:
        return Coordinates(carer.current_lat, carer.current_lng)
    if carer.home_base_lat is not None and carer.home_base_lng is not None:
        return Coordinates(carer.home_base_lat, carer.home_base_lng)
    return None


def pool_location(pool: Optional[Pool]) -> Optional[Coordinates]:
    if pool is None or not pool.has_coordinates:
        return None
    return Coordinates(pool.lat, pool.lng)


class ETARecalculator:
    """Keeps job ETAs in step with carer locations and assignments."""

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
        self.clock = clock

    async def recalculate_one(self, org_id: int, job_id: int) -> Optional[int]:
        """
        Recompute one job's ETA from its carer's position.

        Returns the new ETA in minutes, or None (without error) when the job
        has no carer or either location is unknown.
        """
        job = self.repo.get_job(org_id, job_id)
        if job is None:
            raise NotFoundError("Job not found")
        if job.assigned_carer_id is None:
            return None
        carer = self.repo.get_carer(org_id, job.assigned_carer_id)
        return await self.recalculate_from(org_id, job, carer_origin(carer))

    async def recalculate_from(self, org_id: int, job: Job, origin: Optional[Coordinates]) -> Optional[int]:
        """Recompute a job's ETA from an explicit origin."""
        destination = pool_location(self.repo.get_pool(org_id, job.pool_id))
        if origin is None or destination is None:
            logger.debug(f"Job {job.id}: carer or pool location unknown; ETA left empty")
            return None

        result = await self.distance_provider.distance(
            origin, destination, "driving", self.repo.get_org_maps_key(org_id)
        )
        eta_minutes = int(math.ceil(result.duration_seconds / 60.0))
        self.repo.update_job_fields(
            org_id, job.id,
            eta_minutes=eta_minutes,
            distance_meters=int(round(result.distance_meters)),
        )
        job.eta_minutes = eta_minutes
        job.distance_meters = int(round(result.distance_meters))
        return eta_minutes

    async def recalculate_for_carer_today(self, org_id: int, carer_id: int) -> int:
        """Recompute every active job the carer has today; returns how many were updated."""
        if self.repo.get_carer(org_id, carer_id) is None:
            raise NotFoundError("Carer not found")

        statuses = [JobStatus(s) for s in self.config.dispatch.active_statuses_for_eta]
        jobs = self.repo.get_jobs_by_date(org_id, self.clock().date(), carer_id=carer_id, statuses=statuses)

        updated = 0
        for job in jobs:
            try:
                if await self.recalculate_one(org_id, job.id) is not None:
                    updated += 1
            except Exception as e:
                logger.warning(f"ETA recalculation failed for job {job.id}: {e}")
        logger.info(f"Recalculated {updated}/{len(jobs)} ETAs for carer {carer_id}")
        return updated
