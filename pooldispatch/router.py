"""
Router module for ordering one carer's jobs.
Builds the travel matrix, runs the nearest-neighbor solver, and compares the
optimized route against the current one.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .distance import Coordinates, DistanceProvider, RouteMatrix
from .schemas import AppConfig, RouteChange
from .solver_greedy import (
    START, Leg, PlannedStop, Stop, ZERO_LEG, nearest_neighbor_route, route_totals
)
from .util.time_utils import hhmm


logger = logging.getLogger(__name__)


@dataclass
class RouteOptimizationResult:
    """Ordered changes plus current/optimized totals. Never persisted."""
    changes: List[RouteChange] = field(default_factory=list)
    current_distance_meters: float = 0.0
    current_duration_minutes: float = 0.0
    optimized_distance_meters: float = 0.0
    optimized_duration_minutes: float = 0.0

    @property
    def distance_saved_meters(self) -> float:
        return max(0.0, self.current_distance_meters - self.optimized_distance_meters)

    @property
    def time_saved_minutes(self) -> float:
        return max(0.0, self.current_duration_minutes - self.optimized_duration_minutes)


class RouteOptimizer:
    """Orders a carer's same-day stops to reduce travel."""

    def __init__(self, config: AppConfig, distance_provider: DistanceProvider):
        """Initialize route optimizer with configuration."""
        self.config = config
        self.distance_provider = distance_provider

    async def optimize(
        self,
        stops: List[Stop],
        start: Optional[Coordinates],
        day_start: datetime,
        api_key: Optional[str] = None
    ) -> RouteOptimizationResult:
        """
        Optimize stops given in their current route order.

        Stops without coordinates are left out of the optimization and placed
        after the optimized ones, in their original order, with zero legs.
        """
        routable = [s for s in stops if s.location is not None]
        unroutable = [s for s in stops if s.location is None]
        result = RouteOptimizationResult()

        if routable:
            origin = start or routable[0].location
            if len(routable) < 2:
                planned = await self._single_stop(routable[0], origin, day_start, api_key)
                result.current_distance_meters = result.optimized_distance_meters = planned.leg.distance_meters
                result.current_duration_minutes = result.optimized_duration_minutes = planned.leg.duration_minutes
                route = [planned]
            else:
                matrix = await self.distance_provider.travel_matrix(
                    [origin] + [s.location for s in routable],
                    [s.location for s in routable],
                    "driving",
                    api_key
                )
                travel_fn = self._matrix_travel_fn(matrix)
                route = nearest_neighbor_route(
                    routable, day_start, travel_fn, self.config.routing.service_minutes
                )
                current = route_totals(range(len(routable)), travel_fn)
                optimized = route_totals([p.index for p in route], travel_fn)
                result.current_distance_meters, result.current_duration_minutes = current
                result.optimized_distance_meters, result.optimized_duration_minutes = optimized
            result.changes.extend(self._to_change(p) for p in route)

        for stop in unroutable:
            result.changes.append(RouteChange(
                job_id=stop.job_id,
                from_seq=stop.original_sequence,
                to_seq=len(result.changes) + 1,
                eta=hhmm(stop.window_start),
                distance_km=0.0,
                duration_min=0.0,
            ))

        logger.info(
            f"Optimized {len(routable)} stops ({len(unroutable)} without coordinates): "
            f"{result.current_distance_meters / 1000:.2f} km -> {result.optimized_distance_meters / 1000:.2f} km"
        )
        return result

    async def _single_stop(
        self, stop: Stop, origin: Coordinates, day_start: datetime, api_key: Optional[str]
    ) -> PlannedStop:
        """A one-stop route needs at most the start-to-job lookup."""
        if origin == stop.location:
            leg = ZERO_LEG
        else:
            found = await self.distance_provider.distance(origin, stop.location, "driving", api_key)
            leg = Leg(found.distance_meters, found.duration_minutes)
        route = nearest_neighbor_route([stop], day_start, lambda i, j: leg, self.config.routing.service_minutes)
        return route[0]

    @staticmethod
    def _matrix_travel_fn(matrix: RouteMatrix):
        """Row 0 of the matrix is the start; row i+1 is stop i."""
        def travel(from_idx: int, to_idx: int) -> Optional[Leg]:
            row = 0 if from_idx == START else from_idx + 1
            if from_idx == to_idx:
                return ZERO_LEG
            return Leg(matrix.get_distance(row, to_idx), matrix.get_duration(row, to_idx))
        return travel

    @staticmethod
    def _to_change(planned: PlannedStop) -> RouteChange:
        return RouteChange(
            job_id=planned.stop.job_id,
            from_seq=planned.stop.original_sequence,
            to_seq=planned.new_sequence,
            eta=hhmm(planned.eta),
            distance_km=round(planned.leg.distance_meters / 1000.0, 2),
            duration_min=round(planned.leg.duration_minutes, 1),
        )
