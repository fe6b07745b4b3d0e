"""
Greedy nearest-neighbor solver for a single carer's day.
Pure functions: all distance lookups go through the injected travel function.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple
from dataclasses import dataclass

from .distance import Coordinates


logger = logging.getLogger(__name__)

START = -1  # origin index of the route's starting location


@dataclass
class Stop:
    """A job to visit."""
    job_id: int
    window_start: datetime
    location: Optional[Coordinates]
    original_sequence: Optional[int] = None


@dataclass
class Leg:
    """Travel between two points of a route."""
    distance_meters: float
    duration_minutes: float


@dataclass
class PlannedStop:
    """A stop placed in the optimized route."""
    stop: Stop
    index: int                    # position of the stop in the input list
    new_sequence: int             # 1-based
    arrival: datetime
    leg: Leg

    @property
    def eta(self) -> datetime:
        """When service can begin: arrival, or window start if the carer is early."""
        return max(self.arrival, self.stop.window_start)


# travel_fn(from_index, to_index) -> Leg, or None when no estimate exists.
# from_index is START for the starting location.
TravelFn = Callable[[int, int], Optional[Leg]]

ZERO_LEG = Leg(0.0, 0.0)


def nearest_neighbor_route(
    stops: Sequence[Stop],
    start_time: datetime,
    travel_fn: TravelFn,
    service_minutes: int = 30
) -> List[PlannedStop]:
    """
    Order stops by nearest neighbor with a time-window preference.

    At each step the closest stop the carer can reach by its window start wins;
    if none can, the closest stop overall wins. Ties go to the earlier stop in
    the input. After a visit the clock moves to the stop's window start plus
    the service time. If a leg cannot be estimated, the remaining stops are
    appended in input order.
    """
    route: List[PlannedStop] = []
    unvisited = list(range(len(stops)))
    current = START
    clock = start_time

    while unvisited:
        best_on_time: Optional[Tuple[int, Leg]] = None
        best_any: Optional[Tuple[int, Leg]] = None
        broken = False

        for idx in unvisited:
            leg = travel_fn(current, idx)
            if leg is None:
                broken = True
                break
            arrival = clock + timedelta(minutes=leg.duration_minutes)
            if best_any is None or leg.duration_minutes < best_any[1].duration_minutes:
                best_any = (idx, leg)
            if arrival <= stops[idx].window_start:
                if best_on_time is None or leg.duration_minutes < best_on_time[1].duration_minutes:
                    best_on_time = (idx, leg)

        if broken:
            logger.warning(f"Travel estimate unavailable; appending {len(unvisited)} stops in original order")
            for idx in unvisited:
                leg = travel_fn(current, idx) or ZERO_LEG
                route.append(PlannedStop(
                    stop=stops[idx], index=idx, new_sequence=len(route) + 1,
                    arrival=clock + timedelta(minutes=leg.duration_minutes), leg=leg
                ))
                current = idx
            break

        chosen, leg = best_on_time or best_any
        arrival = clock + timedelta(minutes=leg.duration_minutes)
        route.append(PlannedStop(
            stop=stops[chosen], index=chosen, new_sequence=len(route) + 1, arrival=arrival, leg=leg
        ))
        unvisited.remove(chosen)
        current = chosen
        clock = stops[chosen].window_start + timedelta(minutes=service_minutes)

    return route


def route_totals(order: Sequence[int], travel_fn: TravelFn) -> Tuple[float, float]:
    """Total (meters, minutes) for visiting stops in the given order from START."""
    distance = 0.0
    duration = 0.0
    previous = START
    for idx in order:
        leg = travel_fn(previous, idx) or ZERO_LEG
        distance += leg.distance_meters
        duration += leg.duration_minutes
        previous = idx
    return distance, duration
