"""
Job lifecycle state machine.

Every (state, action) pair is described by one row of TRANSITIONS: who may
perform it, which states it may start from, the guards it must pass, the
status it leads to, and the effects the caller runs afterwards. JobService
gathers the facts into a TransitionContext and calls JobStateMachine.apply;
nothing else changes a job's status.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from .auth import Actor
from .errors import (
    DuplicateJobError, ForbiddenError, InvalidRequestError, NotFoundError,
    PreconditionFailedError
)
from .models import Carer, Client, Job, JobStatus, Pool
from .schemas import DispatchConfig, GeoPoint


logger = logging.getLogger(__name__)


class Action(str, Enum):
    """Operations that act on a job."""
    CREATE = "create"
    ASSIGN = "assign"
    UNASSIGN = "unassign"
    RESCHEDULE = "reschedule"
    START = "start"
    ARRIVE = "arrive"
    RECORD_READING = "record_reading"
    COMPLETE = "complete"
    FAIL = "fail"
    CANCEL = "cancel"
    CLIENT_CANCEL = "client_cancel"
    REPORT_WEATHER = "report_weather"


class Effect(str, Enum):
    """Work the service performs once a transition is accepted."""
    RECOMPUTE_ETA = "recompute_eta"
    LIVE_ETA = "live_eta"
    CLEAR_ROUTE_FIELDS = "clear_route_fields"
    MARK_STARTED = "mark_started"
    RECORD_ARRIVAL = "record_arrival"
    RECORD_COMPLETION = "record_completion"
    NOTIFY_CARER_ASSIGNED = "notify_carer_assigned"
    NOTIFY_VISIT_COMPLETE = "notify_visit_complete"
    CREATE_INVOICE = "create_invoice"
    ALERT_MANAGERS_WEATHER = "alert_managers_weather"


# Fire-and-forget: failures are logged, never rolled back into the transition
SIDE_CHANNEL_EFFECTS = frozenset({
    Effect.NOTIFY_CARER_ASSIGNED,
    Effect.NOTIFY_VISIT_COMPLETE,
    Effect.CREATE_INVOICE,
    Effect.ALERT_MANAGERS_WEATHER,
})


@dataclass
class TransitionContext:
    """Facts the guards inspect; the service fills in what the action needs."""
    actor: Actor
    today: date
    job: Optional[Job] = None
    pool: Optional[Pool] = None
    target_carer: Optional[Carer] = None      # carer being assigned
    target_carer_required: bool = False
    acting_carer: Optional[Carer] = None      # carer profile of the caller
    acting_client: Optional[Client] = None    # client profile of the caller
    window: Optional[Tuple[datetime, datetime]] = None
    duplicate: Optional[Job] = None
    location: Optional[GeoPoint] = None
    arrival_distance_m: Optional[float] = None
    recorded_readings: Set[str] = field(default_factory=set)


Guard = Callable[["JobStateMachine", TransitionContext], None]


# Guards raise on failure
def require_elevated_role(machine: "JobStateMachine", ctx: TransitionContext) -> None:
    if ctx.actor.role.value not in machine.config.elevated_roles:
        raise ForbiddenError(f"Role '{ctx.actor.role.value}' may not perform this action")


def require_assigned_carer(machine: "JobStateMachine", ctx: TransitionContext) -> None:
    if ctx.acting_carer is None:
        raise ForbiddenError("Carer profile not found")
    if ctx.job is None or ctx.job.assigned_carer_id != ctx.acting_carer.id:
        raise ForbiddenError("Job is not assigned to you")


def require_pool_owner(machine: "JobStateMachine", ctx: TransitionContext) -> None:
    if ctx.acting_client is None:
        raise ForbiddenError("Client profile not found")
    if ctx.pool is None or ctx.pool.client_id != ctx.acting_client.id:
        raise ForbiddenError("Job does not belong to one of your pools")


def require_pool(machine: "JobStateMachine", ctx: TransitionContext) -> None:
    if ctx.pool is None:
        raise NotFoundError("Pool not found")


def require_valid_window(machine: "JobStateMachine", ctx: TransitionContext) -> None:
    if ctx.window is None:
        raise InvalidRequestError("windowStart and windowEnd are required")
    start, end = ctx.window
    if end <= start:
        raise InvalidRequestError("windowEnd must be after windowStart")


def require_active_carer(machine: "JobStateMachine", ctx: TransitionContext) -> None:
    if not ctx.target_carer_required:
        return
    if ctx.target_carer is None or not ctx.target_carer.active:
        raise NotFoundError("Carer not found or inactive")


def require_no_duplicate(machine: "JobStateMachine", ctx: TransitionContext) -> None:
    if ctx.duplicate is not None:
        raise DuplicateJobError(
            f"Job {ctx.duplicate.id} already exists for this pool at the same time",
            existing_job_id=ctx.duplicate.id,
        )


def require_scheduled_today(machine: "JobStateMachine", ctx: TransitionContext) -> None:
    scheduled_for = ctx.job.window_start.date()
    if scheduled_for != ctx.today:
        raise PreconditionFailedError(
            f"Job is scheduled for {scheduled_for.isoformat()}, not today ({ctx.today.isoformat()})"
        )


def require_within_geofence(machine: "JobStateMachine", ctx: TransitionContext) -> None:
    if ctx.pool is None or not ctx.pool.has_coordinates:
        return
    if ctx.location is None:
        raise PreconditionFailedError("Location is required to arrive at this pool")
    radius = machine.geofence_radius_m
    if ctx.arrival_distance_m is None or ctx.arrival_distance_m > radius:
        measured = "unknown" if ctx.arrival_distance_m is None else f"{ctx.arrival_distance_m:.0f} m"
        raise PreconditionFailedError(f"You are {measured} from the pool; arrive within {radius:.0f} m")


def require_readings(machine: "JobStateMachine", ctx: TransitionContext) -> None:
    missing = [name for name in machine.config.required_readings if name not in ctx.recorded_readings]
    if missing:
        raise PreconditionFailedError(f"Record {', '.join(missing)} before completing the job")


@dataclass(frozen=True)
class Transition:
    """One row of the transition table."""
    action: Action
    sources: FrozenSet[Optional[JobStatus]]  # None = job does not exist yet
    target: Optional[JobStatus]              # None = status unchanged
    access: Tuple[Guard, ...] = ()
    guards: Tuple[Guard, ...] = ()
    effects: Tuple[Effect, ...] = ()


@dataclass
class TransitionOutcome:
    action: Action
    previous: Optional[JobStatus]
    status: Optional[JobStatus]
    effects: Tuple[Effect, ...]


S = JobStatus
OPEN = frozenset({S.SCHEDULED, S.EN_ROUTE, S.ON_SITE})
NOT_YET_ON_SITE = frozenset({S.SCHEDULED, S.EN_ROUTE})

TRANSITIONS: Dict[Action, Transition] = {t.action: t for t in (
    Transition(
        Action.CREATE, frozenset({None}), S.SCHEDULED,
        access=(require_elevated_role,),
        guards=(require_pool, require_valid_window, require_active_carer, require_no_duplicate),
        effects=(Effect.RECOMPUTE_ETA,),
    ),
    Transition(
        Action.ASSIGN, frozenset({S.SCHEDULED}), None,
        access=(require_elevated_role,),
        guards=(require_active_carer,),
        effects=(Effect.RECOMPUTE_ETA, Effect.NOTIFY_CARER_ASSIGNED),
    ),
    Transition(
        Action.UNASSIGN, frozenset({S.SCHEDULED}), None,
        access=(require_elevated_role,),
        effects=(Effect.CLEAR_ROUTE_FIELDS,),
    ),
    Transition(
        Action.RESCHEDULE, frozenset({S.SCHEDULED}), None,
        access=(require_elevated_role,),
        guards=(require_valid_window,),
        effects=(Effect.RECOMPUTE_ETA,),
    ),
    Transition(
        Action.START, NOT_YET_ON_SITE, S.EN_ROUTE,
        access=(require_assigned_carer,),
        guards=(require_scheduled_today,),
        effects=(Effect.MARK_STARTED, Effect.LIVE_ETA),
    ),
    Transition(
        Action.ARRIVE, NOT_YET_ON_SITE, S.ON_SITE,
        access=(require_assigned_carer,),
        guards=(require_scheduled_today, require_within_geofence),
        effects=(Effect.RECORD_ARRIVAL,),
    ),
    Transition(
        Action.RECORD_READING, OPEN, None,
        access=(require_assigned_carer,),
    ),
    Transition(
        Action.COMPLETE, OPEN, S.COMPLETED,
        access=(require_assigned_carer,),
        guards=(require_readings,),
        effects=(Effect.RECORD_COMPLETION, Effect.NOTIFY_VISIT_COMPLETE, Effect.CREATE_INVOICE),
    ),
    Transition(
        Action.FAIL, OPEN, S.FAILED,
        access=(require_assigned_carer,),
    ),
    Transition(
        Action.CANCEL, OPEN, S.CANCELLED,
        access=(require_elevated_role,),
    ),
    Transition(
        Action.CLIENT_CANCEL, OPEN, S.CANCELLED,
        access=(require_pool_owner,),
    ),
    Transition(
        Action.REPORT_WEATHER, OPEN, S.CANCELLED,
        access=(require_assigned_carer,),
        effects=(Effect.ALERT_MANAGERS_WEATHER,),
    ),
)}


class JobStateMachine:
    """Validates every job transition against TRANSITIONS."""

    def __init__(self, config: DispatchConfig, geofence_radius_m: Optional[float] = None):
        self.config = config
        self.geofence_radius_m = geofence_radius_m or config.geofence_arrival_radius_meters
        self.transitions = TRANSITIONS

    def transition_for(self, action: Action) -> Transition:
        return self.transitions[action]

    def can(self, action: Action, status: Optional[JobStatus]) -> bool:
        """Whether the action may start from this status (guards aside)."""
        return status in self.transitions[action].sources

    def allowed_actions(self, status: Optional[JobStatus]) -> List[Action]:
        return [a for a, t in self.transitions.items() if status in t.sources]

    def apply(self, action: Action, ctx: TransitionContext) -> TransitionOutcome:
        """
        Check access, state and guards in that order, then move the job.

        The job's status is updated in memory only; the caller persists it and
        runs the returned effects.
        """
        transition = self.transitions[action]
        for guard in transition.access:
            guard(self, ctx)

        current = JobStatus(ctx.job.status) if ctx.job is not None else None
        if current not in transition.sources:
            if current is None:
                raise NotFoundError("Job not found")
            allowed = ", ".join(sorted(s.value for s in transition.sources if s is not None))
            raise PreconditionFailedError(
                f"Cannot {action.value} a job that is {current.value} (allowed from: {allowed})"
            )

        for guard in transition.guards:
            guard(self, ctx)

        status = transition.target if transition.target is not None else current
        if ctx.job is not None and transition.target is not None:
            ctx.job.status = transition.target
        if current != status:
            logger.info(
                f"Job {ctx.job.id if ctx.job else 'new'}: {current.value if current else 'new'} -> "
                f"{status.value} ({action.value})"
            )
        return TransitionOutcome(action=action, previous=current, status=status, effects=transition.effects)
