"""
Tests for the job transition table, exercised without a database.
"""

from datetime import date, datetime

import pytest

from pooldispatch.auth import Actor
from pooldispatch.errors import (
    DuplicateJobError, ForbiddenError, InvalidRequestError, NotFoundError, PreconditionFailedError
)
from pooldispatch.models import Carer, Client, Job, JobStatus, Pool, Role
from pooldispatch.schemas import DispatchConfig, GeoPoint
from pooldispatch.state_machine import Action, Effect, JobStateMachine, TransitionContext


TODAY = date(2025, 3, 10)
CARER = Carer(id=7, org_id=1, user_id="c", name="Esi")
CLIENT = Client(id=3, org_id=1, user_id="u", name="Ama")
POOL = Pool(id=5, org_id=1, client_id=3, lat=5.6, lng=-0.18)

MANAGER = Actor(org_id=1, user_id="m", role=Role.MANAGER)
CARER_ACTOR = Actor(org_id=1, user_id="c", role=Role.CARER)
CLIENT_ACTOR = Actor(org_id=1, user_id="u", role=Role.CLIENT)

ACTOR_FOR = {
    Action.ASSIGN: MANAGER,
    Action.UNASSIGN: MANAGER,
    Action.RESCHEDULE: MANAGER,
    Action.CANCEL: MANAGER,
    Action.CLIENT_CANCEL: CLIENT_ACTOR,
}

# Status reached from each allowed source; None = status unchanged
EXPECTED = {
    Action.ASSIGN: {JobStatus.SCHEDULED: None},
    Action.UNASSIGN: {JobStatus.SCHEDULED: None},
    Action.RESCHEDULE: {JobStatus.SCHEDULED: None},
    Action.START: {JobStatus.SCHEDULED: JobStatus.EN_ROUTE, JobStatus.EN_ROUTE: JobStatus.EN_ROUTE},
    Action.ARRIVE: {JobStatus.SCHEDULED: JobStatus.ON_SITE, JobStatus.EN_ROUTE: JobStatus.ON_SITE},
    Action.RECORD_READING: {s: None for s in (JobStatus.SCHEDULED, JobStatus.EN_ROUTE, JobStatus.ON_SITE)},
    Action.COMPLETE: {s: JobStatus.COMPLETED for s in (JobStatus.SCHEDULED, JobStatus.EN_ROUTE, JobStatus.ON_SITE)},
    Action.FAIL: {s: JobStatus.FAILED for s in (JobStatus.SCHEDULED, JobStatus.EN_ROUTE, JobStatus.ON_SITE)},
    Action.CANCEL: {s: JobStatus.CANCELLED for s in (JobStatus.SCHEDULED, JobStatus.EN_ROUTE, JobStatus.ON_SITE)},
    Action.CLIENT_CANCEL: {s: JobStatus.CANCELLED for s in (JobStatus.SCHEDULED, JobStatus.EN_ROUTE, JobStatus.ON_SITE)},
    Action.REPORT_WEATHER: {s: JobStatus.CANCELLED for s in (JobStatus.SCHEDULED, JobStatus.EN_ROUTE, JobStatus.ON_SITE)},
}


@pytest.fixture
def machine():
    return JobStateMachine(DispatchConfig())


def _job(status, day=TODAY):
    return Job(
        id=1, org_id=1, pool_id=POOL.id, status=status, assigned_carer_id=CARER.id,
        window_start=datetime(day.year, day.month, day.day, 9), window_end=datetime(day.year, day.month, day.day, 10),
    )


def _happy_context(action, status):
    """A context that satisfies every guard, so only the status decides."""
    actor = ACTOR_FOR.get(action, CARER_ACTOR)
    return TransitionContext(
        actor=actor,
        today=TODAY,
        job=_job(status),
        pool=POOL,
        target_carer=CARER,
        target_carer_required=True,
        acting_carer=CARER if actor is CARER_ACTOR else None,
        acting_client=CLIENT if actor is CLIENT_ACTOR else None,
        window=(datetime(2025, 3, 10, 9), datetime(2025, 3, 10, 10)),
        location=GeoPoint(lat=5.6, lng=-0.18),
        arrival_distance_m=10.0,
        recorded_readings={"ph", "chlorine_free", "alkalinity", "temp_c"},
    )


@pytest.mark.parametrize("action", list(EXPECTED))
@pytest.mark.parametrize("status", list(JobStatus))
def test_every_state_action_pair(machine, action, status):
    ctx = _happy_context(action, status)
    allowed = EXPECTED[action]

    if status in allowed:
        outcome = machine.apply(action, ctx)
        expected = allowed[status] or status
        assert outcome.status == expected
        assert ctx.job.status == expected
        assert outcome.previous == status
    else:
        with pytest.raises(PreconditionFailedError):
            machine.apply(action, ctx)
        assert ctx.job.status == status


def test_terminal_states_allow_nothing(machine):
    for status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
        assert machine.allowed_actions(status) == []


def test_create_starts_scheduled(machine):
    ctx = TransitionContext(
        actor=MANAGER, today=TODAY, pool=POOL,
        window=(datetime(2025, 3, 11, 9), datetime(2025, 3, 11, 10)),
    )
    outcome = machine.apply(Action.CREATE, ctx)

    assert outcome.previous is None
    assert outcome.status == JobStatus.SCHEDULED


def test_create_rejects_inverted_window(machine):
    ctx = TransitionContext(
        actor=MANAGER, today=TODAY, pool=POOL,
        window=(datetime(2025, 3, 11, 10), datetime(2025, 3, 11, 10)),
    )
    with pytest.raises(InvalidRequestError):
        machine.apply(Action.CREATE, ctx)


def test_create_rejects_duplicate(machine):
    ctx = TransitionContext(
        actor=MANAGER, today=TODAY, pool=POOL, duplicate=_job(JobStatus.SCHEDULED),
        window=(datetime(2025, 3, 11, 9), datetime(2025, 3, 11, 10)),
    )
    with pytest.raises(DuplicateJobError) as err:
        machine.apply(Action.CREATE, ctx)
    assert err.value.existing_job_id == 1


def test_create_requires_pool(machine):
    ctx = TransitionContext(
        actor=MANAGER, today=TODAY,
        window=(datetime(2025, 3, 11, 9), datetime(2025, 3, 11, 10)),
    )
    with pytest.raises(NotFoundError):
        machine.apply(Action.CREATE, ctx)


def test_access_is_checked_before_state(machine):
    ctx = _happy_context(Action.RESCHEDULE, JobStatus.COMPLETED)
    ctx.actor = CARER_ACTOR
    with pytest.raises(ForbiddenError):
        machine.apply(Action.RESCHEDULE, ctx)


def test_carer_cannot_act_on_someone_elses_job(machine):
    ctx = _happy_context(Action.START, JobStatus.SCHEDULED)
    ctx.acting_carer = Carer(id=99, org_id=1, name="Other")
    with pytest.raises(ForbiddenError):
        machine.apply(Action.START, ctx)


def test_client_cancel_requires_owning_client(machine):
    ctx = _happy_context(Action.CLIENT_CANCEL, JobStatus.SCHEDULED)
    ctx.acting_client = Client(id=42, org_id=1, name="Stranger")
    with pytest.raises(ForbiddenError):
        machine.apply(Action.CLIENT_CANCEL, ctx)


def test_start_and_arrive_are_date_bound(machine):
    for action in (Action.START, Action.ARRIVE):
        ctx = _happy_context(action, JobStatus.SCHEDULED)
        ctx.job = _job(JobStatus.SCHEDULED, day=date(2025, 3, 11))
        with pytest.raises(PreconditionFailedError):
            machine.apply(action, ctx)


def test_arrive_outside_geofence(machine):
    ctx = _happy_context(Action.ARRIVE, JobStatus.EN_ROUTE)
    ctx.arrival_distance_m = 250.0
    with pytest.raises(PreconditionFailedError):
        machine.apply(Action.ARRIVE, ctx)


def test_arrive_requires_location_when_pool_has_coordinates(machine):
    ctx = _happy_context(Action.ARRIVE, JobStatus.EN_ROUTE)
    ctx.location = None
    ctx.arrival_distance_m = None
    with pytest.raises(PreconditionFailedError):
        machine.apply(Action.ARRIVE, ctx)


def test_arrive_without_pool_coordinates_skips_geofence(machine):
    ctx = _happy_context(Action.ARRIVE, JobStatus.EN_ROUTE)
    ctx.pool = Pool(id=5, org_id=1, client_id=3)
    ctx.location = None
    ctx.arrival_distance_m = None

    assert machine.apply(Action.ARRIVE, ctx).status == JobStatus.ON_SITE


def test_start_needs_no_location(machine):
    ctx = _happy_context(Action.START, JobStatus.SCHEDULED)
    ctx.location = None
    ctx.arrival_distance_m = None

    assert machine.apply(Action.START, ctx).status == JobStatus.EN_ROUTE


def test_geofence_radius_override():
    machine = JobStateMachine(DispatchConfig(), geofence_radius_m=300.0)
    ctx = _happy_context(Action.ARRIVE, JobStatus.EN_ROUTE)
    ctx.arrival_distance_m = 250.0

    assert machine.apply(Action.ARRIVE, ctx).status == JobStatus.ON_SITE


def test_complete_requires_readings(machine):
    ctx = _happy_context(Action.COMPLETE, JobStatus.ON_SITE)
    ctx.recorded_readings = {"ph", "chlorine_free", "alkalinity"}
    with pytest.raises(PreconditionFailedError) as err:
        machine.apply(Action.COMPLETE, ctx)
    assert "temp_c" in str(err.value)


def test_complete_effects(machine):
    outcome = machine.apply(Action.COMPLETE, _happy_context(Action.COMPLETE, JobStatus.ON_SITE))

    assert Effect.RECORD_COMPLETION in outcome.effects
    assert Effect.NOTIFY_VISIT_COMPLETE in outcome.effects
    assert Effect.CREATE_INVOICE in outcome.effects


def test_assign_rejects_inactive_carer(machine):
    ctx = _happy_context(Action.ASSIGN, JobStatus.SCHEDULED)
    ctx.target_carer = Carer(id=8, org_id=1, name="Off", active=False)
    with pytest.raises(NotFoundError):
        machine.apply(Action.ASSIGN, ctx)
