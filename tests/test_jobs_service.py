"""
Tests for the job lifecycle service against an in-memory database.
"""

from datetime import datetime

import pytest

from pooldispatch.errors import (
    DuplicateJobError, ForbiddenError, InvalidRequestError, NotFoundError,
    PreconditionFailedError, ProviderUnavailableError
)
from pooldispatch.auth import Actor
from pooldispatch.models import JobStatus, Role, ServicePlan
from pooldispatch.schemas import (
    AppConfig, ArriveJobRequest, AssignJobRequest, CancelJobRequest, ClientCancelRequest, CreateJobRequest,
    FailJobRequest, GeoPoint, ReadingRequest, ReportWeatherRequest, RescheduleJobRequest, Settings, StartJobRequest
)
from pooldispatch.service import PoolDispatchService

from conftest import POOL_NEAR, RecordingSender, add_job, make_service, run, seed_world


AT_POOL = GeoPoint(lat=POOL_NEAR[0] + 0.0003, lng=POOL_NEAR[1])   # ~33 m
FAR_AWAY = GeoPoint(lat=POOL_NEAR[0] + 0.0060, lng=POOL_NEAR[1])  # ~670 m
FULL_READING = ReadingRequest(ph=7.4, chlorine_free=2.0, alkalinity=100, temp_c=27)


class CountingProvider:
    """Stands in for the distance provider and counts lookups."""

    def __init__(self):
        self.calls = 0

    async def distance(self, *args, **kwargs):
        self.calls += 1
        raise ProviderUnavailableError("offline")


def _create(svc, world, start_hour=9, end_hour=10, **fields):
    request = CreateJobRequest(
        pool_id=fields.pop("pool_id", world["pools"]["near"].id),
        window_start=datetime(2025, 3, 10, start_hour),
        window_end=datetime(2025, 3, 10, end_hour),
        **fields,
    )
    return run(svc.jobs.create_job(world["manager"], request))


# Create / reschedule
def test_create_job_with_carer_sets_eta(svc, world):
    job = _create(svc, world, assigned_carer_id=world["carer"].id, plan_id=world["plan"].id)

    assert job.status == JobStatus.SCHEDULED
    assert job.eta_minutes is not None
    assert job.distance_meters > 0


def test_create_rejects_inverted_window(svc, world):
    with pytest.raises(InvalidRequestError):
        _create(svc, world, start_hour=10, end_hour=9)
    with pytest.raises(InvalidRequestError):
        _create(svc, world, start_hour=10, end_hour=10)


def test_create_rejects_near_simultaneous_duplicate(svc, world):
    first = _create(svc, world)
    with pytest.raises(DuplicateJobError) as err:
        _create(svc, world)
    assert err.value.existing_job_id == first.id


def test_create_requires_manager(svc, world):
    request = CreateJobRequest(
        pool_id=world["pools"]["near"].id,
        window_start=datetime(2025, 3, 10, 9), window_end=datetime(2025, 3, 10, 10),
    )
    with pytest.raises(ForbiddenError):
        run(svc.jobs.create_job(world["carer_actor"], request))


def test_create_rejects_unknown_pool_and_foreign_plan(svc, world):
    with pytest.raises(NotFoundError):
        _create(svc, world, pool_id=999)
    other_plan = svc.repo.add(ServicePlan(org_id=world["org"].id, pool_id=world["pools"]["mid"].id))
    with pytest.raises(NotFoundError):
        _create(svc, world, plan_id=other_plan.id)


def test_reschedule_enforces_window(svc, world):
    job = add_job(svc, world)
    bad = RescheduleJobRequest(window_start=datetime(2025, 3, 11, 12), window_end=datetime(2025, 3, 11, 11))
    with pytest.raises(InvalidRequestError):
        run(svc.jobs.reschedule(world["manager"], job.id, bad))

    good = RescheduleJobRequest(
        window_start=datetime(2025, 3, 11, 12), window_end=datetime(2025, 3, 11, 13), reason="client away"
    )
    moved = run(svc.jobs.reschedule(world["manager"], job.id, good))
    assert moved.window_start == datetime(2025, 3, 11, 12)
    assert "client away" in moved.notes


def test_carer_cannot_reschedule(svc, world):
    job = add_job(svc, world)
    request = RescheduleJobRequest(window_start=datetime(2025, 3, 11, 12), window_end=datetime(2025, 3, 11, 13))
    with pytest.raises(ForbiddenError):
        run(svc.jobs.reschedule(world["carer_actor"], job.id, request))


# Assignment
def test_assign_notifies_carer(svc, world, sender):
    job = add_job(svc, world, carer=False)

    async def scenario():
        assigned = await svc.jobs.assign(world["manager"], job.id, AssignJobRequest(carer_id=world["carer"].id))
        await svc.notifier.drain()
        return assigned

    assigned = run(scenario())
    assert assigned.assigned_carer_id == world["carer"].id
    assert assigned.eta_minutes is not None
    assert sender.sent == ["job.assigned"]
    assert sender.payloads[0]["etaMinutes"] == assigned.eta_minutes


def test_assign_unknown_carer(svc, world):
    job = add_job(svc, world, carer=False)
    with pytest.raises(NotFoundError):
        run(svc.jobs.assign(world["manager"], job.id, AssignJobRequest(carer_id=999)))


def test_unassign_clears_route_fields(svc, world):
    job = add_job(svc, world, sequence=2, eta_minutes=12, distance_meters=4000)
    cleared = run(svc.jobs.unassign(world["manager"], job.id))

    assert cleared.assigned_carer_id is None
    assert cleared.sequence is None
    assert cleared.eta_minutes is None
    assert cleared.distance_meters is None


# Carer flow
def test_start_without_location(svc, world):
    job = add_job(svc, world)
    started = run(svc.jobs.start(world["carer_actor"], job.id, StartJobRequest()))

    assert started.status == JobStatus.EN_ROUTE
    assert started.started_at is not None


def test_start_with_location_updates_carer_and_eta(svc, world):
    job = add_job(svc, world)
    started = run(svc.jobs.start(world["carer_actor"], job.id, StartJobRequest(location=FAR_AWAY)))

    carer = svc.repo.get_carer(world["org"].id, world["carer"].id)
    assert carer.current_lat == pytest.approx(FAR_AWAY.lat)
    assert started.eta_minutes is not None
    assert started.distance_meters == pytest.approx(667, rel=0.05)


def test_start_with_reported_eta(svc, world):
    job = add_job(svc, world)
    started = run(svc.jobs.start(world["carer_actor"], job.id, StartJobRequest(eta_minutes=25)))
    assert started.eta_minutes == 25


def test_start_and_arrive_only_on_scheduled_day(svc, world):
    job = add_job(svc, world, day=11)
    with pytest.raises(PreconditionFailedError):
        run(svc.jobs.start(world["carer_actor"], job.id, StartJobRequest()))
    with pytest.raises(PreconditionFailedError):
        run(svc.jobs.arrive(world["carer_actor"], job.id, ArriveJobRequest(location=AT_POOL)))


def test_other_carer_cannot_start(svc, world):
    job = add_job(svc, world)
    with pytest.raises(ForbiddenError):
        run(svc.jobs.start(world["other_carer_actor"], job.id, StartJobRequest()))


def test_arrive_inside_geofence(svc, world):
    job = add_job(svc, world)
    arrived = run(svc.jobs.arrive(world["carer_actor"], job.id, ArriveJobRequest(location=AT_POOL)))

    assert arrived.status == JobStatus.ON_SITE
    visit = svc.repo.get_visit_for_job(job.id)
    assert visit.arrived_at is not None


def test_arrive_outside_geofence(svc, world):
    job = add_job(svc, world)
    with pytest.raises(PreconditionFailedError):
        run(svc.jobs.arrive(world["carer_actor"], job.id, ArriveJobRequest(location=FAR_AWAY)))
    assert svc.repo.get_job(world["org"].id, job.id).status == JobStatus.SCHEDULED


def test_arrive_without_location_when_pool_has_coordinates(svc, world):
    job = add_job(svc, world)
    with pytest.raises(PreconditionFailedError):
        run(svc.jobs.arrive(world["carer_actor"], job.id, ArriveJobRequest()))


def test_arrive_on_closed_job_skips_distance_lookup(svc, world):
    job = add_job(svc, world, status=JobStatus.COMPLETED)
    provider = CountingProvider()
    svc.jobs.distance_provider = provider
    with pytest.raises(PreconditionFailedError):
        run(svc.jobs.arrive(world["carer_actor"], job.id, ArriveJobRequest(location=AT_POOL)))
    assert provider.calls == 0


def test_arrive_at_pool_without_coordinates(svc, world):
    job = add_job(svc, world, "blind")
    arrived = run(svc.jobs.arrive(world["carer_actor"], job.id, ArriveJobRequest()))
    assert arrived.status == JobStatus.ON_SITE


def test_geofence_radius_from_environment():
    wide = make_service(geofence_override=1000.0)
    assert wide.state_machine.geofence_radius_m == 1000.0


def test_record_reading_creates_visit(svc, world):
    job = add_job(svc, world)
    reading = run(svc.jobs.record_reading(world["carer_actor"], job.id, ReadingRequest(ph=7.2)))

    assert reading.visit_id == svc.repo.get_visit_for_job(job.id).id
    assert svc.jobs.recorded_reading_names(job.id) == {"ph"}


def test_reading_ranges_are_validated():
    with pytest.raises(ValueError):
        ReadingRequest(ph=9.5)
    with pytest.raises(ValueError):
        ReadingRequest(alkalinity=20)


def test_complete_requires_all_readings(svc, world):
    job = add_job(svc, world)
    run(svc.jobs.arrive(world["carer_actor"], job.id, ArriveJobRequest(location=AT_POOL)))
    run(svc.jobs.record_reading(world["carer_actor"], job.id, ReadingRequest(ph=7.4, chlorine_free=2.0, alkalinity=90)))

    with pytest.raises(PreconditionFailedError) as err:
        run(svc.jobs.complete(world["carer_actor"], job.id))
    assert "temp_c" in str(err.value)

    run(svc.jobs.record_reading(world["carer_actor"], job.id, ReadingRequest(temp_c=28)))
    done = run(svc.jobs.complete(world["carer_actor"], job.id))
    assert done.status == JobStatus.COMPLETED


def test_complete_stamps_visit_and_plan(svc, world, sender):
    job = add_job(svc, world, plan_id=world["plan"].id)

    async def scenario():
        await svc.jobs.arrive(world["carer_actor"], job.id, ArriveJobRequest(location=AT_POOL))
        await svc.jobs.record_reading(world["carer_actor"], job.id, FULL_READING)
        done = await svc.jobs.complete(world["carer_actor"], job.id)
        await svc.notifier.drain()
        return done

    done = run(scenario())
    visit = svc.repo.get_visit_for_job(job.id)
    plan = svc.repo.get_plan(world["org"].id, world["plan"].id)

    assert done.status == JobStatus.COMPLETED
    assert visit.completed_at is not None
    assert visit.duration_minutes == 0
    assert plan.last_visit_at is not None
    assert sorted(sender.sent) == ["invoice.auto_create", "visit.completed"]


def test_notification_failure_does_not_roll_back():
    svc = make_service(sender=RecordingSender(fail=True))
    world = seed_world(svc)
    job = add_job(svc, world, "blind")

    async def scenario():
        await svc.jobs.record_reading(world["carer_actor"], job.id, FULL_READING)
        done = await svc.jobs.complete(world["carer_actor"], job.id)
        await svc.notifier.drain()
        return done

    done = run(scenario())
    assert done.status == JobStatus.COMPLETED
    statuses = {n.event: n.status for n in svc.repo.list_notifications(world["org"].id)}
    assert statuses == {"visit.completed": "failed", "invoice.auto_create": "failed"}


def test_fail_records_code(svc, world):
    job = add_job(svc, world)
    failed = run(svc.jobs.fail(world["carer_actor"], job.id, FailJobRequest(code="no_access", notes="gate locked")))

    assert failed.status == JobStatus.FAILED
    assert failed.fail_code == "no_access"
    assert "gate locked" in failed.notes


def test_cannot_complete_twice(svc, world):
    job = add_job(svc, world, status=JobStatus.COMPLETED)
    with pytest.raises(PreconditionFailedError):
        run(svc.jobs.complete(world["carer_actor"], job.id))


# Cancellation
def test_manager_cancel(svc, world):
    job = add_job(svc, world)
    cancelled = run(svc.jobs.cancel(world["manager"], job.id, CancelJobRequest(code="other", reason="pool drained")))

    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.cancel_code == "other"


def test_client_cancel_own_pool_only(svc, world):
    own = add_job(svc, world, "near")
    cancelled = run(svc.jobs.client_cancel(world["client_actor"], own.id, ClientCancelRequest(reason="party")))
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.cancel_code == "client_request"

    foreign = add_job(svc, world, "far")
    with pytest.raises(ForbiddenError):
        run(svc.jobs.client_cancel(world["client_actor"], foreign.id, ClientCancelRequest()))


def test_report_weather_alerts_managers(svc, world, sender):
    job = add_job(svc, world)

    async def scenario():
        done = await svc.jobs.report_weather(
            world["carer_actor"], job.id, ReportWeatherRequest(condition="storm", description="lightning")
        )
        await svc.notifier.drain()
        return done

    cancelled = run(scenario())
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.cancel_code == "weather"
    assert sender.sent == ["weather.reported"]


# Queries
def test_list_jobs_scoped_by_role(svc, world):
    mine = add_job(svc, world, "near")
    add_job(svc, world, "far", carer=False)

    carer_view = run(svc.jobs.list_jobs(world["carer_actor"]))
    client_view = run(svc.jobs.list_jobs(world["client_actor"]))
    manager_view = run(svc.jobs.list_jobs(world["manager"], date="2025-03-10"))

    assert [j.id for j in carer_view["items"]] == [mine.id]
    assert [j.id for j in client_view["items"]] == [mine.id]
    assert manager_view["total"] == 2


def test_list_jobs_rejects_unknown_status(svc, world):
    add_job(svc, world)
    with pytest.raises(InvalidRequestError):
        run(svc.jobs.list_jobs(world["manager"], status="bogus"))

    found = run(svc.jobs.list_jobs(world["manager"], status="scheduled"))
    assert found["total"] == 1


def test_get_job_scoping(svc, world):
    job = add_job(svc, world, "far")
    with pytest.raises(ForbiddenError):
        run(svc.jobs.get_job(world["client_actor"], job.id))
    with pytest.raises(ForbiddenError):
        run(svc.jobs.get_job(world["other_carer_actor"], job.id))
    assert run(svc.jobs.get_job(world["carer_actor"], job.id)).id == job.id


def test_jobs_are_invisible_across_orgs(svc, world):
    job = add_job(svc, world)
    outsider = Actor(org_id=world["other_org"].id, user_id="mgr-x", role=Role.MANAGER)
    with pytest.raises(NotFoundError):
        run(svc.jobs.get_job(outsider, job.id))


# Locations and geocoding
def test_update_carer_location_refreshes_etas(svc, world):
    add_job(svc, world, "near")
    add_job(svc, world, "mid", hour=11)
    updated = run(svc.jobs.update_carer_location(world["carer_actor"], FAR_AWAY.lat, FAR_AWAY.lng))
    assert updated == 2


def test_geocode_pool_in_mock_mode(svc, world):
    pool = run(svc.jobs.geocode_pool(world["manager"], world["pools"]["blind"].id))
    assert pool.lat is not None and pool.lng is not None


def test_geocode_pool_without_key_is_unavailable():
    live = PoolDispatchService(
        config=AppConfig(),
        settings=Settings(_env_file=None, google_maps_api_key=None),
        database_url="sqlite://",
    )
    world = seed_world(live)
    with pytest.raises(ProviderUnavailableError):
        run(live.jobs.geocode_pool(world["manager"], world["pools"]["blind"].id))
