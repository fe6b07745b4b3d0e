"""
Job lifecycle service.
Loads the facts each transition needs, runs it through the state machine,
persists the result, and then runs the transition's effects.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .auth import Actor
from .distance import Coordinates, DistanceProvider
from .errors import ForbiddenError, InvalidRequestError, NotFoundError
from .eta import ETARecalculator, pool_location
from .models import CancelCode, Carer, Job, JobStatus, Pool, Reading, Role
from .notifications import NotificationDispatcher
from .repo import DatabaseRepository
from .schemas import (
    AppConfig, ArriveJobRequest, AssignJobRequest, CancelJobRequest, ClientCancelRequest,
    CreateJobRequest, FailJobRequest, ReadingRequest, ReportWeatherRequest,
    RescheduleJobRequest, StartJobRequest
)
from .state_machine import (
    SIDE_CHANNEL_EFFECTS, Action, Effect, JobStateMachine, TransitionContext, TransitionOutcome
)
from .util.time_utils import strip_tz


logger = logging.getLogger(__name__)

READING_FIELDS = (
    "ph", "chlorine_free", "chlorine_total", "alkalinity",
    "calcium_hardness", "cyanuric_acid", "temp_c",
)


def _append_note(notes: Optional[str], label: str, text: Optional[str]) -> Optional[str]:
    if not text:
        return notes
    return f"{notes or ''}\n{label}: {text}".strip()


class JobService:
    """Carer, manager and client operations on jobs."""

    def __init__(
        self,
        config: AppConfig,
        repo: DatabaseRepository,
        distance_provider: DistanceProvider,
        state_machine: JobStateMachine,
        eta: ETARecalculator,
        notifier: NotificationDispatcher,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.config = config
        self.repo = repo
        self.distance_provider = distance_provider
        self.machine = state_machine
        self.eta = eta
        self.notifier = notifier
        self.clock = clock

    # Context helpers
    def _context(self, actor: Actor, job: Optional[Job] = None, **facts: Any) -> TransitionContext:
        ctx = TransitionContext(actor=actor, today=self.clock().date(), job=job, **facts)
        if actor.role == Role.CARER:
            ctx.acting_carer = self.repo.get_carer_by_user(actor.org_id, actor.user_id)
        elif actor.role == Role.CLIENT:
            ctx.acting_client = self.repo.get_client_by_user(actor.org_id, actor.user_id)
        return ctx

    def _load_job(self, actor: Actor, job_id: int) -> Job:
        job = self.repo.get_job(actor.org_id, job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return job

    def _acting_carer(self, actor: Actor) -> Carer:
        carer = self.repo.get_carer_by_user(actor.org_id, actor.user_id)
        if carer is None:
            raise ForbiddenError("Carer profile not found")
        return carer

    async def _run_effects(self, outcome: TransitionOutcome, job: Job, ctx: TransitionContext, **extra: Any) -> None:
        """Primary effects propagate their errors; side-channel effects never do."""
        handlers: Dict[Effect, Callable] = {
            Effect.RECOMPUTE_ETA: self._recompute_eta,
            Effect.LIVE_ETA: self._live_eta,
            Effect.CLEAR_ROUTE_FIELDS: self._clear_route_fields,
            Effect.MARK_STARTED: self._mark_started,
            Effect.RECORD_ARRIVAL: self._record_arrival,
            Effect.RECORD_COMPLETION: self._record_completion,
            Effect.NOTIFY_CARER_ASSIGNED: self._notify_carer_assigned,
            Effect.NOTIFY_VISIT_COMPLETE: self._notify_visit_complete,
            Effect.CREATE_INVOICE: self._request_invoice,
            Effect.ALERT_MANAGERS_WEATHER: self._alert_managers_weather,
        }
        for effect in outcome.effects:
            handler = handlers[effect]
            if effect in SIDE_CHANNEL_EFFECTS:
                try:
                    handler(job, ctx, **extra)
                except Exception as e:
                    logger.error(f"Side effect {effect.value} failed for job {job.id}: {e}")
            else:
                await handler(job, ctx, **extra)

    # Effects
    async def _recompute_eta(self, job: Job, ctx: TransitionContext, **extra: Any) -> None:
        if job.assigned_carer_id is None:
            return
        try:
            await self.eta.recalculate_one(job.org_id, job.id)
        except Exception as e:
            # ETA is advisory; the transition already stands
            logger.warning(f"ETA recalculation failed for job {job.id}: {e}")
            return
        # Later effects read these off the in-hand job
        stored = self.repo.get_job(job.org_id, job.id)
        if stored is not None:
            job.eta_minutes = stored.eta_minutes
            job.distance_meters = stored.distance_meters

    async def _live_eta(self, job: Job, ctx: TransitionContext, eta_minutes: Optional[int] = None, **extra: Any) -> None:
        if ctx.location is not None:
            carer = ctx.acting_carer
            self.repo.update_carer_location(carer, ctx.location.lat, ctx.location.lng, self.clock())
            try:
                await self.eta.recalculate_from(
                    job.org_id, job, Coordinates(ctx.location.lat, ctx.location.lng)
                )
                return
            except Exception as e:
                logger.warning(f"Live ETA failed for job {job.id}: {e}")
        if eta_minutes is not None:
            self.repo.update_job_fields(job.org_id, job.id, eta_minutes=eta_minutes)
            job.eta_minutes = eta_minutes

    async def _clear_route_fields(self, job: Job, ctx: TransitionContext, **extra: Any) -> None:
        job.assigned_carer_id = None
        job.sequence = None
        job.eta_minutes = None
        job.distance_meters = None
        self.repo.save_job(job)

    async def _mark_started(self, job: Job, ctx: TransitionContext, **extra: Any) -> None:
        if job.started_at is None:
            job.started_at = self.clock()
            self.repo.save_job(job)

    async def _record_arrival(
        self, job: Job, ctx: TransitionContext, occurred_at: Optional[datetime] = None, **extra: Any
    ) -> None:
        arrived_at = strip_tz(occurred_at) if occurred_at else self.clock()
        self.repo.upsert_visit(job.org_id, job.id, arrived_at=arrived_at)
        if job.started_at is None:
            job.started_at = arrived_at
            self.repo.save_job(job)

    async def _record_completion(self, job: Job, ctx: TransitionContext, **extra: Any) -> None:
        now = self.clock()
        visit = self.repo.get_visit_for_job(job.id)
        began = job.started_at or (visit.arrived_at if visit else None)
        duration = max(0, int((now - began).total_seconds() // 60)) if began else None
        self.repo.upsert_visit(job.org_id, job.id, completed_at=now, duration_minutes=duration)
        if job.plan_id is not None:
            self.repo.touch_plan(job.org_id, job.plan_id, now)

    def _notify_carer_assigned(self, job: Job, ctx: TransitionContext, **extra: Any) -> None:
        self.notifier.publish(
            job.org_id, "job.assigned", "carer", job.assigned_carer_id, job.id,
            {"windowStart": job.window_start.isoformat(), "etaMinutes": job.eta_minutes},
        )

    def _notify_visit_complete(self, job: Job, ctx: TransitionContext, **extra: Any) -> None:
        pool = ctx.pool or self.repo.get_pool(job.org_id, job.pool_id)
        self.notifier.publish(
            job.org_id, "visit.completed", "client", pool.client_id if pool else None, job.id,
            {"poolId": job.pool_id},
        )

    def _request_invoice(self, job: Job, ctx: TransitionContext, **extra: Any) -> None:
        self.notifier.publish(
            job.org_id, "invoice.auto_create", "billing", None, job.id,
            {"poolId": job.pool_id, "planId": job.plan_id},
        )

    def _alert_managers_weather(
        self, job: Job, ctx: TransitionContext, weather: Optional[ReportWeatherRequest] = None, **extra: Any
    ) -> None:
        payload: Dict[str, Any] = {
            "poolId": job.pool_id,
            "carerId": job.assigned_carer_id,
            "roles": list(self.config.notifications.manager_roles),
        }
        if weather is not None:
            payload.update(condition=weather.condition, description=weather.description)
        self.notifier.publish(job.org_id, "weather.reported", "managers", None, job.id, payload)

    # Queries
    async def list_jobs(
        self,
        actor: Actor,
        date: Optional[str] = None,
        status: Optional[str] = None,
        carer_id: Optional[int] = None,
        client_id: Optional[int] = None,
        page: int = 1,
        limit: int = 50
    ) -> Dict[str, Any]:
        """Carers only see their own jobs; clients only their pools' jobs."""
        if status is not None:
            try:
                status = JobStatus(status).value
            except ValueError:
                raise InvalidRequestError(f"Unknown job status: {status}")
        if actor.role == Role.CARER:
            carer = self.repo.get_carer_by_user(actor.org_id, actor.user_id)
            if carer is None:
                return {"items": [], "total": 0, "page": page, "limit": limit}
            carer_id = carer.id
        elif actor.role == Role.CLIENT:
            client = self.repo.get_client_by_user(actor.org_id, actor.user_id)
            if client is None:
                return {"items": [], "total": 0, "page": page, "limit": limit}
            client_id = client.id
        return self.repo.list_jobs(actor.org_id, date, status, carer_id, client_id, page, limit)

    async def get_job(self, actor: Actor, job_id: int) -> Job:
        job = self._load_job(actor, job_id)
        if actor.role == Role.CARER:
            carer = self.repo.get_carer_by_user(actor.org_id, actor.user_id)
            if carer is None or job.assigned_carer_id != carer.id:
                raise ForbiddenError("Access denied")
        elif actor.role == Role.CLIENT:
            client = self.repo.get_client_by_user(actor.org_id, actor.user_id)
            pool = self.repo.get_pool(actor.org_id, job.pool_id)
            if client is None or pool is None or pool.client_id != client.id:
                raise ForbiddenError("Access denied")
        return job

    # Manager operations
    async def create_job(self, actor: Actor, request: CreateJobRequest) -> Job:
        """Schedule a visit; rejects near-simultaneous duplicates for the same pool."""
        window_start = strip_tz(request.window_start)
        window_end = strip_tz(request.window_end)
        pool = self.repo.get_pool(actor.org_id, request.pool_id)
        target_carer = None
        if request.assigned_carer_id is not None:
            target_carer = self.repo.get_carer(actor.org_id, request.assigned_carer_id)
        duplicate = None
        if pool is not None:
            duplicate = self.repo.find_duplicate_job(
                actor.org_id, pool.id, window_start, self.config.dispatch.duplicate_window_seconds
            )

        ctx = self._context(
            actor,
            pool=pool,
            window=(window_start, window_end),
            target_carer=target_carer,
            target_carer_required=request.assigned_carer_id is not None,
            duplicate=duplicate,
        )
        outcome = self.machine.apply(Action.CREATE, ctx)
        if request.plan_id is not None:
            plan = self.repo.get_plan(actor.org_id, request.plan_id)
            if plan is None or plan.pool_id != pool.id:
                raise NotFoundError("Service plan not found")

        job = self.repo.save_job(Job(
            org_id=actor.org_id,
            pool_id=pool.id,
            plan_id=request.plan_id,
            window_start=window_start,
            window_end=window_end,
            status=outcome.status,
            assigned_carer_id=request.assigned_carer_id,
            notes=request.notes,
        ))
        ctx.job = job
        logger.info(f"Created job {job.id} for pool {pool.id} at {window_start.isoformat()}")
        await self._run_effects(outcome, job, ctx)
        return self.repo.get_job(actor.org_id, job.id)

    async def assign(self, actor: Actor, job_id: int, request: AssignJobRequest) -> Job:
        job = self._load_job(actor, job_id)
        carer = self.repo.get_carer(actor.org_id, request.carer_id)
        ctx = self._context(actor, job, target_carer=carer, target_carer_required=True)
        outcome = self.machine.apply(Action.ASSIGN, ctx)

        job.assigned_carer_id = carer.id
        job.sequence = request.sequence
        self.repo.save_job(job)
        await self._run_effects(outcome, job, ctx)
        return self.repo.get_job(actor.org_id, job.id)

    async def unassign(self, actor: Actor, job_id: int) -> Job:
        job = self._load_job(actor, job_id)
        ctx = self._context(actor, job)
        outcome = self.machine.apply(Action.UNASSIGN, ctx)
        await self._run_effects(outcome, job, ctx)
        return self.repo.get_job(actor.org_id, job.id)

    async def reschedule(self, actor: Actor, job_id: int, request: RescheduleJobRequest) -> Job:
        job = self._load_job(actor, job_id)
        window = (strip_tz(request.window_start), strip_tz(request.window_end))
        ctx = self._context(actor, job, window=window)
        outcome = self.machine.apply(Action.RESCHEDULE, ctx)

        job.window_start, job.window_end = window
        job.notes = _append_note(job.notes, "Rescheduled", request.reason)
        self.repo.save_job(job)
        await self._run_effects(outcome, job, ctx)
        return self.repo.get_job(actor.org_id, job.id)

    async def cancel(self, actor: Actor, job_id: int, request: CancelJobRequest) -> Job:
        job = self._load_job(actor, job_id)
        ctx = self._context(actor, job)
        outcome = self.machine.apply(Action.CANCEL, ctx)

        job.cancel_code = request.code
        job.notes = _append_note(job.notes, "Cancelled", request.reason)
        self.repo.save_job(job)
        await self._run_effects(outcome, job, ctx)
        return job

    async def client_cancel(self, actor: Actor, job_id: int, request: ClientCancelRequest) -> Job:
        """Pool owner cancels their own upcoming visit."""
        job = self._load_job(actor, job_id)
        ctx = self._context(actor, job, pool=self.repo.get_pool(actor.org_id, job.pool_id))
        outcome = self.machine.apply(Action.CLIENT_CANCEL, ctx)

        job.cancel_code = CancelCode.CLIENT_REQUEST.value
        job.notes = _append_note(job.notes, "Cancelled by client", request.reason)
        self.repo.save_job(job)
        await self._run_effects(outcome, job, ctx)
        return job

    # Carer operations
    async def start(self, actor: Actor, job_id: int, request: StartJobRequest) -> Job:
        """Begin travel. No location is required here, only at arrival."""
        job = self._load_job(actor, job_id)
        ctx = self._context(actor, job, location=request.location)
        outcome = self.machine.apply(Action.START, ctx)

        self.repo.save_job(job)
        await self._run_effects(outcome, job, ctx, eta_minutes=request.eta_minutes)
        return self.repo.get_job(actor.org_id, job.id)

    async def arrive(self, actor: Actor, job_id: int, request: ArriveJobRequest) -> Job:
        """Mark the carer on site; must be inside the pool's geofence when the pool has coordinates."""
        job = self._load_job(actor, job_id)
        pool = self.repo.get_pool(actor.org_id, job.pool_id)
        ctx = self._context(actor, job, pool=pool, location=request.location)
        on_job = ctx.acting_carer is not None and job.assigned_carer_id == ctx.acting_carer.id
        if on_job and self.machine.can(Action.ARRIVE, JobStatus(job.status)):
            ctx.arrival_distance_m = await self._distance_to_pool(actor.org_id, pool, request)
        outcome = self.machine.apply(Action.ARRIVE, ctx)

        self.repo.save_job(job)
        await self._run_effects(outcome, job, ctx, occurred_at=request.occurred_at)
        return self.repo.get_job(actor.org_id, job.id)

    async def _distance_to_pool(self, org_id: int, pool: Optional[Pool], request: ArriveJobRequest) -> Optional[float]:
        destination = pool_location(pool)
        if destination is None or request.location is None:
            return None
        result = await self.distance_provider.distance(
            Coordinates(request.location.lat, request.location.lng),
            destination,
            "walking",
            self.repo.get_org_maps_key(org_id),
        )
        return result.distance_meters

    async def record_reading(self, actor: Actor, job_id: int, request: ReadingRequest) -> Reading:
        job = self._load_job(actor, job_id)
        ctx = self._context(actor, job)
        self.machine.apply(Action.RECORD_READING, ctx)

        visit = self.repo.get_visit_for_job(job.id) or self.repo.upsert_visit(actor.org_id, job.id)
        values = {name: getattr(request, name) for name in READING_FIELDS}
        reading = Reading(org_id=actor.org_id, visit_id=visit.id, **values)
        if request.measured_at is not None:
            reading.measured_at = strip_tz(request.measured_at)
        else:
            reading.measured_at = self.clock()
        return self.repo.add(reading)

    def recorded_reading_names(self, job_id: int) -> set:
        """Reading fields that have a value on at least one of the job's readings."""
        recorded = set()
        for reading in self.repo.get_readings_for_job(job_id):
            recorded.update(name for name in READING_FIELDS if getattr(reading, name) is not None)
        return recorded

    async def complete(self, actor: Actor, job_id: int) -> Job:
        """Close the visit. Notifications and invoicing run on the side channel."""
        job = self._load_job(actor, job_id)
        ctx = self._context(
            actor, job,
            pool=self.repo.get_pool(actor.org_id, job.pool_id),
            recorded_readings=self.recorded_reading_names(job.id),
        )
        outcome = self.machine.apply(Action.COMPLETE, ctx)

        self.repo.save_job(job)
        await self._run_effects(outcome, job, ctx)
        return self.repo.get_job(actor.org_id, job.id)

    async def fail(self, actor: Actor, job_id: int, request: FailJobRequest) -> Job:
        job = self._load_job(actor, job_id)
        ctx = self._context(actor, job)
        outcome = self.machine.apply(Action.FAIL, ctx)

        job.fail_code = request.code
        job.notes = _append_note(job.notes, "Failed", request.notes)
        self.repo.save_job(job)
        await self._run_effects(outcome, job, ctx)
        return job

    async def report_weather(self, actor: Actor, job_id: int, request: ReportWeatherRequest) -> Job:
        """Carer calls off a visit for weather; managers are alerted."""
        job = self._load_job(actor, job_id)
        ctx = self._context(actor, job, location=request.location)
        outcome = self.machine.apply(Action.REPORT_WEATHER, ctx)

        job.cancel_code = CancelCode.WEATHER.value
        job.notes = _append_note(job.notes, f"Weather ({request.condition})", request.description or request.condition)
        self.repo.save_job(job)
        await self._run_effects(outcome, job, ctx, weather=request)
        return job

    async def update_carer_location(self, actor: Actor, lat: float, lng: float) -> int:
        """Store the caller's live location and refresh today's ETAs."""
        carer = self._acting_carer(actor)
        self.repo.update_carer_location(carer, lat, lng, self.clock())
        return await self.eta.recalculate_for_carer_today(actor.org_id, carer.id)

    # ETA
    async def recalculate_eta(self, actor: Actor, job_id: int) -> Job:
        job = await self.get_job(actor, job_id)
        await self.eta.recalculate_one(actor.org_id, job.id)
        return self.repo.get_job(actor.org_id, job.id)

    async def recalculate_etas(self, actor: Actor, carer_id: Optional[int] = None) -> int:
        """Carers refresh their own ETAs; managers pick the carer."""
        if actor.role == Role.CARER:
            carer_id = self._acting_carer(actor).id
        elif actor.role.value not in self.config.dispatch.elevated_roles:
            raise ForbiddenError("Access denied")
        if carer_id is None:
            raise NotFoundError("Carer not found")
        return await self.eta.recalculate_for_carer_today(actor.org_id, carer_id)

    # Pools
    async def geocode_pool(self, actor: Actor, pool_id: int) -> Pool:
        """Resolve a pool's coordinates from its address. No fallback: provider errors surface."""
        if actor.role.value not in self.config.dispatch.elevated_roles:
            raise ForbiddenError("Access denied")
        pool = self.repo.get_pool(actor.org_id, pool_id)
        if pool is None:
            raise NotFoundError("Pool not found")
        if not pool.address:
            raise InvalidRequestError("Pool has no address to geocode")
        found = await self.distance_provider.geocode(pool.address, self.repo.get_org_maps_key(actor.org_id))
        pool.lat, pool.lng = found.lat, found.lng
        return self.repo.add(pool)
