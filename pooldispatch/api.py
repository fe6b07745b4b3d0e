"""
FastAPI application for pool dispatch.
Provides REST API endpoints for the job lifecycle, route optimization and ETAs.
"""

import logging
from typing import Any, Awaitable, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query

from .auth import Actor
from .errors import DispatchError, DuplicateJobError
from .models import JobStatus, job_to_dict
from .schemas import (
    ApplyRequest, ApplyResponse, ArriveJobRequest, AssignJobRequest, CancelJobRequest,
    ClientCancelRequest, CreateJobRequest, FailJobRequest, HealthResponse,
    LocationUpdateRequest, OptimizeRequest, OptimizeResponse, ReadingRequest,
    ReportWeatherRequest, RescheduleJobRequest, StartJobRequest, VerifyMapsKeyRequest, VerifyMapsKeyResponse
)
from .service import PoolDispatchService


logger = logging.getLogger(__name__)

# Global service instance
service: Optional[PoolDispatchService] = None


def get_service() -> PoolDispatchService:
    """Dependency to get service instance."""
    global service
    if service is None:
        service = PoolDispatchService()
    return service


def get_actor(
    x_org_id: Optional[int] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    x_role: Optional[str] = Header(default=None)
) -> Actor:
    """Caller identity from the X-Org-Id / X-User-Id / X-Role headers."""
    if x_org_id is None or not x_user_id or not x_role:
        raise HTTPException(status_code=401, detail="X-Org-Id, X-User-Id and X-Role headers are required")
    try:
        return Actor.of(x_org_id, x_user_id, x_role)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role '{x_role}'")


async def _call(operation: str, awaitable: Awaitable) -> Any:
    """Await a service call and translate dispatch errors into HTTP errors."""
    try:
        return await awaitable
    except DuplicateJobError as e:
        raise HTTPException(
            status_code=e.status_code,
            detail={"message": str(e), "existingJobId": e.existing_job_id}
        )
    except DispatchError as e:
        logger.info(f"{operation} rejected ({e.status_code}): {e}")
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logger.error(f"{operation} failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Pool Dispatch",
        description="Pool service job lifecycle, same-day route optimization and ETAs",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    @app.on_event("shutdown")
    async def shutdown_event():
        """Clean up on shutdown."""
        if service:
            await service.close()
        logger.info("Pool Dispatch API stopped")

    @app.get("/health", response_model=HealthResponse)
    async def health_check(svc: PoolDispatchService = Depends(get_service)):
        """Health check endpoint."""
        health_data = svc.health_check()
        return HealthResponse(
            status=health_data["status"],
            version=svc.config.project.version,
            database_connected=health_data["database_connected"],
            google_api_configured=health_data["google_api_configured"],
            timestamp=health_data["timestamp"]
        )

    # Dispatch
    @app.post("/jobs/dispatch/optimize", response_model=OptimizeResponse, response_model_by_alias=True)
    async def optimize_routes(
        request: OptimizeRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        """Preview a reordering of the day's scheduled jobs. Nothing is saved."""
        return await _call("Optimization", svc.optimize_routes(actor, request))

    @app.post("/jobs/dispatch/apply", response_model=ApplyResponse, response_model_by_alias=True)
    async def apply_routes(
        request: ApplyRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        """Write a previewed ordering onto the jobs."""
        return await _call("Apply", svc.apply_routes(actor, request))

    @app.post("/jobs/recalculate-etas")
    async def recalculate_etas(
        carer_id: Optional[int] = Query(default=None, alias="carerId"),
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        """Refresh today's ETAs for one carer."""
        updated = await _call("ETA recalculation", svc.jobs.recalculate_etas(actor, carer_id))
        return {"success": True, "jobsUpdated": updated}

    # Jobs
    @app.post("/jobs", status_code=201)
    async def create_job(
        request: CreateJobRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        job = await _call("Create job", svc.jobs.create_job(actor, request))
        return job_to_dict(job)

    @app.get("/jobs")
    async def list_jobs(
        date: Optional[str] = Query(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
        status: Optional[JobStatus] = Query(default=None),
        carer_id: Optional[int] = Query(default=None, alias="carerId"),
        client_id: Optional[int] = Query(default=None, alias="clientId"),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=50, ge=1, le=200),
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        """List jobs visible to the caller."""
        result: Dict[str, Any] = await _call(
            "List jobs", svc.jobs.list_jobs(actor, date, status, carer_id, client_id, page, limit)
        )
        result["items"] = [job_to_dict(j) for j in result["items"]]
        return result

    @app.get("/jobs/{job_id}")
    async def get_job(
        job_id: int,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        job = await _call("Get job", svc.jobs.get_job(actor, job_id))
        return job_to_dict(job)

    @app.post("/jobs/{job_id}/assign")
    async def assign_job(
        job_id: int,
        request: AssignJobRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        return job_to_dict(await _call("Assign", svc.jobs.assign(actor, job_id, request)))

    @app.post("/jobs/{job_id}/unassign")
    async def unassign_job(
        job_id: int,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        return job_to_dict(await _call("Unassign", svc.jobs.unassign(actor, job_id)))

    @app.post("/jobs/{job_id}/reschedule")
    async def reschedule_job(
        job_id: int,
        request: RescheduleJobRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        return job_to_dict(await _call("Reschedule", svc.jobs.reschedule(actor, job_id, request)))

    @app.post("/jobs/{job_id}/cancel")
    async def cancel_job(
        job_id: int,
        request: CancelJobRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        return job_to_dict(await _call("Cancel", svc.jobs.cancel(actor, job_id, request)))

    @app.post("/jobs/{job_id}/client-cancel")
    async def client_cancel_job(
        job_id: int,
        request: ClientCancelRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        return job_to_dict(await _call("Client cancel", svc.jobs.client_cancel(actor, job_id, request)))

    @app.post("/jobs/{job_id}/start")
    async def start_job(
        job_id: int,
        request: StartJobRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        """Carer heads to the pool. No location is required."""
        return job_to_dict(await _call("Start", svc.jobs.start(actor, job_id, request)))

    @app.post("/jobs/{job_id}/arrive")
    async def arrive_job(
        job_id: int,
        request: ArriveJobRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        """Carer is on site; checked against the pool geofence."""
        return job_to_dict(await _call("Arrive", svc.jobs.arrive(actor, job_id, request)))

    @app.post("/jobs/{job_id}/readings", status_code=201)
    async def record_reading(
        job_id: int,
        request: ReadingRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        reading = await _call("Record reading", svc.jobs.record_reading(actor, job_id, request))
        return {"id": reading.id, "visitId": reading.visit_id, "measuredAt": reading.measured_at.isoformat()}

    @app.post("/jobs/{job_id}/complete")
    async def complete_job(
        job_id: int,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        return job_to_dict(await _call("Complete", svc.jobs.complete(actor, job_id)))

    @app.post("/jobs/{job_id}/fail")
    async def fail_job(
        job_id: int,
        request: FailJobRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        return job_to_dict(await _call("Fail", svc.jobs.fail(actor, job_id, request)))

    @app.post("/jobs/{job_id}/weather")
    async def report_weather(
        job_id: int,
        request: ReportWeatherRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        return job_to_dict(await _call("Report weather", svc.jobs.report_weather(actor, job_id, request)))

    @app.post("/jobs/{job_id}/recalculate-eta")
    async def recalculate_eta(
        job_id: int,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        return job_to_dict(await _call("ETA recalculation", svc.jobs.recalculate_eta(actor, job_id)))

    # Carers and pools
    @app.post("/carers/me/location")
    async def update_location(
        request: LocationUpdateRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        """Store the carer's live location and refresh today's ETAs."""
        updated = await _call(
            "Location update", svc.jobs.update_carer_location(actor, request.lat, request.lng)
        )
        return {"success": True, "jobsUpdated": updated}

    @app.post("/pools/{pool_id}/geocode")
    async def geocode_pool(
        pool_id: int,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        pool = await _call("Geocode", svc.jobs.geocode_pool(actor, pool_id))
        return {"id": pool.id, "address": pool.address, "lat": pool.lat, "lng": pool.lng}

    @app.post("/maps/verify-key", response_model=VerifyMapsKeyResponse)
    async def verify_maps_key(
        request: VerifyMapsKeyRequest,
        actor: Actor = Depends(get_actor),
        svc: PoolDispatchService = Depends(get_service)
    ):
        """Check the org maps key (or one supplied in the body) against Google."""
        return await _call("Verify maps key", svc.verify_maps_key(actor, request))

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
