"""
Core data models for pool-service dispatch.
Uses SQLModel for database ORM and Pydantic for validation.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from sqlmodel import SQLModel, Field, Column, JSON


class JobStatus(str, Enum):
    """Job lifecycle states."""
    SCHEDULED = "scheduled"
    EN_ROUTE = "en_route"
    ON_SITE = "on_site"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class Role(str, Enum):
    """Caller roles."""
    ADMIN = "admin"
    MANAGER = "manager"
    CARER = "carer"
    CLIENT = "client"


class CancelCode(str, Enum):
    CLIENT_REQUEST = "client_request"
    WEATHER = "weather"
    OTHER = "other"


class FailCode(str, Enum):
    NO_ACCESS = "no_access"
    CLIENT_ABSENT = "client_absent"
    EQUIP_FAILURE = "equip_failure"
    OTHER = "other"


# Database Models (SQLModel)
class Organization(SQLModel, table=True):
    """Tenant; holds the per-org maps API key."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    maps_api_key: Optional[str] = Field(default=None)


class Client(SQLModel, table=True):
    """Pool owner."""
    id: Optional[int] = Field(default=None, primary_key=True)
    org_id: int = Field(foreign_key="organization.id", index=True)
    user_id: Optional[str] = Field(default=None, index=True)
    name: str
    email: Optional[str] = Field(default=None)
    phone: Optional[str] = Field(default=None)


class Pool(SQLModel, table=True):
    """Serviced pool; coordinates are optional."""
    id: Optional[int] = Field(default=None, primary_key=True)
    org_id: int = Field(foreign_key="organization.id", index=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    name: Optional[str] = Field(default=None)
    address: Optional[str] = Field(default=None)
    lat: Optional[float] = Field(default=None)
    lng: Optional[float] = Field(default=None)

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


class Carer(SQLModel, table=True):
    """Field technician with live and home-base locations."""
    id: Optional[int] = Field(default=None, primary_key=True)
    org_id: int = Field(foreign_key="organization.id", index=True)
    user_id: Optional[str] = Field(default=None, index=True)
    name: str
    phone: Optional[str] = Field(default=None)
    active: bool = Field(default=True)
    current_lat: Optional[float] = Field(default=None)
    current_lng: Optional[float] = Field(default=None)
    last_location_update: Optional[datetime] = Field(default=None)
    home_base_lat: Optional[float] = Field(default=None)
    home_base_lng: Optional[float] = Field(default=None)


class ServicePlan(SQLModel, table=True):
    """Recurring plan that generates visits for a pool."""
    id: Optional[int] = Field(default=None, primary_key=True)
    org_id: int = Field(foreign_key="organization.id", index=True)
    pool_id: int = Field(foreign_key="pool.id", index=True)
    frequency: str = Field(default="weekly")
    last_visit_at: Optional[datetime] = Field(default=None)


class Job(SQLModel, table=True):
    """One scheduled service visit."""
    id: Optional[int] = Field(default=None, primary_key=True)
    org_id: int = Field(foreign_key="organization.id", index=True)
    pool_id: int = Field(foreign_key="pool.id", index=True)
    plan_id: Optional[int] = Field(default=None, foreign_key="serviceplan.id")
    window_start: datetime = Field(index=True)
    window_end: datetime
    status: JobStatus = Field(default=JobStatus.SCHEDULED, index=True)
    assigned_carer_id: Optional[int] = Field(default=None, foreign_key="carer.id", index=True)
    sequence: Optional[int] = Field(default=None, ge=1)
    eta_minutes: Optional[int] = Field(default=None, ge=0)
    distance_meters: Optional[int] = Field(default=None, ge=0)
    cancel_code: Optional[str] = Field(default=None)
    fail_code: Optional[str] = Field(default=None)
    notes: Optional[str] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class VisitEntry(SQLModel, table=True):
    """On-site record for a job; one per job."""
    id: Optional[int] = Field(default=None, primary_key=True)
    org_id: int = Field(foreign_key="organization.id", index=True)
    job_id: int = Field(foreign_key="job.id", unique=True)
    arrived_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    duration_minutes: Optional[int] = Field(default=None, ge=0)


class Reading(SQLModel, table=True):
    """Water chemistry reading taken during a visit."""
    id: Optional[int] = Field(default=None, primary_key=True)
    org_id: int = Field(foreign_key="organization.id", index=True)
    visit_id: int = Field(foreign_key="visitentry.id", index=True)
    ph: Optional[float] = Field(default=None)
    chlorine_free: Optional[float] = Field(default=None)
    chlorine_total: Optional[float] = Field(default=None)
    alkalinity: Optional[float] = Field(default=None)
    calcium_hardness: Optional[float] = Field(default=None)
    cyanuric_acid: Optional[float] = Field(default=None)
    temp_c: Optional[float] = Field(default=None)
    measured_at: datetime = Field(default_factory=datetime.utcnow)


class NotificationRecord(SQLModel, table=True):
    """Outbox row for a side-channel message."""
    id: Optional[int] = Field(default=None, primary_key=True)
    org_id: int = Field(index=True)
    event: str = Field(index=True)
    recipient_type: str
    recipient_id: Optional[int] = Field(default=None)
    job_id: Optional[int] = Field(default=None, index=True)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = Field(default="pending")  # pending, sent, failed
    error: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    sent_at: Optional[datetime] = Field(default=None)


def job_to_dict(job: Job) -> Dict[str, Any]:
    """Serialize a job for API responses."""
    return {
        "id": job.id,
        "orgId": job.org_id,
        "poolId": job.pool_id,
        "planId": job.plan_id,
        "windowStart": job.window_start.isoformat(),
        "windowEnd": job.window_end.isoformat(),
        "status": JobStatus(job.status).value,
        "assignedCarerId": job.assigned_carer_id,
        "sequence": job.sequence,
        "etaMinutes": job.eta_minutes,
        "distanceMeters": job.distance_meters,
        "cancelCode": job.cancel_code,
        "failCode": job.fail_code,
        "notes": job.notes,
        "startedAt": job.started_at.isoformat() if job.started_at else None,
    }
