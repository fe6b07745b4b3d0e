"""
Repository layer for database operations.
Provides clean interface for the reads and writes the dispatch core needs.
"""

from datetime import date, datetime, timedelta
from typing import List, Optional, Dict, Any, Iterable, Union
from sqlmodel import SQLModel, Session, create_engine, select, col
from sqlalchemy.pool import StaticPool

from .models import (
    Organization, Client, Pool, Carer, ServicePlan, Job, VisitEntry,
    Reading, NotificationRecord, JobStatus
)
from .schemas import AppConfig
from .util.time_utils import day_bounds


class DatabaseRepository:
    """Database repository for all dispatch entities."""

    def __init__(self, config: AppConfig, url: Optional[str] = None):
        """Initialize database connection."""
        self.config = config
        self.url = url or config.database.url
        engine_kwargs: Dict[str, Any] = {"echo": config.database.echo}
        if self.url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection so every session sees the same in-memory db
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(self.url, **engine_kwargs)

    def create_tables(self) -> None:
        """Create all database tables."""
        SQLModel.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return Session(self.engine, expire_on_commit=False)

    # Generic operations
    def add(self, obj: SQLModel) -> SQLModel:
        """Insert or update a row and return it refreshed."""
        with self.get_session() as session:
            session.add(obj)
            session.commit()
            session.refresh(obj)
            return obj

    def add_all(self, objs: Iterable[SQLModel]) -> List[SQLModel]:
        objs = list(objs)
        with self.get_session() as session:
            session.add_all(objs)
            session.commit()
            for obj in objs:
                session.refresh(obj)
            return objs

    # Organization operations
    def get_organization(self, org_id: int) -> Optional[Organization]:
        with self.get_session() as session:
            return session.get(Organization, org_id)

    def get_org_maps_key(self, org_id: int) -> Optional[str]:
        """Org-specific maps API key, if one is configured."""
        org = self.get_organization(org_id)
        return org.maps_api_key if org and org.maps_api_key else None

    # Scoped lookups: a row from another org reads as missing
    def get_pool(self, org_id: int, pool_id: int) -> Optional[Pool]:
        with self.get_session() as session:
            pool = session.get(Pool, pool_id)
            return pool if pool and pool.org_id == org_id else None

    def get_carer(self, org_id: int, carer_id: int) -> Optional[Carer]:
        with self.get_session() as session:
            carer = session.get(Carer, carer_id)
            return carer if carer and carer.org_id == org_id else None

    def get_carer_by_user(self, org_id: int, user_id: str) -> Optional[Carer]:
        with self.get_session() as session:
            return session.exec(
                select(Carer).where(Carer.org_id == org_id, Carer.user_id == user_id)
            ).first()

    def get_client_by_user(self, org_id: int, user_id: str) -> Optional[Client]:
        with self.get_session() as session:
            return session.exec(
                select(Client).where(Client.org_id == org_id, Client.user_id == user_id)
            ).first()

    def get_plan(self, org_id: int, plan_id: int) -> Optional[ServicePlan]:
        with self.get_session() as session:
            plan = session.get(ServicePlan, plan_id)
            return plan if plan and plan.org_id == org_id else None

    # Job operations
    def get_job(self, org_id: int, job_id: int) -> Optional[Job]:
        with self.get_session() as session:
            job = session.get(Job, job_id)
            return job if job and job.org_id == org_id else None

    def get_jobs_by_ids(self, org_id: int, job_ids: List[int]) -> List[Job]:
        with self.get_session() as session:
            return list(session.exec(
                select(Job).where(Job.org_id == org_id, col(Job.id).in_(job_ids))
            ).all())

    def get_jobs_by_date(
        self,
        org_id: int,
        target_date: Union[str, date],
        carer_id: Optional[int] = None,
        statuses: Optional[List[JobStatus]] = None
    ) -> List[Job]:
        """Jobs whose window starts on the given day, in current route order."""
        start, end = day_bounds(target_date)
        with self.get_session() as session:
            query = select(Job).where(
                Job.org_id == org_id,
                Job.window_start >= start,
                Job.window_start < end,
            )
            if carer_id is not None:
                query = query.where(Job.assigned_carer_id == carer_id)
            if statuses:
                query = query.where(col(Job.status).in_(statuses))
            jobs = list(session.exec(query).all())
        # Unsequenced jobs go last, then by window start
        jobs.sort(key=lambda j: (j.sequence is None, j.sequence or 0, j.window_start, j.id))
        return jobs

    def list_jobs(
        self,
        org_id: int,
        target_date: Optional[str] = None,
        status: Optional[str] = None,
        carer_id: Optional[int] = None,
        client_id: Optional[int] = None,
        page: int = 1,
        limit: int = 50
    ) -> Dict[str, Any]:
        """Paged job listing with optional filters."""
        with self.get_session() as session:
            query = select(Job).where(Job.org_id == org_id)
            if target_date:
                start, end = day_bounds(target_date)
                query = query.where(Job.window_start >= start, Job.window_start < end)
            if status:
                query = query.where(Job.status == JobStatus(status))
            if carer_id is not None:
                query = query.where(Job.assigned_carer_id == carer_id)
            if client_id is not None:
                query = query.join(Pool, Pool.id == Job.pool_id).where(Pool.client_id == client_id)
            rows = list(session.exec(query.order_by(Job.window_start)).all())
        offset = (page - 1) * limit
        return {"items": rows[offset:offset + limit], "total": len(rows), "page": page, "limit": limit}

    def find_duplicate_job(
        self, org_id: int, pool_id: int, window_start: datetime, tolerance_seconds: int
    ) -> Optional[Job]:
        """Non-cancelled job for the same pool starting within the tolerance."""
        delta = timedelta(seconds=tolerance_seconds)
        with self.get_session() as session:
            return session.exec(
                select(Job).where(
                    Job.org_id == org_id,
                    Job.pool_id == pool_id,
                    Job.status != JobStatus.CANCELLED,
                    Job.window_start >= window_start - delta,
                    Job.window_start <= window_start + delta,
                )
            ).first()

    def save_job(self, job: Job) -> Job:
        job.updated_at = datetime.utcnow()
        return self.add(job)

    def update_job_fields(self, org_id: int, job_id: int, **fields: Any) -> Optional[Job]:
        """Set columns on one job; returns None when it is not in the org."""
        with self.get_session() as session:
            job = session.get(Job, job_id)
            if not job or job.org_id != org_id:
                return None
            for key, value in fields.items():
                setattr(job, key, value)
            job.updated_at = datetime.utcnow()
            session.add(job)
            session.commit()
            session.refresh(job)
            return job

    def set_sequences(self, org_id: int, sequences: Dict[int, int]) -> int:
        """Write route positions in one transaction; returns rows touched."""
        updated = 0
        with self.get_session() as session:
            jobs = session.exec(
                select(Job).where(Job.org_id == org_id, col(Job.id).in_(list(sequences)))
            ).all()
            for job in jobs:
                job.sequence = sequences[job.id]
                job.updated_at = datetime.utcnow()
                session.add(job)
                updated += 1
            session.commit()
        return updated

    # Carer operations
    def update_carer_location(self, carer: Carer, lat: float, lng: float, at: datetime) -> Carer:
        carer.current_lat = lat
        carer.current_lng = lng
        carer.last_location_update = at
        return self.add(carer)

    # Visit operations
    def get_visit_for_job(self, job_id: int) -> Optional[VisitEntry]:
        with self.get_session() as session:
            return session.exec(select(VisitEntry).where(VisitEntry.job_id == job_id)).first()

    def upsert_visit(self, org_id: int, job_id: int, **fields: Any) -> VisitEntry:
        """Create the visit entry for a job or update it in place."""
        with self.get_session() as session:
            visit = session.exec(select(VisitEntry).where(VisitEntry.job_id == job_id)).first()
            if visit is None:
                visit = VisitEntry(org_id=org_id, job_id=job_id)
            for key, value in fields.items():
                setattr(visit, key, value)
            session.add(visit)
            session.commit()
            session.refresh(visit)
            return visit

    def get_readings_for_job(self, job_id: int) -> List[Reading]:
        """Readings for a job's visit, newest first."""
        with self.get_session() as session:
            return list(session.exec(
                select(Reading)
                .join(VisitEntry, VisitEntry.id == Reading.visit_id)
                .where(VisitEntry.job_id == job_id)
                .order_by(col(Reading.measured_at).desc(), col(Reading.id).desc())
            ).all())

    def touch_plan(self, org_id: int, plan_id: int, at: datetime) -> None:
        with self.get_session() as session:
            plan = session.get(ServicePlan, plan_id)
            if plan and plan.org_id == org_id:
                plan.last_visit_at = at
                session.add(plan)
                session.commit()

    # Notification outbox
    def mark_notification(self, record_id: int, status: str, error: Optional[str] = None) -> None:
        with self.get_session() as session:
            record = session.get(NotificationRecord, record_id)
            if record is None:
                return
            record.status = status
            record.error = error
            if status == "sent":
                record.sent_at = datetime.utcnow()
            session.add(record)
            session.commit()

    def list_notifications(self, org_id: int, event: Optional[str] = None) -> List[NotificationRecord]:
        with self.get_session() as session:
            query = select(NotificationRecord).where(NotificationRecord.org_id == org_id)
            if event:
                query = query.where(NotificationRecord.event == event)
            return list(session.exec(query.order_by(NotificationRecord.id)).all())

    # Utility operations
    def health_check(self) -> bool:
        """Check if database is accessible."""
        try:
            with self.get_session() as session:
                session.exec(select(1))
                return True
        except Exception:
            return False
