"""
Shared fixtures: an in-memory database, a fixed clock and haversine-only distances.
"""

import asyncio
from datetime import datetime

import pytest

from pooldispatch.auth import Actor
from pooldispatch.models import Carer, Client, Job, Organization, Pool, Role, ServicePlan
from pooldispatch.schemas import AppConfig, DevConfig, Settings
from pooldispatch.service import PoolDispatchService


FIXED_NOW = datetime(2025, 3, 10, 7, 0)
TODAY = "2025-03-10"

# Accra
HOME_BASE = (5.6037, -0.1870)
POOL_NEAR = (5.6100, -0.1900)
POOL_MID = (5.5800, -0.2000)
POOL_FAR = (5.5600, -0.2057)
AT_POOL_LAT_LNG = (POOL_NEAR[0] + 0.0003, POOL_NEAR[1])  # ~33 m from the near pool


class RecordingSender:
    """Collects delivered notifications; optionally fails every send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []
        self.payloads = []

    async def send(self, record):
        if self.fail:
            raise RuntimeError("sender down")
        self.sent.append(record.event)
        self.payloads.append(record.payload)


def run(coro):
    return asyncio.run(coro)


def make_service(sender=None, geofence_override=None, clock=None) -> PoolDispatchService:
    config = AppConfig(dev=DevConfig(mock_google_api=True))
    settings = Settings(
        _env_file=None,
        google_maps_api_key=None,
        geofence_arrival_radius_meters=geofence_override,
        database_url=None,
    )
    return PoolDispatchService(
        config=config,
        settings=settings,
        sender=sender,
        clock=clock or (lambda: FIXED_NOW),
        database_url="sqlite://",
    )


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def svc(sender):
    return make_service(sender=sender)


def seed_world(svc):
    """One org with two clients, three pools with coordinates, one without, and two carers."""
    repo = svc.repo
    org = repo.add(Organization(name="Blue Water"))
    other_org = repo.add(Organization(name="Other Co"))
    client = repo.add(Client(org_id=org.id, user_id="client-1", name="Ama"))
    other_client = repo.add(Client(org_id=org.id, user_id="client-2", name="Kofi"))
    pools = {
        "near": repo.add(Pool(org_id=org.id, client_id=client.id, name="Near",
                              address="1 Oxford St", lat=POOL_NEAR[0], lng=POOL_NEAR[1])),
        "mid": repo.add(Pool(org_id=org.id, client_id=client.id, name="Mid",
                             address="2 Ring Rd", lat=POOL_MID[0], lng=POOL_MID[1])),
        "far": repo.add(Pool(org_id=org.id, client_id=other_client.id, name="Far",
                             address="3 Beach Rd", lat=POOL_FAR[0], lng=POOL_FAR[1])),
        "blind": repo.add(Pool(org_id=org.id, client_id=client.id, name="No coords",
                               address="4 Unknown Ln")),
    }
    carer = repo.add(Carer(org_id=org.id, user_id="carer-1", name="Esi",
                           home_base_lat=HOME_BASE[0], home_base_lng=HOME_BASE[1]))
    other_carer = repo.add(Carer(org_id=org.id, user_id="carer-2", name="Yaw"))
    plan = repo.add(ServicePlan(org_id=org.id, pool_id=pools["near"].id))
    return {
        "org": org,
        "other_org": other_org,
        "client": client,
        "pools": pools,
        "carer": carer,
        "other_carer": other_carer,
        "plan": plan,
        "manager": Actor(org_id=org.id, user_id="mgr-1", role=Role.MANAGER),
        "carer_actor": Actor(org_id=org.id, user_id="carer-1", role=Role.CARER),
        "other_carer_actor": Actor(org_id=org.id, user_id="carer-2", role=Role.CARER),
        "client_actor": Actor(org_id=org.id, user_id="client-1", role=Role.CLIENT),
        "other_client_actor": Actor(org_id=org.id, user_id="client-2", role=Role.CLIENT),
    }


@pytest.fixture
def world(svc):
    return seed_world(svc)


def add_job(svc, world, pool_key="near", hour=9, carer=True, sequence=None, day=10, **fields):
    """Insert a scheduled job directly, bypassing create_job."""
    return svc.repo.save_job(Job(
        org_id=world["org"].id,
        pool_id=world["pools"][pool_key].id,
        window_start=datetime(2025, 3, day, hour, 0),
        window_end=datetime(2025, 3, day, hour + 1, 0),
        assigned_carer_id=world["carer"].id if carer else None,
        sequence=sequence,
        **fields,
    ))
