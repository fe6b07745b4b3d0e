"""
Main service layer for pool dispatch.
Wires configuration, persistence, the distance provider and the dispatch
components together and exposes them to the API and CLI.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

from .auth import Actor
from .distance import DistanceProvider
from .dispatch import DispatchService
from .errors import ForbiddenError
from .eta import ETARecalculator
from .jobs import JobService
from .notifications import NotificationDispatcher
from .repo import DatabaseRepository
from .schemas import (
    AppConfig, ApplyRequest, ApplyResponse, OptimizeRequest, OptimizeResponse, Settings,
    VerifyMapsKeyRequest, VerifyMapsKeyResponse
)
from .state_machine import JobStateMachine


logger = logging.getLogger(__name__)


def load_config(config_path: str) -> AppConfig:
    """Load configuration from YAML file; a missing file means defaults."""
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file {config_path} not found; using defaults")
        return AppConfig()
    try:
        with open(path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
        return AppConfig(**config_data)
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise


class PoolDispatchService:
    """Main service for pool job dispatch."""

    def __init__(
        self,
        config_path: Optional[str] = None,
        config: Optional[AppConfig] = None,
        settings: Optional[Settings] = None,
        distance_provider: Optional[DistanceProvider] = None,
        sender: Optional[Any] = None,
        clock: Callable[[], datetime] = datetime.now,
        database_url: Optional[str] = None
    ):
        """Initialize service with configuration."""
        self.settings = settings or Settings()
        self.config = config or load_config(config_path or self.settings.pooldispatch_config)
        self.clock = clock

        self._setup_logging()

        # Initialize components
        self.repo = DatabaseRepository(self.config, database_url or self.settings.database_url)
        self.distance_provider = distance_provider or DistanceProvider(self.config, self.settings)
        self.state_machine = JobStateMachine(
            self.config.dispatch, self.settings.geofence_arrival_radius_meters
        )
        self.eta = ETARecalculator(self.config, self.repo, self.distance_provider, clock)
        self.notifier = NotificationDispatcher(self.config, self.repo, sender)
        self.dispatch = DispatchService(self.config, self.repo, self.distance_provider, clock)
        self.jobs = JobService(
            self.config, self.repo, self.distance_provider, self.state_machine,
            self.eta, self.notifier, clock
        )

        # Initialize database
        self.repo.create_tables()
        logger.info(
            f"{self.config.project.name} ready (geofence {self.state_machine.geofence_radius_m:.0f} m, "
            f"google {'mocked' if self.config.dev.mock_google_api else 'live'})"
        )

    def _setup_logging(self) -> None:
        """Setup logging configuration."""
        logging.basicConfig(
            level=getattr(logging, self.config.logging.level),
            format=self.config.logging.format
        )

    def _require_elevated(self, actor: Actor) -> None:
        if actor.role.value not in self.config.dispatch.elevated_roles:
            raise ForbiddenError(f"Role '{actor.role.value}' may not manage dispatch")

    async def optimize_routes(self, actor: Actor, request: OptimizeRequest) -> OptimizeResponse:
        """Preview an optimized ordering of the day's jobs."""
        self._require_elevated(actor)
        return await self.dispatch.optimize(actor.org_id, request.date, request.carer_id)

    async def apply_routes(self, actor: Actor, request: ApplyRequest) -> ApplyResponse:
        """Persist a previewed ordering."""
        self._require_elevated(actor)
        return await self.dispatch.apply(actor.org_id, request.optimization_id, request.changes)

    async def verify_maps_key(self, actor: Actor, request: VerifyMapsKeyRequest) -> VerifyMapsKeyResponse:
        """Test the given key, else the org key, else the system default."""
        self._require_elevated(actor)
        key = request.api_key or self.repo.get_org_maps_key(actor.org_id)
        result = await self.distance_provider.verify_api_key(key)
        return VerifyMapsKeyResponse(**result)

    def health_check(self) -> Dict[str, Any]:
        """Perform health check on all components."""
        return {
            "status": "healthy",
            "database_connected": self.repo.health_check(),
            "google_api_configured": self.settings.google_maps_api_key is not None,
            "timestamp": self.clock().isoformat()
        }

    async def close(self) -> None:
        """Clean up resources."""
        await self.notifier.drain()
        await self.distance_provider.close()
