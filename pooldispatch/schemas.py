"""
Pydantic schemas for configuration, settings, and API validation.
"""

from datetime import datetime
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict


class DispatchConfig(BaseModel):
    """Job lifecycle guards."""
    geofence_arrival_radius_meters: float = Field(default=100.0, gt=0)
    duplicate_window_seconds: int = Field(default=5, ge=0)
    elevated_roles: List[str] = Field(default_factory=lambda: ["admin", "manager"])
    required_readings: List[str] = Field(
        default_factory=lambda: ["ph", "chlorine_free", "alkalinity", "temp_c"]
    )
    active_statuses_for_eta: List[str] = Field(default_factory=lambda: ["scheduled", "en_route"])


class RoutingConfig(BaseModel):
    """Route optimization and offline estimate parameters."""
    service_minutes: int = Field(default=30, ge=0)
    earth_radius_km: float = Field(default=6371.0, gt=0)
    fallback_speeds_kmph: Dict[str, float] = Field(
        default_factory=lambda: {"driving": 50.0, "walking": 5.0, "bicycling": 15.0, "transit": 30.0}
    )

    def speed_for(self, mode: str) -> float:
        """Average speed used by the haversine fallback for a travel mode."""
        return self.fallback_speeds_kmph.get(mode, self.fallback_speeds_kmph.get("driving", 50.0))


class GoogleConfig(BaseModel):
    """Google Maps API configuration."""
    base_url: str = Field(default="https://maps.googleapis.com/maps/api")
    timeout_seconds: float = Field(default=5.0, gt=0)
    max_retries: int = Field(default=2, ge=1, le=10)
    retry_delay_seconds: float = Field(default=0.5, ge=0)


class DatabaseConfig(BaseModel):
    """Database configuration."""
    url: str = Field(default="sqlite:///./pooldispatch.db")
    echo: bool = Field(default=False)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR)$"
    )
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


class NotificationsConfig(BaseModel):
    """Side-channel delivery configuration."""
    enabled: bool = Field(default=True)
    manager_roles: List[str] = Field(default_factory=lambda: ["manager", "admin"])


class DevConfig(BaseModel):
    """Development and testing configuration."""
    mock_google_api: bool = Field(default=False)


class ProjectConfig(BaseModel):
    """Top-level project configuration."""
    name: str = Field(default="Pool Dispatch")
    version: str = Field(default="0.1.0")


class AppConfig(BaseModel):
    """Complete application configuration loaded from params.yaml."""
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    dev: DevConfig = Field(default_factory=DevConfig)


class Settings(BaseSettings):
    """Environment-based settings (secrets and deployment overrides)."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    google_maps_api_key: Optional[str] = Field(default=None)
    geofence_arrival_radius_meters: Optional[float] = Field(default=None, gt=0)
    database_url: Optional[str] = Field(default=None)
    pooldispatch_config: str = Field(default="config/params.yaml")


# API Request/Response Schemas
class CamelModel(BaseModel):
    """Accepts camelCase payloads while keeping snake_case attributes."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GeoPoint(CamelModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy_m: Optional[float] = Field(default=None, ge=0)


class CreateJobRequest(CamelModel):
    """Schedule a visit for a pool."""
    pool_id: int
    window_start: datetime
    window_end: datetime
    plan_id: Optional[int] = None
    assigned_carer_id: Optional[int] = None
    notes: Optional[str] = None


class AssignJobRequest(CamelModel):
    carer_id: int
    sequence: Optional[int] = Field(default=None, ge=1)


class RescheduleJobRequest(CamelModel):
    window_start: datetime
    window_end: datetime
    reason: Optional[str] = None


class CancelJobRequest(CamelModel):
    code: str = Field(pattern="^(client_request|weather|other)$")
    reason: Optional[str] = None


class ClientCancelRequest(CamelModel):
    reason: Optional[str] = None


class StartJobRequest(CamelModel):
    location: Optional[GeoPoint] = None
    eta_minutes: Optional[int] = Field(default=None, ge=0)


class ArriveJobRequest(CamelModel):
    location: Optional[GeoPoint] = None
    occurred_at: Optional[datetime] = None


class FailJobRequest(CamelModel):
    code: str = Field(pattern="^(no_access|client_absent|equip_failure|other)$")
    notes: Optional[str] = None


class ReportWeatherRequest(CamelModel):
    condition: str = Field(pattern="^(rain|storm|extreme_heat|other)$")
    description: Optional[str] = None
    location: Optional[GeoPoint] = None


class ReadingRequest(CamelModel):
    """Water chemistry reading; every value is optional."""
    ph: Optional[float] = Field(default=None, ge=6.2, le=8.6)
    chlorine_free: Optional[float] = Field(default=None, ge=0, le=10)
    chlorine_total: Optional[float] = Field(default=None, ge=0, le=10)
    alkalinity: Optional[float] = Field(default=None, ge=40, le=240)
    calcium_hardness: Optional[float] = Field(default=None, ge=100, le=600)
    cyanuric_acid: Optional[float] = Field(default=None, ge=0, le=120)
    temp_c: Optional[float] = Field(default=None, ge=5, le=45)
    measured_at: Optional[datetime] = None


class LocationUpdateRequest(CamelModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class OptimizeRequest(CamelModel):
    """Request parameters for the dispatch optimize endpoint."""
    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")  # YYYY-MM-DD
    carer_id: Optional[int] = None


class RouteChange(CamelModel):
    """One job's move within an optimized route."""
    job_id: int
    from_seq: Optional[int] = None
    to_seq: int = Field(ge=1)
    eta: Optional[str] = None
    distance_km: float = Field(default=0.0, ge=0)
    duration_min: float = Field(default=0.0, ge=0)


class OptimizationSummary(BaseModel):
    savings_km: float = Field(ge=0)
    savings_min: float = Field(ge=0)
    current_distance_km: float = Field(ge=0)
    optimized_distance_km: float = Field(ge=0)


class OptimizeResponse(CamelModel):
    optimization_id: str
    summary: OptimizationSummary
    changes: List[RouteChange]


class ApplyRequest(CamelModel):
    optimization_id: str
    changes: List[RouteChange]

    @validator('changes')
    def unique_jobs(cls, v):
        """Each job may appear once per change list."""
        ids = [c.job_id for c in v]
        if len(ids) != len(set(ids)):
            raise ValueError('changes must reference each job at most once')
        return v


class ApplyResponse(CamelModel):
    success: bool
    optimization_id: str
    jobs_updated: int


class HealthResponse(BaseModel):
    """API health check response."""
    status: str
    version: str
    database_connected: bool
    google_api_configured: bool
    timestamp: str


class VerifyMapsKeyRequest(CamelModel):
    """An explicit key to test; omitted means the org's stored key."""
    api_key: Optional[str] = None


class VerifyMapsKeyResponse(BaseModel):
    valid: bool
    message: Optional[str] = None
