"""Worker health-check response models."""

from pydantic import BaseModel, Field

from app.schemas.regulations import MonitorHealthSummary


class HealthCheckResponse(BaseModel):
    """Health check response model.

    Attributes:
        status: Service status
        version: Application version
        service: Service name
        scheduler_running: Whether the polling loops are active
    """

    status: str = Field(
        default="healthy",
        description="Service health status",
        examples=["healthy", "degraded"],
    )
    version: str = Field(
        ...,
        description="Application version",
        examples=["0.1.0"],
    )
    service: str = Field(
        ...,
        description="Service name",
        examples=["RegWatch Pipeline"],
    )
    scheduler_running: bool = Field(
        default=False,
        description="Whether the background polling loops are running",
    )


class MonitorHealthResponse(BaseModel):
    """Regulation monitor health payload."""

    status: str = Field(default="healthy", examples=["healthy", "degraded", "unknown"])
    monitor: MonitorHealthSummary
