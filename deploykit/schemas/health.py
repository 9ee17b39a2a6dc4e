"""
DeployKit — Runtime Shell Response Schemas
============================================

What:  Pydantic models returned by the application runtime shell's HTTP
       endpoints.
"""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """
    Who:   Returned by GET /health for container health checks and monitors.
    Note:  A process that cannot reach its datastore reports `unhealthy`.
    """
    status: str = Field(description="Overall status: healthy, unhealthy")
    version: str = Field(description="Application version")
    datastore: str = Field(description="Container identity of the datastore in use")
    database: str = Field(description="Datastore connectivity: connected, disconnected")
    uptime_seconds: float = Field(description="Seconds since the process started")


class ErrorResponse(BaseModel):
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable explanation")
    request_id: str = Field(default="", description="Correlation ID of the failed request")
