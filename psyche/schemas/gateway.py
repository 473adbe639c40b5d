from pydantic import BaseModel


class GatewayStatusResponse(BaseModel):
    model: str
    operations: list[str]
    circuits: list[dict]
    buckets: list[dict]


class HealthCheckResponse(BaseModel):
    healthy: bool
    status: str
    latency_ms: int
    error_message: str
    circuit: dict


class CircuitResetResponse(BaseModel):
    operation: str
    circuit: dict
