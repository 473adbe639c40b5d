"""Gateway administration: breaker and bucket state, health check, manual reset."""

from fastapi import APIRouter, Depends

from psyche.core.container import Container
from psyche.core.dependencies import get_container
from psyche.core.exceptions import NotFoundError
from psyche.schemas.gateway import CircuitResetResponse, GatewayStatusResponse, HealthCheckResponse

router = APIRouter(prefix="/gateway", tags=["gateway"])


@router.get("/status", response_model=GatewayStatusResponse)
async def gateway_status(container: Container = Depends(get_container)):
    return container.gateway.status()


@router.post("/health-check", response_model=HealthCheckResponse)
async def gateway_health_check(container: Container = Depends(get_container)):
    return await container.gateway.health_check()


@router.post("/circuits/{operation}/reset", response_model=CircuitResetResponse)
async def reset_circuit(operation: str, container: Container = Depends(get_container)):
    if operation not in container.gateway.policies:
        raise NotFoundError(f"Unknown operation: {operation}")
    container.breakers.reset(operation)
    return CircuitResetResponse(operation=operation, circuit=container.breakers.state(operation))
