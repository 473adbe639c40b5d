from fastapi import Header, Request

from psyche.core.container import Container
from psyche.core.exceptions import BadRequestError, ServiceUnavailableError


def get_container(request: Request) -> Container:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise ServiceUnavailableError("Inference services not initialized")
    return container


async def get_tenant_id(
    x_tenant_id: str = Header(..., alias="X-Tenant-ID", description="Tenant identifier"),
) -> str:
    tenant_id = x_tenant_id.strip()
    if not tenant_id or len(tenant_id) > 64:
        raise BadRequestError("Invalid X-Tenant-ID header")
    return tenant_id
