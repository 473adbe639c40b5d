"""Inference API: run a cycle, read profiles and their update history."""

from fastapi import APIRouter, Depends, Query, Request

from psyche.core.container import Container
from psyche.core.dependencies import get_container, get_tenant_id
from psyche.core.exceptions import NotFoundError
from psyche.core.rate_limit import INFERENCE_RUN_LIMIT, limiter
from psyche.schemas.inference import (
    FusedProfileResponse,
    InferenceRunRequest,
    InferenceRunResponse,
    ProfileHistoryResponse,
    ProfileUpdateResponse,
)

router = APIRouter(prefix="/inference", tags=["inference"])
profiles_router = APIRouter(prefix="/profiles", tags=["profiles"])


@router.post("/{user_id}/run", response_model=InferenceRunResponse)
@limiter.limit(INFERENCE_RUN_LIMIT)
async def run_inference(
    request: Request,
    user_id: str,
    body: InferenceRunRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    container: Container = Depends(get_container),
):
    result = await container.orchestrator.run_inference_cycle(
        user_id,
        tenant_id=tenant_id,
        cycle_id=body.cycle_id if body else None,
    )
    return result.to_dict()


@profiles_router.get("/{user_id}", response_model=FusedProfileResponse)
async def get_profile(
    user_id: str,
    tenant_id: str = Depends(get_tenant_id),
    container: Container = Depends(get_container),
):
    profile = await container.profiles.get(user_id, tenant_id)
    if profile is None:
        raise NotFoundError("Profile not found")
    return profile.to_dict()


@profiles_router.get("/{user_id}/history", response_model=ProfileHistoryResponse)
async def get_profile_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    container: Container = Depends(get_container),
):
    entries = await container.profiles.history(user_id, tenant_id, limit=limit, offset=offset)
    return ProfileHistoryResponse(
        user_id=user_id,
        items=[ProfileUpdateResponse(**e.to_dict()) for e in entries],
    )
