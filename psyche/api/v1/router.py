from fastapi import APIRouter

from psyche.api.v1.audit import router as audit_router
from psyche.api.v1.credits import router as credits_router
from psyche.api.v1.gateway import router as gateway_router
from psyche.api.v1.inference import profiles_router
from psyche.api.v1.inference import router as inference_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(inference_router)
api_v1_router.include_router(profiles_router)
api_v1_router.include_router(credits_router)
api_v1_router.include_router(audit_router)
api_v1_router.include_router(gateway_router)
