"""API v1 router aggregating all endpoints."""

from fastapi import APIRouter

from app.api.v1 import auth, documents, hubspot, queue, templates, workflow_actions

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(templates.router, prefix="/templates", tags=["templates"])
api_router.include_router(documents.router, prefix="/documents", tags=["documents"])
api_router.include_router(queue.router, prefix="/queue", tags=["queue"])
api_router.include_router(hubspot.router, prefix="/hubspot", tags=["hubspot"])
api_router.include_router(
    workflow_actions.router,
    prefix="/hubspot/workflow-actions",
    tags=["workflow-actions"],
)
