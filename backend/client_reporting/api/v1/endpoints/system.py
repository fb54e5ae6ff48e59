"""System information endpoints."""

from fastapi import APIRouter

from client_reporting.core.capabilities import build_manifest
from client_reporting.core.errors import create_ok_response

router = APIRouter()


@router.get("/capabilities")
async def get_capabilities():
    """Describe each public operation: auth, idempotency contract, errors, limits."""
    return create_ok_response(build_manifest().model_dump(mode="json"))
