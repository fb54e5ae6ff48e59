"""API v1 routes."""

from fastapi import APIRouter

from client_reporting.api.v1.endpoints import clients, reports, system

api_router = APIRouter()

api_router.include_router(reports.router, prefix="/reports", tags=["Reports"])
api_router.include_router(clients.router, prefix="/clients", tags=["Clients"])
api_router.include_router(system.router, prefix="/system", tags=["System"])
