"""Versioned API surface mounted under ``settings.api_prefix``."""

from fastapi import APIRouter

from planning_qa.api.v1.endpoints import query

api_router = APIRouter()
api_router.include_router(query.router, tags=["qa"])
