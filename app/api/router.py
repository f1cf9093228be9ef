from fastapi import APIRouter
from app.api.endpoints import schema_tools

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(schema_tools.router)
