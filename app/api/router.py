from fastapi import APIRouter
from app.api.endpoints import sql_agent

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(sql_agent.router)
