"""FastAPI router aggregation."""

from fastapi import APIRouter

from api.agent import router as agent_router
from api.chat import router as chat_router

api_router = APIRouter(prefix="/api")
api_router.include_router(chat_router, tags=["chat"])

actor_router = APIRouter(prefix="/agent")
actor_router.include_router(agent_router, tags=["agent"])
