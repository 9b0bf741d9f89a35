from fastapi import APIRouter
from .endpoints import (
    chat,
    experts,
    payments,
    websocket,
)

api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(chat.router, prefix="/chat", tags=["Chat"])
api_router.include_router(experts.router, prefix="/experts", tags=["Experts"])
api_router.include_router(payments.router, prefix="/payments", tags=["Payments"])
api_router.include_router(websocket.router, tags=["WebSocket"])
