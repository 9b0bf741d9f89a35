"""Accessors for the per-application services built in ``create_app``."""
from fastapi import Request

from experttalk.core.websocket import ChatGateway
from experttalk.services.presence_service import PresenceService
from experttalk.services.session_service import ChatSessionService


def get_session_service(request: Request) -> ChatSessionService:
    return request.app.state.session_service


def get_gateway(request: Request) -> ChatGateway:
    return request.app.state.gateway


def get_presence(request: Request) -> PresenceService:
    return request.app.state.presence
