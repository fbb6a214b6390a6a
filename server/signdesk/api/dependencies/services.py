from fastapi import Request

from signdesk.core.config import Settings
from signdesk.services.signature_service import SignatureService


def get_signature_service(request: Request) -> SignatureService:
    return request.app.state.signature_service


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_correlation_id(request: Request) -> str | None:
    return getattr(request.state, "correlation_id", None)
