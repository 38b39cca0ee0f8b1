"""
API Dependencies
Shared dependencies for service access and request authentication
"""
import hmac
import logging
from typing import Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from twilio.request_validator import RequestValidator

from carecall.core.config import Settings, get_settings
from carecall.core.container import ServiceContainer

logger = logging.getLogger(__name__)


def get_container(request: Request) -> ServiceContainer:
    """
    Services built by the application lifespan.

    Raises:
        RuntimeError: If the lifespan has not run
    """
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise RuntimeError("Service container not initialized")
    return container


async def require_internal_secret(
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
    settings: Settings = Depends(get_settings)
) -> None:
    """
    Dependency guarding internal endpoints with the shared secret header.

    Raises:
        HTTPException: 401 if the header is missing or wrong
    """
    expected = settings.internal_api_secret
    if not expected or not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing webhook secret",
        )


async def get_twilio_form(
    request: Request,
    x_twilio_signature: Optional[str] = Header(None, alias="X-Twilio-Signature"),
    settings: Settings = Depends(get_settings)
) -> Dict[str, str]:
    """
    Parse a Twilio webhook form body and verify its signature.

    The signed URL is the public one Twilio called, so it is rebuilt from
    `public_base_url` rather than taken from the (proxied) request.

    Raises:
        HTTPException: 403 if the signature does not match
    """
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    if settings.skip_twilio_signature_validation:
        return params

    if not settings.twilio_auth_token:
        logger.error("Twilio webhook received but TWILIO_AUTH_TOKEN is not set")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Signature validation unavailable")

    url = f"{settings.public_base_url.rstrip('/')}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"

    validator = RequestValidator(settings.twilio_auth_token)
    if not x_twilio_signature or not validator.validate(url, params, x_twilio_signature):
        logger.warning(f"Rejected Twilio webhook with bad signature: {request.url.path}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid Twilio signature")

    return params
