"""OAuth connect and callback endpoints.

Connect: verifies the signed state issued by the admin endpoint, checks
platform credentials, sets a short-lived state cookie and redirects to the
provider. Callback: verifies the state again plus the cookie (double submit),
requires the signed-in member to be the one the state was issued to,
exchanges the code and redirects to the settings page with
``?{type}=connected`` or ``?{type}=error&reason=...``.
"""

from __future__ import annotations

from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from src.hub.api.deps import get_oauth_manager, get_session_member
from src.hub.config import get_settings
from src.hub.integrations.capabilities import IntegrationDefinition
from src.hub.integrations.errors import (
    IntegrationNotFoundError,
    OAuthStateError,
    PlatformCredentialsMissingError,
    TokenExchangeError,
)
from src.hub.integrations.oauth import OAuthConnectionManager

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])


def state_cookie_name(integration_type: str) -> str:
    return f"oauth_state_{integration_type}"


def settings_redirect(
    definition: IntegrationDefinition, status: str, reason: str | None = None
) -> RedirectResponse:
    params = {definition.id: status}
    if reason:
        params["reason"] = reason
    url = f"{get_settings().BASE_URL.rstrip('/')}{definition.catalog.settings_path}?{urlencode(params)}"
    response = RedirectResponse(url, status_code=302)
    response.delete_cookie(state_cookie_name(definition.id), path="/oauth")
    return response


@router.get("/{integration_type}/connect")
async def oauth_connect(
    integration_type: str,
    request: Request,
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
) -> Response:
    """Redirect the browser to the provider's authorization page."""
    try:
        definition = manager.get_definition(integration_type, "oauth")
    except IntegrationNotFoundError:
        return JSONResponse({"error": "Unknown integration"}, status_code=404)

    state = request.query_params.get("state")
    if not state:
        return JSONResponse({"error": "state is required"}, status_code=400)

    try:
        state_data = manager.verify_state(state, integration_type)
        credentials = await manager.get_platform_credentials(integration_type)
        auth_url = manager.build_auth_url(
            definition,
            state,
            manager.redirect_uri(integration_type),
            pre_auth_fields=state_data.pre_auth_fields,
            platform_credentials=credentials,
        )
    except OAuthStateError as exc:
        return JSONResponse({"error": "Invalid state", "reason": exc.reason}, status_code=400)
    except PlatformCredentialsMissingError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)

    response = RedirectResponse(auth_url, status_code=302)
    response.set_cookie(
        state_cookie_name(integration_type),
        state,
        max_age=get_settings().OAUTH_STATE_TTL_SECONDS,
        path="/oauth",
        secure=request.url.scheme == "https",
        httponly=True,
        samesite="lax",
    )
    return response


@router.get("/{integration_type}/callback")
async def oauth_callback(
    integration_type: str,
    request: Request,
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
) -> Response:
    """Complete the flow and send the admin back to the settings page."""
    try:
        definition = manager.get_definition(integration_type, "oauth")
    except IntegrationNotFoundError:
        return JSONResponse({"error": "Unknown integration"}, status_code=404)

    params = request.query_params
    state = params.get("state")
    code = params.get("code")
    log = logger.bind(integration_type=integration_type)

    try:
        state_data = manager.verify_state(state, integration_type)
    except OAuthStateError as exc:
        log.warning("oauth.callback_state_rejected", reason=exc.reason)
        return settings_redirect(definition, "error", exc.reason)

    if params.get(definition.oauth.error_param):
        log.info("oauth.denied_by_user", provider_error=params.get(definition.oauth.error_param))
        return settings_redirect(definition, "error", f"{integration_type}_denied")

    if not code:
        return settings_redirect(definition, "error", "invalid_request")

    if request.cookies.get(state_cookie_name(integration_type)) != state:
        log.warning("oauth.callback_state_rejected", reason="state_mismatch")
        return settings_redirect(definition, "error", "state_mismatch")

    member = get_session_member(request)
    if member is None:
        log.warning("oauth.callback_state_rejected", reason="auth_required")
        return settings_redirect(definition, "error", "auth_required")
    if member.id != state_data.member_id:
        log.warning("oauth.callback_state_rejected", reason="session_mismatch", member_id=member.id)
        return settings_redirect(definition, "error", "session_mismatch")

    try:
        await manager.complete_callback(integration_type, code, state)
    except OAuthStateError as exc:
        return settings_redirect(definition, "error", exc.reason)
    except PlatformCredentialsMissingError:
        return settings_redirect(definition, "error", "credentials_not_configured")
    except TokenExchangeError as exc:
        log.warning("oauth.exchange_failed", error=str(exc))
        return settings_redirect(definition, "error", "exchange_failed")
    except Exception:
        log.exception("oauth.callback_failed")
        return settings_redirect(definition, "error", "save_failed")

    return settings_redirect(definition, "connected")
