"""HTTP endpoints of the identity simulator.

This module maps the simulator's HTTP surface onto SimulatorService:
- Pin flow (/pin)
- OpenID Connect (/o/authorize, /o/token, /o/userinfo, discovery, JWKS)
- Legacy OAuth2 (/oauth2/authorize, /oauth2/token, /details)
- User directory (/api/v1/users)
- Testing support (/testing-support/accounts, /session)

The service instance lives on ``app.state.service`` (see main.create_app).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Form, Header, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from simulator.errors import InvalidRequest, UnsupportedGrantType, UnsupportedResponseType
from simulator.middleware import (
    basic_credentials,
    bearer_token,
    require_basic_credentials,
    require_bearer_token,
)
from simulator.service import SimulatorService

logger = logging.getLogger(__name__)

# Router for simulator endpoints
router = APIRouter(tags=["simulator"])


def get_service(request: Request) -> SimulatorService:
    return request.app.state.service


async def _json_body(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise InvalidRequest("Request body must be JSON")
    if not isinstance(data, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return data


def _check_response_type(response_type: Optional[str]) -> None:
    if response_type and response_type != "code":
        raise UnsupportedResponseType(f"Response type '{response_type}' is not supported")


# ============== Pin Flow ==============

@router.post("/pin")
async def create_pin(request: Request):
    """Create a simulated identity and return its pin."""
    require_bearer_token(request)
    data = await _json_body(request)
    roles = data.get("roles") or []
    if not isinstance(roles, list):
        raise InvalidRequest("roles must be a list")
    details = get_service(request).create_pin_details(
        data.get("firstName", ""), data.get("lastName", ""), [str(r) for r in roles]
    )
    return details


@router.get("/pin")
async def authorize_with_pin(
    request: Request,
    client_id: str = "",
    redirect_uri: str = "",
    state: str = "",
    pin: Optional[str] = Header(None),
):
    """Redeem a pin (or create an identity) and redirect back with a code."""
    target = get_service(request).authorize_redirect(client_id, redirect_uri, state, pin=pin)
    return RedirectResponse(url=target, status_code=302)


# ============== OpenID Connect ==============

@router.get("/o/.well-known/openid-configuration")
async def openid_configuration(request: Request):
    """OpenID Provider discovery document."""
    issuer = get_service(request).issuer.issuer_url
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/authorize",
        "token_endpoint": f"{issuer}/token",
        "userinfo_endpoint": f"{issuer}/userinfo",
        "jwks_uri": f"{issuer}/jwks",
        "end_session_endpoint": f"{issuer}/endSession",
        "response_types_supported": ["code"],
        "response_modes_supported": ["query"],
        "grant_types_supported": ["authorization_code", "refresh_token", "password"],
        "subject_types_supported": ["public"],
        "scopes_supported": ["openid", "profile", "roles"],
        "claims_supported": ["sub", "uid", "email", "given_name", "family_name", "roles"],
        "id_token_signing_alg_values_supported": ["RS256"],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
    }


@router.get("/o/jwks")
async def jwks(request: Request):
    """JSON Web Key Set holding the token signing key."""
    return get_service(request).issuer.key.jwks()


def _authorize(request: Request, client_id: str, redirect_uri: str, state: str, pin: Optional[str]):
    credentials = basic_credentials(request)
    username = credentials[0] if credentials else None
    target = get_service(request).authorize_redirect(
        client_id, redirect_uri, state, pin=pin, username=username
    )
    return RedirectResponse(url=target, status_code=302)


@router.get("/o/authorize")
async def oidc_authorize(
    request: Request,
    client_id: str = "",
    redirect_uri: str = "",
    response_type: str = "code",
    state: str = "",
    pin: Optional[str] = Header(None),
):
    """OIDC authorization endpoint (query parameters)."""
    _check_response_type(response_type)
    return _authorize(request, client_id, redirect_uri, state, pin)


@router.post("/o/authorize")
async def oidc_authorize_post(
    request: Request,
    client_id: str = Form(""),
    redirect_uri: str = Form(""),
    response_type: str = Form("code"),
    state: str = Form(""),
    pin: Optional[str] = Header(None),
):
    """OIDC authorization endpoint (form post)."""
    _check_response_type(response_type)
    return _authorize(request, client_id, redirect_uri, state, pin)


@router.post("/o/token")
async def oidc_token(
    request: Request,
    grant_type: str = Form(None),
    client_id: str = Form(None),
    client_secret: str = Form(None),
    redirect_uri: str = Form(None),
    code: str = Form(None),
    refresh_token: str = Form(None),
    username: str = Form(None),
    password: str = Form(None),
    scope: str = Form(None),
):
    """OIDC token endpoint: authorization_code, refresh_token or password-like grants."""
    logger.debug(f"[TOKEN] grant_type: {grant_type}, client_id: {client_id}")
    if client_id is None:
        credentials = basic_credentials(request)
        client_id = credentials[0] if credentials else None
    return get_service(request).token_grant(
        grant_type,
        client_id=client_id,
        code=code,
        redirect_uri=redirect_uri,
        refresh_token=refresh_token,
        username=username,
        scope=scope,
    )


@router.get("/o/userinfo")
async def userinfo(request: Request):
    """OIDC user-info for the bearer token's identity."""
    return get_service(request).user_info(bearer_token(request))


# ============== Legacy OAuth2 ==============

@router.post("/oauth2/authorize")
async def legacy_authorize(
    request: Request,
    redirect_uri: str = Form(None),
    client_id: str = Form(None),
    response_type: str = Form("code"),
):
    """Legacy combined grant: basic-auth user receives a code directly."""
    _check_response_type(response_type)
    username, _password = require_basic_credentials(request)
    code = get_service(request).generate_code_for_username(username, client_id, redirect_uri)
    return {"code": code}


@router.post("/oauth2/token")
async def legacy_token(
    request: Request,
    grant_type: str = Form(None),
    code: str = Form(None),
    redirect_uri: str = Form(None),
    client_id: str = Form(None),
    refresh_token: str = Form(None),
):
    """Legacy token endpoint for the authorization_code and refresh_token grants."""
    if client_id is None:
        credentials = basic_credentials(request)
        client_id = credentials[0] if credentials else None

    service = get_service(request)
    if grant_type == "authorization_code":
        tokens = service.exchange_code(code, client_id, redirect_uri)
    elif grant_type == "refresh_token":
        tokens = service.refresh_grant(refresh_token, client_id)
    else:
        raise UnsupportedGrantType(f"Grant type '{grant_type}' is not supported")
    return service.token_response(tokens)


@router.get("/details")
async def details(request: Request):
    """Details of the bearer token's identity."""
    return get_service(request).user_details(bearer_token(request))


# ============== User Directory ==============

@router.get("/api/v1/users/{user_id}")
async def user_by_id(request: Request, user_id: str):
    return get_service(request).user_by_id(bearer_token(request), user_id)


@router.get("/api/v1/users")
async def search_users(request: Request, query: str = ""):
    return get_service(request).search_users(bearer_token(request), query)


# ============== Testing Support ==============

@router.get("/testing-support/accounts")
async def account_by_email(request: Request, email: str = ""):
    if not email:
        raise InvalidRequest("email is required")
    return get_service(request).account_by_email(email)


@router.post("/testing-support/accounts")
async def create_account(request: Request):
    data = await _json_body(request)
    return JSONResponse(get_service(request).create_account(data), status_code=201)


@router.delete("/testing-support/accounts/{email}")
async def delete_account(request: Request, email: str):
    get_service(request).remove_account(email)
    return Response(status_code=204)


@router.delete("/testing-support/accounts")
async def reset_accounts(request: Request):
    get_service(request).reset()
    return Response(status_code=204)


@router.delete("/session/{token}")
async def logout(request: Request, token: str):
    """Revoke every token of the session holding ``token``."""
    get_service(request).logout(token)
    return Response(status_code=204)
