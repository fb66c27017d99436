"""JWT helpers for simulator-issued tokens.

Tokens are signed with the simulator-local RSA key (see simulator.keys) using
PyJWT. Every token gets a random ``jti`` so two tokens minted in the same second
for the same subject still differ.
"""

import logging
import time
import uuid
from typing import Optional

import jwt

from simulator.keys import SigningKey

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_SECONDS = 8 * 60 * 60  # 8 hours
REFRESH_TOKEN_EXPIRE_SECONDS = 24 * 60 * 60  # 24 hours

ACCESS_TOKEN = "access_token"
ID_TOKEN = "id_token"
REFRESH_TOKEN = "refresh_token"


def _encode(payload: dict, key: SigningKey) -> str:
    return jwt.encode(
        payload, key.private_key, algorithm=key.algorithm, headers={"kid": key.kid}
    )


def _base_claims(subject: str, issuer: str, token_name: str, expires_in: int) -> dict:
    now = int(time.time())
    return {
        "sub": subject,             # Subject (email or user id)
        "iss": issuer,              # Issuer
        "tokenName": token_name,    # access_token / id_token / refresh_token
        "jti": uuid.uuid4().hex,    # Unique per mint
        "iat": now,                 # Issued at
        "exp": now + expires_in,    # Expiration
    }


def create_access_token(
    subject: str,
    client_id: str,
    grant_type: str,
    issuer: str,
    key: SigningKey,
    expires_in: int = ACCESS_TOKEN_EXPIRE_SECONDS,
) -> str:
    """Create a signed access token bound to a client and grant type."""
    payload = _base_claims(subject, issuer, ACCESS_TOKEN, expires_in)
    payload["client_id"] = client_id
    payload["grant_type"] = grant_type
    return _encode(payload, key)


def create_id_token(
    subject: str,
    client_id: str,
    issuer: str,
    key: SigningKey,
    given_name: str = "",
    family_name: str = "",
    roles: Optional[list[str]] = None,
    email: Optional[str] = None,
    uid: Optional[str] = None,
    expires_in: int = ACCESS_TOKEN_EXPIRE_SECONDS,
) -> str:
    """Create a signed OIDC ID token carrying the record's profile claims."""
    payload = _base_claims(subject, issuer, ID_TOKEN, expires_in)
    payload.update({
        "aud": client_id,
        "uid": uid,
        "email": email,
        "given_name": given_name,
        "family_name": family_name,
        "roles": list(roles or []),
    })
    return _encode(payload, key)


def create_refresh_token(
    subject: str,
    client_id: str,
    issuer: str,
    key: SigningKey,
    expires_in: int = REFRESH_TOKEN_EXPIRE_SECONDS,
) -> str:
    payload = _base_claims(subject, issuer, REFRESH_TOKEN, expires_in)
    payload["client_id"] = client_id
    return _encode(payload, key)


def verify_token(
    token: str,
    key: SigningKey,
    token_name: Optional[str] = None,
    issuer: Optional[str] = None,
) -> Optional[dict]:
    """Verify signature and expiry of a simulator token.

    Audience is not checked. Returns the payload, or None if the token is
    invalid, expired, or not of the requested ``token_name``.
    """
    options = {"require": ["exp", "sub"], "verify_aud": False}
    try:
        payload = jwt.decode(
            token,
            key.public_key,
            algorithms=[key.algorithm],
            options=options,
            issuer=issuer,
        )
    except jwt.ExpiredSignatureError:
        logger.debug("[TOKEN] Token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.debug(f"[TOKEN] Invalid token: {e}")
        return None

    if token_name and payload.get("tokenName") != token_name:
        logger.debug(f"[TOKEN] Token is not an {token_name}")
        return None

    return payload
