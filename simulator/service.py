"""Protocol flows of the identity simulator.

``SimulatorService`` drives identity records through
NEW -> PIN_ISSUED -> CODE_ISSUED -> TOKENIZED on top of the store, the code
generator and the token issuer. Those collaborators report misses as None; this
is the only layer that turns them into SimulatorErrors.
"""

import logging
from typing import Any, Optional
from urllib.parse import urlencode

from simulator.codes import CodeGenerator, new_user_id
from simulator.errors import (
    Conflict,
    InvalidGrant,
    InvalidRequest,
    NotFound,
    Unauthenticated,
    UnsupportedGrantType,
)
from simulator.issuer import TokenIssuer, TokenSet
from simulator.stores import FlowState, IdentityRecord, IdentityStore

logger = logging.getLogger(__name__)

TOKEN_TYPE = "Bearer"


def _redirect_target(redirect_uri: str, params: dict) -> str:
    separator = "&" if "?" in redirect_uri else "?"
    return f"{redirect_uri}{separator}{urlencode(params)}"


def _role_names(roles: Any) -> list[str]:
    """Accept roles as plain strings or as ``{"code": ...}`` objects."""
    names = []
    for role in roles or []:
        if isinstance(role, dict):
            role = role.get("code") or role.get("name")
        if role:
            names.append(str(role))
    return names


class SimulatorService:
    """Grant-type state machines and user lookups."""

    def __init__(self, store: IdentityStore, codes: CodeGenerator, issuer: TokenIssuer):
        self.store = store
        self.codes = codes
        self.issuer = issuer

    # ============== Pin flow ==============

    def create_pin_details(
        self, first_name: str, last_name: str, roles: Optional[list[str]] = None
    ) -> dict:
        """Create a new identity with a pin. Never reuses an existing record."""
        pin, user_id = self.codes.generate_pin(first_name, last_name, roles)
        return {"pin": pin, "userId": user_id}

    # ============== Authorization ==============

    def authorize_redirect(
        self,
        client_id: str,
        redirect_uri: str,
        state: Optional[str] = None,
        pin: Optional[str] = None,
        username: Optional[str] = None,
    ) -> str:
        """Issue a code for the target identity and build the redirect URL.

        The identity is the one named by ``username`` (by email), the one
        holding ``pin``, or else a freshly created record. No token is issued.
        """
        if not redirect_uri:
            raise InvalidRequest("redirect_uri is required")

        code = None
        if username:
            record = self.store.get_by_email(username)
            if record is None:
                raise NotFound(f"No account for {username}")
            code = self.codes.generate_authorization_code(record.user_id, client_id, redirect_uri)
        elif pin:
            record = self.codes.exchange_pin_for_code(pin, client_id, redirect_uri)
            if record is not None:
                code = record.authorization_code
            else:
                logger.info("[PIN] Unknown or used pin, creating a new identity")

        if code is None:
            record = IdentityRecord(user_id=new_user_id())
            self.store.put(record)
            code = self.codes.generate_authorization_code(record.user_id, client_id, redirect_uri)

        params = {"code": code}
        if state:
            params["state"] = state
        return _redirect_target(redirect_uri, params)

    def generate_code_for_username(
        self, username: str, client_id: Optional[str] = None, redirect_uri: Optional[str] = None
    ) -> str:
        """Legacy combined grant: code for an existing email-resolvable identity.

        Never creates or re-inserts a record.
        """
        record = self.store.get_by_email(username)
        if record is None:
            raise NotFound(f"No account for {username}")
        code = self.codes.generate_authorization_code(record.user_id, client_id, redirect_uri)
        if code is None:
            raise NotFound(f"No account for {username}")
        return code

    # ============== Token grants ==============

    def exchange_code(
        self, code: str, client_id: Optional[str], redirect_uri: Optional[str]
    ) -> TokenSet:
        if not code:
            raise InvalidRequest("code is required")
        tokens = self.issuer.exchange_code_for_token(code, client_id, redirect_uri)
        if tokens is None:
            raise InvalidGrant("Authorization code is invalid, expired or already used")
        return tokens

    def refresh_grant(self, refresh_token: str, client_id: Optional[str]) -> TokenSet:
        if not refresh_token:
            raise InvalidRequest("refresh_token is required")
        tokens = self.issuer.refresh(refresh_token, client_id)
        if tokens is None:
            raise InvalidGrant("Refresh token is invalid or has been rotated")
        return tokens

    def password_grant(
        self, username: str, client_id: str, grant_type: str, scope: Optional[str]
    ) -> dict:
        """Resource-owner style grant; the password itself is not checked.

        User-bound token state is refreshed with a fresh token before the
        response token is taken from the cache. The steps run inside one store
        transaction, so a concurrent lookup never sees the fresh token standing
        in for the one handed out earlier.
        """
        if self.issuer.resolve_username(username) is None:
            raise InvalidGrant(f"Unknown user {username}")

        with self.store.transaction():
            self.issuer.issue_token(username, client_id, grant_type)
            token = self.issuer.issue_cached_token(username, client_id, grant_type)
            self.update_token_in_user(username, token)
            tokens = self.issuer.issue_companion_tokens(username, client_id, grant_type, token)

        if tokens is None:
            raise InvalidGrant(f"Unknown user {username}")

        return {
            "access_token": tokens.access_token,
            "expires_in": tokens.expires_in,
            "id_token": tokens.id_token,
            "refresh_token": tokens.refresh_token,
            "scope": scope,
            "token_type": TOKEN_TYPE,
        }

    def token_grant(
        self,
        grant_type: Optional[str],
        client_id: Optional[str] = None,
        code: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        refresh_token: Optional[str] = None,
        username: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> dict:
        """Dispatch an /o/token request on its grant type."""
        if grant_type == "authorization_code":
            return self.token_response(self.exchange_code(code, client_id, redirect_uri), scope)
        if grant_type == "refresh_token":
            return self.token_response(self.refresh_grant(refresh_token, client_id), scope)
        if grant_type and username:
            return self.password_grant(username, client_id, grant_type, scope)
        raise UnsupportedGrantType(f"Grant type '{grant_type}' is not supported")

    def update_token_in_user(self, username: str, token: str) -> None:
        record = self.issuer.resolve_username(username)
        if record is None:
            raise NotFound(f"No account for {username}")

        def set_token(r: IdentityRecord) -> None:
            r.access_token = token
            r.state = FlowState.TOKENIZED

        self.store.update(record.user_id, set_token)

    @staticmethod
    def token_response(tokens: TokenSet, scope: Optional[str] = None) -> dict:
        response = {
            "access_token": tokens.access_token,
            "id_token": tokens.id_token,
            "refresh_token": tokens.refresh_token,
            "token_type": TOKEN_TYPE,
            "expires_in": tokens.expires_in,
        }
        if scope:
            response["scope"] = scope
        return response

    def logout(self, token: str) -> bool:
        return self.issuer.revoke(token)

    # ============== Lookups ==============

    def user_for_token(self, token: Optional[str]) -> IdentityRecord:
        if not token:
            raise Unauthenticated("Missing bearer token")
        record = self.store.get_by_token(token)
        if record is None:
            raise Unauthenticated("Invalid or expired token")
        return record

    def user_info(self, token: Optional[str]) -> dict:
        return self.user_for_token(token).to_user_info()

    def user_details(self, token: Optional[str]) -> dict:
        return self.user_for_token(token).to_user_details()

    def user_by_id(self, token: Optional[str], user_id: str) -> dict:
        self.user_for_token(token)
        record = self.store.get_by_user_id(user_id)
        if record is None:
            raise NotFound(f"No user with id {user_id}")
        return record.to_user_details()

    def search_users(self, token: Optional[str], query: Optional[str]) -> list[dict]:
        self.user_for_token(token)
        return [record.to_user_details() for record in self.store.search(query or "")]

    # ============== Test support ==============

    def account_by_email(self, email: str) -> dict:
        record = self.store.get_by_email(email)
        if record is None:
            raise NotFound(f"No account for {email}")
        return record.to_user_details()

    def create_account(self, data: dict) -> dict:
        """Seed an account; duplicate email or id is a Conflict."""
        email = data.get("email")
        if not email:
            raise InvalidRequest("email is required")
        record = IdentityRecord(
            user_id=str(data.get("id") or new_user_id()),
            email=email,
            forename=data.get("forename", ""),
            surname=data.get("surname", ""),
            roles=_role_names(data.get("roles")),
        )
        if not self.store.add(record):
            raise Conflict(f"Account already exists for {email}")
        logger.info(f"[SEED] Account created for {record.user_id}")
        return record.to_user_details()

    def seed_accounts(self, accounts: list[dict]) -> int:
        """Load a list of accounts, skipping ones that already exist."""
        created = 0
        for data in accounts:
            try:
                self.create_account(data)
                created += 1
            except Conflict as e:
                logger.warning(f"[SEED] Skipped: {e.message}")
        return created

    def remove_account(self, email: str) -> None:
        record = self.store.get_by_email(email)
        if record is None or not self.store.remove(email):
            raise NotFound(f"No account for {email}")
        self.issuer.forget_user(record.user_id)

    def reset(self) -> None:
        self.store.reset()
        self.issuer.clear_cache()
