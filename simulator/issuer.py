"""Token issuance for the simulator.

Access tokens are minted per ``(username, client_id, grant_type)``. The cached
path hands back the token minted earlier for the same triple while it is
still valid. Both paths go through ``TokenIssuer._issue``.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from simulator.jwt_utils import (
    ACCESS_TOKEN_EXPIRE_SECONDS,
    REFRESH_TOKEN,
    REFRESH_TOKEN_EXPIRE_SECONDS,
    create_access_token,
    create_id_token,
    create_refresh_token,
    verify_token,
)
from simulator.keys import SigningKey
from simulator.stores import FlowState, IdentityRecord, IdentityStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    id_token: str
    refresh_token: str
    expires_in: int


@dataclass
class _CachedToken:
    token: str
    expires_at: float
    user_id: Optional[str]


def cache_key(username: str, client_id: str, grant_type: str) -> str:
    return f"{username}|{client_id}|{grant_type}"


class TokenIssuer:
    """Mints signed tokens and records them on identity records."""

    def __init__(
        self,
        store: IdentityStore,
        key: SigningKey,
        issuer_url: str,
        access_ttl: int = ACCESS_TOKEN_EXPIRE_SECONDS,
        refresh_ttl: int = REFRESH_TOKEN_EXPIRE_SECONDS,
    ):
        self.store = store
        self.key = key
        self.issuer_url = issuer_url
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._cache: dict[str, _CachedToken] = {}
        self._cache_lock = threading.Lock()

    def resolve_username(self, username: str) -> Optional[IdentityRecord]:
        """Find the record a username refers to: email first, then user id."""
        if not username:
            return None
        return self.store.get_by_email(username) or self.store.get_by_user_id(username)

    # ============== Access tokens ==============

    def issue_token(self, username: str, client_id: str, grant_type: str) -> str:
        """Always mint a new access token for the triple."""
        return self._issue(username, client_id, grant_type, use_cache=False)

    def issue_cached_token(self, username: str, client_id: str, grant_type: str) -> str:
        """Return the cached token for the triple if still valid, else mint one."""
        return self._issue(username, client_id, grant_type, use_cache=True)

    def _issue(self, username: str, client_id: str, grant_type: str, use_cache: bool) -> str:
        key = cache_key(username, client_id, grant_type)
        record = self.resolve_username(username)
        user_id = record.user_id if record else None
        now = time.time()

        with self._cache_lock:
            self._prune_cache(now)
            if use_cache:
                cached = self._cache.get(key)
                # Entries left by a deleted account never serve its successor
                if cached and cached.user_id == user_id:
                    logger.debug(f"[TOKEN] Serving cached token for {username}")
                    return cached.token

            subject = record.subject if record else username
            token = create_access_token(
                subject, client_id, grant_type, self.issuer_url, self.key, self.access_ttl
            )
            if use_cache:
                self._cache[key] = _CachedToken(token, now + self.access_ttl, user_id)

        if record is not None:
            self.store.update(
                record.user_id, lambda r: self._record_access_token(r, token, key, now)
            )
        else:
            logger.info(f"[TOKEN] Token minted for unknown user {username}")
        return token

    def _prune_cache(self, now: float) -> None:
        for key in [k for k, v in self._cache.items() if v.expires_at <= now]:
            del self._cache[key]

    def _record_access_token(self, record: IdentityRecord, token: str, key: str, now: float) -> None:
        record.access_token = token
        record.cached_token_key = key
        record.token_issued_at = now
        record.token_expires_at = now + self.access_ttl
        record.state = FlowState.TOKENIZED

    # ============== Token sets ==============

    def _mint_set(
        self,
        record: IdentityRecord,
        client_id: Optional[str],
        grant_type: str,
        access_token: Optional[str] = None,
    ) -> TokenSet:
        client_id = client_id or record.code_client_id or ""
        subject = record.subject
        if access_token is None:
            access_token = create_access_token(
                subject, client_id, grant_type, self.issuer_url, self.key, self.access_ttl
            )
        id_token = create_id_token(
            subject,
            client_id,
            self.issuer_url,
            self.key,
            given_name=record.forename,
            family_name=record.surname,
            roles=record.roles,
            email=record.email,
            uid=record.user_id,
            expires_in=self.access_ttl,
        )
        refresh_token = create_refresh_token(
            subject, client_id, self.issuer_url, self.key, self.refresh_ttl
        )
        return TokenSet(access_token, id_token, refresh_token, self.access_ttl)

    def _store_set(self, record: IdentityRecord, tokens: TokenSet) -> None:
        now = time.time()
        record.access_token = tokens.access_token
        record.id_token = tokens.id_token
        record.refresh_token = tokens.refresh_token
        record.token_issued_at = now
        record.token_expires_at = now + tokens.expires_in
        record.state = FlowState.TOKENIZED

    def _minting(self, client_id: Optional[str], grant_type: str, minted: dict) -> Callable:
        def mint(record: IdentityRecord) -> None:
            tokens = self._mint_set(record, client_id, grant_type)
            self._store_set(record, tokens)
            minted["tokens"] = tokens
        return mint

    def exchange_code_for_token(
        self, code: str, client_id: Optional[str], redirect_uri: Optional[str]
    ) -> Optional[TokenSet]:
        """Redeem ``code`` once and mint access, ID and refresh tokens.

        A code bound to a redirect URI is only redeemed when ``redirect_uri``
        matches it; a mismatch leaves the code in place. Returns None for
        unknown, expired, mismatched or already-redeemed codes.
        """
        if not code:
            return None
        minted: dict = {}
        record = self.store.redeem_code(
            code,
            self._minting(client_id, "authorization_code", minted),
            accept=lambda r: r.code_redirect_uri is None or r.code_redirect_uri == redirect_uri,
        )
        if record is None:
            logger.info("[TOKEN] Code exchange rejected: unknown, expired, used or redirect_uri mismatch")
            return None
        logger.info(f"[TOKEN] Code exchanged for tokens by {record.user_id}")
        return minted["tokens"]

    def refresh(self, refresh_token: str, client_id: Optional[str]) -> Optional[TokenSet]:
        """Rotate the token set of the record owning ``refresh_token``."""
        if not refresh_token or verify_token(refresh_token, self.key, REFRESH_TOKEN) is None:
            return None
        record = self.store.get_by_refresh_token(refresh_token)
        if record is None:
            return None

        minted: dict = {}
        mint = self._minting(client_id, "refresh_token", minted)

        def rotate(r: IdentityRecord) -> None:
            # A concurrent refresh may already have rotated this token
            if r.refresh_token == refresh_token:
                mint(r)

        self.store.update(record.user_id, rotate)
        if "tokens" not in minted:
            return None
        logger.info(f"[TOKEN] Tokens refreshed for {record.user_id}")
        return minted["tokens"]

    def issue_companion_tokens(
        self, username: str, client_id: str, grant_type: str, access_token: str
    ) -> Optional[TokenSet]:
        """Mint ID and refresh tokens to go with an already issued access token."""
        record = self.resolve_username(username)
        if record is None:
            return None

        minted: dict = {}

        def attach(r: IdentityRecord) -> None:
            tokens = self._mint_set(r, client_id, grant_type, access_token=access_token)
            r.id_token = tokens.id_token
            r.refresh_token = tokens.refresh_token
            r.state = FlowState.TOKENIZED
            minted["tokens"] = tokens

        self.store.update(record.user_id, attach)
        return minted.get("tokens")

    # ============== Revocation ==============

    def revoke(self, token: str) -> bool:
        """Clear every token of the record holding ``token`` and drop cached copies."""
        record = self.store.get_by_token(token) or self.store.get_by_refresh_token(token)
        if record is None:
            return False

        revoked = {record.access_token, record.id_token, record.refresh_token, token}

        def clear(r: IdentityRecord) -> None:
            r.access_token = None
            r.id_token = None
            r.refresh_token = None
            r.cached_token_key = None
            r.token_issued_at = None
            r.token_expires_at = None

        self.store.update(record.user_id, clear)
        with self._cache_lock:
            for key in [k for k, v in self._cache.items() if v.token in revoked]:
                del self._cache[key]
        logger.info(f"[TOKEN] Tokens revoked for {record.user_id}")
        return True

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def forget_user(self, user_id: str) -> None:
        """Drop cached tokens issued to ``user_id``."""
        with self._cache_lock:
            for key in [k for k, v in self._cache.items() if v.user_id == user_id]:
                del self._cache[key]
