"""In-memory identity store.

One IdentityStore is created per process (see main.create_app) and shared by the
code generator, the token issuer and the flow controller. Nothing is persisted.

Every record is reachable through parallel indices (email, access/ID token,
refresh token, authorization code, pin). All mutations run under a single lock
and work on a copy of the stored record, which replaces the original and its
index entries in one step. Readers always get copies, so a half-applied change
is never visible.
"""

import fnmatch
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)

SEARCH_FIELDS = ("id", "email", "forename", "surname", "roles")


class FlowState(str, Enum):
    NEW = "NEW"
    PIN_ISSUED = "PIN_ISSUED"
    CODE_ISSUED = "CODE_ISSUED"
    TOKENIZED = "TOKENIZED"


@dataclass
class IdentityRecord:
    """A simulated user together with the credentials issued to it."""

    user_id: str
    email: Optional[str] = None
    forename: str = ""
    surname: str = ""
    roles: list[str] = field(default_factory=list)
    state: FlowState = FlowState.NEW

    pin: Optional[str] = None
    pin_expires_at: Optional[float] = None

    authorization_code: Optional[str] = None
    code_client_id: Optional[str] = None
    code_redirect_uri: Optional[str] = None
    code_issued_at: Optional[float] = None
    code_expires_at: Optional[float] = None

    access_token: Optional[str] = None
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    cached_token_key: Optional[str] = None
    token_issued_at: Optional[float] = None
    token_expires_at: Optional[float] = None

    created_at: float = field(default_factory=time.time)

    def copy(self) -> "IdentityRecord":
        return replace(self, roles=list(self.roles))

    @property
    def subject(self) -> str:
        """Token subject: the email when known, the user id otherwise."""
        return self.email or self.user_id

    def to_user_details(self) -> dict:
        return {
            "id": self.user_id,
            "email": self.email,
            "forename": self.forename,
            "surname": self.surname,
            "roles": list(self.roles),
        }

    def to_user_info(self) -> dict:
        return {
            "uid": self.user_id,
            "email": self.email,
            "given_name": self.forename,
            "family_name": self.surname,
            "sub": self.subject,
            "roles": list(self.roles),
        }


def _field_values(record: IdentityRecord, name: str) -> list[str]:
    if name == "id":
        return [record.user_id]
    if name == "roles":
        return list(record.roles)
    value = getattr(record, name)
    return [value] if value else []


def _term_matches(record: IdentityRecord, term: str) -> bool:
    name, sep, pattern = term.partition(":")
    if sep and name.lower() in SEARCH_FIELDS:
        fields = (name.lower(),)
        exact = True
    else:
        fields = SEARCH_FIELDS
        pattern = term
        exact = False

    pattern = pattern.strip('"').lower()
    if not any(c in pattern for c in "*?"):
        # Field terms match whole values, bare terms match substrings
        pattern = pattern if exact else f"*{pattern}*"

    return any(
        fnmatch.fnmatchcase(value.lower(), pattern)
        for f in fields
        for value in _field_values(record, f)
    )


class IdentityStore:
    """Thread-safe, multi-index repository of IdentityRecords."""

    def __init__(self):
        self._lock = threading.RLock()
        self._records: dict[str, IdentityRecord] = {}
        self._by_email: dict[str, str] = {}
        self._by_token: dict[str, str] = {}
        self._by_refresh_token: dict[str, str] = {}
        self._by_code: dict[str, str] = {}
        self._by_pin: dict[str, str] = {}

    # ============== Mutations ==============

    @contextmanager
    def transaction(self) -> Iterator["IdentityStore"]:
        """Hold the store lock across several mutations.

        Lookups from other threads wait until the block exits, so they see
        either none or all of the changes made inside it.
        """
        with self._lock:
            yield self

    def put(self, record: IdentityRecord) -> Optional[IdentityRecord]:
        """Insert or replace the record stored under ``record.user_id``.

        Returns the stored copy, or None when the email already belongs to a
        different record.
        """
        with self._lock:
            if self._email_taken(record):
                logger.warning(f"[STORE] Email already in use, rejecting put for {record.user_id}")
                return None
            self._replace(self._records.get(record.user_id), record.copy())
            return record.copy()

    def add(self, record: IdentityRecord) -> bool:
        """Insert a new record; False if its user id or email is already known."""
        with self._lock:
            if record.user_id in self._records or self._email_taken(record):
                return False
            self._replace(None, record.copy())
            logger.info(f"[STORE] Added account {record.user_id}")
            return True

    def update(
        self, user_id: str, mutate: Callable[[IdentityRecord], None]
    ) -> Optional[IdentityRecord]:
        """Apply ``mutate`` to a copy of the record and swap it in atomically.

        Returns the updated copy, or None if no record has that user id or the
        change would give it an email owned by another record.
        """
        with self._lock:
            current = self._records.get(user_id)
            if current is None:
                return None
            draft = current.copy()
            mutate(draft)
            if draft.user_id != user_id:
                raise ValueError("user_id is immutable")
            if self._email_taken(draft):
                return None
            self._replace(current, draft)
            return draft.copy()

    def redeem_code(
        self,
        code: str,
        mutate: Callable[[IdentityRecord], None],
        now: Optional[float] = None,
        accept: Optional[Callable[[IdentityRecord], bool]] = None,
    ) -> Optional[IdentityRecord]:
        """Clear a valid authorization code and apply ``mutate`` in one step.

        Exactly one caller can redeem a given code. Unknown codes and codes past
        their expiry yield None; an expired code is cleared as well. When
        ``accept`` rejects the record, None is returned and the code stays
        redeemable.
        """
        now = time.time() if now is None else now
        with self._lock:
            user_id = self._by_code.get(code)
            if user_id is None:
                return None
            current = self._records[user_id]
            if accept is not None and not accept(current):
                return None
            draft = current.copy()
            draft.authorization_code = None
            draft.code_issued_at = None
            draft.code_expires_at = None
            if current.code_expires_at is not None and now > current.code_expires_at:
                self._replace(current, draft)
                logger.info(f"[STORE] Authorization code for {user_id} expired")
                return None
            mutate(draft)
            self._replace(current, draft)
            return draft.copy()

    def redeem_pin(
        self,
        pin: str,
        mutate: Callable[[IdentityRecord], None],
        now: Optional[float] = None,
    ) -> Optional[IdentityRecord]:
        """Consume a pin and apply ``mutate`` in one step (same rules as codes)."""
        now = time.time() if now is None else now
        with self._lock:
            user_id = self._by_pin.get(pin)
            if user_id is None:
                return None
            current = self._records[user_id]
            draft = current.copy()
            draft.pin = None
            draft.pin_expires_at = None
            if current.pin_expires_at is not None and now > current.pin_expires_at:
                self._replace(current, draft)
                logger.info(f"[STORE] Pin for {user_id} expired")
                return None
            mutate(draft)
            self._replace(current, draft)
            return draft.copy()

    def remove(self, email: str) -> bool:
        with self._lock:
            user_id = self._by_email.get(email)
            if user_id is None:
                return False
            self._unindex(self._records.pop(user_id))
            logger.info(f"[STORE] Removed account {user_id}")
            return True

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._by_email.clear()
            self._by_token.clear()
            self._by_refresh_token.clear()
            self._by_code.clear()
            self._by_pin.clear()
        logger.info("[STORE] Store reset")

    # ============== Lookups ==============

    def get_by_user_id(self, user_id: str) -> Optional[IdentityRecord]:
        with self._lock:
            return self._copy_of(user_id)

    def get_by_email(self, email: str) -> Optional[IdentityRecord]:
        with self._lock:
            return self._copy_of(self._by_email.get(email))

    def get_by_token(self, token: str) -> Optional[IdentityRecord]:
        """Resolve either an access token or an ID token."""
        with self._lock:
            return self._copy_of(self._by_token.get(token))

    def get_by_refresh_token(self, token: str) -> Optional[IdentityRecord]:
        with self._lock:
            return self._copy_of(self._by_refresh_token.get(token))

    def get_by_authorization_code(self, code: str) -> Optional[IdentityRecord]:
        with self._lock:
            return self._copy_of(self._by_code.get(code))

    def search(self, query: str) -> list[IdentityRecord]:
        """Records matching every term of ``query``, in insertion order."""
        terms = [t for t in (query or "").split() if t != "AND"]
        with self._lock:
            return [
                record.copy()
                for record in self._records.values()
                if all(_term_matches(record, term) for term in terms)
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ============== Index maintenance ==============

    def _copy_of(self, user_id: Optional[str]) -> Optional[IdentityRecord]:
        if user_id is None:
            return None
        record = self._records.get(user_id)
        return record.copy() if record else None

    def _email_taken(self, record: IdentityRecord) -> bool:
        if not record.email:
            return False
        owner = self._by_email.get(record.email)
        return owner is not None and owner != record.user_id

    def _replace(self, old: Optional[IdentityRecord], new: IdentityRecord) -> None:
        if old is not None:
            self._unindex(old)
        self._records[new.user_id] = new
        self._index(new)

    def _index(self, record: IdentityRecord) -> None:
        if record.email:
            self._by_email[record.email] = record.user_id
        for token in (record.access_token, record.id_token):
            if token:
                self._by_token[token] = record.user_id
        if record.refresh_token:
            self._by_refresh_token[record.refresh_token] = record.user_id
        if record.authorization_code:
            self._by_code[record.authorization_code] = record.user_id
        if record.pin:
            self._by_pin[record.pin] = record.user_id

    def _unindex(self, record: IdentityRecord) -> None:
        if record.email:
            self._by_email.pop(record.email, None)
        for token in (record.access_token, record.id_token):
            if token:
                self._by_token.pop(token, None)
        if record.refresh_token:
            self._by_refresh_token.pop(record.refresh_token, None)
        if record.authorization_code:
            self._by_code.pop(record.authorization_code, None)
        if record.pin:
            self._by_pin.pop(record.pin, None)
