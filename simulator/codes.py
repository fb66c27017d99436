"""Pin and authorization-code generation.

Values come from the ``secrets`` module, which draws from the OS random source
and keeps no shared state between threads.
"""

import logging
import secrets
import string
import time
import uuid
from typing import Optional

from simulator.stores import FlowState, IdentityRecord, IdentityStore

logger = logging.getLogger(__name__)

PIN_LENGTH = 16
PIN_ALPHABET = string.ascii_letters + string.digits
AUTH_CODE_EXPIRE_SECONDS = 600
PIN_EXPIRE_SECONDS = 30 * 60


def new_pin() -> str:
    return "".join(secrets.choice(PIN_ALPHABET) for _ in range(PIN_LENGTH))


def new_authorization_code() -> str:
    return secrets.token_urlsafe(24)


def new_user_id() -> str:
    return str(uuid.uuid4())


class CodeGenerator:
    """Issues pins and authorization codes bound to identity records."""

    def __init__(
        self,
        store: IdentityStore,
        code_ttl: int = AUTH_CODE_EXPIRE_SECONDS,
        pin_ttl: int = PIN_EXPIRE_SECONDS,
    ):
        self.store = store
        self.code_ttl = code_ttl
        self.pin_ttl = pin_ttl

    def generate_pin(
        self, first_name: str, last_name: str, roles: Optional[list[str]] = None
    ) -> tuple[str, str]:
        """Create a fresh identity holding a new pin and return ``(pin, user_id)``."""
        pin = new_pin()
        record = IdentityRecord(
            user_id=new_user_id(),
            forename=first_name or "",
            surname=last_name or "",
            roles=list(roles or []),
            state=FlowState.PIN_ISSUED,
            pin=pin,
            pin_expires_at=time.time() + self.pin_ttl,
        )
        self.store.put(record)
        logger.info(f"[PIN] Pin issued for new user {record.user_id}")
        return pin, record.user_id

    def generate_authorization_code(
        self,
        user_id: str,
        client_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> Optional[str]:
        """Bind a new code to the record, replacing any unredeemed one.

        Returns None if no record has ``user_id``.
        """
        code = new_authorization_code()
        updated = self.store.update(
            user_id, lambda record: self._attach_code(record, code, client_id, redirect_uri)
        )
        if updated is None:
            logger.info(f"[CODE] No identity {user_id} to bind a code to")
            return None
        logger.info(f"[CODE] Authorization code issued for {user_id}")
        return code

    def exchange_pin_for_code(
        self,
        pin: str,
        client_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> Optional[IdentityRecord]:
        """Consume ``pin`` and attach a new code to its record in one step.

        Returns the updated record, or None when the pin is unknown, expired or
        already used.
        """
        code = new_authorization_code()
        record = self.store.redeem_pin(
            pin, lambda r: self._attach_code(r, code, client_id, redirect_uri)
        )
        if record is not None:
            logger.info(f"[PIN] Pin exchanged for a code by {record.user_id}")
        return record

    def _attach_code(
        self,
        record: IdentityRecord,
        code: str,
        client_id: Optional[str],
        redirect_uri: Optional[str],
    ) -> None:
        now = time.time()
        record.authorization_code = code
        record.code_client_id = client_id
        record.code_redirect_uri = redirect_uri
        record.code_issued_at = now
        record.code_expires_at = now + self.code_ttl
        if record.state != FlowState.TOKENIZED:
            record.state = FlowState.CODE_ISSUED
