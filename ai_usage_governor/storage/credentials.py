"""
Credential store.

Holds named API keys per provider, each with its own monthly budget.
Secrets are kept base64-obfuscated at rest. That is a convenience, not
a security boundary; swap ``encode_secret``/``decode_secret`` for a real
secret manager without changing the store's interface.
"""

import base64
import binascii
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from ..core.errors import CredentialError, CredentialErrorKind
from ..sdk.providers import ProviderAdapter, default_providers
from .db import DEFAULT_DB_PATH, get_connection
from .models import PROVIDERS, Credential

logger = logging.getLogger(__name__)

_SALT = "meetingmind_salt"

_COLUMNS = """
    id, provider, name, is_active, created_at, last_used_at,
    monthly_budget, current_month_spend, spend_month
"""


def encode_secret(secret: str) -> str:
    return base64.b64encode((secret + _SALT).encode("utf-8")).decode("ascii")


def decode_secret(encoded: str) -> str:
    """Reverse ``encode_secret``.

    Raises:
        ValueError: If the stored value is not a valid encoding
    """
    try:
        decoded = base64.b64decode(encoded.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError) as e:
        raise ValueError("Invalid encoded API key") from e
    if not decoded.endswith(_SALT):
        raise ValueError("Invalid encoded API key")
    return decoded[:-len(_SALT)]


class CredentialStore:
    """SQLite-backed store of provider credentials.

    Credentials are soft-deleted so historical usage stays attributable.
    When several credentials of a provider are active, the most recently
    saved one is the one requests bind to.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        providers: Optional[Dict[str, ProviderAdapter]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db_path = db_path
        self.providers = providers if providers is not None else default_providers()
        self.clock = clock or datetime.now

    def save(
        self,
        provider: str,
        secret: str,
        name: str,
        monthly_budget: float = 50.0
    ) -> Credential:
        """Validate and persist a credential.

        Saving under an existing (provider, name) replaces that record in
        place and re-activates it. Other credentials are left untouched.

        Raises:
            ValueError: If provider, name or budget are invalid
            CredentialError: INVALID_FORMAT or VALIDATION_FAILED
        """
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider '{provider}', expected one of: {list(PROVIDERS)}")
        if not name or not name.strip():
            raise ValueError("name is required and cannot be empty")
        if monthly_budget <= 0:
            raise ValueError("monthly_budget must be > 0")

        adapter = self.providers[provider]
        if not adapter.has_valid_format(secret):
            raise CredentialError(
                CredentialErrorKind.INVALID_FORMAT,
                f"Invalid {provider} API key format"
            )
        if not adapter.validate_key(secret):
            raise CredentialError(
                CredentialErrorKind.VALIDATION_FAILED,
                "API key validation failed"
            )

        now = self.clock()
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT id FROM credential WHERE provider = ? AND name = ?",
                (provider, name)
            ).fetchone()
            credential_id = row[0] if row else f"key_{uuid.uuid4().hex[:12]}"

            conn.execute("""
                INSERT OR REPLACE INTO credential
                (id, provider, name, encoded_secret, is_active, created_at,
                 last_used_at, monthly_budget, current_month_spend, spend_month)
                VALUES (?, ?, ?, ?, 1, ?, NULL, ?, 0, NULL)
            """, (
                credential_id,
                provider,
                name,
                encode_secret(secret),
                now.isoformat(timespec="microseconds"),
                float(monthly_budget)
            ))
            conn.commit()
        finally:
            conn.close()

        logger.info("Saved %s credential '%s' (%s)", provider, name, credential_id)
        return Credential(
            id=credential_id,
            provider=provider,
            name=name,
            is_active=True,
            created_at=now,
            monthly_budget=float(monthly_budget)
        )

    def get_active(self, provider: str) -> Optional[str]:
        """Decoded secret of the provider's active credential, or None."""
        active = self.get_active_with_secret(provider)
        return active[0] if active else None

    def get_active_with_secret(self, provider: str) -> Optional[Tuple[str, Credential]]:
        """Decoded secret and metadata of the active credential, read together.

        Callers that use the secret and charge the credential must take both
        from this single read so they always refer to the same row.
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(f"""
                SELECT {_COLUMNS}, encoded_secret FROM credential
                WHERE provider = ? AND is_active = 1 AND encoded_secret IS NOT NULL
                ORDER BY created_at DESC LIMIT 1
            """, (provider,)).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        try:
            secret = decode_secret(row[9])
        except ValueError:
            logger.warning("Stored %s credential could not be decoded", provider)
            return None
        return secret, self._from_row(row)

    def get_active_credential(self, provider: str) -> Optional[Credential]:
        """Metadata of the credential ``get_active`` would return."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(f"""
                SELECT {_COLUMNS} FROM credential
                WHERE provider = ? AND is_active = 1 AND encoded_secret IS NOT NULL
                ORDER BY created_at DESC LIMIT 1
            """, (provider,)).fetchone()
        finally:
            conn.close()
        return self._from_row(row) if row else None

    def list(self, include_inactive: bool = False) -> List[Credential]:
        """Credentials, newest first; active only unless asked otherwise."""
        query = f"SELECT {_COLUMNS} FROM credential"
        if not include_inactive:
            query += " WHERE is_active = 1"
        query += " ORDER BY created_at DESC"

        conn = get_connection(self.db_path)
        try:
            return [self._from_row(row) for row in conn.execute(query).fetchall()]
        finally:
            conn.close()

    def deactivate(self, credential_id: str) -> None:
        """Soft-delete a credential and erase its stored secret.

        Raises:
            CredentialError: NOT_FOUND if no such credential exists
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE credential SET is_active = 0, encoded_secret = NULL
                WHERE id = ?
            """, (credential_id,))
            conn.commit()
            updated = cursor.rowcount
        finally:
            conn.close()

        if not updated:
            raise CredentialError(
                CredentialErrorKind.NOT_FOUND,
                f"Credential not found: {credential_id}"
            )
        logger.info("Deactivated credential %s", credential_id)

    def record_usage(self, credential_id: str, cost: float, used_at: datetime) -> None:
        """Stamp last use and add to the non-authoritative month spend."""
        month = used_at.strftime("%Y-%m")
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                UPDATE credential SET
                    last_used_at = ?,
                    current_month_spend = CASE WHEN spend_month = ?
                        THEN current_month_spend + ? ELSE ? END,
                    spend_month = ?
                WHERE id = ?
            """, (used_at.isoformat(timespec="microseconds"), month, cost, cost, month, credential_id))
            conn.commit()
        except sqlite3.Error:
            logger.exception("Failed to update usage for credential %s", credential_id)
        finally:
            conn.close()

    def _from_row(self, row) -> Credential:
        spend = row[7]
        # spend from an earlier month no longer applies
        if row[8] != self.clock().strftime("%Y-%m"):
            spend = 0.0
        return Credential(
            id=row[0],
            provider=row[1],
            name=row[2],
            is_active=bool(row[3]),
            created_at=datetime.fromisoformat(row[4]),
            last_used_at=datetime.fromisoformat(row[5]) if row[5] else None,
            monthly_budget=row[6],
            current_month_spend=spend
        )
