"""Credential vault - encrypted OAuth token storage and refresh per connection.

Tokens are encrypted with Fernet before they reach the database and are
decrypted only here.  Refresh is serialized per connection: most OAuth
providers invalidate the old refresh token on rotation, so two callers
refreshing at once would leave one of them holding a dead token.  The
second caller instead waits on the connection's lock and reuses the
token the first one stored.
"""

import base64
import hashlib
import logging
from datetime import datetime, timedelta

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from config import settings
from integrations.exceptions import ProviderAuthError
from integrations.provider_protocol import TokenSet
from integrations.provider_registry import ProviderRegistry
from models import Connection, CredentialRecord
from models.utils import as_utc, utcnow
from services.exceptions import ConnectionNotFoundError, CredentialExpiredError
from utils.locks import KeyedLocks

logger = logging.getLogger(__name__)

_DEVELOPMENT_SECRET = "treasury-sync-development-key"


def build_fernet(secret: str | None = None) -> Fernet:
    """Derive a Fernet instance from an arbitrary-length secret.

    The secret is hashed with SHA-256 and base64-url encoded into the
    32-byte key Fernet expects.  An empty secret falls back to a fixed
    development key, which is logged loudly.
    """
    secret = secret if secret is not None else settings.CREDENTIAL_ENCRYPTION_KEY
    if not secret:
        logger.warning(
            "CREDENTIAL_ENCRYPTION_KEY is not set; using the development key. "
            "Do not run production with this setting."
        )
        secret = _DEVELOPMENT_SECRET
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


class CredentialVault:
    """Stores, returns, and refreshes provider tokens for connections.

    Methods that refresh commit immediately: once the provider has
    rotated the refresh token, losing the new one to a later rollback
    would break the connection.
    """

    # Shared by every vault in the process so refreshes serialize per connection
    _refresh_locks = KeyedLocks()

    def __init__(
        self,
        registry: ProviderRegistry,
        fernet: Fernet | None = None,
        refresh_margin_seconds: int | None = None,
        locks: KeyedLocks | None = None,
        clock=utcnow,
    ):
        self._registry = registry
        self._fernet = fernet or build_fernet()
        margin = (
            refresh_margin_seconds
            if refresh_margin_seconds is not None
            else settings.TOKEN_REFRESH_MARGIN_SECONDS
        )
        self._margin = timedelta(seconds=margin)
        self._locks = locks or CredentialVault._refresh_locks
        self._clock = clock

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def _encrypt(self, value: str | None) -> str | None:
        if value is None:
            return None
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def _decrypt(self, value: str | None, connection_id: str) -> str | None:
        if value is None:
            return None
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            # Key rotated or row tampered with; the user has to reconnect
            raise CredentialExpiredError(
                connection_id, "stored credentials cannot be decrypted"
            ) from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def store_tokens(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        token_set: TokenSet,
    ) -> CredentialRecord:
        """Seed or replace the credential record for a connection.

        Flushes but does not commit; the caller owns the transaction.
        """
        self._get_connection(db, tenant_id, connection_id)
        with self._locks.hold(connection_id):
            record = (
                db.query(CredentialRecord)
                .filter_by(tenant_id=tenant_id, connection_id=connection_id)
                .first()
            )
            if record is None:
                record = CredentialRecord(tenant_id=tenant_id, connection_id=connection_id)
                db.add(record)
            self._apply_token_set(record, token_set)
            record.last_refreshed_at = self._clock()
            db.flush()
        logger.info("Stored credentials for connection %s", connection_id)
        return record

    def get_valid_token(self, db: Session, tenant_id: str, connection_id: str) -> str:
        """Return an access token that will not expire within the safety margin.

        Raises:
            CredentialExpiredError: No credentials, or the token is expired
                and cannot be refreshed.
            ProviderError: The refresh call failed for a non-auth reason.
        """
        connection = self._get_connection(db, tenant_id, connection_id)
        with self._locks.hold(connection_id):
            record = self._load_record(db, tenant_id, connection_id)
            now = self._clock()
            expires_at = as_utc(record.expires_at)

            if expires_at is None or expires_at - now > self._margin:
                return self._touch(db, record, now)

            if record.refresh_token_encrypted is None:
                if expires_at > now:
                    # Inside the margin but still valid; nothing to refresh with
                    return self._touch(db, record, now)
                raise CredentialExpiredError(
                    connection_id, "access token expired and no refresh token"
                )

            logger.info(
                "Access token for connection %s expires at %s, refreshing",
                connection_id,
                expires_at.isoformat(),
            )
            return self._refresh_locked(db, connection, record, now)

    def force_refresh(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        stale_access_token: str,
    ) -> str:
        """Refresh after the provider rejected ``stale_access_token``.

        If another caller already replaced the token while we waited for
        the lock, the stored token is returned without a second refresh.
        """
        connection = self._get_connection(db, tenant_id, connection_id)
        with self._locks.hold(connection_id):
            record = self._load_record(db, tenant_id, connection_id)
            now = self._clock()
            current = self._decrypt(record.access_token_encrypted, connection_id)
            if current != stale_access_token:
                logger.info(
                    "Connection %s token was refreshed concurrently, reusing it",
                    connection_id,
                )
                return self._touch(db, record, now)

            if record.refresh_token_encrypted is None:
                raise CredentialExpiredError(
                    connection_id, "access token rejected and no refresh token"
                )
            return self._refresh_locked(db, connection, record, now)

    def revoke(self, db: Session, tenant_id: str, connection_id: str) -> None:
        """Delete stored token material for a connection (flush only)."""
        with self._locks.hold(connection_id):
            db.query(CredentialRecord).filter_by(
                tenant_id=tenant_id, connection_id=connection_id
            ).delete()
            db.flush()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_connection(self, db: Session, tenant_id: str, connection_id: str) -> Connection:
        connection = (
            db.query(Connection)
            .filter_by(tenant_id=tenant_id, id=connection_id)
            .first()
        )
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    def _load_record(
        self, db: Session, tenant_id: str, connection_id: str
    ) -> CredentialRecord:
        # populate_existing: another worker may have committed a refresh
        # since this session last loaded the row
        record = (
            db.query(CredentialRecord)
            .filter_by(tenant_id=tenant_id, connection_id=connection_id)
            .populate_existing()
            .first()
        )
        if record is None:
            raise CredentialExpiredError(connection_id, "no stored credentials")
        return record

    def _touch(self, db: Session, record: CredentialRecord, now: datetime) -> str:
        token = self._decrypt(record.access_token_encrypted, record.connection_id)
        record.last_used_at = now
        db.commit()
        return token

    def _refresh_locked(
        self,
        db: Session,
        connection: Connection,
        record: CredentialRecord,
        now: datetime,
    ) -> str:
        adapter = self._registry.get_provider(connection.provider_name)
        refresh_token = self._decrypt(record.refresh_token_encrypted, connection.id)
        try:
            token_set = adapter.refresh_token(refresh_token)
        except ProviderAuthError as exc:
            raise CredentialExpiredError(
                connection.id, f"refresh rejected by {connection.provider_name}"
            ) from exc

        if token_set.refresh_token is None:
            token_set.refresh_token = refresh_token
        self._apply_token_set(record, token_set)
        record.last_refreshed_at = now
        record.last_used_at = now
        db.commit()
        logger.info("Refreshed credentials for connection %s", connection.id)
        return token_set.access_token

    def _apply_token_set(self, record: CredentialRecord, token_set: TokenSet) -> None:
        record.access_token_encrypted = self._encrypt(token_set.access_token)
        record.refresh_token_encrypted = self._encrypt(token_set.refresh_token)
        record.token_type = token_set.token_type
        record.expires_at = token_set.expires_at
        record.scopes = list(token_set.scopes or [])
        record.subject_id = token_set.subject_id
