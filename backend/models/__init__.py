"""SQLAlchemy ORM models."""

from .account import Account
from .connection import Connection
from .credential import CredentialRecord
from .staging import StagedAccount, StagedTransaction
from .sync_cursor import SyncCursor
from .sync_job import SyncJob
from .transaction import Transaction
from .utils import generate_uuid

__all__ = [
    "Account",
    "Connection",
    "CredentialRecord",
    "StagedAccount",
    "StagedTransaction",
    "SyncCursor",
    "SyncJob",
    "Transaction",
    "generate_uuid",
]
