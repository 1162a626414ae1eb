"""Database module."""

from autoflow.db.credential_store import CredentialStore
from autoflow.db.database import close_database, get_db, init_database
from autoflow.db.dedup_ledger import DedupLedger
from autoflow.db.secrets import SecretsError, TokenCipher
from autoflow.db.workflow_store import WorkflowStore

__all__ = [
    "get_db",
    "init_database",
    "close_database",
    "CredentialStore",
    "DedupLedger",
    "WorkflowStore",
    "TokenCipher",
    "SecretsError",
]
