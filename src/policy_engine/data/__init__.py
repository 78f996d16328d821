"""Policy configuration, transaction log and limit usage persistence.

Store contracts plus two backends: in-memory dicts and aiosqlite.
"""

from policy_engine.data.database import PolicyDatabase
from policy_engine.data.memory import (
    InMemoryConfigStore,
    InMemoryTransactionLog,
    InMemoryUsageStore,
)
from policy_engine.data.sqlite_store import (
    SqliteConfigStore,
    SqliteTransactionLog,
    SqliteUsageStore,
)
from policy_engine.data.store import ConfigStore, TransactionLog, UsageStore

__all__ = [
    "ConfigStore",
    "InMemoryConfigStore",
    "InMemoryTransactionLog",
    "InMemoryUsageStore",
    "PolicyDatabase",
    "SqliteConfigStore",
    "SqliteTransactionLog",
    "SqliteUsageStore",
    "TransactionLog",
    "UsageStore",
]
