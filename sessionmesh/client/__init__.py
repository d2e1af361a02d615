"""
Client module: the caller-facing facade.

Provides:
- Database: single-use reads, snapshots, transactions, partitioned DML
- Snapshot: multi-use read-only transaction
- Transaction: read-write transaction passed to runner bodies
"""

from sessionmesh.client.transaction import Snapshot, Transaction
from sessionmesh.client.database import Database, ResultStream

__all__ = [
    "Database",
    "ResultStream",
    "Snapshot",
    "Transaction",
]
