"""Column types shared by the reconciliation models.

The service runs on PostgreSQL in deployment and on SQLite in tests, so
models only use types that both dialects can store.
"""
from sqlalchemy import JSON, Uuid

# Statement raw records, discrepancy lists, import warnings
JSONType = JSON

# Native UUID on PostgreSQL, CHAR(32) on SQLite
UUIDType = Uuid
