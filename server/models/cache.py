"""SQL-backed key/value model for the version and lock store.

The table has no expiry column: lock leases carry their own expiry in the value
and are checked by the reader.
"""

import time
from sqlmodel import SQLModel, Field


class CacheEntry(SQLModel, table=True):
    """One key/value row. The primary key makes insert-if-absent atomic."""

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True, max_length=512)
    value: str = Field(max_length=1000000)  # JSON serialized, up to 1MB
    updated_at: float = Field(default_factory=time.time)
