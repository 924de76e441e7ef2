"""CacheEntry model - persisted key/value rows behind the TTL cache."""

from sqlmodel import Field, SQLModel


class CacheEntry(SQLModel, table=True):
    """One cached remote-call result.

    Keys carry the schema-version namespace (``v1:guess:...``). An entry is
    valid while ``now_ms - stored_at_ms < ttl_ms``.
    """

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True)
    value: str  # JSON-encoded payload
    stored_at_ms: int = Field(index=True)
    ttl_ms: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms - self.stored_at_ms >= self.ttl_ms
