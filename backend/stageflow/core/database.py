"""
Supabase database client management.

Features:
- Singleton client wrapper
- Insert-if-absent on a unique key (idempotent materialization)
- Compare-and-set updates (single writer per row)
- Timestamp helpers shared by the services
"""
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional

from supabase import create_client, Client

from .config import settings
from .exceptions import ConfigurationError, DatabaseError


logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage; all stored timestamps are UTC ISO strings."""
    if value is None:
        return None
    return to_utc(value).isoformat()


def from_db_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    return to_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def _match(query, column: str, expected: Any):
    """Filter on a column: a list matches any value, None matches NULL."""
    if isinstance(expected, (list, tuple, set)):
        return query.in_(column, list(expected))
    if expected is None:
        return query.is_(column, "null")
    return query.eq(column, expected)


class SupabaseClient:
    """
    Singleton wrapper for Supabase client.

    Services issue their reads through ``client.table(...)``; the two
    writes that carry concurrency guarantees live here so every caller
    gets the same semantics:

    - ``insert_if_absent``: upsert with ``ignore_duplicates`` against a
      unique column. Only rows that were actually inserted come back.
    - ``compare_and_set``: update filtered on the expected prior value.
      An empty result means another writer got there first.
    """

    _instance: Optional["SupabaseClient"] = None
    _client: Optional[Client] = None

    def __new__(cls) -> "SupabaseClient":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._client is None:
            if not settings.supabase_url:
                raise ConfigurationError(
                    "SUPABASE_URL is not configured",
                    config_key="supabase_url",
                    expected_type="url"
                )
            key = settings.supabase_service_role_key or settings.supabase_anon_key
            if not key:
                raise ConfigurationError(
                    "No Supabase key configured",
                    config_key="supabase_anon_key"
                )
            self._client = create_client(settings.supabase_url, key)

    @property
    def client(self) -> Client:
        """Get the Supabase client instance."""
        if self._client is None:
            raise RuntimeError("Supabase client not initialized")
        return self._client

    def insert_if_absent(
        self,
        table: str,
        rows: list[dict],
        unique_column: str
    ) -> list[dict]:
        """
        Insert rows whose ``unique_column`` value is not present yet.

        Relies on a unique constraint on ``unique_column`` so that two
        concurrent callers cannot both insert the same key.

        Returns:
            The rows that were inserted by this call.
        """
        if not rows:
            return []

        try:
            response = self.client.table(table).upsert(
                rows,
                on_conflict=unique_column,
                ignore_duplicates=True
            ).execute()
        except Exception as e:
            logger.error(f"Insert-if-absent on {table} failed: {e}")
            raise DatabaseError(
                f"Failed to insert into {table}",
                table=table,
                operation="insert_if_absent",
                original_error=str(e)
            ) from e

        return response.data or []

    def compare_and_set(
        self,
        table: str,
        row_id: str,
        column: str,
        expected: Any,
        update_data: dict,
        where: Optional[dict] = None
    ) -> Optional[dict]:
        """
        Update a row only if ``column`` still holds ``expected``.

        ``expected`` may be a list, in which case any of the values match,
        or None to require NULL. ``where`` adds further column guards with
        the same matching rules; all of them must hold.

        Returns:
            The updated row, or None if the row was not in the expected state.
        """
        update_data = {**update_data, "updated_at": to_db_timestamp(utc_now())}

        try:
            query = self.client.table(table).update(update_data).eq("id", row_id)
            query = _match(query, column, expected)
            for guard_column, guard_value in (where or {}).items():
                query = _match(query, guard_column, guard_value)
            response = query.execute()
        except Exception as e:
            logger.error(f"Compare-and-set on {table}/{row_id} failed: {e}")
            raise DatabaseError(
                f"Failed to update {table}",
                table=table,
                operation="compare_and_set",
                original_error=str(e)
            ) from e

        return response.data[0] if response.data else None


@lru_cache
def get_supabase_client() -> SupabaseClient:
    """Get cached Supabase client instance."""
    return SupabaseClient()
