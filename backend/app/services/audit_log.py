"""
Audit trail for payment verification runs (payment_verification_logs table).

One row per run: created as ``pending`` when the run starts, then patched as
each sub-step completes until it reaches ``verified`` or ``failed``.

Writes are best-effort. A failed insert or update is logged here and never
raised, so an audit outage cannot change the verification decision. When the
insert itself fails the run continues with ``log_id=None`` and later updates
are skipped.
"""

import asyncio
import logging
from typing import Any, Optional

from supabase import Client

logger = logging.getLogger(__name__)

LOG_TABLE = "payment_verification_logs"


class VerificationAuditLog:
    """Async, best-effort writer over the synchronous Supabase client."""

    def __init__(self, client: Client, table: str = LOG_TABLE) -> None:
        self._client = client
        self._table = table

    def _insert(self, fields: dict[str, Any]) -> Optional[str]:
        result = self._client.table(self._table).insert(fields).execute()
        if not result.data:
            return None
        return result.data[0].get("id")

    def _update(self, log_id: str, fields: dict[str, Any]) -> None:
        self._client.table(self._table).update(fields).eq("id", log_id).execute()

    async def create(self, fields: dict[str, Any]) -> Optional[str]:
        """Insert a new log row and return its id, or None if the insert failed."""
        try:
            log_id = await asyncio.to_thread(self._insert, fields)
        except Exception as e:
            logger.error(f"Failed to create verification log: {e}")
            return None
        if log_id is None:
            logger.error("Verification log insert returned no row")
        return log_id

    async def update(self, log_id: Optional[str], fields: dict[str, Any]) -> None:
        """Patch an existing log row. No-op when log_id is None."""
        if not log_id:
            return
        try:
            await asyncio.to_thread(self._update, log_id, fields)
        except Exception as e:
            logger.error(f"Failed to update verification log {log_id}: {e}")
