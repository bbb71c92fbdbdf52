"""Reconciliation handler: consume one SyncMessage, call the IdP once.

create -> (optional exact-username lookup) + import, write back the IdP id
update -> PUT the sub-resource, no local mutation

Permanent IdP failures are logged and the message is dropped. Transient
failures raise RetryableSyncError so the bus redelivers the message; no local
state has been touched at that point, so redelivery is safe.
"""

from __future__ import annotations

import logging
import time

from celine.idsync.audit import SyncAuditLogger
from celine.idsync.idp.client import IdpClient
from celine.idsync.idp.errors import ErrorKind, IdpError, RetryableSyncError
from celine.idsync.models import SyncAction, SyncMessage
from celine.idsync.store import UserRepository

logger = logging.getLogger(__name__)


class ReconciliationHandler:
    """Bus handler for SyncMessage."""

    def __init__(
        self,
        client: IdpClient,
        users: UserRepository,
        audit: SyncAuditLogger | None = None,
    ):
        self._client = client
        self._users = users
        self._audit = audit or SyncAuditLogger()

    async def handle(self, message: SyncMessage) -> None:
        if message.action is SyncAction.CREATE:
            await self._handle_create(message)
        else:
            await self._handle_update(message)

    async def _handle_create(self, message: SyncMessage) -> None:
        if message.lookup_username:
            found = await self._client.search_by_username(message.lookup_username)
            if not found.ok:
                self._fail(message, found.error)
                return
            if found.data:
                self._write_back(message, found.data, outcome="linked")
                return

        started = time.perf_counter()
        result = await self._client.post(message.url, json=message.payload)
        latency_ms = (time.perf_counter() - started) * 1000

        if not result.ok:
            self._fail(message, result.error, latency_ms)
            return

        external_id = result.data.get("userId") if isinstance(result.data, dict) else None
        if not external_id:
            self._fail(
                message,
                IdpError("Import response carried no userId", kind=ErrorKind.DECODE),
                latency_ms,
            )
            return

        self._write_back(message, str(external_id), outcome="imported", latency_ms=latency_ms)

    async def _handle_update(self, message: SyncMessage) -> None:
        started = time.perf_counter()
        result = await self._client.put(message.url, json=message.payload)
        latency_ms = (time.perf_counter() - started) * 1000

        if not result.ok:
            self._fail(message, result.error, latency_ms)
            return

        self._audit.log_sync(
            action=message.action.value,
            url=message.url,
            latency_ms=latency_ms,
            outcome="updated",
        )

    def _write_back(
        self,
        message: SyncMessage,
        external_id: str,
        outcome: str,
        latency_ms: float | None = None,
    ) -> None:
        user = self._users.get(message.user_id)
        if user is None:
            logger.warning("User %s vanished before IdP id %s could be stored", message.user_id, external_id)
        elif user.is_linked:
            logger.info(
                "User %s already linked to %s, keeping it (got %s)",
                user.id, user.external_id, external_id,
            )
        else:
            user.external_id = external_id
            user.sync_error = None
            self._users.save(user)

        self._audit.log_sync(
            action=message.action.value,
            url=message.url,
            user_id=message.user_id,
            external_id=external_id,
            latency_ms=latency_ms,
            outcome=outcome,
        )

    def _fail(
        self,
        message: SyncMessage,
        error: IdpError,
        latency_ms: float | None = None,
    ) -> None:
        outcome = "retry" if error.transient else "dropped"
        self._audit.log_sync(
            action=message.action.value,
            url=message.url,
            user_id=message.user_id,
            error=error,
            latency_ms=latency_ms,
            outcome=outcome,
        )
        if error.transient:
            raise RetryableSyncError(error)
