"""Structured audit logging for IdP reconciliation outcomes."""

from typing import Any

import structlog

from celine.idsync.idp.errors import IdpError


class SyncAuditLogger:
    """Audit logger for reconciliation and migration outcomes."""

    def __init__(
        self,
        enabled: bool = True,
        logger: Any = None,
    ):
        """Initialize audit logger.

        Args:
            enabled: Whether audit logging is enabled
            logger: Optional custom logger
        """
        self._enabled = enabled
        self._logger = logger or structlog.get_logger("idsync.audit")

    def log_sync(
        self,
        *,
        action: str,
        url: str,
        user_id: str | None = None,
        external_id: str | None = None,
        error: IdpError | None = None,
        latency_ms: float | None = None,
        outcome: str | None = None,
    ) -> None:
        """Log the outcome of one SyncMessage.

        Args:
            action: create or update
            url: Target IdP resource path
            user_id: Local user id (create only)
            external_id: IdP id written back or linked
            error: Normalized IdP failure, if any
            latency_ms: IdP call latency
            outcome: Short outcome label (imported, linked, updated, dropped, retry)
        """
        if not self._enabled:
            return

        log_data: dict[str, Any] = {
            "event": "idp_sync",
            "action": action,
            "url": url,
            "success": error is None,
        }
        if outcome:
            log_data["outcome"] = outcome
        if user_id:
            log_data["user_id"] = user_id
        if external_id:
            log_data["external_id"] = external_id
        if latency_ms is not None:
            log_data["latency_ms"] = round(latency_ms, 2)
        if error is not None:
            log_data.update(_error_fields(error))

        if error is None:
            self._logger.info(**log_data)
        elif error.kind.fatal:
            self._logger.error(**log_data)
        else:
            self._logger.warning(**log_data)

    def log_migration(
        self,
        *,
        user_id: str,
        external_id: str | None = None,
        reason: str | None = None,
        error: IdpError | None = None,
    ) -> None:
        """Log the outcome of one migration step."""
        if not self._enabled:
            return

        log_data: dict[str, Any] = {
            "event": "idp_migration",
            "user_id": user_id,
            "success": reason is None and error is None,
        }
        if external_id:
            log_data["external_id"] = external_id
        if reason:
            log_data["reason"] = reason
        if error is not None:
            log_data.update(_error_fields(error))

        if log_data["success"]:
            self._logger.info(**log_data)
        elif error is not None and error.kind.fatal:
            self._logger.error(**log_data)
        else:
            self._logger.warning(**log_data)


def _error_fields(error: IdpError) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "error": error.message,
        "error_kind": error.kind.value,
        "transient": error.transient,
    }
    if error.status_code is not None:
        fields["status_code"] = error.status_code
    return fields
