"""Batch migration of users that were never synced to the IdP.

Each step migrates exactly one user whose external_id IS NULL and returns a
new MigrateNextUser command, so the bus drives the chain one record at a
time. The chain ends when no unattempted user remains.

A failed record gets FAILED_SENTINEL as external_id plus a sync_error, which
takes it out of the "IS NULL" selection. Transient IdP failures leave the
record untouched and raise RetryableSyncError so the same step is redelivered.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from celine.idsync.audit import SyncAuditLogger
from celine.idsync.bus import DeadLetter, InMemoryMessageBus, MessageBus
from celine.idsync.idp.client import IdpClient, prepare_import_payload
from celine.idsync.idp.errors import IdpError, RetryableSyncError
from celine.idsync.models import FAILED_SENTINEL, LocalUser, MigrateNextUser
from celine.idsync.store import ProfileRepository, UserRepository

logger = logging.getLogger(__name__)

PROFILE_NOT_FOUND = "Profile not found"
REQUIRED_FIELDS_MISSING = "First name, last name, and email are required"
UNKNOWN_FAILURE = "Something went wrong"


@dataclass
class MigrationReport:
    """Counters for one migration chain."""

    invocations: int = 0
    linked: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)  # user_id -> reason
    stopped: str | None = None
    dead_letters: list[DeadLetter] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.linked) + len(self.failed)

    @property
    def completed(self) -> bool:
        return self.stopped is None and not self.dead_letters

    def summary(self) -> str:
        lines = [
            f"Steps: {self.invocations}",
            f"Linked: {len(self.linked)}",
            f"Failed: {len(self.failed)}",
        ]
        for user_id, reason in self.failed.items():
            lines.append(f"  ! {user_id}: {reason}")
        if self.stopped:
            lines.append(f"Stopped: {self.stopped}")
        if self.dead_letters:
            lines.append(f"Dead letters: {len(self.dead_letters)}")
            for letter in self.dead_letters:
                lines.append(f"  ! {letter.error}")
        return "\n".join(lines)


class MigrationDriver:
    """Bus handler for MigrateNextUser."""

    def __init__(
        self,
        client: IdpClient,
        users: UserRepository,
        profiles: ProfileRepository,
        bus: MessageBus | None = None,
        audit: SyncAuditLogger | None = None,
    ):
        self._client = client
        self._users = users
        self._profiles = profiles
        self._bus = bus
        self._audit = audit or SyncAuditLogger()
        # Serializes find-and-mark so two chains never pick the same user.
        self._lock = asyncio.Lock()
        self.report = MigrationReport()

    def start(self) -> MigrateNextUser:
        """Emit the first command of a chain."""
        if self._bus is None:
            raise RuntimeError("MigrationDriver has no bus to start a chain on")
        command = MigrateNextUser()
        self._bus.send(command)
        logger.info("IdP migration chain started")
        return command

    async def step(self, command: MigrateNextUser) -> MigrateNextUser | None:
        """Migrate one user; return the follow-up command or None when done."""
        async with self._lock:
            self.report.invocations += 1
            user = self._users.find_one_unattempted()
            if user is None:
                logger.info(
                    "IdP migration complete linked=%d failed=%d",
                    len(self.report.linked), len(self.report.failed),
                )
                return None
            return await self._migrate(user)

    async def _migrate(self, user: LocalUser) -> MigrateNextUser | None:
        profile = self._profiles.find_for_user(user.id)
        if profile is None:
            return self._mark_failed(user, PROFILE_NOT_FOUND)

        if not (user.email and profile.first_name and profile.last_name):
            return self._mark_failed(user, REQUIRED_FIELDS_MISSING)

        result = await self._client.import_user(prepare_import_payload(user, profile))

        if not result.ok:
            error = result.error
            if error.kind.fatal:
                self.report.stopped = error.message
                self._audit.log_migration(user_id=user.id, error=error)
                logger.error("IdP migration stopped: %s", error.message)
                return None
            if error.transient:
                self._audit.log_migration(user_id=user.id, error=error)
                raise RetryableSyncError(error)
            return self._mark_failed(user, error.message or UNKNOWN_FAILURE, error)

        data = result.data if isinstance(result.data, dict) else {}
        external_id = data.get("userId")
        if not external_id:
            return self._mark_failed(user, data.get("message") or UNKNOWN_FAILURE)

        user.external_id = str(external_id)
        user.sync_error = None
        self._users.save(user)
        self.report.linked.append(user.id)
        self._audit.log_migration(user_id=user.id, external_id=user.external_id)
        return MigrateNextUser()

    def _mark_failed(
        self, user: LocalUser, reason: str, error: IdpError | None = None
    ) -> MigrateNextUser:
        user.external_id = FAILED_SENTINEL
        user.sync_error = reason
        self._users.save(user)
        self.report.failed[user.id] = reason
        self._audit.log_migration(user_id=user.id, reason=reason, error=error)
        return MigrateNextUser()


async def run_migration(
    client: IdpClient,
    users: UserRepository,
    profiles: ProfileRepository,
    *,
    workers: int = 1,
    max_attempts: int = 5,
    retry_delay: float = 0.0,
    audit: SyncAuditLogger | None = None,
) -> MigrationReport:
    """Run one full migration chain on an in-memory bus."""
    bus = InMemoryMessageBus(workers=workers, max_attempts=max_attempts, retry_delay=retry_delay)
    driver = MigrationDriver(client, users, profiles, bus=bus, audit=audit)
    bus.register(MigrateNextUser, driver.step)

    driver.start()
    await bus.run_until_idle()

    driver.report.dead_letters = list(bus.dead_letters)
    return driver.report
