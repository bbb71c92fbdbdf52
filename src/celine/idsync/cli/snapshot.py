"""YAML snapshots of local users and profiles for offline migration runs.

Example YAML structure:
    users:
      - id: 6f1c...
        email: a@example.org
        password_hash: $2y$13$...
        email_confirmed: true
        external_id: null          # not yet attempted

    profiles:
      - user_id: 6f1c...
        client_id: alumni-portal
        first_name: Ada
        last_name: Byron
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from celine.idsync.models import LocalUser, Profile
from celine.idsync.store import InMemoryProfileRepository, InMemoryUserRepository

logger = logging.getLogger(__name__)


class Snapshot(BaseModel):
    """Users and profiles exported from the local store."""

    users: list[LocalUser] = Field(default_factory=list)
    profiles: list[Profile] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Snapshot":
        """Load a snapshot from a YAML file."""
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Snapshot file not found: {path}")

        raw = yaml.safe_load(p.read_text()) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Snapshot file must be a YAML mapping: {path}")

        return cls.model_validate(raw)

    def repositories(self) -> tuple[InMemoryUserRepository, InMemoryProfileRepository]:
        """Build in-memory repositories holding this snapshot's records."""
        return InMemoryUserRepository(self.users), InMemoryProfileRepository(self.profiles)

    @classmethod
    def from_repositories(
        cls, users: InMemoryUserRepository, profiles: InMemoryProfileRepository
    ) -> "Snapshot":
        return cls(users=users.all(), profiles=profiles.all())

    def write_yaml(self, path: Path) -> None:
        """Write the snapshot, including sync outcomes, to a YAML file."""
        output = {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            **self.model_dump(mode="json"),
        }
        path.write_text(yaml.safe_dump(output, default_flow_style=False, sort_keys=False))
        logger.info("Wrote snapshot to: %s", path)
