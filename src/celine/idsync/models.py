"""Domain models for local users, profiles and sync commands."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Stored in LocalUser.external_id to mark "attempted and failed", so the
# migration driver's "external_id IS NULL" query never selects the user again.
FAILED_SENTINEL = "0"


def _new_id() -> str:
    return str(uuid.uuid4())


class LocalUser(BaseModel):
    """Local user account mirrored into the IdP."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_new_id, description="Stable local identifier")
    email: str | None = Field(default=None, description="Login email (also the IdP userName)")
    enabled: bool = True
    email_confirmed: bool = False
    password_hash: str | None = Field(
        default=None, description="Hashed password forwarded on import"
    )
    external_id: str | None = Field(
        default=None, description="IdP user id, or FAILED_SENTINEL"
    )
    sync_error: str | None = Field(
        default=None, description="Last reconciliation failure message"
    )
    last_login_at: datetime | None = None

    @property
    def username(self) -> str | None:
        """The IdP username mirrors the email."""
        return self.email

    @property
    def sync_attempted(self) -> bool:
        return self.external_id is not None

    @property
    def sync_failed(self) -> bool:
        return self.external_id == FAILED_SENTINEL

    @property
    def is_linked(self) -> bool:
        """True when external_id holds a real IdP identifier."""
        return self.sync_attempted and not self.sync_failed


class Profile(BaseModel):
    """Per-client profile of a local user."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_new_id)
    user_id: str = Field(..., description="Owning LocalUser id")
    client_id: str = Field(..., description="Client tenant identifier")
    first_name: str | None = None
    last_name: str | None = None
    nickname: str | None = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class SyncAction(str, Enum):
    """Reconciliation action carried by a SyncMessage."""

    CREATE = "create"
    UPDATE = "update"


class SyncMessage(BaseModel):
    """Immutable command asking the reconciliation handler to call the IdP.

    `create` messages carry the local user id so the resulting IdP id can be
    written back; `update` messages are pure propagation.
    """

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., description="Target IdP resource path")
    payload: dict[str, Any] = Field(default_factory=dict, description="JSON body")
    action: SyncAction
    user_id: str | None = Field(default=None, description="Local user id (create only)")
    lookup_username: str | None = Field(
        default=None,
        description="Search the IdP for this userName before importing (create only)",
    )

    @model_validator(mode="after")
    def _check_action_fields(self) -> "SyncMessage":
        if self.action is SyncAction.CREATE and not self.user_id:
            raise ValueError("create messages require user_id")
        if self.action is SyncAction.UPDATE and (self.user_id or self.lookup_username):
            raise ValueError("update messages carry neither user_id nor lookup_username")
        return self


class MigrateNextUser(BaseModel):
    """Parameterless command: migrate the next not-yet-attempted user."""

    model_config = ConfigDict(frozen=True)


class EntityKind(str, Enum):
    USER = "user"
    PROFILE = "profile"


class Transition(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class EntityEvent(BaseModel):
    """A lifecycle transition reported by the persistence layer.

    `changes` holds the field names modified in the current transaction.
    """

    model_config = ConfigDict(frozen=True)

    kind: EntityKind
    transition: Transition
    entity: LocalUser | Profile
    changes: frozenset[str] = Field(default_factory=frozenset)

    @model_validator(mode="after")
    def _check_entity_kind(self) -> "EntityEvent":
        expected = LocalUser if self.kind is EntityKind.USER else Profile
        if not isinstance(self.entity, expected):
            raise ValueError(f"{self.kind.value} event carries a {type(self.entity).__name__}")
        return self

    @classmethod
    def user_created(cls, user: LocalUser) -> "EntityEvent":
        return cls(kind=EntityKind.USER, transition=Transition.CREATED, entity=user)

    @classmethod
    def user_updated(cls, user: LocalUser, changes: set[str] | frozenset[str]) -> "EntityEvent":
        return cls(
            kind=EntityKind.USER,
            transition=Transition.UPDATED,
            entity=user,
            changes=frozenset(changes),
        )

    @classmethod
    def profile_updated(
        cls, profile: Profile, changes: set[str] | frozenset[str]
    ) -> "EntityEvent":
        return cls(
            kind=EntityKind.PROFILE,
            transition=Transition.UPDATED,
            entity=profile,
            changes=frozenset(changes),
        )
