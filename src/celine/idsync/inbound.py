"""Inbound IdP events: registration, login, deactivation, profile update.

These are the IdP-originated changes that are allowed to modify local
state. HTTP routing and request authentication belong to the caller; this
module applies the change through the repositories and reports every
mutation to the ChangeDispatcher, the same way the persistence layer does.
Each operation returns a coarse InboundResult and never raises for an
unknown user or profile.
"""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import BaseModel, Field

from celine.idsync.models import EntityEvent, LocalUser, Profile
from celine.idsync.store import DuplicateProfileError, ProfileRepository, UserRepository
from celine.idsync.sync.dispatcher import ChangeDispatcher

logger = logging.getLogger(__name__)


class RegistrationEvent(BaseModel):
    """A user registered through the IdP."""

    email: str = Field(..., min_length=3)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    client_id: str = Field(..., description="Client tenant the user registered for")
    external_id: str | None = Field(default=None, description="IdP user id")
    password_hash: str | None = None


class LoginEvent(BaseModel):
    """A user authenticated at the IdP."""

    external_id: str = Field(..., min_length=1)
    client_id: str
    login_at: datetime
    user_name: str | None = Field(default=None, description="Fallback lookup by email")


class DeactivationEvent(BaseModel):
    """A user was deactivated at the IdP."""

    external_id: str = Field(..., min_length=1)


class ProfileUpdateEvent(BaseModel):
    """Name fields changed at the IdP."""

    external_id: str = Field(..., min_length=1)
    client_id: str
    first_name: str | None = None
    last_name: str | None = None


class InboundResult(BaseModel):
    success: bool
    reason: str = ""
    user_id: str | None = None


class InboundEventError(Exception):
    """The event refers to local records that do not exist."""


class InboundEvents:
    """Applies IdP-originated events to the local store."""

    def __init__(
        self,
        users: UserRepository,
        profiles: ProfileRepository,
        dispatcher: ChangeDispatcher,
    ):
        self._users = users
        self._profiles = profiles
        self._dispatcher = dispatcher

    def registered(self, event: RegistrationEvent) -> InboundResult:
        return self._run("registered", self._registered, event)

    def logged_in(self, event: LoginEvent) -> InboundResult:
        return self._run("logged_in", self._logged_in, event)

    def deactivated(self, event: DeactivationEvent) -> InboundResult:
        return self._run("deactivated", self._deactivated, event)

    def profile_updated(self, event: ProfileUpdateEvent) -> InboundResult:
        return self._run("profile_updated", self._profile_updated, event)

    def _run(self, name: str, operation, event: BaseModel) -> InboundResult:
        try:
            user = operation(event)
        except (InboundEventError, DuplicateProfileError) as e:
            logger.info("Inbound %s rejected: %s", name, e)
            return InboundResult(success=False, reason=str(e))
        return InboundResult(success=True, user_id=user.id)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def _registered(self, event: RegistrationEvent) -> LocalUser:
        user = self._users.find_by_email(event.email)
        profile = (
            self._profiles.find_for_user(user.id, event.client_id) if user else None
        )

        if user and profile:
            # Known user and client: only the IdP link is new.
            if event.external_id and user.external_id != event.external_id:
                user.external_id = event.external_id
                user.sync_error = None
                self._users.save(user)
                self._dispatcher.dispatch(EntityEvent.user_updated(user, {"external_id"}))
            return user

        created = user is None
        if created:
            user = LocalUser(
                email=event.email,
                password_hash=event.password_hash,
                enabled=True,
                email_confirmed=True,
                external_id=event.external_id,
            )
            self._users.save(user)

        self._profiles.save(
            Profile(
                user_id=user.id,
                client_id=event.client_id,
                first_name=event.first_name,
                last_name=event.last_name,
            )
        )

        if created:
            # Profile exists now, so an unlinked user is linked or imported.
            self._dispatcher.dispatch(EntityEvent.user_created(user))
        return user

    def _logged_in(self, event: LoginEvent) -> LocalUser:
        user = self._users.find_by_external_id(event.external_id)
        if user is None and event.user_name:
            user = self._users.find_by_email(event.user_name)
        if user is None:
            raise InboundEventError("User not found.")

        if self._profiles.find_for_user(user.id, event.client_id) is None:
            raise InboundEventError("User profile not found.")

        user.last_login_at = event.login_at
        self._users.save(user)
        self._dispatcher.dispatch(EntityEvent.user_updated(user, {"last_login_at"}))
        return user

    def _deactivated(self, event: DeactivationEvent) -> LocalUser:
        user = self._users.find_by_external_id(event.external_id)
        if user is None:
            raise InboundEventError("User not found.")

        user.enabled = False
        self._users.save(user)
        self._dispatcher.dispatch(EntityEvent.user_updated(user, {"enabled"}))
        return user

    def _profile_updated(self, event: ProfileUpdateEvent) -> LocalUser:
        user = self._users.find_by_external_id(event.external_id)
        if user is None:
            raise InboundEventError("User not found.")

        profile = self._profiles.find_for_user(user.id, event.client_id)
        if profile is None:
            raise InboundEventError("Profile not found.")

        changes: set[str] = set()
        if event.first_name and event.first_name != profile.first_name:
            profile.first_name = event.first_name
            changes.add("first_name")
        if event.last_name and event.last_name != profile.last_name:
            profile.last_name = event.last_name
            changes.add("last_name")

        if changes:
            self._profiles.save(profile)
            self._dispatcher.dispatch(EntityEvent.profile_updated(profile, changes))
        return user
