"""Change detection: decide which SyncMessages a local transition needs.

The persistence layer calls ChangeDispatcher.dispatch() inline with each
lifecycle transition. Decisions use only the event's own change set and never
call the IdP; the resulting messages are sent on the bus and returned.

Rules:
- user created with a profile and no external id -> link-or-create
- user updated, email changed, linked -> email + username updates
- profile updated, name fields changed, owner linked -> profile update
- profile updated, owner without external id -> link-or-create
"""

from __future__ import annotations

import logging

from celine.idsync.bus import MessageBus
from celine.idsync.config import IdpSettings
from celine.idsync.idp.client import (
    import_path,
    prepare_email_payload,
    prepare_import_payload,
    prepare_profile_payload,
    prepare_username_payload,
    user_path,
)
from celine.idsync.models import (
    EntityEvent,
    EntityKind,
    LocalUser,
    Profile,
    SyncAction,
    SyncMessage,
    Transition,
)
from celine.idsync.store import ProfileRepository, UserRepository

logger = logging.getLogger(__name__)

PROFILE_SYNC_FIELDS = frozenset({"first_name", "last_name", "nickname"})


class ChangeDispatcher:
    """Turns entity lifecycle events into SyncMessages."""

    def __init__(
        self,
        settings: IdpSettings,
        bus: MessageBus,
        users: UserRepository,
        profiles: ProfileRepository,
    ):
        self._settings = settings
        self._bus = bus
        self._users = users
        self._profiles = profiles

    def _user_path(self, user: LocalUser, sub_resource: str) -> str:
        return user_path(self._settings.api_version, user.external_id, sub_resource)

    def dispatch(self, event: EntityEvent) -> list[SyncMessage]:
        """Decide and emit the messages required by one transition."""
        messages = self._decide(event)
        for message in messages:
            self._bus.send(message)
        if messages:
            logger.debug(
                "Dispatched %d sync message(s) for %s %s",
                len(messages), event.kind.value, event.transition.value,
            )
        return messages

    def _decide(self, event: EntityEvent) -> list[SyncMessage]:
        if event.transition is Transition.DELETED:
            return []

        if event.kind is EntityKind.USER:
            user = event.entity
            if event.transition is Transition.CREATED:
                return self._on_user_created(user)
            return self._on_user_updated(user, event.changes)

        profile = event.entity
        if event.transition is Transition.UPDATED:
            return self._on_profile_updated(profile, event.changes)
        return []

    def _on_user_created(self, user: LocalUser) -> list[SyncMessage]:
        if user.sync_attempted:
            return []
        profile = self._profiles.find_for_user(user.id)
        if profile is None:
            return []
        return [self._link_or_create(user, profile)]

    def _on_user_updated(self, user: LocalUser, changes: frozenset[str]) -> list[SyncMessage]:
        if "email" not in changes or not user.is_linked:
            return []
        return [
            SyncMessage(
                url=self._user_path(user, "email"),
                payload=prepare_email_payload(user),
                action=SyncAction.UPDATE,
            ),
            SyncMessage(
                url=self._user_path(user, "username"),
                payload=prepare_username_payload(user),
                action=SyncAction.UPDATE,
            ),
        ]

    def _on_profile_updated(
        self, profile: Profile, changes: frozenset[str]
    ) -> list[SyncMessage]:
        user = self._users.get(profile.user_id)
        if user is None:
            logger.warning("Profile %s has no owning user %s", profile.id, profile.user_id)
            return []

        if user.is_linked:
            if not changes & PROFILE_SYNC_FIELDS:
                return []
            return [
                SyncMessage(
                    url=self._user_path(user, "profile"),
                    payload=prepare_profile_payload(profile),
                    action=SyncAction.UPDATE,
                )
            ]

        # A profile may be added after the user record.
        if user.email and not user.sync_attempted:
            return [self._link_or_create(user, profile)]
        return []

    def _link_or_create(self, user: LocalUser, profile: Profile) -> SyncMessage:
        logger.info("Dispatching new user to IdP: %s", user.email)
        return SyncMessage(
            url=import_path(self._settings.api_version),
            payload=prepare_import_payload(user, profile),
            action=SyncAction.CREATE,
            user_id=user.id,
            lookup_username=user.username,
        )
