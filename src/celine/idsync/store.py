"""Local persistence boundary.

The ORM layer implements UserRepository and ProfileRepository; the in-memory
implementations back the CLI snapshot workflow and the tests.
"""

from __future__ import annotations

import threading
from typing import Protocol

from celine.idsync.models import LocalUser, Profile


class DuplicateProfileError(ValueError):
    """A second profile for the same (user, client) pair."""


class UserRepository(Protocol):
    def get(self, user_id: str) -> LocalUser | None:
        ...

    def find_by_email(self, email: str) -> LocalUser | None:
        ...

    def find_by_external_id(self, external_id: str) -> LocalUser | None:
        ...

    def find_one_unattempted(self) -> LocalUser | None:
        """Return one user whose external_id IS NULL."""
        ...

    def save(self, user: LocalUser) -> None:
        ...


class ProfileRepository(Protocol):
    def find_for_user(self, user_id: str, client_id: str | None = None) -> Profile | None:
        """Return the user's profile for client_id, or any profile if None."""
        ...

    def save(self, profile: Profile) -> None:
        ...


class InMemoryUserRepository:
    """Dict-backed UserRepository preserving insertion order."""

    def __init__(self, users: list[LocalUser] | None = None):
        self._users: dict[str, LocalUser] = {}
        self._lock = threading.RLock()
        for user in users or []:
            self.save(user)

    def __len__(self) -> int:
        return len(self._users)

    def all(self) -> list[LocalUser]:
        with self._lock:
            return list(self._users.values())

    def get(self, user_id: str) -> LocalUser | None:
        return self._users.get(user_id)

    def find_by_email(self, email: str) -> LocalUser | None:
        with self._lock:
            return next((u for u in self._users.values() if u.email == email), None)

    def find_by_external_id(self, external_id: str) -> LocalUser | None:
        with self._lock:
            return next(
                (u for u in self._users.values() if u.external_id == external_id), None
            )

    def find_one_unattempted(self) -> LocalUser | None:
        with self._lock:
            return next((u for u in self._users.values() if u.external_id is None), None)

    def save(self, user: LocalUser) -> None:
        with self._lock:
            self._users[user.id] = user


class InMemoryProfileRepository:
    """Dict-backed ProfileRepository keyed by (user_id, client_id)."""

    def __init__(self, profiles: list[Profile] | None = None):
        self._profiles: dict[tuple[str, str], Profile] = {}
        self._lock = threading.RLock()
        for profile in profiles or []:
            self.save(profile)

    def all(self) -> list[Profile]:
        with self._lock:
            return list(self._profiles.values())

    def find_for_user(self, user_id: str, client_id: str | None = None) -> Profile | None:
        with self._lock:
            if client_id is not None:
                return self._profiles.get((user_id, client_id))
            return next(
                (p for (uid, _), p in self._profiles.items() if uid == user_id), None
            )

    def save(self, profile: Profile) -> None:
        key = (profile.user_id, profile.client_id)
        with self._lock:
            existing = self._profiles.get(key)
            if existing is not None and existing.id != profile.id:
                raise DuplicateProfileError(
                    f"User {profile.user_id} already has a profile for client {profile.client_id}"
                )
            self._profiles[key] = profile
