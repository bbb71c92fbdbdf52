import pytest

from celine.idsync.models import FAILED_SENTINEL, LocalUser, Profile
from celine.idsync.store import (
    DuplicateProfileError,
    InMemoryProfileRepository,
    InMemoryUserRepository,
)


def test_find_one_unattempted_skips_linked_and_failed_users():
    linked = LocalUser(email="a@example.org", external_id="1")
    failed = LocalUser(email="b@example.org", external_id=FAILED_SENTINEL)
    pending = LocalUser(email="c@example.org")
    users = InMemoryUserRepository([linked, failed, pending])

    assert users.find_one_unattempted() is pending
    assert users.find_by_external_id("1") is linked
    assert users.find_by_email("b@example.org") is failed

    pending.external_id = "2"
    assert users.find_one_unattempted() is None


def test_profile_lookup_by_client():
    profiles = InMemoryProfileRepository(
        [
            Profile(user_id="u1", client_id="a", first_name="A"),
            Profile(user_id="u1", client_id="b", first_name="B"),
        ]
    )

    assert profiles.find_for_user("u1", "b").first_name == "B"
    assert profiles.find_for_user("u1").first_name == "A"
    assert profiles.find_for_user("u2") is None


def test_second_profile_for_same_client_is_rejected():
    profiles = InMemoryProfileRepository([Profile(user_id="u1", client_id="a")])

    with pytest.raises(DuplicateProfileError):
        profiles.save(Profile(user_id="u1", client_id="a"))


def test_saving_same_profile_again_is_an_update():
    profile = Profile(user_id="u1", client_id="a", first_name="A")
    profiles = InMemoryProfileRepository([profile])

    profile.first_name = "Z"
    profiles.save(profile)

    assert profiles.find_for_user("u1", "a").first_name == "Z"
