"""Tests for the batch migration chain."""

import pytest

from celine.idsync.bus import InMemoryMessageBus
from celine.idsync.config import IdpSettings
from celine.idsync.idp.client import IdpClient
from celine.idsync.models import FAILED_SENTINEL, LocalUser, MigrateNextUser, Profile
from celine.idsync.sync.migration import (
    PROFILE_NOT_FOUND,
    REQUIRED_FIELDS_MISSING,
    UNKNOWN_FAILURE,
    MigrationDriver,
    run_migration,
)

from conftest import IMPORT_PATH, request_json


def _add_user(users, profiles, email, first_name="Test", last_name="User", profile=True):
    user = LocalUser(email=email, password_hash="$2y$13$hash", email_confirmed=True)
    users.save(user)
    if profile:
        profiles.save(
            Profile(user_id=user.id, client_id="c", first_name=first_name, last_name=last_name)
        )
    return user


@pytest.mark.asyncio
async def test_chain_migrates_every_user_once(idp_settings, fake_idp, users, profiles, audit):
    created = [_add_user(users, profiles, f"user{i}@example.org") for i in range(3)]
    fake_idp.route(
        "POST",
        IMPORT_PATH,
        (201, {"userId": "101"}),
        (201, {"userId": "102"}),
        (201, {"userId": "103"}),
    )

    async with IdpClient(idp_settings, transport=fake_idp.transport) as client:
        report = await run_migration(client, users, profiles, audit=audit)

    assert report.invocations == 4
    assert report.completed
    assert [u.external_id for u in created] == ["101", "102", "103"]
    assert report.linked == [u.id for u in created]
    imported = [request_json(r)["userName"] for r in fake_idp.calls("POST", IMPORT_PATH)]
    assert imported == [u.email for u in created]


@pytest.mark.asyncio
async def test_rejected_user_is_marked_and_chain_continues(
    idp_settings, fake_idp, users, profiles, audit, fake_logger
):
    taken = _add_user(users, profiles, "taken@example.org")
    fresh = _add_user(users, profiles, "fresh@example.org")
    fake_idp.route(
        "POST",
        IMPORT_PATH,
        (400, {"message": "User already exists"}),
        (201, {"userId": "200"}),
    )

    async with IdpClient(idp_settings, transport=fake_idp.transport) as client:
        report = await run_migration(client, users, profiles, audit=audit)

    assert taken.external_id == FAILED_SENTINEL
    assert taken.sync_error == "User already exists"
    assert taken.sync_failed and not taken.is_linked
    assert fresh.external_id == "200"
    assert report.failed == {taken.id: "User already exists"}
    assert report.invocations == 3
    level, payload = fake_logger.calls[0]
    assert level == "warning"
    assert payload["event"] == "idp_migration"
    assert payload["reason"] == "User already exists"


@pytest.mark.asyncio
async def test_incomplete_profile_fails_without_idp_call(
    idp_settings, fake_idp, users, profiles, audit
):
    nameless = _add_user(users, profiles, "nameless@example.org", first_name=None)

    async with IdpClient(idp_settings, transport=fake_idp.transport) as client:
        report = await run_migration(client, users, profiles, audit=audit)

    assert nameless.external_id == FAILED_SENTINEL
    assert nameless.sync_error == REQUIRED_FIELDS_MISSING
    assert fake_idp.calls("POST", IMPORT_PATH) == []
    assert report.invocations == 2


@pytest.mark.asyncio
async def test_missing_profile_fails(idp_settings, fake_idp, users, profiles, audit):
    orphan = _add_user(users, profiles, "orphan@example.org", profile=False)

    async with IdpClient(idp_settings, transport=fake_idp.transport) as client:
        await run_migration(client, users, profiles, audit=audit)

    assert orphan.external_id == FAILED_SENTINEL
    assert orphan.sync_error == PROFILE_NOT_FOUND


@pytest.mark.asyncio
async def test_success_without_user_id_is_unknown_failure(
    idp_settings, fake_idp, users, profiles, audit
):
    user = _add_user(users, profiles, "odd@example.org")
    fake_idp.route("POST", IMPORT_PATH, (200, {}))

    async with IdpClient(idp_settings, transport=fake_idp.transport) as client:
        await run_migration(client, users, profiles, audit=audit)

    assert user.external_id == FAILED_SENTINEL
    assert user.sync_error == UNKNOWN_FAILURE


@pytest.mark.asyncio
async def test_previously_attempted_users_are_not_selected(
    idp_settings, fake_idp, users, profiles, audit
):
    linked = _add_user(users, profiles, "linked@example.org")
    linked.external_id = "55"
    failed = _add_user(users, profiles, "failed@example.org")
    failed.external_id = FAILED_SENTINEL
    failed.sync_error = "User already exists"

    async with IdpClient(idp_settings, transport=fake_idp.transport) as client:
        report = await run_migration(client, users, profiles, audit=audit)

    assert report.invocations == 1
    assert fake_idp.calls("POST", IMPORT_PATH) == []
    assert failed.sync_error == "User already exists"


@pytest.mark.asyncio
async def test_transient_failure_retries_the_same_user(
    idp_settings, fake_idp, users, profiles, audit
):
    user = _add_user(users, profiles, "flaky@example.org")
    fake_idp.route("POST", IMPORT_PATH, (503, None), (201, {"userId": "300"}))

    async with IdpClient(idp_settings, transport=fake_idp.transport) as client:
        report = await run_migration(client, users, profiles, audit=audit)

    assert user.external_id == "300"
    assert user.sync_error is None
    assert report.invocations == 3
    assert report.completed


@pytest.mark.asyncio
async def test_persistent_outage_dead_letters_without_marking(
    idp_settings, fake_idp, users, profiles, audit
):
    user = _add_user(users, profiles, "down@example.org")
    fake_idp.route("POST", IMPORT_PATH, (503, None))

    async with IdpClient(idp_settings, transport=fake_idp.transport) as client:
        report = await run_migration(client, users, profiles, max_attempts=2, audit=audit)

    assert user.external_id is None
    assert len(report.dead_letters) == 1
    assert not report.completed
    assert "Dead letters: 1" in report.summary()


@pytest.mark.asyncio
async def test_configuration_error_stops_the_chain(fake_idp, users, profiles, audit, fake_logger):
    user = _add_user(users, profiles, "first@example.org")
    _add_user(users, profiles, "second@example.org")
    settings = IdpSettings(base_url="https://idp.test", _env_file=None)

    async with IdpClient(settings, transport=fake_idp.transport) as client:
        report = await run_migration(client, users, profiles, audit=audit)

    assert report.stopped is not None
    assert not report.completed
    assert report.invocations == 1
    assert user.external_id is None
    assert fake_idp.requests == []
    assert fake_logger.calls[0][0] == "error"


@pytest.mark.asyncio
async def test_step_on_empty_store_ends_the_chain(idp_settings, users, profiles, audit):
    driver = MigrationDriver(IdpClient(idp_settings), users, profiles, audit=audit)

    assert await driver.step(MigrateNextUser()) is None
    assert driver.report.invocations == 1


def test_start_requires_a_bus(idp_settings, users, profiles):
    driver = MigrationDriver(IdpClient(idp_settings), users, profiles)

    with pytest.raises(RuntimeError):
        driver.start()


@pytest.mark.asyncio
async def test_concurrent_chains_never_import_the_same_user(
    idp_settings, fake_idp, users, profiles, audit
):
    created = [_add_user(users, profiles, f"user{i}@example.org") for i in range(5)]
    fake_idp.route(
        "POST", IMPORT_PATH, *[(201, {"userId": str(100 + i)}) for i in range(5)]
    )
    bus = InMemoryMessageBus(workers=3)

    async with IdpClient(idp_settings, transport=fake_idp.transport) as client:
        driver = MigrationDriver(client, users, profiles, bus=bus, audit=audit)
        bus.register(MigrateNextUser, driver.step)
        for _ in range(3):
            driver.start()
        await bus.run_until_idle()

    imported = [request_json(r)["userName"] for r in fake_idp.calls("POST", IMPORT_PATH)]
    assert sorted(imported) == sorted(u.email for u in created)
    assert len(set(u.external_id for u in created)) == 5
    assert sorted(driver.report.linked) == sorted(u.id for u in created)
    # Each of the three chains ends with one empty step.
    assert driver.report.invocations == 5 + 3
