from __future__ import annotations

import json

import pytest

from backend.app.identity_store import (
    IdentityStore,
    IdentityStoreError,
    PlatformNotFoundError,
    UserNotFoundError,
)


def _platform_payload(**overrides) -> dict:
    payload = {
        "issuer": "https://moodle.example",
        "client_id": "moodle-client",
        "deployment_id": "1",
        "jwks_endpoint": "https://moodle.example/mod/lti/certs.php",
        "authorization_endpoint": "https://moodle.example/mod/lti/auth.php",
        "token_endpoint": "https://moodle.example/mod/lti/token.php",
        "name": "Moodle",
    }
    payload.update(overrides)
    return payload


def test_find_or_create_user_is_idempotent(tmp_path) -> None:
    store = IdentityStore(tmp_path / "identity.json")

    user, created = store.find_or_create_user("learner-1", "https://moodle.example", display_name="Learner One")
    again, created_again = store.find_or_create_user("learner-1", "https://moodle.example")

    assert created is True
    assert created_again is False
    assert again.id == user.id
    assert again.display_name == "Learner One"
    assert len(store.list_users()) == 1


def test_same_subject_on_other_platform_is_a_different_user(tmp_path) -> None:
    store = IdentityStore(tmp_path / "identity.json")

    first, _ = store.find_or_create_user("learner-1", "https://moodle.example")
    second, created = store.find_or_create_user("learner-1", "https://canvas.instructure.com")

    assert created is True
    assert first.id != second.id


def test_later_launch_refreshes_non_empty_profile_fields(tmp_path) -> None:
    store = IdentityStore(tmp_path / "identity.json")
    user, _ = store.find_or_create_user(
        "learner-1", "https://moodle.example", display_name="Learner One", email="one@example.com"
    )

    updated, created = store.find_or_create_user(
        "learner-1", "https://moodle.example", display_name="Learner Uno", email=None
    )

    assert created is False
    assert updated.id == user.id
    assert updated.display_name == "Learner Uno"
    assert updated.email == "one@example.com"
    assert store.get_user(user.id).display_name == "Learner Uno"


def test_users_survive_reload(tmp_path) -> None:
    path = tmp_path / "identity.json"
    user, _ = IdentityStore(path).find_or_create_user("learner-1", "https://moodle.example", email="a@b.c")

    reloaded = IdentityStore(path)

    assert reloaded.get_user(user.id).email == "a@b.c"
    next_user, _ = reloaded.find_or_create_user("learner-2", "https://moodle.example")
    assert next_user.id == user.id + 1


def test_empty_identifiers_are_rejected(tmp_path) -> None:
    store = IdentityStore(tmp_path / "identity.json")

    with pytest.raises(IdentityStoreError):
        store.find_or_create_user("", "https://moodle.example")
    with pytest.raises(IdentityStoreError):
        store.find_or_create_user("learner-1", "  ")
    assert store.list_users() == []


def test_unknown_user_raises(tmp_path) -> None:
    with pytest.raises(UserNotFoundError):
        IdentityStore(tmp_path / "identity.json").get_user(99)


def test_platform_lookup_by_issuer_and_client_id(tmp_path) -> None:
    store = IdentityStore(tmp_path / "identity.json")
    created = store.create_platform(_platform_payload())

    assert created.id == 1
    assert store.find_platform_by_issuer("https://moodle.example").client_id == "moodle-client"
    assert store.find_platform_by_client_id("moodle-client").issuer == "https://moodle.example"
    with pytest.raises(PlatformNotFoundError):
        store.find_platform_by_issuer("https://unknown.example")
    with pytest.raises(PlatformNotFoundError):
        store.find_platform_by_client_id("unknown-client")


def test_duplicate_issuer_is_rejected(tmp_path) -> None:
    store = IdentityStore(tmp_path / "identity.json")
    store.create_platform(_platform_payload())

    with pytest.raises(IdentityStoreError):
        store.create_platform(_platform_payload(client_id="other"))
    assert len(store.list_platforms()) == 1


def test_upsert_updates_existing_registration(tmp_path) -> None:
    store = IdentityStore(tmp_path / "identity.json")
    first = store.upsert_platform(_platform_payload())

    second = store.upsert_platform(_platform_payload(client_id="rotated-client", name="Moodle Prod"))

    assert second.id == first.id
    assert second.created_at == first.created_at
    assert second.client_id == "rotated-client"
    assert [platform.name for platform in store.list_platforms()] == ["Moodle Prod"]


def test_issuer_spelling_is_kept_verbatim(tmp_path) -> None:
    store = IdentityStore(tmp_path / "identity.json")

    platform = store.create_platform(_platform_payload())

    assert platform.issuer == "https://moodle.example"


def test_invalid_urls_are_rejected(tmp_path) -> None:
    store = IdentityStore(tmp_path / "identity.json")

    with pytest.raises(IdentityStoreError):
        store.create_platform(_platform_payload(jwks_endpoint="not a url"))
    with pytest.raises(IdentityStoreError):
        store.create_platform(_platform_payload(authorization_endpoint="ftp://moodle.example/auth"))
    assert store.list_platforms() == []


def test_delete_platform(tmp_path) -> None:
    store = IdentityStore(tmp_path / "identity.json")
    store.create_platform(_platform_payload())

    assert store.delete_platform("https://moodle.example") is True
    assert store.delete_platform("https://moodle.example") is False
    assert IdentityStore(tmp_path / "identity.json").list_platforms() == []


def test_store_file_is_plain_json(tmp_path) -> None:
    path = tmp_path / "identity.json"
    store = IdentityStore(path)
    store.create_platform(_platform_payload())
    store.find_or_create_user("learner-1", "https://moodle.example")

    data = json.loads(path.read_text(encoding="utf-8"))

    assert data["sequences"] == {"platforms": 1, "users": 1}
    assert data["platforms"][0]["issuer"] == "https://moodle.example"
    assert not path.with_suffix(".tmp").exists()


def test_corrupted_file_raises(tmp_path) -> None:
    path = tmp_path / "identity.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(IdentityStoreError):
        IdentityStore(path)


def test_failed_write_leaves_memory_untouched(tmp_path, monkeypatch) -> None:
    store = IdentityStore(tmp_path / "identity.json")

    def broken_write(data) -> None:
        raise IdentityStoreError("disk full")

    monkeypatch.setattr(store, "_write", broken_write)

    with pytest.raises(IdentityStoreError):
        store.find_or_create_user("learner-1", "https://moodle.example")
    assert store.list_users() == []
