"""
Tests for profile synchronization, profile updates and avatar upload.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from pkg.taskboard.gateway import INTERNAL, NOT_FOUND, UNIQUE_VIOLATION, GatewayError
from pkg.taskboard.identity import Identity
from pkg.taskboard.profiles import (
    AVATAR_BUCKET,
    ProfileSynchronizer,
    load_profile,
    update_profile,
    upload_avatar,
    validate_profile_changes,
)
from pkg.taskboard.schema import ThemePreference, ValidationError
from pkg.taskboard.storage import FileStorage, StorageError


@pytest.fixture
def identity():
    return Identity(id="user-1", email="ada@example.com", metadata={"first_name": "Ada", "last_name": "Lovelace"})


@pytest.fixture
def storage(tmp_path):
    return FileStorage(str(tmp_path / "storage"), "http://files.test")


class TestProfileSynchronizer:

    def test_creates_profile_with_defaults(self, gateway, identity):
        profile = asyncio.run(ProfileSynchronizer(gateway).ensure_profile(identity))
        assert profile.first_name == "Ada"
        assert profile.last_name == "Lovelace"
        assert profile.theme_preference == ThemePreference.LIGHT
        assert profile.email_notifications is True
        assert profile.usage_analytics is False

    def test_idempotent(self, gateway, identity):
        sync = ProfileSynchronizer(gateway)
        first = asyncio.run(sync.ensure_profile(identity))
        asyncio.run(update_profile(gateway, identity.id, {"first_name": "Augusta"}))
        second = asyncio.run(sync.ensure_profile(identity))
        assert second.id == first.id
        assert second.first_name == "Augusta"
        assert len(asyncio.run(gateway.select("profiles"))) == 1

    def test_missing_metadata(self, gateway):
        profile = asyncio.run(ProfileSynchronizer(gateway).ensure_profile(Identity(id="u2", email="x@y.z")))
        assert profile.first_name == ""
        assert profile.last_name == ""

    def test_lookup_error_aborts_without_insert(self):
        gateway = AsyncMock()
        gateway.select_one.side_effect = GatewayError(INTERNAL, "database is locked")
        result = asyncio.run(ProfileSynchronizer(gateway).ensure_profile(Identity(id="u1", email="a@b.c")))
        assert result is None
        gateway.insert.assert_not_awaited()

    def test_insert_error_is_swallowed(self):
        gateway = AsyncMock()
        gateway.select_one.side_effect = GatewayError(NOT_FOUND, "no rows")
        gateway.insert.side_effect = GatewayError(UNIQUE_VIOLATION, "duplicate key")
        result = asyncio.run(ProfileSynchronizer(gateway).ensure_profile(Identity(id="u1", email="a@b.c")))
        assert result is None


class TestValidateProfileChanges:

    def test_unknown_field(self):
        with pytest.raises(ValidationError, match="Unknown profile fields: role"):
            validate_profile_changes({"role": "admin"})

    def test_bad_theme(self):
        with pytest.raises(ValidationError, match="theme_preference"):
            validate_profile_changes({"theme_preference": "sepia"})

    def test_flag_must_be_bool(self):
        with pytest.raises(ValidationError, match="compact_mode must be true or false"):
            validate_profile_changes({"compact_mode": "yes"})

    def test_language_trimmed(self):
        assert validate_profile_changes({"language_preference": " Deutsch "}) == {"language_preference": "Deutsch"}

    def test_names_must_be_strings(self):
        with pytest.raises(ValidationError, match="first_name must be a string"):
            validate_profile_changes({"first_name": 42})


def test_update_profile_is_partial(gateway, identity):
    asyncio.run(ProfileSynchronizer(gateway).ensure_profile(identity))
    profile = asyncio.run(update_profile(gateway, identity.id, {"theme_preference": "dark", "mentions": False}))
    assert profile.theme_preference == ThemePreference.DARK
    assert profile.mentions is False
    assert profile.first_name == "Ada"
    assert profile.auto_save is True


def test_load_profile_missing(gateway):
    with pytest.raises(GatewayError) as exc:
        asyncio.run(load_profile(gateway, "nobody"))
    assert exc.value.is_not_found


class TestAvatarUpload:

    def test_upload_sets_avatar_url(self, gateway, storage, identity):
        asyncio.run(ProfileSynchronizer(gateway).ensure_profile(identity))
        profile = asyncio.run(upload_avatar(gateway, storage, identity.id, "Me.PNG", b"\x89PNG data"))
        assert profile.avatar_url == f"http://files.test/storage/{AVATAR_BUCKET}/user-1/avatar.png"
        assert storage.open_public(AVATAR_BUCKET, "user-1/avatar.png").read_bytes() == b"\x89PNG data"

    def test_reupload_overwrites(self, gateway, storage, identity):
        asyncio.run(ProfileSynchronizer(gateway).ensure_profile(identity))
        asyncio.run(upload_avatar(gateway, storage, identity.id, "a.png", b"one"))
        asyncio.run(upload_avatar(gateway, storage, identity.id, "b.png", b"two"))
        assert storage.open_public(AVATAR_BUCKET, "user-1/avatar.png").read_bytes() == b"two"

    def test_too_large(self, gateway, storage, identity):
        asyncio.run(ProfileSynchronizer(gateway).ensure_profile(identity))
        with pytest.raises(StorageError) as exc:
            asyncio.run(upload_avatar(gateway, storage, identity.id, "a.png", b"x" * 11, size_limit=10))
        assert exc.value.status == 413

    def test_unsupported_type(self, gateway, storage, identity):
        with pytest.raises(ValidationError, match="Unsupported avatar type"):
            asyncio.run(upload_avatar(gateway, storage, identity.id, "notes.txt", b"hello"))


class TestFileStorage:

    def test_rejects_traversal(self, storage):
        storage.create_bucket("docs", public=True)
        with pytest.raises(StorageError, match="Invalid object path"):
            storage.upload("docs", "../escape.txt", b"x")

    def test_private_bucket_not_served(self, storage):
        storage.create_bucket("private")
        storage.upload("private", "a.txt", b"x")
        with pytest.raises(StorageError) as exc:
            storage.open_public("private", "a.txt")
        assert exc.value.status == 403

    def test_duplicate_bucket(self, storage):
        storage.create_bucket("docs")
        with pytest.raises(StorageError) as exc:
            storage.create_bucket("docs")
        assert exc.value.status == 409

    def test_missing_bucket(self, storage):
        with pytest.raises(StorageError) as exc:
            storage.upload("nope", "a.txt", b"x")
        assert exc.value.status == 404
