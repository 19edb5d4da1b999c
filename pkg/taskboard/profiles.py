"""
Profile synchronization and profile/preference updates.

Every identity gets exactly one ``profiles`` row. ``ProfileSynchronizer``
creates it lazily on sign-in with the default preferences; it never raises,
so a failing sync cannot block the sign-in that triggered it.
"""
import logging
import mimetypes
from pathlib import PurePosixPath
from typing import Any, Dict, Optional

from .gateway import DataGateway, GatewayError
from .identity import Identity
from .schema import (
    PREFERENCE_FIELDS,
    PROFILE_DEFAULTS,
    PROFILE_FIELDS,
    Profile,
    ThemePreference,
    ValidationError,
)
from .storage import FileStorage

logger = logging.getLogger(__name__)

AVATAR_BUCKET = "avatars"
AVATAR_SIZE_LIMIT = 2 * 1024 * 1024
AVATAR_TYPES = {".png", ".jpg", ".jpeg", ".gif", ".webp"}


class ProfileSynchronizer:
    """Ensures one profile row per identity."""

    def __init__(self, gateway: DataGateway):
        self.gateway = gateway

    async def ensure_profile(self, identity: Identity) -> Optional[Profile]:
        """Create the profile for ``identity`` if it does not exist yet.

        Returns the existing or created profile, or None when the attempt
        was aborted (the error is logged, never raised).
        """
        try:
            row = await self.gateway.select_one("profiles", eq={"id": identity.id})
            return Profile.from_dict(row)
        except GatewayError as e:
            if not e.is_not_found:
                logger.error(f"Error checking profile for {identity.id}: {e.code} {e.message}")
                return None

        metadata = identity.metadata or {}
        row = {
            "id": identity.id,
            "first_name": metadata.get("first_name") or "",
            "last_name": metadata.get("last_name") or "",
        }
        row.update(PROFILE_DEFAULTS)
        try:
            created = await self.gateway.insert("profiles", row)
        except GatewayError as e:
            # A concurrent sync may have inserted first; the primary key keeps one row
            logger.error(f"Error creating profile for {identity.id}: {e.code} {e.message}")
            return None

        logger.info(f"Created profile for {identity.id}")
        return Profile.from_dict(created)


def validate_profile_changes(changes: Dict[str, Any], allowed=PROFILE_FIELDS) -> Dict[str, Any]:
    """Check a partial profile update; returns the cleaned dict."""
    unknown = set(changes) - set(allowed)
    if unknown:
        raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")

    cleaned = {}
    for name, value in changes.items():
        if name == "theme_preference":
            if value not in {t.value for t in ThemePreference}:
                raise ValidationError(f"Invalid theme_preference '{value}'. Allowed: light, dark")
        elif name in PREFERENCE_FIELDS and isinstance(PROFILE_DEFAULTS[name], bool):
            if not isinstance(value, bool):
                raise ValidationError(f"{name} must be true or false")
        elif name == "language_preference":
            if not isinstance(value, str) or not value.strip():
                raise ValidationError("language_preference must be a non-empty string")
            value = value.strip()
        elif value is not None and not isinstance(value, str):
            raise ValidationError(f"{name} must be a string")
        cleaned[name] = value
    return cleaned


async def load_profile(gateway: DataGateway, identity_id: str) -> Profile:
    row = await gateway.select_one("profiles", eq={"id": identity_id})
    return Profile.from_dict(row)


async def update_profile(gateway: DataGateway, identity_id: str, changes: Dict[str, Any]) -> Profile:
    """Apply a validated partial update to the identity's profile."""
    cleaned = validate_profile_changes(changes)
    row = await gateway.update("profiles", identity_id, cleaned)
    return Profile.from_dict(row)


def ensure_avatar_bucket(storage: FileStorage, size_limit: int = AVATAR_SIZE_LIMIT) -> None:
    if not storage.bucket_exists(AVATAR_BUCKET):
        storage.create_bucket(AVATAR_BUCKET, public=True, size_limit=size_limit)


async def upload_avatar(
    gateway: DataGateway,
    storage: FileStorage,
    identity_id: str,
    filename: str,
    data: bytes,
    size_limit: int = AVATAR_SIZE_LIMIT,
) -> Profile:
    """Store an avatar image and point the profile at its public URL."""
    suffix = PurePosixPath(filename or "").suffix.lower()
    if suffix not in AVATAR_TYPES:
        guessed = mimetypes.guess_type(filename or "")[0] or "unknown"
        raise ValidationError(f"Unsupported avatar type: {guessed}")
    if not data:
        raise ValidationError("Avatar file is empty")

    ensure_avatar_bucket(storage, size_limit)
    path = storage.upload(AVATAR_BUCKET, f"{identity_id}/avatar{suffix}", data)
    url = storage.public_url(AVATAR_BUCKET, path)
    return await update_profile(gateway, identity_id, {"avatar_url": url})
