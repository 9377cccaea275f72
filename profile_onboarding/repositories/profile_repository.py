"""Repository for base profiles and role extensions.

Provides database access for base_profiles, role_extension_slots, the four
role variant tables, and retired_role_extensions.

Invariants enforced here (and backed by table constraints):
- At most one active role extension per identity across all variant tables.
- The completion flag is only set by commit_completion().
- Retiring an extension archives it first and clears the completion flag.
"""

import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.ext.asyncio import AsyncSession

from profile_onboarding.core.enums import ProfileRole
from profile_onboarding.core.errors import (
    RoleConflictError,
    RoleMismatchError,
    StorageUnavailableError,
    StoreAuthorizationError,
    StoreConstraintError,
)
from profile_onboarding.models.profile import BaseProfile
from profile_onboarding.models.role_extensions import (
    ROLE_EXTENSION_MODELS,
    RetiredRoleExtension,
    RoleExtension,
    RoleExtensionSlot,
    extension_field_names,
)

# Fields that may be written via write_base_draft().
# Security: identity_id, email, role and the completion columns are managed
# by dedicated code paths and must never be added here.
_BASE_WRITABLE_FIELDS: frozenset[str] = frozenset(
    {
        "display_name",
        "full_name",
        "phone",
        "country",
        "city",
        "bio",
        "website_url",
        "linkedin_url",
        "avatar_url",
    }
)

# SQLSTATE for insufficient_privilege; raised by row-level security denials.
_INSUFFICIENT_PRIVILEGE = "42501"
_AUTHORIZATION_MARKERS = ("row-level security policy", "permission denied for")


# =============================================================================
# Error translation
# =============================================================================


def translate_db_error(exc: DBAPIError) -> Exception:
    """Map a driver exception to a typed store error.

    Args:
        exc: SQLAlchemy DBAPIError wrapping the driver exception.

    Returns:
        StoreAuthorizationError, StoreConstraintError or
        StorageUnavailableError. Unclassified errors are returned unchanged.
    """
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    text = str(orig).lower()
    if sqlstate == _INSUFFICIENT_PRIVILEGE or any(
        marker in text for marker in _AUTHORIZATION_MARKERS
    ):
        return StoreAuthorizationError()
    if isinstance(exc, IntegrityError | DataError):
        return StoreConstraintError()
    if isinstance(exc, OperationalError | InterfaceError) or exc.connection_invalidated:
        return StorageUnavailableError()
    return exc


@contextmanager
def store_errors() -> Iterator[None]:
    """Translate driver exceptions raised inside the block.

    Usage:
        with store_errors():
            await db.flush()
    """
    try:
        yield
    except DBAPIError as exc:
        translated = translate_db_error(exc)
        if translated is exc:
            raise
        raise translated from exc


# =============================================================================
# Value helpers
# =============================================================================


def base_values(base: BaseProfile) -> dict[str, Any]:
    """Writable attribute values of a base profile."""
    return {name: getattr(base, name) for name in sorted(_BASE_WRITABLE_FIELDS)}


def extension_values(extension: RoleExtension) -> dict[str, Any]:
    """Attribute values of a role extension, excluding keys and timestamps."""
    role = ProfileRole(extension.role)
    return {name: getattr(extension, name) for name in extension_field_names(role)}


def _check_fields(values: Mapping[str, Any], allowed: frozenset[str] | set[str]) -> None:
    unknown = set(values) - set(allowed)
    if unknown:
        msg = f"Unknown fields: {', '.join(sorted(unknown))}"
        raise ValueError(msg)


class ProfileRepository:
    """Stateless repository for profile table operations.

    All methods are static with no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    # =========================================================================
    # Reads
    # =========================================================================

    @staticmethod
    async def get_base(db: AsyncSession, identity_id: uuid.UUID) -> BaseProfile | None:
        """Fetch the base profile for an identity.

        Args:
            db: Async database session.
            identity_id: Identity UUID.

        Returns:
            BaseProfile if found, None otherwise.
        """
        with store_errors():
            return await db.get(BaseProfile, identity_id)

    @staticmethod
    async def get_active_role(
        db: AsyncSession, identity_id: uuid.UUID
    ) -> ProfileRole | None:
        """Role of the active extension, or None when no extension exists."""
        with store_errors():
            slot = await db.get(RoleExtensionSlot, identity_id)
        return ProfileRole(slot.role) if slot is not None else None

    @staticmethod
    async def get_extension(
        db: AsyncSession, identity_id: uuid.UUID, role: ProfileRole
    ) -> RoleExtension | None:
        """Fetch the identity's extension row for a specific role.

        Args:
            db: Async database session.
            identity_id: Identity UUID.
            role: Which variant table to read.

        Returns:
            The extension row if present, None otherwise.
        """
        with store_errors():
            return await db.get(ROLE_EXTENSION_MODELS[role], identity_id)

    # =========================================================================
    # Drafts
    # =========================================================================

    @staticmethod
    async def write_base_draft(
        db: AsyncSession,
        identity_id: uuid.UUID,
        values: Mapping[str, Any],
        *,
        email: str | None = None,
        role: ProfileRole | None = None,
    ) -> BaseProfile:
        """Upsert base profile values without touching the completion flag.

        Args:
            db: Async database session.
            identity_id: Identity UUID (primary key).
            values: Attribute values; keys must be in _BASE_WRITABLE_FIELDS.
            email: Identity email, stored on first write only.
            role: Role to record on the base profile, if given.

        Returns:
            The created or updated BaseProfile.

        Raises:
            ValueError: If an unknown field name is passed.
        """
        _check_fields(values, _BASE_WRITABLE_FIELDS)

        with store_errors():
            base = await db.get(BaseProfile, identity_id)
            if base is None:
                base = BaseProfile(identity_id=identity_id, is_profile_complete=False)
                db.add(base)
            if email and not base.email:
                base.email = email.lower()
            if role is not None:
                base.role = role.value
            for name, value in values.items():
                setattr(base, name, value)
            await db.flush()
        return base

    @staticmethod
    async def write_extension_draft(
        db: AsyncSession,
        identity_id: uuid.UUID,
        role: ProfileRole,
        values: Mapping[str, Any],
        *,
        replace: bool = False,
    ) -> RoleExtension:
        """Upsert the identity's extension for ``role``.

        The base profile must already exist.

        Args:
            db: Async database session.
            identity_id: Identity UUID.
            role: Role whose variant table receives the values.
            values: Extension attribute values.
            replace: Retire an active extension of a different role first.

        Returns:
            The created or updated extension row.

        Raises:
            RoleConflictError: If a different-role extension is active and
                replace is False.
            ValueError: If an unknown field name is passed.
        """
        _check_fields(values, set(extension_field_names(role)))

        active = await ProfileRepository.get_active_role(db, identity_id)
        if active is not None and active is not role:
            if not replace:
                raise RoleConflictError(active.value, role.value)
            await ProfileRepository.retire_extension(
                db, identity_id, reason="role_change"
            )
            active = None

        model = ROLE_EXTENSION_MODELS[role]
        with store_errors():
            base = await db.get(BaseProfile, identity_id)
            if base is not None and base.role != role.value:
                base.role = role.value
            if active is None:
                db.add(RoleExtensionSlot(identity_id=identity_id, role=role.value))
                await db.flush()

            extension = await db.get(model, identity_id)
            if extension is None:
                extension = model(identity_id=identity_id, role=role.value, **values)
                db.add(extension)
            else:
                for name, value in values.items():
                    setattr(extension, name, value)
            await db.flush()
        return extension

    @staticmethod
    async def retire_extension(
        db: AsyncSession,
        identity_id: uuid.UUID,
        *,
        reason: str,
    ) -> RetiredRoleExtension | None:
        """Archive and remove the active extension.

        A completed profile loses its completion flag: the new role has to
        be confirmed again.

        Args:
            db: Async database session.
            identity_id: Identity UUID.
            reason: Short machine-readable reason stored with the archive.

        Returns:
            The archive row, or None when no extension was active.
        """
        with store_errors():
            slot = await db.get(RoleExtensionSlot, identity_id)
            if slot is None:
                return None

            role = ProfileRole(slot.role)
            extension = await db.get(ROLE_EXTENSION_MODELS[role], identity_id)
            archive = RetiredRoleExtension(
                identity_id=identity_id,
                role=role.value,
                payload=extension_values(extension) if extension is not None else {},
                reason=reason,
            )
            db.add(archive)
            await db.flush()

            # Child before slot: the variant row references the slot.
            if extension is not None:
                await db.delete(extension)
                await db.flush()
            await db.delete(slot)

            base = await db.get(BaseProfile, identity_id)
            if base is not None and base.is_profile_complete:
                base.is_profile_complete = False
                base.completed_at = None
            await db.flush()
        return archive

    # =========================================================================
    # Completion
    # =========================================================================

    @staticmethod
    async def commit_completion(
        db: AsyncSession,
        identity_id: uuid.UUID,
        *,
        role: ProfileRole,
        base: Mapping[str, Any],
        extension: Mapping[str, Any],
        email: str | None = None,
    ) -> BaseProfile:
        """Write both profile halves and set the completion flag.

        The base row is locked for the rest of the caller's transaction so
        concurrent completions for the same identity serialise.

        Args:
            db: Async database session (inside a transaction).
            identity_id: Identity UUID.
            role: Role of the extension being committed.
            base: Validated base profile values.
            extension: Validated extension values for ``role``.
            email: Identity email, stored if the base row is new.

        Returns:
            The completed BaseProfile.

        Raises:
            RoleMismatchError: If the stored base role differs from ``role``.
            RoleConflictError: If a different-role extension is active.
        """
        with store_errors():
            result = await db.execute(
                select(BaseProfile)
                .where(BaseProfile.identity_id == identity_id)
                .with_for_update()
            )
        stored = result.scalar_one_or_none()
        if stored is not None and stored.role not in (None, role.value):
            raise RoleMismatchError(stored.role, role.value)

        profile = await ProfileRepository.write_base_draft(
            db, identity_id, base, email=email, role=role
        )
        await ProfileRepository.write_extension_draft(db, identity_id, role, extension)

        with store_errors():
            if not profile.is_profile_complete:
                profile.is_profile_complete = True
                profile.completed_at = datetime.now(UTC)
            await db.flush()
        return profile

    @staticmethod
    async def commit_completion_privileged(
        db: AsyncSession,
        *,
        actor_id: uuid.UUID,
        identity_id: uuid.UUID,
        role: ProfileRole,
        base: Mapping[str, Any],
        extension: Mapping[str, Any],
        email: str | None = None,
    ) -> BaseProfile:
        """Secondary completion path for a session that bypasses row policies.

        Ownership is re-asserted here because the store no longer does it.

        Args:
            db: Privileged async database session (inside a transaction).
            actor_id: Identity performing the request.
            identity_id: Identity whose profile is being completed.
            role: Role of the extension being committed.
            base: Validated base profile values.
            extension: Validated extension values.
            email: Identity email, stored if the base row is new.

        Returns:
            The completed BaseProfile.

        Raises:
            StoreAuthorizationError: If actor_id is not identity_id.
        """
        if actor_id != identity_id:
            raise StoreAuthorizationError("Actor does not own this profile")
        return await ProfileRepository.commit_completion(
            db,
            identity_id,
            role=role,
            base=base,
            extension=extension,
            email=email,
        )
