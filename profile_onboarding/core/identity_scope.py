"""Identity-scoped session configuration.

Row-level security policies on the profile tables compare row ownership with
``current_setting('app.current_identity_id')``. Each primary-path transaction
sets that value first so the store itself rejects cross-identity writes.

Usage:
    async with session_factory() as db, db.begin():
        await apply_identity_scope(db, identity_id)
        await ProfileRepository.commit_completion(db, ...)
"""

import uuid

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

_SCOPE_SETTING = "app.current_identity_id"


async def apply_identity_scope(db: AsyncSession, identity_id: uuid.UUID) -> None:
    """Bind the identity to the current transaction.

    Only PostgreSQL enforces the policies; on other dialects (the SQLite test
    store) this is a no-op.

    Args:
        db: Async database session inside an open transaction.
        identity_id: Identity the transaction acts for.
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    await db.execute(
        text("SELECT set_config(:name, :value, true)"),
        {"name": _SCOPE_SETTING, "value": str(identity_id)},
    )
