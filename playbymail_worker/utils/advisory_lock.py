"""Per game instance transaction-scoped advisory locks."""

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.orm import Session

from ..logging import logger

# First key of the two-key advisory lock; separates turn locks from other users
TURN_LOCK_NAMESPACE = 7301


def lock_instance(session: Session, game_instance_id: int) -> None:
    """Block until this transaction holds the instance's turn lock.

    Released automatically on commit or rollback. Backends without advisory
    locks (SQLite) serialise writers on their own, so this is a no-op there.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(
        text("SELECT pg_advisory_xact_lock(:namespace, :instance_id)"),
        {"namespace": TURN_LOCK_NAMESPACE, "instance_id": game_instance_id},
    )
    logger.debug("instance_lock_acquired", game_instance_id=game_instance_id)
