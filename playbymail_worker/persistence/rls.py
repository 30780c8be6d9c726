"""Row-level-security scope threaded through every store call.

Workers never act on behalf of a user session: the scope is derived from the
job's game instance (its game and subscriptions). On PostgreSQL the scope is
also published as transaction-local settings read by the RLS policies, and
the few lookups that locate a sheet before its scope is known run inside
``privileged_lookup``.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator

from sqlalchemy import ColumnElement, and_, select, text, true
from sqlalchemy.orm import Session

from ..db.games import GameInstance, GameSubscription
from ..errors import RLSViolation


@dataclass(frozen=True)
class RLSScope:
    account_id: int | None
    game_ids: frozenset[int]
    game_subscription_ids: frozenset[int]

    @classmethod
    def of(
        cls,
        game_ids: Iterable[int],
        game_subscription_ids: Iterable[int],
        account_id: int | None = None,
    ) -> RLSScope:
        return cls(account_id, frozenset(game_ids), frozenset(game_subscription_ids))

    def allows(self, game_id: int, game_subscription_id: int, account_id: int) -> bool:
        if game_id not in self.game_ids:
            return False
        if game_subscription_id not in self.game_subscription_ids:
            return False
        return self.account_id is None or self.account_id == account_id

    def check(self, game_id: int, game_subscription_id: int, account_id: int) -> None:
        if not self.allows(game_id, game_subscription_id, account_id):
            raise RLSViolation(
                "row outside caller scope",
                game_id=game_id,
                game_subscription_id=game_subscription_id,
                account_id=account_id,
            )

    def filter(self, model) -> ColumnElement[bool]:
        """WHERE clause restricting ``model`` rows to this scope."""
        clauses = [
            model.game_id.in_(sorted(self.game_ids)),
            model.game_subscription_id.in_(sorted(self.game_subscription_ids)),
        ]
        if self.account_id is not None:
            clauses.append(model.account_id == self.account_id)
        return and_(true(), *clauses)


def worker_scope(session: Session, game_instance_id: int) -> RLSScope:
    """Scope covering one instance's game and every subscription in it.

    Privileged lookup: reads instance and subscriptions without a scope.
    """
    instance = session.get(GameInstance, game_instance_id)
    if instance is None:
        return RLSScope.of([], [])
    subscription_ids = session.scalars(
        select(GameSubscription.id).where(GameSubscription.game_instance_id == game_instance_id)
    ).all()
    return RLSScope.of([instance.game_id], subscription_ids)


def _publish(session: Session, values: dict[str, str]) -> None:
    for name, value in values.items():
        session.execute(text("SELECT set_config(:name, :value, true)"), {"name": name, "value": value})


def apply_session_scope(session: Session, scope: RLSScope) -> None:
    """Publish the scope as transaction-local settings for PostgreSQL policies."""
    if session.get_bind().dialect.name != "postgresql":
        return
    _publish(
        session,
        {
            "app.account_id": "" if scope.account_id is None else str(scope.account_id),
            "app.game_ids": ",".join(str(i) for i in sorted(scope.game_ids)),
            "app.game_subscription_ids": ",".join(str(i) for i in sorted(scope.game_subscription_ids)),
        },
    )


@contextmanager
def privileged_lookup(session: Session) -> Iterator[Session]:
    """Let the block read turn sheets across every scope.

    Reserved for lookups that span instances: locating a sheet by id or code
    before its scope is known, the code uniqueness check and the deadline
    sweep. The PostgreSQL policy admits any row while
    ``app.bypass_rls`` is on. The setting is transaction-local, so a rollback
    inside the block clears it as well.
    """
    postgres = session.get_bind().dialect.name == "postgresql"
    if postgres:
        _publish(session, {"app.bypass_rls": "on"})
    yield session
    if postgres:
        _publish(session, {"app.bypass_rls": "off"})
