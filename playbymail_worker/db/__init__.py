"""
Database models and session management for the worker.

Provides synchronous session management for Celery tasks. The engine and
session factory are created lazily so tests can import modules (and bind
their own engine) without connecting to the configured database.

Usage:
    from playbymail_worker.db import db_models, get_session
"""

from __future__ import annotations

from contextlib import contextmanager
from types import SimpleNamespace
from typing import Iterator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..logging import logger
from .adventure import (
    AdventureCharacterInstance,
    AdventureItemInstance,
    AdventureLocation,
    AdventureLocationLink,
)
from .base import Base
from .games import (
    Account,
    DeliveryChannel,
    Game,
    GameInstance,
    GameInstanceState,
    GameSubscription,
    GameType,
    SubscriptionStatus,
    TurnPhase,
)
from .jobs import PipelineJobRun
from .turn_sheets import (
    DeliveryAttempt,
    DeliveryAttemptState,
    ScanImage,
    ScanImageStatus,
    SheetType,
    TurnSheet,
    TurnSheetState,
)

# Unified namespace exposing all ORM models
db_models = SimpleNamespace(
    # Enums
    GameType=GameType,
    GameInstanceState=GameInstanceState,
    TurnPhase=TurnPhase,
    SubscriptionStatus=SubscriptionStatus,
    DeliveryChannel=DeliveryChannel,
    TurnSheetState=TurnSheetState,
    SheetType=SheetType,
    DeliveryAttemptState=DeliveryAttemptState,
    ScanImageStatus=ScanImageStatus,
    # Game models
    Account=Account,
    Game=Game,
    GameInstance=GameInstance,
    GameSubscription=GameSubscription,
    # Pipeline models
    TurnSheet=TurnSheet,
    DeliveryAttempt=DeliveryAttempt,
    ScanImage=ScanImage,
    PipelineJobRun=PipelineJobRun,
    # Adventure game models
    AdventureLocation=AdventureLocation,
    AdventureLocationLink=AdventureLocationLink,
    AdventureCharacterInstance=AdventureCharacterInstance,
    AdventureItemInstance=AdventureItemInstance,
)

_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def _get_engine() -> Engine:
    """Get or create the database engine (lazy initialization)."""
    global _engine
    if _engine is None:
        _engine = create_engine(
            settings.database_url,
            echo=settings.sql_echo,
            pool_pre_ping=True,
        )
    return _engine


def _get_session_factory() -> sessionmaker[Session]:
    """Get or create the session factory (lazy initialization)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            bind=_get_engine(),
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            class_=Session,
        )
    return _SessionLocal


@contextmanager
def get_session() -> Iterator[Session]:
    """
    Provide a transactional database session context manager.

    Commits on clean exit, rolls back and re-raises on any exception.

    Usage:
        with get_session() as session:
            session.add(object)
    """
    session = _get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.warning("db_session_rollback", error=str(exc), error_type=type(exc).__name__)
        raise
    finally:
        session.close()


__all__ = ["Base", "get_session", "db_models"]
