"""Turn sheet store.

Every call takes the caller's session and RLS scope. State changes are
compare-and-swap updates, so concurrent workers racing on the same sheet
serialise on the row: exactly one wins and the rest see ``StaleState``.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.turn_sheets import TurnSheet, TurnSheetState
from ..errors import (
    DuplicateCode,
    DuplicateSheet,
    IllegalTransition,
    SheetNotFound,
    StaleState,
)
from ..logging import logger
from ..utils.datetime_utils import now_utc
from .rls import RLSScope, privileged_lookup

_ORDER = {state.value: index for index, state in enumerate(TurnSheetState.ordered_states())}
_TERMINAL = {state.value for state in TurnSheetState.terminal_states()}
_EXIT_STATES = {TurnSheetState.failed.value, TurnSheetState.abandoned.value}
_SCANNED_RANK = _ORDER[TurnSheetState.scanned.value]

BINDABLE_STATES = (TurnSheetState.dispatched.value, TurnSheetState.delivered.value)
OPEN_EXCLUDED_STATES = tuple(sorted(_TERMINAL))

# Columns the pipeline may patch alongside a transition
_PATCHABLE = {
    "rendered_digest",
    "artifact_path",
    "scanned_data",
    "scanned_at",
    "error_kind",
    "error_message",
}


def _value(state: TurnSheetState | str) -> str:
    return state.value if isinstance(state, TurnSheetState) else state


def is_legal_transition(from_state: TurnSheetState | str, to_state: TurnSheetState | str) -> bool:
    """Forward-only within the ordered states; failed/abandoned from any non-terminal state."""
    current, target = _value(from_state), _value(to_state)
    if current in _TERMINAL:
        return False
    if target in _EXIT_STATES:
        return True
    if current not in _ORDER or target not in _ORDER:
        return False
    return _ORDER[target] > _ORDER[current]


def get_sheet(session: Session, scope: RLSScope, sheet_id: int) -> TurnSheet:
    sheet = session.scalar(
        select(TurnSheet).where(TurnSheet.id == sheet_id, scope.filter(TurnSheet))
    )
    if sheet is None:
        raise SheetNotFound(f"turn sheet {sheet_id} not found", sheet_id=sheet_id)
    return sheet


def find_by_code(session: Session, scope: RLSScope, code: str) -> TurnSheet | None:
    return session.scalar(select(TurnSheet).where(TurnSheet.code == code, scope.filter(TurnSheet)))


def insert_sheet(session: Session, scope: RLSScope, sheet: TurnSheet) -> TurnSheet:
    """Insert a new draft sheet.

    Raises:
        RLSViolation: the sheet would be invisible to the caller.
        DuplicateSheet: (instance, turn, account, sheet_type) already exists.
        DuplicateCode: the code is already in use.
    """
    scope.check(sheet.game_id, sheet.game_subscription_id, sheet.account_id)

    existing = session.scalar(
        select(TurnSheet.id).where(
            TurnSheet.game_instance_id == sheet.game_instance_id,
            TurnSheet.turn_number == sheet.turn_number,
            TurnSheet.account_id == sheet.account_id,
            TurnSheet.sheet_type == sheet.sheet_type,
        )
    )
    if existing is not None:
        raise DuplicateSheet("sheet already exists", sheet_id=existing)
    # Codes are unique across tenants
    with privileged_lookup(session):
        taken = session.scalar(select(TurnSheet.id).where(TurnSheet.code == sheet.code))
    if taken is not None:
        raise DuplicateCode("code already issued", code=sheet.code)

    now = now_utc()
    sheet.state = sheet.state or TurnSheetState.draft.value
    sheet.created_at = now
    sheet.updated_at = now
    try:
        with session.begin_nested():
            session.add(sheet)
            session.flush()
    except IntegrityError as exc:
        message = str(exc.orig).lower()
        if "code" in message:
            raise DuplicateCode("code already issued", code=sheet.code) from exc
        raise DuplicateSheet("sheet already exists") from exc
    logger.debug(
        "turn_sheet_inserted",
        sheet_id=sheet.id,
        game_instance_id=sheet.game_instance_id,
        turn_number=sheet.turn_number,
        sheet_type=sheet.sheet_type,
    )
    return sheet


def transition(
    session: Session,
    scope: RLSScope,
    sheet_id: int,
    from_state: TurnSheetState | str,
    to_state: TurnSheetState | str,
    patch: dict[str, Any] | None = None,
) -> TurnSheet:
    """Compare-and-swap the sheet's state.

    Raises:
        IllegalTransition: ``to_state`` is not reachable from ``from_state``.
        StaleState: the sheet is no longer in ``from_state``.
        SheetNotFound: no such sheet inside the caller's scope.
    """
    current, target = _value(from_state), _value(to_state)
    if not is_legal_transition(current, target):
        raise IllegalTransition(f"{current} -> {target}", sheet_id=sheet_id)
    patch = dict(patch or {})
    unknown = set(patch) - _PATCHABLE
    if unknown:
        raise ValueError(f"cannot patch {sorted(unknown)}")
    if target in _ORDER and _ORDER[target] >= _SCANNED_RANK and _ORDER[current] < _SCANNED_RANK:
        if not patch.get("scanned_data"):
            raise ValueError("scanned_data is required when entering scanned")

    result = session.execute(
        update(TurnSheet)
        .where(
            TurnSheet.id == sheet_id,
            TurnSheet.state == current,
            scope.filter(TurnSheet),
        )
        .values(state=target, updated_at=now_utc(), **patch)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        sheet = session.scalar(
            select(TurnSheet)
            .where(TurnSheet.id == sheet_id, scope.filter(TurnSheet))
            .execution_options(populate_existing=True)
        )
        if sheet is None:
            raise SheetNotFound(f"turn sheet {sheet_id} not found", sheet_id=sheet_id)
        raise StaleState(
            f"sheet {sheet_id} is {sheet.state}, expected {current}",
            current_state=sheet.state,
            sheet_id=sheet_id,
        )

    sheet = session.scalar(
        select(TurnSheet)
        .where(TurnSheet.id == sheet_id)
        .execution_options(populate_existing=True)
    )
    logger.info("turn_sheet_transitioned", sheet_id=sheet_id, from_state=current, to_state=target)
    return sheet


def bind_scan(
    session: Session,
    scope: RLSScope,
    code: str,
    scanned_data: dict[str, Any],
) -> TurnSheet:
    """Attach scanned choices to the sheet printed with ``code``.

    The sheet must be dispatched or delivered; it moves to scanned.
    """
    sheet = find_by_code(session, scope, code)
    if sheet is None:
        raise SheetNotFound(f"no sheet for code {code}", code=code)
    if sheet.state not in BINDABLE_STATES:
        raise StaleState(
            f"sheet {sheet.id} is {sheet.state}, cannot bind a scan",
            current_state=sheet.state,
            sheet_id=sheet.id,
        )
    return transition(
        session,
        scope,
        sheet.id,
        sheet.state,
        TurnSheetState.scanned,
        {"scanned_data": scanned_data, "scanned_at": now_utc()},
    )


def list_open_sheets(
    session: Session, scope: RLSScope, game_instance_id: int, turn_number: int
) -> list[TurnSheet]:
    """Sheets of the turn not yet in a terminal state."""
    return list(
        session.scalars(
            select(TurnSheet)
            .where(
                TurnSheet.game_instance_id == game_instance_id,
                TurnSheet.turn_number == turn_number,
                TurnSheet.state.not_in(OPEN_EXCLUDED_STATES),
                scope.filter(TurnSheet),
            )
            .order_by(TurnSheet.account_id, TurnSheet.sheet_order, TurnSheet.id)
        )
    )


def list_turn_sheets(
    session: Session, scope: RLSScope, game_instance_id: int, turn_number: int
) -> list[TurnSheet]:
    return list(
        session.scalars(
            select(TurnSheet)
            .where(
                TurnSheet.game_instance_id == game_instance_id,
                TurnSheet.turn_number == turn_number,
                scope.filter(TurnSheet),
            )
            .order_by(TurnSheet.account_id, TurnSheet.sheet_order, TurnSheet.id)
        )
    )
