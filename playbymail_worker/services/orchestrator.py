"""Turn orchestrator.

Drives one game instance through its turns:

    opening -> emitting -> awaiting -> resolving -> closed -> (next opening)
                              |
                          timed_out -> resolving

The phase lives on ``game_instances.turn_phase`` and every step is a
separate job. ``open_turn`` and ``resolve_turn`` hold the instance's
advisory lock for their whole transaction so they never interleave;
per-sheet steps rely on the store's compare-and-swap instead.

Every step returns a ``StepResult`` whose jobs the caller dispatches after
commit.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select

from ..config import settings
from ..db import get_session
from ..db.games import (
    Account,
    Game,
    GameInstance,
    GameInstanceState,
    GameSubscription,
    SubscriptionStatus,
    TurnPhase,
)
from ..db.turn_sheets import DeliveryAttempt, TurnSheet, TurnSheetState
from ..errors import DuplicateCode, DuplicateSheet, InvalidTemplate, StaleState
from ..jobs.queue import Job, StepResult
from ..logging import logger
from ..persistence import games as games_store
from ..persistence import turn_sheets as store
from ..persistence.rls import RLSScope, apply_session_scope, privileged_lookup, worker_scope
from ..turn_sheets import codes
from ..turn_sheets.generator import digest
from ..turn_sheets.registry import ProcessorRegistry, get_registry
from ..utils.advisory_lock import lock_instance
from ..utils.datetime_utils import ensure_utc, now_utc
from .artifacts import write_artifact
from .dispatcher import dispatch_sheet

MAX_MINT_ATTEMPTS = 5
MAX_CAS_ROUNDS = 4

_OPEN_PHASES = {
    TurnPhase.opening.value,
    TurnPhase.emitting.value,
    TurnPhase.awaiting.value,
    TurnPhase.timed_out.value,
    TurnPhase.resolving.value,
}
_TERMINAL = {state.value for state in TurnSheetState.terminal_states()}


def _scope_for(session, game_instance_id: int) -> RLSScope:
    scope = worker_scope(session, game_instance_id)
    apply_session_scope(session, scope)
    return scope


# ---------------------------------------------------------------------------
# opening
# ---------------------------------------------------------------------------


def _insert_with_fresh_code(
    session,
    scope: RLSScope,
    instance: GameInstance,
    subscription: GameSubscription,
    sheet_type: str,
    sheet_order: int,
    template_data: dict,
    deadline,
) -> TurnSheet | None:
    """Insert one draft sheet, re-minting on code collision. None if it already exists."""
    for _ in range(MAX_MINT_ATTEMPTS):
        code = codes.mint(instance.id, instance.current_turn_number, subscription.account_id, sheet_type)
        sheet = TurnSheet(
            game_id=instance.game_id,
            game_instance_id=instance.id,
            game_subscription_id=subscription.id,
            account_id=subscription.account_id,
            turn_number=instance.current_turn_number,
            sheet_type=sheet_type,
            sheet_order=sheet_order,
            code=code,
            state=TurnSheetState.draft.value,
            template_data={**template_data, "code": code},
            deadline=deadline,
        )
        try:
            return store.insert_sheet(session, scope, sheet)
        except DuplicateCode:
            logger.warning("turn_sheet_code_collision", game_instance_id=instance.id)
            continue
        except DuplicateSheet:
            logger.info(
                "turn_sheet_already_exists",
                game_instance_id=instance.id,
                account_id=subscription.account_id,
                sheet_type=sheet_type,
            )
            return None
    raise DuplicateCode("could not mint an unused code", game_instance_id=instance.id)


def open_turn(game_instance_id: int, registry: ProcessorRegistry | None = None) -> StepResult:
    """Open the instance's current turn: one draft sheet per active subscription and sheet type.

    Concurrent callers serialise on the instance lock; the loser sees the
    turn already open and exits without inserting anything.
    """
    registry = registry or get_registry()
    with get_session() as session:
        lock_instance(session, game_instance_id)
        loaded = games_store.load_instance(session, game_instance_id)
        if loaded is None:
            return StepResult("not_found")
        instance, game = loaded

        if games_store.is_halted(instance):
            logger.info("open_turn_skipped", game_instance_id=instance.id, state=instance.state)
            return StepResult("skipped", detail={"reason": instance.state})

        if instance.state == GameInstanceState.pending.value:
            active = games_store.count_active_subscriptions(session, instance.id)
            if active < instance.required_player_count:
                logger.info(
                    "open_turn_waiting_for_players",
                    game_instance_id=instance.id,
                    active=active,
                    required=instance.required_player_count,
                )
                return StepResult("waiting_for_players", detail={"active": active})
            instance.state = GameInstanceState.active.value
            instance.started_at = now_utc()
            logger.info("game_instance_started", game_instance_id=instance.id)

        if instance.turn_phase in _OPEN_PHASES:
            logger.info(
                "open_turn_already_open",
                game_instance_id=instance.id,
                turn_number=instance.current_turn_number,
                phase=instance.turn_phase,
            )
            return StepResult("already_open", detail={"turn_number": instance.current_turn_number})

        instance.turn_phase = TurnPhase.opening.value
        rules = registry.rules_for(game.game_type)
        scope = _scope_for(session, instance.id)
        hours = games_store.turn_duration_hours(game, settings.pipeline_config.default_turn_duration_hours)
        deadline = now_utc() + timedelta(hours=hours)
        turn_number = instance.current_turn_number

        created: list[TurnSheet] = []
        for subscription in games_store.active_subscriptions(session, instance.id):
            if not subscription.delivery_channels:
                logger.warning("subscription_without_channels", subscription_id=subscription.id)
                continue
            account = session.get(Account, subscription.account_id)
            planned = rules.plan_sheets(session, game, instance, subscription, account)
            for order, (sheet_type, fields) in enumerate(planned, start=1):
                registry.lookup(game.game_type, sheet_type)
                template_data = {
                    "game_name": game.name,
                    "game_type": game.game_type,
                    "account_name": account.name,
                    "turn_number": turn_number,
                    "deadline": deadline.isoformat(),
                    **fields,
                }
                sheet = _insert_with_fresh_code(
                    session, scope, instance, subscription, sheet_type, order, template_data, deadline
                )
                if sheet is not None:
                    created.append(sheet)

        instance.deadline_for_current_turn = deadline
        if created:
            instance.turn_phase = TurnPhase.emitting.value
        else:
            # Nothing to emit; the deadline sweep closes the turn
            instance.turn_phase = TurnPhase.awaiting.value
        session.flush()

        logger.info(
            "turn_opened",
            game_instance_id=instance.id,
            turn_number=turn_number,
            sheets=len(created),
            deadline=deadline.isoformat(),
        )
        return StepResult(
            "opened",
            jobs=[Job.emit(sheet.id) for sheet in created],
            detail={"turn_number": turn_number, "sheets": len(created)},
        )


# ---------------------------------------------------------------------------
# emitting
# ---------------------------------------------------------------------------


def _finish_emitting(game_instance_id: int) -> list[Job]:
    """Move emitting -> awaiting once no sheet of the turn is draft or rendered.

    Runs in its own transaction under the instance lock, after the emitted
    sheet's transition has committed, so concurrent emitters see each
    other's sheets settled.
    """
    with get_session() as session:
        lock_instance(session, game_instance_id)
        loaded = games_store.load_instance(session, game_instance_id)
        if loaded is None:
            return []
        instance, _ = loaded
        if games_store.is_halted(instance) or instance.turn_phase != TurnPhase.emitting.value:
            return []
        scope = _scope_for(session, instance.id)
        sheets = store.list_turn_sheets(session, scope, instance.id, instance.current_turn_number)
        pending = [s for s in sheets if s.state in (TurnSheetState.draft.value, TurnSheetState.rendered.value)]
        if pending:
            return []
        instance.turn_phase = TurnPhase.awaiting.value
        logger.info("turn_awaiting_scans", game_instance_id=instance.id, turn_number=instance.current_turn_number)
        return [Job.resolve(instance.id, instance.current_turn_number)]


def emit_sheet(turn_sheet_id: int, registry: ProcessorRegistry | None = None) -> StepResult:
    """Render and dispatch one sheet. Idempotent by sheet state.

    ``RenderFailed`` propagates so the job queue retries; ``InvalidTemplate``
    fails the sheet and the turn carries on without it.
    """
    registry = registry or get_registry()
    with get_session() as session:
        with privileged_lookup(session):
            sheet = session.get(TurnSheet, turn_sheet_id)
        if sheet is None:
            return StepResult("not_found")
        loaded = games_store.load_instance(session, sheet.game_instance_id)
        instance, game = loaded
        if instance.state == GameInstanceState.cancelled.value:
            return StepResult("skipped", detail={"reason": "instance_cancelled"})

        scope = _scope_for(session, instance.id)
        processor = registry.lookup(game.game_type, sheet.sheet_type)
        jobs: list[Job] = []
        status = "unchanged"

        for _ in range(MAX_CAS_ROUNDS):
            sheet = store.get_sheet(session, scope, turn_sheet_id)
            try:
                if sheet.state == TurnSheetState.draft.value:
                    try:
                        artifact = processor.generator.generate(sheet.template_data)
                    except InvalidTemplate as exc:
                        store.transition(
                            session,
                            scope,
                            sheet.id,
                            TurnSheetState.draft,
                            TurnSheetState.failed,
                            {"error_kind": exc.kind, "error_message": str(exc)[:2000]},
                        )
                        logger.error("turn_sheet_invalid_template", sheet_id=sheet.id, error=str(exc))
                        status = "failed"
                        break
                    path = write_artifact(instance.id, sheet.turn_number, sheet.code, artifact)
                    store.transition(
                        session,
                        scope,
                        sheet.id,
                        TurnSheetState.draft,
                        TurnSheetState.rendered,
                        {"rendered_digest": digest(artifact), "artifact_path": path},
                    )
                    logger.info("turn_sheet_rendered", sheet_id=sheet.id, size=len(artifact))
                    status = "rendered"
                    continue

                if sheet.state == TurnSheetState.rendered.value:
                    subscription = session.get(GameSubscription, sheet.game_subscription_id)
                    if subscription.status != SubscriptionStatus.active.value:
                        store.transition(session, scope, sheet.id, TurnSheetState.rendered, TurnSheetState.abandoned)
                        status = "abandoned"
                        break
                    jobs.extend(dispatch_sheet(session, scope, sheet, subscription))
                    status = "dispatched"
                    break
                break
            except StaleState as exc:
                logger.info("emit_stale_state", sheet_id=turn_sheet_id, current_state=exc.current_state)
                continue

        instance_id = instance.id

    jobs.extend(_finish_emitting(instance_id))
    return StepResult(status, jobs=jobs, detail={"sheet_id": turn_sheet_id})


# ---------------------------------------------------------------------------
# awaiting / resolving / closed
# ---------------------------------------------------------------------------


def resolve_turn(
    game_instance_id: int, turn_number: int, registry: ProcessorRegistry | None = None
) -> StepResult:
    """Resolve the turn once every open sheet is scanned or the deadline has passed."""
    registry = registry or get_registry()
    with get_session() as session:
        lock_instance(session, game_instance_id)
        loaded = games_store.load_instance(session, game_instance_id)
        if loaded is None:
            return StepResult("not_found")
        instance, game = loaded
        if games_store.is_halted(instance):
            return StepResult("skipped", detail={"reason": instance.state})
        if instance.current_turn_number != turn_number or instance.turn_phase not in _OPEN_PHASES:
            return StepResult("skipped", detail={"reason": "turn_not_open"})

        scope = _scope_for(session, instance.id)
        sheets = store.list_turn_sheets(session, scope, instance.id, turn_number)
        open_sheets = [s for s in sheets if s.state not in _TERMINAL]
        quorum = bool(sheets) and all(s.state == TurnSheetState.scanned.value for s in open_sheets)
        deadline = ensure_utc(instance.deadline_for_current_turn)
        deadline_passed = deadline is not None and now_utc() >= deadline

        if not quorum and not deadline_passed:
            logger.debug(
                "turn_not_ready",
                game_instance_id=instance.id,
                turn_number=turn_number,
                open_sheets=len(open_sheets),
            )
            return StepResult("waiting", detail={"open_sheets": len(open_sheets)})

        if not quorum:
            instance.turn_phase = TurnPhase.timed_out.value
            logger.info("turn_timed_out", game_instance_id=instance.id, turn_number=turn_number)
        instance.turn_phase = TurnPhase.resolving.value

        resolved = failed = 0
        for sheet in open_sheets:
            if sheet.state == TurnSheetState.scanned.value:
                processor = registry.lookup(game.game_type, sheet.sheet_type)
                try:
                    with session.begin_nested():
                        processor.resolver(session, instance, sheet)
                except Exception as exc:
                    logger.exception("turn_sheet_resolver_failed", sheet_id=sheet.id, error=str(exc))
                    store.transition(
                        session,
                        scope,
                        sheet.id,
                        TurnSheetState.scanned,
                        TurnSheetState.failed,
                        {"error_kind": getattr(exc, "kind", "resolver_failed"), "error_message": str(exc)[:2000]},
                    )
                    failed += 1
                    continue
                store.transition(session, scope, sheet.id, TurnSheetState.scanned, TurnSheetState.resolved)
                resolved += 1
            else:
                store.transition(
                    session,
                    scope,
                    sheet.id,
                    sheet.state,
                    TurnSheetState.failed,
                    {"error_kind": "deadline_elapsed", "error_message": "no scan before the turn deadline"},
                )
                failed += 1

        instance.current_turn_number = turn_number + 1
        instance.turn_phase = TurnPhase.closed.value
        instance.deadline_for_current_turn = None
        instance.last_turn_processed_at = now_utc()

        rules = registry.rules_for(game.game_type)
        jobs: list[Job] = []
        if rules.is_complete(session, game, instance):
            instance.state = GameInstanceState.completed.value
            instance.completed_at = now_utc()
            logger.info("game_instance_completed", game_instance_id=instance.id, turns=instance.current_turn_number)
        else:
            jobs.append(Job.opening(instance.id, instance.current_turn_number))
        session.flush()

        logger.info(
            "turn_closed",
            game_instance_id=instance.id,
            turn_number=turn_number,
            resolved=resolved,
            failed=failed,
            timed_out=not quorum,
        )
        return StepResult(
            "closed",
            jobs=jobs,
            detail={"turn_number": turn_number, "resolved": resolved, "failed": failed},
        )


# ---------------------------------------------------------------------------
# instance and subscription lifecycle
# ---------------------------------------------------------------------------


def withdraw_subscription(subscription_id: int) -> StepResult:
    """Withdraw an account; its open sheets this turn are abandoned and stop gating resolution."""
    with get_session() as session:
        subscription = session.get(GameSubscription, subscription_id)
        if subscription is None:
            return StepResult("not_found")
        lock_instance(session, subscription.game_instance_id)
        if subscription.status == SubscriptionStatus.withdrawn.value:
            return StepResult("skipped", detail={"reason": "already_withdrawn"})
        subscription.status = SubscriptionStatus.withdrawn.value
        subscription.withdrawn_at = now_utc()

        instance, _ = games_store.load_instance(session, subscription.game_instance_id)
        scope = _scope_for(session, instance.id)
        abandoned = 0
        for sheet in store.list_open_sheets(session, scope, instance.id, instance.current_turn_number):
            if sheet.game_subscription_id != subscription.id:
                continue
            try:
                store.transition(session, scope, sheet.id, sheet.state, TurnSheetState.abandoned)
                abandoned += 1
            except StaleState as exc:
                logger.info("withdraw_stale_state", sheet_id=sheet.id, current_state=exc.current_state)
        session.flush()
        logger.info(
            "subscription_withdrawn",
            subscription_id=subscription.id,
            game_instance_id=instance.id,
            abandoned_sheets=abandoned,
        )
        jobs = []
        if instance.turn_phase in _OPEN_PHASES and not games_store.is_halted(instance):
            jobs.append(Job.resolve(instance.id, instance.current_turn_number))
        return StepResult("withdrawn", jobs=jobs, detail={"abandoned_sheets": abandoned})


def cancel_instance(game_instance_id: int) -> StepResult:
    """Cancel an instance. Jobs already queued for it short-circuit when claimed."""
    with get_session() as session:
        lock_instance(session, game_instance_id)
        instance = session.get(GameInstance, game_instance_id)
        if instance is None:
            return StepResult("not_found")
        if instance.state in (GameInstanceState.cancelled.value, GameInstanceState.completed.value):
            return StepResult("skipped", detail={"reason": instance.state})
        instance.state = GameInstanceState.cancelled.value
        logger.info("game_instance_cancelled", game_instance_id=instance.id)
        return StepResult("cancelled")


# ---------------------------------------------------------------------------
# deadline sweep
# ---------------------------------------------------------------------------


def sweep_turns() -> StepResult:
    """Find overdue turns and stalled sheets and enqueue the jobs that move them on.

    Every job enqueued here is idempotent, so overlapping with live work is safe.
    """
    stalled_before = now_utc() - timedelta(minutes=settings.pipeline_config.stalled_sheet_minutes)
    jobs: list[Job] = []
    with get_session() as session:
        for instance in games_store.overdue_instances(session):
            jobs.append(Job.resolve(instance.id, instance.current_turn_number))

        active_instance_ids = select(GameInstance.id).where(
            GameInstance.state == GameInstanceState.active.value
        )
        with privileged_lookup(session):
            stalled = session.scalars(
                select(TurnSheet).where(
                    TurnSheet.game_instance_id.in_(active_instance_ids),
                    TurnSheet.state.in_((TurnSheetState.draft.value, TurnSheetState.rendered.value)),
                    TurnSheet.updated_at < stalled_before,
                )
            ).all()
            jobs.extend(Job.emit(sheet.id) for sheet in stalled)

            undelivered = session.execute(
                select(TurnSheet, GameSubscription)
                .join(GameSubscription, GameSubscription.id == TurnSheet.game_subscription_id)
                .where(
                    TurnSheet.game_instance_id.in_(active_instance_ids),
                    TurnSheet.state == TurnSheetState.dispatched.value,
                    TurnSheet.updated_at < stalled_before,
                    ~select(DeliveryAttempt.id)
                    .where(DeliveryAttempt.turn_sheet_id == TurnSheet.id)
                    .exists(),
                )
            ).all()
        for sheet, subscription in undelivered:
            jobs.extend(Job.deliver(sheet.id, channel, 1) for channel in subscription.delivery_channels)

    logger.info(
        "turn_sweep_completed",
        resolve_jobs=sum(1 for j in jobs if j.kind == "resolve"),
        emit_jobs=sum(1 for j in jobs if j.kind == "emit"),
        deliver_jobs=sum(1 for j in jobs if j.kind == "deliver"),
    )
    return StepResult("swept", jobs=jobs, detail={"jobs": len(jobs)})
