"""Tests for the turn orchestrator steps."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

from playbymail_worker.db import db_models
from playbymail_worker.errors import DuplicateCode
from playbymail_worker.jobs.queue import Job
from playbymail_worker.services import dispatcher, intake, orchestrator
from playbymail_worker.turn_sheets import codes
from playbymail_worker.utils.datetime_utils import ensure_utc, now_utc

import pytest

from conftest import add_player, expire_deadline, scan_text


def _instance(session_factory, instance_id):
    with session_factory() as session:
        return session.get(db_models.GameInstance, instance_id)


def _sheets(session_factory, instance_id, turn_number=0):
    with session_factory() as session:
        return (
            session.query(db_models.TurnSheet)
            .filter_by(game_instance_id=instance_id, turn_number=turn_number)
            .order_by(db_models.TurnSheet.account_id, db_models.TurnSheet.sheet_order)
            .all()
        )


class TestOpenTurn:
    """Tests for opening a turn."""

    def test_waits_for_players(self, session_factory, adventure_world, registry):
        with session_factory() as session:
            session.get(db_models.GameInstance, adventure_world["instance_id"]).required_player_count = 2
            session.commit()
        add_player(session_factory, adventure_world, "Ada")

        result = orchestrator.open_turn(adventure_world["instance_id"], registry=registry)

        assert result.status == "waiting_for_players"
        assert _instance(session_factory, adventure_world["instance_id"]).state == "pending"
        assert _sheets(session_factory, adventure_world["instance_id"]) == []

    def test_starts_instance_and_inserts_sheets(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")

        result = orchestrator.open_turn(adventure_world["instance_id"], registry=registry)

        assert result.status == "opened"
        instance = _instance(session_factory, adventure_world["instance_id"])
        assert instance.state == "active"
        assert instance.started_at is not None
        assert instance.turn_phase == "emitting"
        deadline = ensure_utc(instance.deadline_for_current_turn)
        assert timedelta(hours=167) < deadline - now_utc() <= timedelta(hours=168)

        (sheet,) = _sheets(session_factory, adventure_world["instance_id"])
        assert sheet.state == "draft"
        assert sheet.sheet_type == "location_choice"
        assert codes.is_valid(sheet.code)
        assert sheet.template_data["code"] == sheet.code
        assert sheet.template_data["location_name"] == "Town Square"
        assert [o["name"] for o in sheet.template_data["location_options"]] == [
            "The dark alley",
            "The tavern door",
        ]
        assert [job.key for job in result.jobs] == [f"emit:{sheet.id}"]

    def test_character_created_at_starting_location(self, session_factory, adventure_world, registry):
        account_id, _ = add_player(session_factory, adventure_world, "Ada")
        orchestrator.open_turn(adventure_world["instance_id"], registry=registry)
        with session_factory() as session:
            character = session.query(db_models.AdventureCharacterInstance).filter_by(account_id=account_id).one()
            assert character.location_id == adventure_world["square_id"]

    def test_inventory_sheet_when_items_nearby(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")
        with session_factory() as session:
            session.add(
                db_models.AdventureItemInstance(
                    game_instance_id=adventure_world["instance_id"],
                    name="Bread",
                    location_id=adventure_world["square_id"],
                )
            )
            session.commit()

        orchestrator.open_turn(adventure_world["instance_id"], registry=registry)

        sheets = _sheets(session_factory, adventure_world["instance_id"])
        assert [(s.sheet_type, s.sheet_order) for s in sheets] == [
            ("inventory_management", 1),
            ("location_choice", 2),
        ]
        assert sheets[0].template_data["location_items"][0]["item_name"] == "Bread"

    def test_second_open_is_noop(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")
        orchestrator.open_turn(adventure_world["instance_id"], registry=registry)

        again = orchestrator.open_turn(adventure_world["instance_id"], registry=registry)

        assert again.status == "already_open"
        assert again.jobs == []
        assert len(_sheets(session_factory, adventure_world["instance_id"])) == 1

    def test_withdrawn_and_channelless_subscriptions_get_no_sheet(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")
        _, bob_subscription = add_player(session_factory, adventure_world, "Bob")
        orchestrator.withdraw_subscription(bob_subscription)

        orchestrator.open_turn(adventure_world["instance_id"], registry=registry)

        assert len(_sheets(session_factory, adventure_world["instance_id"])) == 1

    def test_cancelled_instance_is_skipped(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")
        orchestrator.cancel_instance(adventure_world["instance_id"])
        assert orchestrator.open_turn(adventure_world["instance_id"], registry=registry).status == "skipped"

    def test_no_subscriptions_waits_for_deadline(self, session_factory, adventure_world, registry):
        with session_factory() as session:
            instance = session.get(db_models.GameInstance, adventure_world["instance_id"])
            instance.state = "active"
            session.commit()

        result = orchestrator.open_turn(adventure_world["instance_id"], registry=registry)

        assert result.status == "opened"
        assert result.jobs == []
        assert _instance(session_factory, adventure_world["instance_id"]).turn_phase == "awaiting"

    def test_code_collision_remints(self, session_factory, adventure_world, registry, monkeypatch):
        add_player(session_factory, adventure_world, "Ada")
        orchestrator.open_turn(adventure_world["instance_id"], registry=registry)
        # The next turn's first mint collides with the existing code
        existing = _sheets(session_factory, adventure_world["instance_id"])[0].code
        second = codes.mint()
        minted = iter([existing, second])
        monkeypatch.setattr(codes, "mint", lambda *args: next(minted))
        with session_factory() as session:
            instance = session.get(db_models.GameInstance, adventure_world["instance_id"])
            instance.current_turn_number = 1
            instance.turn_phase = "closed"
            session.commit()

        orchestrator.open_turn(adventure_world["instance_id"], registry=registry)

        (sheet,) = _sheets(session_factory, adventure_world["instance_id"], turn_number=1)
        assert sheet.code == second

    def test_gives_up_after_repeated_collisions(self, session_factory, adventure_world, registry, monkeypatch):
        add_player(session_factory, adventure_world, "Ada")
        orchestrator.open_turn(adventure_world["instance_id"], registry=registry)
        existing = _sheets(session_factory, adventure_world["instance_id"])[0].code
        monkeypatch.setattr(codes, "mint", lambda *args: existing)
        with session_factory() as session:
            instance = session.get(db_models.GameInstance, adventure_world["instance_id"])
            instance.current_turn_number = 1
            instance.turn_phase = "closed"
            session.commit()

        with pytest.raises(DuplicateCode):
            orchestrator.open_turn(adventure_world["instance_id"], registry=registry)
        assert _sheets(session_factory, adventure_world["instance_id"], turn_number=1) == []


class TestEmitSheet:
    """Tests for rendering and dispatching a sheet."""

    def test_renders_and_dispatches(self, session_factory, adventure_world, registry, artifact_dir):
        add_player(session_factory, adventure_world, "Ada", channels=("email", "physical_local"))
        sheet_id = orchestrator.open_turn(adventure_world["instance_id"], registry=registry).jobs[0].args[0]

        result = orchestrator.emit_sheet(sheet_id, registry=registry)

        assert result.status == "dispatched"
        keys = [job.key for job in result.jobs]
        assert keys == [
            f"deliver:{sheet_id}:email:1",
            f"deliver:{sheet_id}:physical_local:1",
            f"resolve:{adventure_world['instance_id']}:0",
        ]
        (sheet,) = _sheets(session_factory, adventure_world["instance_id"])
        assert sheet.state == "dispatched"
        assert len(sheet.rendered_digest) == 64
        assert sheet.artifact_path.startswith(str(artifact_dir))
        assert _instance(session_factory, adventure_world["instance_id"]).turn_phase == "awaiting"

    def test_phase_check_locks_instance_after_sheet_commits(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")
        sheet_id = orchestrator.open_turn(adventure_world["instance_id"], registry=registry).jobs[0].args[0]
        seen = []

        def record_lock(session, game_instance_id):
            with session_factory() as other:
                seen.append((game_instance_id, other.get(db_models.TurnSheet, sheet_id).state))

        with patch("playbymail_worker.services.orchestrator.lock_instance", side_effect=record_lock):
            result = orchestrator.emit_sheet(sheet_id, registry=registry)

        assert seen == [(adventure_world["instance_id"], "dispatched")]
        assert result.jobs[-1].kind == "resolve"

    def test_reemit_is_idempotent(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")
        sheet_id = orchestrator.open_turn(adventure_world["instance_id"], registry=registry).jobs[0].args[0]
        orchestrator.emit_sheet(sheet_id, registry=registry)

        again = orchestrator.emit_sheet(sheet_id, registry=registry)

        assert again.status == "unchanged"
        assert again.jobs == []

    def test_awaiting_only_after_last_sheet(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")
        add_player(session_factory, adventure_world, "Bob")
        first, second = (job.args[0] for job in orchestrator.open_turn(adventure_world["instance_id"], registry=registry).jobs)

        one = orchestrator.emit_sheet(first, registry=registry)
        assert [job.kind for job in one.jobs] == ["deliver"]
        assert _instance(session_factory, adventure_world["instance_id"]).turn_phase == "emitting"

        two = orchestrator.emit_sheet(second, registry=registry)
        assert [job.kind for job in two.jobs] == ["deliver", "resolve"]

    def test_invalid_template_fails_sheet(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")
        sheet_id = orchestrator.open_turn(adventure_world["instance_id"], registry=registry).jobs[0].args[0]
        with session_factory() as session:
            sheet = session.get(db_models.TurnSheet, sheet_id)
            sheet.template_data = {"code": sheet.code}
            session.commit()

        result = orchestrator.emit_sheet(sheet_id, registry=registry)

        assert result.status == "failed"
        (sheet,) = _sheets(session_factory, adventure_world["instance_id"])
        assert sheet.state == "failed"
        assert sheet.error_kind == "invalid_template"
        assert [job.kind for job in result.jobs] == ["resolve"]

    def test_withdrawn_subscription_abandons_rendered_sheet(self, session_factory, adventure_world, registry):
        _, subscription_id = add_player(session_factory, adventure_world, "Ada")
        sheet_id = orchestrator.open_turn(adventure_world["instance_id"], registry=registry).jobs[0].args[0]
        with session_factory() as session:
            session.get(db_models.GameSubscription, subscription_id).status = "withdrawn"
            session.commit()

        result = orchestrator.emit_sheet(sheet_id, registry=registry)

        assert result.status == "abandoned"
        assert _sheets(session_factory, adventure_world["instance_id"])[0].state == "abandoned"


class TestResolveTurn:
    """Tests for closing a turn."""

    def _ready(self, session_factory, world, registry, transports, players=("Ada",)):
        for name in players:
            add_player(session_factory, world, name)
        sheet_ids = [job.args[0] for job in orchestrator.open_turn(world["instance_id"], registry=registry).jobs]
        for sheet_id in sheet_ids:
            orchestrator.emit_sheet(sheet_id, registry=registry)
            dispatcher.deliver(sheet_id, "email", 1, transports=transports)
        return sheet_ids

    def _scan(self, session_factory, sheet_id, registry, marked):
        with session_factory() as session:
            code = session.get(db_models.TurnSheet, sheet_id).code
        scan_id = intake.submit_scan(scan_text(code, marked)).detail["scan_image_id"]
        return intake.ingest_scan(scan_id, registry=registry)

    def test_waits_without_quorum(self, session_factory, adventure_world, registry, transports):
        self._ready(session_factory, adventure_world, registry, transports)
        result = orchestrator.resolve_turn(adventure_world["instance_id"], 0, registry=registry)
        assert result.status == "waiting"
        assert _instance(session_factory, adventure_world["instance_id"]).current_turn_number == 0

    def test_resolves_on_quorum(self, session_factory, adventure_world, registry, transports):
        (sheet_id,) = self._ready(session_factory, adventure_world, registry, transports)
        self._scan(session_factory, sheet_id, registry, {"The tavern door"})

        result = orchestrator.resolve_turn(adventure_world["instance_id"], 0, registry=registry)

        assert result.status == "closed"
        assert [job.key for job in result.jobs] == [f"opening:{adventure_world['instance_id']}:1"]
        instance = _instance(session_factory, adventure_world["instance_id"])
        assert instance.current_turn_number == 1
        assert instance.turn_phase == "closed"
        assert instance.deadline_for_current_turn is None
        assert _sheets(session_factory, adventure_world["instance_id"])[0].state == "resolved"
        with session_factory() as session:
            character = session.query(db_models.AdventureCharacterInstance).one()
            assert character.location_id == adventure_world["tavern_id"]

    def test_stale_resolve_job_is_skipped(self, session_factory, adventure_world, registry, transports):
        (sheet_id,) = self._ready(session_factory, adventure_world, registry, transports)
        self._scan(session_factory, sheet_id, registry, {"The tavern door"})
        orchestrator.resolve_turn(adventure_world["instance_id"], 0, registry=registry)

        again = orchestrator.resolve_turn(adventure_world["instance_id"], 0, registry=registry)

        assert again.status == "skipped"
        assert _instance(session_factory, adventure_world["instance_id"]).current_turn_number == 1

    def test_resolver_failure_fails_only_that_sheet(self, session_factory, adventure_world, registry, transports):
        ada_sheet, bob_sheet = self._ready(
            session_factory, adventure_world, registry, transports, players=("Ada", "Bob")
        )
        self._scan(session_factory, ada_sheet, registry, {"The dark alley"})
        # A destination the sheet never offered
        with session_factory() as session:
            code = session.get(db_models.TurnSheet, bob_sheet).code
        text = scan_text(code, {"The moon"}, options=("The dark alley", "The moon"))
        intake.ingest_scan(intake.submit_scan(text).detail["scan_image_id"], registry=registry)

        result = orchestrator.resolve_turn(adventure_world["instance_id"], 0, registry=registry)

        assert result.detail == {"turn_number": 0, "resolved": 1, "failed": 1}
        ada, bob = _sheets(session_factory, adventure_world["instance_id"])
        assert ada.state == "resolved"
        assert bob.state == "failed"
        assert bob.error_kind == "resolver_failed"

    def test_max_turns_completes_instance(self, session_factory, adventure_world, registry, transports):
        with session_factory() as session:
            session.get(db_models.Game, adventure_world["game_id"]).max_turns = 1
            session.commit()
        (sheet_id,) = self._ready(session_factory, adventure_world, registry, transports)
        self._scan(session_factory, sheet_id, registry, {"The dark alley"})

        result = orchestrator.resolve_turn(adventure_world["instance_id"], 0, registry=registry)

        assert result.jobs == []
        instance = _instance(session_factory, adventure_world["instance_id"])
        assert instance.state == "completed"
        assert instance.completed_at is not None

    def test_empty_turn_closes_at_deadline(self, session_factory, adventure_world, registry):
        with session_factory() as session:
            session.get(db_models.GameInstance, adventure_world["instance_id"]).state = "active"
            session.commit()
        orchestrator.open_turn(adventure_world["instance_id"], registry=registry)
        assert orchestrator.resolve_turn(adventure_world["instance_id"], 0, registry=registry).status == "waiting"

        expire_deadline(session_factory, adventure_world["instance_id"])

        assert orchestrator.resolve_turn(adventure_world["instance_id"], 0, registry=registry).status == "closed"


class TestLifecycle:
    """Tests for withdrawal and cancellation."""

    def test_withdraw_twice(self, session_factory, adventure_world):
        _, subscription_id = add_player(session_factory, adventure_world, "Ada")
        assert orchestrator.withdraw_subscription(subscription_id).status == "withdrawn"
        assert orchestrator.withdraw_subscription(subscription_id).status == "skipped"

    def test_withdraw_unknown(self, session_factory):
        assert orchestrator.withdraw_subscription(404).status == "not_found"

    def test_cancel(self, session_factory, adventure_world):
        assert orchestrator.cancel_instance(adventure_world["instance_id"]).status == "cancelled"
        assert orchestrator.cancel_instance(adventure_world["instance_id"]).status == "skipped"
        assert _instance(session_factory, adventure_world["instance_id"]).state == "cancelled"


class TestSweepTurns:
    """Tests for the deadline sweep."""

    def test_overdue_turn_gets_resolve_job(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")
        orchestrator.open_turn(adventure_world["instance_id"], registry=registry)
        expire_deadline(session_factory, adventure_world["instance_id"])

        result = orchestrator.sweep_turns()

        assert Job.resolve(adventure_world["instance_id"], 0) in result.jobs

    def test_stalled_draft_gets_emit_job(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")
        sheet_id = orchestrator.open_turn(adventure_world["instance_id"], registry=registry).jobs[0].args[0]
        assert Job.emit(sheet_id) not in orchestrator.sweep_turns().jobs

        with session_factory() as session:
            session.get(db_models.TurnSheet, sheet_id).updated_at = now_utc() - timedelta(hours=2)
            session.commit()

        assert Job.emit(sheet_id) in orchestrator.sweep_turns().jobs

    def test_dispatched_without_attempts_gets_deliver_job(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")
        sheet_id = orchestrator.open_turn(adventure_world["instance_id"], registry=registry).jobs[0].args[0]
        orchestrator.emit_sheet(sheet_id, registry=registry)
        with session_factory() as session:
            session.get(db_models.TurnSheet, sheet_id).updated_at = now_utc() - timedelta(hours=2)
            session.commit()

        assert Job.deliver(sheet_id, "email", 1) in orchestrator.sweep_turns().jobs

    def test_cancelled_instances_ignored(self, session_factory, adventure_world, registry):
        add_player(session_factory, adventure_world, "Ada")
        orchestrator.open_turn(adventure_world["instance_id"], registry=registry)
        expire_deadline(session_factory, adventure_world["instance_id"])
        orchestrator.cancel_instance(adventure_world["instance_id"])
        assert orchestrator.sweep_turns().jobs == []
