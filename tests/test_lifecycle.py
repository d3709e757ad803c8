"""Tests for the operation registry and lifecycle reconciler: grace period, finalize, sweeps."""

import threading

from errors import PersistenceError

from conftest import make_user, seed_history


def _make_operation(orch, db, name="Dir", character_id=1):
    director = make_user(db, name, character_id)
    result = orch.create_operation(director.id, f"{name}'s op")
    assert result["success"], result
    return result["operation"], director


def _end_and_expire(orch, clock, op, director):
    assert orch.participant_action(director.id, op["id"], "end")["success"]
    clock.advance(seconds=6)


# ===================================================================
# Creation
# ===================================================================

class TestCreate:
    def test_director_is_admin_participant(self, orch, db) -> None:
        op, director = _make_operation(orch, db)
        participant = db.get_participant(op["id"], director.id)
        assert participant.is_admin and participant.status == "active"
        assert op["status"] == "active"
        assert len(op["join_code"]) == 6 and op["join_code"].isalnum()
        assert op["last_activity_at"] == op["created_at"]

    def test_title_required(self, orch, db) -> None:
        director = make_user(db, "Dir", 1)
        assert orch.create_operation(director.id, "   ")["code"] == "validation"

    def test_director_already_busy(self, orch, db) -> None:
        op, director = _make_operation(orch, db)
        result = orch.create_operation(director.id, "Second")
        assert result["reason"] == "already_active"


# ===================================================================
# Grace period and finalize
# ===================================================================

class TestFinalize:
    def test_end_starts_grace_countdown(self, orch, db, clock) -> None:
        op, director = _make_operation(orch, db)
        result = orch.participant_action(director.id, op["id"], "end")
        assert result["status"] == "ending"
        assert result["countdown"] == 5

        clock.advance(seconds=2)
        status = orch.get_operation_status(op["id"])
        assert status["operation"]["status"] == "ending"
        assert status["countdown"] == 3
        assert status["phase"] == "ending"

    def test_not_finalized_before_deadline(self, orch, db, clock) -> None:
        op, director = _make_operation(orch, db)
        orch.participant_action(director.id, op["id"], "end")
        clock.advance(seconds=4)
        assert orch.registry.finalize_if_due(op["id"]) is False

    def test_status_read_finalizes_and_reports_syncing(self, orch, db, clock) -> None:
        op, director = _make_operation(orch, db)
        _end_and_expire(orch, clock, op, director)

        status = orch.get_operation_status(op["id"])
        assert status["operation"]["status"] == "ended"
        assert status["phase"] == "syncing"
        assert status["countdown"] == 0
        assert db.get_user(director.id).active_operation_id is None

        clock.advance(minutes=11)
        assert orch.get_operation_status(op["id"])["phase"] == "ended"

    def test_repeat_finalize_is_noop(self, orch, db, clock) -> None:
        op, director = _make_operation(orch, db)
        _end_and_expire(orch, clock, op, director)
        assert orch.registry.finalize_if_due(op["id"]) is True
        assert orch.registry.finalize_if_due(op["id"]) is False

    def test_end_twice_is_state_conflict(self, orch, db) -> None:
        op, director = _make_operation(orch, db)
        orch.participant_action(director.id, op["id"], "end")
        assert orch.participant_action(director.id, op["id"], "end")["code"] == "state_conflict"

    def test_immediate_end_skips_grace(self, orch, db) -> None:
        op, director = _make_operation(orch, db)
        result = orch.participant_action(director.id, op["id"], "end", immediate=True)
        assert result["status"] == "ended"
        assert result["released"] == [director.id]
        assert db.get_operation(op["id"]).status == "ended"

    def test_end_snapshots_taken_for_released_users(self, orch, db, gateway, clock) -> None:
        op, director = _make_operation(orch, db)
        user = make_user(db, "A", 2)
        gateway.set_ledger(2, {1: 100})
        orch.join_operation(user.id, op["join_code"])
        gateway.set_ledger(2, {1: 180})
        _end_and_expire(orch, clock, op, director)

        orch.get_operation_status(op["id"])
        readings = db.get_latest_readings(op["id"])
        assert [(s.user_id, s.kind, s.quantity) for s in readings] == [(user.id, "end", 180)]


    def test_malformed_ledger_does_not_block_ended_event(self, orch, db, gateway, clock) -> None:
        events = []
        orch.register_listener(events.append)
        op, director = _make_operation(orch, db)
        user = make_user(db, "A", 2)
        orch.join_operation(user.id, op["join_code"])
        _end_and_expire(orch, clock, op, director)
        gateway.get_mining_ledger = lambda character_id, access_token: [{"unexpected": 1}]

        assert orch.sweep_finalize_due() == {"success": True, "finalized": [op["id"]], "failed": []}
        ended = [e for e in events if e["type"] == "operation_ended"]
        assert len(ended) == 1
        assert set(ended[0]["data"]["released"]) == {director.id, user.id}


class TestFinalizeEscalation:
    def test_ladder_applied_per_history(self, orch, db, clock) -> None:
        op, director = _make_operation(orch, db)
        histories = {"fresh": [], "had_left": ["left"], "had_kicked": ["kicked"], "had_both": ["left", "kicked"]}
        users = {}
        for i, (name, history) in enumerate(histories.items(), start=2):
            user = make_user(db, name, i)
            seed_history(db, user.id, history)
            assert orch.join_operation(user.id, op["join_code"])["success"]
            users[name] = user

        _end_and_expire(orch, clock, op, director)
        assert orch.registry.finalize_if_due(op["id"])

        assert db.get_participant(op["id"], users["fresh"].id).status == "left"
        assert db.get_participant(op["id"], users["had_left"].id).status == "kicked"
        assert db.get_participant(op["id"], users["had_kicked"].id).status == "banned"
        assert db.get_participant(op["id"], users["had_both"].id) is None
        for user in users.values():
            assert db.get_user(user.id).active_operation_id is None

    def test_pointer_moved_elsewhere_is_not_cleared(self, orch, db, clock) -> None:
        op, director = _make_operation(orch, db)
        user = make_user(db, "A", 2)
        orch.join_operation(user.id, op["join_code"])
        # Simulate the pointer having moved to another operation concurrently
        with db.transaction() as cur:
            db.clear_active_operation(cur, [user.id], op["id"])
            db.claim_active_operation(cur, user.id, "other-op")

        _end_and_expire(orch, clock, op, director)
        orch.registry.finalize_if_due(op["id"])
        assert db.get_user(user.id).active_operation_id == "other-op"


class TestConcurrentFinalize:
    def test_racing_triggers_transition_once(self, orch, db, clock) -> None:
        events = []
        orch.register_listener(events.append)
        op, director = _make_operation(orch, db)
        members = []
        for i in range(2, 6):
            user = make_user(db, f"M{i}", i)
            seed_history(db, user.id, ["left"])
            orch.join_operation(user.id, op["join_code"])
            members.append(user)
        _end_and_expire(orch, clock, op, director)

        n = 8
        barrier = threading.Barrier(n)
        outcomes = []
        lock = threading.Lock()

        def trigger(i):
            barrier.wait()
            if i % 2:
                done = orch.reconciler.reconcile(op["id"])
            else:
                done = op["id"] in orch.sweep_finalize_due()["finalized"]
            with lock:
                outcomes.append(done)

        threads = [threading.Thread(target=trigger, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(True) == 1
        assert [e["type"] for e in events].count("operation_ended") == 1
        for user in members:
            assert db.get_participant(op["id"], user.id).status == "kicked"
        assert db.get_operation(op["id"]).status == "ended"


# ===================================================================
# Sweeps
# ===================================================================

class TestSweeps:
    def test_sweep_continues_past_failure(self, orch, db, clock, monkeypatch) -> None:
        op1, d1 = _make_operation(orch, db, "D1", 1)
        op2, d2 = _make_operation(orch, db, "D2", 2)
        orch.participant_action(d1.id, op1["id"], "end")
        orch.participant_action(d2.id, op2["id"], "end")
        clock.advance(seconds=6)

        original = orch.registry.finalize

        def flaky(operation_id):
            if operation_id == op1["id"]:
                raise PersistenceError("disk full")
            return original(operation_id)

        monkeypatch.setattr(orch.registry, "finalize", flaky)
        result = orch.sweep_finalize_due()
        assert result["finalized"] == [op2["id"]]
        assert result["failed"] == [op1["id"]]

        monkeypatch.setattr(orch.registry, "finalize", original)
        assert orch.sweep_finalize_due()["finalized"] == [op1["id"]]

    def test_inactive_operation_moves_to_ending(self, orch, db, clock) -> None:
        op, _ = _make_operation(orch, db)
        clock.advance(hours=2, seconds=1)

        result = orch.sweep_inactive()
        assert result["ending"] == [op["id"]]
        stored = db.get_operation(op["id"])
        assert stored.status == "ending"
        assert stored.termination_type == "inactivity"

        clock.advance(seconds=6)
        assert orch.sweep_finalize_due()["finalized"] == [op["id"]]

    def test_mining_activity_keeps_operation_alive(self, orch, db, gateway, clock) -> None:
        op, director = _make_operation(orch, db)
        gateway.set_ledger(1, {1: 10})
        clock.advance(hours=1, minutes=30)
        orch.capture_snapshot(op["id"], director.id)
        clock.advance(hours=1)

        assert orch.sweep_inactive()["ending"] == []
        assert db.get_operation(op["id"]).status == "active"

    def test_unchanged_reading_is_not_activity(self, orch, db, gateway, clock) -> None:
        gateway.set_ledger(1, {1: 10})
        op, director = _make_operation(orch, db)
        clock.advance(hours=1, minutes=30)
        orch.capture_snapshot(op["id"], director.id)
        clock.advance(hours=1)

        assert orch.sweep_inactive()["ending"] == [op["id"]]

    def test_price_refresh_tolerates_failures(self, orch, db, gateway) -> None:
        db.upsert_resource_type(1, "Veldspar")
        db.upsert_resource_type(2, "Scordite")
        gateway.prices[1] = 15.0
        gateway.failing_prices.add(2)

        result = orch.sweep_refresh_prices()
        assert result["updated"] == [1]
        assert result["failed"] == [2]
        assert db.get_prices()[1].best_buy == 15.0
