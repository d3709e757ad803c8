"""End-to-end tests through the public core API."""

from conftest import make_user, seed_history


def _setup_two_miners(orch, db, gateway):
    gateway.prices[1] = 20.0
    director = make_user(db, "Dir", 1)
    op = orch.create_operation(director.id, "Moon pull")["operation"]
    a = make_user(db, "A", 2)
    b = make_user(db, "B", 3)
    gateway.set_ledger(2, {1: 100})
    gateway.set_ledger(3, {1: 100})
    assert orch.join_operation(a.id, op["join_code"])["success"]
    assert orch.join_operation(b.id, op["join_code"])["success"]
    return op, director, a, b


class TestMiningData:
    def test_only_the_miner_is_reported(self, orch, db, gateway, clock) -> None:
        op, _, a, b = _setup_two_miners(orch, db, gateway)

        clock.advance(minutes=10)
        gateway.set_ledger(2, {1: 150})
        assert orch.capture_snapshot(op["id"], a.id)["success"]

        data = orch.get_mining_data(op["id"], b.id)
        assert data["success"]
        assert [u["user_id"] for u in data["users"]] == [a.id]
        resource = data["users"][0]["resources"][0]
        assert resource["quantity"] == 50
        assert resource["value"] == 50 * 20.0
        assert data["total_value"] == 1000.0
        assert data["prices"][1]["best_buy"] == 20.0

        status = orch.get_operation_status(op["id"])
        assert status["total_value"] == 1000.0
        assert status["active_count"] == 3

    def test_freshness_guard_hides_early_deltas(self, orch, db, gateway, clock) -> None:
        op, _, a, _ = _setup_two_miners(orch, db, gateway)

        clock.advance(seconds=10)
        gateway.set_ledger(2, {1: 150})
        orch.capture_snapshot(op["id"], a.id)
        clock.advance(seconds=20)
        assert orch.get_mining_data(op["id"], a.id)["users"] == []

        clock.advance(seconds=5)
        gateway.set_ledger(2, {1: 160})
        orch.capture_snapshot(op["id"], a.id)
        users = orch.get_mining_data(op["id"], a.id)["users"]
        assert users[0]["resources"][0]["quantity"] == 60

    def test_outsider_cannot_read(self, orch, db, gateway) -> None:
        op, _, _, _ = _setup_two_miners(orch, db, gateway)
        outsider = make_user(db, "X", 9)
        assert orch.get_mining_data(op["id"], outsider.id)["code"] == "authorization"

    def test_miner_whose_row_was_deleted_can_still_read(self, orch, db, gateway, clock) -> None:
        op, _, a, _ = _setup_two_miners(orch, db, gateway)
        seed_history(db, a.id, ["left", "kicked"])
        clock.advance(minutes=10)
        gateway.set_ledger(2, {1: 140})
        orch.capture_snapshot(op["id"], a.id)

        assert orch.participant_action(a.id, op["id"], "leave")["status"] is None
        assert db.get_participant(op["id"], a.id) is None

        data = orch.get_mining_data(op["id"], a.id)
        assert data["success"], data
        assert data["users"][0]["user_id"] == a.id
        assert data["users"][0]["user_name"] == "A"
        assert data["users"][0]["resources"][0]["quantity"] == 40

    def test_unknown_operation(self, orch, db) -> None:
        user = make_user(db, "X", 9)
        result = orch.get_mining_data("nope", user.id)
        assert result["code"] == "validation"
        assert result["reason"] == "not_found"

    def test_ledger_outage_is_dependency_error(self, orch, db, gateway, clock) -> None:
        op, _, a, _ = _setup_two_miners(orch, db, gateway)
        gateway.failing_characters.add(2)
        assert orch.capture_snapshot(op["id"], a.id)["code"] == "dependency"

    def test_capture_all_skips_failing_users(self, orch, db, gateway, clock) -> None:
        op, director, a, b = _setup_two_miners(orch, db, gateway)
        gateway.failing_characters.add(3)
        result = orch.capture_all(op["id"])
        assert set(result["captured"]) == {director.id, a.id}
        assert result["skipped"] == [b.id]

    def test_mined_value_survives_operation_end(self, orch, db, gateway, clock) -> None:
        op, director, a, _ = _setup_two_miners(orch, db, gateway)
        clock.advance(minutes=10)
        gateway.set_ledger(2, {1: 130})
        orch.participant_action(director.id, op["id"], "end")
        clock.advance(seconds=6)

        status = orch.get_operation_status(op["id"])
        assert status["operation"]["status"] == "ended"
        data = orch.get_mining_data(op["id"], a.id)
        assert data["users"][0]["resources"][0]["quantity"] == 30


class TestEvents:
    def test_lifecycle_events(self, orch, db, gateway, clock) -> None:
        events = []
        orch.register_listener(events.append)
        op, director, a, _ = _setup_two_miners(orch, db, gateway)
        orch.participant_action(director.id, op["id"], "kick", a.id)
        orch.participant_action(director.id, op["id"], "end")
        clock.advance(seconds=6)
        orch.get_operation_status(op["id"])
        orch.get_operation_status(op["id"])

        types = [e["type"] for e in events]
        assert types == [
            "operation_created", "participant_joined", "participant_joined",
            "participant_kicked", "operation_ending", "operation_ended",
        ]

    def test_failing_listener_does_not_break_actions(self, orch, db) -> None:
        def broken(event):
            raise RuntimeError("listener down")

        orch.register_listener(broken)
        director = make_user(db, "Dir", 1)
        assert orch.create_operation(director.id, "Still works")["success"]


class TestRegisterUser:
    def test_register_then_refresh_token(self, orch) -> None:
        first = orch.register_user("Pilot", 42, "tok-1")
        assert first["created"]
        second = orch.register_user("Pilot Renamed", 42, "tok-2")
        assert not second["created"]
        assert second["user"]["id"] == first["user"]["id"]
        assert second["user"]["name"] == "Pilot Renamed"

    def test_refresh_without_token_keeps_ledger_access(self, orch, db) -> None:
        first = orch.register_user("Pilot", 42, "tok-1")
        orch.register_user("Pilot", 42, None)
        assert db.get_user(first["user"]["id"]).access_token == "tok-1"

    def test_name_required(self, orch) -> None:
        assert orch.register_user(" ", 42)["code"] == "validation"
