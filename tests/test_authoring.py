"""Tests for SeriesAuthoringService - graph editing, validation and activation."""

import pytest

from series_automation.exceptions import NotFoundError, ReadinessError, ValidationError
from series_automation.state.models import Progress

WORKSPACE = "ws-1"


CHAT = ("chat", {"body": "Hello {{ visitor.name }}"})


class TestSeries:
    """Tests for series create/update."""

    def test_create_series_starts_as_draft(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        assert series.status == "draft"
        assert authoring.list_series(WORKSPACE) == [series]

    def test_create_rejects_malformed_rules(self, authoring) -> None:
        with pytest.raises(ValidationError):
            authoring.create_series(WORKSPACE, "Bad", entry_rules={"type": "condition", "operator": "equals"})

    def test_create_requires_name(self, authoring) -> None:
        with pytest.raises(ValidationError):
            authoring.create_series(WORKSPACE, "   ")

    def test_update_series(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        updated = authoring.update_series(
            series.id,
            name="Welcome v2",
            entry_triggers=[{"source": "visitor_attribute_changed", "attribute_key": "plan"}],
        )
        assert updated.name == "Welcome v2"
        assert updated.entry_triggers[0].attribute_key == "plan"
        assert authoring.get_series_with_graph(series.id)[0].name == "Welcome v2"

    def test_update_rejects_unknown_fields(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        with pytest.raises(ValidationError):
            authoring.update_series(series.id, status="active")

    def test_missing_series(self, authoring) -> None:
        with pytest.raises(NotFoundError):
            authoring.get_series_with_graph("nope")


class TestBlocks:
    """Tests for block validation."""

    def test_unknown_block_type(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        with pytest.raises(ValidationError):
            authoring.add_block(series.id, "sms", {"body": "hi"})

    def test_config_must_match_block_type(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        with pytest.raises(ValidationError):
            authoring.add_block(series.id, "chat", {"wait_type": "duration"})

    def test_config_values_are_validated(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        with pytest.raises(ValidationError):
            authoring.add_block(series.id, "wait", {"wait_type": "duration", "wait_duration": 2, "wait_unit": "weeks"})

    def test_rule_block_rules_must_parse(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        with pytest.raises(ValidationError):
            authoring.add_block(series.id, "rule", {"rules": {"type": "group", "operator": "xor"}})

    def test_update_block(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        block = authoring.add_block(series.id, *CHAT)
        updated = authoring.update_block(block.id, config={"body": "Bye"}, position={"x": 10, "y": 20})
        assert updated.config.body == "Bye"
        assert updated.position.x == 10

    def test_remove_block_drops_its_connections(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        first = authoring.add_block(series.id, *CHAT)
        second = authoring.add_block(series.id, *CHAT)
        authoring.add_connection(series.id, first.id, second.id)

        authoring.remove_block(second.id)

        _, graph = authoring.get_series_with_graph(series.id)
        assert list(graph.blocks) == [first.id]
        assert graph.connections == []

    def test_remove_missing_block(self, authoring) -> None:
        with pytest.raises(NotFoundError):
            authoring.remove_block("nope")


class TestConnections:
    """Tests for connection validation."""

    def test_cycle_is_rejected(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        a = authoring.add_block(series.id, *CHAT)
        b = authoring.add_block(series.id, *CHAT)
        c = authoring.add_block(series.id, *CHAT)
        authoring.add_connection(series.id, a.id, b.id)
        authoring.add_connection(series.id, b.id, c.id)

        with pytest.raises(ValidationError):
            authoring.add_connection(series.id, c.id, a.id)

    def test_self_loop_is_rejected(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        a = authoring.add_block(series.id, *CHAT)
        with pytest.raises(ValidationError):
            authoring.add_connection(series.id, a.id, a.id)

    def test_cross_series_connection_is_rejected(self, authoring) -> None:
        one = authoring.create_series(WORKSPACE, "One")
        two = authoring.create_series(WORKSPACE, "Two")
        a = authoring.add_block(one.id, *CHAT)
        b = authoring.add_block(two.id, *CHAT)

        with pytest.raises(ValidationError):
            authoring.add_connection(one.id, a.id, b.id)

    def test_missing_block(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        a = authoring.add_block(series.id, *CHAT)
        with pytest.raises(NotFoundError):
            authoring.add_connection(series.id, a.id, "nope")

    def test_invalid_condition(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        a = authoring.add_block(series.id, *CHAT)
        b = authoring.add_block(series.id, *CHAT)
        with pytest.raises(ValidationError):
            authoring.add_connection(series.id, a.id, b.id, condition="maybe")

    def test_remove_connection(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Welcome")
        a = authoring.add_block(series.id, *CHAT)
        b = authoring.add_block(series.id, *CHAT)
        connection = authoring.add_connection(series.id, a.id, b.id)

        authoring.remove_connection(connection.id)

        assert authoring.get_series_with_graph(series.id)[1].connections == []
        with pytest.raises(NotFoundError):
            authoring.remove_connection(connection.id)


class TestActivation:
    """Tests for activate/deactivate."""

    def test_activate_ready_series(self, build_series) -> None:
        series, _ = build_series(CHAT)
        assert series.status == "active"

    def test_activate_blocked_series(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Empty")
        with pytest.raises(ReadinessError) as exc_info:
            authoring.activate(series.id)
        assert [b["code"] for b in exc_info.value.blockers] == ["empty_graph"]

    def test_deactivate_pauses(self, authoring, build_series) -> None:
        series, _ = build_series(CHAT)
        assert authoring.deactivate(series.id).status == "paused"
        assert authoring.list_series(WORKSPACE, status="active") == []

    def test_deactivate_draft(self, authoring) -> None:
        series = authoring.create_series(WORKSPACE, "Draft")
        with pytest.raises(ValidationError):
            authoring.deactivate(series.id)

    def test_archive(self, authoring, build_series) -> None:
        series, _ = build_series(CHAT)
        draft = authoring.create_series(WORKSPACE, "Draft")

        assert authoring.archive(series.id).status == "archived"
        assert authoring.archive(series.id).status == "archived"
        assert authoring.archive(draft.id).status == "archived"
        assert authoring.deactivate(series.id).status == "archived"
        assert [s.id for s in authoring.list_series(WORKSPACE, status="archived")] == [series.id, draft.id]

    def test_archived_series_can_be_activated_again(self, authoring, build_series) -> None:
        series, _ = build_series(CHAT)
        authoring.archive(series.id)

        assert authoring.activate(series.id).status == "active"

    def test_archive_missing_series(self, authoring) -> None:
        with pytest.raises(NotFoundError):
            authoring.archive("nope")


class TestDeleteSeries:
    """Tests for delete_series."""

    def test_delete_cascades(self, authoring, build_series, series_repo, progress_repo, telemetry_repo) -> None:
        series, [wait, chat] = build_series(("wait", {"wait_type": "until_event", "wait_until_event": "Purchase"}), CHAT)
        other, [other_chat] = build_series(CHAT)
        for series_id in (series.id, other.id):
            progress_repo.enroll(Progress(workspace_id=WORKSPACE, visitor_id="v-1", series_id=series_id))
        telemetry_repo.increment(series.id, wait.id, {"entered": 1})
        telemetry_repo.increment(other.id, other_chat.id, {"entered": 1})

        authoring.delete_series(series.id)

        with pytest.raises(NotFoundError):
            authoring.get_series_with_graph(series.id)
        assert series_repo.get_block(wait.id) is None
        assert series_repo.get_block(chat.id) is None
        assert series_repo.list_connections(series.id) == []
        assert progress_repo.list_for_series(series.id, 10) == []
        assert telemetry_repo.list_for_series(series.id, 10) == []

        assert len(progress_repo.list_for_series(other.id, 10)) == 1
        assert [b.id for b in series_repo.list_blocks(other.id)] == [other_chat.id]
        assert len(telemetry_repo.list_for_series(other.id, 10)) == 1

    def test_delete_missing_series(self, authoring) -> None:
        with pytest.raises(NotFoundError):
            authoring.delete_series("nope")


class TestDuplicateAndStats:
    """Tests for duplicate_series, get_stats and get_telemetry."""

    def test_duplicate_copies_graph(self, authoring, build_series) -> None:
        source, blocks = build_series(("wait", {"wait_type": "until_event", "wait_until_event": "Purchase"}), CHAT)

        copy = authoring.duplicate_series(source.id)

        assert copy.id != source.id
        assert copy.status == "draft"
        assert copy.name == "Onboarding (copy)"
        _, graph = authoring.get_series_with_graph(copy.id)
        assert len(graph.blocks) == 2
        assert not set(graph.blocks) & {b.id for b in blocks}
        [connection] = graph.connections
        assert connection.from_block_id in graph.blocks
        assert graph.blocks[connection.from_block_id].type == "wait"
        assert graph.blocks[connection.to_block_id].type == "chat"

    def test_stats(self, authoring, build_series, progress_repo) -> None:
        series, blocks = build_series(CHAT)
        for visitor_id, status in (("a", "completed"), ("b", "goal_reached"), ("c", "waiting"), ("d", "completed")):
            progress_repo.enroll(
                Progress(workspace_id=WORKSPACE, visitor_id=visitor_id, series_id=series.id, status=status)
            )

        stats = authoring.get_stats(series.id)

        assert stats.total == 4
        assert stats.by_status["completed"] == 2
        assert stats.by_status["failed"] == 0
        assert stats.completion_rate == 0.5
        assert stats.goal_rate == 0.25

    def test_telemetry_totals_and_blocks(self, authoring, build_series, telemetry_repo) -> None:
        series, [first, second] = build_series(CHAT, CHAT)
        telemetry_repo.increment(series.id, first.id, {"entered": 3, "completed": 2, "delivery_attempts": 2})
        telemetry_repo.increment(series.id, second.id, {"entered": 2, "failed": 1, "delivery_failures": 1})
        telemetry_repo.increment(series.id, "gone", {"entered": 1, "skipped": 1})

        telemetry = authoring.get_telemetry(series.id)

        assert telemetry.totals.model_dump() == {
            "entered": 6,
            "completed": 2,
            "skipped": 1,
            "failed": 1,
            "delivery_attempts": 2,
            "delivery_failures": 1,
        }
        by_block = {row.block_id: row for row in telemetry.blocks}
        assert by_block[first.id].block.id == first.id
        assert by_block["gone"].block is None

    def test_telemetry_limit(self, authoring, build_series, telemetry_repo) -> None:
        series, [first, second] = build_series(CHAT, CHAT)
        telemetry_repo.increment(series.id, first.id, {"entered": 1})
        telemetry_repo.increment(series.id, second.id, {"entered": 1})

        assert len(authoring.get_telemetry(series.id, limit=1).blocks) == 1
        assert len(authoring.get_telemetry(series.id, limit=0).blocks) == 2
        with pytest.raises(NotFoundError):
            authoring.get_telemetry("nope")

    def test_unknown_counter_is_rejected(self, telemetry_repo) -> None:
        with pytest.raises(ValueError):
            telemetry_repo.increment("s-1", "b-1", {"opened": 1})
