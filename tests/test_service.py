"""Tests for ComparisonService — proves the facade orchestrates correctly."""

import pytest
from pathlib import Path

from peereval.models.comparison import ResponseItem
from peereval.persistence.event_log import EventKind, EventLog
from peereval.persistence.state_store import StateStore
from peereval.policy.resolver import PolicyResolver
from peereval.service import ComparisonService


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

REVIEWERS = ["s1", "s2", "s3"]


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def service(resolver: PolicyResolver) -> ComparisonService:
    return ComparisonService(resolver, event_log=EventLog())


def _items(n: int, question_id: str = "q1") -> list[ResponseItem]:
    return [
        ResponseItem(f"{question_id}-r{i}", f"S{i:03d}", f"answer {i}", question_id)
        for i in range(1, n + 1)
    ]


def _open(service: ComparisonService, question_id: str = "q1", n: int = 6, seed: str = "seed"):
    result = service.open_session("proj", question_id, _items(n, question_id), REVIEWERS, seed=seed)
    assert result.success, result.errors
    return result


def _judge(service: ComparisonService, reviewer_id: str, outcome: str = "left",
           latency_ms: int = 5000, question_id: str = "q1"):
    pair = service.next_pair("proj", question_id, reviewer_id).data["pair"]
    assert pair is not None
    return service.submit_decision(
        "proj", question_id, reviewer_id, pair["item_a_id"], pair["item_b_id"],
        outcome, latency_ms=latency_ms,
    )


# =====================================================================
# Session lifecycle
# =====================================================================


class TestOpenSession:
    def test_open_creates_session(self, service: ComparisonService) -> None:
        result = _open(service)
        assert result.data["created"]
        assert result.data["quota"] == 15      # ceil(45 / 3)
        assert result.data["total_target"] == 45
        assert result.data["phase"] == "balance"
        assert result.data["random_seed"] == "seed"

    def test_open_twice_returns_same_session(self, service: ComparisonService) -> None:
        first = _open(service)
        _judge(service, "s1")
        second = _open(service)
        assert not second.data["created"]
        assert second.data["session_id"] == first.data["session_id"]
        assert second.data["total_completed"] == 1

    def test_open_records_event(self, service: ComparisonService) -> None:
        _open(service)
        events = service._event_log.events(EventKind.SESSION_OPENED)
        assert len(events) == 1
        assert events[0].payload["question_id"] == "q1"

    def test_invalid_roster_rejected(self, service: ComparisonService) -> None:
        result = service.open_session("proj", "q1", _items(3), ["s1", " "])
        assert not result.success
        assert service.coordinator.find_open("proj", "q1") is None
        assert service.status()["sessions"]["total"] == 0

    def test_duplicate_reviewers_rejected(self, service: ComparisonService) -> None:
        result = service.open_session("proj", "q1", _items(3), ["s1", "s2", " s1"])
        assert not result.success
        assert "Duplicate reviewer ID" in result.errors[0]
        assert service.coordinator.find_open("proj", "q1") is None
        assert service._event_log.events(EventKind.SESSION_OPENED) == []


class TestCloseAndAdvance:
    def test_close_discards_live_state(self, service: ComparisonService) -> None:
        _open(service)
        _judge(service, "s1")
        result = service.close_session("proj", "q1")
        assert result.success
        assert result.data["completion"]["total_completed"] == 1

        after = service.next_pair("proj", "q1", "s1")
        assert not after.success

    def test_close_without_session_fails(self, service: ComparisonService) -> None:
        assert not service.close_session("proj", "q1").success

    def test_reopen_after_close_starts_fresh(self, service: ComparisonService) -> None:
        first = _open(service)
        _judge(service, "s1")
        service.close_session("proj", "q1")

        second = _open(service)
        assert second.data["created"]
        assert second.data["session_id"] != first.data["session_id"]
        assert second.data["total_completed"] == 0

    def test_advance_question(self, service: ComparisonService) -> None:
        first = _open(service, "q1")
        _judge(service, "s1")
        result = service.advance_question("proj", "q1", "q2", _items(4, "q2"), REVIEWERS)
        assert result.success
        assert result.data["closed_session_id"] == first.data["session_id"]
        assert result.data["total_completed"] == 0
        assert service.coordinator.find_open("proj", "q1") is None
        assert service.next_pair("proj", "q2", "s1").data["pair"] is not None

    def test_advance_without_open_question(self, service: ComparisonService) -> None:
        result = service.advance_question("proj", "q0", "q1", _items(4), REVIEWERS)
        assert result.success
        assert result.data["closed_session_id"] is None


class TestRefreshQuota:
    def test_refresh_before_decisions_rebuilds(self, service: ComparisonService) -> None:
        _open(service)
        result = service.refresh_quota("proj", "q1", _items(6), ["s1", "s2", "s3", "s4", "s5"])
        assert result.success
        assert result.data["changed"]
        assert result.data["quota"] == 10      # ceil(45 / 5) = 9, raised to the minimum
        stats = service.completion_stats("proj", "q1").data
        assert stats["total_reviewers"] == 5
        assert stats["target"] == 50

    def test_refresh_after_decisions_keeps_quota(self, service: ComparisonService) -> None:
        _open(service)
        _judge(service, "s1")
        result = service.refresh_quota("proj", "q1", _items(6), ["s1"])
        assert result.success
        assert not result.data["changed"]
        assert result.data["quota"] == 15
        assert service.completion_stats("proj", "q1").data["total_reviewers"] == 3

    def test_refresh_with_duplicate_reviewers_changes_nothing(
        self, service: ComparisonService,
    ) -> None:
        _open(service)
        result = service.refresh_quota("proj", "q1", _items(6), ["s1", "s2", "s3", "s4", "s1"])
        assert not result.success
        assert service.coordinator.get_open("proj", "q1").quota == 15
        assert service.coordinator.get_open("proj", "q1").reviewer_count == 3
        assert service._event_log.events(EventKind.QUOTA_UPDATED) == []
        assert service.completion_stats("proj", "q1").data["target"] == 45


class TestSessionConfig:
    def test_disallow_ties(self, service: ComparisonService) -> None:
        _open(service)
        assert service.update_session_config("proj", "q1", allow_tie=False).success
        result = _judge(service, "s1", outcome="neutral")
        assert not result.success
        assert result.data["accepted"] is False

    def test_bias_threshold_applies_to_live_monitor(self, service: ComparisonService) -> None:
        _open(service)
        service.update_session_config("proj", "q1", consecutive_bias_threshold=2)
        _judge(service, "s1", "right")
        assert _judge(service, "s1", "right").data["signal"]["should_mirror"]

    def test_quota_change_before_decisions(self, service: ComparisonService) -> None:
        _open(service)
        result = service.update_session_config("proj", "q1", reviewer_target_per_person=2)
        assert result.success
        _judge(service, "s1")
        _judge(service, "s1")
        assert service.next_pair("proj", "q1", "s1").data["pair"] is None

    def test_quota_change_after_decisions_refused(self, service: ComparisonService) -> None:
        _open(service)
        _judge(service, "s1")
        result = service.update_session_config("proj", "q1", reviewer_target_per_person=2)
        assert not result.success
        assert service.reviewer_stats("proj", "q1", "s1").data["target"] == 15

    def test_negative_quota_refused_without_trace(self, service: ComparisonService) -> None:
        _open(service)
        result = service.update_session_config("proj", "q1", reviewer_target_per_person=-1)
        assert not result.success
        assert "reviewer_target_per_person" in result.errors[0]
        assert service.coordinator.get_open("proj", "q1").quota == 15
        assert service._event_log.events(EventKind.CONFIG_UPDATED) == []
        assert service.reviewer_stats("proj", "q1", "s1").data["target"] == 15

    def test_zero_bias_threshold_refused(self, service: ComparisonService) -> None:
        _open(service)
        result = service.update_session_config("proj", "q1", consecutive_bias_threshold=0)
        assert not result.success
        config = service.coordinator.get_open("proj", "q1").config
        assert config.consecutive_bias_threshold == 5
        assert service._event_log.events(EventKind.CONFIG_UPDATED) == []


# =====================================================================
# Decisions
# =====================================================================


class TestDecisions:
    def test_submit_accepted(self, service: ComparisonService) -> None:
        _open(service)
        result = _judge(service, "s1")
        assert result.success
        assert result.data["accepted"]
        assert result.data["remaining"] == 14
        assert result.data["status"] == "in_progress"
        assert result.data["signal"]["should_mirror"] is False

    def test_decision_is_logged(self, service: ComparisonService) -> None:
        _open(service)
        _judge(service, "s1")
        history = service._event_log.decision_history("proj", "q1")
        assert len(history) == 1
        assert history[0].reviewer_id == "s1"

    def test_repeat_pair_rejected(self, service: ComparisonService) -> None:
        _open(service)
        pair = service.next_pair("proj", "q1", "s1").data["pair"]
        args = ("proj", "q1", "s1", pair["item_a_id"], pair["item_b_id"], "left")
        assert service.submit_decision(*args).data["accepted"]
        repeat = service.submit_decision(*args)
        assert not repeat.success
        assert repeat.data["accepted"] is False
        assert "already judged" in repeat.errors[0]
        assert len(service._event_log.decision_history("proj", "q1")) == 1

    def test_unknown_item_rejected(self, service: ComparisonService) -> None:
        _open(service)
        result = service.submit_decision("proj", "q1", "s1", "q1-r1", "nope", "left")
        assert not result.success
        assert result.data["accepted"] is False

    def test_unknown_outcome_rejected(self, service: ComparisonService) -> None:
        _open(service)
        result = service.submit_decision("proj", "q1", "s1", "q1-r1", "q1-r2", "both")
        assert not result.success

    def test_unknown_question_rejected(self, service: ComparisonService) -> None:
        result = service.submit_decision("proj", "q9", "s1", "a", "b", "left")
        assert not result.success

    def test_log_failure_leaves_state_untouched(
        self, service: ComparisonService, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        _open(service)

        def broken(event):
            raise OSError("disk full")

        monkeypatch.setattr(service._event_log, "append", broken)
        result = _judge(service, "s1")
        assert not result.success
        assert "Event log failure" in result.errors[0]
        assert service.completion_stats("proj", "q1").data["total_completed"] == 0
        assert service.reviewer_quality("proj", "q1", "s1").data["total_comparisons"] == 0

    def test_three_items_scenario(self, service: ComparisonService) -> None:
        service.open_session("proj", "q1", _items(3), ["s1", "s2"], seed="tiny")
        service.update_session_config("proj", "q1", reviewer_target_per_person=3)
        for _ in range(3):
            assert _judge(service, "s1").data["accepted"]
        done = service.next_pair("proj", "q1", "s1")
        assert done.success
        assert done.data["pair"] is None
        assert done.data["status"] == "completed"
        for _ in range(3):
            assert _judge(service, "s2").data["accepted"]


class TestQualitySignals:
    def test_bias_signal_on_fifth_left(self, service: ComparisonService) -> None:
        _open(service)
        signals = [_judge(service, "s1", "left").data["signal"] for _ in range(5)]
        assert [s["should_mirror"] for s in signals] == [False] * 4 + [True]
        assert signals[-1]["mirror_type"] == "consecutive_bias"

    def test_popup_on_third_short_decision(self, service: ComparisonService) -> None:
        _open(service)
        signals = [
            _judge(service, "s1", "neutral", latency_ms=900).data["signal"] for _ in range(4)
        ]
        assert [s["should_show_popup"] for s in signals] == [False, False, True, False]

    def test_consistency_and_trust(self, service: ComparisonService) -> None:
        _open(service)
        service.record_consistency_check("proj", "q1", "s2", consistent=False)
        result = service.set_reviewer_trust(
            "proj", "q1", "s2", final_weight=0.5, low_agreement_flag=True, agreement_rate=0.4,
        )
        assert result.success
        quality = service.reviewer_quality("proj", "q1", "s2").data
        assert quality["inconsistency_count"] == 1
        assert quality["inconsistency_rate"] == 1.0
        assert quality["final_weight"] == 0.5
        assert quality["low_agreement_flag"] is True

    def test_invalid_trust_not_logged(self, service: ComparisonService) -> None:
        _open(service)
        before = service._event_log.count
        result = service.set_reviewer_trust("proj", "q1", "s2", agreement_rate=2.0)
        assert not result.success
        assert service._event_log.count == before

    def test_all_reviewer_quality(self, service: ComparisonService) -> None:
        _open(service)
        data = service.reviewer_quality("proj", "q1").data
        assert set(data["reviewers"]) == set(REVIEWERS)


# =====================================================================
# Statistics and status
# =====================================================================


class TestStats:
    def test_completion_stats(self, service: ComparisonService) -> None:
        _open(service)
        _judge(service, "s1")
        _judge(service, "s2")
        data = service.completion_stats("proj", "q1").data
        assert data["total_completed"] == 2
        assert data["target"] == 45
        assert data["progress_pct"] == 4
        assert data["reviewers"] == {
            "s1": "in_progress", "s2": "in_progress", "s3": "not_started",
        }

    def test_reviewer_stats(self, service: ComparisonService) -> None:
        _open(service)
        _judge(service, "s1")
        data = service.reviewer_stats("proj", "q1", "s1").data
        assert data["completed"] == 1
        assert data["remaining"] == 14
        assert data["estimated_seconds_remaining"] == 420
        assert data["status"] == "in_progress"

    def test_unknown_reviewer_stats(self, service: ComparisonService) -> None:
        _open(service)
        assert not service.reviewer_stats("proj", "q1", "ghost").success

    def test_item_states(self, service: ComparisonService) -> None:
        _open(service)
        service.submit_decision("proj", "q1", "s1", "q1-r1", "q1-r2", "left")
        items = service.item_states("proj", "q1").data["items"]
        assert items["q1-r1"]["temp_score"] == 0.1
        assert items["q1-r2"]["losses"] == 1

    def test_status(self, service: ComparisonService) -> None:
        _open(service, "q1")
        _open(service, "q2")
        service.close_session("proj", "q2")
        status = service.status()
        assert status["sessions"]["total"] == 2
        assert status["sessions"]["open"] == 1
        assert [s["question_id"] for s in status["sessions"]["live"]] == ["q1"]
        assert status["persistence_degraded"] is False


# =====================================================================
# Persistence and recovery
# =====================================================================


class TestRecovery:
    def test_restart_rebuilds_from_log(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        log_path = tmp_path / "events.jsonl"
        state_path = tmp_path / "state.json"

        first = ComparisonService(resolver, EventLog(log_path), StateStore(state_path))
        opened = _open(first)
        for rid in REVIEWERS:
            _judge(first, rid, "left", latency_ms=800)
        _judge(first, "s1", "right", latency_ms=800)
        first.set_reviewer_trust("proj", "q1", "s3", final_weight=0.25)
        expected_items = first.item_states("proj", "q1").data
        expected_quality = first.reviewer_quality("proj", "q1").data

        second = ComparisonService(resolver, EventLog(log_path), StateStore(state_path))
        reopened = _open(second)
        assert not reopened.data["created"]
        assert reopened.data["session_id"] == opened.data["session_id"]
        assert reopened.data["total_completed"] == 4
        assert second.item_states("proj", "q1").data == expected_items
        rebuilt = second.reviewer_quality("proj", "q1").data
        for rid in REVIEWERS:
            for field in ("total_comparisons", "consecutive_short", "final_weight"):
                assert rebuilt["reviewers"][rid][field] == expected_quality["reviewers"][rid][field]

    def test_restart_from_log_alone_resumes_session(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        log_path = tmp_path / "events.jsonl"
        first = ComparisonService(resolver, EventLog(log_path))
        opened = _open(first)
        pair = first.next_pair("proj", "q1", "s1").data["pair"]
        args = ("proj", "q1", "s1", pair["item_a_id"], pair["item_b_id"], "left")
        assert first.submit_decision(*args).success

        second = ComparisonService(resolver, EventLog(log_path))
        reopened = second.open_session("proj", "q1", _items(6), REVIEWERS)
        assert reopened.success
        assert not reopened.data["created"]
        assert reopened.data["session_id"] == opened.data["session_id"]
        assert reopened.data["random_seed"] == "seed"
        assert reopened.data["total_completed"] == 1

        repeat = second.submit_decision(*args)
        assert not repeat.success
        assert "already judged" in repeat.errors[0]

    def test_restart_from_log_keeps_config_and_close(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        log_path = tmp_path / "events.jsonl"
        first = ComparisonService(resolver, EventLog(log_path))
        _open(first, "q1")
        first.update_session_config("proj", "q1", reviewer_target_per_person=3, allow_tie=False)
        _open(first, "q2")
        first.close_session("proj", "q2")

        second = ComparisonService(resolver, EventLog(log_path))
        assert second.coordinator.find_open("proj", "q2") is None
        assert second.status()["sessions"] == {"total": 2, "open": 1, "live": []}
        reopened = _open(second, "q1")
        assert reopened.data["quota"] == 3
        assert reopened.data["config"]["allow_tie"] is False

    def test_restart_after_degraded_store_follows_log(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        log_path = tmp_path / "events.jsonl"
        state_path = tmp_path / "state.json"
        first = ComparisonService(resolver, EventLog(log_path), StateStore(state_path))
        opened = _open(first)
        _judge(first, "s2")

        # The store keeps the open session while the log records the close.
        snapshot = state_path.read_text(encoding="utf-8")
        first.close_session("proj", "q1")
        state_path.write_text(snapshot, encoding="utf-8")

        second = ComparisonService(resolver, EventLog(log_path), StateStore(state_path))
        assert second.coordinator.find_open("proj", "q1") is None
        reopened = _open(second)
        assert reopened.data["created"]
        assert reopened.data["session_id"] != opened.data["session_id"]

    def test_replayed_quality_state_matches_live(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        log_path = tmp_path / "events.jsonl"
        first = ComparisonService(resolver, EventLog(log_path))
        _open(first)
        for _ in range(3):
            _judge(first, "s1", "left", latency_ms=500)
        live = first._registry.get(("proj", "q1")).monitor.state("s1")
        assert live.last_popup_utc is not None

        second = ComparisonService(resolver, EventLog(log_path))
        _open(second)
        assert second._registry.get(("proj", "q1")).monitor.state("s1") == live

    def test_event_ids_continue_after_restart(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        log_path = tmp_path / "events.jsonl"
        first = ComparisonService(resolver, EventLog(log_path))
        _open(first)
        _judge(first, "s1")

        second = ComparisonService(resolver, EventLog(log_path))
        second.open_session("proj", "q2", _items(4, "q2"), REVIEWERS)
        ids = [e.event_id for e in EventLog(log_path).events()]
        assert len(ids) == len(set(ids)) == 3

    def test_store_failure_without_log_rolls_back(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("x", encoding="utf-8")
        service = ComparisonService(resolver, state_store=StateStore(blocker / "state.json"))

        result = service.open_session("proj", "q1", _items(4), REVIEWERS)
        assert not result.success
        assert "Persistence failure" in result.errors[0]
        assert service.coordinator.all_sessions() == []
        assert not service.next_pair("proj", "q1", "s1").success

    def test_store_failure_with_log_degrades(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("x", encoding="utf-8")
        service = ComparisonService(
            resolver, EventLog(tmp_path / "events.jsonl"), StateStore(blocker / "state.json"),
        )
        result = service.open_session("proj", "q1", _items(4), REVIEWERS)
        assert result.success
        assert "warning" in result.data
        assert service.status()["persistence_degraded"] is True
