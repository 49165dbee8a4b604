"""Comparison service — unified facade for the peer comparison engine.

This is the primary interface for programmatic access to peereval.
It orchestrates all subsystems:
- Session lifecycle (open, refresh quota, reconfigure, close, advance)
- Pair scheduling (next pair, decision recording, progress statistics)
- Reviewer quality (bias and speed signals, consistency, trust fields)
- Persistence (event log, state store)

All operations produce typed results. Every accepted decision is
appended to the event log before it reaches the in-memory scheduler,
so a failed write never leaves a phantom decision behind. Live state
for a question is rebuilt from the log when its session is opened.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from peereval.errors import InvalidDecisionError
from peereval.models.comparison import Decision, Outcome, ResponseItem
from peereval.models.session import SessionRecord
from peereval.persistence.event_log import (
    EventKind,
    EventLog,
    EventRecord,
    decision_from_payload,
    decision_payload,
)
from peereval.persistence.state_store import StateStore
from peereval.policy.resolver import PolicyResolver, QualityThresholds
from peereval.quality.monitor import QualityMonitor, validate_trust
from peereval.scheduling.scheduler import PairScheduler
from peereval.session.coordinator import ReviewerProgressTracker, SessionCoordinator
from peereval.session.registry import SessionRegistry, SessionRuntime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


class ComparisonService:
    """Peer comparison engine facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = ComparisonService(resolver)

        service.open_session("proj-1", "q1", responses, ["s1", "s2"])
        result = service.next_pair("proj-1", "q1", "s1")
        pair = result.data["pair"]
        result = service.submit_decision(
            "proj-1", "q1", "s1", pair["item_a_id"], pair["item_b_id"], "left",
            latency_ms=4200,
        )
        if result.data["signal"]["should_show_popup"]:
            ...

    Persistence (optional):
        service = ComparisonService(resolver, event_log=log, state_store=store)
        # Session records are persisted on each lifecycle change and, with
        # a log wired, rebuilt from its lifecycle events on restart; scheduler
        # and quality state are replayed from the log on open_session().

    Locking: each question session has its own lock (see SessionRegistry).
    The service lock guards session records, the event log and the state
    store, and is always taken after a session lock, never before.
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
    ) -> None:
        self._resolver = resolver
        self._event_log = event_log
        self._state_store = state_store

        sessions: dict[str, SessionRecord] = {}
        if state_store is not None:
            sessions = {r.session_id: r for r in state_store.load_sessions()}
        if event_log is not None:
            # The log wins over the store, which may be stale or missing.
            for record in event_log.session_records(resolver.app_version()):
                stored = sessions.get(record.session_id)
                if stored is not None:
                    record.metadata = stored.metadata
                sessions[record.session_id] = record
        self._coordinator = SessionCoordinator(resolver, sessions.values())
        self._registry = SessionRegistry()
        self._lock = threading.RLock()

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0

        # Set when a StateStore write fails after the event was committed.
        # The log stays authoritative; the store needs a rewrite.
        self._persistence_degraded: bool = False

    @property
    def coordinator(self) -> SessionCoordinator:
        return self._coordinator

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def open_session(
        self,
        project_id: str,
        question_id: str,
        responses: list[ResponseItem],
        reviewer_ids: list[str],
        seed: Optional[str] = None,
    ) -> ServiceResult:
        """Open (or resume) the comparison session for a question.

        If a session is already open for the question, its live state is
        returned unchanged; if it is open but not loaded (after a
        restart), it is rebuilt from the event log.
        """
        key = (project_id, question_id)
        try:
            with self._lock:
                record, created = self._coordinator.open_session(
                    project_id, question_id, len(responses), len(reviewer_ids), seed=seed,
                )
                live = self._registry.find(key)
                if not created and live is not None and live.record is record:
                    return ServiceResult(
                        success=True, data=self._session_data(live, created=False),
                    )

                try:
                    runtime = self._build_runtime(record, responses, reviewer_ids)
                except ValueError:
                    if created:
                        self._coordinator.forget(record.session_id)
                    raise

                if created:
                    err = self._record_event(
                        EventKind.SESSION_OPENED,
                        actor_id="system",
                        payload={
                            "project_id": project_id,
                            "question_id": question_id,
                            "session_id": record.session_id,
                            "random_seed": record.random_seed,
                            "app_version": record.app_version,
                            "response_count": record.response_count,
                            "reviewer_count": record.reviewer_count,
                            "config": record.config.to_dict(),
                        },
                    )
                    if err:
                        self._coordinator.forget(record.session_id)
                        return ServiceResult(success=False, errors=[err])

                self._registry.put(runtime)

                def _rollback() -> None:
                    self._registry.pop(key)
                    self._coordinator.forget(record.session_id)

                err, warning = self._persist(on_rollback=_rollback if created else None)
                if err:
                    return ServiceResult(success=False, errors=[err])

                data = self._session_data(runtime, created=created)
                if warning:
                    data["warning"] = warning
                return ServiceResult(success=True, data=data)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

    def close_session(self, project_id: str, question_id: str) -> ServiceResult:
        """Close the open session for a question and discard its live state."""
        key = (project_id, question_id)
        runtime = self._registry.find(key)
        guard = runtime.lock if runtime is not None else contextlib.nullcontext()
        try:
            with guard, self._lock:
                record = self._coordinator.get_open(project_id, question_id)
                err = self._record_event(
                    EventKind.SESSION_CLOSED,
                    actor_id="system",
                    payload={
                        "project_id": project_id,
                        "question_id": question_id,
                        "session_id": record.session_id,
                    },
                )
                if err:
                    return ServiceResult(success=False, errors=[err])

                final_stats = (
                    runtime.scheduler.completion_stats().to_dict()
                    if runtime is not None
                    else None
                )
                self._coordinator.close_session(project_id, question_id)
                removed = self._registry.pop(key)

                def _rollback() -> None:
                    record.closed_utc = None
                    if removed is not None:
                        self._registry.put(removed)

                err, warning = self._persist(on_rollback=_rollback)
                if err:
                    return ServiceResult(success=False, errors=[err])

                data: dict[str, Any] = {
                    "session_id": record.session_id,
                    "closed_utc": record.closed_utc.strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "completion": final_stats,
                }
                if warning:
                    data["warning"] = warning
                return ServiceResult(success=True, data=data)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

    def advance_question(
        self,
        project_id: str,
        from_question_id: str,
        to_question_id: str,
        responses: list[ResponseItem],
        reviewer_ids: list[str],
        seed: Optional[str] = None,
    ) -> ServiceResult:
        """Close the current question (if open) and open the next one.

        Nothing carries over: the next question gets a fresh scheduler,
        fresh quotas and fresh quality counters.
        """
        closed_session_id = None
        if self._coordinator.find_open(project_id, from_question_id) is not None:
            closed = self.close_session(project_id, from_question_id)
            if not closed.success:
                return closed
            closed_session_id = closed.data["session_id"]

        opened = self.open_session(project_id, to_question_id, responses, reviewer_ids, seed=seed)
        if not opened.success:
            return opened
        data = dict(opened.data)
        data["closed_session_id"] = closed_session_id
        return ServiceResult(success=True, data=data)

    def refresh_quota(
        self,
        project_id: str,
        question_id: str,
        responses: list[ResponseItem],
        reviewer_ids: list[str],
    ) -> ServiceResult:
        """Recompute the quota after the response set or roster changed.

        Only takes effect while the session has no decisions. When it
        does, the live scheduler is rebuilt for the new roster.
        """
        key = (project_id, question_id)
        try:
            with self._registry.locked(key) as runtime, self._lock:
                record = runtime.record
                if runtime.scheduler.total_completed > 0:
                    logger.info(
                        "Session %s has decisions; quota stays %d",
                        record.session_id, record.quota,
                    )
                    return ServiceResult(
                        success=True,
                        data={"changed": False, "quota": record.quota, "rebuilt": False},
                    )

                before = (record.config, record.response_count, record.reviewer_count)
                changed = self._coordinator.refresh_quota(
                    project_id, question_id, len(responses), len(reviewer_ids),
                    has_decisions=False,
                )

                def _restore_record() -> None:
                    record.config, record.response_count, record.reviewer_count = before

                try:
                    scheduler, monitor, progress = self._build_parts(
                        record, responses, reviewer_ids,
                    )
                except ValueError:
                    _restore_record()
                    raise

                err = self._record_event(
                    EventKind.QUOTA_UPDATED,
                    actor_id="system",
                    payload={
                        "project_id": project_id,
                        "question_id": question_id,
                        "session_id": record.session_id,
                        "quota": record.quota,
                        "response_count": record.response_count,
                        "reviewer_count": record.reviewer_count,
                    },
                )
                if err:
                    _restore_record()
                    return ServiceResult(success=False, errors=[err])

                previous = (runtime.scheduler, runtime.monitor, runtime.progress)
                runtime.scheduler, runtime.monitor, runtime.progress = scheduler, monitor, progress

                def _rollback() -> None:
                    _restore_record()
                    runtime.scheduler, runtime.monitor, runtime.progress = previous

                err, warning = self._persist(on_rollback=_rollback)
                if err:
                    return ServiceResult(success=False, errors=[err])

                data: dict[str, Any] = {"changed": changed, "quota": record.quota, "rebuilt": True}
                if warning:
                    data["warning"] = warning
                return ServiceResult(success=True, data=data)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

    def update_session_config(
        self,
        project_id: str,
        question_id: str,
        **changes: Any,
    ) -> ServiceResult:
        """Change session tunables (thresholds, strategy, tie policy, ...).

        Quota changes are refused once decisions exist. Quality
        thresholds apply to the live monitor from the next decision on.
        """
        key = (project_id, question_id)
        try:
            with self._registry.locked(key) as runtime, self._lock:
                record = runtime.record
                has_decisions = runtime.scheduler.total_completed > 0
                before = record.config
                self._coordinator.update_config(
                    project_id, question_id, has_decisions, **changes,
                )

                rebuilt = None
                if record.quota != before.reviewer_target_per_person:
                    try:
                        rebuilt = self._build_parts(
                            record, runtime.scheduler.responses, runtime.scheduler.reviewer_ids,
                        )
                    except ValueError:
                        record.config = before
                        raise

                err = self._record_event(
                    EventKind.CONFIG_UPDATED,
                    actor_id="system",
                    payload={
                        "project_id": project_id,
                        "question_id": question_id,
                        "session_id": record.session_id,
                        "changes": dict(changes),
                    },
                )
                if err:
                    record.config = before
                    return ServiceResult(success=False, errors=[err])

                previous = (runtime.scheduler, runtime.monitor, runtime.progress)
                if rebuilt is not None:
                    runtime.scheduler, runtime.monitor, runtime.progress = rebuilt
                else:
                    runtime.monitor.thresholds = self._thresholds_for(record)

                def _rollback() -> None:
                    record.config = before
                    runtime.scheduler, runtime.monitor, runtime.progress = previous
                    runtime.monitor.thresholds = self._thresholds_for(record)

                err, warning = self._persist(on_rollback=_rollback)
                if err:
                    return ServiceResult(success=False, errors=[err])

                data: dict[str, Any] = {"config": record.config.to_dict()}
                if warning:
                    data["warning"] = warning
                return ServiceResult(success=True, data=data)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

    # ------------------------------------------------------------------
    # Pairs and decisions
    # ------------------------------------------------------------------

    def next_pair(self, project_id: str, question_id: str, reviewer_id: str) -> ServiceResult:
        """Draw the next pair for a reviewer.

        A successful result with data["pair"] set to None means the
        reviewer is finished with this question.
        """
        try:
            with self._registry.locked((project_id, question_id)) as runtime:
                pair = runtime.scheduler.next_pair(reviewer_id)
                status = runtime.progress.sync(
                    reviewer_id, runtime.scheduler, started=pair is not None,
                )
                return ServiceResult(
                    success=True,
                    data={
                        "pair": (
                            {
                                "item_a_id": pair.item_a_id,
                                "item_b_id": pair.item_b_id,
                                "priority": pair.priority,
                            }
                            if pair is not None
                            else None
                        ),
                        "status": status.value,
                        "phase": runtime.scheduler.phase.value,
                    },
                )
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

    def submit_decision(
        self,
        project_id: str,
        question_id: str,
        reviewer_id: str,
        item_a_id: str,
        item_b_id: str,
        outcome: Outcome | str,
        latency_ms: int = 0,
        timestamp_utc: Optional[datetime] = None,
    ) -> ServiceResult:
        """Record a reviewer's judgment on a pair.

        Three-step ordering ensures no phantom decisions:
        1. Validate against the scheduler (nothing written yet).
        2. Durable append to the event log (if it fails, nothing changes).
        3. Apply to the scheduler, quality monitor and progress tracker.

        data["accepted"] is False whenever the decision was rejected.
        """
        try:
            with self._registry.locked((project_id, question_id)) as runtime:
                record = runtime.record
                parsed = Outcome.parse(outcome)
                if parsed == Outcome.NEUTRAL and not record.config.allow_tie:
                    raise InvalidDecisionError(
                        f"Session {record.session_id} does not allow neutral decisions"
                    )
                if latency_ms < 0:
                    raise InvalidDecisionError(f"latency_ms must be non-negative, got {latency_ms}")

                # 1. Validate
                reviewer = runtime.scheduler.check_decision(reviewer_id, item_a_id, item_b_id)
                decision = Decision(
                    reviewer_id=reviewer.reviewer_id,
                    item_a_id=item_a_id,
                    item_b_id=item_b_id,
                    outcome=parsed,
                    latency_ms=latency_ms,
                    timestamp_utc=timestamp_utc or datetime.now(timezone.utc),
                )

                # 2. Durable append
                with self._lock:
                    err = self._record_event(
                        EventKind.DECISION_RECORDED,
                        actor_id=decision.reviewer_id,
                        payload=decision_payload(
                            project_id, question_id, decision, session_id=record.session_id,
                        ),
                    )
                if err:
                    return ServiceResult(success=False, errors=[err], data={"accepted": False})

                # 3. Apply
                runtime.scheduler.record_decision(
                    decision.reviewer_id, decision.item_a_id, decision.item_b_id,
                    decision.outcome, decision.latency_ms, decision.timestamp_utc,
                )
                signal = runtime.monitor.process_decision(
                    decision.reviewer_id, decision.outcome, decision.latency_ms,
                    now=decision.timestamp_utc,
                )
                status = runtime.progress.sync(decision.reviewer_id, runtime.scheduler)
                return ServiceResult(
                    success=True,
                    data={
                        "accepted": True,
                        "signal": signal.to_dict(),
                        "remaining": reviewer.remaining_quota,
                        "status": status.value,
                        "phase": runtime.scheduler.phase.value,
                    },
                )
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)], data={"accepted": False})

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def completion_stats(self, project_id: str, question_id: str) -> ServiceResult:
        try:
            with self._registry.locked((project_id, question_id)) as runtime:
                data = runtime.scheduler.completion_stats().to_dict()
                data["reviewers"] = {
                    rid: status.value for rid, status in runtime.progress.statuses().items()
                }
                return ServiceResult(success=True, data=data)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

    def reviewer_stats(
        self, project_id: str, question_id: str, reviewer_id: str,
    ) -> ServiceResult:
        try:
            with self._registry.locked((project_id, question_id)) as runtime:
                data = runtime.scheduler.reviewer_stats(reviewer_id).to_dict()
                data["status"] = runtime.progress.status(reviewer_id).value
                return ServiceResult(success=True, data=data)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

    def item_states(self, project_id: str, question_id: str) -> ServiceResult:
        """Provisional per-item state for the external aggregation layer."""
        try:
            with self._registry.locked((project_id, question_id)) as runtime:
                return ServiceResult(
                    success=True,
                    data={
                        "items": {
                            item_id: {
                                "need": state.need,
                                "temp_score": state.temp_score,
                                "total_comparisons": state.total_comparisons,
                                "wins": state.wins,
                                "losses": state.losses,
                            }
                            for item_id, state in runtime.scheduler.item_states().items()
                        },
                    },
                )
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

    # ------------------------------------------------------------------
    # Reviewer quality
    # ------------------------------------------------------------------

    def reviewer_quality(
        self,
        project_id: str,
        question_id: str,
        reviewer_id: Optional[str] = None,
    ) -> ServiceResult:
        """Quality counters for one reviewer, or for every reviewer."""
        try:
            with self._registry.locked((project_id, question_id)) as runtime:
                if reviewer_id is not None:
                    data = runtime.monitor.state(reviewer_id).to_dict()
                else:
                    data = {
                        "reviewers": {
                            rid: state.to_dict()
                            for rid, state in runtime.monitor.states().items()
                        },
                    }
                return ServiceResult(success=True, data=data)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

    def set_reviewer_trust(
        self,
        project_id: str,
        question_id: str,
        reviewer_id: str,
        final_weight: Optional[float] = None,
        low_agreement_flag: Optional[bool] = None,
        agreement_rate: Optional[float] = None,
    ) -> ServiceResult:
        """Store trust values computed by the aggregation layer."""
        try:
            with self._registry.locked((project_id, question_id)) as runtime:
                state = runtime.monitor.state(reviewer_id)
                validate_trust(final_weight, agreement_rate)

                with self._lock:
                    err = self._record_event(
                        EventKind.TRUST_UPDATED,
                        actor_id=state.reviewer_id,
                        payload={
                            "project_id": project_id,
                            "question_id": question_id,
                            "session_id": runtime.record.session_id,
                            "reviewer_id": state.reviewer_id,
                            "final_weight": final_weight,
                            "low_agreement_flag": low_agreement_flag,
                            "agreement_rate": agreement_rate,
                        },
                    )
                if err:
                    return ServiceResult(success=False, errors=[err])

                new_state = runtime.monitor.set_trust(
                    state.reviewer_id,
                    final_weight=final_weight,
                    low_agreement_flag=low_agreement_flag,
                    agreement_rate=agreement_rate,
                )
                return ServiceResult(success=True, data=new_state.to_dict())
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

    def record_consistency_check(
        self,
        project_id: str,
        question_id: str,
        reviewer_id: str,
        consistent: bool,
    ) -> ServiceResult:
        """Record whether a reviewer judged a reshown pair the same way."""
        try:
            with self._registry.locked((project_id, question_id)) as runtime:
                state = runtime.monitor.state(reviewer_id)

                with self._lock:
                    err = self._record_event(
                        EventKind.CONSISTENCY_CHECKED,
                        actor_id=state.reviewer_id,
                        payload={
                            "project_id": project_id,
                            "question_id": question_id,
                            "session_id": runtime.record.session_id,
                            "reviewer_id": state.reviewer_id,
                            "consistent": bool(consistent),
                        },
                    )
                if err:
                    return ServiceResult(success=False, errors=[err])

                new_state = runtime.monitor.record_consistency_check(
                    state.reviewer_id, bool(consistent),
                )
                return ServiceResult(success=True, data=new_state.to_dict())
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        live = []
        for key in self._registry.keys():
            try:
                with self._registry.locked(key) as runtime:
                    stats = runtime.scheduler.completion_stats()
                    live.append({
                        "project_id": key[0],
                        "question_id": key[1],
                        "session_id": runtime.record.session_id,
                        "phase": stats.phase.value,
                        "progress_pct": stats.progress_pct,
                        "total_completed": stats.total_completed,
                        "target": stats.target,
                        "is_complete": stats.is_complete,
                    })
            except ValueError:
                # closed between keys() and locked()
                continue

        with self._lock:
            all_sessions = self._coordinator.all_sessions()
            return {
                "version": self._resolver.app_version(),
                "sessions": {
                    "total": len(all_sessions),
                    "open": sum(1 for r in all_sessions if r.is_open),
                    "live": live,
                },
                "events": self._event_log.count if self._event_log is not None else 0,
                "persistence_degraded": self._persistence_degraded,
            }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _thresholds_for(self, record: SessionRecord) -> QualityThresholds:
        """Resolver thresholds with the session's own overrides applied."""
        return replace(
            self._resolver.quality_thresholds(),
            short_response_threshold_ms=record.config.short_response_threshold_ms,
            consecutive_bias_threshold=record.config.consecutive_bias_threshold,
        )

    def _build_parts(
        self,
        record: SessionRecord,
        responses: list[ResponseItem],
        reviewer_ids: list[str],
    ) -> tuple[PairScheduler, QualityMonitor, ReviewerProgressTracker]:
        """Build scheduler, monitor and progress for a session, replaying its log."""
        events = (
            self._event_log.question_events(
                record.project_id, record.question_id, record.session_id,
            )
            if self._event_log is not None
            else []
        )
        history = [
            decision_from_payload(e.payload)
            for e in events
            if e.event_kind == EventKind.DECISION_RECORDED
        ]

        scheduler = PairScheduler(
            responses,
            reviewer_ids,
            record.quota,
            self._resolver,
            history=history,
            seed=record.random_seed,
        )
        monitor = QualityMonitor(self._thresholds_for(record), scheduler.reviewer_ids)
        self._replay_quality(monitor, events)

        progress = ReviewerProgressTracker(scheduler.reviewer_ids)
        progress.sync_all(scheduler)
        return scheduler, monitor, progress

    def _build_runtime(
        self,
        record: SessionRecord,
        responses: list[ResponseItem],
        reviewer_ids: list[str],
    ) -> SessionRuntime:
        scheduler, monitor, progress = self._build_parts(record, responses, reviewer_ids)
        return SessionRuntime(
            record=record, scheduler=scheduler, monitor=monitor, progress=progress,
        )

    @staticmethod
    def _replay_quality(monitor: QualityMonitor, events: list[EventRecord]) -> None:
        known = set(monitor.states())
        for event in events:
            reviewer_id = event.payload.get("reviewer_id")
            if reviewer_id not in known:
                continue
            if event.event_kind == EventKind.DECISION_RECORDED:
                decision = decision_from_payload(event.payload)
                monitor.process_decision(
                    reviewer_id, decision.outcome, decision.latency_ms,
                    now=decision.timestamp_utc,
                )
            elif event.event_kind == EventKind.CONSISTENCY_CHECKED:
                monitor.record_consistency_check(reviewer_id, event.payload["consistent"])
            elif event.event_kind == EventKind.TRUST_UPDATED:
                monitor.set_trust(
                    reviewer_id,
                    final_weight=event.payload.get("final_weight"),
                    low_agreement_flag=event.payload.get("low_agreement_flag"),
                    agreement_rate=event.payload.get("agreement_rate"),
                )

    def _session_data(self, runtime: SessionRuntime, created: bool) -> dict[str, Any]:
        record = runtime.record
        return {
            "session_id": record.session_id,
            "created": created,
            "quota": record.quota,
            "random_seed": record.random_seed,
            "phase": runtime.scheduler.phase.value,
            "total_target": runtime.scheduler.total_target,
            "total_completed": runtime.scheduler.total_completed,
            "config": record.config.to_dict(),
        }

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _record_event(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
    ) -> Optional[str]:
        """Append an event to the log (if wired). Returns error string or None.

        Callers hold the service lock.
        """
        if self._event_log is None:
            return None
        try:
            event = EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
            )
            self._event_log.append(event)
        except (ValueError, OSError) as e:
            logger.error("Event log append failed for %s: %s", kind.value, e)
            return f"Event log failure: {e}"
        return None

    def _persist_state(self) -> None:
        """Persist session records to the state store (if wired).

        NOTE: This method can raise OSError. Use _persist() instead.
        """
        if self._state_store is None:
            return
        self._state_store.save_sessions(self._coordinator.all_sessions())

    def _persist(
        self,
        on_rollback: Optional[Callable[[], None]] = None,
    ) -> tuple[Optional[str], Optional[str]]:
        """Persist after a lifecycle change. Returns (error, warning).

        With an event log wired, the change is already durable there, so
        a store failure is only a warning (see _safe_persist_post_audit).
        Without one, the store is the only record and a failure rolls
        the change back (see _safe_persist).
        """
        if self._event_log is not None:
            return None, self._safe_persist_post_audit()
        return self._safe_persist(on_rollback=on_rollback), None

    def _safe_persist(
        self,
        on_rollback: Optional[Callable[[], None]] = None,
    ) -> Optional[str]:
        """Persist state with fail-closed error handling.

        On failure:
        1. Executes the rollback callback to undo in-memory mutations.
        2. Returns an error string for the caller to include in
           a ServiceResult.

        On success, returns None.
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            logger.error("State store write failed, rolling back: %s", e)
            if on_rollback is not None:
                on_rollback()
            return f"Persistence failure: {e}"

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Persist state after the event has been committed to the log.

        MUST NOT rollback in-memory state: the event log is already
        durable and in-memory state matches it. Sets the degraded flag
        and returns a warning string (not a hard error).
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.error("State store write failed after log commit: %s", e)
            return f"Persistence degraded: {e}; state committed in event log but StateStore is stale"
