"""Tests for SafetySession - end-to-end scoring and escalation scenarios."""
import threading
import time

import pytest
from unittest.mock import MagicMock, patch

from stacy.shared.models import (
    DiscreteTrigger,
    EscalationState,
    LocationSample,
    MotionSample,
    ProsodySample,
    TranscriptSample,
)
from stacy.services.safety_engine.config import SafetyEngineConfig
from stacy.services.safety_engine.dispatcher import ActionJournal, SafetyCollaborator
from stacy.services.safety_engine.session import SafetySession, SessionRegistry
from stacy.services.safety_engine.state_publisher import StateChangePublisher


TICK_MS = 200


class TransitionClock(SafetyCollaborator):
    """Records the logical time of every state change."""

    def __init__(self, clock):
        self.clock = clock
        self.transitions = []

    def on_state_change(self, next_state, prev_state):
        self.transitions.append((self.clock(), prev_state, next_state))


@pytest.fixture
def journal():
    return ActionJournal(maxlen=5000)


@pytest.fixture
def timeline(clock):
    return TransitionClock(clock)


@pytest.fixture
def session(clock, journal, timeline):
    with SafetySession("sess_test", journal, timeline, clock=clock) as s:
        yield s


def run(session, clock, ticks, feed=None):
    snapshots = []
    for _ in range(ticks):
        if feed:
            feed(session)
        snapshots.append(session.step(clock.advance(TICK_MS)))
    return snapshots


def full_distress(session):
    session.router.ingest_transcript(TranscriptSample("I am being followed, help"))
    session.router.ingest_prosody(ProsodySample(rms=1.0, zero_crossing_rate=1.0, speech_rate=50))
    session.router.ingest_motion(MotionSample(score=100))
    session.router.ingest_location(LocationSample(precision_meters=800))


def moderate_distress(session):
    session.router.ingest_transcript(TranscriptSample("I am being followed, help"))
    session.router.ingest_prosody(ProsodySample(rms=1.0, zero_crossing_rate=1.0, speech_rate=50))


class TestSingleSpike:

    def test_spike_decays_without_escalation(self, session, clock):
        """One transcript spike, then 5s of silence."""
        session.scorer.update_components({"transcript": 100})
        snapshots = run(session, clock, 25)

        ewma_peak = max(s.ewma for s in snapshots)
        risk_peak = max(s.risk for s in snapshots)

        assert snapshots[0].ewma == ewma_peak
        assert risk_peak < ewma_peak
        assert snapshots[-1].ewma < ewma_peak
        assert snapshots[-1].risk < risk_peak or snapshots[-1].risk == 0.0
        assert session.state == EscalationState.SAFE


class TestSustainedDistress:

    def test_escalates_through_elevated_to_critical(self, session, clock, timeline):
        run(session, clock, 50, feed=full_distress)

        assert session.state == EscalationState.CRITICAL
        states = [(prev, nxt) for _, prev, nxt in timeline.transitions]
        assert states == [
            (EscalationState.SAFE, EscalationState.ELEVATED),
            (EscalationState.ELEVATED, EscalationState.CRITICAL),
        ]

        elevated_at, critical_at = timeline.transitions[0][0], timeline.transitions[1][0]
        assert elevated_at >= 3000
        assert critical_at - elevated_at >= 1000

    def test_moderate_distress_stays_elevated(self, session, clock):
        snapshots = run(session, clock, 100, feed=moderate_distress)

        assert session.state == EscalationState.ELEVATED
        assert 40 <= snapshots[-1].risk < 70

    def test_critical_requests_all_effects(self, session, clock, journal):
        run(session, clock, 50, feed=full_distress)

        names = journal.names()
        for action in (
            "notify_contacts_if_not_yet",
            "start_recording_if_not_yet",
            "start_safe_routing_if_not_yet",
            "ensure_incident_started",
            "suggest_notify_or_route",
        ):
            assert action in names

    def test_user_safe_resolves_after_calm(self, session, clock, journal):
        run(session, clock, 100, feed=moderate_distress)
        assert session.state == EscalationState.ELEVATED

        session.router.user_attests_safe()
        run(session, clock, 170)

        assert session.state == EscalationState.RESOLVED
        assert journal.count("finalize_incident_once") >= 2


class TestHardTriggerPath:

    def test_safe_phrase_in_safe_is_immediately_critical(self, session, journal):
        session.router.ingest_transcript(TranscriptSample("how's the weather?"))

        assert session.state == EscalationState.CRITICAL
        assert session.last_snapshot.risk == 0.0
        assert "set_banner" in journal.names()

    def test_recurring_critical_effects_on_next_tick(self, session, clock, journal):
        session.router.ingest_trigger(DiscreteTrigger.NOTIFY_NOW)
        journal.clear()

        run(session, clock, 1)

        assert journal.names()[:3] == [
            "notify_contacts_if_not_yet",
            "start_recording_if_not_yet",
            "start_safe_routing_if_not_yet",
        ]


class TestDriverOutputs:

    def test_risk_bar_every_step(self, clock):
        ui = MagicMock(spec=SafetyCollaborator)
        session = SafetySession("sess_ui", ui, clock=clock)

        run(session, clock, 7)

        assert ui.render_risk_bar.call_count == 7

    def test_state_context_rate_limited(self, session, clock, journal):
        run(session, clock, 60)

        injections = [args for name, args in journal.entries() if name == "inject_state_context"]
        assert injections == [
            (EscalationState.SAFE, 0),
            (EscalationState.SAFE, 0),
        ]

    def test_status(self, session, clock):
        run(session, clock, 1)
        status = session.status()

        assert status["session_id"] == "sess_test"
        assert status["state"] == "SAFE"
        assert status["snapshot"] == {"instant": 0.0, "ewma": 0.0, "risk": 0.0}
        assert status["pending"] == []
        assert status["closed"] is False


class TestLifecycle:

    def test_close_stops_everything(self, clock, journal):
        session = SafetySession("sess_close", journal, clock=clock)
        run(session, clock, 20, feed=full_distress)
        session.close()
        journal.clear()

        run(session, clock, 50, feed=full_distress)
        session.router.ingest_trigger(DiscreteTrigger.NOTIFY_NOW)

        assert journal.entries() == []
        assert session.machine.pending() == []
        assert set(session.scorer.components.values()) == {0.0}
        assert session.closed is True

    def test_close_is_idempotent(self, clock):
        session = SafetySession("sess_twice", clock=clock)
        session.close()
        session.close()
        assert session.closed is True

    def test_reset_leaves_resolved(self, session, clock):
        run(session, clock, 100, feed=moderate_distress)
        session.router.user_attests_safe()
        run(session, clock, 170)
        assert session.state == EscalationState.RESOLVED

        session.reset()

        assert session.state == EscalationState.SAFE
        assert session.last_snapshot.risk == 0.0

    def test_background_driver_ticks_and_survives_failures(self):
        config = SafetyEngineConfig(tick_interval_ms=5)
        session = SafetySession("sess_thread", config=config)
        calls = []
        real_step = session.step

        def flaky_step(now_ms=None):
            calls.append(now_ms)
            if len(calls) == 1:
                raise RuntimeError("first tick fails")
            return real_step(now_ms)

        session.step = flaky_step
        session.start()
        driver = session._thread
        deadline = time.monotonic() + 2.0
        while len(calls) < 5 and time.monotonic() < deadline:
            time.sleep(0.01)
        session.close()

        assert len(calls) >= 5
        assert isinstance(driver, threading.Thread)
        assert not driver.is_alive()


class TestSlowCollaborators:

    @patch('boto3.client')
    def test_slow_kinesis_does_not_delay_step_or_trigger(self, mock_boto_client, clock):
        put_started = threading.Event()
        release = threading.Event()

        def slow_put(**kwargs):
            put_started.set()
            release.wait(timeout=5)
            return {"ShardId": "shard-001"}

        mock_kinesis = MagicMock()
        mock_kinesis.put_record.side_effect = slow_put
        mock_boto_client.return_value = mock_kinesis
        publisher = StateChangePublisher("sess_slow", stream_name="test-stream")
        session = SafetySession("sess_slow", publisher, clock=clock)

        trigger = threading.Thread(
            target=session.router.ingest_trigger, args=(DiscreteTrigger.NOTIFY_NOW,)
        )
        trigger.start()
        trigger.join(timeout=1.0)
        trigger_returned = not trigger.is_alive()
        assert put_started.wait(timeout=5)

        started = time.monotonic()
        session.step(clock.advance(TICK_MS))
        elapsed = time.monotonic() - started

        release.set()
        publisher.close(wait=True)
        session.close()

        assert trigger_returned
        assert elapsed < 0.1
        assert session.state == EscalationState.CRITICAL
        mock_kinesis.put_record.assert_called_once()


class TestSessionRegistry:

    def test_create_get_close(self, clock):
        registry = SessionRegistry(session_factory=lambda sid: SafetySession(sid, clock=clock))
        session = registry.create("sess_a")

        assert registry.get("sess_a") is session
        assert len(registry) == 1
        assert registry.close("sess_a") is True
        assert session.closed is True
        assert registry.get("sess_a") is None
        assert registry.close("sess_a") is False

    def test_generated_ids_are_unique(self, clock):
        registry = SessionRegistry(session_factory=lambda sid: SafetySession(sid, clock=clock))
        first, second = registry.create(), registry.create()

        assert first.session_id != second.session_id
        registry.close_all()
        assert len(registry) == 0
        assert first.closed and second.closed

    def test_duplicate_id_rejected(self, clock):
        registry = SessionRegistry(session_factory=lambda sid: SafetySession(sid, clock=clock))
        registry.create("sess_dup")

        with pytest.raises(ValueError):
            registry.create("sess_dup")
