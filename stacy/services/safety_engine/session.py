"""Safety session: wires scorer, router, machine and dispatcher for one user.

A session is driven by one periodic tick (default every 200ms). Each
tick recomputes risk, feeds it to the state machine, evaluates
transitions and renders the risk bar. Signal producers push into
`session.router` from any thread at any time.

Usage:
    session = SafetySession("sess_123", ActionJournal())
    session.start()
    session.router.ingest_transcript(TranscriptSample("someone is following me"))
    ...
    session.close()
"""
import logging
import threading
import uuid
from typing import Callable, Dict, List, Optional

from stacy.shared.models import RiskSnapshot
from stacy.shared.utils import hash_identifier
from .config import SafetyEngineConfig
from .dispatcher import ActionDispatcher, SafetyCollaborator
from .risk_scorer import RiskScorer, monotonic_ms
from .signal_router import SignalRouter
from .state_machine import EscalationStateMachine

logger = logging.getLogger(__name__)


class SafetySession:
    """One user's risk engine, escalation machine and periodic driver.

    Tests call `step(now_ms)` with a synthetic clock; production calls
    `start()` to tick on a background thread.
    """

    def __init__(
        self,
        session_id: str,
        *collaborators: SafetyCollaborator,
        config: Optional[SafetyEngineConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Initialize session.

        Args:
            session_id: Session identifier (hashed for logging)
            collaborators: Receivers of action requests
            config: Engine configuration
            clock: Millisecond clock; defaults to monotonic time
        """
        self.session_id = session_id
        self.session_id_hash = hash_identifier(session_id)
        self.config = config or SafetyEngineConfig()
        self._clock = clock or monotonic_ms

        self.dispatcher = ActionDispatcher(*collaborators)
        self.scorer = RiskScorer(config=self.config.scorer, clock=self._clock)
        self.machine = EscalationStateMachine(
            thresholds=self.config.thresholds,
            on_enter=self.dispatcher.on_enter,
            on_action=self.dispatcher.on_action,
            on_state_change=self.dispatcher.on_state_change,
        )
        self.router = SignalRouter(self.scorer, self.machine, config=self.config.router)

        self._last_snapshot = RiskSnapshot(instant=0.0, ewma=0.0, risk=0.0)
        self._last_context_injection_ms: Optional[float] = None
        self._step_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        logger.info(
            "SAFETY_SESSION_CREATED",
            extra={
                "session_id_hash": self.session_id_hash,
                "collaborator_count": len(collaborators),
                "tick_interval_ms": self.config.tick_interval_ms,
            }
        )

    @property
    def closed(self) -> bool:
        return self.machine.closed

    @property
    def state(self):
        return self.machine.state

    @property
    def last_snapshot(self) -> RiskSnapshot:
        return self._last_snapshot

    def step(self, now_ms: Optional[float] = None) -> RiskSnapshot:
        """Run one tick: score, sample, evaluate, render, maybe inject context."""
        with self._step_lock:
            if self.closed:
                return self._last_snapshot

            now = self._clock() if now_ms is None else now_ms
            snapshot = self.scorer.tick(now)
            self._last_snapshot = snapshot

            self.machine.on_risk_sample(risk=snapshot.risk, ewma=snapshot.ewma)
            self.machine.evaluate(now)
            self.dispatcher.render_risk_bar(snapshot.risk)

            interval = self.config.context_injection_interval_ms
            last = self._last_context_injection_ms
            if last is None or now - last >= interval:
                self.dispatcher.inject_state_context(self.machine.state, round(snapshot.risk))
                self._last_context_injection_ms = now

            return snapshot

    def start(self) -> None:
        """Start the periodic driver on a daemon thread."""
        if self.closed or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"safety-tick-{self.session_id_hash[:8]}",
            daemon=True,
        )
        self._thread.start()
        logger.info("SAFETY_DRIVER_STARTED", extra={"session_id_hash": self.session_id_hash})

    def _run(self) -> None:
        interval_s = self.config.tick_interval_ms / 1000.0
        while not self._stop.wait(interval_s):
            try:
                self.step()
            except Exception as e:
                # A failed tick must never stop the next one
                logger.error(
                    "SAFETY_TICK_FAILED",
                    extra={
                        "session_id_hash": self.session_id_hash,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )

    def reset(self) -> None:
        """Reset the session to SAFE with a fresh score (leaves RESOLVED)."""
        with self._step_lock:
            self.machine.reset()
            self.scorer.reset()
            self._last_snapshot = RiskSnapshot(instant=0.0, ewma=0.0, risk=0.0)
            self._last_context_injection_ms = None
        logger.info("SAFETY_SESSION_RESET", extra={"session_id_hash": self.session_id_hash})

    def close(self) -> None:
        """Stop the driver, cancel all pending timers, release collaborators.

        Idempotent.
        """
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, 5 * self.config.tick_interval_ms / 1000.0))
        self._thread = None

        with self._step_lock:
            if self.closed:
                return
            self.machine.close()

        self.dispatcher.close()
        logger.info(
            "SAFETY_SESSION_CLOSED",
            extra={
                "session_id_hash": self.session_id_hash,
                "final_state": self.machine.state.value,
            }
        )

    def status(self) -> Dict:
        """Convert to dictionary for API responses."""
        return {
            "session_id": self.session_id,
            "state": self.machine.state.value,
            "snapshot": self._last_snapshot.to_dict(),
            "pending": [p.candidate for p in self.machine.pending()],
            "user_says_safe": self.machine.user_says_safe,
            "closed": self.closed,
        }

    def __enter__(self) -> "SafetySession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class SessionRegistry:
    """Thread-safe map of live sessions."""

    def __init__(self, session_factory: Optional[Callable[[str], SafetySession]] = None):
        self._session_factory = session_factory or SafetySession
        self._sessions: Dict[str, SafetySession] = {}
        self._lock = threading.Lock()

    def create(self, session_id: Optional[str] = None) -> SafetySession:
        session_id = session_id or f"sess_{uuid.uuid4().hex[:12]}"
        with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"Session already exists: {session_id}")
            session = self._session_factory(session_id)
            self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Optional[SafetySession]:
        with self._lock:
            return self._sessions.get(session_id)

    def close(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        return True

    def close_all(self) -> None:
        with self._lock:
            sessions: List[SafetySession] = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
