"""State change publisher: streams escalation transitions to Kinesis.

Downstream consumers (case file, contact notifier, dispatch handoff)
subscribe to the stream instead of being called directly. Records are
handed to a single background worker, so a slow or failing Kinesis call
never stalls the engine tick and transitions stay in order.

Failure Handling:
    - Publishing never raises; the engine keeps deciding regardless
    - Failures are logged at ERROR level with the full payload
"""
import json
import logging
import os
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from stacy.shared.models import EscalationState
from stacy.shared.utils import hash_identifier
from .dispatcher import SafetyCollaborator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateChangeEvent:
    """Immutable escalation transition event."""
    event_id: str
    event_type: str = "safety.state.changed"
    session_id_hash: str = ""
    from_state: str = EscalationState.SAFE.value
    to_state: str = EscalationState.SAFE.value
    trigger_source: str = "safety_engine"
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_escalation(self) -> bool:
        if self.to_state == EscalationState.RESOLVED.value:
            return False
        order = [s.value for s in EscalationState]
        return order.index(self.to_state) > order.index(self.from_state)

    def to_kinesis_payload(self) -> dict:
        """Convert to Kinesis record payload."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp.isoformat() + "Z",
            "source": "safety-engine",
            "data": {
                "session_id_hash": self.session_id_hash,
                "from_state": self.from_state,
                "to_state": self.to_state,
                "is_escalation": self.is_escalation,
                "trigger_source": self.trigger_source,
            }
        }


class StateChangePublisher(SafetyCollaborator):
    """Publishes every state change of one session to a Kinesis stream.

    `on_state_change` only enqueues; `put_record` runs on the worker.
    `publish_state_change` is the synchronous path used by the worker.
    """

    def __init__(
        self,
        session_id: str,
        stream_name: str = "stacy-safety-events",
        enabled: bool = True,
        region: Optional[str] = None,
    ):
        """Initialize publisher.

        Args:
            session_id: Session identifier (hashed before publishing)
            stream_name: Kinesis stream name
            enabled: Whether publishing is enabled (disable for local dev)
            region: AWS region (defaults to AWS_REGION env var)
        """
        self.session_id_hash = hash_identifier(session_id)
        self.stream_name = stream_name
        self.enabled = enabled
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._kinesis_client = None

        # One worker keeps records of a session in transition order
        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"state-publisher-{self.session_id_hash[:8]}",
        )

        logger.info(
            "STATE_PUBLISHER_INITIALIZED",
            extra={
                "stream_name": stream_name,
                "enabled": enabled,
                "session_id_hash": self.session_id_hash,
            }
        )

    @property
    def kinesis_client(self):
        """Lazy initialization of Kinesis client."""
        if self._kinesis_client is None and self.enabled:
            try:
                import boto3
                self._kinesis_client = boto3.client("kinesis", region_name=self.region)
            except Exception as e:
                logger.error("KINESIS_CLIENT_INIT_FAILED", extra={"error": str(e)})
        return self._kinesis_client

    def on_state_change(self, next_state: EscalationState, prev_state: EscalationState) -> None:
        self.submit_state_change(next_state, prev_state)

    def submit_state_change(
        self,
        next_state: EscalationState,
        prev_state: EscalationState,
    ) -> Optional[Future]:
        """Queue one transition for background publishing. Never blocks.

        Returns:
            Future resolving to the publish result, or None if not queued
        """
        if not self.enabled:
            logger.info("STATE_PUBLISH_SKIPPED", extra={"reason": "disabled"})
            return None

        event = self._build_event(next_state, prev_state)
        try:
            return self._executor.submit(self._put_event, event)
        except RuntimeError:
            logger.warning(
                "STATE_PUBLISH_SKIPPED",
                extra={"reason": "publisher_closed", "event_id": event.event_id}
            )
            return None

    def publish_state_change(
        self,
        next_state: EscalationState,
        prev_state: EscalationState,
    ) -> bool:
        """Publish one transition on the calling thread.

        Returns:
            True if published successfully, False otherwise
        """
        if not self.enabled:
            logger.info("STATE_PUBLISH_SKIPPED", extra={"reason": "disabled"})
            return False
        return self._put_event(self._build_event(next_state, prev_state))

    def close(self, wait: bool = False) -> None:
        """Stop accepting records. Already queued records are still sent."""
        self._executor.shutdown(wait=wait)

    def _build_event(self, next_state: EscalationState, prev_state: EscalationState) -> StateChangeEvent:
        return StateChangeEvent(
            event_id=f"evt_{uuid.uuid4().hex[:12]}",
            session_id_hash=self.session_id_hash,
            from_state=prev_state.value,
            to_state=next_state.value,
        )

    def _put_event(self, event: StateChangeEvent) -> bool:
        payload = event.to_kinesis_payload()

        try:
            if self.kinesis_client is None:
                logger.warning(
                    "STATE_EVENT_FALLBACK_LOG",
                    extra={"event_id": event.event_id, "payload": json.dumps(payload)}
                )
                return False

            response = self.kinesis_client.put_record(
                StreamName=self.stream_name,
                Data=json.dumps(payload),
                PartitionKey=self.session_id_hash,  # Same session -> same shard, ordered
            )

            logger.info(
                "STATE_EVENT_PUBLISHED",
                extra={
                    "event_id": event.event_id,
                    "from_state": event.from_state,
                    "to_state": event.to_state,
                    "shard_id": response.get("ShardId"),
                }
            )
            return True

        except Exception as e:
            logger.error(
                "STATE_EVENT_PUBLISH_FAILED",
                extra={
                    "event_id": event.event_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "payload": json.dumps(payload),
                }
            )
            return False
