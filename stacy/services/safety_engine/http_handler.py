"""Safety Engine HTTP handler - signal ingestion and session endpoints.

Mobile and web clients open a session, then push transcript, prosody,
location and motion samples and discrete triggers as they happen.
Requested actions are streamed to Kinesis and can be polled from
/sessions/<id>/actions.

Endpoints:
- POST   /sessions                      - Open a session (starts ticking)
- GET    /sessions/<id>                 - State, risk snapshot, pending timers
- POST   /sessions/<id>/transcript      - {"text", "external_distress_score"?}
- POST   /sessions/<id>/prosody         - {"rms", "zero_crossing_rate", "speech_rate"}
- POST   /sessions/<id>/location        - {"precision_meters"?}
- POST   /sessions/<id>/motion          - {"score"}
- POST   /sessions/<id>/triggers        - {"trigger": "NOTIFY_NOW"}
- POST   /sessions/<id>/reset           - Back to SAFE
- GET    /sessions/<id>/actions         - Recently requested actions
- DELETE /sessions/<id>                 - Tear down
"""
import logging
import os
from typing import Dict, Optional, Tuple

from flask import Flask, request, jsonify

from stacy.shared.models import (
    DiscreteTrigger,
    LocationSample,
    MotionSample,
    ProsodySample,
    TranscriptSample,
)
from stacy.shared.utils import configure_log_salt
from .config import SafetyEngineConfig
from .dispatcher import ActionJournal
from .session import SafetySession, SessionRegistry
from .state_publisher import StateChangePublisher

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Configure identifier hashing salt
log_salt = os.getenv("LOG_HASH_SALT", "default_dev_salt_change_in_production_32chars")
configure_log_salt(log_salt)

engine_config = SafetyEngineConfig(
    tick_interval_ms=int(os.getenv("TICK_INTERVAL_MS", "200")),
)
stream_name = os.getenv("STATE_STREAM_NAME", "stacy-safety-events")
publishing_enabled = os.getenv("STATE_PUBLISHING_ENABLED", "true").lower() == "true"
autostart_sessions = os.getenv("SESSION_AUTOSTART", "true").lower() == "true"

# Journals are kept beside sessions so /actions can be polled
journals: Dict[str, ActionJournal] = {}


def _build_session(session_id: str) -> SafetySession:
    journal = ActionJournal()
    journals[session_id] = journal
    publisher = StateChangePublisher(
        session_id=session_id,
        stream_name=stream_name,
        enabled=publishing_enabled,
    )
    return SafetySession(session_id, journal, publisher, config=engine_config)


registry = SessionRegistry(session_factory=_build_session)


def _lookup(session_id: str) -> Tuple[Optional[SafetySession], Optional[tuple]]:
    """Resolve a live session or the error response to return."""
    session = registry.get(session_id)
    if session is None:
        logger.warning("SESSION_NOT_FOUND", extra={"session_id": session_id})
        return None, (jsonify({"error": "Session not found"}), 404)
    if session.closed:
        return None, (jsonify({"error": "Session closed"}), 409)
    return session, None


def _number(data: dict, key: str, default: Optional[float] = None) -> Optional[float]:
    """Read an optional numeric field; raises ValueError on non-numbers."""
    value = data.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Field must be a number: {key}")
    return float(value)


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "safety-engine",
        "active_sessions": len(registry),
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check."""
    if registry is None:
        return jsonify({"status": "not_ready"}), 503
    return jsonify({"status": "ready"}), 200


@app.route("/sessions", methods=["POST"])
def open_session():
    """Open a safety session.

    Request Body (optional):
        {"session_id": "sess_123"}

    Response:
        201 with session status
    """
    try:
        data = request.get_json(silent=True) or {}
        session = registry.create(data.get("session_id"))
        if autostart_sessions:
            session.start()
        return jsonify(session.status()), 201

    except ValueError as e:
        return jsonify({"error": str(e)}), 409
    except Exception as e:
        logger.error("SESSION_OPEN_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to open session"}), 500


@app.route("/sessions/<session_id>", methods=["GET"])
def get_session(session_id: str):
    session = registry.get(session_id)
    if session is None:
        return jsonify({"error": "Session not found"}), 404
    return jsonify(session.status()), 200


@app.route("/sessions/<session_id>/transcript", methods=["POST"])
def ingest_transcript(session_id: str):
    """Score an utterance and apply any hard trigger it contains."""
    session, error = _lookup(session_id)
    if error:
        return error
    try:
        data = request.get_json(silent=True)
        if not data or not isinstance(data.get("text"), str):
            logger.warning("TRANSCRIPT_REQUEST_INVALID", extra={"reason": "missing_text"})
            return jsonify({"error": "Missing required field: text"}), 400

        sample = TranscriptSample(
            text=data["text"],
            external_distress_score=_number(data, "external_distress_score"),
        )
        assessment = session.router.ingest_transcript(sample)
        return jsonify({
            "assessment": assessment.to_dict(),
            "state": session.state.value,
        }), 200

    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.error("TRANSCRIPT_INGEST_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to ingest transcript"}), 500


@app.route("/sessions/<session_id>/prosody", methods=["POST"])
def ingest_prosody(session_id: str):
    session, error = _lookup(session_id)
    if error:
        return error
    try:
        data = request.get_json(silent=True) or {}
        sample = ProsodySample(
            rms=_number(data, "rms", 0.0),
            zero_crossing_rate=_number(data, "zero_crossing_rate", 0.0),
            speech_rate=_number(data, "speech_rate", 0.0),
        )
        return jsonify({"score": session.router.ingest_prosody(sample)}), 200

    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.error("PROSODY_INGEST_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to ingest prosody"}), 500


@app.route("/sessions/<session_id>/location", methods=["POST"])
def ingest_location(session_id: str):
    session, error = _lookup(session_id)
    if error:
        return error
    try:
        data = request.get_json(silent=True) or {}
        sample = LocationSample(precision_meters=_number(data, "precision_meters"))
        return jsonify({"score": session.router.ingest_location(sample)}), 200

    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.error("LOCATION_INGEST_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to ingest location"}), 500


@app.route("/sessions/<session_id>/motion", methods=["POST"])
def ingest_motion(session_id: str):
    session, error = _lookup(session_id)
    if error:
        return error
    try:
        data = request.get_json(silent=True) or {}
        score = _number(data, "score")
        if score is None:
            return jsonify({"error": "Missing required field: score"}), 400
        return jsonify({"score": session.router.ingest_motion(MotionSample(score=score))}), 200

    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.error("MOTION_INGEST_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to ingest motion"}), 500


@app.route("/sessions/<session_id>/triggers", methods=["POST"])
def ingest_trigger(session_id: str):
    """Apply a discrete trigger immediately.

    Request Body:
        {"trigger": "SAFE_PHRASE" | "CANNOT_SPEAK" | "NOTIFY_NOW"
                    | "CONNECTIVITY_LOST" | "USER_SAFE"}
    """
    session, error = _lookup(session_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    try:
        trigger = DiscreteTrigger(data.get("trigger"))
    except ValueError:
        logger.warning("TRIGGER_REQUEST_INVALID", extra={"trigger": data.get("trigger")})
        return jsonify({"error": "Unknown trigger"}), 400

    session.router.ingest_trigger(trigger)
    return jsonify(session.status()), 200


@app.route("/sessions/<session_id>/reset", methods=["POST"])
def reset_session(session_id: str):
    session, error = _lookup(session_id)
    if error:
        return error
    session.reset()
    journal = journals.get(session_id)
    if journal is not None:
        journal.clear()
    return jsonify(session.status()), 200


@app.route("/sessions/<session_id>/actions", methods=["GET"])
def list_actions(session_id: str):
    journal = journals.get(session_id)
    if journal is None:
        return jsonify({"error": "Session not found"}), 404
    return jsonify({"session_id": session_id, "actions": journal.to_list()}), 200


@app.route("/sessions/<session_id>", methods=["DELETE"])
def close_session(session_id: str):
    if not registry.close(session_id):
        return jsonify({"error": "Session not found"}), 404
    journals.pop(session_id, None)
    return jsonify({"session_id": session_id, "closed": True}), 200


if __name__ == "__main__":
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Run development server
    port = int(os.getenv("PORT", "8010"))
    try:
        app.run(host="0.0.0.0", port=port, debug=False)
    finally:
        registry.close_all()
