"""Signal router: normalizes collaborator events into scorer inputs and triggers.

Producers (speech-to-text, audio features, GPS, motion fusion, network
monitor) hold a reference to one router instance and push samples into
it from any thread. The router is stateless apart from its compiled
patterns: component scores go to the RiskScorer, discrete triggers go
straight to the EscalationStateMachine.
"""
import logging
import math
import re
from dataclasses import dataclass, field
from typing import List, Optional, Union

from stacy.shared.models import (
    DiscreteTrigger,
    LocationSample,
    MotionSample,
    ProsodySample,
    TranscriptSample,
)
from stacy.shared.utils import clamp, fingerprint_text
from .config import SignalRouterConfig
from .risk_scorer import RiskScorer
from .state_machine import EscalationStateMachine

logger = logging.getLogger(__name__)

SignalSample = Union[TranscriptSample, ProsodySample, LocationSample, MotionSample]


@dataclass(frozen=True)
class TranscriptAssessment:
    """Outcome of scoring one utterance."""
    score: float
    matched_phrases: List[str] = field(default_factory=list)
    negated: bool = False
    triggers: List[DiscreteTrigger] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "score": round(self.score, 2),
            "matched_phrases": self.matched_phrases,
            "negated": self.negated,
            "triggers": [t.value for t in self.triggers],
        }


def _normalize_text(text: str) -> str:
    # Typographic apostrophes from mobile keyboards and STT engines
    return (text or "").lower().replace("’", "'").replace("‘", "'")


class SignalRouter:
    """Routes raw samples to the scorer and hard triggers to the machine."""

    def __init__(
        self,
        scorer: RiskScorer,
        machine: EscalationStateMachine,
        config: Optional[SignalRouterConfig] = None,
    ):
        self.scorer = scorer
        self.machine = machine
        self.config = config or SignalRouterConfig()

        self._negation = re.compile(self.config.negation_pattern)
        self._safe_phrases = [re.compile(p) for p in self.config.safe_phrase_patterns]

    def _update(self, category: str, score: float) -> None:
        if self.machine.closed:
            logger.info(
                "SIGNAL_IGNORED",
                extra={"category": category, "reason": "session_closed"}
            )
            return
        self.scorer.update_components({category: score})

    def route(self, sample: SignalSample) -> float:
        """Dispatch any sample by type. Returns the component score."""
        if isinstance(sample, TranscriptSample):
            return self.ingest_transcript(sample).score
        if isinstance(sample, ProsodySample):
            return self.ingest_prosody(sample)
        if isinstance(sample, LocationSample):
            return self.ingest_location(sample)
        if isinstance(sample, MotionSample):
            return self.ingest_motion(sample)
        raise TypeError(f"Unsupported signal sample: {type(sample).__name__}")

    def score_transcript(self, sample: TranscriptSample) -> TranscriptAssessment:
        """Score an utterance against the distress lexicon without side effects.

        Lexicon matches are summed and capped at 100, dampened (never
        zeroed) by a negation such as "not afraid", then blended with
        the external distress score and clamped.
        """
        cfg = self.config
        text = _normalize_text(sample.text)

        matched = [phrase for phrase in cfg.distress_lexicon if phrase in text]
        score = min(100.0, sum(cfg.distress_lexicon[phrase] for phrase in matched))

        negated = bool(self._negation.search(text))
        if negated:
            score *= cfg.negation_dampener

        external = clamp(sample.external_distress_score or 0.0)
        score = clamp(score + cfg.external_distress_weight * external)

        triggers = []
        if any(pattern.search(text) for pattern in self._safe_phrases):
            triggers.append(DiscreteTrigger.SAFE_PHRASE)
        if any(phrase in text for phrase in cfg.cannot_speak_phrases):
            triggers.append(DiscreteTrigger.CANNOT_SPEAK)

        return TranscriptAssessment(
            score=score,
            matched_phrases=matched,
            negated=negated,
            triggers=triggers,
        )

    def ingest_transcript(self, sample: TranscriptSample) -> TranscriptAssessment:
        """Score an utterance, update the transcript component, fire triggers."""
        assessment = self.score_transcript(sample)
        self._update("transcript", assessment.score)

        logger.info(
            "TRANSCRIPT_ROUTED",
            extra={
                "text_fingerprint": fingerprint_text(sample.text or ""),
                "score": assessment.score,
                "match_count": len(assessment.matched_phrases),
                "negated": assessment.negated,
                "triggers": [t.value for t in assessment.triggers],
            }
        )

        for trigger in assessment.triggers:
            self.machine.on_trigger(trigger)

        return assessment

    def ingest_prosody(self, sample: ProsodySample) -> float:
        """Voice stress from RMS energy, zero-crossing rate and speech rate."""
        cfg = self.config
        rms = clamp(sample.rms, 0.0, float("inf"))
        zcr = clamp(sample.zero_crossing_rate, 0.0, 1.0)
        speech_rate = clamp(sample.speech_rate, 0.0, float("inf"))

        stress = clamp(
            cfg.zcr_coefficient * zcr
            + cfg.rms_coefficient * (rms * 100.0)
            + cfg.speech_rate_coefficient * speech_rate
        )
        self._update("prosody", stress)
        return stress

    def ingest_location(self, sample: LocationSample) -> float:
        """Poor location confidence raises risk: it degrades dispatch."""
        cfg = self.config
        precision = sample.precision_meters
        if precision is None or math.isnan(precision):
            precision = cfg.missing_precision_m
        precision = clamp(precision, 0.0, float("inf"))

        if precision > cfg.very_poor_precision_m:
            score = cfg.very_poor_precision_score
        elif precision > cfg.poor_precision_m:
            score = cfg.poor_precision_score
        else:
            score = 0.0

        self._update("location", score)
        return score

    def ingest_motion(self, sample: MotionSample) -> float:
        """Motion arrives pre-fused; taken verbatim after clamping."""
        score = clamp(sample.score)
        self._update("motion", score)
        return score

    def ingest_trigger(self, trigger: DiscreteTrigger) -> None:
        """Forward a discrete trigger to the state machine."""
        self.machine.on_trigger(trigger)

    def connectivity_lost(self) -> None:
        self.machine.on_trigger(DiscreteTrigger.CONNECTIVITY_LOST)

    def user_attests_safe(self) -> None:
        self.machine.on_trigger(DiscreteTrigger.USER_SAFE)
