"""Amplitude-based voice activity detection with speaking/silence hysteresis."""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class SpeechEvent(str, Enum):
    SPEECH_STARTED = "speech_started"
    MANUAL_END_AVAILABLE = "manual_end_available"
    SPEECH_ENDED = "speech_ended"


@dataclass
class SpeechActivityState:
    is_speaking: bool = False
    speaking_started_at: Optional[float] = None
    silence_started_at: Optional[float] = None
    manual_end_eligible: bool = False
    speech_end_detected: bool = False

    def reset(self) -> None:
        self.is_speaking = False
        self.speaking_started_at = None
        self.silence_started_at = None
        self.manual_end_eligible = False
        self.speech_end_detected = False


class VoiceActivityDetector:
    """
    Turns a stream of amplitude levels into speech start/end events.

    A speech end is only reported after the candidate has spoken for
    ``min_speaking`` seconds AND then stayed below the threshold for
    ``silence_cooldown`` seconds without interruption. Short pauses while
    answering therefore never end the turn.
    """

    def __init__(
        self,
        threshold: float = 3.0,
        min_speaking: float = 2.0,
        silence_cooldown: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.min_speaking = min_speaking
        self.silence_cooldown = silence_cooldown
        self.clock = clock
        self.state = SpeechActivityState()
        self.last_level = 0.0

    def speaking_duration(self, now: Optional[float] = None) -> float:
        if not self.state.is_speaking or self.state.speaking_started_at is None:
            return 0.0
        now = self.clock() if now is None else now
        return now - self.state.speaking_started_at

    def observe(self, level: float, now: Optional[float] = None) -> Optional[SpeechEvent]:
        """Feed one amplitude sample; returns the event it caused, if any."""
        now = self.clock() if now is None else now
        self.last_level = level
        state = self.state

        if level > self.threshold:
            state.silence_started_at = None
            state.speech_end_detected = False
            if not state.is_speaking:
                state.is_speaking = True
                state.speaking_started_at = now
                state.manual_end_eligible = False
                logger.debug("speech_started", level=round(level, 1))
                return SpeechEvent.SPEECH_STARTED
            return None

        if not state.is_speaking:
            return None

        spoken_for = self.speaking_duration(now)
        if spoken_for < self.min_speaking:
            # Too early to consider this a pause at the end of an answer.
            return None

        if state.silence_started_at is None:
            state.silence_started_at = now
            logger.debug("silence_tracking_started", spoken_for=round(spoken_for, 2))
            return None

        silent_for = now - state.silence_started_at
        if silent_for >= self.silence_cooldown and not state.speech_end_detected:
            logger.info(
                "speech_end_detected",
                spoken_for=round(spoken_for, 2),
                silent_for=round(silent_for, 2),
            )
            self._finish_speech()
            return SpeechEvent.SPEECH_ENDED
        return None

    def mark_manual_end_eligible(self, now: Optional[float] = None) -> bool:
        if not self.state.is_speaking:
            return False
        if self.speaking_duration(now) < self.min_speaking:
            return False
        self.state.manual_end_eligible = True
        return True

    def end_speech_manually(self, now: Optional[float] = None) -> bool:
        """Force the end-of-speech transition once the minimum speaking time has passed."""
        if not self.state.is_speaking:
            return False
        if self.speaking_duration(now) < self.min_speaking:
            logger.debug("manual_end_rejected", spoken_for=round(self.speaking_duration(now), 2))
            return False
        logger.info("speech_ended_manually")
        self._finish_speech()
        return True

    def _finish_speech(self) -> None:
        state = self.state
        state.is_speaking = False
        state.speech_end_detected = True
        state.speaking_started_at = None
        state.silence_started_at = None
        state.manual_end_eligible = False

    def reset(self) -> None:
        self.state.reset()
