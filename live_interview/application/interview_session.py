from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..core.exceptions import CredentialsAlreadyUsed
from ..processors.playback import AudioHandle


class InterviewState(str, Enum):
    READY = "ready"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ACTIVE = "active"
    TIME_WARNING = "time_warning"
    ENDING = "ending"
    COMPLETED = "completed"
    ERROR = "error"


class Speaker(str, Enum):
    INTERVIEWER = "interviewer"
    CANDIDATE = "candidate"


@dataclass(frozen=True)
class SessionConfig:
    job_title: str
    company: str
    job_description: str
    resume_text: Optional[str] = None
    technical_questions: Tuple[str, ...] = ()
    behavioral_questions: Tuple[str, ...] = ()
    voice: str = "Aoede"
    max_duration: float = 30 * 60
    warning_at: float = 25 * 60

    def __post_init__(self):
        # Lists handed in by callers are frozen into tuples.
        object.__setattr__(self, "technical_questions", tuple(self.technical_questions))
        object.__setattr__(self, "behavioral_questions", tuple(self.behavioral_questions))
        if self.warning_at > self.max_duration:
            raise ValueError("warning_at must not exceed max_duration")

    @property
    def all_questions(self) -> Tuple[str, ...]:
        return self.technical_questions + self.behavioral_questions

    def with_session_data(self, session_data: Dict[str, Any]) -> "SessionConfig":
        """Return a copy using the questions and context handed back by the bootstrap service."""
        questions = session_data.get("questions") or {}
        return SessionConfig(
            job_title=self.job_title,
            company=self.company,
            job_description=session_data.get("jobDescription") or self.job_description,
            resume_text=session_data.get("resumeContent") or self.resume_text,
            technical_questions=tuple(questions.get("technical") or self.technical_questions),
            behavioral_questions=tuple(questions.get("behavioral") or self.behavioral_questions),
            voice=self.voice,
            max_duration=self.max_duration,
            warning_at=self.warning_at,
        )


@dataclass
class SessionRequest:
    job_id: str
    job_title: str = ""
    company: str = ""
    job_description: str = ""
    resume_id: Optional[str] = None
    resume_text: Optional[str] = None
    technical_questions: List[str] = field(default_factory=list)
    behavioral_questions: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "resumeId": self.resume_id,
            "questions": {
                "technical": list(self.technical_questions),
                "behavioral": list(self.behavioral_questions),
            },
            "jobDescription": self.job_description,
            "resumeContent": self.resume_text,
        }

    def to_config(self, voice: str, max_duration: float, warning_at: float) -> SessionConfig:
        return SessionConfig(
            job_title=self.job_title,
            company=self.company,
            job_description=self.job_description,
            resume_text=self.resume_text,
            technical_questions=tuple(self.technical_questions),
            behavioral_questions=tuple(self.behavioral_questions),
            voice=voice,
            max_duration=max_duration,
            warning_at=warning_at,
        )


@dataclass
class ConnectionCredentials:
    """A short-lived key that may open exactly one transport."""

    api_key: str = field(repr=False)
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    used: bool = False

    def consume(self) -> str:
        if self.used:
            raise CredentialsAlreadyUsed()
        self.used = True
        return self.api_key


@dataclass(frozen=True)
class TranscriptEntry:
    speaker: Speaker
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    audio: Optional[AudioHandle] = None


class Transcript:
    """Append-only record of the conversation."""

    def __init__(self):
        self._entries: List[TranscriptEntry] = []

    def append(self, speaker: Speaker, text: str, audio: Optional[AudioHandle] = None) -> TranscriptEntry:
        entry = TranscriptEntry(speaker=Speaker(speaker), text=text, audio=audio)
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> Tuple[TranscriptEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(tuple(self._entries))
