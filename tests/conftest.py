# tests/conftest.py
import asyncio
import base64
import json
import os

import numpy as np
import pytest
from fastapi.testclient import TestClient
from websockets.exceptions import ConnectionClosedError

from live_interview.application.interview_session import ConnectionCredentials, SessionRequest
from live_interview.core.exceptions import BootstrapError
from live_interview.core.interfaces import LiveSocket, MicrophoneSource, PlaybackSink, SessionObserver

_CLOSED = object()


@pytest.fixture
def test_env_vars():
    """Set up test environment variables."""
    os.environ["ENVIRONMENT"] = "testing"
    os.environ["DEBUG"] = "true"
    os.environ["APP_NAME"] = "Live Interview Test"
    os.environ["GOOGLE_AI_API_KEY"] = "test-google-key"
    yield
    # Clean up
    os.environ.pop("ENVIRONMENT", None)
    os.environ.pop("DEBUG", None)
    os.environ.pop("APP_NAME", None)
    os.environ.pop("GOOGLE_AI_API_KEY", None)


@pytest.fixture
def settings(test_env_vars):
    """Get test settings."""
    from live_interview.config import get_settings
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def app(settings):
    """Create test app instance."""
    from live_interview.interface.api.main import create_app
    return create_app()


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def fast_settings():
    """Settings with timings shrunk so session tests run in milliseconds."""
    from live_interview.config import Settings
    return Settings(
        ENVIRONMENT="testing",
        MAX_SESSION_SECONDS=30.0,
        TIME_WARNING_SECONDS=20.0,
        WARNING_DISPLAY_SECONDS=0.05,
        AUTO_ADVANCE_SECONDS=0.1,
        DURATION_TICK_SECONDS=0.01,
        AUDIO_QUIESCENCE_SECONDS=0.05,
        VAD_FRAME_INTERVAL=60.0,
        SETUP_TIMEOUT_SECONDS=1.0,
    )


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSocket(LiveSocket):
    """In-memory stand-in for a Gemini Live websocket."""

    def __init__(self, auto_ack: bool = True):
        self.auto_ack = auto_ack
        self.sent = []
        self.closed = False
        self.inbox = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionClosedError(None, None)
        payload = json.loads(message)
        self.sent.append(payload)
        if self.auto_ack and "setup" in payload:
            self.push({"setupComplete": {}})

    async def recv(self):
        item = await self.inbox.get()
        if item is _CLOSED:
            raise ConnectionClosedError(None, None)
        return item

    async def close(self) -> None:
        self.closed = True

    def push(self, message) -> None:
        self.inbox.put_nowait(message if isinstance(message, (str, bytes)) else json.dumps(message))

    def drop(self) -> None:
        """Simulate the server going away."""
        self.inbox.put_nowait(_CLOSED)

    def texts(self):
        return [
            m["clientContent"]["turns"][0]["parts"][0]["text"]
            for m in self.sent
            if "clientContent" in m
        ]

    def stream_ends(self) -> int:
        return sum(1 for m in self.sent if m.get("realtimeInput", {}).get("audioStreamEnd"))


class FakeMicrophone(MicrophoneSource):
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.on_frame = None
        self.enabled = True
        self.opened = 0
        self.closed = 0

    def open(self, on_frame) -> None:
        if self.error is not None:
            raise self.error
        self.on_frame = on_frame
        self.opened += 1

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled

    def close(self) -> None:
        self.closed += 1


class FakeSink(PlaybackSink):
    def __init__(self, fail: bool = False, hold: bool = False):
        self.fail = fail
        self.played = []
        self.closed = False
        self.release = asyncio.Event()
        if not hold:
            self.release.set()

    async def play(self, container: bytes) -> None:
        self.played.append(container)
        await self.release.wait()
        if self.fail:
            raise RuntimeError("decoder refused container")

    def close(self) -> None:
        self.closed = True


class FakeBootstrap:
    def __init__(self, error: str | None = None):
        self.error = error
        self.requests = []

    async def start_session(self, request):
        self.requests.append(request)
        if self.error:
            raise BootstrapError(self.error)
        session_data = {
            "questions": {
                "technical": request.technical_questions,
                "behavioral": request.behavioral_questions,
            },
            "jobDescription": request.job_description,
        }
        return ConnectionCredentials(api_key="live-test-key"), session_data


class RecordingObserver(SessionObserver):
    def __init__(self):
        self.states = []
        self.entries = []
        self.countdowns = []
        self.activity = []
        self.errors = []

    def on_state_change(self, state) -> None:
        self.states.append(state)

    def on_transcript(self, entry) -> None:
        self.entries.append(entry)

    def on_countdown(self, elapsed: float, remaining: float) -> None:
        self.countdowns.append((elapsed, remaining))

    def on_speech_activity(self, event) -> None:
        self.activity.append(event)

    def on_error(self, message: str) -> None:
        self.errors.append(message)


def connector_for(socket):
    async def connect(url):
        connect.urls.append(url)
        return socket
    connect.urls = []
    return connect


def pcm_chunk(values) -> str:
    return base64.b64encode(np.asarray(values, dtype="<i2").tobytes()).decode("ascii")


async def settle(seconds: float = 0.02) -> None:
    await asyncio.sleep(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_request():
    return SessionRequest(
        job_id="job-42",
        job_title="Backend Engineer",
        company="Acme",
        job_description="Build and run Python services.",
        resume_text="Five years of Python.",
        technical_questions=["How does asyncio schedule tasks?"],
        behavioral_questions=["Tell me about a production incident?"],
    )
