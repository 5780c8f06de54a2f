"""
Interview session controller.

Composes the transport, capture engine, audio accumulator and timers for one
mock interview and drives them through an explicit state machine::

    ready -> connecting -> connected -> active <-> time_warning
    connecting | connected | active | time_warning -> ending -> completed
    ready | connecting | connected | active | time_warning -> error
    completed | error -> ready

All per-session resources are created in :meth:`start` and released by
:meth:`teardown`; nothing is shared between sessions.
"""
import asyncio
import time
import uuid
from typing import Callable, Dict, Optional

import structlog

from ..config import Settings, get_settings
from ..core import timers as named
from ..core.exceptions import (
    BootstrapError,
    InvalidStateTransition,
    MicrophoneError,
    TransportError,
)
from ..core.interfaces import MicrophoneSource, PlaybackSink, SessionObserver
from ..core.logging import bind_session, unbind_session
from ..core.timers import TimerRegistry
from ..managers.bootstrap import SessionBootstrapClient
from ..managers.messages import (
    AudioPart,
    ModelTurn,
    ServerError,
    SetupComplete,
    TextFragment,
    TextPart,
    Transcription,
    TurnComplete,
)
from ..managers.prompts import KICKOFF_PROMPT
from ..managers.transport import LiveTransportClient
from ..processors.audio import AudioCaptureEngine, DeviceConstraints, SpectrumAnalyser
from ..processors.playback import AudioAccumulator, AudioHandle
from ..processors.vad import SpeechEvent, VoiceActivityDetector
from .interview_session import (
    ConnectionCredentials,
    InterviewState,
    SessionConfig,
    SessionRequest,
    Speaker,
    Transcript,
)

logger = structlog.get_logger(__name__)

S = InterviewState

TRANSITIONS: Dict[InterviewState, frozenset] = {
    S.READY: frozenset({S.CONNECTING, S.ERROR}),
    S.CONNECTING: frozenset({S.CONNECTED, S.ENDING, S.ERROR}),
    S.CONNECTED: frozenset({S.ACTIVE, S.ENDING, S.ERROR}),
    S.ACTIVE: frozenset({S.TIME_WARNING, S.ENDING, S.ERROR}),
    S.TIME_WARNING: frozenset({S.ACTIVE, S.ENDING, S.ERROR}),
    S.ENDING: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset({S.READY}),
    S.ERROR: frozenset({S.READY}),
}

RUNNING = frozenset({S.ACTIVE, S.TIME_WARNING})
ENDABLE = frozenset({S.CONNECTING, S.CONNECTED, S.ACTIVE, S.TIME_WARNING})
FINISHED = frozenset({S.ENDING, S.COMPLETED, S.ERROR})


def _default_microphone(constraints: DeviceConstraints) -> MicrophoneSource:
    from ..processors.devices import SoundDeviceMicrophone

    return SoundDeviceMicrophone(constraints)


def _default_sink() -> PlaybackSink:
    from ..processors.devices import SoundDeviceSpeaker

    return SoundDeviceSpeaker()


class InterviewSessionController:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        observer: Optional[SessionObserver] = None,
        bootstrap: Optional[SessionBootstrapClient] = None,
        transport_factory: Optional[Callable[[ConnectionCredentials], LiveTransportClient]] = None,
        microphone_factory: Optional[Callable[[DeviceConstraints], MicrophoneSource]] = None,
        sink_factory: Optional[Callable[[], PlaybackSink]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.observer = observer or SessionObserver()
        self.bootstrap = bootstrap or SessionBootstrapClient(
            self.settings.BOOTSTRAP_URL, timeout=self.settings.BOOTSTRAP_TIMEOUT_SECONDS
        )
        self.transport_factory = transport_factory or self._default_transport
        self.microphone_factory = microphone_factory or _default_microphone
        self.sink_factory = sink_factory or _default_sink
        self.clock = clock

        self.state = S.READY
        self.session_id: Optional[str] = None
        self.config: Optional[SessionConfig] = None
        self.transcript = Transcript()
        self.error: Optional[str] = None
        self.waiting_for_response = False
        self.warning_shown = False
        self.teardown_count = 0

        self.timers: Optional[TimerRegistry] = None
        self.transport: Optional[LiveTransportClient] = None
        self.capture: Optional[AudioCaptureEngine] = None
        self.accumulator: Optional[AudioAccumulator] = None
        self.sink: Optional[PlaybackSink] = None

        self._speech_started_at: Optional[float] = None
        self._teardown_started = False
        self._teardown_done: Optional[asyncio.Event] = None
        self._background: set[asyncio.Task] = set()

        self._dispatch = {
            SetupComplete: self._on_setup_complete,
            TextFragment: self._on_text_fragment,
            ModelTurn: self._on_model_turn,
            Transcription: self._on_transcription,
            TurnComplete: self._on_turn_complete,
            ServerError: self._on_server_error,
        }

    def _default_transport(self, credentials: ConnectionCredentials) -> LiveTransportClient:
        return LiveTransportClient(
            credentials,
            endpoint=self.settings.LIVE_ENDPOINT,
            model=self.settings.LIVE_MODEL,
            setup_timeout=self.settings.SETUP_TIMEOUT_SECONDS,
            input_sample_rate=self.settings.INPUT_SAMPLE_RATE,
            clock=self.clock,
        )

    # State machine

    def _transition(self, target: InterviewState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.state.value, target.value)
        logger.info("interview_state_changed", previous=self.state.value, state=target.value)
        self.state = target
        self.observer.on_state_change(target)

    @property
    def audio_busy(self) -> bool:
        return self.accumulator is not None and (
            self.accumulator.is_playing or self.accumulator.pending_count > 0
        )

    def elapsed(self) -> float:
        """Seconds since setup ack, measured against the clock rather than counted ticks."""
        if self.transport is None or self.transport.session_started_at is None:
            return 0.0
        return max(self.clock() - self.transport.session_started_at, 0.0)

    def remaining(self) -> float:
        if self.config is None:
            return 0.0
        return max(self.config.max_duration - self.elapsed(), 0.0)

    # Lifecycle

    async def start(self, request: SessionRequest) -> bool:
        """Bootstrap, open the microphone and connect. Returns True once the interview is active."""
        if self._teardown_started and self._teardown_done is not None:
            await self._teardown_done.wait()
        if self.state is not S.READY:
            raise InvalidStateTransition(self.state.value, S.CONNECTING.value)

        self._reset_session()
        bind_session(self.session_id)
        settings = self.settings
        logger.info("interview_starting", job_id=request.job_id)

        try:
            credentials, session_data = await self.bootstrap.start_session(request)
        except BootstrapError as e:
            await self._fail(e.message)
            return False

        base = request.to_config(
            voice=settings.DEFAULT_VOICE,
            max_duration=settings.MAX_SESSION_SECONDS,
            warning_at=settings.TIME_WARNING_SECONDS,
        )
        self.config = base.with_session_data(session_data)
        self._transition(S.CONNECTING)

        self.timers = TimerRegistry()
        self.transport = self.transport_factory(credentials)
        self.transport.set_handlers(
            on_open=self._on_transport_open,
            on_message=self._on_transport_message,
            on_error=self._on_transport_error,
            on_close=self._on_transport_close,
        )
        self.sink = self.sink_factory()
        self.accumulator = AudioAccumulator(
            self.sink,
            self.timers,
            quiescence=settings.AUDIO_QUIESCENCE_SECONDS,
            force_flush_count=settings.AUDIO_FORCE_FLUSH_CHUNKS,
            sample_rate=settings.OUTPUT_SAMPLE_RATE,
            clock=self.clock,
            on_playback_started=self._on_playback_started,
            on_playback_finished=self._on_playback_finished,
            on_silent_turn=self._on_silent_turn,
        )
        constraints = DeviceConstraints(
            sample_rate=settings.INPUT_SAMPLE_RATE,
            block_size=settings.INPUT_BLOCK_SIZE,
        )
        self.capture = AudioCaptureEngine(
            self.microphone_factory(constraints),
            self.transport,
            self.timers,
            detector=VoiceActivityDetector(
                threshold=settings.VAD_SPEECH_THRESHOLD,
                min_speaking=settings.VAD_MIN_SPEAKING_SECONDS,
                silence_cooldown=settings.VAD_SILENCE_SECONDS,
                clock=self.clock,
            ),
            analyser=SpectrumAnalyser(
                fft_size=settings.ANALYSER_FFT_SIZE,
                smoothing=settings.ANALYSER_SMOOTHING,
            ),
            frame_interval=settings.VAD_FRAME_INTERVAL,
            on_event=self._on_speech_event,
            clock=self.clock,
        )

        try:
            await self.capture.start(constraints)
        except MicrophoneError as e:
            await self._fail(e.message)
            return False
        if self.state is not S.CONNECTING:
            # Ended while the device was opening; teardown ran before it was ours.
            await self.capture.stop()
            return False

        try:
            await self.transport.connect(self.config)
        except TransportError as e:
            if self.state in FINISHED:
                return False
            await self._fail(e.message)
            return False
        return self.state in RUNNING

    def _reset_session(self) -> None:
        self.session_id = uuid.uuid4().hex[:12]
        self.transcript = Transcript()
        self.error = None
        self.waiting_for_response = False
        self.warning_shown = False
        self._speech_started_at = None
        self._teardown_started = False
        self._teardown_done = asyncio.Event()

    def _on_transport_open(self) -> None:
        if self.state is not S.CONNECTING:
            return
        self._transition(S.CONNECTED)
        self.capture.activate()
        self.transport.send_text(KICKOFF_PROMPT)
        self.waiting_for_response = True
        self._transition(S.ACTIVE)
        self.timers.start_repeating(named.DURATION_TICKER, self.settings.DURATION_TICK_SECONDS, self._tick)
        logger.info("interview_active", max_duration=self.config.max_duration)

    async def end(self, reason: str = "manual") -> bool:
        """Finish the interview: signal end of stream, tear down and complete."""
        if self.state not in ENDABLE:
            logger.debug("end_ignored", state=self.state.value)
            return False
        logger.info("interview_ending", reason=reason, elapsed=round(self.elapsed(), 1))
        self._transition(S.ENDING)
        if self.transport is not None:
            self.transport.send_audio_stream_end()
        await self.teardown()
        self._transition(S.COMPLETED)
        return True

    async def teardown(self) -> None:
        """Release every session resource. Idempotent; concurrent callers wait for the first."""
        if self._teardown_started:
            if self._teardown_done is not None:
                await self._teardown_done.wait()
            return
        self._teardown_started = True
        if self._teardown_done is None:
            self._teardown_done = asyncio.Event()
        self.teardown_count += 1
        logger.info("teardown_started", state=self.state.value)
        try:
            if self.timers is not None:
                self.timers.close()
            if self.capture is not None:
                await self.capture.stop()
            if self.accumulator is not None:
                await self.accumulator.clear()
            if self.sink is not None:
                try:
                    self.sink.close()
                except Exception as e:
                    logger.warning("playback_sink_close_failed", error=str(e))
            if self.transport is not None:
                await self.transport.disconnect()
        finally:
            self._teardown_done.set()
            logger.info("teardown_finished")
            unbind_session()

    async def restart(self) -> None:
        if self.state not in (S.COMPLETED, S.ERROR):
            raise InvalidStateTransition(self.state.value, S.READY.value)
        await self.teardown()
        self.timers = None
        self.transport = None
        self.capture = None
        self.accumulator = None
        self.sink = None
        self.config = None
        self._transition(S.READY)

    async def _fail(self, message: str) -> None:
        if self.state in FINISHED:
            logger.debug("failure_ignored", state=self.state.value, message=message)
            return
        logger.error("interview_failed", state=self.state.value, message=message)
        self.error = message
        self._transition(S.ERROR)
        self.observer.on_error(message)
        await self.teardown()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("session_task_failed", error=str(task.exception()))

    # Timers

    def _tick(self) -> None:
        if self.state not in RUNNING:
            return
        elapsed = self.elapsed()
        remaining = self.remaining()
        self.observer.on_countdown(elapsed, remaining)
        if elapsed >= self.config.max_duration:
            logger.info("time_limit_reached", elapsed=round(elapsed, 1))
            self.timers.cancel(named.DURATION_TICKER)
            self._spawn(self.end(reason="time_limit"))
            return
        if elapsed >= self.config.warning_at and not self.warning_shown and self.state is S.ACTIVE:
            self.warning_shown = True
            self._transition(S.TIME_WARNING)
            self.timers.start(named.WARNING_DISPLAY, self.settings.WARNING_DISPLAY_SECONDS, self._clear_warning)
        self._evaluate_auto_advance()

    def _clear_warning(self) -> None:
        if self.state is S.TIME_WARNING:
            self._transition(S.ACTIVE)

    def _auto_advance_ready(self) -> bool:
        if self.capture is None or self.state not in RUNNING:
            return False
        speech = self.capture.state
        return (
            speech.speech_end_detected
            and not self.audio_busy
            and not speech.is_speaking
            and not self.waiting_for_response
        )

    def _evaluate_auto_advance(self) -> None:
        if self.timers is None:
            return
        if self._auto_advance_ready():
            if not self.timers.is_active(named.AUTO_ADVANCE):
                logger.debug("auto_advance_armed", delay=self.settings.AUTO_ADVANCE_SECONDS)
                self.timers.start(named.AUTO_ADVANCE, self.settings.AUTO_ADVANCE_SECONDS, self._on_auto_advance)
        elif self.timers.cancel(named.AUTO_ADVANCE):
            logger.debug("auto_advance_canceled")

    def _on_auto_advance(self) -> None:
        if not self._auto_advance_ready():
            return
        logger.info("auto_advancing")
        self.trigger_next()

    # Manual controls

    def trigger_next(self) -> bool:
        """Ask the interviewer to move on without waiting for more audio."""
        if self.state not in RUNNING:
            return False
        self.timers.cancel(named.AUTO_ADVANCE)
        if not self.transport.trigger_next_response():
            return False
        self.waiting_for_response = True
        return True

    def finish_speaking(self) -> bool:
        if self.state not in RUNNING:
            return False
        return self.capture.end_speech_manually()

    def toggle_mute(self) -> bool:
        if self.capture is None or self.state not in RUNNING:
            return False
        muted = not self.capture.muted
        self.capture.set_muted(muted)
        if muted:
            self.waiting_for_response = True
        self._evaluate_auto_advance()
        return muted

    # Transport callbacks

    async def _on_transport_message(self, event) -> None:
        self.waiting_for_response = False
        handler = self._dispatch.get(type(event))
        if handler is None:
            logger.debug("unhandled_server_event", event=type(event).__name__)
        else:
            handler(event)
        self._evaluate_auto_advance()

    def _on_transport_error(self, reason: str) -> None:
        if self.state is S.CONNECTING:
            # connect() raises and reports this failure itself.
            return
        if self.state in FINISHED or self.state is S.READY:
            logger.debug("transport_error_ignored", state=self.state.value, reason=reason)
            return
        self._spawn(self._fail(f"Connection error: {reason}"))

    def _on_transport_close(self) -> None:
        logger.info("transport_closed", state=self.state.value)

    # Inbound event handlers

    def _on_setup_complete(self, event: SetupComplete) -> None:
        logger.debug("setup_complete")

    def _on_text_fragment(self, event: TextFragment) -> None:
        self._record(Speaker.INTERVIEWER, event.text)

    def _on_model_turn(self, event: ModelTurn) -> None:
        for part in event.parts:
            if isinstance(part, TextPart):
                self._record(Speaker.INTERVIEWER, part.text)
            elif isinstance(part, AudioPart):
                if self.accumulator.ingest(part.data):
                    self.timers.cancel(named.AUTO_ADVANCE)

    def _on_transcription(self, event: Transcription) -> None:
        # Only used when no audio for the turn has arrived yet.
        if self.accumulator.pending_count == 0:
            self._record(Speaker.INTERVIEWER, event.text)
        else:
            logger.debug("transcription_skipped", pending=self.accumulator.pending_count)

    def _on_turn_complete(self, event: TurnComplete) -> None:
        logger.info("turn_complete", pending=self.accumulator.pending_count)
        self.accumulator.on_turn_complete()

    def _on_server_error(self, event: ServerError) -> None:
        logger.warning("server_error_received", message=event.message, code=event.code)

    # Accumulator callbacks

    def _on_playback_started(self, handle: AudioHandle) -> None:
        self.timers.cancel(named.AUTO_ADVANCE)
        self._record(Speaker.INTERVIEWER, f"[audio {handle.duration:.1f}s]", audio=handle)

    def _on_playback_finished(self, ok: bool) -> None:
        if not ok:
            logger.warning("playback_failed_resuming_listening")
        self._ready_for_candidate()

    def _on_silent_turn(self) -> None:
        logger.info("turn_complete_with_silence")
        self._ready_for_candidate()

    def _ready_for_candidate(self) -> None:
        if self.state not in RUNNING:
            return
        self.capture.reset_speech_state()
        self.waiting_for_response = False
        self._speech_started_at = None
        self._evaluate_auto_advance()

    # Capture callbacks

    def _on_speech_event(self, event: SpeechEvent) -> None:
        self.observer.on_speech_activity(event)
        if event is SpeechEvent.SPEECH_STARTED:
            self._speech_started_at = self.clock()
            self._evaluate_auto_advance()
        elif event is SpeechEvent.SPEECH_ENDED:
            duration = self.clock() - self._speech_started_at if self._speech_started_at is not None else 0.0
            self._speech_started_at = None
            self._record(Speaker.CANDIDATE, f"Finished speaking ({duration:.1f}s)")
            self.waiting_for_response = True
            self._evaluate_auto_advance()

    def _record(self, speaker: Speaker, text: str, audio: Optional[AudioHandle] = None) -> None:
        entry = self.transcript.append(speaker, text, audio=audio)
        self.observer.on_transcript(entry)
