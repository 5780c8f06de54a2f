# tests/test_vad.py
import random

import numpy as np
import pytest

from conftest import FakeClock, FakeMicrophone
from live_interview.core import timers as named
from live_interview.core.exceptions import MicrophonePermissionDenied, MicrophoneUnavailable
from live_interview.core.timers import TimerRegistry
from live_interview.processors.audio import AudioCaptureEngine, SpectrumAnalyser, float_to_pcm16
from live_interview.processors.vad import SpeechEvent, VoiceActivityDetector

STEP = 0.125


def run_trace(detector, trace, start=0.0):
    """Feed (level, duration) segments sampled every STEP seconds; return (time, event) pairs."""
    events = []
    now = start
    for level, duration in trace:
        end = now + duration
        while now < end:
            event = detector.observe(level, now)
            if event is not None:
                events.append((now, event))
            now += STEP
    return events


def test_speech_end_requires_speaking_then_silence():
    detector = VoiceActivityDetector()
    events = run_trace(detector, [(10.0, 2.5), (0.0, 3.5)])

    assert [e for _, e in events] == [SpeechEvent.SPEECH_STARTED, SpeechEvent.SPEECH_ENDED]
    started, ended = events[0][0], events[1][0]
    assert ended - started >= 5.0
    assert detector.state.speech_end_detected
    assert not detector.state.is_speaking


def test_short_gaps_never_end_speech():
    """Pauses shorter than the cooldown keep the candidate's turn open."""
    detector = VoiceActivityDetector()
    trace = [(10.0, 2.5)]
    for _ in range(5):
        trace += [(0.0, 2.75), (10.0, 0.5)]
    events = run_trace(detector, trace)

    assert SpeechEvent.SPEECH_ENDED not in [e for _, e in events]
    assert detector.state.is_speaking


def test_early_silence_is_ignored():
    """Silence within the first two seconds of speaking is not tracked at all."""
    detector = VoiceActivityDetector()
    run_trace(detector, [(10.0, 0.5), (0.0, 1.0)])

    assert detector.state.is_speaking
    assert detector.state.silence_started_at is None


@pytest.mark.parametrize("seed", range(10))
def test_random_traces_respect_hysteresis(seed):
    rng = random.Random(seed)
    detector = VoiceActivityDetector()
    trace = [(rng.choice([0.0, 1.0, 8.0, 20.0]), rng.choice([0.25, 0.5, 1.0, 2.0, 3.5])) for _ in range(40)]

    speech_start = None
    last_loud = None
    now = 0.0
    for level, duration in trace:
        end = now + duration
        while now < end:
            event = detector.observe(level, now)
            if level > detector.threshold:
                last_loud = now
            if event is SpeechEvent.SPEECH_STARTED:
                speech_start = now
            if event is SpeechEvent.SPEECH_ENDED:
                assert now - speech_start >= 5.0
                assert now - last_loud >= 3.0
            now += STEP


def test_manual_end_needs_minimum_speaking_time():
    clock = FakeClock(0.0)
    detector = VoiceActivityDetector(clock=clock)
    detector.observe(10.0)

    clock.advance(1.5)
    assert detector.mark_manual_end_eligible() is False
    assert detector.end_speech_manually() is False

    clock.advance(0.5)
    assert detector.mark_manual_end_eligible() is True
    assert detector.end_speech_manually() is True
    assert detector.state.speech_end_detected


def test_thresholds_are_configurable():
    detector = VoiceActivityDetector(threshold=50.0, min_speaking=0.5, silence_cooldown=1.0)
    assert run_trace(detector, [(20.0, 1.0)]) == []

    events = run_trace(detector, [(60.0, 0.5), (0.0, 1.5)], start=10.0)
    assert [e for _, e in events] == [SpeechEvent.SPEECH_STARTED, SpeechEvent.SPEECH_ENDED]


def test_float_to_pcm16_clamps_and_scales():
    pcm = float_to_pcm16(np.array([0.0, 0.5, 1.0, -1.0, 2.0, -3.0], dtype=np.float32))
    assert np.frombuffer(pcm, dtype="<i2").tolist() == [0, 16383, 32767, -32767, 32767, -32767]


def test_analyser_levels():
    analyser = SpectrumAnalyser()
    analyser.push(np.zeros(256, dtype=np.float32))
    assert analyser.average_level() == 0.0

    t = np.arange(4096) / 16000
    tone = (0.5 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)
    for block in np.split(tone, 16):
        analyser.push(block)
        level = analyser.average_level()
    assert level > 3.0
    assert analyser.byte_frequency_data().shape == (analyser.frequency_bin_count,)


class RecordingTransport:
    def __init__(self):
        self.frames = []
        self.stream_ends = 0

    def send_audio(self, pcm):
        self.frames.append(pcm)
        return True

    def send_audio_stream_end(self):
        self.stream_ends += 1
        return True


@pytest.fixture
async def engine():
    timers = TimerRegistry()
    clock = FakeClock(0.0)
    transport = RecordingTransport()
    microphone = FakeMicrophone()
    events = []
    capture = AudioCaptureEngine(
        microphone,
        transport,
        timers,
        detector=VoiceActivityDetector(clock=clock),
        frame_interval=60.0,
        on_event=events.append,
        clock=clock,
    )
    capture.events = events
    yield capture
    await capture.stop()
    timers.close()


async def test_frames_forwarded_only_while_active(engine):
    await engine.start()
    frame = np.full(128, 0.25, dtype=np.float32)

    engine.handle_frame(frame)
    assert engine.transport.frames == []

    engine.activate()
    engine.handle_frame(frame)
    assert len(engine.transport.frames) == 1

    engine.set_muted(True)
    engine.handle_frame(frame)
    assert len(engine.transport.frames) == 1
    assert engine.transport.stream_ends == 1
    assert engine.microphone.enabled is False


async def test_end_of_turn_stops_forwarding_and_signals_once(engine):
    await engine.start()
    engine.activate()
    frame = np.full(128, 0.25, dtype=np.float32)

    engine.observe_level(10.0, 0.0)
    assert engine.timers.is_active(named.MANUAL_END_ELIGIBILITY)
    engine.observe_level(10.0, 2.5)
    for t in np.arange(2.75, 6.0, 0.25):
        engine.observe_level(0.0, float(t))

    assert engine.transport.stream_ends == 1
    assert engine.events == [SpeechEvent.SPEECH_STARTED, SpeechEvent.SPEECH_ENDED]
    assert not engine.timers.is_active(named.MANUAL_END_ELIGIBILITY)

    engine.handle_frame(frame)
    assert engine.transport.frames == []


async def test_manual_end_through_engine(engine):
    await engine.start()
    engine.activate()
    engine.observe_level(10.0, 0.0)

    engine.detector.clock.advance(1.0)
    assert engine.end_speech_manually() is False
    engine.detector.clock.advance(1.5)
    assert engine.end_speech_manually() is True
    assert engine.transport.stream_ends == 1


async def test_permission_denied_maps_to_microphone_error():
    capture = AudioCaptureEngine(FakeMicrophone(error=PermissionError("nope")), RecordingTransport(), TimerRegistry())
    with pytest.raises(MicrophonePermissionDenied):
        await capture.start()


async def test_missing_device_maps_to_unavailable():
    capture = AudioCaptureEngine(FakeMicrophone(error=OSError("no device")), RecordingTransport(), TimerRegistry())
    with pytest.raises(MicrophoneUnavailable):
        await capture.start()


async def test_stop_is_idempotent(engine):
    await engine.start()
    engine.activate()
    await engine.stop()
    await engine.stop()
    assert engine.microphone.closed == 1
