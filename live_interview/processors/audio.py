import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
import structlog

from ..core import timers as named
from ..core.exceptions import MicrophoneError, MicrophonePermissionDenied, MicrophoneUnavailable
from ..core.interfaces import MicrophoneSource
from ..core.timers import TimerRegistry
from .vad import SpeechEvent, VoiceActivityDetector

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DeviceConstraints:
    sample_rate: int = 16000
    channels: int = 1
    block_size: int = 4096
    device: Optional[int | str] = None


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Clamp float samples to [-1, 1] and encode them as little-endian 16-bit PCM."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (clipped * 0x7FFF).astype("<i2").tobytes()


class SpectrumAnalyser:
    """
    Frequency-domain level meter modelled on a browser ``AnalyserNode``.

    Produces the same 0-255 byte-scaled magnitudes that ``getByteFrequencyData``
    returns, so speech thresholds tuned against a browser carry over.
    """

    def __init__(
        self,
        fft_size: int = 256,
        smoothing: float = 0.8,
        min_decibels: float = -100.0,
        max_decibels: float = -30.0,
    ):
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels
        self.window = np.blackman(fft_size).astype(np.float32)
        self._buffer = np.zeros(fft_size, dtype=np.float32)
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float32)

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, samples: np.ndarray) -> None:
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if samples.size >= self.fft_size:
            self._buffer = samples[-self.fft_size:].copy()
        else:
            self._buffer = np.concatenate([self._buffer[samples.size:], samples])

    def byte_frequency_data(self) -> np.ndarray:
        spectrum = np.fft.rfft(self._buffer * self.window)[: self.frequency_bin_count]
        magnitude = np.abs(spectrum) / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1 - self.smoothing) * magnitude
        with np.errstate(divide="ignore"):
            decibels = 20 * np.log10(self._smoothed)
        scale = 255.0 / (self.max_decibels - self.min_decibels)
        scaled = (decibels - self.min_decibels) * scale
        return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255).astype(np.uint8)

    def average_level(self) -> float:
        return float(np.mean(self.byte_frequency_data()))


class AudioCaptureEngine:
    """
    Owns the microphone for one session: samples levels for the VAD and
    forwards PCM frames to the transport while the candidate holds the floor.
    """

    def __init__(
        self,
        microphone: MicrophoneSource,
        transport,
        timers: TimerRegistry,
        detector: Optional[VoiceActivityDetector] = None,
        analyser: Optional[SpectrumAnalyser] = None,
        frame_interval: float = 1 / 60,
        on_event: Optional[Callable[[SpeechEvent], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.microphone = microphone
        self.transport = transport
        self.timers = timers
        self.clock = clock
        self.detector = detector or VoiceActivityDetector(clock=clock)
        self.analyser = analyser or SpectrumAnalyser()
        self.frame_interval = frame_interval
        self.on_event = on_event

        self.active = False
        self.muted = False
        self.opened = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sampler: Optional[asyncio.Task] = None
        self.frames_sent = 0

    @property
    def state(self):
        return self.detector.state

    async def start(self, constraints: DeviceConstraints = DeviceConstraints()) -> MicrophoneSource:
        """Acquire the microphone. Frames are only forwarded after :meth:`activate`."""
        if self.opened:
            return self.microphone
        self._loop = asyncio.get_running_loop()
        logger.info(
            "microphone_opening",
            sample_rate=constraints.sample_rate,
            block_size=constraints.block_size,
        )
        try:
            await asyncio.to_thread(self.microphone.open, self._threadsafe_frame)
        except MicrophoneError:
            raise
        except PermissionError as e:
            logger.error("microphone_permission_denied", error=str(e))
            raise MicrophonePermissionDenied() from e
        except Exception as e:
            logger.error("microphone_unavailable", error=str(e))
            raise MicrophoneUnavailable() from e
        self.opened = True
        return self.microphone

    def activate(self) -> None:
        """Begin VAD sampling and frame forwarding."""
        if self.active:
            return
        self.active = True
        self._sampler = asyncio.ensure_future(self._sample_loop())
        logger.info("capture_activated")

    def _threadsafe_frame(self, samples: np.ndarray) -> None:
        # Called from the audio driver's thread.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.handle_frame, samples.copy())

    def handle_frame(self, samples: np.ndarray) -> None:
        self.analyser.push(samples)
        if not self.active or self.muted or self.state.speech_end_detected:
            return
        self.transport.send_audio(float_to_pcm16(samples))
        self.frames_sent += 1

    async def _sample_loop(self) -> None:
        try:
            while self.active:
                if not self.muted:
                    self.sample()
                await asyncio.sleep(self.frame_interval)
        except asyncio.CancelledError:
            pass

    def sample(self, now: Optional[float] = None) -> Optional[SpeechEvent]:
        return self.observe_level(self.analyser.average_level(), now)

    def observe_level(self, level: float, now: Optional[float] = None) -> Optional[SpeechEvent]:
        if not self.active or self.muted:
            return None
        event = self.detector.observe(level, now)
        if event is SpeechEvent.SPEECH_STARTED:
            self.timers.start(
                named.MANUAL_END_ELIGIBILITY,
                self.detector.min_speaking,
                self._on_manual_end_eligible,
            )
            self._emit(event)
        elif event is SpeechEvent.SPEECH_ENDED:
            self._end_of_turn()
        return event

    def _on_manual_end_eligible(self) -> None:
        if self.detector.mark_manual_end_eligible():
            logger.debug("manual_end_available")
            self._emit(SpeechEvent.MANUAL_END_AVAILABLE)

    def end_speech_manually(self) -> bool:
        if not self.detector.end_speech_manually():
            return False
        self._end_of_turn()
        return True

    def _end_of_turn(self) -> None:
        self.timers.cancel(named.MANUAL_END_ELIGIBILITY)
        self.transport.send_audio_stream_end()
        self._emit(SpeechEvent.SPEECH_ENDED)

    def set_muted(self, muted: bool) -> None:
        if muted == self.muted:
            return
        self.muted = muted
        self.microphone.set_enabled(not muted)
        logger.info("microphone_muted" if muted else "microphone_unmuted")
        if muted:
            # Muting is treated like the candidate pausing.
            self.transport.send_audio_stream_end()

    def reset_speech_state(self) -> None:
        self.timers.cancel(named.MANUAL_END_ELIGIBILITY)
        self.detector.reset()

    def _emit(self, event: SpeechEvent) -> None:
        if self.on_event is not None:
            self.on_event(event)

    async def stop(self) -> None:
        self.active = False
        self.timers.cancel(named.MANUAL_END_ELIGIBILITY)
        if self._sampler is not None:
            self._sampler.cancel()
            try:
                await self._sampler
            except asyncio.CancelledError:
                pass
            self._sampler = None
        if self.opened:
            self.opened = False
            try:
                self.microphone.close()
            except Exception as e:
                logger.warning("microphone_close_failed", error=str(e))
            logger.info("microphone_closed")
