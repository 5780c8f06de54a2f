"""Sound-card backed microphone and speaker built on ``sounddevice``."""
import asyncio
import io
import wave
from typing import Optional

import numpy as np
import structlog

from ..core.exceptions import MicrophonePermissionDenied, MicrophoneUnavailable
from ..core.interfaces import FrameCallback, MicrophoneSource, PlaybackSink
from .audio import DeviceConstraints

logger = structlog.get_logger(__name__)


def _load_sounddevice():
    # PortAudio is loaded lazily so the engine imports on machines without audio hardware.
    try:
        import sounddevice
    except OSError as e:
        raise MicrophoneUnavailable(f"PortAudio is not available: {e}") from e
    return sounddevice


class SoundDeviceMicrophone(MicrophoneSource):
    def __init__(self, constraints: DeviceConstraints = DeviceConstraints()):
        self.constraints = constraints
        self.enabled = True
        self._stream = None

    def open(self, on_frame: FrameCallback) -> None:
        sd = _load_sounddevice()

        def callback(indata, frames, time_info, status):
            if status:
                logger.debug("microphone_status", status=str(status))
            if self.enabled:
                on_frame(indata[:, 0].astype(np.float32))

        try:
            sd.query_devices(self.constraints.device, kind="input")
            self._stream = sd.InputStream(
                samplerate=self.constraints.sample_rate,
                channels=self.constraints.channels,
                blocksize=self.constraints.block_size,
                device=self.constraints.device,
                dtype="float32",
                callback=callback,
            )
            self._stream.start()
        except PermissionError as e:
            raise MicrophonePermissionDenied() from e
        except (sd.PortAudioError, ValueError) as e:
            raise MicrophoneUnavailable(f"No usable input device: {e}") from e
        logger.info("sounddevice_input_started", device=self.constraints.device)

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


def read_container(container: bytes) -> tuple[np.ndarray, int]:
    with wave.open(io.BytesIO(container), "rb") as wf:
        sample_rate = wf.getframerate()
        frames = wf.readframes(wf.getnframes())
    return np.frombuffer(frames, dtype="<i2"), sample_rate


class SoundDeviceSpeaker(PlaybackSink):
    def __init__(self, device: Optional[int | str] = None):
        self.device = device
        self._closed = False

    async def play(self, container: bytes) -> None:
        if self._closed:
            raise RuntimeError("Playback sink is closed")
        samples, sample_rate = read_container(container)
        sd = _load_sounddevice()
        await asyncio.to_thread(self._play_blocking, sd, samples, sample_rate)

    def _play_blocking(self, sd, samples: np.ndarray, sample_rate: int) -> None:
        sd.play(samples, samplerate=sample_rate, device=self.device)
        sd.wait()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            sd = _load_sounddevice()
            sd.stop()
        except MicrophoneUnavailable:
            pass
