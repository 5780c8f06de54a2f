"""
Reassembly and playback of the interviewer's streamed audio.

The remote voice arrives as many small base64 fragments of 24 kHz mono
16-bit PCM. They are buffered until the stream goes quiet (or enough of them
have piled up), stitched together in arrival order, wrapped in a WAV
container and handed to a playback sink.
"""
import asyncio
import base64
import binascii
import io
import itertools
import time
import wave
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
import structlog

from ..core import timers as named
from ..core.interfaces import PlaybackSink
from ..core.timers import TimerRegistry

logger = structlog.get_logger(__name__)

REMOTE_SAMPLE_RATE = 24000
WAV_HEADER_SIZE = 44


@dataclass(frozen=True)
class AudioChunk:
    data: str
    received_at: float


@dataclass(frozen=True)
class AudioHandle:
    id: str
    samples: int
    sample_rate: int = REMOTE_SAMPLE_RATE

    @property
    def duration(self) -> float:
        return self.samples / self.sample_rate


def decode_chunks(chunks: List[AudioChunk]) -> np.ndarray:
    """Decode chunks into one int16 sample array, ordered by arrival time."""
    arrays = []
    for chunk in sorted(chunks, key=lambda c: c.received_at):
        if not chunk.data:
            continue
        try:
            raw = base64.b64decode(chunk.data, validate=True)
            arrays.append(np.frombuffer(raw, dtype="<i2"))
        except (binascii.Error, ValueError) as e:
            logger.warning("audio_chunk_skipped", error=str(e), size=len(chunk.data))
    if not arrays:
        return np.zeros(0, dtype=np.int16)
    return np.concatenate(arrays).astype(np.int16)


def to_container(samples: np.ndarray, sample_rate: int = REMOTE_SAMPLE_RATE) -> bytes:
    """Wrap PCM samples in a RIFF/WAVE container (mono, 16-bit, 44-byte header)."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(np.asarray(samples, dtype="<i2").tobytes())
    return buffer.getvalue()


class AudioAccumulator:
    def __init__(
        self,
        sink: PlaybackSink,
        timers: TimerRegistry,
        quiescence: float = 1.0,
        force_flush_count: int = 5,
        sample_rate: int = REMOTE_SAMPLE_RATE,
        clock: Callable[[], float] = time.monotonic,
        on_playback_started: Optional[Callable[[AudioHandle], None]] = None,
        on_playback_finished: Optional[Callable[[bool], None]] = None,
        on_silent_turn: Optional[Callable[[], None]] = None,
    ):
        self.sink = sink
        self.timers = timers
        self.quiescence = quiescence
        self.force_flush_count = force_flush_count
        self.sample_rate = sample_rate
        self.clock = clock
        self.on_playback_started = on_playback_started
        self.on_playback_finished = on_playback_finished
        self.on_silent_turn = on_silent_turn

        self._pending: List[AudioChunk] = []
        self._last_arrival: Optional[float] = None
        self._playback: Optional[asyncio.Task] = None
        self._flush_after_playback = False
        self._ids = itertools.count(1)
        self.playback_count = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_playing(self) -> bool:
        return self._playback is not None and not self._playback.done()

    def ingest(self, data, received_at: Optional[float] = None) -> bool:
        if not isinstance(data, str) or not data:
            logger.debug("audio_chunk_discarded", reason="empty payload")
            return False
        now = self.clock() if received_at is None else received_at
        self._pending.append(AudioChunk(data=data, received_at=now))
        self._last_arrival = now
        logger.debug("audio_chunk_ingested", pending=len(self._pending), size=len(data))

        if self.is_playing:
            # The next turn may start streaming before this one finished playing.
            return True
        if len(self._pending) >= self.force_flush_count:
            logger.debug("audio_flush_threshold_reached", pending=len(self._pending))
            self.flush()
        else:
            self.timers.start(named.CHUNK_FLUSH, self.quiescence, self._on_quiescence)
        return True

    def should_flush(self, now: Optional[float] = None) -> bool:
        if not self._pending or self.is_playing:
            return False
        if len(self._pending) >= self.force_flush_count:
            return True
        now = self.clock() if now is None else now
        return now - self._last_arrival >= self.quiescence

    def _on_quiescence(self) -> None:
        logger.debug("audio_quiescence_reached", pending=len(self._pending))
        self.flush()

    def assemble(self) -> np.ndarray:
        return decode_chunks(self._pending)

    def on_turn_complete(self) -> None:
        self.timers.cancel(named.CHUNK_FLUSH)
        if self.is_playing:
            self._flush_after_playback = True
            return
        if not self._pending:
            logger.info("turn_complete_without_audio")
            self._silent_turn()
            return
        self.flush()

    def flush(self) -> bool:
        """Assemble pending chunks and start playing them. Returns True if playback started."""
        self.timers.cancel(named.CHUNK_FLUSH)
        if self.is_playing or not self._pending:
            return False

        chunk_count = len(self._pending)
        samples = self.assemble()
        self._pending = []
        if samples.size == 0:
            logger.info("no_valid_audio_after_assembly", chunks=chunk_count)
            self._silent_turn()
            return False

        handle = AudioHandle(id=f"audio-{next(self._ids)}", samples=int(samples.size), sample_rate=self.sample_rate)
        container = to_container(samples, self.sample_rate)
        self.playback_count += 1
        logger.info("audio_playback_starting", chunks=chunk_count, samples=handle.samples, handle=handle.id)
        self._playback = asyncio.ensure_future(self._play(container, handle))
        return True

    async def _play(self, container: bytes, handle: AudioHandle) -> None:
        ok = False
        try:
            if self.on_playback_started is not None:
                self.on_playback_started(handle)
            await self.sink.play(container)
            ok = True
            logger.info("audio_playback_finished", handle=handle.id, duration=round(handle.duration, 2))
        except asyncio.CancelledError:
            logger.debug("audio_playback_cancelled", handle=handle.id)
            raise
        except Exception as e:
            logger.error("audio_playback_failed", handle=handle.id, error=str(e))
        finally:
            del container
        self._playback = None
        if self.on_playback_finished is not None:
            self.on_playback_finished(ok)
        self._after_playback()

    def _after_playback(self) -> None:
        forced, self._flush_after_playback = self._flush_after_playback, False
        if not self._pending:
            return
        if forced or self.should_flush():
            self.flush()
        else:
            remaining = self.quiescence - (self.clock() - self._last_arrival)
            self.timers.start(named.CHUNK_FLUSH, max(remaining, 0.0), self._on_quiescence)

    def _silent_turn(self) -> None:
        self._pending = []
        if self.on_silent_turn is not None:
            self.on_silent_turn()

    async def clear(self) -> None:
        self.timers.cancel(named.CHUNK_FLUSH)
        self._pending = []
        self._flush_after_playback = False
        playback, self._playback = self._playback, None
        if playback is not None and not playback.done():
            playback.cancel()
            try:
                await playback
            except asyncio.CancelledError:
                pass
