from abc import ABC, abstractmethod
from typing import Any, Callable

import numpy as np

FrameCallback = Callable[[np.ndarray], None]


class MicrophoneSource(ABC):
    @abstractmethod
    def open(self, on_frame: FrameCallback) -> None:
        """Start capturing; ``on_frame`` receives mono float32 blocks."""
        pass

    @abstractmethod
    def set_enabled(self, enabled: bool) -> None:
        """Pause or resume delivery without releasing the device."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Stop all tracks and release the device."""
        pass


class PlaybackSink(ABC):
    @abstractmethod
    async def play(self, container: bytes) -> None:
        """Play a WAV container, returning once playback has finished."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the output device."""
        pass


class LiveSocket(ABC):
    """The subset of a websocket connection the transport relies on."""

    @abstractmethod
    async def send(self, message: str) -> None:
        pass

    @abstractmethod
    async def recv(self) -> Any:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class SessionObserver:
    """Receives session updates for the UI layer. Every hook is optional."""

    def on_state_change(self, state) -> None:
        pass

    def on_transcript(self, entry) -> None:
        pass

    def on_countdown(self, elapsed: float, remaining: float) -> None:
        pass

    def on_speech_activity(self, event) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass
