from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from enum import Enum


class EnvironmentType(str, Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class Settings(BaseSettings):
    # Basic Settings
    APP_NAME: str = "Live Mock Interview"
    ENVIRONMENT: EnvironmentType = EnvironmentType.DEVELOPMENT
    DEBUG: bool = True
    API_PREFIX: str = "/api"

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "DEBUG"

    # Live API Settings
    GOOGLE_AI_API_KEY: str | None = None
    LIVE_MODEL: str = "gemini-2.0-flash-live-001"
    LIVE_ENDPOINT: str = (
        "wss://generativelanguage.googleapis.com/ws/"
        "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
    )
    DEFAULT_VOICE: str = "Aoede"
    SETUP_TIMEOUT_SECONDS: float = 15.0
    BOOTSTRAP_URL: str = "http://localhost:8000/api/interview/start-live-session"
    BOOTSTRAP_TIMEOUT_SECONDS: float = 10.0

    # Session timing
    MAX_SESSION_SECONDS: float = 30 * 60
    TIME_WARNING_SECONDS: float = 25 * 60
    WARNING_DISPLAY_SECONDS: float = 3.0
    AUTO_ADVANCE_SECONDS: float = 6.0
    DURATION_TICK_SECONDS: float = 1.0

    # Voice activity detection (empirically tuned, not derived)
    VAD_SPEECH_THRESHOLD: float = 3.0
    VAD_MIN_SPEAKING_SECONDS: float = 2.0
    VAD_SILENCE_SECONDS: float = 3.0
    VAD_FRAME_INTERVAL: float = 1 / 60
    ANALYSER_FFT_SIZE: int = 256
    ANALYSER_SMOOTHING: float = 0.8

    # Audio Processing
    AUDIO_QUIESCENCE_SECONDS: float = 1.0
    AUDIO_FORCE_FLUSH_CHUNKS: int = 5
    INPUT_SAMPLE_RATE: int = 16000
    OUTPUT_SAMPLE_RATE: int = 24000
    INPUT_BLOCK_SIZE: int = 4096

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra='ignore'
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
