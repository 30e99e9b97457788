"""
Central configuration for the Clinic Relay service
"""

from typing import List, Optional
from enum import Enum

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class DurationProberKind(str, Enum):
    FFPROBE = "ffprobe"
    MUTAGEN = "mutagen"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # Environment
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # API Configuration
    api_title: str = Field(default="Clinic Relay API")
    api_description: str = Field(default="Visit recording transcription and elder-friendly summaries")
    api_version: str = Field(default="1.0.0")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=3001, validation_alias=AliasChoices("STT_SERVER_PORT", "api_port"))

    # External Service APIs
    google_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GOOGLE_API_KEY", "EXPO_PUBLIC_GOOGLE_API_KEY", "google_api_key"),
    )
    gemini_api_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("GEMINI_API_KEY", "gemini_api_key")
    )
    speech_api_base_url: str = Field(default="https://speech.googleapis.com/v1")
    gemini_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta/openai/")

    # Rate Limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_requests: int = Field(default=30)
    rate_limit_window: int = Field(default=60)  # seconds

    # Audio Processing
    max_audio_bytes: int = Field(default=25 * 1024 * 1024)
    chunk_seconds: float = Field(default=50.0)
    single_chunk_max_seconds: float = Field(default=55.0)
    sample_rate_hertz: int = Field(default=16000)
    min_speaker_count: int = Field(default=2)
    max_speaker_count: int = Field(default=2)
    ffmpeg_path: str = Field(default="ffmpeg")
    ffprobe_path: str = Field(default="ffprobe")
    duration_prober: DurationProberKind = DurationProberKind.FFPROBE
    scratch_root: Optional[str] = Field(default=None)

    # Timeouts
    process_timeout_seconds: float = Field(default=120.0)
    stt_timeout: float = Field(default=60.0)
    llm_timeout: float = Field(default=60.0)
    stt_longrun_timeout_ms: int = Field(
        default=180000,
        validation_alias=AliasChoices("STT_LONGRUN_TIMEOUT_MS", "stt_longrun_timeout_ms"),
    )

    # Language Support
    default_language_code: str = Field(default="en-US")
    unspaced_language_prefixes: List[str] = Field(default=["zh", "ja", "yue", "cmn"])

    # LLM Configuration
    gemini_model: str = Field(
        default="gemini-1.5-flash-latest", validation_alias=AliasChoices("GEMINI_MODEL", "gemini_model")
    )
    llm_temperature: float = Field(default=0.0)
    llm_max_tokens: int = Field(default=2048)
    summary_timezone: str = Field(default="Asia/Taipei")
    summary_output_language: str = Field(default="English")
    default_elder_title: str = Field(default="Grandpa/Grandma")

    # CORS Configuration
    cors_origins: List[str] = Field(default=["*"])
    cors_allow_credentials: bool = Field(default=False)
    cors_allow_methods: List[str] = Field(default=["GET", "POST"])
    cors_allow_headers: List[str] = Field(default=["*"])

    # Monitoring
    enable_metrics: bool = Field(default=True)

    @property
    def generation_api_key(self) -> Optional[str]:
        """Generation credential, falling back to the recognition one."""
        return self.gemini_api_key or self.google_api_key

    @property
    def longrun_timeout_seconds(self) -> float:
        return self.stt_longrun_timeout_ms / 1000.0


# Global settings instance
settings = Settings()
