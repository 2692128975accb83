# backend/core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional, List
import json


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # ignore unknown keys instead of crashing
        populate_by_name=True,
    )

    # ---- Auth (token decoding only; issuance lives in the auth service)
    secret_key: str = Field("dev-secret-change-me", alias="JWT_SECRET")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(15, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # ---- DB (accept either)
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")
    db_url_compat: Optional[str] = Field(default=None, alias="DB_URL")

    # ---- Model provider
    ai_provider: str = Field("openai", alias="AI_PROVIDER")  # openai | ollama | stub (tests, local dev)
    model_provider_url: str = Field("https://api.openai.com/v1", alias="MODEL_PROVIDER_URL")
    model_provider_key: str = Field("", alias="MODEL_PROVIDER_KEY")
    model_name: str = Field("gpt-4o-mini", alias="MODEL_NAME")
    transcription_model: str = Field("whisper-1", alias="TRANSCRIPTION_MODEL")
    tts_model: str = Field("tts-1", alias="TTS_MODEL")
    ollama_url: str = Field("http://127.0.0.1:11434", alias="OLLAMA_URL")
    ollama_model: str = Field("llama3.1", alias="OLLAMA_MODEL")
    whisper_model: str = Field("base", alias="WHISPER_MODEL")

    # ---- Timeouts (seconds)
    max_request_seconds: int = Field(120, alias="MAX_REQUEST_SECONDS")
    model_chunk_timeout_seconds: int = Field(60, alias="MODEL_CHUNK_TIMEOUT_SECONDS")
    tts_first_frame_timeout_seconds: int = Field(15, alias="TTS_FIRST_FRAME_TIMEOUT_SECONDS")
    feedback_transcript_wait_seconds: int = Field(20, alias="FEEDBACK_TRANSCRIPT_WAIT_SECONDS")

    # ---- Interview defaults
    default_total_questions: int = Field(7, alias="DEFAULT_TOTAL_QUESTIONS")
    default_max_output_tokens: int = Field(1024, alias="DEFAULT_MAX_OUTPUT_TOKENS")
    prompts_hot_reload: bool = Field(False, alias="PROMPTS_HOT_RELOAD")
    prompts_dir: Optional[str] = Field(None, alias="PROMPTS_DIR")

    # ---- Speech
    tts_provider_chain_raw: str = Field("model,streamelements,local", alias="TTS_PROVIDER_CHAIN")
    streamelements_url: str = Field(
        "https://api.streamelements.com/kappa/v2/speech", alias="STREAMELEMENTS_URL"
    )
    transcription_concurrency: int = Field(10, alias="TRANSCRIPTION_CONCURRENCY")
    transcription_chunk_bytes: int = Field(8 * 1024 * 1024, alias="TRANSCRIPTION_CHUNK_BYTES")
    max_audio_bytes: int = Field(25 * 1024 * 1024, alias="MAX_AUDIO_BYTES")

    # ---- Pricing (USD per million tokens) for token accounting
    input_price_per_mtok: float = Field(0.15, alias="INPUT_PRICE_PER_MTOK")
    output_price_per_mtok: float = Field(0.60, alias="OUTPUT_PRICE_PER_MTOK")

    # ---- Blob store (S3 / MinIO)
    blob_endpoint: Optional[str] = Field(None, alias="BLOB_ENDPOINT")
    blob_region: str = Field("us-east-1", alias="BLOB_REGION")
    blob_access_key: Optional[str] = Field(None, alias="BLOB_ACCESS_KEY")
    blob_secret_key: Optional[str] = Field(None, alias="BLOB_SECRET_KEY")
    blob_bucket: str = Field("mock-interview-audio", alias="BLOB_BUCKET")
    blob_sign_ttl_seconds: int = Field(3600, alias="BLOB_SIGN_TTL_SECONDS")

    # ---- Server
    listen_addr: str = Field("0.0.0.0:8000", alias="LISTEN_ADDR")
    cors_origins_raw: str = Field(
        "http://localhost:3000,http://127.0.0.1:3000",
        alias="CORS_ORIGINS",
    )

    # ---- Redis / Celery
    redis_url: Optional[str] = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")
    celery_broker_url: Optional[str] = Field(None, alias="CELERY_BROKER_URL")
    celery_result_backend: Optional[str] = Field(None, alias="CELERY_RESULT_BACKEND")

    # ---- Helpers / parsed properties
    @property
    def cors_origins(self) -> List[str]:
        s = (self.cors_origins_raw or "").strip()
        if not s:
            return ["http://localhost:3000", "http://127.0.0.1:3000"]
        if s.startswith("["):
            try:
                arr = json.loads(s)
                if isinstance(arr, list):
                    return [str(x).strip() for x in arr if str(x).strip()]
            except ValueError:
                pass
        return [x.strip() for x in s.split(",") if x.strip()]

    @property
    def tts_provider_chain(self) -> List[str]:
        s = (self.tts_provider_chain_raw or "").strip()
        if s.startswith("["):
            try:
                return [str(x).strip().lower() for x in json.loads(s) if str(x).strip()]
            except ValueError:
                pass
        return [x.strip().lower() for x in s.split(",") if x.strip()]

    @property
    def DATABASE_URL(self) -> str:
        return self.database_url or self.db_url_compat or "sqlite:///./mock_interview.sqlite"

    @property
    def listen_host(self) -> str:
        return self.listen_addr.rsplit(":", 1)[0] or "0.0.0.0"

    @property
    def listen_port(self) -> int:
        try:
            return int(self.listen_addr.rsplit(":", 1)[1])
        except (IndexError, ValueError):
            return 8000


settings = Settings()
