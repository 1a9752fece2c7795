# app/core/config.py
"""
Application configuration using Pydantic Settings
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
import json
from pydantic import field_validator
from urllib.parse import urlparse


DEFAULT_ALLOWED_SOURCE_DOMAINS = ",".join([
    "legislation.nsw.gov.au",
    "austlii.edu.au",
    "fcfcoa.gov.au",
    "localcourt.nsw.gov.au",
    "supremecourt.nsw.gov.au",
    "districtcourt.nsw.gov.au",
])


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables
    """

    # Application
    APP_NAME: str = "NSW Legal RAG"
    DEBUG: bool = True

    # Database
    DATABASE_URL: str
    AUTO_CREATE_TABLES: bool = False  # create_all on startup; production uses backend/database/

    # JWT Authentication (tokens are issued by the external auth service)
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str = "authenticated"

    # OpenAI
    OPENAI_API_KEY: str = ""
    OPENAI_TIMEOUT_SECONDS: float = 60.0
    OPENAI_MAX_RETRIES: int = 2
    CHAT_MODELS: str = "gpt-4o-mini,gpt-4o"
    INGESTION_MODELS: str = "gpt-4o-mini,gpt-4o"
    EVIDENCE_MODELS: str = "gpt-4o,gpt-4o-mini"
    EMBEDDING_MODELS: str = "text-embedding-3-large,text-embedding-3-small"
    EMBEDDING_DIMENSIONS: int = 1536

    @field_validator("OPENAI_API_KEY", "CHAT_MODELS", "INGESTION_MODELS", "EVIDENCE_MODELS", "EMBEDDING_MODELS")
    @classmethod
    def strip_openai_values(cls, v: str) -> str:
        if isinstance(v, str):
            return v.strip()
        return v

    # AWS / blob storage
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "ap-southeast-2"
    S3_ENDPOINT_URL: str = ""   # leave blank for AWS; set for S3-compatible storage
    LEGAL_TRAINING_BUCKET: str = "legal-training"

    # Content acquisition
    ALLOWED_SOURCE_DOMAINS: str = DEFAULT_ALLOWED_SOURCE_DOMAINS
    INGEST_USER_AGENT: str = "NSW-Legal-RAG-Bot/1.0 (Educational/Research Purpose)"
    INGEST_FETCH_TIMEOUT_SECONDS: float = 30.0

    # Ingestion pipeline
    CHUNK_SIZE: int = 1000
    CHUNK_OVERLAP: int = 100
    STRUCTURE_MAX_CHARS: int = 12000
    CITATION_CONFIDENCE_THRESHOLD: float = 0.7
    CONCEPT_SAMPLE_CHUNKS: int = 5

    # Retrieval
    LEGAL_MATCH_THRESHOLD: float = 0.7
    LEGAL_MATCH_COUNT: int = 12
    LEGAL_MAX_UNIQUE_SOURCES: int = 10
    EVIDENCE_MATCH_THRESHOLD: float = 0.5
    EVIDENCE_MATCH_COUNT: int = 10
    DEFAULT_JURISDICTION: str = "NSW"

    # Assistant chat
    CHAT_RATE_LIMIT_PER_MINUTE: int = 10
    CHAT_HISTORY_LIMIT: int = 20
    TRAINING_PROMPT_PATH: str = ""  # leave blank to use the bundled training document

    # Evidence intelligence orchestrator
    ORCHESTRATOR_FILE_DELAY_SECONDS: float = 2.0
    DOWNSTREAM_FUNCTIONS_URL: str = ""  # leave blank to skip downstream analysis calls
    DOWNSTREAM_FUNCTIONS_TOKEN: str = ""

    # CORS
    CORS_ORIGINS: str = '["*"]'

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from string to list"""
        try:
            if isinstance(self.CORS_ORIGINS, str):
                return json.loads(self.CORS_ORIGINS)
            return self.CORS_ORIGINS
        except ValueError:
            return ["*"]

    @property
    def chat_models_list(self) -> List[str]:
        return _split_csv(self.CHAT_MODELS)

    @property
    def ingestion_models_list(self) -> List[str]:
        return _split_csv(self.INGESTION_MODELS)

    @property
    def evidence_models_list(self) -> List[str]:
        return _split_csv(self.EVIDENCE_MODELS)

    @property
    def embedding_models_list(self) -> List[str]:
        return _split_csv(self.EMBEDDING_MODELS)

    @property
    def allowed_source_domains_list(self) -> List[str]:
        """
        Parse comma-separated allowed domains or URLs into normalized hostnames.
        Example env:
          ALLOWED_SOURCE_DOMAINS=legislation.nsw.gov.au,https://www.austlii.edu.au/path
        """
        out: List[str] = []
        for item in _split_csv(self.ALLOWED_SOURCE_DOMAINS):
            host = normalize_hostname(item)
            if host and host not in out:
                out.append(host)
        return out


def _split_csv(raw: str) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


def normalize_hostname(value: str) -> str:
    """Lowercased hostname without scheme, credentials, port or leading ``www.``."""
    candidate = (value or "").strip()
    if not candidate:
        return ""
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    parsed = urlparse(candidate)
    host = (parsed.netloc or parsed.path or "").strip().lower()
    if "@" in host:
        host = host.split("@", 1)[1]
    if ":" in host:
        host = host.split(":", 1)[0]
    host = host.strip(".")
    if host.startswith("www."):
        host = host[4:]
    return host


settings = Settings()
