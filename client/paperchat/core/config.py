from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="PAPERCHAT_", extra="ignore"
    )

    # App
    app_name: str = "PaperChat"
    debug: bool = False

    # Remote retrieval service
    api_base_url: str = "http://localhost:8000/api"
    api_token: Optional[str] = None
    request_timeout_seconds: float = 60.0
    # Streams stay open for the whole pipeline run
    stream_timeout_seconds: float = 300.0

    # Batch upload
    upload_concurrency: int = 2
    max_batch_files: int = 20
    max_upload_bytes: int = 50 * 1024 * 1024

    # Library listing
    papers_page_size: int = 50

    # Default query options
    default_top_k: int = 15
    default_temperature: float = 0.3
    default_enable_hyde: bool = True
    default_enable_expansion: bool = True
    default_enable_citation_check: bool = True
    default_response_mode: str = "detailed"
    default_enable_general_knowledge: bool = True
    default_enable_web_search: bool = False

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("upload_concurrency")
    @classmethod
    def check_upload_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("upload_concurrency must be at least 1")
        return v

    def auth_headers(self) -> dict[str, str]:
        """Build auth headers for the remote service."""
        if self.api_token:
            return {"Authorization": f"Bearer {self.api_token}"}
        return {}


@lru_cache
def get_settings() -> Settings:
    return Settings()
