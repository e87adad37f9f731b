from typing import List, Literal, Optional, Union
from pathlib import Path
from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, env_prefix="PORTRAIT_BATCH_")

    PROJECT_NAME: str = "Portrait Batch Service"
    API_V1_STR: str = "/api/v1"
    APP_VERSION: str = "0.3.0"
    LOG_LEVEL: str = "INFO"

    # Root directory for all service data
    # Can be overridden with PORTRAIT_BATCH_ROOT_DIR environment variable
    ROOT_DIR: Path = Path.home() / ".portrait-batch"

    # Full SQLAlchemy URL; when unset a SQLite file under ROOT_DIR/meta is used
    DATABASE_URL: Optional[str] = None

    # Adaptive pacing between generation requests (milliseconds)
    PACING_BASE_DELAY_MS: int = 1500
    PACING_MIN_DELAY_MS: int = 500
    PACING_MAX_DELAY_MS: int = 8000
    PACING_EMERGENCY_DELAY_MS: int = 6000
    PACING_ADJUSTMENT_FACTOR: float = 1.3
    PACING_SUCCESS_THRESHOLD: float = 0.85
    PACING_LOW_SUCCESS_THRESHOLD: float = 0.15
    PACING_EMERGENCY_FAILURES: int = 3

    # Batch orchestration
    GENERATION_TIMEOUT_S: float = 120.0
    UPLOAD_TIMEOUT_S: float = 60.0
    SOURCE_FETCH_TIMEOUT_S: float = 30.0
    # 1 means a failed item is recorded immediately, without an in-place retry
    ITEM_MAX_ATTEMPTS: int = 1
    MAX_CONCURRENT_JOBS: int = 2
    STALE_JOB_TIMEOUT_S: int = 900
    STALE_JOB_POLICY: Literal["resume", "fail"] = "resume"
    SUPERVISOR_INTERVAL_S: int = 60
    RECENT_JOBS_LIMIT: int = 50

    # Remote variation generator (Gemini image editing)
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_API_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_MODEL: str = "gemini-2.5-flash-image-preview"

    # Artifact storage (Cloudinary signed uploads)
    CLOUDINARY_CLOUD_NAME: Optional[str] = None
    CLOUDINARY_API_KEY: Optional[str] = None
    CLOUDINARY_API_SECRET: Optional[str] = None
    CLOUDINARY_UPLOAD_URL: str = "https://api.cloudinary.com/v1_1"

    # BACKEND_CORS_ORIGINS is a JSON-formatted list of origins
    # e.g: '["http://localhost", "http://localhost:3000"]'
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @property
    def meta_dir(self) -> Path:
        """Directory for metadata files (database)."""
        return self.ROOT_DIR / "meta"

    @property
    def database_path(self) -> Path:
        """Path to the batch job SQLite database."""
        return self.meta_dir / "batch.db"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"sqlite:///{self.database_path}"

    def ensure_dirs(self) -> None:
        """Create all required directories if they don't exist."""
        self.ROOT_DIR.mkdir(parents=True, exist_ok=True)
        self.meta_dir.mkdir(exist_ok=True)


settings = Settings()
