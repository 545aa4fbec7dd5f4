from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, computed_field

load_dotenv()


class Settings(BaseSettings):
    """Base settings for the application."""

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application settings
    APP_NAME: str = "DriveIndex Sync Backend"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Google Drive indexing and semantic search backend"
    LOG_LEVEL: str = "INFO"
    LOGS_DIR: str = "logs"

    DATABASE_URL: str = ""
    LOCAL_SQLITE_PATH: str = "sqlite+aiosqlite:///./local.db"

    SUPABASE_DATABASE_NAME: str = "postgres"
    SUPABASE_DATABASE_USER: str = "postgres"
    SUPABASE_DATABASE_PASSWORD: str = ""
    SUPABASE_DATABASE_HOST: str = ""
    SUPABASE_DATABASE_PORT: int = 5432

    # Bearer token auth for user-facing routes
    LOCAL_AUTH_SECRET: str = "JWT_SECRET_KEY"
    LOCAL_AUTH_TOKEN_EXP_SECONDS: int = 3600

    # Shared secret for scheduled (cron) sync triggers
    CRON_SECRET: str = Field(default="", description="Bearer secret required by /v1/sync endpoints")

    @computed_field
    @property
    def effective_database_url(self) -> str:
        """Resolve the database URL for the application.

        Priority:
        1. Explicit DATABASE_URL (Postgres, SQLite, etc.)
        2. Postgres URL built from SUPABASE_DATABASE_* components
        3. Local SQLite fallback for development: LOCAL_SQLITE_PATH
        """
        if self.DATABASE_URL and self.DATABASE_URL.strip():
            return self.DATABASE_URL.strip()
        if self.SUPABASE_DATABASE_HOST and self.SUPABASE_DATABASE_HOST.strip() and self.SUPABASE_DATABASE_PASSWORD and self.SUPABASE_DATABASE_PASSWORD.strip():
            return (
                f"postgresql://{self.SUPABASE_DATABASE_USER}:{self.SUPABASE_DATABASE_PASSWORD}@"
                f"{self.SUPABASE_DATABASE_HOST}:{self.SUPABASE_DATABASE_PORT}/{self.SUPABASE_DATABASE_NAME}?sslmode=require"
            )
        if self.LOCAL_SQLITE_PATH and self.LOCAL_SQLITE_PATH.strip():
            return self.LOCAL_SQLITE_PATH.strip()
        return "sqlite+aiosqlite:///./local.db"

    # Google OAuth client (tokens themselves live in drive_credentials)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_TOKEN_URI: str = "https://oauth2.googleapis.com/token"
    GOOGLE_TOKEN_REFRESH_MARGIN_SECONDS: int = 300  # refresh if expiring within 5 minutes

    # OpenAI embedding settings
    OPENAI_API_KEY: str = ""
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"
    OPENAI_EMBEDDING_BATCH_SIZE: int = 100

    # Pinecone / vector store settings
    PINECONE_API_KEY: str = ""
    PINECONE_INDEX_NAME: str = "drive-index-chunks"
    PINECONE_REGION: str = "us-east-1"
    PINECONE_DIMENSION: int = 1536

    # Chunking (characters, roughly 4 chars per token)
    CHUNK_TARGET_SIZE: int = 3000
    CHUNK_OVERLAP: int = 400

    # Sync engine
    SYNC_HEARTBEAT_TIMEOUT_SECONDS: int = 120
    SYNC_START_TIMEOUT_SECONDS: int = 300  # fallback when no heartbeat was ever written
    SYNC_MAX_JOB_RETRIES: int = 3
    SYNC_EMBED_SUB_BATCH_SIZE: int = 10
    SYNC_DELETION_SAFETY_THRESHOLD: int = 5
    SYNC_DELETION_MAX_RATIO: float = 0.8


settings = Settings()
