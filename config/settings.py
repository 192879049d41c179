"""
Configuration Management

Loads environment variables and provides settings for the feed migration engine.
Uses python-dotenv for local development and environment variables for production.
"""

import os
from typing import Optional
from dotenv import load_dotenv

# Load .env file for local development
load_dotenv()


class Settings:
    """
    Application settings loaded from environment variables.

    Plan files describe what to migrate; these settings describe where things live.
    """

    # Database Configuration (staging, bad rows and phase log tables)
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_PORT: int = int(os.getenv("DB_PORT", "5432"))
    DB_NAME: str = os.getenv("DB_NAME", "migration_db")
    DB_USER: str = os.getenv("DB_USER")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD")

    # Plan and feed locations
    PLAN_PATH: str = os.getenv("PLAN_PATH", "plans/migration_plan.yaml")
    LOCAL_FEED_ROOT: str = os.getenv("LOCAL_FEED_ROOT", "feeds")
    MONITORING_ROOT: str = os.getenv("MONITORING_ROOT", "monitoring")

    # Migration Configuration
    XFORM_ROWS_BATCH_SIZE: int = int(os.getenv("XFORM_ROWS_BATCH_SIZE", "1000"))
    PHASE_LOG_TABLE: str = os.getenv("PHASE_LOG_TABLE", "data_migration_phase_log")
    BAD_ROWS_TABLE: str = os.getenv("BAD_ROWS_TABLE", "bad_rows")
    WARN_ROWS_TABLE: str = os.getenv("WARN_ROWS_TABLE", "warn_rows")

    # Outbound export (S3)
    AWS_PROFILE: Optional[str] = os.getenv("AWS_PROFILE")
    AWS_REGION: Optional[str] = os.getenv("AWS_REGION")

    # Logging Configuration
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE", "logs/migration.log")

    required_fields = ["DB_USER", "DB_PASSWORD"]

    def __init__(self, validate: bool = True):
        """
        Validate required settings on initialization.

        Args:
            validate: Set to False for tooling that never touches the database.
        """
        if validate:
            self._validate_settings()

    def _validate_settings(self) -> None:
        """
        Validate that all required settings are provided.

        Raises:
            ValueError: If required settings are missing
        """
        missing_fields = [
            field for field in self.required_fields
            if not getattr(self, field, None)
        ]

        if missing_fields:
            raise ValueError(
                f"Missing required environment variables: {', '.join(missing_fields)}. "
                f"Please check your .env file."
            )

    def __repr__(self) -> str:
        """Return string representation (excluding sensitive data)."""
        return (
            f"Settings("
            f"DB_HOST={self.DB_HOST}, "
            f"DB_NAME={self.DB_NAME}, "
            f"PLAN_PATH={self.PLAN_PATH}, "
            f"XFORM_ROWS_BATCH_SIZE={self.XFORM_ROWS_BATCH_SIZE}"
            f")"
        )
