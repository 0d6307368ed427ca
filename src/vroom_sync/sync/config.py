"""Configuration for the sync and backup engine."""

import os
from dataclasses import dataclass
from typing import Dict, Any
from pathlib import Path


@dataclass
class SyncConfig:
    """Configuration settings for the sync and backup engine."""

    # Storage settings
    database_path: str = "vroom.duckdb"

    # Activity settings
    default_inactivity_minutes: int = 5
    min_inactivity_minutes: int = 1
    max_inactivity_minutes: int = 30
    cleanup_interval_seconds: int = 3600  # 1 hour
    max_inactive_hours: int = 24

    # Archive settings
    archive_retention_count: int = 10
    archive_file_prefix: str = "vroom-backup-"

    # Remote naming conventions
    root_folder_prefix: str = "VROOM Car Tracker - "
    backup_folder_name: str = "Backups"
    mirror_name_prefix: str = "VROOM Data - "

    # Logging settings
    log_level: str = "INFO"
    log_sync_events: bool = True

    def validate(self) -> None:
        """Validate configuration parameters."""
        errors = []

        if not self.database_path:
            errors.append("Database path must not be empty")

        if self.min_inactivity_minutes <= 0:
            errors.append(f"Minimum inactivity must be positive, got {self.min_inactivity_minutes}")

        if self.max_inactivity_minutes < self.min_inactivity_minutes:
            errors.append(
                f"Maximum inactivity {self.max_inactivity_minutes} is below minimum "
                f"{self.min_inactivity_minutes}"
            )

        if not (self.min_inactivity_minutes <= self.default_inactivity_minutes <= self.max_inactivity_minutes):
            errors.append(
                f"Default inactivity must be between {self.min_inactivity_minutes}-"
                f"{self.max_inactivity_minutes}, got {self.default_inactivity_minutes}"
            )

        if self.cleanup_interval_seconds <= 0:
            errors.append(f"Cleanup interval must be positive, got {self.cleanup_interval_seconds}")

        if self.max_inactive_hours <= 0:
            errors.append(f"Max inactive hours must be positive, got {self.max_inactive_hours}")

        if self.archive_retention_count <= 0:
            errors.append(f"Archive retention count must be positive, got {self.archive_retention_count}")

        if not self.archive_file_prefix:
            errors.append("Archive file prefix must not be empty")

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            errors.append(f"Log level must be one of {valid_log_levels}, got {self.log_level}")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "database_path": self.database_path,
            "default_inactivity_minutes": self.default_inactivity_minutes,
            "min_inactivity_minutes": self.min_inactivity_minutes,
            "max_inactivity_minutes": self.max_inactivity_minutes,
            "cleanup_interval_seconds": self.cleanup_interval_seconds,
            "max_inactive_hours": self.max_inactive_hours,
            "archive_retention_count": self.archive_retention_count,
            "archive_file_prefix": self.archive_file_prefix,
            "root_folder_prefix": self.root_folder_prefix,
            "backup_folder_name": self.backup_folder_name,
            "mirror_name_prefix": self.mirror_name_prefix,
            "log_level": self.log_level,
            "log_sync_events": self.log_sync_events,
        }

    def root_folder_name(self, display_name: str) -> str:
        """Conventional name of a user's root folder in the archive channel."""
        return f"{self.root_folder_prefix}{display_name}"

    def mirror_name(self, display_name: str) -> str:
        """Conventional title of a user's mirror."""
        return f"{self.mirror_name_prefix}{display_name}"

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Create configuration from environment variables with validation."""
        try:
            config = cls(
                database_path=os.getenv("VROOM_DATABASE_PATH", "vroom.duckdb"),

                default_inactivity_minutes=int(os.getenv("VROOM_INACTIVITY_MINUTES", "5")),
                min_inactivity_minutes=int(os.getenv("VROOM_MIN_INACTIVITY_MINUTES", "1")),
                max_inactivity_minutes=int(os.getenv("VROOM_MAX_INACTIVITY_MINUTES", "30")),
                cleanup_interval_seconds=int(os.getenv("VROOM_CLEANUP_INTERVAL", "3600")),
                max_inactive_hours=int(os.getenv("VROOM_MAX_INACTIVE_HOURS", "24")),

                archive_retention_count=int(os.getenv("VROOM_ARCHIVE_RETENTION", "10")),
                archive_file_prefix=os.getenv("VROOM_ARCHIVE_PREFIX", "vroom-backup-"),

                root_folder_prefix=os.getenv("VROOM_ROOT_FOLDER_PREFIX", "VROOM Car Tracker - "),
                backup_folder_name=os.getenv("VROOM_BACKUP_FOLDER", "Backups"),
                mirror_name_prefix=os.getenv("VROOM_MIRROR_PREFIX", "VROOM Data - "),

                log_level=os.getenv("VROOM_LOG_LEVEL", "INFO"),
                log_sync_events=os.getenv("VROOM_LOG_SYNC_EVENTS", "true").lower() == "true",
            )

            config.validate()
            return config

        except ValueError as e:
            if "invalid literal" in str(e):
                raise ValueError(f"Invalid environment variable format: {e}")
            raise
        except Exception as e:
            raise ValueError(f"Failed to load configuration from environment: {e}")

    @classmethod
    def from_file(cls, config_path: str) -> "SyncConfig":
        """Load configuration from a .env file."""
        from dotenv import load_dotenv

        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        load_dotenv(config_file, override=True)

        return cls.from_env()
