"""Configuration management for notiontasks.

Loads configuration from environment variables and provides defaults.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .db.schemas import EntityType

# Load .env file if present
load_dotenv()

# Environment variable prefix for each synced entity type
ENTITY_ENV_PREFIX = {
    EntityType.TASK: "TASKS",
    EntityType.PROJECT: "PROJECTS",
    EntityType.TIME_LOG: "TIME_LOGS",
    EntityType.WRITING: "WRITING",
    EntityType.CONTACT: "CONTACTS",
}

# Default Notion property names: (title, status, date, completed status)
_ENTITY_DEFAULTS = {
    EntityType.TASK: ("Name", "Status", "Due", "Done"),
    EntityType.PROJECT: ("Name", "Status", "Deadline", "Done"),
    EntityType.TIME_LOG: ("Name", None, "Date", None),
    EntityType.WRITING: ("Title", "Status", "Date", None),
    EntityType.CONTACT: ("Name", None, None, None),
}


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EntitySettings:
    """Notion database settings for one entity type."""

    entity_type: EntityType
    database_id: Optional[str]
    data_source_id: Optional[str] = None
    api_key: Optional[str] = None
    title_property: str = "Name"
    status_property: Optional[str] = "Status"
    status_property_type: str = "status"  # status or select
    date_property: Optional[str] = None
    completed_status: Optional[str] = None

    @property
    def property_map(self) -> dict[str, str]:
        """Canonical payload field -> Notion property name."""
        mapping = {"title": self.title_property}
        if self.status_property:
            mapping["status"] = self.status_property
        if self.date_property:
            mapping["date"] = self.date_property
        return mapping

    @property
    def property_types(self) -> dict[str, str]:
        """Canonical payload field -> Notion property type."""
        types = {"title": "title"}
        if self.status_property:
            types["status"] = self.status_property_type
        if self.date_property:
            types["date"] = "date"
        return types

    @property
    def is_configured(self) -> bool:
        return bool(self.database_id or self.data_source_id)

    @classmethod
    def from_env(cls, entity_type: EntityType) -> "EntitySettings":
        """Load settings for an entity type from ``NOTION_<ENTITY>_*`` variables."""
        prefix = f"NOTION_{ENTITY_ENV_PREFIX[entity_type]}_"
        title, status, date_prop, completed = _ENTITY_DEFAULTS[entity_type]

        return cls(
            entity_type=entity_type,
            database_id=os.environ.get(prefix + "DATABASE_ID"),
            data_source_id=os.environ.get(prefix + "DATA_SOURCE_ID"),
            api_key=os.environ.get(prefix + "API_KEY"),
            title_property=os.environ.get(prefix + "TITLE_PROPERTY", title),
            status_property=os.environ.get(prefix + "STATUS_PROPERTY", status) or None,
            status_property_type=os.environ.get(prefix + "STATUS_PROPERTY_TYPE", "status"),
            date_property=os.environ.get(prefix + "DATE_PROPERTY", date_prop) or None,
            completed_status=os.environ.get(prefix + "COMPLETED_STATUS", completed) or None,
        )


@dataclass
class Config:
    """Application configuration."""

    # Database
    db_path: Path

    # Notion
    notion_api_key: Optional[str]
    entities: dict[EntityType, EntitySettings] = field(default_factory=dict)

    # Remote gateway
    page_size: int = 100
    page_delay: float = 0.5  # seconds between pulled pages
    min_request_interval: float = 0.35  # ~3 requests per second (Notion limit)
    request_timeout: float = 60.0
    retry_max_attempts: int = 4
    retry_base_delay: float = 1.0  # seconds
    retry_max_delay: float = 30.0  # seconds
    retry_jitter: float = 0.25  # fraction of the backoff delay

    # Sync queue
    entry_max_retries: int = 5
    queue_base_delay: float = 5.0  # seconds
    queue_max_delay: float = 300.0  # seconds
    verify_before_push: bool = False

    # Coordinator / pull
    grace_period: float = 0.1  # seconds
    include_completed: bool = True

    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        db_path_str = os.environ.get(
            "NOTIONTASKS_DB_PATH",
            str(Path.home() / ".notiontasks" / "notiontasks.db"),
        )
        db_path = Path(db_path_str).expanduser()

        return cls(
            db_path=db_path,
            notion_api_key=os.environ.get("NOTION_API_KEY"),
            entities={et: EntitySettings.from_env(et) for et in EntityType},
            page_size=int(os.environ.get("NOTIONTASKS_PAGE_SIZE", "100")),
            page_delay=float(os.environ.get("NOTIONTASKS_PAGE_DELAY", "0.5")),
            min_request_interval=float(
                os.environ.get("NOTIONTASKS_MIN_REQUEST_INTERVAL", "0.35")
            ),
            request_timeout=float(os.environ.get("NOTIONTASKS_REQUEST_TIMEOUT", "60")),
            retry_max_attempts=int(os.environ.get("NOTIONTASKS_RETRY_MAX", "4")),
            retry_base_delay=float(os.environ.get("NOTIONTASKS_RETRY_BASE_DELAY", "1.0")),
            retry_max_delay=float(os.environ.get("NOTIONTASKS_RETRY_MAX_DELAY", "30.0")),
            entry_max_retries=int(os.environ.get("NOTIONTASKS_ENTRY_MAX_RETRIES", "5")),
            queue_base_delay=float(os.environ.get("NOTIONTASKS_QUEUE_BASE_DELAY", "5.0")),
            queue_max_delay=float(os.environ.get("NOTIONTASKS_QUEUE_MAX_DELAY", "300.0")),
            verify_before_push=_env_bool("NOTIONTASKS_VERIFY_BEFORE_PUSH", False),
            grace_period=float(os.environ.get("NOTIONTASKS_GRACE_PERIOD", "0.1")),
            include_completed=_env_bool("NOTIONTASKS_INCLUDE_COMPLETED", True),
            log_level=os.environ.get("NOTIONTASKS_LOG_LEVEL", "WARNING"),
        )

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        # Check database directory is writable
        if str(self.db_path) != ":memory:" and not self.db_path.parent.exists():
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except PermissionError:
                errors.append(f"Cannot create database directory: {self.db_path.parent}")

        if self.page_size < 1 or self.page_size > 100:
            errors.append("NOTIONTASKS_PAGE_SIZE must be between 1 and 100")
        if self.retry_max_attempts < 1:
            errors.append("NOTIONTASKS_RETRY_MAX must be at least 1")

        for settings in self.configured_entities():
            if not (settings.api_key or self.notion_api_key):
                prefix = ENTITY_ENV_PREFIX[settings.entity_type]
                errors.append(f"No API key for {prefix.lower()}: set NOTION_API_KEY")

        return errors

    def get_entity_settings(self, entity_type: EntityType) -> Optional[EntitySettings]:
        """Return settings for an entity type if its database is configured."""
        settings = self.entities.get(EntityType(entity_type))
        if settings and settings.is_configured:
            return settings
        return None

    def configured_entities(self) -> list[EntitySettings]:
        """All entity types that have a Notion database configured."""
        return [s for s in self.entities.values() if s.is_configured]

    def api_key_for(self, entity_type: EntityType) -> Optional[str]:
        """Per-entity API key, falling back to the global key."""
        settings = self.entities.get(EntityType(entity_type))
        if settings and settings.api_key:
            return settings.api_key
        return self.notion_api_key

    def has_notion_config(self) -> bool:
        """Check if Notion configuration is present."""
        return any(self.api_key_for(s.entity_type) for s in self.configured_entities())


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global config instance. Used for testing."""
    global _config
    _config = None
