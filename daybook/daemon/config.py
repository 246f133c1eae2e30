"""Configuration management for daybook."""

from pathlib import Path
from typing import List, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator


DEFAULT_MEDIA_PATTERNS = [
    r"^https?://(www\.|m\.|music\.)?youtube\.com/(watch|shorts|live)",
    r"^https?://youtu\.be/",
    r"^https?://(www\.|player\.)?vimeo\.com/",
    r"^https?://(www\.)?soundcloud\.com/",
    r"^https?://(www\.)?dailymotion\.com/video/",
    r"^https?://(www\.|clips\.)?twitch\.tv/",
    r"^https?://(www\.)?tiktok\.com/@[^/]+/video/",
    r"^https?://(video|videos|media)\.[^/]+",
    r"\.(mp4|mkv|webm|mov|mp3|m4a|ogg|opus|flac|wav)(\?.*)?$",
]


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 3000
    max_note_length: int = 8000
    max_upload_mb: int = 500

    @field_validator('max_upload_mb')
    @classmethod
    def validate_upload_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class CaptureConfig(BaseModel):
    workers: int = 2
    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_max: float = 60.0
    page_timeout: float = 60.0
    media_timeout: float = 1800.0
    shutdown_grace: float = 10.0
    require_marker: bool = False
    marker: str = "+"
    media_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_MEDIA_PATTERNS))
    retry_failed_on_startup: bool = False

    @field_validator('workers', 'max_attempts')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator('page_timeout', 'media_timeout')
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator('backoff_base', 'backoff_max', 'shutdown_grace')
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v


class ToolsConfig(BaseModel):
    """Command templates for the capture tools; `{url}` and `{dest}` are substituted."""
    page_archiver: List[str] = Field(
        default_factory=lambda: ["monolith", "{url}", "-o", "{dest}"]
    )
    media_downloader: List[str] = Field(
        default_factory=lambda: [
            "yt-dlp", "--no-playlist", "--merge-output-format", "mp4",
            "-o", "{dest}", "{url}"
        ]
    )

    @field_validator('page_archiver', 'media_downloader')
    @classmethod
    def validate_command(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("command must not be empty")
        if not any("{dest}" in part for part in v):
            raise ValueError("command must reference {dest}")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[Path] = None
    rotation: str = "1 day"
    retention: str = "7 days"


class Config(BaseModel):
    """Main configuration for the daybook daemon."""

    notes_root: Path
    api: ApiConfig = Field(default_factory=ApiConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('notes_root')
    @classmethod
    def validate_notes_root(cls, v: Path) -> Path:
        if isinstance(v, str):
            v = Path(v)
        return v.expanduser().resolve()

    @property
    def journal_dir(self) -> Path:
        return self.notes_root / "journal"

    @property
    def attachments_dir(self) -> Path:
        return self.notes_root / "attachments"

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file."""
        if config_path is None:
            candidates = [
                Path("daybook.yaml"),
                Path.home() / ".config" / "daybook" / "config.yaml",
                Path("/etc/daybook/config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                raise FileNotFoundError(
                    f"No config file found. Searched: {[str(c) for c in candidates]}"
                )

        logger.info(f"Loading config from: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)
