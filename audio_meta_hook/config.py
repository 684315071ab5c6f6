from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .models import ParseOptions

COLLECTION_ENV = "AUDIO_METADATA_COLLECTION"
DEFAULT_COLLECTION = "audio_files"


def default_collection() -> str:
    return os.environ.get(COLLECTION_ENV) or DEFAULT_COLLECTION


class HookSettings(BaseModel):
    collection: str = Field(default_factory=default_collection)
    asset_field: str = "asset"
    # Uploads are expected to be MP3; sniffed bytes still win when they disagree.
    declared_mime_type: Optional[str] = "audio/mpeg"


class ExtractionSettings(BaseModel):
    header_window_bytes: int = Field(default=64 * 1024, gt=0)
    min_sampled_frames: int = Field(default=16, gt=0)
    max_sampled_frames: int = Field(default=256, gt=0)
    max_tag_bytes: int = Field(default=64 * 1024, gt=0)
    read_timeout_seconds: float = Field(default=30.0, gt=0)

    def parse_options(
        self,
        *,
        declared_mime_type: Optional[str] = None,
        skip_cover_art: bool = True,
        skip_trailing_metadata: bool = True,
        want_duration: bool = True,
    ) -> ParseOptions:
        return ParseOptions(
            declared_mime_type=declared_mime_type,
            skip_cover_art=skip_cover_art,
            skip_trailing_metadata=skip_trailing_metadata,
            want_duration=want_duration,
            header_window=self.header_window_bytes,
            min_sampled_frames=self.min_sampled_frames,
            max_sampled_frames=max(self.max_sampled_frames, self.min_sampled_frames),
            max_tag_bytes=self.max_tag_bytes,
        )


class StorageSettings(BaseModel):
    database_path: Path = Path("./data/records.sqlite3")
    asset_root: Path = Path("./data/assets")
    asset_base_url: Optional[str] = None
    asset_token: Optional[str] = None

    @field_validator("database_path", "asset_root", mode="before")
    @classmethod
    def _expand_path(cls, value: str | Path) -> Path:
        return Path(value).expanduser().resolve()


class Settings(BaseModel):
    hook: HookSettings = Field(default_factory=HookSettings)
    extraction: ExtractionSettings = ExtractionSettings()
    storage: StorageSettings = StorageSettings()

    @classmethod
    def load(cls, path: Path) -> "Settings":
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
        return cls.model_validate(raw or {})


def find_config(explicit_path: Optional[Path]) -> Optional[Path]:
    if explicit_path:
        return explicit_path
    cwd = Path.cwd()
    for candidate in (cwd / "config.yaml", cwd / "config.yml"):
        if candidate.exists():
            return candidate
    return None


def load_settings(explicit_path: Optional[Path] = None) -> Settings:
    path = find_config(explicit_path)
    if path is None:
        return Settings()
    return Settings.load(path)
