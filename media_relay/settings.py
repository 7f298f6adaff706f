from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CATEGORY_LABELS = {"movies": "Movies", "tv": "TV Shows", "music": "Music"}


def _parse_mapping(value: object) -> dict[str, str] | None:
    if value is None:
        return None
    if isinstance(value, dict):
        return {str(k).strip(): str(v).strip() for k, v in value.items()}
    if isinstance(value, str):
        mapping: dict[str, str] = {}
        for pair in value.split(","):
            if ":" in pair:
                name, target = pair.split(":", 1)
                mapping[name.strip()] = target.strip()
        return mapping or None
    msg = "Invalid mapping format"
    raise ValueError(msg)


class RelaySettings(BaseSettings):
    """Configuration for the HTTP surface."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    backend: Literal["drive", "s3"] = Field(
        default="drive",
        validation_alias="MEDIA_RELAY_BACKEND",
    )
    chunk_size: int = Field(
        default=64 * 1024,
        gt=0,
        validation_alias="MEDIA_RELAY_CHUNK_SIZE",
    )
    library: dict[str, str] | None = Field(
        default=None,
        validation_alias="MEDIA_RELAY_LIBRARY",
    )
    movies_folder_id: str | None = Field(
        default=None,
        validation_alias="MOVIES_FOLDER_ID",
    )
    tv_folder_id: str | None = Field(
        default=None,
        validation_alias="TV_FOLDER_ID",
    )
    music_folder_id: str | None = Field(
        default=None,
        validation_alias="MUSIC_FOLDER_ID",
    )
    manifest_name: str = Field(
        default="Personal library",
        validation_alias="MEDIA_RELAY_MANIFEST_NAME",
    )
    manifest_version: str = Field(
        default="1.0",
        validation_alias="MEDIA_RELAY_MANIFEST_VERSION",
    )
    manifest_description: str = Field(
        default="Personal content library",
        validation_alias="MEDIA_RELAY_MANIFEST_DESCRIPTION",
    )
    default_thumbnail: Path | None = Field(
        default=None,
        validation_alias="MEDIA_RELAY_DEFAULT_THUMBNAIL",
    )
    host: str = Field(
        default="0.0.0.0",  # noqa: S104
        validation_alias="MEDIA_RELAY_HOST",
    )
    port: int = Field(
        default=3000,
        validation_alias=AliasChoices("MEDIA_RELAY_PORT", "PORT"),
    )
    log_level: str = Field(
        default="INFO",
        validation_alias="MEDIA_RELAY_LOG_LEVEL",
    )

    @field_validator("library", mode="before")
    @classmethod
    def _parse_library(cls, value: object) -> dict[str, str] | None:
        return _parse_mapping(value)

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def library_folders(self) -> dict[str, str]:
        """Category to container mapping, legacy folder variables first."""
        folders: dict[str, str] = {}
        for category, folder in (
            ("movies", self.movies_folder_id),
            ("tv", self.tv_folder_id),
            ("music", self.music_folder_id),
        ):
            if folder:
                folders[category] = folder
        folders.update(self.library or {})
        return folders


class DriveSettings(BaseSettings):
    """Configuration for the Google Drive backend."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    credentials_json: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "MEDIA_RELAY_DRIVE_CREDENTIALS",
            "GOOGLE_CREDENTIALS",
        ),
    )
    client_id: str | None = Field(
        default=None,
        validation_alias="MEDIA_RELAY_DRIVE_CLIENT_ID",
    )
    client_secret: str | None = Field(
        default=None,
        validation_alias="MEDIA_RELAY_DRIVE_CLIENT_SECRET",
    )
    refresh_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "MEDIA_RELAY_DRIVE_REFRESH_TOKEN",
            "GOOGLE_REFRESH_TOKEN",
        ),
    )
    token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        validation_alias="MEDIA_RELAY_DRIVE_TOKEN_URI",
    )
    api_base: str = Field(
        default="https://www.googleapis.com/drive/v3",
        validation_alias="MEDIA_RELAY_DRIVE_API_BASE",
    )
    timeout: float = Field(
        default=60.0,
        validation_alias="MEDIA_RELAY_DRIVE_TIMEOUT",
    )
    read_timeout: float = Field(
        default=300.0,
        validation_alias="MEDIA_RELAY_DRIVE_READ_TIMEOUT",
    )

    @model_validator(mode="after")
    def _apply_credentials_json(self) -> DriveSettings:
        if not self.credentials_json:
            return self
        try:
            document = json.loads(self.credentials_json)
        except ValueError as error:
            msg = "GOOGLE_CREDENTIALS is not valid JSON"
            raise ValueError(msg) from error
        block = document.get("installed") or document.get("web") or document
        self.client_id = self.client_id or block.get("client_id")
        self.client_secret = self.client_secret or block.get("client_secret")
        if block.get("token_uri"):
            self.token_uri = block["token_uri"]
        return self

    @property
    def enabled(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)


class S3Settings(BaseSettings):
    """Configuration for the S3-compatible backend."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    endpoint: str | None = Field(
        default=None,
        validation_alias="MEDIA_RELAY_S3_ENDPOINT",
    )
    access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "MEDIA_RELAY_S3_ACCESS_KEY_ID",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "MEDIA_RELAY_S3_SECRET_ACCESS_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "MEDIA_RELAY_S3_SESSION_TOKEN",
            "AWS_SESSION_TOKEN",
        ),
    )
    region: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "MEDIA_RELAY_S3_REGION",
            "AWS_REGION",
        ),
    )
    bucket: str = Field(
        default="media",
        validation_alias="MEDIA_RELAY_S3_BUCKET",
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="virtual",
        validation_alias="MEDIA_RELAY_S3_ADDRESSING_STYLE",
    )
    presign_expiry: int = Field(
        default=3600,
        validation_alias="MEDIA_RELAY_S3_PRESIGN_EXPIRY",
    )


def load_relay_settings_from_env() -> RelaySettings:
    """Load HTTP surface settings from environment variables.

    Returns:
        RelaySettings instance populated from environment variables.
    """
    return RelaySettings()


def load_drive_settings_from_env() -> DriveSettings:
    """Load Google Drive settings from environment variables.

    Returns:
        DriveSettings instance populated from environment variables.
    """
    return DriveSettings()


def load_s3_settings_from_env() -> S3Settings:
    """Load S3 backend settings from environment variables.

    Returns:
        S3Settings instance populated from environment variables.
    """
    return S3Settings()
