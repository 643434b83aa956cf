"""Application configuration for the conferencing client and relay."""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])

    signaling_url: str = Field(default="ws://localhost:5000/api/signaling")
    public_base_url: str = Field(default="http://localhost:5173")
    signaling_connect_timeout: float = Field(default=10.0, gt=0)

    stun_server: str = Field(default="stun:stun.l.google.com:19302")
    turn_server: str = Field(default="")
    turn_username: str = Field(default="")
    turn_password: str = Field(default="")

    room_id_style: Literal["numeric", "uuid"] = Field(default="numeric")
    room_capacity: int | None = Field(default=None, ge=1)
    room_check_timeout: float = Field(default=10.0, gt=0)
    sync_audio_state: bool = Field(default=True)

    video_device: str = Field(default="/dev/video0")
    video_format: str = Field(default="v4l2")
    video_size: str = Field(default="640x480")
    audio_device: str = Field(default="default")
    audio_format: str = Field(default="pulse")

    midi_enabled: bool = Field(default=False)
    midi_inputs: Annotated[list[str], NoDecode] = Field(default_factory=list)

    @field_validator("midi_inputs", "cors_allow_origins", mode="before")
    @classmethod
    def _split_names(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("room_capacity", mode="before")
    @classmethod
    def _blank_capacity(cls, value: object) -> object:
        """Treat an empty ROOM_CAPACITY as unbounded."""

        if isinstance(value, str) and not value.strip():
            return None
        return value

    def ice_servers(self) -> list[dict[str, str]]:
        """STUN entry plus TURN when fully configured."""

        servers = [{"urls": self.stun_server}]
        if self.turn_server and self.turn_username and self.turn_password:
            url = self.turn_server if self.turn_server.startswith("turn") else f"turn:{self.turn_server}"
            servers.append(
                {"urls": url, "username": self.turn_username, "credential": self.turn_password}
            )
        return servers


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
