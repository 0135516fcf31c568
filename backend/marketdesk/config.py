"""Application configuration from environment variables and an optional YAML file."""

import os

from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)


class Settings(BaseSettings):
    # App
    app_name: str = "Marketdesk"
    debug: bool = False

    # Marketplace REST backend
    api_base_url: str = "http://localhost:3002/api"
    request_timeout: float = 15.0

    # Session
    token_storage_key: str = "jwtToken"
    token_store: str = "memory"  # memory, redis
    redis_url: str = "redis://localhost:6379/0"

    # Ticket conversations
    message_transport: str = "rest"  # rest, chat
    poll_interval_seconds: float = 3.0
    optimistic_grace_seconds: float = 5.0
    scroll_threshold_px: int = 100
    history_limit: int = 50

    # Hosted chat provider
    chat_base_url: str = "https://chat.stream-io-api.com"
    chat_api_key: str = ""
    chat_api_secret: str = ""  # Only used to verify push webhooks
    chat_timeout: float = 10.0

    # Error notices forwarded to Slack (optional)
    slack_webhook_url: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="MARKETDESK_",
        yaml_file=os.environ.get("MARKETDESK_CONFIG_FILE"),
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment wins over the YAML file
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


settings = Settings()
