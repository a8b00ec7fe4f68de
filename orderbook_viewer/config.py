"""
Settings loaded from the environment.

Priority:
    1. CLI flags (main.py)
    2. Environment variables - export ORDERBOOK_WEBSOCKET_URL=...
    3. .env file in the working directory
    4. Defaults below

Example:
    export ORDERBOOK_PRODUCT_IDS=PI_XBTUSD,PI_ETHUSD
    export ORDERBOOK_LEVELS=15
    python -m orderbook_viewer.main
"""

from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Viewer settings.

    Environment overrides (prefix ORDERBOOK_):
        WEBSOCKET_URL: feed endpoint
        FEED: feed name sent with subscribe/unsubscribe
        PRODUCT_IDS: comma separated products; the first is subscribed on start
        LEVELS: price levels per side in the view
        REFRESH_INTERVAL_MS: how often the UI requests a new view
        CONNECT_TIMEOUT: seconds before an open attempt fails
        HEARTBEAT: WebSocket ping interval in seconds
        LOG_LEVEL / LOG_FILE: logging
    """

    websocket_url: str = "wss://www.cryptofacilities.com/ws/v1"
    feed: str = "book_ui_1"
    product_ids: str = "PI_XBTUSD,PI_ETHUSD"
    levels: int = 25
    refresh_interval_ms: int = 200
    connect_timeout: float = 10.0
    heartbeat: float = 30.0
    log_level: str = "INFO"
    log_file: str = "orderbook_viewer.log"

    model_config = SettingsConfigDict(
        env_prefix="ORDERBOOK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("levels", "refresh_interval_ms")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()

    @property
    def products(self) -> list[str]:
        return [p.strip() for p in self.product_ids.split(",") if p.strip()]
