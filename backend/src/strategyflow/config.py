"""
Configuration management for strategyflow.

Loads environment variables (and a local ``.env`` file) into a typed
configuration object, and defines the run configuration model sent to the
strategy engine when a session starts.
"""

import os
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Load environment variables from .env file
load_dotenv()

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class StrategyFlowConfig:
    """Configuration for the strategy session client."""

    def __init__(self):
        # Strategy engine endpoints
        self.API_URL: str = os.getenv("STRATEGYFLOW_API_URL", "http://localhost:8080/api/v1").rstrip("/")
        self.WS_URL: str = os.getenv("STRATEGYFLOW_WS_URL", "ws://localhost:8080/ws/v1").rstrip("/")
        self.API_TOKEN: Optional[str] = os.getenv("STRATEGYFLOW_API_TOKEN") or None

        # Logging Configuration
        self.LOG_LEVEL: str = os.getenv("STRATEGYFLOW_LOG_LEVEL", "INFO").upper()
        self.LOG_FORMAT: str = os.getenv("STRATEGYFLOW_LOG_FORMAT", DEFAULT_LOG_FORMAT)

        # Session state bounds
        self.LOG_BUFFER_LIMIT: int = int(os.getenv("STRATEGYFLOW_LOG_BUFFER_LIMIT", "1000"))
        self.EQUITY_MAX_POINTS: int = int(os.getenv("STRATEGYFLOW_EQUITY_MAX_POINTS", "1000"))
        self.CANDLE_MAX_POINTS: int = int(os.getenv("STRATEGYFLOW_CANDLE_MAX_POINTS", "5000"))

        # Durable mirror
        self.MIRROR_PATH: str = os.getenv("STRATEGYFLOW_MIRROR_PATH", "./.strategyflow")
        self.MIRROR_NAMESPACE: str = os.getenv("STRATEGYFLOW_MIRROR_NAMESPACE", "strategyflow")

        # WebSocket and HTTP settings
        self.WS_PING_INTERVAL: int = int(os.getenv("STRATEGYFLOW_WS_PING_INTERVAL", "25"))
        self.WS_PING_TIMEOUT: int = int(os.getenv("STRATEGYFLOW_WS_PING_TIMEOUT", "15"))
        self.HTTP_TIMEOUT: int = int(os.getenv("STRATEGYFLOW_HTTP_TIMEOUT", "30"))

        # Application Settings
        self.ENVIRONMENT: str = os.getenv("ENVIRONMENT", "local")

        self._validate_config()

    def _validate_config(self) -> None:
        """Validate configuration values."""
        # Skip validation in test environment
        if self.ENVIRONMENT == "test":
            return

        if self.LOG_BUFFER_LIMIT < 0:
            raise ValueError("LOG_BUFFER_LIMIT must be >= 0")

        if self.EQUITY_MAX_POINTS <= 0:
            raise ValueError("EQUITY_MAX_POINTS must be positive")

        if self.CANDLE_MAX_POINTS <= 0:
            raise ValueError("CANDLE_MAX_POINTS must be positive")

        if self.HTTP_TIMEOUT <= 0:
            raise ValueError("HTTP_TIMEOUT must be positive")

        if not self.API_URL.startswith(("http://", "https://")):
            raise ValueError("STRATEGYFLOW_API_URL must be an http(s) URL")

        if not self.WS_URL.startswith(("ws://", "wss://")):
            raise ValueError("STRATEGYFLOW_WS_URL must be a ws(s) URL")

        if not isinstance(logging.getLevelName(self.LOG_LEVEL), int):
            raise ValueError(f"Unknown log level: {self.LOG_LEVEL}")

    @property
    def events_url(self) -> str:
        """WebSocket endpoint for strategy events."""
        return f"{self.WS_URL}/strategy-events"

    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


def setup_logging(config: StrategyFlowConfig) -> logging.Logger:
    """Configure root logging from the loaded configuration."""
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format=config.LOG_FORMAT
    )
    return logging.getLogger("strategyflow")


class RunSpeed(str, Enum):
    SLOW = "SLOW"
    NORMAL = "NORMAL"
    FAST = "FAST"
    VERY_FAST = "VERY_FAST"
    INSTANT = "INSTANT"


class Timeframe(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start: str = Field("", alias="from", description="Backtest start (ISO-8601)")
    end: str = Field("", alias="to", description="Backtest end (ISO-8601)")


class RunParam(BaseModel):
    """A strategy parameter override."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    value: Any = None


class SessionConfig(BaseModel):
    """Run configuration sent to the strategy engine to start a session."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    strategy_class: str = Field("", alias="strategyClass", description="Strategy implementation to run")
    initial_cash: str = Field("10000", alias="initialCash")
    instrument_data: Dict[str, Any] = Field(default_factory=dict, alias="instrumentData")
    spread: str = "10"
    speed: RunSpeed = RunSpeed.INSTANT
    period: str = "M30"
    timeframe: Timeframe = Field(default_factory=Timeframe)
    run_params: List[RunParam] = Field(default_factory=list, alias="runParams")
    show_chart: bool = Field(True, alias="showChart")

    @field_validator('initial_cash', 'spread', mode='before')
    @classmethod
    def validate_numeric_text(cls, v):
        """The engine expects these as strings; accept numbers too."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @property
    def is_async(self) -> bool:
        """INSTANT runs execute in the background and stream no bars."""
        return self.speed == RunSpeed.INSTANT

    def to_wire(self) -> Dict[str, Any]:
        """JSON body for the control plane (camelCase, no client-only fields)."""
        return self.model_dump(mode="json", by_alias=True, exclude={"show_chart"})


# Global configuration instance
config = StrategyFlowConfig()
