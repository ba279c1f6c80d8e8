"""
Engine configuration

All tunables for the scoring and analytics engine live in one EngineConfig object
that is built once at startup and passed to the components that need it.
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

HERE_FLOW_URL = "https://data.traffic.hereapi.com/v7/flow"


@dataclass(frozen=True)
class EngineConfig:
    """Explicit configuration for the rating, traffic and prediction components"""

    database_url: str = "sqlite:///matatu.db"

    # External traffic provider (fallback to report density when no key)
    traffic_api_key: Optional[str] = None
    traffic_provider: str = "here"
    traffic_api_url: str = HERE_FLOW_URL
    traffic_timeout_seconds: float = 10.0

    # Rating abuse window
    rating_window_seconds: int = 120
    rating_max_per_window: int = 2

    # Travel time
    base_speed_kmh: float = 25.0
    min_speed_kmh: float = 8.0

    default_fare: float = 50.0
    log_level: str = "INFO"

    @property
    def has_traffic_provider(self) -> bool:
        return bool(self.traffic_api_key)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """
        Build configuration from environment variables (and .env if present)

        Returns:
            EngineConfig populated from the environment, defaults elsewhere
        """
        load_dotenv()

        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            traffic_api_key=os.getenv("TRAFFIC_API_KEY") or None,
            traffic_provider=os.getenv("TRAFFIC_PROVIDER", cls.traffic_provider),
            traffic_api_url=os.getenv("TRAFFIC_API_URL", cls.traffic_api_url),
            traffic_timeout_seconds=float(
                os.getenv("TRAFFIC_TIMEOUT_SECONDS", cls.traffic_timeout_seconds)
            ),
            rating_window_seconds=int(
                os.getenv("RATING_WINDOW_SECONDS", cls.rating_window_seconds)
            ),
            rating_max_per_window=int(
                os.getenv("RATING_MAX_PER_WINDOW", cls.rating_max_per_window)
            ),
            base_speed_kmh=float(os.getenv("BASE_SPEED_KMH", cls.base_speed_kmh)),
            default_fare=float(os.getenv("DEFAULT_FARE", cls.default_fare)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
        )


def setup_logging(level: str = "INFO") -> None:
    """
    Configure root logging to stdout (no-op if logging is already configured)

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stdout,
    )

    # Quiet noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
