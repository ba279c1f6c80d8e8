"""
Rating rate limiter

Each (route, device fingerprint) pair may submit at most N ratings inside a
fixed window (default: 2 per 2 minutes). The window restarts from the first
rating after the previous window has elapsed; it is a hard reset, not a
token bucket.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.config import EngineConfig
from src.locking import rate_limit_locks
from src.models import RateLimitRecord

logger = logging.getLogger(__name__)

MAX_FINGERPRINT_LENGTH = 150


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: Optional[int] = None


def device_fingerprint(ip: Optional[str], user_agent: Optional[str]) -> str:
    """Opaque device identity used for abuse mitigation: ip + '-' + user agent"""
    return f"{ip or 'unknown'}-{user_agent or 'unknown'}"[:MAX_FINGERPRINT_LENGTH]


class RateLimiter:
    """Gatekeeper that must allow a rating before the score aggregator runs"""

    def __init__(
        self,
        db: Session,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.config = config or EngineConfig()
        self.clock = clock

    @property
    def window_seconds(self) -> int:
        return self.config.rating_window_seconds

    @property
    def max_per_window(self) -> int:
        return self.config.rating_max_per_window

    def check_and_record(
        self, route_id: str, fingerprint: str, user_id: Optional[str] = None
    ) -> RateLimitDecision:
        """
        Check the device's window for this route and record the attempt

        Args:
            route_id: Route being rated
            fingerprint: Device fingerprint (opaque string)
            user_id: Authenticated user, backfilled onto anonymous records

        Returns:
            RateLimitDecision; retry_after_seconds is set when rejected

        Raises:
            SQLAlchemyError: if the record cannot be written
        """
        fingerprint = fingerprint[:MAX_FINGERPRINT_LENGTH]

        with rate_limit_locks.hold((route_id, fingerprint)):
            now = self.clock()
            record = (
                self.db.query(RateLimitRecord)
                .filter(
                    RateLimitRecord.route_id == route_id,
                    RateLimitRecord.device_fingerprint == fingerprint,
                )
                .first()
            )

            if record is None:
                record = RateLimitRecord(
                    route_id=route_id,
                    device_fingerprint=fingerprint,
                    user_id=user_id,
                    count=1,
                    last_rated_at=now,
                )
                self.db.add(record)
                self._commit()
                return RateLimitDecision(allowed=True)

            if user_id and not record.user_id:
                record.user_id = user_id

            elapsed = (now - record.last_rated_at).total_seconds()

            if elapsed > self.window_seconds:
                # Previous window is over, start a new one
                record.count = 1
                record.last_rated_at = now
                self._commit()
                return RateLimitDecision(allowed=True)

            if record.count >= self.max_per_window:
                retry_after = max(1, math.ceil(self.window_seconds - elapsed))
                self._commit()
                logger.info(
                    "Rating rejected for route %s (count=%d, retry in %ds)",
                    route_id,
                    record.count,
                    retry_after,
                )
                return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)

            record.count += 1
            record.last_rated_at = now
            self._commit()
            return RateLimitDecision(allowed=True)

    def _commit(self):
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
