"""
Base interface for outbound integrations.
Psychology: Every third-party call is timed and counted the same way.
Intention: Consistent health reporting for the card gateway and the OAuth provider.
"""
import abc
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class IntegrationHealth:
    """Integration health metrics"""

    def __init__(self):
        self.total_sent = 0
        self.total_failed = 0
        self.last_success: Optional[datetime] = None
        self.last_failure: Optional[datetime] = None
        self.consecutive_failures = 0
        self.average_response_time = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_sent == 0:
            return 0.0
        return (self.total_sent - self.total_failed) / self.total_sent

    @property
    def is_healthy(self) -> bool:
        if self.total_sent < 10:
            return True  # Not enough data
        return self.success_rate >= 0.8 and self.consecutive_failures <= 5

    def record_success(self, response_time: float):
        self.total_sent += 1
        self.last_success = datetime.now(timezone.utc)
        self.consecutive_failures = 0

        total_time = self.average_response_time * (self.total_sent - 1) + response_time
        self.average_response_time = total_time / self.total_sent

    def record_failure(self):
        self.total_sent += 1
        self.total_failed += 1
        self.last_failure = datetime.now(timezone.utc)
        self.consecutive_failures += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.is_healthy,
            "total_sent": self.total_sent,
            "total_failed": self.total_failed,
            "success_rate": round(self.success_rate, 3),
            "consecutive_failures": self.consecutive_failures,
            "average_response_time": round(self.average_response_time, 3),
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
        }


class BaseIntegration(abc.ABC):
    """Abstract base class for outbound integrations"""

    name: str = "integration"

    def __init__(self):
        self.health = IntegrationHealth()

    @property
    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials required for live calls are present"""

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "configured": self.is_configured,
            "health": self.health.to_dict(),
        }

    async def close(self) -> None:
        """Release pooled connections"""
