"""
Per-organization admission gate for inbound email.

Fixed-window counter keyed by (org_id, endpoint, window_start). The count is
incremented atomically by the store (check_rate_limit() in Postgres), so
concurrent webhooks for the same org cannot both squeeze past the limit.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from app.config import RateLimitSettings, get_rate_limit_settings
from app.errors import RateLimitError
from app.services.store import OrgStore

logger = logging.getLogger(__name__)

INBOUND_EMAIL_ENDPOINT = "inbound_email"


def window_start(now: datetime, window_minutes: int) -> datetime:
    """
    Start of the fixed window containing `now`.

    Windows are aligned to the top of the hour, e.g. 15-minute windows start
    at :00, :15, :30 and :45.
    """
    hour = now.replace(minute=0, second=0, microsecond=0)
    return hour + timedelta(minutes=(now.minute // window_minutes) * window_minutes)


class RateLimiter:

    def __init__(self, settings: Optional[RateLimitSettings] = None):
        self.settings = settings or get_rate_limit_settings()

    def check(self, store: OrgStore, endpoint: str = INBOUND_EMAIL_ENDPOINT) -> None:
        """Count one request for store.org_id. Raises RateLimitError when over the limit."""
        allowed = store.hit_rate_limit(
            endpoint,
            self.settings.per_org_per_window,
            self.settings.window_minutes,
        )
        if not allowed:
            logger.warning(
                f"Rate limit exceeded for org {store.org_id} on {endpoint} "
                f"({self.settings.per_org_per_window}/{self.settings.window_minutes}min)"
            )
            raise RateLimitError(
                store.org_id,
                self.settings.per_org_per_window,
                self.settings.window_minutes,
            )
