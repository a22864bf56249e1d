"""
Delivery scheduling for periodic digests and reports.

An hourly tick asks which users are due right now in their own timezone
and hands each of them to a ``DeliveryHandler``. Selection is a pure
function of the users and the instant, so the same tick can be replayed
safely.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from capturebot.core.batch import run_bounded
from capturebot.core.db import AsyncSessionLocal
from capturebot.core.logging import get_logger
from capturebot.core.models import User
from capturebot.core.repositories import list_active_trends, list_scheduled_users, mark_trends_surfaced
from capturebot.core.settings import Settings, get_settings
from capturebot.core.time import (
    get_current_utc_time,
    normalize_timezone,
    parse_time_of_day,
    resolve_timezone,
    sunday_based_weekday,
    to_local_time,
)

logger = get_logger(__name__)

DISABLED_FREQUENCIES = frozenset({"none", "never"})


@dataclass(frozen=True)
class DeliveryUser:
    """A user's delivery cadence."""
    id: str
    timezone: Optional[str] = None
    frequency: str = "daily"
    day_of_week: int = 1  # 0 = Sunday
    time_of_day: str = "07:00"

    @classmethod
    def from_model(cls, user: User) -> "DeliveryUser":
        return cls(
            id=user.id,
            timezone=user.timezone,
            frequency=user.report_frequency,
            day_of_week=user.report_day,
            time_of_day=user.report_time,
        )


@dataclass(frozen=True)
class DeliverySelection:
    user: DeliveryUser
    frequency: str


def is_due(user: DeliveryUser, now: datetime, default_timezone: str) -> bool:
    """
    Whether ``user`` should receive a delivery during the hour containing ``now``.

    Raises:
        ValueError: if the user's time of day is malformed
    """
    if user.frequency in DISABLED_FREQUENCIES:
        return False

    hour, _ = parse_time_of_day(user.time_of_day)
    tz = resolve_timezone(user.timezone, default_timezone)
    local_now = to_local_time(now, tz)

    if local_now.hour != hour:
        return False
    if user.frequency == "daily":
        return True
    if user.frequency == "weekly":
        return sunday_based_weekday(local_now) == user.day_of_week
    return False


def get_users_for_delivery_now(
    users: Sequence[DeliveryUser],
    now: datetime,
    default_timezone: Optional[str] = None
) -> List[DeliverySelection]:
    """
    Select the users due for delivery at ``now``.

    A user with a malformed time of day is skipped and logged; the others
    are still evaluated.
    """
    default_timezone = default_timezone or get_settings().default_timezone
    now = normalize_timezone(now)
    selected = []

    for user in users:
        try:
            if is_due(user, now, default_timezone):
                selected.append(DeliverySelection(user=user, frequency=user.frequency))
        except ValueError as e:
            logger.error(f"Error checking delivery time for user {user.id}: {e}", extra={'user_id': user.id})

    logger.debug(f"{len(selected)} of {len(users)} users due for delivery at {now.isoformat()}")
    return selected


async def list_delivery_users(session: AsyncSession) -> List[DeliveryUser]:
    """Load every user with delivery enabled."""
    users = await list_scheduled_users(session)
    return [DeliveryUser.from_model(user) for user in users]


async def load_report_trends(session: AsyncSession, user_id: str, now: datetime) -> List[Dict[str, Any]]:
    """Active trends the user has not been shown yet, as report payloads."""
    trends = await list_active_trends(session, user_id, now)
    return [
        {
            'id': trend.id,
            'trendType': trend.trend_type,
            'title': trend.title,
            'description': trend.description,
            'strength': trend.strength,
            'signals': trend.signals or [],
        }
        for trend in trends
        if not trend.surfaced
    ]


class DeliveryHandler(ABC):
    """Hands a due user over to whatever produces and sends the report."""

    @abstractmethod
    async def deliver(self, selection: DeliverySelection, scheduled_for: datetime) -> Dict[str, Any]:
        """Deliver to one user. Raise on failure."""

    async def aclose(self) -> None:
        """Release handler resources."""


class WebhookDeliveryHandler(DeliveryHandler):
    """
    Posts each due user to a report-generation webhook.

    With a ``session_factory`` the payload also carries the user's active,
    not yet surfaced trends, and those trends are marked surfaced once the
    webhook accepts the delivery.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 60.0,
        secret: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        session_factory: Optional[async_sessionmaker] = None
    ):
        self.url = url
        self.secret = secret
        self.session_factory = session_factory
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def deliver(self, selection: DeliverySelection, scheduled_for: datetime) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.secret}"} if self.secret else {}
        payload = {
            "user_id": selection.user.id,
            "frequency": selection.frequency,
            "timezone": selection.user.timezone,
            "scheduled_for": normalize_timezone(scheduled_for).isoformat(),
        }

        trends = []
        if self.session_factory is not None:
            async with self.session_factory() as session:
                trends = await load_report_trends(session, selection.user.id, scheduled_for)
            payload["trends"] = trends

        response = await self.client.post(self.url, json=payload, headers=headers)
        response.raise_for_status()

        if trends:
            async with self.session_factory() as session:
                await mark_trends_surfaced(session, [trend['id'] for trend in trends])
        return {"status_code": response.status_code, "trends_surfaced": len(trends)}

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def get_delivery_handler(settings: Optional[Settings] = None) -> Optional[DeliveryHandler]:
    """Webhook handler when a URL is configured, otherwise None (worklist only)."""
    settings = settings or get_settings()
    if not settings.delivery_webhook_url:
        logger.info("DELIVERY_WEBHOOK_URL not configured, delivery ticks only compute the worklist")
        return None
    return WebhookDeliveryHandler(
        settings.delivery_webhook_url,
        timeout=settings.delivery_timeout_seconds,
        secret=settings.cron_secret,
        session_factory=AsyncSessionLocal,
    )


@dataclass
class DeliveryRunStats:
    """Statistics of one delivery tick."""
    users_considered: int = 0
    users_selected: int = 0
    delivered: int = 0
    failed: int = 0
    abandoned: int = 0
    runtime_seconds: float = 0.0
    results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def run_delivery_tick(
    handler: Optional[DeliveryHandler] = None,
    now: Optional[datetime] = None,
    session_factory: async_sessionmaker = AsyncSessionLocal,
    users: Optional[Sequence[DeliveryUser]] = None,
    settings: Optional[Settings] = None
) -> DeliveryRunStats:
    """
    Deliver to every user due at ``now``.

    Without a handler the selected users are only reported. Each delivery
    runs independently with its own timeout.
    """
    start_time = time.time()
    settings = settings or get_settings()
    now = now or get_current_utc_time()
    stats = DeliveryRunStats()

    if users is None:
        async with session_factory() as session:
            users = await list_delivery_users(session)
    stats.users_considered = len(users)

    selections = get_users_for_delivery_now(users, now, settings.default_timezone)
    stats.users_selected = len(selections)
    logger.info(f"Found {len(selections)} users for delivery at this hour")

    if handler is None:
        stats.results = [
            {'user_id': s.user.id, 'frequency': s.frequency, 'delivered': False}
            for s in selections
        ]
    else:
        by_id = {s.user.id: s for s in selections}

        async def _worker(user_id: str) -> Dict[str, Any]:
            return await handler.deliver(by_id[user_id], now)

        outcome = await run_bounded(
            list(by_id),
            _worker,
            max_concurrency=settings.max_concurrent_users,
            item_timeout=settings.delivery_timeout_seconds,
            batch_timeout=settings.batch_timeout_seconds,
            label="delivery",
        )

        for user_id, selection in by_id.items():
            entry = {'user_id': user_id, 'frequency': selection.frequency}
            if user_id in outcome.results:
                entry['delivered'] = True
                stats.delivered += 1
            elif user_id in outcome.failed:
                entry.update(delivered=False, error=outcome.failed[user_id])
                stats.failed += 1
            else:
                entry.update(delivered=False, error="abandoned")
                stats.abandoned += 1
            stats.results.append(entry)

    stats.runtime_seconds = time.time() - start_time
    logger.info(
        f"Delivery tick completed: {stats.delivered} delivered, {stats.failed} failed "
        f"of {stats.users_selected} selected"
    )
    return stats
