"""
Webhook alerts for pipeline and worker events.

Sends a JSON POST to ALERT_WEBHOOK_URL for:
- Jobs that end FAILED
- Stale jobs reset by the reconciler
- Worker startup and shutdown

Alerts of the same type are rate limited (ALERT_RATE_LIMIT_SECONDS) so a
burst of failures produces one notification, not hundreds. Startup and
shutdown alerts always go out. Nothing here ever raises into the caller.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Set

import httpx

from config import ALERT_RATE_LIMIT_SECONDS, ALERT_WEBHOOK_TIMEOUT, ALERT_WEBHOOK_URL, ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    JOB_FAILED = "job_failed"
    STALE_JOBS_RESET = "stale_jobs_reset"
    WORKER_STARTUP = "worker_startup"
    WORKER_SHUTDOWN = "worker_shutdown"


@dataclass
class AlertMetrics:
    """Counters included in every alert payload."""

    jobs_failed: int = 0
    stale_jobs_reset: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # Last alert timestamps by type (for rate limiting)
    last_alert_time: Dict[str, float] = field(default_factory=dict)

    def can_send_alert(self, alert_type: str, rate_limit_seconds: int = ALERT_RATE_LIMIT_SECONDS) -> bool:
        last_time = self.last_alert_time.get(alert_type)
        if last_time is None:
            return True
        return (time.time() - last_time) >= rate_limit_seconds

    def record_alert_sent(self, alert_type: str) -> None:
        self.last_alert_time[alert_type] = time.time()
        self.alerts_sent += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobs_failed": self.jobs_failed,
            "stale_jobs_reset": self.stale_jobs_reset,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
        }


_metrics: Optional[AlertMetrics] = None

# Strong references to in-flight alert tasks
_pending_alerts: Set[asyncio.Task] = set()


def get_alert_metrics() -> AlertMetrics:
    global _metrics
    if _metrics is None:
        _metrics = AlertMetrics()
    return _metrics


def reset_alert_metrics() -> None:
    """Reset counters and rate-limit state (for testing)."""
    global _metrics
    _metrics = AlertMetrics()


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> None:
    """
    Run an alert coroutine in the background.

    Failures are logged at debug level; the caller never waits on the webhook.
    """

    async def _safe_send():
        try:
            await coro
        except Exception as e:
            logger.debug(f"Failed to send alert (fire-and-forget): {e}")

    try:
        task = asyncio.create_task(_safe_send())
    except RuntimeError:
        logger.debug("Cannot send alert: no running event loop")
        coro.close()
        return
    _pending_alerts.add(task)
    task.add_done_callback(_pending_alerts.discard)


async def send_webhook_alert(
    alert_type: AlertType,
    details: Dict[str, Any],
    force: bool = False,
    webhook_url: Optional[str] = None,
) -> bool:
    """
    POST one alert to the webhook.

    Args:
        alert_type: Type of alert being sent
        details: Event-specific fields
        force: Bypass rate limiting
        webhook_url: Override ALERT_WEBHOOK_URL

    Returns:
        True if the webhook accepted the alert
    """
    url = webhook_url if webhook_url is not None else ALERT_WEBHOOK_URL
    if not url:
        return False

    metrics = get_alert_metrics()
    if not force and not metrics.can_send_alert(alert_type.value):
        metrics.alerts_rate_limited += 1
        logger.debug(f"Alert {alert_type.value} rate limited")
        return False

    payload = {
        "event": alert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
        "metrics": metrics.to_dict(),
    }

    try:
        async with httpx.AsyncClient(timeout=ALERT_WEBHOOK_TIMEOUT) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
    except httpx.TimeoutException:
        metrics.alerts_failed += 1
        logger.warning(f"Alert webhook timed out after {ALERT_WEBHOOK_TIMEOUT}s")
        return False
    except httpx.HTTPStatusError as e:
        metrics.alerts_failed += 1
        logger.warning(f"Alert webhook returned error: {e.response.status_code}")
        return False
    except httpx.HTTPError as e:
        metrics.alerts_failed += 1
        logger.warning(f"Failed to send alert webhook: {e}")
        return False

    metrics.record_alert_sent(alert_type.value)
    logger.info(f"Alert sent: {alert_type.value}")
    return True


async def alert_job_failed(job_id: int, owner_id: str, error: Optional[str]) -> bool:
    metrics = get_alert_metrics()
    metrics.jobs_failed += 1
    return await send_webhook_alert(
        AlertType.JOB_FAILED,
        {
            "job_id": job_id,
            "owner_id": owner_id,
            "error": error[:ERROR_DETAIL_MAX_LENGTH] if error else None,
        },
    )


async def alert_stale_jobs_reset(job_ids: List[int], threshold_seconds: int) -> bool:
    metrics = get_alert_metrics()
    metrics.stale_jobs_reset += len(job_ids)
    return await send_webhook_alert(
        AlertType.STALE_JOBS_RESET,
        {
            "job_ids": job_ids,
            "count": len(job_ids),
            "threshold_seconds": threshold_seconds,
        },
    )


async def alert_worker_startup(worker_id: str, max_concurrent_jobs: int) -> bool:
    return await send_webhook_alert(
        AlertType.WORKER_STARTUP,
        {"worker_id": worker_id, "max_concurrent_jobs": max_concurrent_jobs},
        force=True,
    )


async def alert_worker_shutdown(worker_id: str, jobs_in_flight: int = 0) -> bool:
    return await send_webhook_alert(
        AlertType.WORKER_SHUTDOWN,
        {
            "worker_id": worker_id,
            "jobs_in_flight": jobs_in_flight,
            "final_metrics": get_alert_metrics().to_dict(),
        },
        force=True,
    )
