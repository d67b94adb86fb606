"""Digest report delivery.

A completed digest run hands one ``DigestReport`` to the configured channel:
a JSON POST to ``report_webhook_url``, or the ``reports`` queue when no
webhook is set (an external mailer consumes it).
"""

import logging
from datetime import datetime
from typing import List, Optional

import httpx
from pydantic import BaseModel

from pricewatch import metrics
from pricewatch.analysis.trends import TrendSummary
from pricewatch.config import settings
from pricewatch.worker.job_queue import JobQueue
from pricewatch.worker.messages import REPORT_QUEUE

logger = logging.getLogger(__name__)


class ReportDeliveryError(Exception):
    """The report could not be handed off."""


class DigestReport(BaseModel):
    run_id: str
    trigger: str
    generated_at: datetime
    products: List[TrendSummary]

    @property
    def unavailable_count(self) -> int:
        return sum(1 for p in self.products if not p.available)


class ReportSender:
    """Sends digest reports to a webhook or the reports queue."""

    def __init__(
        self,
        queue: Optional[JobQueue] = None,
        webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.queue = queue
        self.webhook_url = webhook_url if webhook_url is not None else settings.report_webhook_url
        self.timeout = timeout or settings.report_webhook_timeout_seconds
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def channel(self) -> str:
        return "webhook" if self.webhook_url else "queue"

    async def send(self, report: DigestReport) -> None:
        """
        Deliver one report.

        Raises:
            ReportDeliveryError: the channel rejected or could not take the report
        """
        channel = self.channel
        try:
            if self.webhook_url:
                await self._post(report)
            elif self.queue is not None:
                await self.queue.enqueue(
                    REPORT_QUEUE, report.model_dump(mode="json"), job_id=f"report-{report.run_id}"
                )
            else:
                raise ReportDeliveryError("No report webhook or queue configured")
        except ReportDeliveryError:
            metrics.reports_sent_total.labels(channel=channel, status="error").inc()
            raise
        except Exception as e:
            metrics.reports_sent_total.labels(channel=channel, status="error").inc()
            raise ReportDeliveryError(f"Report delivery via {channel} failed: {e}") from e

        metrics.reports_sent_total.labels(channel=channel, status="success").inc()
        logger.info(
            f"Sent digest report {report.run_id} via {channel} "
            f"({len(report.products)} products, {report.unavailable_count} unavailable)"
        )

    async def _post(self, report: DigestReport) -> None:
        client = await self._get_client()
        response = await client.post(
            self.webhook_url,
            content=report.model_dump_json(),
            headers={"Content-Type": "application/json"},
        )
        if response.status_code >= 400:
            raise ReportDeliveryError(
                f"Report webhook returned {response.status_code}: {response.text[:200]}"
            )
