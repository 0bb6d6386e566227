"""New-ticket notification e-mail sent through a Resend-style HTTP API."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from helpdesk.core.config import Settings
from helpdesk.metrics import MetricsRegistry, metrics_registry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TicketSummary:
    ticket_id: str
    title: str
    description: str
    priority: str
    customer_name: str
    customer_email: str | None


class TicketNotifier:
    """Tell the support inbox about new tickets.

    Delivery is best effort: every failure is logged and counted, and
    :meth:`notify` reports it by returning ``False`` instead of raising.
    """

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str | None,
        sender: str,
        recipient: str,
        portal_base_url: str,
        client: httpx.AsyncClient | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._api_url = api_url
        self._api_key = api_key
        self._sender = sender
        self._recipient = recipient
        self._portal_base_url = portal_base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._metrics = metrics or metrics_registry

    @classmethod
    def from_settings(cls, settings: Settings) -> "TicketNotifier":
        return cls(
            api_url=settings.mail_api_url,
            api_key=settings.mail_api_key,
            sender=settings.mail_from,
            recipient=settings.mail_to,
            portal_base_url=settings.portal_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def close(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    def build_payload(self, summary: TicketSummary) -> dict[str, object]:
        ticket_url = f"{self._portal_base_url}/conversation/{summary.ticket_id}"
        customer = summary.customer_name
        if summary.customer_email:
            customer = f"{customer} <{summary.customer_email}>"
        text = "\n".join(
            [
                f"New support ticket: {summary.title}",
                f"Priority: {summary.priority}",
                f"Customer: {customer}",
                "",
                summary.description,
                "",
                f"Open the ticket: {ticket_url}",
                f"Ticket ID: {summary.ticket_id}",
            ]
        )
        return {
            "from": self._sender,
            "to": [self._recipient],
            "subject": f"New ticket: {summary.title}",
            "text": text,
        }

    async def notify(self, summary: TicketSummary) -> bool:
        if not self.is_configured:
            logger.debug("Mail API key not configured; skipping notification for %s", summary.ticket_id)
            return False

        try:
            response = await self._client.post(
                self._api_url,
                json=self.build_payload(summary),
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            self._metrics.counter("notification_failures_total").inc()
            logger.warning("Ticket notification for %s failed: %s", summary.ticket_id, exc)
            return False

        logger.info("Sent ticket notification for %s", summary.ticket_id)
        return True
