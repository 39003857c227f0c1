"""
Gate events: every decision is logged, and optionally posted to a webhook.

Webhook delivery happens after the response is sent and can never change it.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from detection import RequestDescriptor

logger = logging.getLogger(__name__)

REJECTED = "rejected"
RATE_LIMITED = "rate_limited"
CHALLENGE_ISSUED = "challenge_issued"
PROOF_FAILED = "proof_failed"
TOKEN_ISSUED = "token_issued"
TOKEN_INVALID = "token_invalid"
REDIRECT = "redirect"
ERROR = "error"

# Events the webhook receives; the rest only reach the log
WEBHOOK_EVENTS = {REJECTED, TOKEN_ISSUED, REDIRECT, ERROR}


class EventSink:
    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._transport = transport

    def record(self, event: str, req: RequestDescriptor, **detail: Any) -> Dict[str, Any]:
        entry = {
            "event": event,
            "clientId": req.client_id,
            "userAgent": req.user_agent or "",
            "timestamp": int(self.clock() * 1000),
        }
        level = logging.WARNING if event == ERROR else logging.INFO
        logger.log(level, "%s client=%s path=%s %s", event, req.client_id, req.path,
                   " ".join(f"{k}={v}" for k, v in detail.items()))
        return entry

    def wants(self, entry: Dict[str, Any]) -> bool:
        return bool(self.webhook_url) and entry["event"] in WEBHOOK_EVENTS

    async def deliver(self, entries: List[Dict[str, Any]]) -> None:
        """Post events to the webhook. Failures are logged and dropped."""
        if not self.webhook_url or not entries:
            return
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds), transport=self._transport
            ) as client:
                for entry in entries:
                    response = await client.post(self.webhook_url, json=entry)
                    response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("webhook delivery failed: %s", e)
