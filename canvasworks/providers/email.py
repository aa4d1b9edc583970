from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from ..infra.timings import timeit
from ..logs import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class NotificationSender(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, html: str) -> SendResult: ...


class ResendSender(NotificationSender):

    def __init__(self, http: httpx.AsyncClient, *, api_key: str,
                 from_email: str,
                 api_base: str = "https://api.resend.com") -> None:
        self.http = http
        self.api_key = api_key
        self.from_email = from_email
        self.api_base = api_base.rstrip("/")

    async def send(self, to: str, subject: str, html: str) -> SendResult:
        if not self.api_key:
            log.warning("email_not_configured", to=to, subject=subject)
            return SendResult(False, error="Email not configured")
        try:
            async with timeit("email.send"):
                resp = await self.http.post(
                    f"{self.api_base}/emails",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={
                        "from": self.from_email,
                        "to": [to],
                        "subject": subject,
                        "html": html,
                    },
                )
        except httpx.HTTPError as exc:
            return SendResult(False, error=str(exc))
        if resp.status_code >= 400:
            return SendResult(
                False, error=f"{resp.status_code}: {resp.text[:200]}"
            )
        return SendResult(True, message_id=resp.json().get("id"))
