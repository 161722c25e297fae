"""Transactional email client (Resend HTTP API)."""

from __future__ import annotations

import httpx
from loguru import logger


class EmailClient:
    """Async client for the Resend ``/emails`` endpoint.

    Parameters
    ----------
    api_key : str
        Resend API key. Empty = not configured, ``send`` is never attempted.
    from_address : str
        Default sender address.
    """

    def __init__(
        self,
        api_key: str,
        from_address: str,
        api_base: str = "https://api.resend.com",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.from_address = from_address
        self.api_base = api_base.rstrip("/")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, to: str, subject: str, text: str) -> dict:
        """Send a plain-text email.

        Parameters
        ----------
        to : str
            Recipient address.
        subject : str
            Subject line.
        text : str
            Plain-text body.
        """
        payload = {
            "from": self.from_address,
            "to": to,
            "subject": subject,
            "text": text,
        }
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(30.0),
            headers={"Authorization": f"Bearer {self.api_key}"},
            transport=self._transport,
        ) as client:
            resp = await client.post(f"{self.api_base}/emails", json=payload)
            if not resp.is_success:
                logger.warning(
                    f"Email send failed ({resp.status_code}): {resp.text[:200]}"
                )
            resp.raise_for_status()
            return resp.json()
