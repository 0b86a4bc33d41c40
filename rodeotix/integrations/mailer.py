import base64
import logging
from typing import Dict, List, Optional

import httpx

from ..errors import IntegrationError
from . import json_body

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


class ResendMailer:
    def __init__(self, *, http: httpx.AsyncClient, api_key: Optional[str],
                 sender: str) -> None:
        self.http = http
        self.api_key = api_key
        self.sender = sender

    async def send_email(self, to: str, subject: str, html: str,
                         attachments: Optional[List[Dict]] = None) -> str:
        """
        `attachments` items are `{"filename": str, "content": bytes}`.
        Returns the provider's message id.
        """
        if not self.api_key:
            raise IntegrationError("email is not configured")
        body = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if attachments:
            body["attachments"] = [{
                "filename": a["filename"],
                "content": base64.b64encode(a["content"]).decode(),
            } for a in attachments]
        try:
            r = await self.http.post(
                RESEND_URL, json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            raise IntegrationError("email delivery failed") from e
        if r.status_code >= 400:
            logger.error("resend rejected mail to %s: %s %s",
                         to, r.status_code, r.text)
            raise IntegrationError("email delivery failed")
        body = json_body(r, "email delivery failed")
        return body.get("id", "") if isinstance(body, dict) else ""
