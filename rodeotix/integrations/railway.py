"""Read-only client for the Railway backend's event and product catalog."""
import logging
from typing import Any, Dict, Optional

import httpx

from ..errors import IntegrationError
from . import json_body

logger = logging.getLogger(__name__)


class RailwayCatalog:
    def __init__(self, *, http: httpx.AsyncClient, base_url: str,
                 email: Optional[str] = None,
                 password: Optional[str] = None) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self._token: Optional[str] = None

    async def _login(self) -> Optional[str]:
        if not (self.email and self.password):
            return None
        try:
            r = await self.http.post(
                f"{self.base_url}/api/auth/login",
                json={"email": self.email, "password": self.password},
            )
        except httpx.HTTPError as e:
            raise IntegrationError("catalog unavailable") from e
        if r.status_code != 200:
            logger.error("railway login failed: %s", r.status_code)
            raise IntegrationError("catalog authentication failed")
        body = json_body(r, "catalog authentication failed")
        return body.get("token") if isinstance(body, dict) else None

    async def _get(self, path: str) -> Optional[Any]:
        if self._token is None:
            self._token = await self._login()
        headers = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            r = await self.http.get(f"{self.base_url}{path}", headers=headers)
            if r.status_code == 401 and self._token:
                # token expired; log in again once
                self._token = await self._login()
                headers["Authorization"] = f"Bearer {self._token}"
                r = await self.http.get(
                    f"{self.base_url}{path}", headers=headers
                )
        except httpx.HTTPError as e:
            raise IntegrationError("catalog unavailable") from e
        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            logger.error("railway GET %s failed: %s", path, r.status_code)
            raise IntegrationError(f"catalog error {r.status_code}")
        return json_body(r, "catalog returned an invalid response")

    async def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(f"/api/events/{event_id}")

    async def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(f"/api/products/{product_id}")
