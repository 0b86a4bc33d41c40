import base64
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

import httpx

from ..errors import IntegrationError
from . import json_body

logger = logging.getLogger(__name__)

DEFAULT_PACKAGE = {
    "weight": 1, "weight_unit": "kg",
    "length": 30, "width": 20, "height": 5, "dimension_unit": "cm",
}


def package_for(product: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "weight": product.get("weight") or DEFAULT_PACKAGE["weight"],
        "weight_unit": "kg",
        "length": product.get("length") or DEFAULT_PACKAGE["length"],
        "width": product.get("width") or DEFAULT_PACKAGE["width"],
        "height": product.get("height") or DEFAULT_PACKAGE["height"],
        "dimension_unit": "cm",
    }


def _price(rate: Dict[str, Any]) -> Decimal:
    try:
        return Decimal(str(rate.get("rate", rate.get("price"))))
    except (InvalidOperation, TypeError):
        return Decimal("Infinity")


def sort_rates(raw: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    rates = [{
        "service_name": r.get("service_name") or r.get("service") or "",
        "service_code": r.get("service_code") or "",
        "price": _price(r),
        "estimated_delivery": r.get("estimated_delivery")
        or r.get("transit_days"),
    } for r in raw]
    rates = [r for r in rates if r["price"].is_finite()]
    rates.sort(key=lambda r: r["price"])
    for r in rates:
        r["price"] = str(r["price"].quantize(Decimal("0.01")))
    return rates


class ShiptimeClient:
    def __init__(self, *, http: httpx.AsyncClient, base_url: str,
                 username: str | None, password: str | None,
                 origin_postal: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.origin_postal = origin_postal
        auth = f"{username or ''}:{password or ''}".encode()
        self._auth = f"Basic {base64.b64encode(auth).decode()}"

    async def _post(self, path: str, body: dict) -> Any:
        try:
            r = await self.http.post(
                f"{self.base_url}{path}", json=body,
                headers={"Authorization": self._auth},
            )
        except httpx.HTTPError as e:
            raise IntegrationError("shipping service unavailable") from e
        if r.status_code >= 400:
            logger.error("shiptime %s failed: %s %s",
                         path, r.status_code, r.text)
            raise IntegrationError("shipping service error")
        return json_body(r, "shipping service error")

    async def get_rates(self, destination: Dict[str, Any],
                        packages: List[Dict[str, Any]]) -> List[Dict]:
        raw = await self._post("/ship/rates", {
            "origin": {"postal_code": self.origin_postal, "country": "CA"},
            "destination": {
                "postal_code": destination.get("postal_code"),
                "country": destination.get("country") or "CA",
            },
            "packages": packages,
        })
        return sort_rates(raw if isinstance(raw, list) else [])

    async def create_shipment(self, *, order_id: str,
                              address: Dict[str, Any],
                              packages: List[Dict[str, Any]],
                              service_code: str = "standard") -> Dict:
        data = await self._post("/ship/shipments", {
            "reference": order_id,
            "origin": {"postal_code": self.origin_postal, "country": "CA"},
            "destination": address,
            "packages": packages,
            "service_code": service_code,
        })
        shipment = data.get("shipment") or data
        return {
            "id": str(shipment.get("id", "")),
            "tracking_number": shipment.get("tracking_number"),
        }
