"""Print provider capability and its Printify REST implementation."""

from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..errors import ProviderError
from ..infra.timings import timeit
from ..logs import get_logger

log = get_logger(__name__)

# blueprint / provider / variant ids come from the Printify catalog
CANVAS_PRODUCTS: Dict[str, Dict[str, Any]] = {
    "12x12": {
        "blueprint_id": 3,
        "print_provider_id": 29,
        "variant_id": 17348,
        "label": '12"x12"',
        "price_cents": 9900,
    },
    "16x16": {
        "blueprint_id": 3,
        "print_provider_id": 29,
        "variant_id": 17349,
        "label": '16"x16"',
        "price_cents": 15000,
    },
}


class PrintProvider(ABC):
    @abstractmethod
    async def upload_image(self, image_url: str, file_name: str) -> str: ...

    @abstractmethod
    async def create_product(
        self, image_id: str, size: str, title: str
    ) -> str: ...

    @abstractmethod
    async def create_order(
        self, product_id: str, size: str, address: Dict[str, str],
        external_id: str,
    ) -> str: ...

    @abstractmethod
    async def submit_to_production(self, order_id: str) -> None: ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Dict[str, Any]: ...


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return str(data)[:200]


class PrintifyClient(PrintProvider):

    def __init__(self, http: httpx.AsyncClient, *, api_key: str,
                 shop_id: str, api_base: str = "https://api.printify.com/v1",
                 order_label: str = "Canvas Order") -> None:
        self.http = http
        self.api_key = api_key
        self.shop_id = shop_id
        self.api_base = api_base.rstrip("/")
        self.order_label = order_label

    def _headers(self) -> Dict[str, str]:
        if not self.api_key or not self.shop_id:
            raise ProviderError("Printify is not configured")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self, kind: str, method: str, path: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.api_base}{path}"
        try:
            async with timeit(f"printify.{kind}"):
                resp = await self.http.request(
                    method, url, headers=self._headers(), json=json
                )
        except httpx.HTTPError as exc:
            raise ProviderError(f"printify {kind}: {exc}") from exc
        if resp.status_code >= 400:
            raise ProviderError(
                f"printify {kind} failed: {_error_message(resp)}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return {}
        return resp.json()

    async def upload_image(self, image_url: str, file_name: str) -> str:
        try:
            async with timeit("printify.fetch_source"):
                src = await self.http.get(image_url)
        except httpx.HTTPError as exc:
            raise ProviderError(f"fetching {image_url}: {exc}") from exc
        if src.status_code >= 400:
            raise ProviderError(
                f"fetching {image_url} returned {src.status_code}",
                status_code=src.status_code,
            )

        data = await self._request("upload_image", "POST",
                                   "/uploads/images.json", json={
                                       "file_name": file_name,
                                       "contents": base64.b64encode(
                                           src.content).decode(),
                                   })
        log.info("printify_image_uploaded", image_id=data["id"])
        return str(data["id"])

    async def create_product(self, image_id: str, size: str,
                             title: str) -> str:
        cfg = CANVAS_PRODUCTS[size]
        data = await self._request(
            "create_product", "POST",
            f"/shops/{self.shop_id}/products.json",
            json={
                "title": title,
                "description": "Museum-quality canvas print. Ready to hang.",
                "blueprint_id": cfg["blueprint_id"],
                "print_provider_id": cfg["print_provider_id"],
                "variants": [{
                    "id": cfg["variant_id"],
                    "price": cfg["price_cents"],
                    "is_enabled": True,
                }],
                "print_areas": [{
                    "variant_ids": [cfg["variant_id"]],
                    "placeholders": [{
                        "position": "front",
                        "images": [{
                            "id": image_id,
                            "x": 0.5, "y": 0.5, "scale": 1, "angle": 0,
                        }],
                    }],
                }],
            },
        )
        log.info("printify_product_created", product_id=data["id"])
        return str(data["id"])

    async def create_order(self, product_id: str, size: str,
                           address: Dict[str, str], external_id: str) -> str:
        cfg = CANVAS_PRODUCTS[size]
        data = await self._request(
            "create_order", "POST", f"/shops/{self.shop_id}/orders.json",
            json={
                # Printify rejects a second order with the same external_id
                "external_id": external_id,
                "label": self.order_label,
                "line_items": [{
                    "product_id": product_id,
                    "variant_id": cfg["variant_id"],
                    "quantity": 1,
                }],
                "shipping_method": 1,
                "is_printify_express": False,
                "is_economy_shipping": False,
                "send_shipping_notification": True,
                "address_to": address,
            },
        )
        log.info("printify_order_created", order_id=data["id"],
                 external_id=external_id)
        return str(data["id"])

    async def submit_to_production(self, order_id: str) -> None:
        await self._request(
            "submit_to_production", "POST",
            f"/shops/{self.shop_id}/orders/{order_id}/send_to_production.json",
        )
        log.info("printify_order_in_production", order_id=order_id)

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        return await self._request(
            "get_order", "GET",
            f"/shops/{self.shop_id}/orders/{order_id}.json",
        )
