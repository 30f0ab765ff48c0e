"""
Production system API client.
POST {api_url} with {"draft_order": {"draft_order_items": [...]}}; one entry per item slot.
"""
import json
import logging
from typing import List, Optional

import httpx

from printlink.config import settings
from printlink.errors import ExternalApiError
from printlink.models import VariantMapping
from printlink.services.http_client import send_request

logger = logging.getLogger(__name__)


def production_api_url(country_code: Optional[str]) -> str:
    config = settings.country_config(country_code)
    if config and config.get("api_url"):
        return config["api_url"]
    return settings.PRODUCTION_API_URL


def build_draft_order_item(mapping: VariantMapping) -> dict:
    return {
        "variant_mapping_id": mapping.id,
        "image_id": mapping.image_id,
        "frame_sku_id": mapping.frame_sku_id,
        "cx": mapping.cx,
        "cy": mapping.cy,
        "cw": mapping.cw,
        "ch": mapping.ch,
        "width": mapping.width,
        "height": mapping.height,
        "unit": mapping.unit,
    }


def extract_error_message(response: httpx.Response) -> str:
    """First of error / message / errors (list) / errors.message / error.message, else the raw body."""
    raw = response.text or ""
    if not raw.strip():
        return "Unknown error"
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        candidates = [data.get("error"), data.get("message")]
        errors = data.get("errors")
        if isinstance(errors, list):
            candidates.append(", ".join(str(e) for e in errors))
        elif isinstance(errors, dict):
            candidates.append(errors.get("message"))
        if isinstance(data.get("error"), dict):
            candidates[0] = data["error"].get("message")
        for candidate in candidates:
            if candidate and isinstance(candidate, str):
                return candidate
    return raw if len(raw) <= 200 else raw[:200] + "..."


class ProductionApiClient:
    def __init__(self, url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url or settings.PRODUCTION_API_URL
        self.transport = transport

    async def send_draft_order(self, items: List[dict]) -> dict:
        """
        Returns {"success": True, "response": dict} or {"success": False, "error": str, "kind": str}.
        Never raises for HTTP or transport failures.
        """
        payload = {"draft_order": {"draft_order_items": items}}
        logger.info("Sending %s draft order item(s) to production at %s", len(items), self.url)
        try:
            response = await send_request(
                "POST",
                self.url,
                transport=self.transport,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                json=payload,
            )
        except ExternalApiError as e:
            return self._failure(str(e), e.kind)

        status = response.status_code
        if 200 <= status <= 202:
            try:
                body = response.json()
            except json.JSONDecodeError:
                return self._failure("Invalid response format", ExternalApiError.SERVER)
            if not isinstance(body, dict):
                return self._failure("Invalid response format", ExternalApiError.SERVER)
            return {"success": True, "response": body}
        message = extract_error_message(response)
        if 400 <= status < 500:
            return self._failure(f"Client error ({status}): {message}", ExternalApiError.CLIENT)
        if 500 <= status < 600:
            return self._failure(f"Server error ({status}): {message}", ExternalApiError.SERVER)
        return self._failure(f"Unexpected response ({status}): {message}", ExternalApiError.SERVER)

    @staticmethod
    def _failure(message: str, kind: str) -> dict:
        logger.error("Production API error: %s", message)
        return {"success": False, "error": message, "kind": kind}
