"""HTTP client for the group purchase and notification services.

Reads are retried at most twice on 5xx with backoff; mutations are never
retried. Business errors come back as the typed exceptions of
``groupbuy_client.errors``.
"""
import logging
import os
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .cache import ACTIVE_GROUPS_KEY, NOTIFICATIONS_KEY, UNREAD_COUNT_KEY, QueryCache, group_key, notifications_key
from .errors import ServiceError, error_from_response

load_dotenv()

logger = logging.getLogger(__name__)

GROUP_SERVICE_URL = os.getenv("GROUP_SERVICE_URL", "http://group-service:8000")
NOTIFICATION_SERVICE_URL = os.getenv("NOTIFICATION_SERVICE_URL", "http://notification-service:8000")

READ_RETRIES = 2
RETRY_STATUSES = (500, 502, 503, 504)


def build_session(read_retries: int = READ_RETRIES, backoff_factor: float = 0.5) -> requests.Session:
    retry = Retry(
        total=read_retries,
        connect=read_retries,
        read=read_retries,
        status=read_retries,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=frozenset(["GET", "HEAD"]),
        backoff_factor=backoff_factor,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session = requests.Session()
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class GroupPurchaseClient:
    def __init__(
        self,
        base_url: str = GROUP_SERVICE_URL,
        token: Optional[str] = None,
        *,
        notification_url: str = NOTIFICATION_SERVICE_URL,
        session: Optional[requests.Session] = None,
        cache: Optional[QueryCache] = None,
        timeout: float = 5,
    ):
        self.base_url = base_url.rstrip("/")
        self.notification_url = notification_url.rstrip("/")
        self.token = token
        self.session = session or build_session()
        self.cache = cache or QueryCache()
        self.timeout = timeout

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, url: str, *, headers: Optional[Dict[str, str]] = None, **kwargs) -> Any:
        try:
            resp = self.session.request(method, url, headers=self._headers(headers), timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise ServiceError(status_code=None, detail=str(e)) from e

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {"detail": resp.text or resp.reason}
            raise error_from_response(resp.status_code, body)

        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    # -----------------------------
    # Group purchases
    # -----------------------------

    def get_group_purchase(self, group_purchase_id: int, *, use_cache: bool = True) -> Dict[str, Any]:
        key = group_key(group_purchase_id)
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        url = f"{self.base_url}/group-purchases/{group_purchase_id}"
        group = self._request("GET", url)
        if not self.cache.is_fresh_enough(key, group.get("version")):
            # A cache between us and the server served a pre-write copy
            logger.debug("Stale read of %s at version %s; refetching", key, group.get("version"))
            group = self._request("GET", url, headers={"Cache-Control": "no-cache"})

        self.cache.set(key, group, version=group.get("version"))
        return group

    def list_active_group_purchases(self, skip: int = 0, limit: int = 100) -> Dict[str, Any]:
        key = f"{ACTIVE_GROUPS_KEY}?skip={skip}&limit={limit}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        result = self._request("GET", f"{self.base_url}/group-purchases", params={"skip": skip, "limit": limit})
        self.cache.set(key, result)
        return result

    def participation_status(self, group_purchase_id: int) -> Dict[str, Any]:
        return self._request("GET", f"{self.base_url}/group-purchases/{group_purchase_id}/participation")

    def my_group_purchase_ids(self) -> List[int]:
        return self._request("GET", f"{self.base_url}/group-purchases/me")["group_purchase_ids"]

    def _remember_write(self, group: Dict[str, Any]) -> None:
        key = group_key(group["id"])
        self.cache.record_write(key, group["version"])
        self.cache.set(key, group, version=group["version"])
        self.cache.invalidate_prefix([ACTIVE_GROUPS_KEY + "?"])

    def join(self, group_purchase_id: int, quantity: int = 1) -> Dict[str, Any]:
        result = self._request(
            "POST",
            f"{self.base_url}/group-purchases/{group_purchase_id}/join",
            json={"quantity": quantity},
        )
        self._remember_write(result["group_purchase"])
        return result

    def leave(self, group_purchase_id: int) -> Dict[str, Any]:
        group = self._request("DELETE", f"{self.base_url}/group-purchases/{group_purchase_id}/leave")
        self._remember_write(group)
        return group

    def close_group_purchase(self, group_purchase_id: int) -> Dict[str, Any]:
        group = self._request("POST", f"{self.base_url}/group-purchases/{group_purchase_id}/close")
        self._remember_write(group)
        return group

    def start_group_purchase(self, product_id: int, end_time: str, target_participants: Optional[int] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"product_id": product_id, "end_time": end_time}
        if target_participants is not None:
            body["target_participants"] = target_participants
        group = self._request("POST", f"{self.base_url}/group-purchases", json=body)
        self._remember_write(group)
        return group

    # -----------------------------
    # Products
    # -----------------------------

    def get_product(self, product_id: int) -> Dict[str, Any]:
        return self._request("GET", f"{self.base_url}/products/{product_id}")

    def create_product(self, product: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", f"{self.base_url}/products", json=product)

    def replace_discount_tiers(self, product_id: int, tiers: List[Dict[str, Any]]) -> Dict[str, Any]:
        product = self._request(
            "PUT",
            f"{self.base_url}/products/{product_id}/discount-tiers",
            json={"discount_tiers": tiers},
        )
        # Tracked prices of the product's groups changed server-side
        self.cache.invalidate_prefix(["/group-purchases"])
        return product

    # -----------------------------
    # Addresses
    # -----------------------------

    def list_addresses(self) -> List[Dict[str, Any]]:
        return self._request("GET", f"{self.base_url}/addresses")

    def add_address(self, address: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", f"{self.base_url}/addresses", json=address)

    # -----------------------------
    # Notifications
    # -----------------------------

    def list_notifications(self, limit: int = 50) -> Dict[str, Any]:
        key = notifications_key(limit)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        result = self._request("GET", f"{self.notification_url}/notifications", params={"limit": limit})
        self.cache.set(key, result)
        return result

    def unread_count(self) -> int:
        cached = self.cache.get(UNREAD_COUNT_KEY)
        if cached is not None:
            return cached
        count = self._request("GET", f"{self.notification_url}/notifications/unread-count")["unread_count"]
        self.cache.set(UNREAD_COUNT_KEY, count)
        return count

    def mark_notification_read(self, notification_id: int) -> Dict[str, Any]:
        result = self._request("PATCH", f"{self.notification_url}/notifications/{notification_id}/read")
        self.cache.invalidate_prefix([NOTIFICATIONS_KEY])
        return result

    def mark_all_notifications_read(self) -> int:
        result = self._request("PATCH", f"{self.notification_url}/notifications/mark-all-read")
        self.cache.invalidate_prefix([NOTIFICATIONS_KEY])
        return result["updated"]
