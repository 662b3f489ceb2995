import asyncio
import logging
from typing import Dict, List, Optional, Protocol

import requests

from errors import TransportError
from order_models import Correction, Order, Org

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8787"


class OrderSource(Protocol):
    async def list_orders(self, org_id: Optional[str], status: Optional[str] = None) -> List[Order]:
        ...


class OrderSink(Protocol):
    async def apply_correction(self, correction: Correction) -> Order:
        ...

    async def set_status(self, order_id: str, status: str) -> Order:
        ...


class OrgInfo(Protocol):
    async def get_org(self) -> Org:
        ...


class OrderApiClient:
    """注文バックエンドの API クライアント（OrderSource / OrderSink / OrgInfo）

    認証トークンはコンストラクタで受け取る。自前のリトライはしない。
    requests はブロッキングなので、非同期メソッドはスレッドに逃がして呼ぶ。
    """

    def __init__(self, base_url: str = DEFAULT_BASE_URL, token: Optional[str] = None, timeout: float = 15):
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.headers = {
            "Content-Type": "application/json",
            "ngrok-skip-browser-warning": "true",
        }
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    # -------------------- 同期 API --------------------

    def fetch_orders(self, org_id: Optional[str] = None, status: Optional[str] = None) -> List[Order]:
        params: Dict[str, str] = {}
        if status:
            params["status"] = status
        if org_id:
            params["org_id"] = org_id
        data = self._request("GET", "/api/orders", params=params or None)
        if isinstance(data, dict):
            data = data.get("orders")
        if not isinstance(data, list):
            return []
        return [Order.from_dict(o) for o in data]

    def post_correction(self, correction: Correction) -> Order:
        data = self._request("POST", f"/api/orders/{correction.order_id}/ai-fix", json=correction.to_payload())
        return self._order_from(data)

    def post_status(self, order_id: str, status: str) -> Order:
        data = self._request("POST", f"/api/orders/{order_id}/status", json={"status": status})
        return self._order_from(data)

    def fetch_org(self) -> Org:
        data = self._request("GET", "/api/org/me")
        return Org.from_dict(data if isinstance(data, dict) else {})

    # -------------------- 非同期 API --------------------

    async def list_orders(self, org_id: Optional[str], status: Optional[str] = None) -> List[Order]:
        return await asyncio.to_thread(self.fetch_orders, org_id, status)

    async def apply_correction(self, correction: Correction) -> Order:
        return await asyncio.to_thread(self.post_correction, correction)

    async def set_status(self, order_id: str, status: str) -> Order:
        return await asyncio.to_thread(self.post_status, order_id, status)

    async def get_org(self) -> Org:
        return await asyncio.to_thread(self.fetch_org)

    # -------------------- 内部処理 --------------------

    def _request(self, method: str, path: str, params: Optional[Dict] = None, json: Optional[Dict] = None):
        url = f"{self.base_url}{path}"
        try:
            response = requests.request(
                method, url, headers=self.headers, params=params, json=json, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            detail = e.response.text[:200] if e.response is not None else ""
            raise TransportError(f"{method} {path} failed: {status_code} {detail}".strip(), status_code) from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"{method} {path} returned invalid JSON", response.status_code) from e

    @staticmethod
    def _order_from(data) -> Order:
        if isinstance(data, dict) and isinstance(data.get("order"), dict):
            data = data["order"]
        if not isinstance(data, dict) or "id" not in data:
            raise TransportError(f"unexpected order payload: {str(data)[:200]}")
        return Order.from_dict(data)
