from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

Number = Union[int, float]

ORDER_STATUSES = ("pending", "shipped", "paid", "delivered")
STATUS_FILTERS = ("all",) + ORDER_STATUSES


def to_number(value, default: Number = 1) -> Number:
    """数値化。整数で表せるものは int に揃える（"3" -> 3, "2.5" -> 2.5）。"""
    if value is None or value == "":
        return default
    try:
        num = float(value)
    except (TypeError, ValueError):
        return default
    return int(num) if num.is_integer() else num


def format_qty(qty: Number) -> str:
    """数量の表示。指数表記（1e-05 など）は行パーサーが読めないので常に小数表記にする。"""
    if isinstance(qty, float):
        if qty.is_integer():
            return str(int(qty))
        return format(Decimal(repr(qty)), "f")
    return str(qty)



def parse_timestamp(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(text)
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class Item:
    qty: Number = 1
    unit: Optional[str] = None
    canonical: Optional[str] = None
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.canonical or self.name or ""

    def render(self) -> str:
        parts = [format_qty(self.qty)]
        if self.unit:
            parts.append(self.unit)
        if self.label:
            parts.append(self.label)
        return " ".join(parts)

    def to_dict(self) -> Dict:
        out: Dict = {"qty": self.qty}
        if self.unit:
            out["unit"] = self.unit
        if self.canonical:
            out["canonical"] = self.canonical
        if self.name:
            out["name"] = self.name
        return out

    @classmethod
    def from_dict(cls, data: Mapping) -> "Item":
        return cls(
            qty=to_number(data.get("qty")),
            unit=data.get("unit") or None,
            canonical=data.get("canonical") or None,
            name=data.get("name") or None,
        )


@dataclass(frozen=True)
class Order:
    id: str
    created_at: Optional[datetime]
    status: str = "pending"
    customer_name: Optional[str] = None
    source_phone: Optional[str] = None
    raw_text: Optional[str] = None
    audio_url: Optional[str] = None
    items: Tuple[Item, ...] = ()
    parse_reason: Optional[str] = None

    @property
    def customer_label(self) -> str:
        return self.customer_name or self.source_phone or "Customer"

    @classmethod
    def from_dict(cls, data: Mapping) -> "Order":
        """サーバーの JSON 形式から生成。未知のキーは無視する。"""
        return cls(
            id=str(data["id"]),
            created_at=parse_timestamp(data.get("created_at")),
            status=str(data.get("status") or "pending").lower(),
            customer_name=data.get("customer_name") or None,
            source_phone=data.get("source_phone") or None,
            raw_text=data.get("raw_text") or None,
            audio_url=data.get("audio_url") or None,
            items=tuple(Item.from_dict(i) for i in (data.get("items") or [])),
            parse_reason=data.get("parse_reason") or None,
        )


@dataclass(frozen=True)
class Correction:
    order_id: str
    items: Tuple[Item, ...]
    reason: str = "human_fix"

    def to_payload(self) -> Dict:
        return {
            "human_fixed": {
                "items": [i.to_dict() for i in self.items],
                "reason": self.reason,
            }
        }


@dataclass(frozen=True)
class Org:
    name: Optional[str] = None
    plan: Optional[str] = None
    wa_phone_number_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping) -> "Org":
        return cls(
            name=data.get("name"),
            plan=data.get("plan"),
            wa_phone_number_id=data.get("wa_phone_number_id"),
        )


@dataclass(frozen=True)
class Snapshot:
    """ある組織の注文一覧のスナップショット。丸ごと差し替えるだけで、部分更新はしない。"""

    org_id: Optional[str]
    status_filter: str
    orders: Mapping[str, Order] = field(default_factory=lambda: MappingProxyType({}))
    version: int = 0
    fetched_at: Optional[datetime] = None

    @classmethod
    def build(
        cls,
        org_id: Optional[str],
        status_filter: str,
        orders: Iterable[Order],
        version: int,
        fetched_at: Optional[datetime] = None,
    ) -> "Snapshot":
        mapping: Dict[str, Order] = {}
        for order in orders:
            mapping[order.id] = order
        return cls(
            org_id=org_id,
            status_filter=status_filter,
            orders=MappingProxyType(mapping),
            version=version,
            fetched_at=fetched_at,
        )

    def replace_order(self, order: Order, version: int) -> "Snapshot":
        mapping = dict(self.orders)
        mapping[order.id] = order
        return Snapshot(
            org_id=self.org_id,
            status_filter=self.status_filter,
            orders=MappingProxyType(mapping),
            version=version,
            fetched_at=self.fetched_at,
        )

    def get(self, order_id: str) -> Optional[Order]:
        return self.orders.get(order_id)

    def list_orders(self) -> List[Order]:
        return list(self.orders.values())

    def __len__(self) -> int:
        return len(self.orders)
