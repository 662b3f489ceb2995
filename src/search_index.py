from typing import Dict, List, Tuple

from order_models import ORDER_STATUSES, Order, Snapshot, format_qty


def _search_fields(order: Order) -> Tuple[str, str, str]:
    who = order.customer_name or order.source_phone or ""
    raw = order.raw_text or ""
    items = " ".join(
        f"{format_qty(i.qty)} {i.unit or ''} {i.label}" for i in order.items
    )
    return who.lower(), raw.lower(), items.lower()


def filter_orders(snapshot: Snapshot, query: str) -> List[Order]:
    """顧客名・原文・品目に対する大文字小文字を区別しない部分一致検索。

    クエリが空ならスナップショットの並び順のまま全件返す。
    """
    q = (query or "").strip().lower()
    orders = snapshot.list_orders()
    if not q:
        return orders
    return [o for o in orders if any(q in f for f in _search_fields(o))]


def count_by_status(snapshot: Snapshot) -> Dict[str, int]:
    counts = {"all": len(snapshot)}
    counts.update({s: 0 for s in ORDER_STATUSES})
    for order in snapshot.orders.values():
        if order.status in counts:
            counts[order.status] += 1
    return counts
