from datetime import datetime, timezone
from typing import Iterable, Optional

from order_models import Order, Org, Snapshot
from search_index import count_by_status

STATUS_BADGES = {
    "pending": "⏳ Pending",
    "shipped": "📦 Shipped",
    "paid": "✅ Paid",
    "delivered": "🚚 Delivered",
}


def time_ago(created_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    if created_at is None:
        return "-"
    now = now or datetime.now(timezone.utc)
    s = max(1, int((now - created_at).total_seconds()))
    if s < 60:
        return f"{s}s ago"
    m = s // 60
    if m < 60:
        return f"{m}m ago"
    h = m // 60
    if h < 24:
        return f"{h}h ago"
    return f"{h // 24}d ago"


def items_summary(order: Order) -> str:
    if order.items:
        return " · ".join(i.render() for i in order.items)
    return order.raw_text or "No items parsed"


def format_order(order: Order, now: Optional[datetime] = None) -> str:
    head = f"[{order.id}] {time_ago(order.created_at, now)}  {STATUS_BADGES.get(order.status, order.status)}"
    lines = [head, f"  {order.customer_label}", f"  {items_summary(order)}"]
    if order.parse_reason:
        lines.append(f"  ({order.parse_reason})")
    if order.audio_url:
        lines.append(f"  Audio: {order.audio_url}")
    return "\n".join(lines)


def format_snapshot(
    snapshot: Snapshot,
    orders: Iterable[Order],
    org: Optional[Org] = None,
    refreshing: bool = False,
    now: Optional[datetime] = None,
) -> str:
    counts = count_by_status(snapshot)
    parts = []
    if org is not None:
        parts.append(f"Workspace: {org.name or '-'}  (WA ID: {org.wa_phone_number_id or '-'})")
        if org.plan == "free":
            parts.append("Free plan limit: 25 orders/day. Upgrade to Pro for unlimited orders.")
    parts.append(
        f"All ({counts['all']})  Pending ({counts['pending']})  Shipped ({counts['shipped']})  Paid ({counts['paid']})"
        + ("  ⟲ refreshing" if refreshing else "")
    )
    body = [format_order(o, now) for o in orders]
    parts.append("\n".join(body) if body else "No matching orders")
    return "\n\n".join(parts)
