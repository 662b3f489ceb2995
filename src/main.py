"""
注文修正・同期クライアントのコマンドライン

  watch   注文一覧をポーリングして表示（--status / --query で絞り込み）
  fix     修正テキストで注文の品目を置き換える
  status  注文ステータスを変更する
  draft   修正テキストの初期値（現在の品目）を表示する
  audit   ローカルの操作記録を表示する
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from config_loader import load_sync_config
from correction_coordinator import CorrectionCoordinator
from errors import OrderSyncError, TransportError
from order_client import OrderApiClient
from order_display import format_order, format_snapshot
from order_models import STATUS_FILTERS, Org
from order_status import CLIENT_STATUSES
from search_index import filter_orders
from state_store import recent_audit, write_audit
from sync_controller import SyncController

logger = logging.getLogger("order_sync")


def _build_client(cfg: dict) -> OrderApiClient:
    api = cfg["api"]
    return OrderApiClient(base_url=api["base_url"], token=api.get("token"), timeout=float(api["timeout"]))


def _build_controller(cfg: dict, client: OrderApiClient, status_filter: Optional[str] = None) -> SyncController:
    return SyncController(
        client,
        cfg["org"].get("id"),
        status_filter=status_filter or cfg["sync"]["status_filter"],
        poll_interval=float(cfg["sync"]["poll_interval"]),
        on_error=lambda e: print(f"ERR: {e}", file=sys.stderr),
    )


def _build_coordinator(cfg: dict, client: OrderApiClient, controller: SyncController) -> CorrectionCoordinator:
    return CorrectionCoordinator(
        client,
        controller,
        actor=os.getenv("USER", "human"),
        default_reason=cfg["corrections"]["default_reason"],
        audit=write_audit,
    )


async def _load_org(client: OrderApiClient) -> Optional[Org]:
    # 組織情報は表示用に一度だけ取得する。取れなくても一覧表示は続ける
    try:
        return await client.get_org()
    except TransportError as e:
        logger.warning("could not load org info: %s", e)
        return None


async def watch(cfg: dict, status: Optional[str], query: str, once: bool) -> None:
    client = _build_client(cfg)
    org = await _load_org(client)
    controller = _build_controller(cfg, client, status)

    def show(snapshot) -> None:
        print(format_snapshot(snapshot, filter_orders(snapshot, query), org, controller.refreshing))
        print(f"\n-- auto-refresh {controller.poll_interval:g}s, tick {controller.tick} --\n")

    async with controller:
        show(controller.snapshot)
        if once:
            return
        controller.subscribe(show)
        await asyncio.Event().wait()


async def fix(cfg: dict, order_id: str, text: str, reason: Optional[str]) -> None:
    client = _build_client(cfg)
    async with _build_controller(cfg, client, "all") as controller:
        coordinator = _build_coordinator(cfg, client, controller)
        updated = await coordinator.submit(order_id, text, reason)
        print(format_order(updated))


async def set_status(cfg: dict, order_id: str, status: str) -> None:
    client = _build_client(cfg)
    async with _build_controller(cfg, client, "all") as controller:
        coordinator = _build_coordinator(cfg, client, controller)
        updated = await coordinator.set_status(order_id, status)
        if updated is None:
            print(f"order {order_id} is already {status}")
        else:
            print(format_order(updated))


async def draft(cfg: dict, order_id: str) -> None:
    client = _build_client(cfg)
    async with _build_controller(cfg, client, "all") as controller:
        print(_build_coordinator(cfg, client, controller).draft_text(order_id))


def show_audit(limit: int) -> None:
    rows = recent_audit(limit)
    if not rows:
        print("<none>")
    for r in rows:
        line = f"{r['ts']} {r['level']:<5} {r['actor']} {r['action']} {','.join(r['target_ids'])} {r['result']}"
        if r["error"]:
            line += f" ({r['error']})"
        print(line)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="order-sync", description="Review and correct parsed orders")
    parser.add_argument("--config", help="path to order_sync.yml")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("watch", help="poll and print orders")
    p.add_argument("--status", choices=STATUS_FILTERS)
    p.add_argument("--query", default="")
    p.add_argument("--once", action="store_true", help="print one snapshot and exit")

    p = sub.add_parser("fix", help="replace an order's items from correction text")
    p.add_argument("order_id")
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--text", help="one item per line, e.g. '3 kg flour'")
    src.add_argument("--file", help="read correction text from a file ('-' for stdin)")
    p.add_argument("--reason")

    p = sub.add_parser("status", help="change order status")
    p.add_argument("order_id")
    p.add_argument("status", choices=CLIENT_STATUSES)

    p = sub.add_parser("draft", help="print current items as correction text")
    p.add_argument("order_id")

    p = sub.add_parser("audit", help="show recent local audit entries")
    p.add_argument("--limit", type=int, default=20)
    return parser


def _read_text(args) -> str:
    if args.text is not None:
        return args.text.replace("\\n", "\n")
    if args.file == "-":
        return sys.stdin.read()
    with open(args.file, "r", encoding="utf-8") as f:
        return f.read()


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    args = build_parser().parse_args(argv)
    try:
        cfg = load_sync_config(args.config)
        os.environ.setdefault("ORDER_AUDIT_DB", cfg["audit"]["db_path"])
        if args.command == "watch":
            asyncio.run(watch(cfg, args.status, args.query, args.once))
        elif args.command == "fix":
            asyncio.run(fix(cfg, args.order_id, _read_text(args), args.reason))
        elif args.command == "status":
            asyncio.run(set_status(cfg, args.order_id, args.status))
        elif args.command == "draft":
            asyncio.run(draft(cfg, args.order_id))
        elif args.command == "audit":
            show_audit(args.limit)
    except OrderSyncError as e:
        print(f"ERR: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
