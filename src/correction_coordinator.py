"""
人手による修正の適用

修正テキストを解析して API に送り、成功したらコントローラに soft refresh を依頼する。
スナップショットは自分では書き換えない（サーバーが品目を正規化し直すことがあるため）。
"""

import logging
from typing import Callable, Optional

from errors import ParseEmptyError, TransportError, ValidationError
from line_parser import parse, render_items
from order_models import Correction, Order
from order_status import next_status
from sync_controller import SyncController

logger = logging.getLogger(__name__)

DEFAULT_REASON = "human_fix"

# write_audit(level, actor, action, target_ids, result, error=None, detail=None)
AuditHook = Callable[..., None]


class CorrectionCoordinator:
    def __init__(
        self,
        sink,
        controller: SyncController,
        *,
        actor: str = "human",
        default_reason: str = DEFAULT_REASON,
        audit: Optional[AuditHook] = None,
    ):
        self._sink = sink
        self._controller = controller
        self.actor = actor
        self.default_reason = default_reason
        self._audit = audit

    def draft_text(self, order_id: str) -> str:
        """修正入力欄の初期値（現在の品目を1行1品目で）"""
        order = self._lookup(order_id)
        return render_items(order.items)

    async def submit(self, order_id: str, raw_text: str, reason: Optional[str] = None) -> Order:
        """修正テキストを品目に変換して送信し、再同期する。

        Raises:
            ParseEmptyError: 品目が1つも得られなかった（通信は行わない）
            TransportError: API 呼び出しに失敗した（スナップショットは変更されない）
        """
        items = parse(raw_text)
        if not items:
            raise ParseEmptyError(order_id)

        correction = Correction(order_id=order_id, items=tuple(items), reason=reason or self.default_reason)
        try:
            updated = await self._sink.apply_correction(correction)
        except TransportError as e:
            logger.error("correction for order %s failed: %s", order_id, e)
            self._record("ERROR", "correction", order_id, "failed", error=str(e))
            raise

        logger.info("applied correction to order %s (%d items, reason=%s)", order_id, len(items), correction.reason)
        self._record("INFO", "correction", order_id, "applied", detail=correction.to_payload())
        await self._resync()
        return updated

    async def set_status(self, order_id: str, status: str) -> Optional[Order]:
        """ステータスを変更する。現在値と同じなら何もせず None を返す。

        成功時はサーバーが返した注文をコントローラ経由でスナップショットに書き戻してから再同期する。
        """
        current = self._lookup(order_id)
        target = next_status(current.status, status)
        if target is None:
            logger.debug("order %s already %s, skipping", order_id, current.status)
            return None

        try:
            updated = await self._sink.set_status(order_id, target)
        except TransportError as e:
            logger.error("status change %s -> %s for order %s failed: %s", current.status, target, order_id, e)
            self._record("ERROR", f"status:{target}", order_id, "failed", error=str(e))
            raise

        self._controller.apply_order(updated)
        self._record("INFO", f"status:{target}", order_id, "applied", detail={"from": current.status})
        await self._resync()
        return updated

    # -------------------- 内部処理 --------------------

    def _lookup(self, order_id: str) -> Order:
        order = self._controller.snapshot.get(order_id)
        if order is None:
            raise ValidationError(f"order {order_id} is not in the current snapshot")
        return order

    async def _resync(self) -> None:
        # 書き込み前に始まった取得は古い状態を返しうるので fresh で取り直す。
        # 書き込み自体は成功しているので、再同期の失敗は呼び出し元に投げず通知だけする
        try:
            await self._controller.refresh(soft=True, fresh=True)
        except TransportError as e:
            logger.warning("resync after edit failed for org %s: %s", self._controller.org_id, e)
            self._controller.report_error(e)

    def _record(self, level: str, action: str, order_id: str, result: str, error: Optional[str] = None, detail=None) -> None:
        if self._audit is None:
            return
        try:
            self._audit(level, self.actor, action, [order_id], result, error=error, detail=detail)
        except Exception as e:
            logger.warning("audit write failed for order %s: %s", order_id, e)
