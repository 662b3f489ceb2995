"""
注文一覧の同期コントローラ

1組織につき1つ。スナップショットの唯一の書き手で、以下を保証する:
- 取得処理は同時に1本まで（実行中に要求された refresh は実行中のものに合流する）
- hard refresh（初回・フィルタ変更）は loading、soft refresh（ポーリング・操作後の再同期）は refreshing を立てる
- ポーリングは dispose / フィルタ変更で必ず止める。フィルタ変更時は止めてから張り直す
- dispose 後やフィルタ変更後に返ってきた古い結果は捨てる
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from errors import TransportError, ValidationError
from order_models import STATUS_FILTERS, Order, Snapshot

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 12.0

SnapshotListener = Callable[[Snapshot], None]
ErrorListener = Callable[[Exception], None]


class SyncController:
    """1組織分の注文スナップショットを保持し、定期・任意のタイミングで更新する"""

    def __init__(
        self,
        source,
        org_id: Optional[str] = None,
        *,
        status_filter: str = "all",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        on_error: Optional[ErrorListener] = None,
    ):
        """
        Args:
            source: list_orders(org_id, status) を持つ非同期の注文取得元
            org_id: 組織ID（トークンで組織が決まる場合は None）
            status_filter: all|pending|shipped|paid|delivered
            poll_interval: ポーリング間隔（秒）
            on_error: バックグラウンド更新・再同期の失敗通知先
        """
        if status_filter not in STATUS_FILTERS:
            raise ValidationError(f"unknown status filter: {status_filter!r}")
        if poll_interval <= 0:
            raise ValidationError(f"poll_interval must be positive, got {poll_interval!r}")
        self._source = source
        self.org_id = org_id
        self.poll_interval = float(poll_interval)
        self._on_error = on_error
        self._status_filter = status_filter
        self._snapshot = Snapshot(org_id=org_id, status_filter=status_filter)
        self._version = 0
        # フィルタ変更・dispose のたびに進める。取得開始時の値と違えば結果は適用しない
        self._generation = 0
        self._inflight: Optional[asyncio.Future] = None
        self._inflight_generation = -1
        # 取得を開始するたびに進める。fresh な再同期が合流してよい取得かの判定に使う
        self._fetch_seq = 0
        self._inflight_seq = 0
        self._poll_task: Optional[asyncio.Task] = None
        self._listeners: List[SnapshotListener] = []
        self._loading = False
        self._refreshing = False
        self.tick = 0
        self.disposed = False

    # -------------------- 参照 --------------------

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def status_filter(self) -> str:
        return self._status_filter

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def refreshing(self) -> bool:
        return self._refreshing

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """新しいスナップショットの通知先を登録する。戻り値を呼ぶと解除。"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -------------------- ライフサイクル --------------------

    async def start(self) -> Snapshot:
        """ポーリングを開始し、hard refresh で最初のスナップショットを取得する。"""
        if self.disposed:
            raise RuntimeError("controller already disposed")
        self._start_polling()
        await self.refresh(soft=False)
        return self._snapshot

    async def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self._generation += 1
        await self._cancel_polling()
        self._listeners.clear()
        logger.debug("sync controller for org %s disposed", self.org_id)

    async def __aenter__(self) -> "SyncController":
        try:
            await self.start()
        except BaseException:
            await self.dispose()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()

    # -------------------- 更新 --------------------

    async def refresh(self, soft: bool = True, *, fresh: bool = False) -> bool:
        """スナップショットを更新する。適用されたら True。

        同じフィルタの取得が実行中ならそれに合流し、新しい通信は発生させない。
        古いフィルタの取得が残っている場合は、それが終わる（結果は破棄される）のを待ってから開始する。
        fresh=True（書き込み直後の再同期）は、呼び出し前に始まった取得には合流せず、
        それが終わるのを待ってから取り直す。呼び出し後に始まった取得には合流する。
        """
        requested_after = self._fetch_seq
        while True:
            if self.disposed:
                return False
            task = self._inflight
            if task is None or task.done():
                break
            joinable = not fresh or self._inflight_seq > requested_after
            if self._inflight_generation == self._generation and joinable:
                logger.debug("refresh already in flight for org %s, joining it", self.org_id)
                return await self._join(task, soft)
            await asyncio.wait([task])

        generation = self._generation
        self._fetch_seq += 1
        task = asyncio.ensure_future(self._fetch(generation, self._status_filter, soft))
        self._inflight = task
        self._inflight_generation = generation
        self._inflight_seq = self._fetch_seq
        return await asyncio.shield(task)

    async def set_filter(self, status_filter: str) -> Snapshot:
        """ステータスフィルタを変更する。スナップショットを空にして hard refresh し、ポーリングを張り直す。"""
        if status_filter not in STATUS_FILTERS:
            raise ValidationError(f"unknown status filter: {status_filter!r}")
        if self.disposed or status_filter == self._status_filter:
            return self._snapshot

        await self._cancel_polling()
        self._generation += 1
        self._status_filter = status_filter
        self._refreshing = False
        self._loading = True
        self._publish(Snapshot(org_id=self.org_id, status_filter=status_filter, version=self._next_version()))
        try:
            await self.refresh(soft=False)
        finally:
            if not self.disposed:
                self._start_polling()
        return self._snapshot

    def apply_order(self, order: Order) -> bool:
        """サーバーが返した注文で該当エントリだけを差し替える（ステータス変更の書き戻し用）。"""
        if self.disposed or order.id not in self._snapshot.orders:
            return False
        self._publish(self._snapshot.replace_order(order, self._next_version()))
        return True

    def report_error(self, error: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception:
            logger.exception("error callback failed")

    # -------------------- 内部処理 --------------------

    async def _fetch(self, generation: int, status_filter: str, soft: bool) -> bool:
        if soft:
            self._refreshing = True
        else:
            self._loading = True
        logger.debug("fetching orders org=%s filter=%s soft=%s", self.org_id, status_filter, soft)
        try:
            orders = await self._source.list_orders(
                self.org_id, None if status_filter == "all" else status_filter
            )
        finally:
            if generation == self._generation:
                if soft:
                    self._refreshing = False
                else:
                    self._loading = False

        if self.disposed or generation != self._generation:
            logger.info(
                "discarding stale refresh for org %s (filter=%s, %d orders)",
                self.org_id, status_filter, len(orders),
            )
            return False

        self._publish(
            Snapshot.build(
                self.org_id,
                status_filter,
                orders,
                version=self._next_version(),
                fetched_at=datetime.now(timezone.utc),
            )
        )
        logger.debug("snapshot v%d for org %s: %d orders", self._snapshot.version, self.org_id, len(self._snapshot))
        return True

    async def _join(self, task: asyncio.Future, soft: bool) -> bool:
        if soft:
            return await asyncio.shield(task)
        # soft の取得に hard で合流した場合も、結果が届くまで loading を立てる
        generation = self._generation
        self._loading = True
        try:
            return await asyncio.shield(task)
        finally:
            if generation == self._generation:
                self._loading = False

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            self.tick += 1
            try:
                await self.refresh(soft=True)
            except TransportError as e:
                logger.warning("background refresh failed for org %s: %s", self.org_id, e)
                self.report_error(e)
            except Exception as e:
                logger.exception("background refresh crashed for org %s", self.org_id)
                self.report_error(e)

    def _start_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
        self._poll_task = asyncio.ensure_future(self._poll())

    async def _cancel_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        if task is not asyncio.current_task():
            await asyncio.wait([task])

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def _publish(self, snapshot: Snapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("snapshot listener failed")
