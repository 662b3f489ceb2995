import asyncio
import sys
import os
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from correction_coordinator import CorrectionCoordinator
from errors import ParseEmptyError, TransportError, ValidationError
from order_models import Item
from sync_controller import SyncController
from fakes import FLOUR, FakeBackend, make_order, settle


def _setup(orders=None, audit=None, on_error=None):
    backend = FakeBackend(orders if orders is not None else [make_order("A", items=[FLOUR], raw_text="2kg flour")])
    controller = SyncController(backend, "org1", poll_interval=3600, on_error=on_error)
    coordinator = CorrectionCoordinator(backend, controller, audit=audit)
    return backend, controller, coordinator


def test_end_to_end_correction_submits_items_and_resyncs():
    async def scenario():
        backend, controller, coordinator = _setup()
        await controller.refresh(soft=False)
        assert controller.snapshot.get("A").items == (FLOUR,)
        calls_before = len(backend.list_calls)

        updated = await coordinator.submit("A", "3 kg flour\n1 bread")
        return backend, controller, updated, calls_before

    backend, controller, updated, calls_before = asyncio.run(scenario())

    assert len(backend.corrections) == 1
    correction = backend.corrections[0]
    assert correction.order_id == "A"
    assert correction.items == (Item(qty=3, unit="kg", canonical="flour"), Item(qty=1, canonical="bread"))
    assert correction.reason == "human_fix"
    assert correction.to_payload() == {
        "human_fixed": {
            "items": [{"qty": 3, "unit": "kg", "canonical": "flour"}, {"qty": 1, "canonical": "bread"}],
            "reason": "human_fix",
        }
    }
    # 修正後に soft refresh が1回走り、サーバーの内容がスナップショットに反映される
    assert len(backend.list_calls) == calls_before + 1
    assert controller.snapshot.get("A").items == correction.items
    assert controller.snapshot.get("A").parse_reason == "human_fix"
    assert updated.items == correction.items


def test_custom_reason_is_sent():
    async def scenario():
        backend, controller, coordinator = _setup()
        await controller.refresh(soft=False)
        await coordinator.submit("A", "1 bread", reason="customer called")
        return backend

    backend = asyncio.run(scenario())
    assert backend.corrections[0].reason == "customer called"


def test_empty_correction_rejected_without_network():
    async def scenario():
        backend, controller, coordinator = _setup()
        await controller.refresh(soft=False)
        calls_before = len(backend.list_calls)
        with pytest.raises(ParseEmptyError) as exc_info:
            await coordinator.submit("A", "  \n  ")
        return backend, calls_before, exc_info.value

    backend, calls_before, error = asyncio.run(scenario())
    assert isinstance(error, ValidationError)
    assert backend.corrections == []
    assert len(backend.list_calls) == calls_before


def test_sink_failure_propagates_and_leaves_snapshot():
    audit = MagicMock()

    async def scenario():
        backend, controller, coordinator = _setup(audit=audit)
        await controller.refresh(soft=False)
        before = controller.snapshot
        backend.fail_sink = True
        with pytest.raises(TransportError):
            await coordinator.submit("A", "3 kg flour")
        return controller, before

    controller, before = asyncio.run(scenario())
    assert controller.snapshot is before
    audit.assert_called_once()
    args, kwargs = audit.call_args
    assert args[:5] == ("ERROR", "human", "correction", ["A"], "failed")
    assert "unavailable" in kwargs["error"]


def test_resync_failure_is_reported_not_raised():
    errors = []

    async def scenario():
        backend, controller, coordinator = _setup(on_error=errors.append)
        await controller.refresh(soft=False)
        backend.fail_list = True
        return await coordinator.submit("A", "1 bread")

    updated = asyncio.run(scenario())
    assert updated.items == (Item(qty=1, canonical="bread"),)
    assert len(errors) == 1
    assert isinstance(errors[0], TransportError)


def test_same_status_makes_no_sink_call():
    async def scenario():
        backend, controller, coordinator = _setup()
        await controller.refresh(soft=False)
        calls_before = len(backend.list_calls)
        result = await coordinator.set_status("A", "pending")
        return backend, result, calls_before

    backend, result, calls_before = asyncio.run(scenario())
    assert result is None
    assert backend.status_calls == []
    assert len(backend.list_calls) == calls_before


def test_status_change_calls_sink_once_and_writes_back():
    audit = MagicMock()

    async def scenario():
        backend, controller, coordinator = _setup(audit=audit)
        await controller.refresh(soft=False)
        seen = []
        controller.subscribe(lambda s: seen.append(s.get("A").status))
        await coordinator.set_status("A", "shipped")
        return backend, controller, seen

    backend, controller, seen = asyncio.run(scenario())
    assert backend.status_calls == [("A", "shipped")]
    assert controller.snapshot.get("A").status == "shipped"
    # 書き戻し -> 再同期の順でスナップショットが届く
    assert seen == ["shipped", "shipped"]
    audit.assert_called_once_with(
        "INFO", "human", "status:shipped", ["A"], "applied", error=None, detail={"from": "pending"}
    )


class SlowListBackend(FakeBackend):
    """一覧の中身は呼び出し時点のもの。gate が解放されるまで返さない"""

    gate = None

    async def list_orders(self, org_id, status=None):
        orders = await super().list_orders(org_id, status)
        if self.gate is not None:
            await self.gate
        return orders


def test_status_change_during_poll_is_not_reverted_by_older_fetch():
    async def scenario():
        backend = SlowListBackend([make_order("A")])
        controller = SyncController(backend, "org1", poll_interval=3600)
        coordinator = CorrectionCoordinator(backend, controller)
        await controller.refresh(soft=False)

        backend.gate = asyncio.get_running_loop().create_future()
        poll = asyncio.ensure_future(controller.refresh(soft=True))
        await settle()
        change = asyncio.ensure_future(coordinator.set_status("A", "paid"))
        await settle()
        gate, backend.gate = backend.gate, None
        gate.set_result(None)
        await asyncio.gather(poll, change)
        return backend, controller

    backend, controller = asyncio.run(scenario())
    assert backend.status_calls == [("A", "paid")]
    assert len(backend.list_calls) == 3
    assert controller.snapshot.get("A").status == "paid"


def test_status_failure_leaves_snapshot_untouched():
    async def scenario():
        backend, controller, coordinator = _setup()
        await controller.refresh(soft=False)
        backend.fail_sink = True
        with pytest.raises(TransportError):
            await coordinator.set_status("A", "paid")
        return controller

    controller = asyncio.run(scenario())
    assert controller.snapshot.get("A").status == "pending"


def test_status_for_unknown_order_or_delivered_is_rejected():
    async def scenario():
        backend, controller, coordinator = _setup()
        await controller.refresh(soft=False)
        with pytest.raises(ValidationError):
            await coordinator.set_status("missing", "paid")
        with pytest.raises(ValidationError):
            await coordinator.set_status("A", "delivered")
        return backend

    backend = asyncio.run(scenario())
    assert backend.status_calls == []


def test_draft_text_renders_current_items():
    async def scenario():
        _, controller, coordinator = _setup(
            [make_order("A", items=[FLOUR, Item(qty=1, name="bread")])]
        )
        await controller.refresh(soft=False)
        return coordinator.draft_text("A")

    assert asyncio.run(scenario()) == "2 kg flour\n1 bread"
