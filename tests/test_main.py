import sys
import os

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

import config_loader
import main
from order_models import Item, Org
from state_store import recent_audit
from fakes import FLOUR, FakeBackend, make_order


class CliBackend(FakeBackend):
    async def get_org(self):
        return Org(name="Glow Mart", plan="free", wa_phone_number_id="555")


@pytest.fixture
def backend(monkeypatch, tmp_path):
    fake = CliBackend([make_order("A", items=[FLOUR], customer_name="Asha"), make_order("B", "paid")])
    monkeypatch.setattr(main, "OrderApiClient", lambda **kwargs: fake)
    monkeypatch.setattr(config_loader, "load_dotenv", lambda: None)
    monkeypatch.setenv("ORDER_AUDIT_DB", str(tmp_path / "audit.db"))
    monkeypatch.setenv("ORDER_POLL_INTERVAL", "3600")
    return fake


def test_fix_command_submits_parsed_items(backend, capsys):
    code = main.main(["fix", "A", "--text", "3 kg flour\\n1 bread", "--reason", "called back"])

    assert code == 0
    assert backend.corrections[0].items == (Item(qty=3, unit="kg", canonical="flour"), Item(qty=1, canonical="bread"))
    assert backend.corrections[0].reason == "called back"
    assert "3 kg flour · 1 bread" in capsys.readouterr().out
    assert recent_audit()[0]["action"] == "correction"


def test_fix_command_with_empty_text_fails(backend, capsys):
    code = main.main(["fix", "A", "--text", "   "])

    assert code == 1
    assert backend.corrections == []
    assert "has no items" in capsys.readouterr().err


def test_status_command(backend, capsys):
    assert main.main(["status", "A", "shipped"]) == 0
    assert backend.status_calls == [("A", "shipped")]

    assert main.main(["status", "B", "paid"]) == 0
    assert backend.status_calls == [("A", "shipped")]
    assert "already paid" in capsys.readouterr().out


def test_draft_command(backend, capsys):
    assert main.main(["draft", "A"]) == 0
    assert capsys.readouterr().out.strip() == "2 kg flour"


def test_watch_once_filters_by_query(backend, capsys):
    assert main.main(["watch", "--once", "--query", "asha"]) == 0
    out = capsys.readouterr().out
    assert "Glow Mart" in out
    assert "Free plan limit" in out
    assert "[A]" in out
    assert "[B]" not in out


def test_audit_command_lists_recent_edits(backend, capsys):
    main.main(["status", "A", "paid"])
    capsys.readouterr()

    assert main.main(["audit", "--limit", "5"]) == 0
    out = capsys.readouterr().out
    assert "status:paid A applied" in out
