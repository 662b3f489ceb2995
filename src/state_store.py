import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional


def _get_db_path() -> str:
    """環境変数から毎回DBパスを取得（テストでの monkeypatch に追従するため）。"""
    return os.getenv("ORDER_AUDIT_DB", "order_audit.db")


@contextmanager
def _conn():
    con = sqlite3.connect(_get_db_path())
    con.execute("PRAGMA journal_mode=WAL;")
    try:
        yield con
        con.commit()
    finally:
        con.close()


def init_db():
    with _conn() as con:
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
              ts TEXT,
              level TEXT,
              actor TEXT,
              action TEXT,
              target_ids TEXT,
              result TEXT,
              error TEXT,
              detail_json TEXT
            );
            """
        )


def write_audit(
    level: str,
    actor: str,
    action: str,
    target_ids: list,
    result: str,
    error: Optional[str] = None,
    detail: Optional[Dict] = None,
):
    """人手による修正・ステータス変更の記録。注文データの保存先ではない。"""
    init_db()
    with _conn() as con:
        con.execute(
            "INSERT INTO audit_log(ts, level, actor, action, target_ids, result, error, detail_json) VALUES (?,?,?,?,?,?,?,?)",
            (
                datetime.now(timezone.utc).isoformat(),
                level,
                actor,
                action,
                json.dumps(target_ids),
                result,
                error,
                json.dumps(detail, ensure_ascii=False) if detail is not None else None,
            ),
        )


def recent_audit(limit: int = 20) -> List[Dict]:
    init_db()
    with _conn() as con:
        cur = con.execute(
            "SELECT ts, level, actor, action, target_ids, result, error, detail_json FROM audit_log ORDER BY rowid DESC LIMIT ?",
            (limit,),
        )
        rows = cur.fetchall()
    out: List[Dict] = []
    for ts, level, actor, action, target_ids, result, error, detail_json in rows:
        out.append(
            {
                "ts": ts,
                "level": level,
                "actor": actor,
                "action": action,
                "target_ids": json.loads(target_ids or "[]"),
                "result": result,
                "error": error,
                "detail": json.loads(detail_json) if detail_json else None,
            }
        )
    return out
