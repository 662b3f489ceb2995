import os
from typing import Optional

import yaml
from dotenv import load_dotenv

from errors import ValidationError


DEFAULTS = {
    "api": {"base_url": "http://localhost:8787", "token": None, "timeout": 15},
    "org": {"id": None},
    "sync": {"poll_interval": 12, "status_filter": "all"},
    "corrections": {"default_reason": "human_fix"},
    "audit": {"db_path": "order_audit.db"},
}

# 環境変数 -> (セクション, キー, 型)
ENV_OVERRIDES = {
    "ORDER_API_BASE": ("api", "base_url", str),
    "ORDER_API_TOKEN": ("api", "token", str),
    "ORDER_API_TIMEOUT": ("api", "timeout", float),
    "ORDER_ORG_ID": ("org", "id", str),
    "ORDER_POLL_INTERVAL": ("sync", "poll_interval", float),
    "ORDER_STATUS_FILTER": ("sync", "status_filter", str),
    "ORDER_AUDIT_DB": ("audit", "db_path", str),
}


def _default_path() -> str:
    return os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "order_sync.yml")


def load_sync_config(path: Optional[str] = None) -> dict:
    """設定を読み込む。優先順位: 環境変数(.env 含む) > YAML > DEFAULTS"""
    load_dotenv()
    try:
        with open(path or _default_path(), "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        cfg = {}

    # shallow merge defaults
    merged = {k: dict(v) for k, v in DEFAULTS.items()}
    for k, v in (cfg or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v

    for env_name, (section, key, cast) in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        try:
            merged[section][key] = cast(raw)
        except ValueError:
            raise ValidationError(f"{env_name} must be a {cast.__name__}, got {raw!r}")

    interval = merged["sync"].get("poll_interval")
    if not isinstance(interval, (int, float)) or interval <= 0:
        raise ValidationError(f"sync.poll_interval must be a positive number, got {interval!r}")
    return merged
