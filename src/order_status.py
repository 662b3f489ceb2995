from typing import Optional

from errors import ValidationError
from order_models import ORDER_STATUSES

# クライアントから設定できるステータス。delivered はサーバー側でのみ到達する終端状態
CLIENT_STATUSES = ("pending", "shipped", "paid")
SERVER_ONLY_STATUSES = ("delivered",)


def normalize_status(status: str) -> str:
    value = (status or "").strip().lower()
    if value not in ORDER_STATUSES:
        raise ValidationError(f"unknown order status: {status!r}")
    return value


def next_status(current: str, target: str) -> Optional[str]:
    """ステータス変更の可否を判定する。

    - target が現在値と同じなら None（何もしない。API も呼ばない）
    - それ以外のクライアント設定可能なステータスは無条件で受け付ける。遷移の妥当性はサーバーが判断する
    - delivered や未知の値は ValidationError
    """
    target = normalize_status(target)
    if target in SERVER_ONLY_STATUSES:
        raise ValidationError(f"status {target!r} can only be set by the server")
    if target == (current or "").strip().lower():
        return None
    return target
