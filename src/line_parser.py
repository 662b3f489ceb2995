import re
from typing import Iterable, List

from order_models import Item, to_number


# 1: "<数量> <単位> <品名>"  2: "<数量> <品名>"  どちらにも合わなければ行全体を品名とする
_QTY_UNIT_LABEL = re.compile(r"^([0-9]+(?:\.[0-9]+)?)\s+([A-Za-z]+)\s+(.+)$")
_QTY_LABEL = re.compile(r"^([0-9]+(?:\.[0-9]+)?)\s+(.+)$")


def parse_line(line: str) -> Item:
    """1行を Item に変換する。line は strip 済みで空でないこと。

    "7up" のように数字で始まる品名は誤解析されるが、入力するのも確認するのも人間なので許容する。
    """
    m = _QTY_UNIT_LABEL.match(line)
    if m:
        return Item(qty=to_number(m.group(1)), unit=m.group(2), canonical=m.group(3))
    m = _QTY_LABEL.match(line)
    if m:
        return Item(qty=to_number(m.group(1)), canonical=m.group(2))
    return Item(qty=1, canonical=line)


def parse(text: str) -> List[Item]:
    """自由記述の修正テキスト（1行1品目）を Item のリストに変換する。"""
    items: List[Item] = []
    for raw in (text or "").split("\n"):
        line = raw.strip()
        if not line:
            continue
        items.append(parse_line(line))
    return items


def render_items(items: Iterable[Item]) -> str:
    """修正ダイアログの初期値用。parse の逆変換（1行1品目）。"""
    return "\n".join(i.render() for i in items)
