# collectsync/services/batch_code.py
from __future__ import annotations

from typing import List, Optional

# 全局视为 “无批次” 的字符串（大小写不敏感）
_NONE_TOKEN = "none"


def normalize_optional_batch_code(raw: Optional[object]) -> Optional[str]:
    """
    内部统一口径（StockKey / CompositeKey 构造时使用）：
      - None -> None
      - "" / "   " -> None
      - "None"（任意大小写）-> None
      - 其它：str 后 strip 返回
    """
    if raw is None:
        return None
    s = str(raw).strip()
    if not s:
        return None
    if s.lower() == _NONE_TOKEN:
        return None
    return s


def undo_batch_variants(batch_number: Optional[str], *, batch_managed: bool) -> List[Optional[str]]:
    """
    撤销请求的批次线上编码候选（按顺序逐个尝试，直到上游接受）。

    上游对 “无批次” 的存储并不统一：有的行存 ""，有的行存 NULL。
    所以：
      - 批次商品：[bn]，若 bn 为空则再补一个 None
      - 非批次商品：["", None]
    结果去重且保持顺序。
    """
    bn = normalize_optional_batch_code(batch_number)
    if batch_managed and bn:
        candidates: List[Optional[str]] = [bn]
    elif batch_managed:
        candidates = ["", None]
    else:
        candidates = ["", None] if bn is None else [bn]

    out: List[Optional[str]] = []
    for c in candidates:
        if c not in out:
            out.append(c)
    return out
