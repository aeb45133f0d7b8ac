# collectsync/services/availability_calc.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Protocol

from collectsync.services.collect_types import StockKey


class _HasStockQty(Protocol):
    stock_key: StockKey
    qty: float


def _pos(v: Optional[float]) -> float:
    try:
        x = float(v or 0)
    except (TypeError, ValueError):
        return 0.0
    return x if x > 0 else 0.0


def reconcile_collected(aggregate: Optional[float], event_qtys: Iterable[float]) -> float:
    """
    行已完成量的两个来源：服务端聚合字段 / 已保存事件之和。

    两者各自独立维护（可能只写了一半），取较大者，绝不相加。
    """
    total = sum(_pos(q) for q in event_qtys)
    return max(_pos(aggregate), total)


def picked_by_key(*groups: Iterable[_HasStockQty]) -> Dict[StockKey, float]:
    """Σ qty，按 StockKey 汇总（saved ∪ draft 各传一组）。"""
    out: Dict[StockKey, float] = {}
    for group in groups:
        for row in group:
            q = _pos(row.qty)
            if q <= 0:
                continue
            out[row.stock_key] = out.get(row.stock_key, 0.0) + q
    return out


def available_qty(on_hand: float, picked: float) -> float:
    return max(_pos(on_hand) - _pos(picked), 0.0)


def line_remaining_qty(open_qty: float, collected: float, draft_qty: float) -> float:
    return max(_pos(open_qty) - _pos(collected) - _pos(draft_qty), 0.0)


@dataclass(frozen=True)
class AvailabilityView:
    """
    某一时刻的可用量视图（纯值对象，不做缓存）。

    口径：
      picked(k)        = Σ saved(k) + Σ draft(k)
      available(k)     = max(on_hand(k) - picked(k), 0)
      line_remaining   = max(open - collected - Σ draft(line), 0)
      max_addable(k)   = min(available(k), line_remaining)
    """

    on_hand: Mapping[StockKey, float]
    picked: Mapping[StockKey, float]
    open_qty: float
    collected: float
    draft_total: float

    def available(self, key: StockKey) -> float:
        return available_qty(self.on_hand.get(key, 0.0), self.picked.get(key, 0.0))

    def line_remaining(self) -> float:
        return line_remaining_qty(self.open_qty, self.collected, self.draft_total)

    def max_addable(self, key: StockKey) -> float:
        return min(self.available(key), self.line_remaining())

    def limit_for(self, key: StockKey, own_qty: float) -> float:
        """把某一草稿行自身的量剔除后，该行最多能占用多少（编辑 / 提交前复核用）。"""
        own = _pos(own_qty)
        avail = available_qty(
            self.on_hand.get(key, 0.0), self.picked.get(key, 0.0) - own
        )
        remaining = line_remaining_qty(self.open_qty, self.collected, self.draft_total - own)
        return min(avail, remaining)


def build_view(
    *,
    open_qty: float,
    collected: float,
    on_hand: Mapping[StockKey, float],
    saved: Iterable[_HasStockQty],
    drafts: Iterable[_HasStockQty],
) -> AvailabilityView:
    """saved / draft 两个不相交集合在这里合并，其余地方只读视图。"""
    draft_list = list(drafts)
    return AvailabilityView(
        on_hand=dict(on_hand),
        picked=picked_by_key(saved, draft_list),
        open_qty=_pos(open_qty),
        collected=_pos(collected),
        draft_total=sum(_pos(r.qty) for r in draft_list),
    )


# ----------------------------------------------------------------------
# bin-to-bin
# ----------------------------------------------------------------------
def moved_qty(aggregate: Optional[float], detail_qtys: Iterable[float]) -> float:
    return reconcile_collected(aggregate, detail_qtys)


def move_remaining(planned_qty: float, moved: float) -> float:
    return max(_pos(planned_qty) - _pos(moved), 0.0)


def batch_max_addable(
    *,
    batch_on_hand: float,
    picked_for_batch: float,
    remaining: float,
    draft_total: float,
) -> float:
    by_batch = max(_pos(batch_on_hand) - _pos(picked_for_batch), 0.0)
    by_line = max(_pos(remaining) - _pos(draft_total), 0.0)
    return min(by_batch, by_line)
