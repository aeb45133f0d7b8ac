from dataclasses import dataclass

import pytest

from collectsync.services.availability_calc import (
    batch_max_addable,
    build_view,
    line_remaining_qty,
    move_remaining,
    reconcile_collected,
)
from collectsync.services.collect_types import StockKey

K1 = StockKey("A", "W1", 101, "B1")
K2 = StockKey("A", "W1", 102, "B2")


@dataclass
class _Row:
    stock_key: StockKey
    qty: float


def test_collected_takes_max_never_sum():
    assert reconcile_collected(5, [2, 2]) == 5
    assert reconcile_collected(3, [2, 2]) == 4
    assert reconcile_collected(None, []) == 0
    assert reconcile_collected(-1, [-3]) == 0


def test_view_combines_saved_and_drafts():
    view = build_view(
        open_qty=20,
        collected=4,
        on_hand={K1: 10, K2: 5},
        saved=[_Row(K1, 4)],
        drafts=[_Row(K1, 3), _Row(K2, 1)],
    )
    assert view.available(K1) == pytest.approx(3)
    assert view.available(K2) == pytest.approx(4)
    assert view.line_remaining() == pytest.approx(12)
    assert view.max_addable(K1) == pytest.approx(3)


def test_limit_for_excludes_the_row_itself():
    view = build_view(
        open_qty=5,
        collected=0,
        on_hand={K1: 10},
        saved=[],
        drafts=[_Row(K1, 4)],
    )
    assert view.max_addable(K1) == pytest.approx(1)
    assert view.limit_for(K1, 4) == pytest.approx(5)


def test_unknown_key_has_nothing_available():
    view = build_view(open_qty=5, collected=0, on_hand={}, saved=[], drafts=[])
    assert view.available(K1) == 0
    assert view.max_addable(K1) == 0


def test_remaining_never_negative():
    assert line_remaining_qty(5, 4, 3) == 0
    assert move_remaining(10, 12) == 0


def test_batch_max_addable_is_min_of_batch_and_line():
    assert batch_max_addable(batch_on_hand=12, picked_for_batch=10, remaining=30, draft_total=10) == 2
    assert batch_max_addable(batch_on_hand=25, picked_for_batch=0, remaining=30, draft_total=10) == 20
