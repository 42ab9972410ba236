import pytest

from wms.app.errors import ConservationViolation, InvalidQuantity
from wms.app.picking import InventoryRecord
from wms.app.transfers import (
    FULL,
    TransferSplitResult,
    check_conservation,
    split_pieces,
    split_transfer,
)
from wms.app.units import UnitQuantity


def _rec(quantity):
    return InventoryRecord(
        id="r1",
        sku="L3-8G",
        product_name="Bolt",
        location="A1/1",
        zone="A",
        created_at=None,
        warehouse_id=None,
        quantity=quantity,
    )


def test_partial_pieces_split_largest_unit_first():
    rec = _rec(UnitQuantity(level1=10, level2=0, level3=5, rate1=12))
    out = split_pieces(rec, 50)
    assert out.destination_allocation.tiers() == (4, 0, 2)
    assert out.source_remainder.tiers() == (6, 0, 3)
    assert out.destination_allocation.pieces + out.source_remainder.pieces == 125


def test_full_move_empties_source():
    q = UnitQuantity(level1=3, level2=2, level3=1, rate1=20, rate2=5)
    for request in (FULL, "FULL", {"mode": "full"}):
        out = split_transfer(_rec(q), request)
        assert out.destination_allocation == q
        assert out.source_remainder.is_zero()


def test_split_pieces_equal_to_total_is_full_move():
    q = UnitQuantity(level1=1, level3=3, rate1=6)
    out = split_pieces(_rec(q), 9)
    assert out.destination_allocation == q
    assert out.source_remainder.is_zero()


def test_explicit_tiers_are_clamped_to_source():
    q = UnitQuantity(level1=2, level2=1, level3=4, rate1=10, rate2=5)
    out = split_transfer(_rec(q), {"level1": 5, "level2": 1, "level3": 2})
    assert out.destination_allocation.tiers() == (2, 1, 2)
    assert out.source_remainder.tiers() == (0, 0, 2)


def test_explicit_tiers_accept_unit_quantity_and_partial_mode():
    q = UnitQuantity(level1=2, level3=4, rate1=10)
    a = split_transfer(_rec(q), q.with_tiers(1, 0, 0))
    b = split_transfer(_rec(q), {"mode": "partial", "level1": 1})
    assert a == b
    assert a.source_remainder.tiers() == (1, 0, 4)


def test_split_pieces_opens_packs_at_source():
    q = UnitQuantity(level1=1, level2=0, level3=5, rate1=10)
    out = split_pieces(_rec(q), 7)
    assert out.destination_allocation.tiers() == (0, 0, 7)
    assert out.source_remainder.tiers() == (0, 0, 8)


@pytest.mark.parametrize(
    "request_",
    [{"level1": -1}, {"level3": "1.5"}, "half", {"mode": "most"}, 42],
)
def test_invalid_requests_raise(request_):
    with pytest.raises(InvalidQuantity):
        split_transfer(_rec(UnitQuantity(level3=10)), request_)


def test_split_pieces_rejects_more_than_stocked():
    with pytest.raises(InvalidQuantity):
        split_pieces(_rec(UnitQuantity(level3=10)), 11)


def test_conservation_check_detects_lost_stock():
    original = UnitQuantity(level3=10)
    bad = TransferSplitResult(source_remainder=UnitQuantity(level3=3), destination_allocation=UnitQuantity(level3=6))
    with pytest.raises(ConservationViolation):
        check_conservation(original, bad)
