from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union

from .errors import ConservationViolation, InvalidQuantity
from .picking import InventoryRecord
from .units import UnitQuantity, as_count, decompose, open_units, subtract, to_pieces, zero_like


FULL = "full"

TransferRequest = Union[str, Mapping[str, Any], UnitQuantity]


@dataclass(frozen=True)
class TransferSplitResult:
    source_remainder: UnitQuantity
    destination_allocation: UnitQuantity


def _is_full(request: Any) -> bool:
    if isinstance(request, str):
        if request.strip().lower() != FULL:
            raise InvalidQuantity(f"unknown transfer mode: {request!r}")
        return True
    if isinstance(request, Mapping) and "mode" in request:
        mode = str(request.get("mode") or "").strip().lower()
        if mode == FULL:
            return True
        if mode != "partial":
            raise InvalidQuantity(f"unknown transfer mode: {request.get('mode')!r}")
    return False


def _requested_tiers(request: Any) -> tuple[int, int, int]:
    if isinstance(request, UnitQuantity):
        return request.tiers()
    if isinstance(request, Mapping):
        return (
            as_count(request.get("level1") or 0, "level1"),
            as_count(request.get("level2") or 0, "level2"),
            as_count(request.get("level3") or 0, "level3"),
        )
    raise InvalidQuantity(f"unsupported transfer request: {request!r}")


def check_conservation(original: UnitQuantity, result: TransferSplitResult) -> None:
    before = to_pieces(original)
    after = to_pieces(result.source_remainder) + to_pieces(result.destination_allocation)
    if before != after:
        raise ConservationViolation(
            f"split changed stock: {before} pieces before, "
            f"{to_pieces(result.source_remainder)} + {to_pieces(result.destination_allocation)} after"
        )


def split_transfer(record: InventoryRecord, request: TransferRequest) -> TransferSplitResult:
    """
    Split one inventory record into what stays at the source and what moves.

    - FULL (`"full"` or `{"mode": "full"}`) moves every tier; the source is left empty.
    - Explicit tiers are clamped to what the source holds, never rejected for being too large.
    - Negative or fractional tiers raise InvalidQuantity.
    """
    src = record.quantity
    if _is_full(request):
        result = TransferSplitResult(source_remainder=zero_like(src), destination_allocation=src)
    else:
        r1, r2, r3 = _requested_tiers(request)
        moved = src.with_tiers(min(r1, src.level1), min(r2, src.level2), min(r3, src.level3))
        result = TransferSplitResult(source_remainder=subtract(src, moved), destination_allocation=moved)
    check_conservation(src, result)
    return result


def split_pieces(record: InventoryRecord, pieces: int) -> TransferSplitResult:
    """
    Move `pieces` base units out of `record` using the largest-unit-first breakdown.
    Packs are opened at the source only when the amount cannot be made from whole units.
    """
    p = as_count(pieces, "pieces")
    total = to_pieces(record.quantity)
    if p > total:
        raise InvalidQuantity(f"cannot move {p} pieces from {record.location}: only {total} available")
    if p == total:
        return split_transfer(record, FULL)
    shaped = open_units(record.quantity, p)
    moved = decompose(shaped, p)
    result = TransferSplitResult(source_remainder=subtract(shaped, moved), destination_allocation=moved)
    check_conservation(record.quantity, result)
    return result
