from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Sequence

from .errors import InvalidQuantity


DEFAULT_UNIT_NAMES = ("carton", "box", "piece")


def as_count(v: Any, label: str) -> int:
    """
    Coerce a tier count / rate to a non-negative int.
    Accepts ints, integral Decimals/floats and numeric strings (DB numeric columns).
    """
    if isinstance(v, bool):
        raise InvalidQuantity(f"{label} must be an integer (got {v!r})")
    if isinstance(v, int):
        n = v
    else:
        try:
            d = Decimal(str(v).strip())
        except (InvalidOperation, ValueError):
            raise InvalidQuantity(f"{label} must be an integer (got {v!r})")
        if not d.is_finite() or d != d.to_integral_value():
            raise InvalidQuantity(f"{label} must be an integer (got {v!r})")
        n = int(d)
    if n < 0:
        raise InvalidQuantity(f"{label} must be >= 0 (got {n})")
    return n


@dataclass(frozen=True)
class UnitQuantity:
    """
    Three-tier quantity: level1 (largest, e.g. carton), level2 (e.g. box), level3 (base piece).
    rate1/rate2 are pieces per level1/level2 unit and never change within one operation.
    """

    level1: int = 0
    level2: int = 0
    level3: int = 0
    rate1: int = 1
    rate2: int = 1

    def __post_init__(self):
        for name in ("level1", "level2", "level3"):
            object.__setattr__(self, name, as_count(getattr(self, name), name))
        for name in ("rate1", "rate2"):
            r = as_count(getattr(self, name), name)
            if r < 1:
                raise InvalidQuantity(f"{name} must be >= 1 (got {r})")
            object.__setattr__(self, name, r)

    @property
    def pieces(self) -> int:
        return to_pieces(self)

    def tiers(self) -> tuple[int, int, int]:
        return (self.level1, self.level2, self.level3)

    def with_tiers(self, level1: int, level2: int, level3: int) -> "UnitQuantity":
        return UnitQuantity(level1=level1, level2=level2, level3=level3, rate1=self.rate1, rate2=self.rate2)

    def is_zero(self) -> bool:
        return self.level1 == 0 and self.level2 == 0 and self.level3 == 0


def to_pieces(q: UnitQuantity) -> int:
    return q.level1 * q.rate1 + q.level2 * q.rate2 + q.level3


def zero_like(q: UnitQuantity) -> UnitQuantity:
    return q.with_tiers(0, 0, 0)


def subtract(a: UnitQuantity, b: UnitQuantity) -> UnitQuantity:
    # Component-wise; rates come from `a`.
    return a.with_tiers(a.level1 - b.level1, a.level2 - b.level2, a.level3 - b.level3)


def add(a: UnitQuantity, b: UnitQuantity) -> UnitQuantity:
    return a.with_tiers(a.level1 + b.level1, a.level2 + b.level2, a.level3 + b.level3)


def _compose(available: UnitQuantity, pieces: int) -> Optional[tuple[int, int, int]]:
    # Largest-unit-first: max level1, then max level2, rest as level3.
    # Backs off level1 only when the remainder cannot be covered by the smaller tiers.
    a1, a2, a3 = available.tiers()
    r1, r2 = available.rate1, available.rate2
    l1 = min(a1, pieces // r1)
    while l1 >= 0:
        rem = pieces - l1 * r1
        l2 = min(a2, rem // r2)
        l3 = rem - l2 * r2
        if l3 <= a3:
            return (l1, l2, l3)
        l1 -= 1
    return None


def decompose(available: UnitQuantity, pieces: Any) -> UnitQuantity:
    """
    Break `pieces` into whole tier units drawn from `available`.

    Rules:
    - take as many level1 units as fit (bounded by availability), then level2, then level3
    - every component stays <= the matching available tier
    - the result totals exactly `pieces`
    Raises InvalidQuantity when pieces is negative, exceeds the available total,
    or cannot be made from whole units (see `open_units`).
    """
    p = as_count(pieces, "pieces")
    total = to_pieces(available)
    if p > total:
        raise InvalidQuantity(f"pieces {p} exceeds available {total}")
    parts = _compose(available, p)
    if parts is None:
        raise InvalidQuantity(f"{p} pieces cannot be made from whole units of {format_units(available)}")
    return available.with_tiers(*parts)


def can_decompose(available: UnitQuantity, pieces: int) -> bool:
    if pieces < 0 or pieces > to_pieces(available):
        return False
    return _compose(available, pieces) is not None


def open_units(available: UnitQuantity, pieces: int) -> UnitQuantity:
    """
    Return `available` with the fewest packs opened into base pieces so that `pieces`
    can be decomposed. Level2 packs are opened before level1 packs.
    The total pieces never change.
    """
    if pieces < 0 or pieces > to_pieces(available):
        raise InvalidQuantity(f"pieces {pieces} outside 0..{to_pieces(available)}")
    cur = available
    while not can_decompose(cur, pieces):
        if cur.level2 > 0:
            cur = cur.with_tiers(cur.level1, cur.level2 - 1, cur.level3 + cur.rate2)
        elif cur.level1 > 0:
            cur = cur.with_tiers(cur.level1 - 1, cur.level2, cur.level3 + cur.rate1)
        else:
            # All stock is in base pieces; any 0..total amount is composable.
            break
    return cur


def unit_quantity_from_row(row: Mapping[str, Any], prefix: str = "unit_") -> UnitQuantity:
    """
    Single construction point for rows read from `inventory_items`.

    Defaults:
    - NULL/missing tier quantity -> 0
    - NULL/missing/0 rate -> 1, only when that tier holds no stock
    - non-zero tier with no usable rate, negative or fractional values -> InvalidQuantity
    """
    q1 = row.get(f"{prefix}level1_quantity")
    q2 = row.get(f"{prefix}level2_quantity")
    q3 = row.get(f"{prefix}level3_quantity")
    level1 = as_count(q1 if q1 is not None else 0, "level1")
    level2 = as_count(q2 if q2 is not None else 0, "level2")
    level3 = as_count(q3 if q3 is not None else 0, "level3")

    def _rate(raw: Any, qty: int, label: str) -> int:
        r = as_count(raw if raw is not None else 0, label)
        if r >= 1:
            return r
        if qty > 0:
            raise InvalidQuantity(f"{label} is missing but {qty} units are stocked")
        return 1

    rate1 = _rate(row.get(f"{prefix}level1_rate"), level1, "rate1")
    rate2 = _rate(row.get(f"{prefix}level2_rate"), level2, "rate2")
    return UnitQuantity(level1=level1, level2=level2, level3=level3, rate1=rate1, rate2=rate2)


def unit_quantity_to_row(q: UnitQuantity, prefix: str = "unit_") -> dict:
    return {
        f"{prefix}level1_quantity": q.level1,
        f"{prefix}level2_quantity": q.level2,
        f"{prefix}level3_quantity": q.level3,
        f"{prefix}level1_rate": q.rate1,
        f"{prefix}level2_rate": q.rate2,
    }


def format_units(q: UnitQuantity, names: Optional[Sequence[Optional[str]]] = None) -> str:
    # "10 carton + 2 box + 5 piece"; empty quantity renders as "0".
    n1, n2, n3 = (list(names or []) + [None, None, None])[:3]
    parts = []
    if q.level1 > 0:
        parts.append(f"{q.level1} {n1 or DEFAULT_UNIT_NAMES[0]}")
    if q.level2 > 0:
        parts.append(f"{q.level2} {n2 or DEFAULT_UNIT_NAMES[1]}")
    if q.level3 > 0:
        parts.append(f"{q.level3} {n3 or DEFAULT_UNIT_NAMES[2]}")
    return " + ".join(parts) if parts else "0"
