from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Literal, Mapping, Optional, Sequence

from .errors import InvalidQuantity
from .locations import location_sort_key, normalize_location, zone_for_location
from .units import UnitQuantity, as_count, decompose, open_units, to_pieces, unit_quantity_from_row


PlanStatus = Literal["sufficient", "insufficient", "not_found"]

# Pack codes like L3-8GX6 mean "6 x L3-8G".
_SKU_MULTIPLIER = re.compile(r"^(.+?)X(\d+)$")


def norm_sku(v: Optional[str]) -> str:
    return (v or "").strip().upper()


def parse_sku_multiplier(code: Optional[str]) -> tuple[str, int]:
    """Returns (base_sku, multiplier); codes without an `X<n>` suffix have multiplier 1."""
    c = norm_sku(code)
    m = _SKU_MULTIPLIER.match(c)
    if not m:
        return c, 1
    base, n = m.group(1), int(m.group(2))
    if n < 1 or not base.strip("-_ "):
        return c, 1
    return base, n


@dataclass(frozen=True)
class ProductNeed:
    product_code: str
    product_name: str
    needed_pieces: int
    unit_code: Optional[str] = None
    base_sku: Optional[str] = None
    multiplier: int = 1
    original_quantity: Optional[int] = None

    def __post_init__(self):
        n = as_count(self.needed_pieces, "needed_pieces")
        if n <= 0:
            raise InvalidQuantity(f"{self.product_code}: needed_pieces must be > 0")
        object.__setattr__(self, "needed_pieces", n)
        object.__setattr__(self, "product_code", norm_sku(self.product_code))
        object.__setattr__(self, "base_sku", norm_sku(self.base_sku) or self.product_code)
        if self.original_quantity is None:
            object.__setattr__(self, "original_quantity", n)


@dataclass(frozen=True)
class InventoryRecord:
    id: str
    sku: str
    product_name: str
    location: str
    zone: str
    created_at: Optional[datetime]
    warehouse_id: Optional[str]
    quantity: UnitQuantity
    lot: Optional[str] = None
    manufacture_date: Optional[date] = None
    unit_names: tuple = ()

    def __post_init__(self):
        object.__setattr__(self, "sku", norm_sku(self.sku))


@dataclass(frozen=True)
class AllocationLine:
    record_id: str
    location: str
    zone: str
    available: int
    to_pick: int
    remaining: int
    pick_units: UnitQuantity
    opens_units: bool = False
    lot: Optional[str] = None
    manufacture_date: Optional[date] = None


@dataclass(frozen=True)
class ProductAllocationPlan:
    product_code: str
    product_name: str
    base_sku: str
    multiplier: int
    total_needed: int
    total_available: int
    total_picked: int
    percentage: int
    status: PlanStatus
    lines: tuple = ()


@dataclass(frozen=True)
class RouteStep:
    sequence: int
    location: str
    normalized_location: str
    zone: str
    product_code: str
    product_name: str
    quantity: int
    record_id: str
    pick_units: UnitQuantity


@dataclass(frozen=True)
class PickingSummary:
    total_products: int
    sufficient_products: int
    insufficient_products: int
    not_found_products: int
    total_locations: int


@dataclass(frozen=True)
class PickingResult:
    plans: tuple
    route: tuple
    summary: PickingSummary


# ---------------------------------------------------------------------------
# Boundary constructors (raw rows -> core types)
# ---------------------------------------------------------------------------


def _as_datetime(v: Any) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        dt = v
    elif isinstance(v, date):
        dt = datetime(v.year, v.month, v.day)
    else:
        s = str(v).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            raise ValueError(f"invalid timestamp: {v!r}")
    # Naive timestamps are treated as UTC so mixed rows stay comparable.
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _as_date(v: Any) -> Optional[date]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    try:
        return date.fromisoformat(str(v).strip()[:10])
    except ValueError:
        raise ValueError(f"invalid date: {v!r}")


def record_from_row(row: Mapping[str, Any]) -> InventoryRecord:
    """
    Build an InventoryRecord from an `inventory_items` row (or an equivalent API payload).
    Quantities go through `unit_quantity_from_row`; zone falls back to the bin row letter.
    """
    location = str(row.get("location") or "").strip()
    names = (row.get("unit_level1_name"), row.get("unit_level2_name"), row.get("unit_level3_name"))
    return InventoryRecord(
        id=str(row["id"]),
        sku=norm_sku(row.get("sku")),
        product_name=str(row.get("product_name") or ""),
        location=location,
        zone=str(row.get("zone") or "").strip().upper() or zone_for_location(location),
        created_at=_as_datetime(row.get("created_at")),
        warehouse_id=(str(row["warehouse_id"]) if row.get("warehouse_id") is not None else None),
        quantity=unit_quantity_from_row(row),
        lot=(str(row.get("lot")).strip() or None) if row.get("lot") is not None else None,
        manufacture_date=_as_date(row.get("mfd") if row.get("mfd") is not None else row.get("manufacture_date")),
        unit_names=tuple(names) if any(names) else (),
    )


def need_from_row(row: Mapping[str, Any], expand_multiplier: bool = True) -> ProductNeed:
    """
    Build a ProductNeed from a demand line (packing list / order line).
    With `expand_multiplier`, pack codes like L3-8GX6 look up L3-8G and need qty x 6.
    """
    code = norm_sku(row.get("product_code") or row.get("sku"))
    if not code:
        raise InvalidQuantity("product_code is required")
    qty = as_count(row.get("quantity") if row.get("quantity") is not None else 0, f"{code}: quantity")
    base, multiplier = parse_sku_multiplier(code) if expand_multiplier else (code, 1)
    return ProductNeed(
        product_code=code,
        product_name=str(row.get("product_name") or ""),
        needed_pieces=qty * multiplier,
        unit_code=(row.get("unit_code") or None),
        base_sku=base,
        multiplier=multiplier,
        original_quantity=qty,
    )


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------


def _fifo_key(rec: InventoryRecord):
    # Oldest first; undated records after dated ones. Location then id break ties.
    ts = rec.created_at
    return (ts is None, ts.timestamp() if ts else 0.0, rec.location, rec.id)


def _percentage(picked: int, needed: int) -> int:
    pct = (Decimal(100 * picked) / Decimal(needed)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return min(100, int(pct))


def allocate_need(need: ProductNeed, snapshot: Iterable[InventoryRecord]) -> ProductAllocationPlan:
    matching = [r for r in snapshot if r.sku == need.base_sku]
    if not matching:
        return ProductAllocationPlan(
            product_code=need.product_code,
            product_name=need.product_name,
            base_sku=need.base_sku,
            multiplier=need.multiplier,
            total_needed=need.needed_pieces,
            total_available=0,
            total_picked=0,
            percentage=0,
            status="not_found",
            lines=(),
        )

    remaining_need = need.needed_pieces
    total_available = 0
    lines: list[AllocationLine] = []
    for rec in sorted(matching, key=_fifo_key):
        available = to_pieces(rec.quantity)
        total_available += available
        if available <= 0 or remaining_need <= 0:
            continue
        take = min(available, remaining_need)
        shaped = open_units(rec.quantity, take)
        lines.append(
            AllocationLine(
                record_id=rec.id,
                location=rec.location,
                zone=rec.zone,
                available=available,
                to_pick=take,
                remaining=available - take,
                pick_units=decompose(shaped, take),
                opens_units=shaped != rec.quantity,
                lot=rec.lot,
                manufacture_date=rec.manufacture_date,
            )
        )
        remaining_need -= take

    picked = need.needed_pieces - remaining_need
    return ProductAllocationPlan(
        product_code=need.product_code,
        product_name=need.product_name or matching[0].product_name,
        base_sku=need.base_sku,
        multiplier=need.multiplier,
        total_needed=need.needed_pieces,
        total_available=total_available,
        total_picked=picked,
        percentage=_percentage(picked, need.needed_pieces),
        status="sufficient" if remaining_need == 0 else "insufficient",
        lines=tuple(lines),
    )


def allocate(needs: Sequence[ProductNeed], snapshot: Sequence[InventoryRecord]) -> list[ProductAllocationPlan]:
    """
    FIFO allocation for each need against a read-only snapshot.
    Shortfalls are reported through plan status, never raised.
    """
    snap = tuple(snapshot)
    return [allocate_need(n, snap) for n in needs]


# ---------------------------------------------------------------------------
# Route
# ---------------------------------------------------------------------------


def build_route(plans: Sequence[ProductAllocationPlan]) -> list[RouteStep]:
    flat = [(p, ln) for p in plans for ln in p.lines if ln.to_pick > 0]
    # Stable: equal bins keep plan order.
    flat.sort(key=lambda pl: location_sort_key(pl[1].location))
    return [
        RouteStep(
            sequence=i,
            location=ln.location,
            normalized_location=normalize_location(ln.location),
            zone=ln.zone,
            product_code=p.product_code,
            product_name=p.product_name,
            quantity=ln.to_pick,
            record_id=ln.record_id,
            pick_units=ln.pick_units,
        )
        for i, (p, ln) in enumerate(flat, start=1)
    ]


def summarize(plans: Sequence[ProductAllocationPlan], route: Sequence[RouteStep]) -> PickingSummary:
    return PickingSummary(
        total_products=len(plans),
        sufficient_products=sum(1 for p in plans if p.status == "sufficient"),
        insufficient_products=sum(1 for p in plans if p.status == "insufficient"),
        not_found_products=sum(1 for p in plans if p.status == "not_found"),
        total_locations=len({s.location for s in route}),
    )


def plan_picking(needs: Sequence[ProductNeed], snapshot: Sequence[InventoryRecord]) -> PickingResult:
    plans = allocate(needs, snapshot)
    route = build_route(plans)
    return PickingResult(plans=tuple(plans), route=tuple(route), summary=summarize(plans, route))
