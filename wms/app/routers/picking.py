from dataclasses import asdict
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..config import settings
from ..db import get_conn
from ..deps import require_permission
from ..errors import InvalidQuantity
from ..logs import json_log
from ..picking import PickingResult, need_from_row, plan_picking, record_from_row
from ..store import load_inventory_snapshot
from ..units import format_units

router = APIRouter(prefix="/picking", tags=["picking"])


class NeedIn(BaseModel):
    product_code: str
    product_name: Optional[str] = None
    quantity: Decimal
    unit_code: Optional[str] = None


class InventoryRowIn(BaseModel):
    id: str
    sku: str
    product_name: Optional[str] = None
    location: str
    zone: Optional[str] = None
    lot: Optional[str] = None
    mfd: Optional[str] = None
    created_at: Optional[str] = None
    warehouse_id: Optional[str] = None
    unit_level1_quantity: Optional[Decimal] = None
    unit_level1_rate: Optional[Decimal] = None
    unit_level1_name: Optional[str] = None
    unit_level2_quantity: Optional[Decimal] = None
    unit_level2_rate: Optional[Decimal] = None
    unit_level2_name: Optional[str] = None
    unit_level3_quantity: Optional[Decimal] = None
    unit_level3_name: Optional[str] = None


class PreviewIn(BaseModel):
    needs: List[NeedIn]
    snapshot: List[InventoryRowIn]
    expand_multiplier: Optional[bool] = None


class PlanIn(BaseModel):
    warehouse_id: Optional[str] = None
    needs: List[NeedIn]
    expand_multiplier: Optional[bool] = None


def needs_from_payload(data: List[NeedIn], expand_multiplier: Optional[bool]):
    expand = settings.sku_multiplier_enabled if expand_multiplier is None else bool(expand_multiplier)
    if not data:
        raise HTTPException(status_code=400, detail="needs is required")
    try:
        return [need_from_row(n.model_dump(), expand_multiplier=expand) for n in data]
    except InvalidQuantity as ex:
        raise HTTPException(status_code=400, detail=str(ex))


def result_to_dict(result: PickingResult) -> dict:
    plans = []
    for p in result.plans:
        d = asdict(p)
        d["lines"] = [
            {**asdict(ln), "pick_units_display": format_units(ln.pick_units)}
            for ln in p.lines
        ]
        plans.append(d)
    route = [{**asdict(s), "pick_units_display": format_units(s.pick_units)} for s in result.route]
    return {"plans": plans, "route": route, "summary": asdict(result.summary)}


@router.post("/plans/preview", dependencies=[Depends(require_permission("inventory:read"))])
def preview_plan(data: PreviewIn):
    """Plan against a caller-supplied snapshot; nothing is read from or written to the database."""
    needs = needs_from_payload(data.needs, data.expand_multiplier)
    try:
        snapshot = [record_from_row(r.model_dump()) for r in data.snapshot]
    except ValueError as ex:
        raise HTTPException(status_code=400, detail=str(ex))
    return result_to_dict(plan_picking(needs, snapshot))


@router.post("/plans", dependencies=[Depends(require_permission("inventory:read"))])
def create_plan(data: PlanIn):
    needs = needs_from_payload(data.needs, data.expand_multiplier)
    with get_conn() as conn:
        with conn.cursor() as cur:
            snapshot = load_inventory_snapshot(cur, data.warehouse_id, [n.base_sku for n in needs])
    result = plan_picking(needs, snapshot)
    json_log(
        "info",
        "picking.plan.computed",
        warehouse_id=data.warehouse_id,
        products=result.summary.total_products,
        sufficient=result.summary.sufficient_products,
        insufficient=result.summary.insufficient_products,
        not_found=result.summary.not_found_products,
        locations=result.summary.total_locations,
    )
    return result_to_dict(result)
