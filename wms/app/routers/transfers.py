import uuid
from dataclasses import asdict
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..config import settings
from ..db import get_conn
from ..deps import get_current_user, has_permission, require_permission
from ..errors import TransferClaimLost
from ..logs import json_log
from ..picking import norm_sku, plan_picking, record_from_row
from ..store import (
    PgInventoryStore,
    claim_transfer,
    insert_transfer,
    load_inventory_snapshot,
    load_transfer,
    save_transfer,
)
from ..transfers import split_pieces, split_transfer
from ..units import as_count, format_units
from ..workflow import TransferLine, TransferWorkflow, transfer_lines_from_plans
from .picking import InventoryRowIn, NeedIn, needs_from_payload, result_to_dict

router = APIRouter(prefix="/inventory/transfers", tags=["inventory"])


class SplitIn(BaseModel):
    record: InventoryRowIn
    mode: Optional[str] = None
    level1: Optional[Decimal] = None
    level2: Optional[Decimal] = None
    level3: Optional[Decimal] = None
    pieces: Optional[Decimal] = None


class TransferLineIn(BaseModel):
    record_id: str
    product_code: str
    source_location: str
    destination_location: Optional[str] = None
    pieces: Decimal


class TransferCreateIn(BaseModel):
    warehouse_id: Optional[str] = None
    destination_location: Optional[str] = None
    lines: Optional[List[TransferLineIn]] = None
    needs: Optional[List[NeedIn]] = None
    expand_multiplier: Optional[bool] = None


class CancelIn(BaseModel):
    reason: Optional[str] = None


def _persist(wf: TransferWorkflow, claim_token: Optional[str] = None) -> bool:
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return save_transfer(cur, wf, claim_token)


@router.post("/split", dependencies=[Depends(require_permission("inventory:read"))])
def split(data: SplitIn):
    """
    Preview how one inventory row splits for a move. Either `pieces` (largest-unit-first)
    or `mode`/`level1..3` (explicit tiers, clamped to the source) drives the split.
    """
    try:
        record = record_from_row(data.record.model_dump())
    except ValueError as ex:
        raise HTTPException(status_code=400, detail=str(ex))
    if data.pieces is not None:
        result = split_pieces(record, as_count(data.pieces, "pieces"))
    else:
        request = {"level1": data.level1, "level2": data.level2, "level3": data.level3}
        if data.mode:
            request["mode"] = data.mode
        result = split_transfer(record, request)
    names = record.unit_names
    return {
        "source_remainder": asdict(result.source_remainder),
        "destination_allocation": asdict(result.destination_allocation),
        "source_remainder_display": format_units(result.source_remainder, names),
        "destination_allocation_display": format_units(result.destination_allocation, names),
    }


@router.post("", dependencies=[Depends(require_permission("inventory:write"))])
def create_transfer(data: TransferCreateIn, user=Depends(get_current_user)):
    if data.lines and data.needs:
        raise HTTPException(status_code=400, detail="send either lines or needs, not both")
    dest = (data.destination_location or settings.picking_destination_location).strip()
    plan = None

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if data.lines:
                    lines = []
                    for ln in data.lines:
                        pieces = as_count(ln.pieces, f"{ln.product_code}: pieces")
                        if pieces <= 0:
                            raise HTTPException(status_code=400, detail=f"{ln.product_code}: pieces must be > 0")
                        code = norm_sku(ln.product_code)
                        lines.append(
                            TransferLine(
                                line_id=f"{code}:{ln.record_id}",
                                record_id=ln.record_id,
                                product_code=code,
                                source_location=ln.source_location.strip(),
                                destination_location=(ln.destination_location or dest).strip(),
                                pieces=pieces,
                            )
                        )
                elif data.needs:
                    needs = needs_from_payload(data.needs, data.expand_multiplier)
                    snapshot = load_inventory_snapshot(cur, data.warehouse_id, [n.base_sku for n in needs])
                    result = plan_picking(needs, snapshot)
                    plan = result_to_dict(result)
                    lines = transfer_lines_from_plans(result.plans, dest)
                else:
                    raise HTTPException(status_code=400, detail="lines or needs is required")

                if not lines:
                    raise HTTPException(status_code=400, detail="nothing to transfer")
                try:
                    wf = TransferWorkflow(str(uuid.uuid4()), lines, created_by=user["user_id"])
                except ValueError as ex:
                    raise HTTPException(status_code=400, detail=str(ex))
                insert_transfer(cur, wf)

    out = {"id": wf.transfer_id, "transfer": wf.to_dict()}
    if plan is not None:
        out["plan"] = plan
    return out


@router.get("/{transfer_id}", dependencies=[Depends(require_permission("inventory:read"))])
def get_transfer(transfer_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            wf = load_transfer(cur, transfer_id)
    return {"transfer": wf.to_dict()}


@router.post("/{transfer_id}/submit", dependencies=[Depends(require_permission("inventory:write"))])
def submit_transfer(transfer_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                wf = load_transfer(cur, transfer_id, for_update=True)
                wf.submit(user["user_id"])
                save_transfer(cur, wf)
    return {"ok": True, "status": wf.status}


@router.post("/{transfer_id}/approve", dependencies=[Depends(require_permission("inventory:write"))])
def approve_transfer(transfer_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                wf = load_transfer(cur, transfer_id, for_update=True)
                allowed = has_permission(cur, user["user_id"], "inventory:approve")
                wf.approve(user["user_id"], allowed)
                save_transfer(cur, wf)
    return {"ok": True, "status": wf.status}


@router.post("/{transfer_id}/cancel", dependencies=[Depends(require_permission("inventory:write"))])
def cancel_transfer(transfer_id: str, data: CancelIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                wf = load_transfer(cur, transfer_id, for_update=True)
                wf.cancel(user["user_id"], (data.reason or "").strip() or None)
                save_transfer(cur, wf)
    return {"ok": True, "status": wf.status}


@router.post("/{transfer_id}/execute", dependencies=[Depends(require_permission("inventory:write"))])
def execute_transfer(
    transfer_id: str,
    resume: bool = Query(False, description="Continue a transfer left in executing"),
    user=Depends(get_current_user),
):
    """
    Move stock for every line. Each line commits on its own; progress is saved after each
    line so an interrupted transfer can be resumed with `?resume=true` once its claim expires.
    A line that keeps losing the race reverts the lines already moved and fails the transfer (409).
    """
    token = uuid.uuid4().hex
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                wf = load_transfer(cur, transfer_id, for_update=True)
                claimed = claim_transfer(
                    cur, transfer_id, token, resume=resume, ttl_seconds=settings.transfer_claim_ttl_seconds
                )
                if not claimed:
                    if wf.status == "executing":
                        raise HTTPException(status_code=409, detail="transfer is already executing")
                    raise HTTPException(status_code=409, detail=f"cannot execute a {wf.status} transfer")

    def _checkpoint(current: TransferWorkflow) -> None:
        if not _persist(current, token):
            raise TransferClaimLost(transfer_id)

    store = PgInventoryStore(conn_factory=get_conn, reference=transfer_id)
    try:
        wf.execute(store, user["user_id"], max_retries=settings.transfer_max_retries, on_progress=_checkpoint)
    except TransferClaimLost:
        json_log("warning", "transfer.claim_lost", transfer_id=transfer_id, status=wf.status)
        raise
    except Exception:
        _persist(wf, token)
        raise
    _checkpoint(wf)

    if wf.status == "failed":
        return JSONResponse(
            status_code=409,
            content=jsonable_encoder({"detail": "transfer failed", "failure": wf.failure, "transfer": wf.to_dict()}),
        )
    return {"ok": True, "status": wf.status, "transfer": wf.to_dict()}
