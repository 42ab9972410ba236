from __future__ import annotations

import json
from typing import Callable, Iterable, Optional

from .db import get_conn
from .errors import ConcurrentModification, RecordNotFound
from .locations import zone_for_location
from .logs import json_log
from .picking import InventoryRecord, norm_sku, record_from_row
from .units import UnitQuantity
from .workflow import (
    AppliedMutation,
    MutationInstruction,
    TransferWorkflow,
    applied_from_dict,
    applied_to_dict,
)


_ITEM_COLUMNS = """
    id, sku, product_name, location, zone, lot, mfd, created_at, warehouse_id,
    unit_level1_quantity, unit_level1_rate, unit_level1_name,
    unit_level2_quantity, unit_level2_rate, unit_level2_name,
    unit_level3_quantity, unit_level3_name
"""


def load_inventory_snapshot(cur, warehouse_id: Optional[str], skus: Iterable[str]) -> list[InventoryRecord]:
    """
    Read-only snapshot for one planning call. Rows whose unit data cannot be interpreted
    are skipped (and logged) rather than failing the whole plan.
    """
    wanted = sorted({norm_sku(s) for s in (skus or []) if norm_sku(s)})
    if not wanted:
        return []
    sql = f"""
        SELECT {_ITEM_COLUMNS}
        FROM inventory_items
        WHERE upper(trim(sku)) = ANY(%s)
    """
    params: list = [wanted]
    if warehouse_id:
        sql += " AND warehouse_id=%s"
        params.append(warehouse_id)
    sql += " ORDER BY created_at ASC, location ASC, id ASC"
    cur.execute(sql, params)

    out: list[InventoryRecord] = []
    for r in cur.fetchall() or []:
        try:
            out.append(record_from_row(r))
        except ValueError as ex:
            json_log("warning", "inventory.snapshot.row_skipped", record_id=str(r.get("id")), error=str(ex))
    return out


def fetch_inventory_record(cur, record_id: str) -> InventoryRecord:
    cur.execute(f"SELECT {_ITEM_COLUMNS} FROM inventory_items WHERE id=%s", (record_id,))
    row = cur.fetchone()
    if not row:
        raise RecordNotFound(f"inventory record not found: {record_id}")
    return record_from_row(row)


def _delta(a: UnitQuantity, b: UnitQuantity) -> tuple[int, int, int]:
    # b - a, per tier
    return (b.level1 - a.level1, b.level2 - a.level2, b.level3 - a.level3)


def _shift_tiers(cur, record_id: str, d1: int, d2: int, d3: int) -> bool:
    # Conditional update: each tier moves by its delta only if it stays >= 0.
    cur.execute(
        """
        UPDATE inventory_items
        SET unit_level1_quantity = unit_level1_quantity + %s,
            unit_level2_quantity = unit_level2_quantity + %s,
            unit_level3_quantity = unit_level3_quantity + %s,
            updated_at = now()
        WHERE id = %s
          AND unit_level1_quantity + %s >= 0
          AND unit_level2_quantity + %s >= 0
          AND unit_level3_quantity + %s >= 0
        RETURNING id
        """,
        (d1, d2, d3, record_id, d1, d2, d3),
    )
    return cur.fetchone() is not None


def _move_row(cur, record_id: str, from_location: str, to_location: str, q: UnitQuantity) -> bool:
    cur.execute(
        """
        UPDATE inventory_items
        SET location = %s, zone = %s, updated_at = now()
        WHERE id = %s
          AND location = %s
          AND unit_level1_quantity = %s
          AND unit_level2_quantity = %s
          AND unit_level3_quantity = %s
        RETURNING id
        """,
        (to_location, zone_for_location(to_location), record_id, from_location, q.level1, q.level2, q.level3),
    )
    return cur.fetchone() is not None


def _lock_item(cur, record_id: str) -> None:
    cur.execute("SELECT id FROM inventory_items WHERE id=%s FOR UPDATE", (record_id,))
    if cur.fetchone() is None:
        raise ConcurrentModification(record_id, "inventory row no longer exists")


def _line_state(cur, reference: str) -> tuple[int, Optional[dict]]:
    """
    Net number of transfer movements logged for one line (applies minus reversals)
    and the detail of the latest apply.
    """
    cur.execute(
        """
        SELECT
          count(*) FILTER (WHERE movement_type='transfer')
            - count(*) FILTER (WHERE movement_type='transfer_reversal') AS net,
          (array_agg(detail ORDER BY created_at DESC) FILTER (WHERE movement_type='transfer'))[1] AS detail
        FROM inventory_movements
        WHERE reference=%s
        """,
        (reference,),
    )
    row = cur.fetchone() or {}
    detail = row.get("detail")
    if isinstance(detail, str):
        detail = json.loads(detail)
    return int(row.get("net") or 0), detail


def _log_movement(
    cur,
    *,
    record_id: str,
    movement_type: str,
    location_before: str,
    location_after: str,
    q: UnitQuantity,
    pieces: int,
    actor: str,
    reference: Optional[str],
    detail: Optional[dict] = None,
):
    cur.execute(
        """
        INSERT INTO inventory_movements
          (id, inventory_item_id, movement_type, location_before, location_after,
           level1_change, level2_change, level3_change, quantity_change,
           created_by, reference, detail, created_at)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, now())
        """,
        (
            record_id,
            movement_type,
            location_before,
            location_after,
            q.level1,
            q.level2,
            q.level3,
            pieces,
            actor,
            reference,
            json.dumps(detail, default=str) if detail is not None else None,
        ),
    )


class PgInventoryStore:
    """
    Postgres-backed store for transfer execution. Each `apply`/`revert` runs in its own
    transaction so one line is either fully written (stock + movement log) or not at all.

    The movement log is also the per-line ledger: a line is applied when it has more
    `transfer` than `transfer_reversal` movements under its reference. Both calls lock
    the source row first, so two executors cannot write the same line.
    """

    def __init__(self, conn_factory: Callable = get_conn, reference: Optional[str] = None):
        self._conn_factory = conn_factory
        self.reference = reference

    def get_record(self, record_id: str) -> InventoryRecord:
        with self._conn_factory() as conn:
            with conn.cursor() as cur:
                return fetch_inventory_record(cur, record_id)

    def find_applied(self, line_id: str) -> Optional[AppliedMutation]:
        with self._conn_factory() as conn:
            with conn.cursor() as cur:
                net, detail = _line_state(cur, self._line_reference(line_id))
        if net <= 0 or not detail:
            return None
        return applied_from_dict(detail)

    def apply(self, instruction: MutationInstruction, actor: str) -> Optional[str]:
        ins = instruction
        with self._conn_factory() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    _lock_item(cur, ins.record_id)
                    net, _ = _line_state(cur, self._reference(ins))
                    if net > 0:
                        raise ConcurrentModification(ins.record_id, "line already applied")
                    dest_id = None
                    if ins.relocates:
                        if not _move_row(cur, ins.record_id, ins.source_location, ins.destination_location, ins.expected_source_quantity):
                            raise ConcurrentModification(ins.record_id)
                    else:
                        if not _shift_tiers(cur, ins.record_id, *_delta(ins.expected_source_quantity, ins.new_source_quantity)):
                            raise ConcurrentModification(ins.record_id)
                        dq = ins.destination_quantity
                        cur.execute(
                            """
                            INSERT INTO inventory_items
                              (id, sku, product_name, location, zone, lot, mfd, created_at, updated_at, warehouse_id,
                               unit_level1_quantity, unit_level1_rate, unit_level1_name,
                               unit_level2_quantity, unit_level2_rate, unit_level2_name,
                               unit_level3_quantity, unit_level3_name)
                            SELECT gen_random_uuid(), sku, product_name, %s, %s, lot, mfd, created_at, now(), warehouse_id,
                                   %s, unit_level1_rate, unit_level1_name,
                                   %s, unit_level2_rate, unit_level2_name,
                                   %s, unit_level3_name
                            FROM inventory_items
                            WHERE id = %s
                            RETURNING id
                            """,
                            (
                                ins.destination_location,
                                zone_for_location(ins.destination_location),
                                dq.level1,
                                dq.level2,
                                dq.level3,
                                ins.record_id,
                            ),
                        )
                        dest_id = str(cur.fetchone()["id"])
                    _log_movement(
                        cur,
                        record_id=ins.record_id,
                        movement_type="transfer",
                        location_before=ins.source_location,
                        location_after=ins.destination_location,
                        q=ins.destination_quantity,
                        pieces=ins.pieces,
                        actor=actor,
                        reference=self._reference(ins),
                        detail=applied_to_dict(AppliedMutation(instruction=ins, destination_record_id=dest_id)),
                    )
                    return dest_id

    def revert(self, applied: AppliedMutation, actor: str) -> None:
        ins = applied.instruction
        with self._conn_factory() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    _lock_item(cur, ins.record_id)
                    net, _ = _line_state(cur, self._reference(ins))
                    if net <= 0:
                        # Already reverted, or never committed.
                        return
                    if ins.relocates:
                        if not _move_row(cur, ins.record_id, ins.destination_location, ins.source_location, ins.destination_quantity):
                            raise ConcurrentModification(ins.record_id, "cannot move stock back to source")
                    else:
                        cur.execute(
                            """
                            DELETE FROM inventory_items
                            WHERE id = %s
                              AND unit_level1_quantity = %s
                              AND unit_level2_quantity = %s
                              AND unit_level3_quantity = %s
                            RETURNING id
                            """,
                            (
                                applied.destination_record_id,
                                ins.destination_quantity.level1,
                                ins.destination_quantity.level2,
                                ins.destination_quantity.level3,
                            ),
                        )
                        if cur.fetchone() is None:
                            raise ConcurrentModification(str(applied.destination_record_id), "destination stock already changed")
                        if not _shift_tiers(cur, ins.record_id, *_delta(ins.new_source_quantity, ins.expected_source_quantity)):
                            raise ConcurrentModification(ins.record_id, "cannot restore source stock")
                    _log_movement(
                        cur,
                        record_id=ins.record_id,
                        movement_type="transfer_reversal",
                        location_before=ins.destination_location,
                        location_after=ins.source_location,
                        q=ins.destination_quantity,
                        pieces=ins.pieces,
                        actor=actor,
                        reference=self._reference(ins),
                    )

    def _line_reference(self, line_id: str) -> str:
        return f"{self.reference}:{line_id}" if self.reference else line_id

    def _reference(self, ins: MutationInstruction) -> str:
        return self._line_reference(ins.line_id)


# ---------------------------------------------------------------------------
# Transfer documents
# ---------------------------------------------------------------------------


def insert_transfer(cur, wf: TransferWorkflow) -> None:
    cur.execute(
        """
        INSERT INTO stock_transfers (id, status, created_by, doc, created_at, updated_at)
        VALUES (%s, %s, %s, %s::jsonb, now(), now())
        """,
        (wf.transfer_id, wf.status, wf.created_by, json.dumps(wf.to_dict(), default=str)),
    )


def load_transfer(cur, transfer_id: str, for_update: bool = False) -> TransferWorkflow:
    sql = "SELECT id, status, doc FROM stock_transfers WHERE id=%s"
    if for_update:
        sql += " FOR UPDATE"
    cur.execute(sql, (transfer_id,))
    row = cur.fetchone()
    if not row:
        raise RecordNotFound(f"transfer not found: {transfer_id}")
    doc = row["doc"]
    if isinstance(doc, str):
        doc = json.loads(doc)
    return TransferWorkflow.from_dict(doc)


def save_transfer(cur, wf: TransferWorkflow, claim_token: Optional[str] = None) -> bool:
    """
    With `claim_token` the write only lands while that claim still holds the transfer,
    and it renews the claim's lease. Returns False when nothing was written.
    """
    doc = json.dumps(wf.to_dict(), default=str)
    if claim_token is None:
        cur.execute(
            """
            UPDATE stock_transfers
            SET status=%s, doc=%s::jsonb, updated_at=now()
            WHERE id=%s
            RETURNING id
            """,
            (wf.status, doc, wf.transfer_id),
        )
    else:
        cur.execute(
            """
            UPDATE stock_transfers
            SET status=%s, doc=%s::jsonb, claimed_at=now(), updated_at=now()
            WHERE id=%s AND claim_token=%s
            RETURNING id
            """,
            (wf.status, doc, wf.transfer_id, claim_token),
        )
    return cur.fetchone() is not None


def claim_transfer(cur, transfer_id: str, token: str, resume: bool = False, ttl_seconds: int = 300) -> bool:
    # An approved transfer is free to claim. With `resume`, an executing one is only
    # taken over once its current claim has not been renewed for `ttl_seconds`.
    cur.execute(
        """
        UPDATE stock_transfers
        SET status='executing', claim_token=%s, claimed_at=now(), updated_at=now()
        WHERE id=%s
          AND (
            status='approved'
            OR (%s AND status='executing'
                AND (claimed_at IS NULL OR claimed_at < now() - interval '1 second' * %s))
          )
        RETURNING id
        """,
        (token, transfer_id, bool(resume), int(ttl_seconds)),
    )
    return cur.fetchone() is not None
