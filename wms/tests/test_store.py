import json
from contextlib import contextmanager

import pytest

pytest.importorskip("psycopg_pool")

from wms.app import store as store_module
from wms.app.errors import ConcurrentModification, RecordNotFound
from wms.app.store import (
    PgInventoryStore,
    claim_transfer,
    fetch_inventory_record,
    insert_transfer,
    load_inventory_snapshot,
    load_transfer,
    save_transfer,
)
from wms.app.units import UnitQuantity
from wms.app.workflow import (
    AppliedMutation,
    MutationInstruction,
    TransferLine,
    TransferWorkflow,
    applied_to_dict,
)


class _FakeCursor:
    def __init__(self, results=None, rows=None):
        self.results = list(results or [])
        self.rows = list(rows or [])
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(str(sql).split()), params))

    def fetchone(self):
        return self.results.pop(0) if self.results else None

    def fetchall(self):
        return self.rows


class _FakeConn:
    def __init__(self, cur):
        self._cur = cur
        self.transactions = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cur

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


def _row(rid, **overrides):
    row = {
        "id": rid,
        "sku": "L3-8G",
        "product_name": "Bolt",
        "location": "A1/1",
        "zone": "A",
        "lot": None,
        "mfd": None,
        "created_at": "2024-01-01T00:00:00+00:00",
        "warehouse_id": "w1",
        "unit_level1_quantity": 0,
        "unit_level1_rate": 24,
        "unit_level1_name": None,
        "unit_level2_quantity": 0,
        "unit_level2_rate": 6,
        "unit_level2_name": None,
        "unit_level3_quantity": 10,
        "unit_level3_name": None,
    }
    row.update(overrides)
    return row


def _instruction(new_pieces=6, moved=4):
    return MutationInstruction(
        line_id="L3-8G:r1",
        record_id="r1",
        source_location="A1/1",
        destination_location="DISPATCH",
        pieces=moved,
        expected_source_quantity=UnitQuantity(level3=new_pieces + moved),
        new_source_quantity=UnitQuantity(level3=new_pieces),
        destination_quantity=UnitQuantity(level3=moved),
    )


def test_snapshot_without_skus_skips_query():
    cur = _FakeCursor()
    assert load_inventory_snapshot(cur, "w1", []) == []
    assert cur.executed == []


def test_snapshot_filters_by_normalized_skus_and_warehouse():
    cur = _FakeCursor(rows=[_row("r1")])
    out = load_inventory_snapshot(cur, "w1", [" l3-8g", "L3-8G", "X"])
    sql, params = cur.executed[0]
    assert "upper(trim(sku)) = ANY(%s)" in sql
    assert "AND warehouse_id=%s" in sql
    assert params == [["L3-8G", "X"], "w1"]
    assert [r.id for r in out] == ["r1"]


def test_snapshot_skips_rows_with_bad_unit_data(capsys):
    cur = _FakeCursor(rows=[_row("good"), _row("bad", unit_level1_quantity=2, unit_level1_rate=None)])
    out = load_inventory_snapshot(cur, None, ["L3-8G"])
    assert [r.id for r in out] == ["good"]
    assert "warehouse_id=%s" not in cur.executed[0][0]
    logs = [json.loads(ln) for ln in capsys.readouterr().err.splitlines()]
    assert logs[0]["event"] == "inventory.snapshot.row_skipped"
    assert logs[0]["record_id"] == "bad"


def test_snapshot_skips_rows_with_unreadable_manufacture_date(capsys):
    cur = _FakeCursor(rows=[_row("good", mfd="2024-02-01"), _row("bad-date", mfd="not a date")])
    out = load_inventory_snapshot(cur, None, ["L3-8G"])
    assert [r.id for r in out] == ["good"]
    logs = [json.loads(ln) for ln in capsys.readouterr().err.splitlines()]
    assert logs[0]["event"] == "inventory.snapshot.row_skipped"
    assert logs[0]["record_id"] == "bad-date"


def test_fetch_missing_record():
    with pytest.raises(RecordNotFound):
        fetch_inventory_record(_FakeCursor(), "nope")


_LOCKED = {"id": "r1"}
_FRESH_LINE = {"net": 0, "detail": None}


def _applied_line(dest="new-row"):
    detail = applied_to_dict(AppliedMutation(instruction=_instruction(), destination_record_id=dest))
    return {"net": 1, "detail": json.dumps(detail)}


def test_apply_partial_move_shifts_source_and_copies_row():
    cur = _FakeCursor(results=[_LOCKED, _FRESH_LINE, {"id": "r1"}, {"id": "new-row"}])
    conn = _FakeConn(cur)
    store = PgInventoryStore(conn_factory=lambda: conn, reference="t1")

    dest_id = store.apply(_instruction(), "u1")

    assert dest_id == "new-row"
    assert conn.transactions == 1
    lock_sql, lock_params = cur.executed[0]
    assert lock_sql.endswith("FOR UPDATE")
    assert lock_params == ("r1",)
    state_sql, state_params = cur.executed[1]
    assert "FROM inventory_movements" in state_sql
    assert state_params == ("t1:L3-8G:r1",)
    shift_sql, shift_params = cur.executed[2]
    assert "unit_level3_quantity + %s >= 0" in shift_sql
    assert shift_params == (0, 0, -4, "r1", 0, 0, -4)
    insert_sql, insert_params = cur.executed[3]
    assert insert_sql.startswith("INSERT INTO inventory_items")
    assert insert_params == ("DISPATCH", "D", 0, 0, 4, "r1")
    movement_sql, movement_params = cur.executed[4]
    assert "INSERT INTO inventory_movements" in movement_sql
    assert movement_params[1] == "transfer"
    assert movement_params[-2] == "t1:L3-8G:r1"
    assert json.loads(movement_params[-1])["destination_record_id"] == "new-row"


def test_apply_full_move_relocates_row():
    cur = _FakeCursor(results=[_LOCKED, _FRESH_LINE, {"id": "r1"}])
    store = PgInventoryStore(conn_factory=lambda: _FakeConn(cur))

    assert store.apply(_instruction(new_pieces=0, moved=10), "u1") is None
    move_sql, move_params = cur.executed[2]
    assert move_sql.startswith("UPDATE inventory_items SET location = %s")
    assert move_params == ("DISPATCH", "D", "r1", "A1/1", 0, 0, 10)
    assert len(cur.executed) == 4


def test_apply_raises_when_guard_rejects_update():
    cur = _FakeCursor(results=[_LOCKED, _FRESH_LINE, None])
    store = PgInventoryStore(conn_factory=lambda: _FakeConn(cur))
    with pytest.raises(ConcurrentModification):
        store.apply(_instruction(), "u1")
    assert len(cur.executed) == 3


def test_apply_raises_when_source_row_is_gone():
    cur = _FakeCursor(results=[None])
    store = PgInventoryStore(conn_factory=lambda: _FakeConn(cur))
    with pytest.raises(ConcurrentModification):
        store.apply(_instruction(), "u1")
    assert len(cur.executed) == 1


def test_apply_refuses_a_line_already_in_the_movement_log():
    cur = _FakeCursor(results=[_LOCKED, _applied_line()])
    store = PgInventoryStore(conn_factory=lambda: _FakeConn(cur), reference="t1")
    with pytest.raises(ConcurrentModification) as ei:
        store.apply(_instruction(), "u1")
    assert ei.value.detail == "line already applied"
    # Nothing past the ledger check was written.
    assert len(cur.executed) == 2


def test_find_applied_reads_latest_logged_apply():
    cur = _FakeCursor(results=[_applied_line()])
    store = PgInventoryStore(conn_factory=lambda: _FakeConn(cur), reference="t1")

    found = store.find_applied("L3-8G:r1")

    assert found == AppliedMutation(instruction=_instruction(), destination_record_id="new-row")
    assert cur.executed[0][1] == ("t1:L3-8G:r1",)


def test_find_applied_ignores_reverted_lines():
    reverted = {**_applied_line(), "net": 0}
    store = PgInventoryStore(conn_factory=lambda: _FakeConn(_FakeCursor(results=[reverted])), reference="t1")
    assert store.find_applied("L3-8G:r1") is None


def test_revert_partial_move_deletes_copy_and_restores_source():
    cur = _FakeCursor(results=[_LOCKED, _applied_line(), {"id": "new-row"}, {"id": "r1"}])
    store = PgInventoryStore(conn_factory=lambda: _FakeConn(cur))

    store.revert(AppliedMutation(instruction=_instruction(), destination_record_id="new-row"), "u1")

    assert cur.executed[2][0].startswith("DELETE FROM inventory_items")
    assert cur.executed[2][1] == ("new-row", 0, 0, 4)
    assert cur.executed[3][1] == (0, 0, 4, "r1", 0, 0, 4)
    assert cur.executed[4][1][1] == "transfer_reversal"


def test_revert_of_unapplied_line_writes_nothing():
    cur = _FakeCursor(results=[_LOCKED, _FRESH_LINE])
    store = PgInventoryStore(conn_factory=lambda: _FakeConn(cur))

    store.revert(AppliedMutation(instruction=_instruction(), destination_record_id="new-row"), "u1")

    assert len(cur.executed) == 2
    assert not any("DELETE" in sql or "INSERT" in sql for sql, _ in cur.executed)


def test_revert_fails_when_destination_changed():
    cur = _FakeCursor(results=[_LOCKED, _applied_line(), None])
    store = PgInventoryStore(conn_factory=lambda: _FakeConn(cur))
    with pytest.raises(ConcurrentModification):
        store.revert(AppliedMutation(instruction=_instruction(), destination_record_id="new-row"), "u1")



def _workflow():
    line = TransferLine("L3-8G:r1", "r1", "L3-8G", "A1/1", "DISPATCH", 4)
    return TransferWorkflow("t1", [line], created_by="u1")


def test_transfer_document_insert_and_load():
    cur = _FakeCursor()
    wf = _workflow()
    insert_transfer(cur, wf)
    sql, params = cur.executed[0]
    assert sql.startswith("INSERT INTO stock_transfers")
    assert params[:3] == ("t1", "draft", "u1")

    cur = _FakeCursor(results=[{"id": "t1", "status": "draft", "doc": params[3]}])
    loaded = load_transfer(cur, "t1", for_update=True)
    assert cur.executed[0][0].endswith("FOR UPDATE")
    assert loaded.to_dict() == wf.to_dict()


def test_load_transfer_accepts_decoded_jsonb():
    wf = _workflow()
    cur = _FakeCursor(results=[{"id": "t1", "status": "draft", "doc": wf.to_dict()}])
    assert load_transfer(cur, "t1").lines == wf.lines


def test_load_missing_transfer():
    with pytest.raises(RecordNotFound):
        load_transfer(_FakeCursor(), "t-missing")


def test_save_transfer_writes_status_and_doc():
    cur = _FakeCursor(results=[{"id": "t1"}])
    wf = _workflow()
    wf.submit("u1")
    assert save_transfer(cur, wf) is True
    sql, params = cur.executed[0]
    assert "claim_token" not in sql
    assert params[0] == "pending"
    assert json.loads(params[1])["status"] == "pending"
    assert params[2] == "t1"


def test_save_transfer_with_claim_renews_lease_or_reports_loss():
    wf = _workflow()
    cur = _FakeCursor(results=[{"id": "t1"}])
    assert save_transfer(cur, wf, "tok-1") is True
    sql, params = cur.executed[0]
    assert "claimed_at=now()" in sql
    assert "AND claim_token=%s" in sql
    assert params[2:] == ("t1", "tok-1")

    assert save_transfer(_FakeCursor(), wf, "tok-1") is False


def test_claim_transfer_from_approved():
    cur = _FakeCursor(results=[{"id": "t1"}])
    assert claim_transfer(cur, "t1", "tok-1") is True
    sql, params = cur.executed[0]
    assert "claim_token=%s" in sql
    assert params == ("tok-1", "t1", False, 300)
    assert claim_transfer(_FakeCursor(), "t1", "tok-2") is False


def test_claim_transfer_resume_only_takes_expired_claims():
    cur = _FakeCursor(results=[{"id": "t1"}])
    assert claim_transfer(cur, "t1", "tok-2", resume=True, ttl_seconds=60) is True
    sql, params = cur.executed[0]
    assert "claimed_at < now() - interval '1 second' * %s" in sql
    assert params == ("tok-2", "t1", True, 60)



def test_default_store_uses_pooled_connections():
    assert PgInventoryStore()._conn_factory is store_module.get_conn
