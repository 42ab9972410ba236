import json

import pytest

pytest.importorskip("psycopg")

from wms.app import main
from wms.app.errors import (
    ConcurrentModification,
    ConservationViolation,
    InvalidQuantity,
    InvalidTransition,
    PermissionDenied,
    RecordNotFound,
    TransferClaimLost,
)


class _Req:
    class _State:
        request_id = "rid-1"

    class _Url:
        path = "/inventory/transfers/t1/execute"

    state = _State()
    url = _Url()
    method = "POST"
    headers = {}


def _body(resp):
    return json.loads(resp.body)


def test_domain_errors_map_to_http_statuses():
    assert main._invalid_quantity(_Req(), InvalidQuantity("pieces must be >= 0")).status_code == 400
    assert main._permission_denied(_Req(), PermissionDenied("nope")).status_code == 403
    assert main._record_not_found(_Req(), RecordNotFound("transfer not found: t1")).status_code == 404


def test_invalid_transition_reports_states():
    resp = main._invalid_transition(_Req(), InvalidTransition("completed", "cancelled"))
    assert resp.status_code == 409
    assert _body(resp)["current"] == "completed"
    assert _body(resp)["target"] == "cancelled"


def test_concurrent_modification_is_conflict():
    resp = main._concurrent_modification(_Req(), ConcurrentModification("r1"))
    assert resp.status_code == 409
    assert _body(resp)["record_id"] == "r1"


def test_lost_transfer_claim_is_conflict():
    resp = main._transfer_claim_lost(_Req(), TransferClaimLost("t1"))
    assert resp.status_code == 409
    assert _body(resp)["transfer_id"] == "t1"


def test_conservation_violation_is_logged_server_error(capsys):
    resp = main._conservation_violation(_Req(), ConservationViolation("split changed stock"))
    assert resp.status_code == 500
    assert _body(resp)["request_id"] == "rid-1"
    logs = [json.loads(ln) for ln in capsys.readouterr().err.splitlines()]
    assert logs[-1]["event"] == "inventory.conservation_violation"


def test_error_detail_hidden_outside_dev(monkeypatch):
    monkeypatch.setattr(main.settings, "env", "prod")
    resp = main._unhandled_exception(_Req(), RuntimeError("db password is hunter2"))
    assert resp.status_code == 500
    assert "error" not in _body(resp)


def test_routes_are_registered():
    paths = {r.path for r in main.app.routes}
    assert "/picking/plans/preview" in paths
    assert "/picking/plans" in paths
    assert "/inventory/transfers/{transfer_id}/execute" in paths
    assert "/health" in paths
