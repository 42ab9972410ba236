from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Literal, Optional, Protocol, Sequence

from .config import settings
from .errors import (
    ConcurrentModification,
    InvalidTransition,
    PermissionDenied,
    RecordNotFound,
    TransferClaimLost,
)
from .logs import json_log
from .picking import InventoryRecord, ProductAllocationPlan
from .transfers import split_pieces
from .units import UnitQuantity, to_pieces


TransferStatus = Literal["draft", "pending", "approved", "executing", "completed", "failed", "cancelled"]

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

_ALLOWED: dict[str, frozenset] = {
    "draft": frozenset({"pending", "cancelled"}),
    "pending": frozenset({"approved", "cancelled"}),
    "approved": frozenset({"executing", "cancelled"}),
    "executing": frozenset({"completed", "failed"}),
}


@dataclass(frozen=True)
class TransferLine:
    line_id: str
    record_id: str
    product_code: str
    source_location: str
    destination_location: str
    pieces: int


@dataclass(frozen=True)
class MutationInstruction:
    """What the store must apply atomically for one executed line."""

    line_id: str
    record_id: str
    source_location: str
    destination_location: str
    pieces: int
    expected_source_quantity: UnitQuantity
    new_source_quantity: UnitQuantity
    destination_quantity: UnitQuantity

    @property
    def relocates(self) -> bool:
        # The whole record moves; no new row is needed at the destination.
        return self.new_source_quantity.is_zero()


@dataclass(frozen=True)
class AppliedMutation:
    instruction: MutationInstruction
    destination_record_id: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    from_status: str
    to_status: str
    actor: str
    at: datetime
    note: Optional[str] = None


def applied_to_dict(applied: AppliedMutation) -> dict[str, Any]:
    return {
        "instruction": asdict(applied.instruction),
        "destination_record_id": applied.destination_record_id,
    }


def applied_from_dict(raw: dict[str, Any]) -> AppliedMutation:
    ins = dict(raw["instruction"])
    for k in ("expected_source_quantity", "new_source_quantity", "destination_quantity"):
        ins[k] = UnitQuantity(**ins[k])
    return AppliedMutation(
        instruction=MutationInstruction(**ins),
        destination_record_id=raw.get("destination_record_id"),
    )


class InventoryStore(Protocol):
    def get_record(self, record_id: str) -> InventoryRecord: ...

    def find_applied(self, line_id: str) -> Optional[AppliedMutation]:
        """The mutation currently in effect for `line_id`, if one was committed and not reverted."""
        ...

    def apply(self, instruction: MutationInstruction, actor: str) -> Optional[str]:
        """
        Conditionally apply one instruction; raise ConcurrentModification if the row moved on
        or the line is already applied.
        """
        ...

    def revert(self, applied: AppliedMutation, actor: str) -> None: ...


def transfer_lines_from_plans(
    plans: Iterable[ProductAllocationPlan],
    destination_location: Optional[str] = None,
) -> list[TransferLine]:
    dest = (destination_location or settings.picking_destination_location).strip()
    out: list[TransferLine] = []
    for p in plans:
        for ln in p.lines:
            if ln.to_pick <= 0:
                continue
            out.append(
                TransferLine(
                    line_id=f"{p.product_code}:{ln.record_id}",
                    record_id=ln.record_id,
                    product_code=p.product_code,
                    source_location=ln.location,
                    destination_location=dest,
                    pieces=ln.to_pick,
                )
            )
    return out


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TransferWorkflow:
    """
    draft -> pending -> approved -> executing -> completed | failed
    cancelled is reachable from draft, pending and approved.

    Execution is all-or-nothing: a line that cannot be written after retries
    reverts every line already applied before the transfer is marked failed.
    A line whose revert fails stays in `applied` and is named in `failure`.
    """

    def __init__(
        self,
        transfer_id: str,
        lines: Sequence[TransferLine],
        status: str = "draft",
        created_by: Optional[str] = None,
        history: Optional[list[Transition]] = None,
        applied: Optional[dict[str, AppliedMutation]] = None,
        failure: Optional[str] = None,
    ):
        ids = [ln.line_id for ln in lines]
        if len(ids) != len(set(ids)):
            raise ValueError("transfer line ids must be unique")
        self.transfer_id = transfer_id
        self.lines = list(lines)
        self.status = status
        self.created_by = created_by
        self.history = list(history or [])
        self.applied: dict[str, AppliedMutation] = dict(applied or {})
        self.failure = failure

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mutations(self) -> list[MutationInstruction]:
        return [a.instruction for a in self.applied.values()]

    def _transition(self, target: str, actor: str, note: Optional[str] = None) -> None:
        if target not in _ALLOWED.get(self.status, frozenset()):
            raise InvalidTransition(self.status, target)
        t = Transition(from_status=self.status, to_status=target, actor=actor, at=_now(), note=note)
        self.history.append(t)
        self.status = target
        json_log(
            "info",
            "transfer.transition",
            transfer_id=self.transfer_id,
            from_status=t.from_status,
            to_status=t.to_status,
            actor=actor,
        )

    @staticmethod
    def _require_actor(actor: Optional[str]) -> str:
        a = (actor or "").strip()
        if not a:
            raise PermissionDenied("an authenticated actor is required")
        return a

    def submit(self, actor: str) -> "TransferWorkflow":
        actor = self._require_actor(actor)
        if not self.lines:
            raise InvalidTransition(self.status, "pending")
        self._transition("pending", actor)
        return self

    def approve(self, actor: str, allowed: bool) -> "TransferWorkflow":
        actor = self._require_actor(actor)
        if not allowed:
            raise PermissionDenied("approving transfers requires elevated permission")
        self._transition("approved", actor)
        return self

    def cancel(self, actor: str, reason: Optional[str] = None) -> "TransferWorkflow":
        actor = self._require_actor(actor)
        self._transition("cancelled", actor, note=reason)
        return self

    def execute(
        self,
        store: InventoryStore,
        actor: str,
        max_retries: Optional[int] = None,
        on_progress: Optional[Callable[["TransferWorkflow"], None]] = None,
    ) -> "TransferWorkflow":
        """
        Apply every line through `store`. A transfer left in `executing` (e.g. after a crash)
        can be executed again; lines already applied, here or in the store's movement log,
        are never applied twice.
        `on_progress` runs after each applied or reverted line so callers can persist state.
        If it raises TransferClaimLost the run stops as is: another executor owns the transfer.
        """
        actor = self._require_actor(actor)
        retries = settings.transfer_max_retries if max_retries is None else max(0, int(max_retries))
        if self.status == "approved":
            self._transition("executing", actor)
        elif self.status != "executing":
            raise InvalidTransition(self.status, "executing")

        try:
            for line in self.lines:
                if line.line_id in self.applied:
                    continue
                self.applied[line.line_id] = self._apply_line(store, line, actor, retries)
                if on_progress:
                    on_progress(self)
        except TransferClaimLost:
            raise
        except Exception as ex:
            self._fail(store, actor, ex, on_progress)
            if isinstance(ex, ConcurrentModification):
                return self
            raise

        self._transition("completed", actor)
        return self

    def _fail(self, store: InventoryStore, actor: str, error: Exception, on_progress=None) -> None:
        stuck = self._compensate(store, actor, on_progress)
        self.failure = str(error)
        if stuck:
            self.failure += f"; not reverted: {', '.join(stuck)}"
        self._transition("failed", actor, note=self.failure)

    def _apply_line(self, store: InventoryStore, line: TransferLine, actor: str, retries: int) -> AppliedMutation:
        attempt = 0
        while True:
            try:
                prior = store.find_applied(line.line_id)
                if prior is not None:
                    json_log("info", "transfer.line.replayed", transfer_id=self.transfer_id, line_id=line.line_id)
                    return prior
                try:
                    rec = store.get_record(line.record_id)
                except RecordNotFound:
                    raise ConcurrentModification(line.record_id, "inventory row no longer exists")
                if to_pieces(rec.quantity) < line.pieces:
                    raise ConcurrentModification(line.record_id, "not enough stock left at source")
                split = split_pieces(rec, line.pieces)
                instruction = MutationInstruction(
                    line_id=line.line_id,
                    record_id=rec.id,
                    source_location=rec.location,
                    destination_location=line.destination_location,
                    pieces=line.pieces,
                    expected_source_quantity=rec.quantity,
                    new_source_quantity=split.source_remainder,
                    destination_quantity=split.destination_allocation,
                )
                dest_id = store.apply(instruction, actor)
                return AppliedMutation(instruction=instruction, destination_record_id=dest_id)
            except ConcurrentModification as ex:
                attempt += 1
                if attempt > retries:
                    raise
                json_log(
                    "warning",
                    "transfer.line.retry",
                    transfer_id=self.transfer_id,
                    line_id=line.line_id,
                    attempt=attempt,
                    error=str(ex),
                )

    def _compensate(self, store: InventoryStore, actor: str, on_progress=None) -> list[str]:
        """
        Revert applied lines newest first. A line whose revert fails stays in `applied`
        and the rest are still reverted; returns the line ids left in place.
        """
        if not self.applied:
            return []
        reverted: list[str] = []
        stuck: list[str] = []
        for line_id, applied in reversed(list(self.applied.items())):
            try:
                store.revert(applied, actor)
            except Exception as ex:
                stuck.append(line_id)
                json_log(
                    "error",
                    "transfer.revert.failed",
                    transfer_id=self.transfer_id,
                    line_id=line_id,
                    error=str(ex),
                )
                continue
            reverted.append(line_id)
            del self.applied[line_id]
            if on_progress:
                on_progress(self)
        json_log(
            "error" if stuck else "warning",
            "transfer.compensated",
            transfer_id=self.transfer_id,
            lines=reverted,
            not_reverted=stuck,
        )
        return stuck

    def to_dict(self) -> dict[str, Any]:
        return {
            "transfer_id": self.transfer_id,
            "status": self.status,
            "created_by": self.created_by,
            "failure": self.failure,
            "lines": [asdict(ln) for ln in self.lines],
            "history": [asdict(t) for t in self.history],
            "applied": {lid: applied_to_dict(a) for lid, a in self.applied.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransferWorkflow":
        def _at(v: Any) -> datetime:
            return v if isinstance(v, datetime) else datetime.fromisoformat(str(v))

        return cls(
            transfer_id=str(data["transfer_id"]),
            lines=[TransferLine(**ln) for ln in (data.get("lines") or [])],
            status=str(data.get("status") or "draft"),
            created_by=data.get("created_by"),
            history=[Transition(**{**t, "at": _at(t["at"])}) for t in (data.get("history") or [])],
            applied={lid: applied_from_dict(a) for lid, a in (data.get("applied") or {}).items()},
            failure=data.get("failure"),
        )


def run_transfer_workflow(
    workflow: TransferWorkflow,
    actor: str,
    store: InventoryStore,
    can_approve: bool,
    max_retries: Optional[int] = None,
    on_progress: Optional[Callable[[TransferWorkflow], None]] = None,
) -> TransferWorkflow:
    """Drive a transfer from wherever it is to a terminal state."""
    if workflow.status == "draft":
        workflow.submit(actor)
    if workflow.status == "pending":
        workflow.approve(actor, can_approve)
    if workflow.status in {"approved", "executing"}:
        workflow.execute(store, actor, max_retries=max_retries, on_progress=on_progress)
    return workflow
