"""
Durable VM registry.

The registry is the single source of truth for assignment state. Every
operation opens its own session and every state change is a conditional
UPDATE whose WHERE clause admits only the legal source states, so concurrent
callers can never both win the same transition.
"""

from contextlib import contextmanager
from datetime import timedelta
from typing import Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import InvalidTransition, NotFound, RecordNotFound, RegistrationConflict, StorageError
from .logging import get_logger
from .metrics import MetricNames, get_metrics
from .models import PendingReadiness, ReadinessEvent, VmRecord
from .models.api import NewVm, VmFilter, VmView
from .models.base import utcnow
from .persistence import DatabaseManager
from .state_machine import ACTIVE_STATES, VmState, sources_for, validate_transition

# Parked readiness signals older than this are ignored at insert time
PENDING_READINESS_TTL = timedelta(hours=2)

# Upper bound on claim attempts lost to concurrent claimers before giving up
MAX_CLAIM_ATTEMPTS = 64


def _values(states: Iterable[VmState]) -> List[str]:
    return [VmState(s).value for s in states]


class VmRegistry:
    """SQL-backed store of VM records with atomic conditional transitions."""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.logger = get_logger("lablink.registry")
        self.metrics = get_metrics()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Session scope translating driver failures into StorageError."""
        try:
            with self.db.get_session() as session:
                yield session
        except SQLAlchemyError as e:
            raise StorageError(f"Registry operation failed: {e}") from e

    # -- writes ---------------------------------------------------------------

    def insert_batch(self, records: Sequence[NewVm]) -> List[VmView]:
        """Insert new available records in one transaction (all or nothing).

        Readiness signals parked for a new record's instance name or address
        are applied to it in the same transaction, so a VM that reported
        before it was registered goes straight to running when claimed.

        Raises RegistrationConflict when an id is already registered.
        """
        if not records:
            return []

        now = utcnow()
        rows = [
            VmRecord(
                id=r.id,
                fleet=r.fleet,
                instance_name=r.instance_name,
                address=r.address,
                state=VmState.AVAILABLE.value,
                in_use=False,
                created_at=now,
                updated_at=now,
            )
            for r in records
        ]
        with self._session() as session:
            session.add_all(rows)
            try:
                session.flush()
            except IntegrityError as e:
                raise RegistrationConflict([r.id for r in records], reason=str(e.orig)) from e
            early = self._adopt_pending_readiness(session, rows)
            views = [VmView.model_validate(row) for row in rows]

        self.logger.info(
            f"Inserted {len(views)} VM records",
            fleet=records[0].fleet,
            metadata={"vm_ids": [v.id for v in views], "ready_on_insert": early},
        )
        return views

    def _adopt_pending_readiness(self, session: Session, rows: Sequence[VmRecord]) -> List[str]:
        by_name = {}
        for row in rows:
            for name in (row.instance_name, row.address):
                if name:
                    by_name.setdefault(name, row)
        if not by_name:
            return []

        cutoff = utcnow() - PENDING_READINESS_TTL
        parked = session.execute(
            select(PendingReadiness)
            .where(
                PendingReadiness.hostname.in_(list(by_name)),
                PendingReadiness.received_at >= cutoff,
            )
            .order_by(PendingReadiness.received_at)
        ).scalars().all()

        adopted = []
        for signal in parked:
            row = by_name[signal.hostname]
            if row.hostname:
                continue
            row.hostname = signal.hostname
            row.ready_at = signal.received_at
            adopted.append(row.id)

        session.execute(
            delete(PendingReadiness)
            .where(PendingReadiness.hostname.in_(list(by_name)))
            .execution_options(synchronize_session=False)
        )
        session.flush()
        return adopted

    def claim_one(
        self,
        filter: Optional[VmFilter] = None,
        requester: Optional[str] = None,
        payload: Optional[str] = None,
    ) -> VmView:
        """Atomically move one available record to assigned and return it.

        Selection and transition happen in a single UPDATE statement. When a
        concurrent claimer takes the selected row first, the UPDATE matches
        nothing and the next candidate is tried. Raises NotFound when no
        available record matches ``filter``.
        """
        filter = filter or VmFilter()
        eligible = [VmRecord.state == VmState.AVAILABLE.value]
        if filter.fleet:
            eligible.append(VmRecord.fleet == filter.fleet)
        candidate = (
            select(VmRecord.id)
            .where(*eligible)
            .order_by(VmRecord.created_at, VmRecord.id)
            .limit(1)
        )

        for _ in range(MAX_CLAIM_ATTEMPTS):
            now = utcnow()
            stmt = (
                update(VmRecord)
                .where(
                    VmRecord.id == candidate.scalar_subquery(),
                    VmRecord.state == VmState.AVAILABLE.value,
                )
                .values(
                    state=VmState.ASSIGNED.value,
                    assigned_to=requester,
                    command_payload=payload,
                    assigned_at=now,
                    updated_at=now,
                )
                .returning(VmRecord.id)
                .execution_options(synchronize_session=False)
            )
            with self._session() as session:
                claimed_id = session.execute(stmt).scalar_one_or_none()
                if claimed_id is not None:
                    view = VmView.model_validate(session.get(VmRecord, claimed_id))
                    break
                remaining = session.execute(
                    select(func.count()).select_from(VmRecord).where(*eligible)
                ).scalar_one()
            if remaining == 0:
                raise NotFound(f"No available VM matches {filter.model_dump(exclude_none=True)}")
        else:
            raise StorageError(f"Claim contention exceeded {MAX_CLAIM_ATTEMPTS} attempts")

        self.metrics.increment_counter(
            MetricNames.VM_STATE_CHANGES,
            fleet=view.fleet,
            labels={"from": "available", "to": "assigned"},
        )
        return view

    def _transition(self, vm_id: str, target: VmState, **values) -> VmView:
        try:
            return self._apply_transition(vm_id, target, **values)
        except InvalidTransition as e:
            self.logger.log_invalid_transition(e, vm_id=vm_id)
            raise

    def _apply_transition(self, vm_id: str, target: VmState, **values) -> VmView:
        """Conditionally move ``vm_id`` to ``target`` from any legal source state.

        A record already in ``target`` is returned unchanged when the state
        machine allows the self-transition (termination); otherwise the
        conditional UPDATE leaves the row untouched and InvalidTransition is
        raised with the state that blocked it.
        """
        sources = sources_for(target) - {target}
        stmt = (
            update(VmRecord)
            .where(VmRecord.id == vm_id, VmRecord.state.in_(_values(sources)))
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            current = session.execute(
                select(VmRecord.state).where(VmRecord.id == vm_id)
            ).scalar_one_or_none()
            if current is None:
                raise RecordNotFound(vm_id)

            validate_transition(vm_id, VmState(current), target)
            if current == target.value:
                return VmView.model_validate(session.get(VmRecord, vm_id))

            now = utcnow()
            result = session.execute(stmt.values(state=target.value, updated_at=now, **values))
            if result.rowcount == 0:
                # Moved by a concurrent writer between the read and the update
                current = session.execute(
                    select(VmRecord.state).where(VmRecord.id == vm_id)
                ).scalar_one()
                validate_transition(vm_id, VmState(current), target)
                if current == target.value:
                    return VmView.model_validate(session.get(VmRecord, vm_id))
                raise StorageError(f"Concurrent update prevented {vm_id} -> {target.value}")
            view = VmView.model_validate(session.get(VmRecord, vm_id))

        self.logger.log_state_change(vm_id, current, target.value, fleet=view.fleet)
        self.metrics.increment_counter(
            MetricNames.VM_STATE_CHANGES,
            fleet=view.fleet,
            labels={"from": current, "to": target.value},
        )
        return view

    def mark_running(self, vm_id: str, hostname: str) -> VmView:
        """assigned -> running; sets hostname. InvalidTransition from any other state."""
        return self._transition(vm_id, VmState.RUNNING, hostname=hostname, ready_at=utcnow())

    def unwind_assignment(self, vm_id: str) -> VmView:
        """assigned -> available; clears the requester and payload."""
        return self._transition(
            vm_id,
            VmState.AVAILABLE,
            assigned_to=None,
            command_payload=None,
            assigned_at=None,
        )

    def mark_terminated(self, vm_id: str) -> VmView:
        """Move a record to terminated. Already-terminated records are a no-op."""
        return self._transition(vm_id, VmState.TERMINATED, terminated_at=utcnow())

    def mark_terminated_batch(self, vm_ids: Sequence[str]) -> List[str]:
        """Terminate many records in one transaction; returns the ids newly terminated.

        Ids that are already terminated or unknown are skipped.
        """
        if not vm_ids:
            return []

        now = utcnow()
        with self._session() as session:
            newly = list(
                session.execute(
                    update(VmRecord)
                    .where(
                        VmRecord.id.in_(list(vm_ids)),
                        VmRecord.state.in_(_values(ACTIVE_STATES)),
                    )
                    .values(state=VmState.TERMINATED.value, terminated_at=now, updated_at=now)
                    .returning(VmRecord.id)
                    .execution_options(synchronize_session=False)
                ).scalars()
            )

        unknown_or_done = sorted(set(vm_ids) - set(newly))
        self.logger.info(
            f"Terminated {len(newly)} VM records",
            metadata={"terminated": newly, "skipped": unknown_or_done},
        )
        return newly

    # -- readiness ------------------------------------------------------------

    def _hostname_match(self, hostname: str):
        """Records named by ``hostname``, or not yet named but known under that name."""
        unnamed = or_(VmRecord.hostname.is_(None), VmRecord.hostname == "")
        return or_(
            VmRecord.hostname == hostname,
            and_(
                unnamed,
                or_(VmRecord.instance_name == hostname, VmRecord.address == hostname),
            ),
        )

    def find_by_hostname(self, hostname: str, states: Iterable[VmState]) -> Optional[VmView]:
        """Oldest record in ``states`` matching ``hostname``."""
        with self._session() as session:
            record = session.execute(
                select(VmRecord)
                .where(self._hostname_match(hostname), VmRecord.state.in_(_values(states)))
                .order_by(VmRecord.created_at, VmRecord.id)
                .limit(1)
            ).scalar_one_or_none()
            return VmView.model_validate(record) if record is not None else None

    def record_readiness(self, vm_id: str, hostname: str) -> bool:
        """Remember a readiness signal on an available (not yet claimed) record.

        The state is left unchanged; the hostname is only written if none is
        set yet. Returns False if the record is no longer available.
        """
        now = utcnow()
        with self._session() as session:
            result = session.execute(
                update(VmRecord)
                .where(
                    VmRecord.id == vm_id,
                    VmRecord.state == VmState.AVAILABLE.value,
                    or_(VmRecord.hostname.is_(None), VmRecord.hostname == "", VmRecord.hostname == hostname),
                )
                .values(hostname=hostname, ready_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def park_readiness(self, hostname: str) -> bool:
        """Hold a signal that matched no record until a VM under that name is inserted.

        Returns False without parking when an active record matches by the
        time the signal is stored; the caller should match it again.
        """
        with self._session() as session:
            # Write first so the lookup below runs under the write lock
            session.execute(delete(PendingReadiness).where(PendingReadiness.hostname == hostname))
            session.add(PendingReadiness(hostname=hostname, received_at=utcnow()))
            session.flush()
            live = session.execute(
                select(VmRecord.id)
                .where(self._hostname_match(hostname), VmRecord.state.in_(_values(ACTIVE_STATES)))
                .limit(1)
            ).scalar_one_or_none()
            if live is not None:
                session.execute(
                    delete(PendingReadiness).where(PendingReadiness.hostname == hostname)
                )
                return False
        return True

    def pending_readiness(self) -> List[str]:
        """Hostnames of parked readiness signals, oldest first."""
        with self._session() as session:
            return list(
                session.execute(
                    select(PendingReadiness.hostname).order_by(PendingReadiness.received_at)
                ).scalars()
            )

    def enqueue_readiness(self, hostname: str) -> int:
        """Append a readiness signal to the durable outbox."""
        with self._session() as session:
            event = ReadinessEvent(hostname=hostname, created_at=utcnow())
            session.add(event)
            session.flush()
            return event.id

    def fetch_pending_readiness(self, limit: int = 50) -> List[ReadinessEvent]:
        """Unconsumed readiness events in delivery order."""
        with self._session() as session:
            return list(
                session.execute(
                    select(ReadinessEvent)
                    .where(ReadinessEvent.consumed_at.is_(None))
                    .order_by(ReadinessEvent.id)
                    .limit(limit)
                ).scalars()
            )

    def ack_readiness(self, event_id: int) -> None:
        """Mark an outbox event as handled."""
        with self._session() as session:
            session.execute(
                update(ReadinessEvent)
                .where(ReadinessEvent.id == event_id, ReadinessEvent.consumed_at.is_(None))
                .values(consumed_at=utcnow())
                .execution_options(synchronize_session=False)
            )

    # -- VM status reports ----------------------------------------------------

    def _update_reported(self, hostname: str, **values) -> VmView:
        with self._session() as session:
            record = session.execute(
                select(VmRecord)
                .where(
                    self._hostname_match(hostname),
                    VmRecord.state.in_(_values(ACTIVE_STATES)),
                )
                .order_by(VmRecord.created_at, VmRecord.id)
                .limit(1)
            ).scalar_one_or_none()
            if record is None:
                raise RecordNotFound(hostname)
            for key, value in values.items():
                setattr(record, key, value)
            record.updated_at = utcnow()
            session.flush()
            return VmView.model_validate(record)

    def update_in_use(self, hostname: str, in_use: bool) -> VmView:
        """Store the VM-reported in-use flag."""
        return self._update_reported(hostname, in_use=in_use)

    def update_health(self, hostname: str, status: str) -> VmView:
        """Store the VM-reported GPU health status."""
        return self._update_reported(hostname, health_status=status)

    # -- reads ----------------------------------------------------------------

    def _apply_filter(self, stmt, filter: Optional[VmFilter]):
        if filter is None:
            return stmt
        if filter.fleet:
            stmt = stmt.where(VmRecord.fleet == filter.fleet)
        if filter.states:
            stmt = stmt.where(VmRecord.state.in_(_values(filter.states)))
        if filter.assigned_to:
            stmt = stmt.where(VmRecord.assigned_to == filter.assigned_to)
        if filter.hostname:
            stmt = stmt.where(VmRecord.hostname == filter.hostname)
        return stmt

    def get(self, vm_id: str) -> VmView:
        with self._session() as session:
            record = session.get(VmRecord, vm_id)
            if record is None:
                raise RecordNotFound(vm_id)
            return VmView.model_validate(record)

    def list(self, filter: Optional[VmFilter] = None) -> List[VmView]:
        """Read-only query for admin display."""
        stmt = self._apply_filter(select(VmRecord), filter).order_by(
            VmRecord.created_at, VmRecord.id
        )
        with self._session() as session:
            return [VmView.model_validate(r) for r in session.execute(stmt).scalars()]

    def count(self, filter: Optional[VmFilter] = None) -> int:
        stmt = self._apply_filter(select(func.count()).select_from(VmRecord), filter)
        with self._session() as session:
            return session.execute(stmt).scalar_one()

    def count_by_state(self, fleet: Optional[str] = None) -> dict:
        stmt = select(VmRecord.state, func.count()).group_by(VmRecord.state)
        if fleet:
            stmt = stmt.where(VmRecord.fleet == fleet)
        with self._session() as session:
            counts = {state.value: 0 for state in VmState}
            for state, n in session.execute(stmt):
                counts[state] = n
            return counts
