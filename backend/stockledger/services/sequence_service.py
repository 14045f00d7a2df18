# Overview: Service-layer operations for reference sequences; allocates the
# per-department counters embedded in generated reference ids.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import ReferenceSequence


class ReferenceSequenceError(Exception):
    """Raised when reference sequence operations fail."""
    pass


def _current_next(department_id: int, kind: str) -> int:
    return (
        db.session.query(ReferenceSequence.next_number)
        .filter_by(department_id=department_id, kind=kind)
        .scalar()
    )


def next_reference_sequence(*, department_id: int, kind: str) -> int:
    """
    Atomically allocate the next sequence number for a department/kind.

    Runs inside the caller's transaction: the UPDATE takes the row lock and
    holds it until the caller commits, so two concurrent allocations never
    return the same number.
    """
    if not department_id:
        raise ReferenceSequenceError("department_id is required")
    if not kind:
        raise ReferenceSequenceError("kind is required")

    stmt = (
        update(ReferenceSequence)
        .where(
            ReferenceSequence.department_id == department_id,
            ReferenceSequence.kind == kind,
        )
        .values(next_number=ReferenceSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        db.session.flush()
        return _current_next(department_id, kind) - 1

    seq = ReferenceSequence(department_id=department_id, kind=kind, next_number=2)
    try:
        # Savepoint so a lost insert race does not discard the caller's work
        with db.session.begin_nested():
            db.session.add(seq)
        return 1
    except IntegrityError:
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        db.session.flush()
        return _current_next(department_id, kind) - 1
