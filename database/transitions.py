# Optimistic state transitions
# Every state change in the escrow core goes through compare_and_set: a single
# UPDATE guarded by the expected current state. Whoever commits first wins,
# everyone else gets rowcount 0 and treats the transition as already done.

from contextlib import contextmanager
from typing import Iterable
from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key


@contextmanager
def unit_of_work(db: Session):
    """
    Commit everything done inside the block on the given session, or roll it
    all back. Services open one of these per transition and never hold it
    across a provider call.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def compare_and_set(
    db: Session,
    model,
    entity_id: str,
    expected_states: Iterable,
    *conditions,
    **values
) -> bool:
    """
    Move a row to new values only if its current state is one of expected_states.

    Extra SQL conditions can be passed positionally (e.g. a lease check).
    Returns True when this call performed the transition.
    """
    stmt = (
        update(model)
        .where(model.id == entity_id, model.state.in_(list(expected_states)), *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    _expire_loaded(db, model, entity_id)
    return result.rowcount == 1


def lock_row(db: Session, model, entity_id: str):
    """SELECT ... FOR UPDATE on one row, always reading the committed values."""
    return (
        db.query(model)
        .filter(model.id == entity_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )


def _expire_loaded(db: Session, model, entity_id: str):
    instance = db.identity_map.get(identity_key(model, entity_id))
    if instance is not None:
        db.expire(instance)
