"""Dense ordinal ordering of siblings inside a container.

Cards are ranked inside their lane and lanes inside their board with the
same rule: the ``order`` values of the siblings in a container are always
exactly ``0 .. n-1``. This module holds the single implementation of that
rule. A :class:`SiblingScope` says which entity and which container column
are involved; everything else is shared.

The planning step (:func:`plan_move`) is pure so it can be reasoned about and
tested without a database. :func:`apply_move` and :func:`compact_after_delete`
turn plans into bulk ``UPDATE`` statements on an open session and must be
called inside the caller's transaction together with the item's own write.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import func, inspect, select, update
from sqlalchemy.orm import Session

from .db import Board, Card, Lane
from .errors import InvalidInput, OrderingInvariantViolation


@dataclass(frozen=True)
class SiblingScope:
    """Entity ranked by ``order`` and the column naming its container."""

    model: Any
    container_attr: str
    container_model: Any

    @property
    def container_column(self):
        return getattr(self.model, self.container_attr)

    @property
    def name(self) -> str:
        return self.model.__tablename__


CARD_SCOPE = SiblingScope(Card, "lane_id", Lane)
LANE_SCOPE = SiblingScope(Lane, "board_id", Board)


@dataclass(frozen=True)
class Shift:
    """Add ``delta`` to every sibling in ``container_id`` whose order lies in
    ``[lower, upper]``. ``upper`` of ``None`` means unbounded."""

    container_id: str
    lower: int
    upper: Optional[int]
    delta: int


@dataclass(frozen=True)
class MovePlan:
    container_id: str
    order: int
    shifts: tuple[Shift, ...] = field(default_factory=tuple)
    is_noop: bool = False

    @property
    def touched(self) -> set[str]:
        return {self.container_id} | {s.container_id for s in self.shifts}


def plan_move(
    source_container: str,
    current_order: int,
    target_container: str,
    target_position: int,
    source_size: int,
    target_size: int,
) -> MovePlan:
    """Work out the shifts that keep both containers dense after a move.

    ``source_size`` counts the moving item; ``target_size`` is the size of the
    destination as the caller sees it before the move (equal to
    ``source_size`` for a move inside one container). Positions past the end
    are clamped to an append.
    """
    if target_position < 0:
        raise InvalidInput("position must be >= 0", {"position": target_position})

    if source_container == target_container:
        position = min(target_position, source_size - 1)
        if position == current_order:
            return MovePlan(source_container, current_order, is_noop=True)
        if position > current_order:
            shift = Shift(source_container, current_order + 1, position, -1)
        else:
            shift = Shift(source_container, position, current_order - 1, +1)
        return MovePlan(source_container, position, (shift,))

    position = min(target_position, target_size)
    return MovePlan(
        target_container,
        position,
        (
            Shift(source_container, current_order + 1, None, -1),
            Shift(target_container, position, None, +1),
        ),
    )


def next_order(session: Session, scope: SiblingScope, container_id: str) -> int:
    """Order for a new sibling appended at the end of ``container_id``."""
    current = session.scalar(
        select(func.max(scope.model.order)).where(scope.container_column == container_id)
    )
    return 0 if current is None else current + 1


def count_siblings(session: Session, scope: SiblingScope, container_id: str) -> int:
    return session.scalar(
        select(func.count()).select_from(scope.model).where(scope.container_column == container_id)
    )


def lock_containers(session: Session, scope: SiblingScope, *container_ids: str) -> None:
    """Row-lock the containers touched by a move where the engine supports it.

    SQLite ignores ``FOR UPDATE``; there the whole transaction already holds
    the write lock (see :class:`taskboard.db.Database`).
    """
    ids = sorted(set(container_ids))
    session.execute(
        select(scope.container_model.id).where(scope.container_model.id.in_(ids)).with_for_update()
    ).all()


def _lock_current_container(session: Session, scope: SiblingScope, item, target_container_id: str) -> str:
    """Lock the item's container and the target, then re-read the item.

    The item may have been moved by another transaction while we waited for
    the lock; in that case its new container is locked as well and the item
    is read again. Returns the container the item is in once it is locked.
    """
    container_id = getattr(item, scope.container_attr)
    while True:
        lock_containers(session, scope, container_id, target_container_id)
        session.refresh(item, with_for_update=True)
        current = getattr(item, scope.container_attr)
        if current == container_id:
            return current
        container_id = current


def _apply_shift(session: Session, scope: SiblingScope, shift: Shift, exclude_id: str) -> None:
    model = scope.model
    stmt = update(model).where(
        scope.container_column == shift.container_id,
        model.order >= shift.lower,
        model.id != exclude_id,
    )
    if shift.upper is not None:
        stmt = stmt.where(model.order <= shift.upper)
    session.execute(
        stmt.values(order=model.order + shift.delta).execution_options(synchronize_session=False)
    )


def apply_move(session: Session, scope: SiblingScope, item, target_container_id: str, target_position: int) -> MovePlan:
    """Move ``item`` to ``target_position`` of ``target_container_id``.

    Reads the current sizes, shifts the affected siblings and updates the item
    itself, all on ``session``. Returns the plan that was applied; a no-op
    plan leaves the session untouched.
    """
    source_container_id = _lock_current_container(session, scope, item, target_container_id)

    source_size = count_siblings(session, scope, source_container_id)
    if target_container_id == source_container_id:
        target_size = source_size
    else:
        target_size = count_siblings(session, scope, target_container_id)

    plan = plan_move(
        source_container_id,
        item.order,
        target_container_id,
        target_position,
        source_size,
        target_size,
    )
    if plan.is_noop:
        return plan

    for shift in plan.shifts:
        _apply_shift(session, scope, shift, exclude_id=item.id)
    # Bulk updates bypassed the identity map; drop stale sibling state.
    _expire_siblings(session, scope, item, {s.container_id for s in plan.shifts})

    setattr(item, scope.container_attr, plan.container_id)
    item.order = plan.order
    session.flush()
    return plan


def compact_after_delete(session: Session, scope: SiblingScope, container_id: str, deleted_order: int) -> None:
    """Close the gap left by a removed sibling."""
    session.execute(
        update(scope.model)
        .where(scope.container_column == container_id, scope.model.order > deleted_order)
        .values(order=scope.model.order - 1)
        .execution_options(synchronize_session=False)
    )
    _expire_siblings(session, scope, None, {container_id})


def check_dense(session: Session, scope: SiblingScope, container_id: str) -> None:
    """Raise if the orders in ``container_id`` are not exactly ``0 .. n-1``."""
    orders = session.scalars(
        select(scope.model.order).where(scope.container_column == container_id).order_by(scope.model.order)
    ).all()
    if list(orders) != list(range(len(orders))):
        raise OrderingInvariantViolation(
            f"{scope.name} ordering corrupted",
            {"container": container_id, "orders": list(orders)},
        )


def _expire_siblings(session: Session, scope: SiblingScope, item, container_ids: set[str]) -> None:
    for obj in list(session.identity_map.values()):
        if obj is item or not isinstance(obj, scope.model):
            continue
        state = inspect(obj)
        container = state.dict.get(scope.container_attr)
        if container is None or container in container_ids:
            session.expire(obj, ["order"])
