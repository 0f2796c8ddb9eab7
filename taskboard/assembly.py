"""Read model for a whole board.

Lanes come back in ascending ``order``, each lane's cards in ascending
``order`` and each card's checklist with the assignee resolved. Nothing here
writes to the database.
"""
from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .db import Board, Card, ChecklistItem, Lane, Priority, User
from .errors import NotFound
from .schemas import (
    BoardOut,
    BoardSummary,
    BoardView,
    CardOut,
    CardView,
    ChecklistItemOut,
    LaneOut,
    LaneView,
    UserOut,
    UserSummary,
)

PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


def user_summary(user: Optional[User]) -> Optional[UserSummary]:
    if user is None:
        return None
    return UserSummary(id=user.id, name=user.name, avatarUrl=user.avatar_url)


def user_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        name=user.name,
        avatarUrl=user.avatar_url,
        externalChatId=user.external_chat_id,
    )


def board_out(board: Board) -> BoardOut:
    return BoardOut(
        id=board.id,
        name=board.name,
        createdAt=board.created_at,
        updatedAt=board.updated_at,
    )


def board_summary(board: Board) -> BoardSummary:
    """Requires ``board.lanes`` and their cards to be loaded."""
    return BoardSummary(
        id=board.id,
        name=board.name,
        createdAt=board.created_at,
        updatedAt=board.updated_at,
        laneCount=len(board.lanes),
        cardCount=sum(len(lane.cards) for lane in board.lanes),
    )


def lane_out(lane: Lane) -> LaneOut:
    return LaneOut(
        id=lane.id,
        boardId=lane.board_id,
        title=lane.title,
        order=lane.order,
        createdAt=lane.created_at,
        updatedAt=lane.updated_at,
    )


def card_out(card: Card) -> CardOut:
    return CardOut(
        id=card.id,
        laneId=card.lane_id,
        title=card.title,
        description=card.description,
        priority=card.priority,
        order=card.order,
        createdAt=card.created_at,
        updatedAt=card.updated_at,
    )


def checklist_item_out(item: ChecklistItem) -> ChecklistItemOut:
    """Requires ``item.assigned_to`` to be loaded."""
    return ChecklistItemOut(
        id=item.id,
        cardId=item.card_id,
        text=item.text,
        completed=item.completed,
        assignedToUserId=item.assigned_to_user_id,
        assignedTo=user_summary(item.assigned_to),
        createdAt=item.created_at,
        updatedAt=item.updated_at,
    )


def assemble_board(session: Session, board_id: str) -> BoardView:
    stmt = (
        select(Board)
        .where(Board.id == board_id)
        .options(
            selectinload(Board.lanes)
            .selectinload(Lane.cards)
            .selectinload(Card.checklist_items)
            .selectinload(ChecklistItem.assigned_to)
        )
    )
    board = session.scalar(stmt)
    if board is None:
        raise NotFound.for_entity("board", board_id)

    lanes = []
    for lane in sorted(board.lanes, key=lambda l: (l.order, l.id)):
        cards = [
            CardView(
                **card_out(card).model_dump(),
                checklist=[
                    checklist_item_out(item)
                    for item in sorted(card.checklist_items, key=lambda i: (i.created_at, i.id))
                ],
            )
            for card in sorted(lane.cards, key=lambda c: (c.order, c.id))
        ]
        lanes.append(LaneView(**lane_out(lane).model_dump(), cards=cards))
    return BoardView(**board_out(board).model_dump(), lanes=lanes)


def sort_by_priority(view: BoardView) -> BoardView:
    """Display-only reordering of every lane's cards, highest priority first.

    Cards keep their stored ``order`` values; ties fall back to them.
    """
    lanes = [
        lane.model_copy(
            update={
                "cards": sorted(lane.cards, key=lambda c: (PRIORITY_RANK[c.priority], c.order))
            }
        )
        for lane in view.lanes
    ]
    return view.model_copy(update={"lanes": lanes})
