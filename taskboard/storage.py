from __future__ import annotations

import logging
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from . import ordering
from .assembly import assemble_board
from .db import Board, Card, ChecklistItem, Database, Lane, Priority, User
from .errors import InvalidInput, NotAssigned, NotFound
from .events import CHECKLIST_ASSIGNED, AssignmentEvent, EventBus
from .ordering import CARD_SCOPE, LANE_SCOPE
from .schemas import BoardView
from .utils import clean_text, new_uuid

logger = logging.getLogger(__name__)

UNSET: Any = object()


def parse_priority(value) -> Priority:
    if isinstance(value, Priority):
        return value
    try:
        return Priority(value)
    except ValueError:
        raise InvalidInput(
            "priority must be one of LOW, MEDIUM, HIGH", {"priority": value}
        ) from None


class Store:
    """Relational store for boards, lanes, cards, checklist items and users.

    Every public method is one transaction. Ordering changes go through
    :mod:`taskboard.ordering` and the touched containers are re-checked for
    density before the transaction is allowed to commit.
    """

    def __init__(self, db: Database, events: Optional[EventBus] = None) -> None:
        self.db = db
        self.events = events or EventBus()

    def _get(self, session: Session, model, entity_id: str, label: str):
        obj = session.get(model, entity_id)
        if obj is None:
            raise NotFound.for_entity(label, entity_id)
        return obj

    def _verify(self, session: Session, scope, *container_ids: str) -> None:
        session.flush()
        for container_id in set(container_ids):
            ordering.check_dense(session, scope, container_id)

    # === Board operations ===
    def list_boards(self) -> List[Board]:
        with self.db.read() as session:
            stmt = (
                select(Board)
                .options(selectinload(Board.lanes).selectinload(Lane.cards))
                .order_by(Board.created_at.desc())
            )
            return list(session.scalars(stmt).all())

    def get_board(self, board_id: str) -> Board:
        with self.db.read() as session:
            return self._get(session, Board, board_id, "board")

    def create_board(self, name: str) -> Board:
        with self.db.transaction() as session:
            board = Board(id=new_uuid(), name=clean_text(name, "name", 140))
            session.add(board)
            session.flush()
            logger.info("Board created: %s", board.id)
            return board

    def update_board(self, board_id: str, name: str) -> Board:
        with self.db.transaction() as session:
            board = self._get(session, Board, board_id, "board")
            board.name = clean_text(name, "name", 140)
            session.flush()
            return board

    def delete_board(self, board_id: str) -> None:
        with self.db.transaction() as session:
            board = self._get(session, Board, board_id, "board")
            session.delete(board)
            logger.info("Board deleted: %s", board_id)

    # === Lane operations ===
    def get_lane(self, lane_id: str) -> Lane:
        with self.db.read() as session:
            return self._get(session, Lane, lane_id, "lane")

    def create_lane(self, board_id: str, title: str) -> Lane:
        with self.db.transaction() as session:
            self._get(session, Board, board_id, "board")
            ordering.lock_containers(session, LANE_SCOPE, board_id)
            lane = Lane(
                id=new_uuid(),
                board_id=board_id,
                title=clean_text(title, "title", 140),
                order=ordering.next_order(session, LANE_SCOPE, board_id),
            )
            session.add(lane)
            self._verify(session, LANE_SCOPE, board_id)
            return lane

    def update_lane(self, lane_id: str, title: str) -> Lane:
        with self.db.transaction() as session:
            lane = self._get(session, Lane, lane_id, "lane")
            lane.title = clean_text(title, "title", 140)
            session.flush()
            return lane

    def move_lane(self, lane_id: str, target_board_id: Optional[str], position: int) -> Lane:
        with self.db.transaction() as session:
            lane = self._get(session, Lane, lane_id, "lane")
            source_board_id = lane.board_id
            target_board_id = target_board_id or source_board_id
            if target_board_id != source_board_id:
                self._get(session, Board, target_board_id, "board")
            plan = ordering.apply_move(session, LANE_SCOPE, lane, target_board_id, position)
            if not plan.is_noop:
                self._verify(session, LANE_SCOPE, *plan.touched)
                session.refresh(lane)
                logger.info("Lane %s moved to %s@%d", lane_id, plan.container_id, plan.order)
            return lane

    def delete_lane(self, lane_id: str) -> None:
        with self.db.transaction() as session:
            lane = self._get(session, Lane, lane_id, "lane")
            board_id, deleted_order = lane.board_id, lane.order
            ordering.lock_containers(session, LANE_SCOPE, board_id)
            session.delete(lane)
            session.flush()
            ordering.compact_after_delete(session, LANE_SCOPE, board_id, deleted_order)
            self._verify(session, LANE_SCOPE, board_id)

    # === Card operations ===
    def get_card(self, card_id: str) -> Card:
        with self.db.read() as session:
            return self._get(session, Card, card_id, "card")

    def create_card(
        self,
        lane_id: str,
        title: str,
        description: Optional[str] = None,
        priority=None,
    ) -> Card:
        with self.db.transaction() as session:
            self._get(session, Lane, lane_id, "lane")
            ordering.lock_containers(session, CARD_SCOPE, lane_id)
            card = Card(
                id=new_uuid(),
                lane_id=lane_id,
                title=clean_text(title, "title", 200),
                description=(description or "").strip(),
                priority=parse_priority(priority) if priority is not None else Priority.MEDIUM,
                order=ordering.next_order(session, CARD_SCOPE, lane_id),
            )
            session.add(card)
            self._verify(session, CARD_SCOPE, lane_id)
            return card

    def update_card(
        self,
        card_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        priority=None,
    ) -> Card:
        with self.db.transaction() as session:
            card = self._get(session, Card, card_id, "card")
            if title is not None:
                card.title = clean_text(title, "title", 200)
            if description is not None:
                card.description = description.strip()
            if priority is not None:
                card.priority = parse_priority(priority)
            session.flush()
            return card

    def move_card(self, card_id: str, target_lane_id: Optional[str], position: int) -> Card:
        with self.db.transaction() as session:
            card = self._get(session, Card, card_id, "card")
            source_lane_id = card.lane_id
            target_lane_id = target_lane_id or source_lane_id
            if target_lane_id != source_lane_id:
                self._get(session, Lane, target_lane_id, "lane")
            plan = ordering.apply_move(session, CARD_SCOPE, card, target_lane_id, position)
            if not plan.is_noop:
                self._verify(session, CARD_SCOPE, *plan.touched)
                session.refresh(card)
                logger.info("Card %s moved to %s@%d", card_id, plan.container_id, plan.order)
            return card

    def delete_card(self, card_id: str) -> None:
        with self.db.transaction() as session:
            card = self._get(session, Card, card_id, "card")
            lane_id, deleted_order = card.lane_id, card.order
            ordering.lock_containers(session, CARD_SCOPE, lane_id)
            session.delete(card)
            session.flush()
            ordering.compact_after_delete(session, CARD_SCOPE, lane_id, deleted_order)
            self._verify(session, CARD_SCOPE, lane_id)

    # === Checklist operations ===
    def get_checklist_item(self, item_id: str) -> ChecklistItem:
        with self.db.read() as session:
            item = self._get(session, ChecklistItem, item_id, "checklist item")
            session.refresh(item, ["assigned_to"])
            return item

    def create_checklist_item(
        self,
        card_id: str,
        text: str,
        assigned_to_user_id: Optional[str] = None,
    ) -> ChecklistItem:
        event = None
        with self.db.transaction() as session:
            card = self._get(session, Card, card_id, "card")
            assignee = None
            if assigned_to_user_id:
                assignee = self._get(session, User, assigned_to_user_id, "user")
            item = ChecklistItem(
                id=new_uuid(),
                card_id=card.id,
                text=clean_text(text, "text", 2000),
                completed=False,
                assigned_to_user_id=assignee.id if assignee else None,
            )
            session.add(item)
            session.flush()
            session.refresh(item, ["assigned_to"])
            if assignee is not None:
                event = self._assignment_event(item, card, assignee)
        if event is not None:
            self.events.emit(CHECKLIST_ASSIGNED, event)
        return item

    def update_checklist_item(
        self,
        item_id: str,
        text=UNSET,
        completed=UNSET,
        assigned_to_user_id=UNSET,
    ) -> ChecklistItem:
        """Patch an item. ``assigned_to_user_id=None`` clears the assignment."""
        event = None
        with self.db.transaction() as session:
            item = self._get(session, ChecklistItem, item_id, "checklist item")
            if text is not UNSET:
                item.text = clean_text(text, "text", 2000)
            if completed is not UNSET:
                item.completed = bool(completed)
            if assigned_to_user_id is not UNSET:
                previous = item.assigned_to_user_id
                if assigned_to_user_id:
                    assignee = self._get(session, User, assigned_to_user_id, "user")
                    item.assigned_to_user_id = assignee.id
                    if assignee.id != previous:
                        event = self._assignment_event(item, item.card, assignee)
                else:
                    item.assigned_to_user_id = None
            session.flush()
            session.refresh(item)
            session.refresh(item, ["assigned_to"])
        if event is not None:
            self.events.emit(CHECKLIST_ASSIGNED, event)
        return item

    def delete_checklist_item(self, item_id: str) -> None:
        with self.db.transaction() as session:
            item = self._get(session, ChecklistItem, item_id, "checklist item")
            session.delete(item)

    def list_open_items_for_user(self, user_id: str) -> List[ChecklistItem]:
        with self.db.read() as session:
            stmt = (
                select(ChecklistItem)
                .options(selectinload(ChecklistItem.card))
                .where(
                    ChecklistItem.assigned_to_user_id == user_id,
                    ChecklistItem.completed.is_(False),
                )
                .order_by(ChecklistItem.created_at)
            )
            return list(session.scalars(stmt).all())

    def complete_item_for_user(self, item_id: str, user_id: str) -> ChecklistItem:
        with self.db.transaction() as session:
            item = self._get(session, ChecklistItem, item_id, "checklist item")
            if item.assigned_to_user_id != user_id:
                raise NotAssigned("item is not assigned to this user", {"id": item_id})
            item.completed = True
            session.flush()
            session.refresh(item, ["card"])
            return item

    @staticmethod
    def _assignment_event(item: ChecklistItem, card: Card, user: User) -> AssignmentEvent:
        return AssignmentEvent(
            item_id=item.id,
            user_id=user.id,
            external_chat_id=user.external_chat_id,
            card_title=card.title,
            item_text=item.text,
        )

    # === User operations ===
    def get_user(self, user_id: str) -> User:
        with self.db.read() as session:
            return self._get(session, User, user_id, "user")

    def list_users(self) -> List[User]:
        with self.db.read() as session:
            return list(session.scalars(select(User).order_by(User.name)).all())

    def find_user_by_external_chat_id(self, external_chat_id: str) -> Optional[User]:
        with self.db.read() as session:
            return session.scalar(select(User).where(User.external_chat_id == external_chat_id))

    def upsert_user_by_external_chat_id(
        self,
        external_chat_id: str,
        name: str,
        avatar_url: Optional[str] = None,
    ) -> User:
        if not external_chat_id:
            raise InvalidInput("external chat id is required", {"field": "externalChatId"})
        with self.db.transaction() as session:
            user = session.scalar(select(User).where(User.external_chat_id == external_chat_id))
            if user is None:
                user = User(id=new_uuid(), external_chat_id=external_chat_id)
                session.add(user)
                logger.info("User created for chat id %s", external_chat_id)
            user.name = (name or "").strip() or external_chat_id
            user.avatar_url = avatar_url
            session.flush()
            return user

    # === Read model ===
    def board_view(self, board_id: str) -> BoardView:
        with self.db.read() as session:
            return assemble_board(session, board_id)
