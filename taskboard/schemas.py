from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from .db import Priority


class ErrorEnvelope(BaseModel):
    code: str
    message: str
    details: Optional[dict[str, Any]] = None
    requestId: Optional[str] = None


class Health(BaseModel):
    status: str = "ok"


class Version(BaseModel):
    version: str


class UserSummary(BaseModel):
    id: str
    name: str
    avatarUrl: Optional[str] = None


class UserOut(UserSummary):
    externalChatId: str


# === Boards ===


class BoardIn(BaseModel):
    name: str = Field(min_length=1, max_length=140)


class BoardOut(BaseModel):
    id: str
    name: str
    createdAt: datetime
    updatedAt: datetime


class BoardSummary(BoardOut):
    laneCount: int
    cardCount: int


class BoardsPage(BaseModel):
    boards: list[BoardSummary]


# === Lanes ===


class LaneIn(BaseModel):
    title: str = Field(min_length=1, max_length=140)


class LaneMove(BaseModel):
    boardId: Optional[str] = None
    position: int = Field(ge=0)


class LaneOut(BaseModel):
    id: str
    boardId: str
    title: str
    order: int
    createdAt: datetime
    updatedAt: datetime


# === Cards ===


class CardIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=8000)
    priority: Optional[Priority] = None


class CardPatch(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=8000)
    priority: Optional[Priority] = None


class CardMove(BaseModel):
    laneId: Optional[str] = None
    position: int = Field(ge=0)


class CardOut(BaseModel):
    id: str
    laneId: str
    title: str
    description: str
    priority: Priority
    order: int
    createdAt: datetime
    updatedAt: datetime


# === Checklist ===


class ChecklistItemIn(BaseModel):
    text: str = Field(min_length=1, max_length=2000)
    assignedToUserId: Optional[str] = None


class ChecklistItemPatch(BaseModel):
    text: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    completed: Optional[bool] = None
    assignedToUserId: Optional[str] = None


class ChecklistItemOut(BaseModel):
    id: str
    cardId: str
    text: str
    completed: bool
    assignedToUserId: Optional[str] = None
    assignedTo: Optional[UserSummary] = None
    createdAt: datetime
    updatedAt: datetime


# === Assembled board ===


class CardView(CardOut):
    checklist: list[ChecklistItemOut]


class LaneView(LaneOut):
    cards: list[CardView]


class BoardView(BoardOut):
    lanes: list[LaneView]
