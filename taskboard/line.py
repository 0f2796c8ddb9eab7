"""LINE platform integration: Login, Messaging API and bot commands."""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional
from urllib.parse import urlencode

import requests

from .errors import LineApiError, NotAssigned, NotFound
from .events import AssignmentEvent

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://access.line.me/oauth2/v2.1/authorize"
TOKEN_URL = "https://api.line.me/oauth2/v2.1/token"
PROFILE_URL = "https://api.line.me/v2/profile"
PUSH_URL = "https://api.line.me/v2/bot/message/push"
REPLY_URL = "https://api.line.me/v2/bot/message/reply"

DEFAULT_TIMEOUT = 10


def verify_signature(channel_secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check the ``X-Line-Signature`` header against the raw request body."""
    if not channel_secret or not signature:
        return False
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature)


def _check(response: requests.Response, what: str) -> dict:
    if not response.ok:
        try:
            detail = response.json()
        except ValueError:
            detail = {"body": response.text[:200]}
        logger.error("LINE %s failed with %s: %s", what, response.status_code, detail)
        raise LineApiError(f"LINE {what} failed", {"status": response.status_code, "detail": detail})
    if not response.content:
        return {}
    return response.json()


# === Messaging API ===


class LineMessagingClient:
    def __init__(
        self,
        channel_access_token: str,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.channel_access_token = channel_access_token
        self.session = session or requests.Session()
        self.timeout = timeout

    def _post(self, url: str, payload: dict, what: str) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.channel_access_token}",
        }
        try:
            response = self.session.post(url, headers=headers, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise LineApiError(f"LINE {what} failed", {"reason": str(exc)}) from exc
        return _check(response, what)

    def push_message(self, to: str, text: str) -> None:
        self._post(PUSH_URL, {"to": to, "messages": [{"type": "text", "text": text}]}, "push")

    def reply_message(self, reply_token: str, text: str) -> None:
        self._post(
            REPLY_URL,
            {"replyToken": reply_token, "messages": [{"type": "text", "text": text}]},
            "reply",
        )


# === LINE Login ===


@dataclass(frozen=True)
class LineProfile:
    user_id: str
    display_name: str
    picture_url: Optional[str] = None


class LineLoginClient:
    def __init__(
        self,
        channel_id: str,
        channel_secret: str,
        redirect_uri: str,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.channel_id = channel_id
        self.channel_secret = channel_secret
        self.redirect_uri = redirect_uri
        self.session = session or requests.Session()
        self.timeout = timeout

    def authorize_url(self, state: str) -> str:
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.channel_id,
                "redirect_uri": self.redirect_uri,
                "state": state,
                "scope": "profile openid",
            }
        )
        return f"{AUTHORIZE_URL}?{query}"

    def exchange_code(self, code: str) -> str:
        try:
            response = self.session.post(
                TOKEN_URL,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                    "client_id": self.channel_id,
                    "client_secret": self.channel_secret,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise LineApiError("LINE token exchange failed", {"reason": str(exc)}) from exc
        token = _check(response, "token exchange").get("access_token")
        if not token:
            raise LineApiError("LINE token exchange returned no access token")
        return token

    def get_profile(self, access_token: str) -> LineProfile:
        try:
            response = self.session.get(
                PROFILE_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise LineApiError("LINE profile lookup failed", {"reason": str(exc)}) from exc
        data = _check(response, "profile lookup")
        return LineProfile(
            user_id=data["userId"],
            display_name=data.get("displayName", ""),
            picture_url=data.get("pictureUrl"),
        )


# === Message text ===


def assignment_message(card_title: str, item_text: str) -> str:
    return (
        "📋 You have a new task!\n\n"
        f"Card: {card_title}\n"
        f"Task: {item_text}\n\n"
        "Good luck ✨"
    )


def format_task_list(tasks: Iterable[dict]) -> str:
    tasks = list(tasks)
    if not tasks:
        return "No open tasks right now ✨ Nice work!"
    lines = [f"📌 You have {len(tasks)} open task(s):", ""]
    for index, task in enumerate(tasks, start=1):
        lines.append(f"{index}. {task['cardTitle']}")
        lines.append(f"   └ {task['text']}")
        lines.append(f"   ID: {task['id']}")
        lines.append("")
    lines.append("When you finish one, reply with:\ndone {taskId}")
    return "\n".join(lines)


UNKNOWN_USER_TEXT = "I don't know you yet 🥺\nPlease log in to the task board first, then come back."
HELP_TEXT = (
    "Here's what I can do 👇\n\n"
    "• my tasks: list your open tasks\n"
    "• done {taskId}: mark a task as finished"
)
TASK_NOT_FOUND_TEXT = "I couldn't find that task 😢 Please check the task id."
NOT_YOURS_TEXT = "That task isn't assigned to you 🤔"
FAILED_TEXT = "Something went wrong, please try again 🙏"


# === Notifications ===


class AssignmentNotifier:
    """Pushes assignment messages. Never raises."""

    def __init__(self, messenger: LineMessagingClient) -> None:
        self.messenger = messenger

    def notify_assignment(self, external_chat_id: str, card_title: str, item_text: str) -> bool:
        try:
            self.messenger.push_message(external_chat_id, assignment_message(card_title, item_text))
        except Exception:
            logger.warning("Assignment notification to %s failed", external_chat_id, exc_info=True)
            return False
        logger.info("Assignment notification sent to %s", external_chat_id)
        return True

    def __call__(self, event: AssignmentEvent) -> None:
        self.notify_assignment(event.external_chat_id, event.card_title, event.item_text)


# === Bot commands ===


class ChatCommandHandler:
    """Answers text messages sent to the bot."""

    def __init__(self, store, messenger: LineMessagingClient) -> None:
        self.store = store
        self.messenger = messenger

    def handle_event(self, event: dict[str, Any]) -> None:
        if event.get("type") != "message":
            return
        message = event.get("message") or {}
        if message.get("type") != "text":
            return
        chat_id = (event.get("source") or {}).get("userId")
        if not chat_id:
            return
        self.handle_text(chat_id, event.get("replyToken", ""), message.get("text", ""))

    def handle_text(self, chat_id: str, reply_token: str, text: str) -> None:
        user = self.store.find_user_by_external_chat_id(chat_id)
        if user is None:
            self.messenger.reply_message(reply_token, UNKNOWN_USER_TEXT)
            return

        command = text.strip()
        lowered = command.lower()
        if lowered == "my tasks":
            self._my_tasks(user, chat_id, reply_token)
        elif lowered.startswith("done "):
            self._done(user, reply_token, command[5:].strip())
        else:
            self.messenger.reply_message(reply_token, HELP_TEXT)

    def _my_tasks(self, user, chat_id: str, reply_token: str) -> None:
        items = self.store.list_open_items_for_user(user.id)
        tasks = [{"id": item.id, "text": item.text, "cardTitle": item.card.title} for item in items]
        if not tasks:
            self.messenger.reply_message(reply_token, format_task_list(tasks))
            return
        self.messenger.reply_message(reply_token, "Let me check your tasks 👀")
        self.messenger.push_message(chat_id, format_task_list(tasks))

    def _done(self, user, reply_token: str, item_id: str) -> None:
        try:
            item = self.store.complete_item_for_user(item_id, user.id)
        except NotFound:
            self.messenger.reply_message(reply_token, TASK_NOT_FOUND_TEXT)
            return
        except NotAssigned:
            self.messenger.reply_message(reply_token, NOT_YOURS_TEXT)
            return
        except Exception:
            logger.exception("Completing item %s for %s failed", item_id, user.id)
            self.messenger.reply_message(reply_token, FAILED_TEXT)
            return
        self.messenger.reply_message(
            reply_token,
            f"Done, great job ✨\n\nCard: {item.card.title}\nTask: {item.text}",
        )
