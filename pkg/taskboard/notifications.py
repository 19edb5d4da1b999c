"""
User-visible notifications.

``Notifier`` is the toast sink every component reports to: success and
error messages are recorded (the HTTP layer drains them into responses) and
logged. ``TelegramNotifier`` additionally forwards them to a Telegram chat.

Due-date reminder digests and password-reset links for the Telegram channel
live here as well.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Deque, Iterable, List, Optional

from telegram.error import TelegramError

from .aggregators import DueClass, classify_due_date, utc_today
from .profiles import load_profile
from .schema import Task, TaskStatus

logger = logging.getLogger(__name__)


class NotificationKind(Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


@dataclass
class Notification:
    kind: NotificationKind
    message: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self):
        return {"kind": self.kind.value, "message": self.message, "timestamp": self.timestamp}


class Notifier:
    """Collects toasts for the current client."""

    def __init__(self, max_pending: int = 100):
        self.pending: Deque[Notification] = deque(maxlen=max_pending)

    def _push(self, kind: NotificationKind, message: str) -> Notification:
        note = Notification(kind=kind, message=message)
        self.pending.append(note)
        if kind == NotificationKind.ERROR:
            logger.warning(f"[toast] {message}")
        else:
            logger.info(f"[toast] {message}")
        self._deliver(note)
        return note

    def _deliver(self, note: Notification) -> None:
        """Hook for channels that forward toasts elsewhere."""

    def success(self, message: str) -> Notification:
        return self._push(NotificationKind.SUCCESS, message)

    def error(self, message: str) -> Notification:
        return self._push(NotificationKind.ERROR, message)

    def info(self, message: str) -> Notification:
        return self._push(NotificationKind.INFO, message)

    def messages(self, kind: Optional[NotificationKind] = None) -> List[str]:
        return [n.message for n in self.pending if kind is None or n.kind == kind]

    def drain(self) -> List[Notification]:
        """Pop every pending notification."""
        notes = list(self.pending)
        self.pending.clear()
        return notes


class TelegramNotifier(Notifier):
    """Notifier that also forwards toasts to a Telegram chat.

    ``bot`` is a ``telegram.Bot``. Sending is async, so toasts are queued and
    pushed by ``flush()``.
    """

    def __init__(self, bot, chat_id, max_pending: int = 100):
        super().__init__(max_pending=max_pending)
        self.bot = bot
        self.chat_id = chat_id
        self.outbox: Deque[Notification] = deque(maxlen=max_pending)

    def _deliver(self, note: Notification) -> None:
        self.outbox.append(note)

    async def flush(self) -> int:
        """Send queued toasts. Returns how many were delivered."""
        sent = 0
        if not self.outbox:
            return sent
        # Each flush may run on a fresh event loop; the bot's HTTP client is
        # opened and closed around it.
        async with self.bot:
            while self.outbox:
                note = self.outbox.popleft()
                icon = "❌" if note.kind == NotificationKind.ERROR else "✅"
                try:
                    await self.bot.send_message(self.chat_id, f"{icon} {note.message}")
                    sent += 1
                except Exception as e:
                    logger.error(f"Failed to send notification to {self.chat_id}: {e}")
        return sent


# ── Due-date reminders ───────────────────────────────────────────────────────

REMINDER_CLASSES = (DueClass.OVERDUE, DueClass.DUE_TODAY, DueClass.DUE_TOMORROW)


def build_reminder_digest(tasks: Iterable[Task], today: date) -> Optional[str]:
    """Markdown digest of open tasks that are overdue or due within a day."""
    lines = []
    for task in sorted(
        (t for t in tasks if t.due_date and t.status != TaskStatus.COMPLETED),
        key=lambda t: t.due_date.date(),
    ):
        info = classify_due_date(task.due_date, today)
        if info.due_class not in REMINDER_CLASSES:
            continue
        project = f" ({task.project_title})" if task.project_title else ""
        lines.append(f"• *{task.title}*{project}: {info.label}")
    if not lines:
        return None
    return "\n".join([f"⏰ *Task reminders* ({len(lines)})"] + lines)


async def send_due_reminders(gateway, bot, chat_id, identity_id: str, today: Optional[date] = None) -> bool:
    """Send the reminder digest for one identity when its profile opts in."""
    profile = await load_profile(gateway, identity_id)
    if not profile.task_reminders:
        logger.debug(f"Task reminders disabled for {identity_id}")
        return False

    rows = await gateway.select_tasks(eq={"assignee_id": identity_id}, order_by="due_date")
    digest = build_reminder_digest([Task.from_dict(r) for r in rows], today or utc_today())
    if digest is None:
        return False
    await bot.send_message(chat_id, digest, parse_mode="Markdown")
    return True


# ── Password recovery ────────────────────────────────────────────────────────


async def send_recovery_link(bot, chat_id, email: str, link: str) -> bool:
    """Deliver a password-reset link to the chat. Returns False when Telegram refuses it."""
    try:
        await bot.send_message(chat_id, f"🔑 Password reset requested for {email}\n{link}")
    except TelegramError as e:
        logger.error(f"Failed to deliver recovery link for {email}: {e}")
        return False
    logger.info(f"Recovery link for {email} sent to {chat_id}")
    return True
