import logging
from concurrent.futures import Future, ThreadPoolExecutor
from functools import lru_cache
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionFactory, session_scope
from errors import NotFoundError
from models import Notification, NotificationKind


logger = logging.getLogger(__name__)


class NotificationGateway(Protocol):
    def send_alert(self, user_id: int, message: str, kind: NotificationKind) -> None:
        ...


class NotificationService:
    """Fire-and-forget delivery of alerts into the user's notification inbox.

    ``send_alert`` hands the write to a small thread pool and returns at once;
    a failed delivery is logged and otherwise ignored. Without an executor the
    write happens inline, still swallowing failures.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.session_factory = session_factory
        self.executor = executor

    def send_alert(self, user_id: int, message: str, kind: NotificationKind) -> None:
        if self.executor is None:
            self._deliver_quietly(user_id, message, kind)
            return
        try:
            future = self.executor.submit(self._deliver, user_id, message, kind)
        except RuntimeError:
            logger.warning(
                f"notification_dropped: user_id={user_id} kind={kind.value} "
                "reason=executor_shut_down"
            )
            return
        future.add_done_callback(self._log_failure)

    def _deliver(self, user_id: int, message: str, kind: NotificationKind) -> None:
        with session_scope(self.session_factory) as session:
            session.add(Notification(user_id=user_id, message=message, kind=kind))
        logger.info(f"notification_sent: user_id={user_id} kind={kind.value}")

    def _deliver_quietly(
        self, user_id: int, message: str, kind: NotificationKind
    ) -> None:
        try:
            self._deliver(user_id, message, kind)
        except Exception:
            logger.exception(
                f"notification_failed: user_id={user_id} kind={kind.value}"
            )

    @staticmethod
    def _log_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("notification_failed", exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=wait)


class NotificationInbox:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self, unread_only: bool = False, limit: int = 100) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_id == self.user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        return self.session.scalars(stmt.limit(limit)).all()

    def mark_read(self, notification_id: int) -> None:
        notification = self.session.get(Notification, notification_id)
        if not notification or notification.user_id != self.user_id:
            raise NotFoundError("Notification not found")
        notification.is_read = True
        self.session.commit()

    def mark_all_read(self) -> None:
        self.session.execute(
            update(Notification)
            .where(
                Notification.user_id == self.user_id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True)
        )
        self.session.commit()


@lru_cache(maxsize=1)
def get_notification_service() -> NotificationService:
    settings = get_settings()
    executor = ThreadPoolExecutor(
        max_workers=settings.notification_workers,
        thread_name_prefix="notify",
    )
    return NotificationService(executor=executor)
