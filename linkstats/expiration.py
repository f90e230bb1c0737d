import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .exceptions import PersistenceError

logger = logging.getLogger(__name__)

BLOCKING_STATUSES = (models.LinkStatus.EXPIRED.value, models.LinkStatus.BLOCKED.value)


def to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Приводит дату к локальному времени без часового пояса"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def is_past(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if expires_at is None:
        return False
    now = to_local_naive(now) or datetime.now()
    return now > to_local_naive(expires_at)


def is_redirectable(link: models.Link, now: Optional[datetime] = None) -> bool:
    """Ссылка доступна для перехода, если она не истекла и не заблокирована"""
    if link.status in BLOCKING_STATUSES:
        return False
    return not is_past(link.expires_at, now)


def check_expiration(db: Session, link: models.Link, now: Optional[datetime] = None) -> bool:
    """
    Проверяет, не истек ли срок действия ссылки, и обновляет ее статус

    Переход в статус expired выполняется один раз: повторные вызовы
    ничего не сохраняют

    Args:
        db: Сессия базы данных
        link: Объект ссылки
        now: Текущее время (для тестов)

    Returns:
        True, если срок действия ссылки истек, иначе False
    """
    expired = is_past(link.expires_at, now)
    if expired and not link.is_expired:
        logger.debug(f"Link {link.short_code} has expired, updating status")
        link.is_expired = True
        link.status = models.LinkStatus.EXPIRED.value
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error saving expired status for {link.short_code}: {e}")
            raise PersistenceError("Error updating link status") from e
        logger.info(f"Link {link.short_code} marked as expired")
    return expired
