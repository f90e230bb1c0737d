import logging
import traceback

from sqlalchemy.orm import Session

from . import analytics
from .exceptions import LinkError

logger = logging.getLogger(__name__)


def record_click_task(db: Session, link_id: int, click: analytics.ClickInput) -> None:
    """
    Запись клика в фоне после отправки ответа с перенаправлением

    Аналитика не обязательна: ошибки логируются и не повторяются
    """
    try:
        analytics.record_click(db, link_id, click)
    except LinkError as e:
        logger.error(f"Click for link {link_id} was dropped: {e.detail}")
    except Exception as e:
        logger.error(f"Unexpected error recording click for link {link_id}: {str(e)}")
        logger.error(traceback.format_exc())
