import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import cache, classifier, geo, models
from .config import (
    ANALYTICS_LOG_LIMIT,
    BOUNCE_THRESHOLD_SECONDS,
    DAILY_STATS_LIMIT,
    SUMMARY_WINDOW_DAYS,
    VISITOR_LEDGER_LIMIT,
)
from .exceptions import NotFoundError, PersistenceError
from .expiration import to_local_naive

logger = logging.getLogger(__name__)

TOP_LIMIT = 10

# Поле события -> поле счетчиков в дневной сводке
CATEGORY_COUNTERS = (
    ("country", "country_counts"),
    ("device", "device_counts"),
    ("browser", "browser_counts"),
    ("referrer", "referrer_counts"),
)


@dataclass
class ClickInput:
    """Сырые данные о переходе, собранные из запроса"""
    ip_address: str = ""
    user_agent: str = ""
    referrer: str = ""
    accept_language: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    time_on_page: Optional[float] = None
    exit_page: Optional[str] = None


def build_event(link: models.Link, click: ClickInput) -> models.ClickEvent:
    """
    Формирует событие клика с учетом настроек отслеживания ссылки

    Отключенные в настройках поля остаются пустыми
    """
    event = models.ClickEvent(
        link_id=link.id,
        timestamp=click.timestamp,
        ip_address=click.ip_address or "",
        user_agent=click.user_agent or "",
        referrer=(click.referrer or "") if link.track_referrer else "",
        device="",
        browser="",
        browser_version="",
        os="",
        platform="",
        language="",
        country="",
        city="",
        region="",
        timezone="",
        time_on_page=click.time_on_page,
        exit_page=click.exit_page,
    )

    if link.track_location:
        location = geo.lookup(click.ip_address)
        if location:
            event.country = location.country
            event.city = location.city
            event.region = location.region
            event.timezone = location.timezone
            event.latitude = location.latitude
            event.longitude = location.longitude

    if link.track_device_info:
        visitor = classifier.classify(click.user_agent, click.accept_language)
        event.device = visitor.device
        event.browser = visitor.browser
        event.browser_version = visitor.browser_version
        event.os = visitor.os
        event.platform = visitor.platform
        event.language = visitor.language

    _fit_to_columns(event)
    return event


def _fit_to_columns(event: models.ClickEvent) -> None:
    """Обрезает строковые поля события по длине колонок"""
    for column in models.ClickEvent.__table__.columns:
        length = getattr(column.type, "length", None)
        value = getattr(event, column.key)
        if length and isinstance(value, str) and len(value) > length:
            setattr(event, column.key, value[:length])


def _touch_visitor(db: Session, link: models.Link, ip_address: str, timestamp: datetime) -> bool:
    """Обновляет реестр посетителей. Возвращает True для нового посетителя"""
    visitor = db.query(models.UniqueVisitor).filter(
        models.UniqueVisitor.link_id == link.id,
        models.UniqueVisitor.ip_address == ip_address
    ).first()

    if visitor:
        visitor.last_visit = timestamp
        visitor.total_visits += 1
        return False

    link.unique_clicks += 1
    db.add(models.UniqueVisitor(
        link_id=link.id,
        ip_address=ip_address,
        first_visit=timestamp,
        last_visit=timestamp,
        total_visits=1
    ))
    db.flush()
    _trim_visitors(db, link.id)
    return True


def _trim_visitors(db: Session, link_id: int) -> None:
    total = db.query(func.count(models.UniqueVisitor.id)).filter(
        models.UniqueVisitor.link_id == link_id
    ).scalar()
    if total <= VISITOR_LEDGER_LIMIT:
        return

    stale_ids = [row.id for row in db.query(models.UniqueVisitor.id).filter(
        models.UniqueVisitor.link_id == link_id
    ).order_by(
        models.UniqueVisitor.last_visit.asc(),
        models.UniqueVisitor.id.asc()
    ).limit(total - VISITOR_LEDGER_LIMIT).all()]

    db.query(models.UniqueVisitor).filter(
        models.UniqueVisitor.id.in_(stale_ids)
    ).delete(synchronize_session=False)
    logger.debug(f"Evicted {len(stale_ids)} visitors from ledger of link {link_id}")


def _touch_daily_stat(
    db: Session,
    link: models.Link,
    event: models.ClickEvent,
    is_new_visitor: bool
) -> models.DailyStat:
    day = to_local_naive(event.timestamp).date()
    stat = db.query(models.DailyStat).filter(
        models.DailyStat.link_id == link.id,
        models.DailyStat.date == day
    ).first()

    if stat is None:
        stat = models.DailyStat(
            link_id=link.id,
            date=day,
            clicks=0,
            unique_visitors=0,
            country_counts={},
            device_counts={},
            browser_counts={},
            referrer_counts={},
            time_on_page_total=0.0,
            time_on_page_count=0,
            bounce_count=0,
            bounce_rate=0.0
        )
        db.add(stat)

    stat.clicks += 1
    if is_new_visitor:
        stat.unique_visitors += 1

    for event_field, counter_field in CATEGORY_COUNTERS:
        label = getattr(event, event_field)
        if label:
            # Новый словарь, чтобы SQLAlchemy заметил изменение JSON-поля
            counts = dict(getattr(stat, counter_field) or {})
            counts[label] = counts.get(label, 0) + 1
            setattr(stat, counter_field, counts)

    if event.time_on_page is not None:
        stat.time_on_page_total += event.time_on_page
        stat.time_on_page_count += 1
        if event.time_on_page < BOUNCE_THRESHOLD_SECONDS:
            stat.bounce_count += 1
        stat.bounce_rate = round(stat.bounce_count / stat.time_on_page_count * 100, 2)

    return stat


def _trim_log(db: Session, link_id: int) -> None:
    stale_ids = [row.id for row in db.query(models.ClickEvent.id).filter(
        models.ClickEvent.link_id == link_id
    ).order_by(models.ClickEvent.id.desc()).offset(ANALYTICS_LOG_LIMIT).all()]

    if stale_ids:
        db.query(models.ClickEvent).filter(
            models.ClickEvent.id.in_(stale_ids)
        ).delete(synchronize_session=False)
        logger.debug(f"Evicted {len(stale_ids)} events from log of link {link_id}")


def _trim_daily_stats(db: Session, link_id: int) -> None:
    stale_ids = [row.id for row in db.query(models.DailyStat.id).filter(
        models.DailyStat.link_id == link_id
    ).order_by(models.DailyStat.date.desc()).offset(DAILY_STATS_LIMIT).all()]

    if stale_ids:
        db.query(models.DailyStat).filter(
            models.DailyStat.id.in_(stale_ids)
        ).delete(synchronize_session=False)
        logger.debug(f"Evicted {len(stale_ids)} daily stats of link {link_id}")


def record_click(db: Session, link_id: int, click: ClickInput) -> None:
    """
    Запись перехода по ссылке

    Обновляет счетчики, реестр посетителей, дневную сводку и журнал событий
    одной транзакцией. Изменения одной ссылки выполняются под блокировкой.

    Args:
        db: Сессия базы данных
        link_id: Идентификатор ссылки
        click: Данные о переходе

    Raises:
        NotFoundError: ссылка удалена
        PersistenceError: не удалось сохранить изменения
    """
    with cache.link_lock(link_id):
        try:
            link = db.query(models.Link).filter(
                models.Link.id == link_id
            ).with_for_update().populate_existing().first()

            if not link:
                raise NotFoundError("Link not found")

            event = build_event(link, click)

            link.clicks += 1
            link.last_used = click.timestamp

            is_new_visitor = _touch_visitor(db, link, event.ip_address, click.timestamp)
            _touch_daily_stat(db, link, event, is_new_visitor)

            db.add(event)
            db.flush()

            _trim_log(db, link.id)
            _trim_daily_stats(db, link.id)

            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error recording click for link {link_id}: {e}")
            raise PersistenceError("Error recording click") from e

    cache.delete_summary_cache(link_id)
    logger.debug(f"Recorded click for link {link_id}")


def top_categories(
    stats: List[models.DailyStat],
    counter_field: str,
    limit: int = TOP_LIMIT
) -> List[Dict[str, Any]]:
    """Суммирует счетчики категории по дням и возвращает самые частые значения"""
    aggregated: Dict[str, int] = {}
    for stat in stats:
        for name, count in (getattr(stat, counter_field) or {}).items():
            aggregated[name] = aggregated.get(name, 0) + count

    # sorted устойчива: при равенстве сохраняется порядок первого появления
    ranked = sorted(aggregated.items(), key=lambda item: item[1], reverse=True)
    return [{"name": name, "count": count} for name, count in ranked[:limit]]


def summarize(
    link: models.Link,
    window_days: Optional[int] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Сводка аналитики ссылки за последние window_days дней

    Счетчики total_clicks и unique_clicks считаются за все время,
    остальные показатели - только по дням внутри окна
    """
    if window_days is None:
        window_days = SUMMARY_WINDOW_DAYS
    now = to_local_naive(now) or datetime.now()
    cutoff = (now - timedelta(days=window_days)).date()

    recent = [stat for stat in link.daily_stats if stat.date > cutoff]
    recent_clicks = sum(stat.clicks for stat in recent)

    average_time_on_page = 0
    average_clicks_per_day = 0
    if recent:
        average_time_on_page = round(
            sum(stat.average_time_on_page for stat in recent) / len(recent), 2
        )
        average_clicks_per_day = round(recent_clicks / len(recent), 2)

    conversion_rate = round(link.unique_clicks / link.clicks, 2) if link.clicks else 0

    return {
        "total_clicks": link.clicks,
        "unique_clicks": link.unique_clicks,
        "recent_clicks": recent_clicks,
        "clicks_by_day": [
            {
                "date": stat.date,
                "clicks": stat.clicks,
                "unique_visitors": stat.unique_visitors,
                "average_time_on_page": round(stat.average_time_on_page, 2),
                "bounce_rate": stat.bounce_rate,
            }
            for stat in recent
        ],
        "top_countries": top_categories(recent, "country_counts"),
        "top_devices": top_categories(recent, "device_counts"),
        "top_browsers": top_categories(recent, "browser_counts"),
        "top_referrers": top_categories(recent, "referrer_counts"),
        "average_time_on_page": average_time_on_page,
        "average_clicks_per_day": average_clicks_per_day,
        "conversion_rate": conversion_rate,
    }
