import calendar
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from . import models
from .expiration import is_past, to_local_naive

TOP_URLS_LIMIT = 5
RECENT_ACTIVITY_DAYS = 30


def one_month_before(value: datetime) -> datetime:
    """Та же дата месяцем раньше; день обрезается по длине месяца (31 марта -> 28/29 февраля)"""
    year, month = (value.year, value.month - 1) if value.month > 1 else (value.year - 1, 12)
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def growth_rate(current: int, baseline: int) -> float:
    """Рост в процентах относительно базового значения; при нулевой базе - 100"""
    if baseline == 0:
        return 100
    return round((current - baseline) / baseline * 100, 2)


def clicks_before(link: models.Link, moment: datetime) -> int:
    """
    Число кликов ссылки на указанный момент

    Ссылка, созданная позже, дает 0. Для остальных из общего счетчика
    вычитаются клики дневных сводок после этого дня: журнал событий
    ограничен по размеру, а сводки хранят точные дневные счетчики
    """
    if link.created_at is None or to_local_naive(link.created_at) >= moment:
        return 0
    recent = sum(stat.clicks for stat in link.daily_stats if stat.date > moment.date())
    return max(link.clicks - recent, 0)


def _tally(counter: Dict[str, int], label: Optional[str]) -> None:
    if label:
        counter[label] = counter.get(label, 0) + 1


def build_report(links: Sequence[models.Link], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Сводка по всем ссылкам пользователя для дашборда

    Args:
        links: Ссылки пользователя
        now: Текущее время (для тестов)

    Returns:
        Итоги, рост за месяц, топ ссылок и распределения по устройствам,
        браузерам и странам
    """
    now = to_local_naive(now) or datetime.now()
    month_ago = one_month_before(now)
    recent_cutoff = now - timedelta(days=RECENT_ACTIVITY_DAYS)

    total_urls = len(links)
    total_clicks = sum(link.clicks for link in links)
    total_unique = sum(link.unique_clicks for link in links)

    # Два разных определения "активной" ссылки: по статусу и по недавним кликам
    active_urls = sum(1 for link in links if link.status == models.LinkStatus.ACTIVE.value)
    recently_active_urls = sum(
        1 for link in links
        if link.last_used and to_local_naive(link.last_used) >= recent_cutoff
    )

    urls_baseline = sum(
        1 for link in links
        if link.created_at and to_local_naive(link.created_at) < month_ago
    )

    device_stats: Dict[str, int] = {}
    browser_stats: Dict[str, int] = {}
    country_stats: Dict[str, int] = {}
    for link in links:
        for event in link.analytics_log:
            _tally(device_stats, event.device)
            _tally(browser_stats, event.browser)
            _tally(country_stats, event.country)

    clicks_baseline = sum(clicks_before(link, month_ago) for link in links)

    top_urls = sorted(links, key=lambda link: link.clicks, reverse=True)[:TOP_URLS_LIMIT]

    return {
        "total_urls": total_urls,
        "total_clicks": total_clicks,
        "active_urls": active_urls,
        "recently_active_urls": recently_active_urls,
        "url_growth": growth_rate(total_urls, urls_baseline),
        "click_growth": growth_rate(total_clicks, clicks_baseline),
        "top_urls": [
            {
                "id": link.id,
                "short_code": link.short_code,
                "original_url": link.original_url,
                "clicks": link.clicks,
                "unique_clicks": link.unique_clicks,
            }
            for link in top_urls
        ],
        "device_stats": device_stats,
        "browser_stats": browser_stats,
        "country_stats": country_stats,
        "average_clicks_per_url": round(total_clicks / total_urls) if total_urls else 0,
        "conversion_rate": round(total_unique / total_clicks * 100) if total_clicks else 0,
    }


def user_totals(links: List[models.Link], now: Optional[datetime] = None) -> Dict[str, int]:
    """Короткая статистика профиля: ссылки без истекшего срока считаются действующими"""
    return {
        "total_urls": len(links),
        "total_clicks": sum(link.clicks for link in links),
        "unexpired_urls": sum(1 for link in links if not is_past(link.expires_at, now)),
    }
