import pytest
from datetime import datetime, timedelta
from unittest.mock import patch
from linkstats import analytics, cache, models
from linkstats.exceptions import PersistenceError

IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1"
)
CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def test_redirect_to_url(client, db, make_link):
    """Тест перенаправления по короткой ссылке"""
    link = make_link(original_url="https://example.com/target")

    response = client.get(f"/{link.short_code}", follow_redirects=False)
    assert response.status_code == 307
    assert response.headers["location"] == "https://example.com/target"

    db.refresh(link)
    assert link.clicks == 1
    assert link.unique_clicks == 1
    assert link.last_used is not None
    assert len(link.analytics_log) == 1


def test_redirect_by_alias(client, db, make_link):
    link = make_link(short_code="abc1234", custom_alias="summer")

    response = client.get("/summer", follow_redirects=False)
    assert response.status_code == 307

    db.refresh(link)
    assert link.clicks == 1


def test_redirect_caches_link(client, make_link):
    link = make_link()
    assert cache.get_link_cache(link.short_code) is None

    client.get(f"/{link.short_code}", follow_redirects=False)
    assert cache.get_link_cache(link.short_code)["id"] == link.id


def test_redirect_unknown_code(client):
    response = client.get("/nonexistent", follow_redirects=False)
    assert response.status_code == 404
    assert response.json()["detail"] == "Link not found"


def test_redirect_inactive_link(client, db, make_link):
    link = make_link(status=models.LinkStatus.INACTIVE.value)

    response = client.get(f"/{link.short_code}", follow_redirects=False)
    assert response.status_code == 404

    db.refresh(link)
    assert link.clicks == 0


def test_redirect_expired_link(client, db, make_link):
    """Переход по истекшей ссылке переводит ее в статус expired"""
    link = make_link(expires_at=datetime.now() - timedelta(seconds=1))

    response = client.get(f"/{link.short_code}", follow_redirects=False)
    assert response.status_code == 410
    assert response.json()["detail"] == "Link has expired"

    db.refresh(link)
    assert link.is_expired is True
    assert link.status == "expired"
    assert link.clicks == 0


def test_redirect_cached_link_after_expiry(client, db, make_link):
    link = make_link(expires_at=datetime.now() + timedelta(hours=1))
    client.get(f"/{link.short_code}", follow_redirects=False)

    with patch("linkstats.expiration.datetime") as mock_datetime:
        mock_datetime.now.return_value = datetime.now() + timedelta(hours=2)
        response = client.get(f"/{link.short_code}", follow_redirects=False)

    assert response.status_code == 410
    assert cache.get_link_cache(link.short_code) is None


def test_redirect_blocked_link(client, make_link):
    link = make_link(status=models.LinkStatus.BLOCKED.value)

    response = client.get(f"/{link.short_code}", follow_redirects=False)
    assert response.status_code == 410
    assert response.json()["detail"] == "Link is no longer available"


def test_redirect_after_deactivation(client, auth_headers):
    created = client.post(
        "/links/shorten",
        json={"original_url": "https://example.com", "custom_alias": "toggle"},
        headers=auth_headers
    ).json()
    assert client.get("/toggle", follow_redirects=False).status_code == 307

    client.put(f"/links/{created['id']}", json={"status": "inactive"}, headers=auth_headers)

    assert client.get("/toggle", follow_redirects=False).status_code == 404


def test_delayed_redirect_page(client, db, make_link):
    link = make_link(
        original_url="https://example.com/later",
        redirect_type=models.RedirectType.DELAYED.value,
        redirect_delay=5
    )

    response = client.get(f"/{link.short_code}", follow_redirects=False)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert 'content="5;url=https://example.com/later"' in response.text
    assert 'href="https://example.com/later"' in response.text

    db.refresh(link)
    assert link.clicks == 1


def test_interstitial_page(client, make_link):
    link = make_link(
        original_url="https://example.com/?a=1&b=2",
        redirect_type=models.RedirectType.INTERSTITIAL.value
    )

    response = client.get(f"/{link.short_code}", follow_redirects=False)
    assert response.status_code == 200
    assert "Continue" in response.text
    assert "http-equiv" not in response.text
    assert "https://example.com/?a=1&amp;b=2" in response.text


def test_redirect_records_device_and_referrer(client, db, make_link):
    link = make_link()

    client.get(
        f"/{link.short_code}",
        headers={
            "User-Agent": IPHONE_UA,
            "Referer": "https://news.example.org/post",
            "Accept-Language": "de-DE,de;q=0.9"
        },
        follow_redirects=False
    )

    db.refresh(link)
    event = link.analytics_log[0]
    assert event.device == "mobile"
    assert event.os == "iOS"
    assert event.referrer == "https://news.example.org/post"
    assert event.language == "de-DE"

    stat = link.daily_stats[0]
    assert stat.device_counts == {"mobile": 1}
    assert stat.referrer_counts == {"https://news.example.org/post": 1}


def test_redirect_records_time_on_page(client, db, make_link):
    link = make_link()

    client.get(f"/{link.short_code}?time_on_page=2&exit_page=/pricing", follow_redirects=False)
    client.get(f"/{link.short_code}?time_on_page=30", follow_redirects=False)

    db.refresh(link)
    assert link.analytics_log[0].exit_page == "/pricing"
    stat = link.daily_stats[0]
    assert stat.average_time_on_page == 16
    assert stat.bounce_rate == 50


def test_unique_visitors_by_forwarded_ip(client, db, make_link):
    """Пять переходов с двух адресов: 5 кликов и 2 уникальных посетителя"""
    link = make_link()

    for ip in ["203.0.113.1"] * 3 + ["203.0.113.2"] * 2:
        response = client.get(
            f"/{link.short_code}",
            headers={"X-Forwarded-For": f"{ip}, 10.0.0.1", "User-Agent": CHROME_UA},
            follow_redirects=False
        )
        assert response.status_code == 307

    db.refresh(link)
    assert link.clicks == 5
    assert link.unique_clicks == 2
    assert {event.ip_address for event in link.analytics_log} == {"203.0.113.1", "203.0.113.2"}
    assert link.daily_stats[0].browser_counts == {"Chrome": 5}


def test_redirect_survives_recording_failure(client, db, make_link):
    """Ошибка записи клика не мешает перенаправлению"""
    link = make_link()

    with patch("linkstats.analytics.record_click", side_effect=PersistenceError("Error recording click")):
        response = client.get(f"/{link.short_code}", follow_redirects=False)

    assert response.status_code == 307
    db.refresh(link)
    assert link.clicks == 0


def test_redirect_survives_unexpected_failure(client, make_link):
    link = make_link()

    with patch("linkstats.analytics.record_click", side_effect=RuntimeError("boom")):
        response = client.get(f"/{link.short_code}", follow_redirects=False)

    assert response.status_code == 307


def test_negative_time_on_page_rejected(client, make_link):
    link = make_link()

    response = client.get(f"/{link.short_code}?time_on_page=-1", follow_redirects=False)
    assert response.status_code == 422
