import pytest
from sqlalchemy.orm import Session
from linkstats.database import get_db, Base

def test_get_db():
    """Тест функции получения сессии БД"""
    db_gen = get_db()

    db = next(db_gen)
    assert isinstance(db, Session)

    try:
        next(db_gen)
    except StopIteration:
        pass
    assert db is not None

def test_base_metadata():
    """Тест метаданных базы данных"""
    tables = Base.metadata.tables
    for name in ("users", "links", "click_events", "daily_stats", "unique_visitors"):
        assert name in tables

    users_table = tables["users"]
    assert "hashed_password" in users_table.columns
    assert "role" in users_table.columns

    links_table = tables["links"]
    for column in ("short_code", "custom_alias", "status", "is_expired", "clicks", "unique_clicks", "redirect_type"):
        assert column in links_table.columns
