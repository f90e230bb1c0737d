import pytest
import os
import sys
from typing import Callable, Dict, Generator, Any
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.engine import Engine
from fastapi.testclient import TestClient

# Устанавливаем флаг тестирования
os.environ["TESTING"] = "True"

# Добавляем корневую директорию проекта в sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from linkstats.database import Base, get_db
from linkstats.main import app
from linkstats import models, auth, cache

# Настройка тестовой базы данных
TEST_DATABASE_URL = "sqlite:///:memory:"

engine: Engine = create_engine(
    TEST_DATABASE_URL, 
    connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Создает тестовую базу данных и возвращает сессию
    """
    Base.metadata.create_all(bind=engine)

    connection = engine.connect()
    transaction = connection.begin()

    session = TestingSessionLocal(bind=connection)

    yield session

    session.close()
    transaction.rollback()
    connection.close()

    Base.metadata.drop_all(bind=engine)

@pytest.fixture(autouse=True)
def clear_cache() -> Generator[None, None, None]:
    """
    Очищает кэш в памяти между тестами
    """
    cache._memory_cache.clear()
    yield
    cache._memory_cache.clear()

@pytest.fixture
def client(db: Session) -> Generator[TestClient, None, None]:
    """
    Создает тестовый клиент с переопределенной зависимостью базы данных
    """
    def override_get_db() -> Generator[Session, None, None]:
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    test_client = TestClient(app)

    yield test_client

    app.dependency_overrides.clear()

def _create_user(db: Session, username: str, email: str, role: str = "user") -> models.User:
    db_user = db.query(models.User).filter(models.User.username == username).first()
    if db_user:
        return db_user

    db_user = models.User(
        username=username,
        email=email,
        hashed_password=auth.get_password_hash("password123"),
        role=role
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user

@pytest.fixture
def test_user(db: Session) -> models.User:
    """
    Создает тестового пользователя
    """
    return _create_user(db, "testuser", "test@example.com")

@pytest.fixture
def other_user(db: Session) -> models.User:
    return _create_user(db, "otheruser", "other@example.com")

@pytest.fixture
def admin_user(db: Session) -> models.User:
    return _create_user(db, "adminuser", "admin@example.com", role="admin")

@pytest.fixture
def auth_token(client: TestClient, test_user: models.User) -> str:
    """
    Получает токен аутентификации для тестового пользователя
    """
    response = client.post(
        "/token",
        data={"username": test_user.username, "password": "password123"}
    )
    return response.json()["access_token"]

@pytest.fixture
def auth_headers(auth_token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {auth_token}"}

@pytest.fixture
def admin_headers(admin_user: models.User) -> Dict[str, str]:
    token = auth.create_access_token({"sub": admin_user.username})
    return {"Authorization": f"Bearer {token}"}

@pytest.fixture
def make_link(db: Session, test_user: models.User) -> Callable[..., models.Link]:
    """
    Фабрика ссылок, создаваемых напрямую в базе
    """
    counter = {"value": 0}

    def factory(**fields: Any) -> models.Link:
        counter["value"] += 1
        fields.setdefault("short_code", f"code{counter['value']}")
        fields.setdefault("original_url", f"https://example.com/{counter['value']}")
        fields.setdefault("owner_id", test_user.id)
        link = models.Link(**fields)
        db.add(link)
        db.commit()
        db.refresh(link)
        return link

    return factory
