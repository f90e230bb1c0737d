import os
from typing import Optional

# Базовые настройки
SECRET_KEY = os.getenv("SECRET_KEY", "YOUR_SECRET_KEY")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

# Публичный адрес сервиса, используется для коротких ссылок и QR-кодов
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000").rstrip("/")

# Настройки базы данных
POSTGRES_USER = os.getenv("POSTGRES_USER", "postgres")
POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "password")
POSTGRES_DB = os.getenv("POSTGRES_DB", "linkstats")
POSTGRES_HOST = os.getenv("POSTGRES_HOST", "localhost")
POSTGRES_PORT = os.getenv("POSTGRES_PORT", "5432")

# Настройки Redis
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))

# Путь к базе MaxMind GeoLite2-City; без нее геолокация отключена
GEOIP_DATABASE_PATH: Optional[str] = os.getenv("GEOIP_DATABASE_PATH")

# Ограничения аналитики на одну ссылку
ANALYTICS_LOG_LIMIT = int(os.getenv("ANALYTICS_LOG_LIMIT", "1000"))
DAILY_STATS_LIMIT = int(os.getenv("DAILY_STATS_LIMIT", "30"))
VISITOR_LEDGER_LIMIT = int(os.getenv("VISITOR_LEDGER_LIMIT", "10000"))
SUMMARY_WINDOW_DAYS = int(os.getenv("SUMMARY_WINDOW_DAYS", "30"))
BOUNCE_THRESHOLD_SECONDS = float(os.getenv("BOUNCE_THRESHOLD_SECONDS", "5"))

# Время жизни блокировки ссылки при записи клика (секунды)
LINK_LOCK_TIMEOUT = int(os.getenv("LINK_LOCK_TIMEOUT", "10"))

# Флаг для определения режима тестирования
TESTING = os.getenv("TESTING", "False").lower() in ("true", "1", "t")

# URL для подключения к базе данных
DATABASE_URL_FROM_ENV: Optional[str] = os.getenv("DATABASE_URL")

if TESTING:
    DATABASE_URL = "sqlite:///./test.db"
elif DATABASE_URL_FROM_ENV:
    DATABASE_URL = DATABASE_URL_FROM_ENV
else:
    DATABASE_URL = f"postgresql://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}"
