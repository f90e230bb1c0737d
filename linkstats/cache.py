import redis
import json
import threading
from contextlib import contextmanager
from typing import Any, Optional, Dict, Iterator, List
from .config import REDIS_HOST, REDIS_PORT, REDIS_DB, TESTING, LINK_LOCK_TIMEOUT
import os
import logging

logger = logging.getLogger(__name__)

LINK_PREFIX = "link:"
SUMMARY_PREFIX = "summary:"
LOCK_PREFIX = "lock:link:"

CACHE_TTL = int(os.getenv("CACHE_TTL", "3600"))

_memory_cache: Dict[str, Any] = {}

# Локальные блокировки, если Redis недоступен: фиксированный набор,
# ссылка попадает в блокировку по остатку от деления id
LOCAL_LOCK_STRIPES = 64
_local_locks: List[threading.Lock] = [threading.Lock() for _ in range(LOCAL_LOCK_STRIPES)]

redis_client = None
if not TESTING:
    try:
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            redis_client = redis.from_url(redis_url, decode_responses=True)
            logger.info("Connected to Redis using REDIS_URL")
        else:
            redis_client = redis.Redis(
                host=REDIS_HOST,
                port=REDIS_PORT,
                db=REDIS_DB,
                decode_responses=True
            )
            logger.info(f"Connected to Redis at {REDIS_HOST}:{REDIS_PORT}")
    except Exception as e:
        logger.error(f"Redis connection error: {e}")
        redis_client = None

def set_link_cache(code: str, payload: Dict[str, Any]) -> None:
    """Кэширование данных для перенаправления по коду"""
    if TESTING:
        _memory_cache[f"{LINK_PREFIX}{code}"] = json.dumps(payload)
        return

    if redis_client:
        try:
            key = f"{LINK_PREFIX}{code}"
            redis_client.set(key, json.dumps(payload), ex=CACHE_TTL)
        except Exception as e:
            logger.error(f"Error setting link cache: {e}")

def get_link_cache(code: str) -> Optional[Dict[str, Any]]:
    """Получение данных для перенаправления из кэша"""
    if TESTING:
        data = _memory_cache.get(f"{LINK_PREFIX}{code}")
        return json.loads(data) if data else None

    if redis_client:
        try:
            data = redis_client.get(f"{LINK_PREFIX}{code}")
            if data:
                return json.loads(data)
        except Exception as e:
            logger.error(f"Error getting link from cache: {e}")
    return None

def delete_link_cache(*codes: Optional[str]) -> None:
    """Удаление кодов ссылки из кэша"""
    keys = [f"{LINK_PREFIX}{code}" for code in codes if code]
    if not keys:
        return

    if TESTING:
        for key in keys:
            _memory_cache.pop(key, None)
        return

    if redis_client:
        try:
            redis_client.delete(*keys)
        except Exception as e:
            logger.error(f"Error deleting from cache: {e}")

def set_summary_cache(link_id: int, summary: Dict[str, Any]) -> None:
    """Кэширование сводки аналитики ссылки"""
    if TESTING:
        _memory_cache[f"{SUMMARY_PREFIX}{link_id}"] = json.dumps(summary, default=str)
        return

    if redis_client:
        try:
            key = f"{SUMMARY_PREFIX}{link_id}"
            redis_client.set(key, json.dumps(summary, default=str), ex=CACHE_TTL)
        except Exception as e:
            logger.error(f"Error setting summary cache: {e}")

def get_summary_cache(link_id: int) -> Optional[Dict[str, Any]]:
    """Получение сводки аналитики из кэша"""
    if TESTING:
        data = _memory_cache.get(f"{SUMMARY_PREFIX}{link_id}")
        return json.loads(data) if data else None

    if redis_client:
        try:
            data = redis_client.get(f"{SUMMARY_PREFIX}{link_id}")
            if data:
                return json.loads(data)
        except Exception as e:
            logger.error(f"Error getting summary from cache: {e}")
    return None

def delete_summary_cache(link_id: int) -> None:
    if TESTING:
        _memory_cache.pop(f"{SUMMARY_PREFIX}{link_id}", None)
        return

    if redis_client:
        try:
            redis_client.delete(f"{SUMMARY_PREFIX}{link_id}")
        except Exception as e:
            logger.error(f"Error deleting summary cache: {e}")

def _local_lock(link_id: int) -> threading.Lock:
    return _local_locks[link_id % LOCAL_LOCK_STRIPES]

@contextmanager
def link_lock(link_id: int) -> Iterator[None]:
    """
    Взаимное исключение для изменений одной ссылки

    Через Redis, если он доступен (общая блокировка для всех воркеров),
    иначе через блокировку внутри процесса
    """
    if redis_client and not TESTING:
        try:
            lock = redis_client.lock(
                f"{LOCK_PREFIX}{link_id}",
                timeout=LINK_LOCK_TIMEOUT,
                blocking_timeout=LINK_LOCK_TIMEOUT,
            )
            acquired = lock.acquire()
        except Exception as e:
            logger.error(f"Redis lock error for link {link_id}: {e}")
            lock = None
            acquired = False

        if acquired:
            try:
                yield
            finally:
                try:
                    lock.release()
                except Exception as e:
                    logger.warning(f"Error releasing lock for link {link_id}: {e}")
            return
        logger.warning(f"Falling back to local lock for link {link_id}")

    with _local_lock(link_id):
        yield
