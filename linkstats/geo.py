import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional

import geoip2.database
import geoip2.errors

from .config import GEOIP_DATABASE_PATH

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoInfo:
    country: str = ""
    city: str = ""
    region: str = ""
    timezone: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None


def _open_reader(path: Optional[str]) -> Optional[geoip2.database.Reader]:
    if not path:
        logger.info("GEOIP_DATABASE_PATH is not set, geolocation disabled")
        return None
    try:
        reader = geoip2.database.Reader(path)
        logger.info(f"Loaded GeoIP database from {path}")
        return reader
    except Exception as e:
        # Геолокация не обязательна, приложение работает и без нее
        logger.error(f"Could not open GeoIP database {path}: {e}")
        return None


reader: Optional[geoip2.database.Reader] = _open_reader(GEOIP_DATABASE_PATH)


def is_public_address(ip: Optional[str]) -> bool:
    """Проверяет, что адрес можно искать в базе (не локальный, не зарезервированный)"""
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    return not (
        address.is_private
        or address.is_loopback
        or address.is_reserved
        or address.is_link_local
        or address.is_multicast
        or address.is_unspecified
    )


def lookup(ip: Optional[str]) -> Optional[GeoInfo]:
    """
    Определение географии посетителя по IP-адресу

    Args:
        ip: IPv4 или IPv6 адрес

    Returns:
        GeoInfo или None, если адрес не удалось определить
    """
    if reader is None or not is_public_address(ip):
        return None

    try:
        response = reader.city(ip.strip())
    except geoip2.errors.AddressNotFoundError:
        logger.debug(f"Address not found in GeoIP database: {ip}")
        return None
    except Exception as e:
        logger.error(f"GeoIP lookup error for {ip}: {e}")
        return None

    return GeoInfo(
        country=response.country.iso_code or "",
        city=response.city.name or "",
        region=response.subdivisions.most_specific.iso_code or "",
        timezone=response.location.time_zone or "",
        latitude=response.location.latitude,
        longitude=response.location.longitude,
    )
