import logging
from dataclasses import dataclass
from typing import Optional

from user_agents import parse

logger = logging.getLogger(__name__)

DEVICE_DESKTOP = "desktop"
DEVICE_MOBILE = "mobile"
DEVICE_TABLET = "tablet"
DEVICE_OTHER = "other"


@dataclass(frozen=True)
class VisitorInfo:
    device: str = DEVICE_OTHER
    browser: str = ""
    browser_version: str = ""
    os: str = ""
    platform: str = ""
    language: str = ""


def parse_language(accept_language: Optional[str]) -> str:
    """Первый язык из заголовка Accept-Language без веса: 'en-US,en;q=0.9' -> 'en-US'"""
    if not accept_language:
        return ""
    first = accept_language.split(",")[0]
    return first.split(";")[0].strip()


def _family(value: str) -> str:
    return "" if value == "Other" else value


def classify(user_agent: Optional[str], accept_language: Optional[str] = None) -> VisitorInfo:
    """
    Определение типа устройства, браузера и ОС по User-Agent

    Неизвестные значения превращаются в пустые строки и устройство 'other'
    """
    language = parse_language(accept_language)
    if not user_agent:
        return VisitorInfo(language=language)

    try:
        ua = parse(user_agent)
    except Exception as e:
        logger.warning(f"Could not parse user agent {user_agent!r}: {e}")
        return VisitorInfo(language=language)

    if ua.is_bot:
        device = DEVICE_OTHER
    elif ua.is_tablet:
        device = DEVICE_TABLET
    elif ua.is_mobile:
        device = DEVICE_MOBILE
    elif ua.is_pc:
        device = DEVICE_DESKTOP
    else:
        device = DEVICE_OTHER

    return VisitorInfo(
        device=device,
        browser=_family(ua.browser.family),
        browser_version=ua.browser.version_string,
        os=_family(ua.os.family),
        platform=_family(ua.device.family),
        language=language,
    )
