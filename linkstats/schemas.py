import re
from pydantic import BaseModel, HttpUrl, EmailStr, Field, field_validator
from typing import Dict, List, Optional, Union, Annotated
from datetime import date, datetime

from .models import LinkStatus, RedirectType

ALIAS_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

# Модели для пользователей
class UserBase(BaseModel):
    username: Annotated[str, Field(min_length=3, max_length=50)]
    email: EmailStr

class UserCreate(UserBase):
    password: Annotated[str, Field(min_length=8)]

class UserResponse(UserBase):
    id: int
    role: str
    created_at: datetime

    model_config = {"from_attributes": True}

class UserStats(BaseModel):
    total_urls: int
    total_clicks: int
    unexpired_urls: int

# Модели для ссылок
class LinkSettings(BaseModel):
    track_referrer: bool = True
    track_location: bool = True
    track_device_info: bool = True
    redirect_type: RedirectType = RedirectType.DIRECT
    redirect_delay: Annotated[int, Field(ge=0, le=60)] = 0

    model_config = {"from_attributes": True, "use_enum_values": True}

class LinkSettingsUpdate(BaseModel):
    track_referrer: Optional[bool] = None
    track_location: Optional[bool] = None
    track_device_info: Optional[bool] = None
    redirect_type: Optional[RedirectType] = None
    redirect_delay: Optional[Annotated[int, Field(ge=0, le=60)]] = None

    model_config = {"use_enum_values": True}

def _split_tags(value: Union[str, List[str], None]) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    return [tag.strip().lower() for tag in value if tag and tag.strip()]

class LinkCreate(BaseModel):
    original_url: HttpUrl
    custom_alias: Optional[Annotated[str, Field(min_length=3, max_length=50)]] = None
    title: Optional[Annotated[str, Field(max_length=200)]] = None
    description: Optional[str] = None
    tags: Optional[Union[str, List[str]]] = None
    expires_at: Optional[Union[str, datetime]] = None
    settings: Optional[LinkSettings] = None

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value):
        return _split_tags(value)

class LinkUpdate(BaseModel):
    title: Optional[Annotated[str, Field(max_length=200)]] = None
    description: Optional[str] = None
    tags: Optional[Union[str, List[str]]] = None
    status: Optional[LinkStatus] = None
    expires_at: Optional[Union[str, datetime]] = None
    settings: Optional[LinkSettingsUpdate] = None

    model_config = {"use_enum_values": True}

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value):
        return _split_tags(value)

class LinkResponse(BaseModel):
    id: int
    short_code: str
    custom_alias: Optional[str] = None
    short_url: Optional[str] = None
    original_url: str
    title: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    status: str
    expires_at: Optional[datetime] = None
    clicks: int
    unique_clicks: int
    last_used: Optional[datetime] = None
    qr_code: Optional[str] = None
    settings: LinkSettings
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

# Модели для аналитики
class CategoryCount(BaseModel):
    name: str
    count: int

class DayStats(BaseModel):
    date: date
    clicks: int
    unique_visitors: int
    average_time_on_page: float
    bounce_rate: float

class AnalyticsSummary(BaseModel):
    total_clicks: int
    unique_clicks: int
    recent_clicks: int
    clicks_by_day: List[DayStats]
    top_countries: List[CategoryCount]
    top_devices: List[CategoryCount]
    top_browsers: List[CategoryCount]
    top_referrers: List[CategoryCount]
    average_time_on_page: float
    average_clicks_per_day: float
    conversion_rate: float

class LinkWithAnalytics(LinkResponse):
    analytics: AnalyticsSummary

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

class LinkList(BaseModel):
    urls: List[LinkWithAnalytics]
    pagination: Pagination

class TopUrl(BaseModel):
    id: int
    short_code: str
    original_url: str
    clicks: int
    unique_clicks: int

class Report(BaseModel):
    total_urls: int
    total_clicks: int
    active_urls: int
    recently_active_urls: int
    url_growth: float
    click_growth: float
    top_urls: List[TopUrl]
    device_stats: Dict[str, int]
    browser_stats: Dict[str, int]
    country_stats: Dict[str, int]
    average_clicks_per_url: int
    conversion_rate: int

class QRCodeResponse(BaseModel):
    qr_code: str

# Модели для токенов
class Token(BaseModel):
    access_token: str
    token_type: str
