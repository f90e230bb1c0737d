import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .config import BASE_URL
from .database import Base


class LinkStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    BLOCKED = "blocked"


class RedirectType(str, enum.Enum):
    DIRECT = "direct"
    DELAYED = "delayed"
    INTERSTITIAL = "interstitial"


class User(Base):
    __tablename__ = "users"
    __allow_unmapped__ = True

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True)
    email = Column(String(100), unique=True, index=True)
    hashed_password = Column(String(100))
    role = Column(String(20), default="user", nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=datetime.now)

    links = relationship("Link", back_populates="owner", cascade="all, delete-orphan")


class Link(Base):
    """Агрегат ссылки: счетчики, журнал кликов, дневные сводки и реестр посетителей"""
    __tablename__ = "links"
    __allow_unmapped__ = True

    id = Column(Integer, primary_key=True, index=True)
    short_code = Column(String(50), unique=True, index=True, nullable=False)
    custom_alias = Column(String(50), unique=True, index=True, nullable=True)
    original_url = Column(String(2048), nullable=False)
    title = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    tags = Column(JSON, default=list)
    status = Column(String(20), default=LinkStatus.ACTIVE.value, nullable=False, index=True)
    is_expired = Column(Boolean, default=False, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    clicks = Column(Integer, default=0, nullable=False)
    unique_clicks = Column(Integer, default=0, nullable=False)
    last_used = Column(DateTime(timezone=True), nullable=True)
    qr_code = Column(Text, nullable=True)

    # Настройки отслеживания и перенаправления
    track_referrer = Column(Boolean, default=True, nullable=False)
    track_location = Column(Boolean, default=True, nullable=False)
    track_device_info = Column(Boolean, default=True, nullable=False)
    redirect_type = Column(String(20), default=RedirectType.DIRECT.value, nullable=False)
    redirect_delay = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=datetime.now)
    updated_at = Column(DateTime(timezone=True), default=datetime.now, onupdate=datetime.now)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    owner = relationship("User", back_populates="links")
    analytics_log = relationship(
        "ClickEvent",
        back_populates="link",
        order_by="ClickEvent.id",
        cascade="all, delete-orphan",
    )
    daily_stats = relationship(
        "DailyStat",
        back_populates="link",
        order_by="DailyStat.date",
        cascade="all, delete-orphan",
    )
    unique_visitors = relationship(
        "UniqueVisitor",
        back_populates="link",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_links_owner_created", "owner_id", "created_at"),
    )

    @property
    def short_url(self) -> str:
        return f"{BASE_URL}/{self.short_code}"

    @property
    def settings(self) -> dict:
        return {
            "track_referrer": self.track_referrer,
            "track_location": self.track_location,
            "track_device_info": self.track_device_info,
            "redirect_type": self.redirect_type,
            "redirect_delay": self.redirect_delay,
        }


class ClickEvent(Base):
    __tablename__ = "click_events"
    __allow_unmapped__ = True

    id = Column(Integer, primary_key=True, index=True)
    link_id = Column(Integer, ForeignKey("links.id", ondelete="CASCADE"), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), default=datetime.now, nullable=False)
    ip_address = Column(String(45), default="")
    user_agent = Column(String(512), default="")
    referrer = Column(String(2048), default="")
    device = Column(String(20), default="")
    browser = Column(String(100), default="")
    browser_version = Column(String(50), default="")
    os = Column(String(100), default="")
    platform = Column(String(100), default="")
    language = Column(String(50), default="")
    country = Column(String(100), default="")
    city = Column(String(100), default="")
    region = Column(String(100), default="")
    timezone = Column(String(64), default="")
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    time_on_page = Column(Float, nullable=True)
    exit_page = Column(String(2048), nullable=True)

    link = relationship("Link", back_populates="analytics_log")


class DailyStat(Base):
    __tablename__ = "daily_stats"
    __allow_unmapped__ = True

    id = Column(Integer, primary_key=True, index=True)
    link_id = Column(Integer, ForeignKey("links.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)
    clicks = Column(Integer, default=0, nullable=False)
    unique_visitors = Column(Integer, default=0, nullable=False)
    country_counts = Column(JSON, default=dict)
    device_counts = Column(JSON, default=dict)
    browser_counts = Column(JSON, default=dict)
    referrer_counts = Column(JSON, default=dict)
    time_on_page_total = Column(Float, default=0.0, nullable=False)
    time_on_page_count = Column(Integer, default=0, nullable=False)
    bounce_count = Column(Integer, default=0, nullable=False)
    bounce_rate = Column(Float, default=0.0, nullable=False)

    link = relationship("Link", back_populates="daily_stats")

    __table_args__ = (
        UniqueConstraint("link_id", "date", name="uix_daily_stat_day"),
    )

    @property
    def average_time_on_page(self) -> float:
        if not self.time_on_page_count:
            return 0
        return self.time_on_page_total / self.time_on_page_count


class UniqueVisitor(Base):
    """Реестр уникальных посетителей ссылки (идентификатор посетителя - IP-адрес)"""
    __tablename__ = "unique_visitors"
    __allow_unmapped__ = True

    id = Column(Integer, primary_key=True, index=True)
    link_id = Column(Integer, ForeignKey("links.id", ondelete="CASCADE"), nullable=False)
    ip_address = Column(String(45), nullable=False)
    first_visit = Column(DateTime(timezone=True), nullable=False)
    last_visit = Column(DateTime(timezone=True), nullable=False)
    total_visits = Column(Integer, default=1, nullable=False)

    link = relationship("Link", back_populates="unique_visitors")

    __table_args__ = (
        UniqueConstraint("link_id", "ip_address", name="uix_unique_visitor"),
        Index("ix_unique_visitors_last_visit", "link_id", "last_visit"),
    )
