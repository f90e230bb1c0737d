import html
import logging
import math
import os
import shortuuid
import traceback
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, Depends, HTTPException, status, BackgroundTasks, Request, Query
from fastapi.responses import RedirectResponse, JSONResponse, HTMLResponse, Response
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy import String, cast, or_, text

from . import models, schemas, auth, cache, qr, analytics, expiration, reports, background_tasks as bg_tasks
from .database import engine, get_db
from .exceptions import LinkError, NotFoundError, ExpiredError, ConflictError, ValidationError, PersistenceError

# Настройка логирования
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


logger.info("Starting Link Analytics API")

# Создаем таблицы в базе данных
models.Base.metadata.create_all(bind=engine)

# Настройки CORS
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

# Пути фиксированных маршрутов, недоступные для коротких кодов
RESERVED_CODES = frozenset({"links", "users", "token", "healthz", "docs", "redoc", "openapi.json"})

SORT_OPTIONS = {
    "created_at": models.Link.created_at.asc(),
    "-created_at": models.Link.created_at.desc(),
    "clicks": models.Link.clicks.asc(),
    "-clicks": models.Link.clicks.desc(),
}

app = FastAPI(
    title="Link Analytics API",
    description="API for shortening URLs with click analytics",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.get("/")
async def root() -> Dict[str, str]:
    """
    Root endpoint for Link Analytics API
    """
    return {"message": "Welcome to Link Analytics API. Go to /docs for documentation."}


# Middleware для обработки исключений
@app.middleware("http")
async def log_exceptions(request: Request, call_next) -> JSONResponse:
    try:
        return await call_next(request)
    except Exception as e:
        logger.error(f"Unhandled exception: {str(e)}")
        logger.error(traceback.format_exc())

        # Не раскрываем детали ошибки в production
        error_detail = str(e) if os.getenv("ENVIRONMENT") == "development" else "Internal Server Error"

        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error", "error": error_detail}
        )


@app.exception_handler(LinkError)
async def link_error_handler(request: Request, exc: LinkError) -> JSONResponse:
    if isinstance(exc, PersistenceError):
        logger.error(f"Persistence error on {request.url.path}: {exc.detail}")
    else:
        logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# Обработчики событий
@app.on_event("startup")
async def startup_event() -> None:
    """
    Выполняется при запуске приложения
    """
    logger.info("Application startup")

    # Проверка подключения к базе данных
    try:
        db = next(get_db())
        try:
            result = db.execute(text("SELECT 1")).fetchone()
            logger.info(f"Database connection successful: {result}")
        except Exception as e:
            logger.error(f"Database connection failed: {str(e)}")
            logger.error(traceback.format_exc())
    except Exception as e:
        logger.error(f"Error getting database session: {str(e)}")
        logger.error(traceback.format_exc())

    # Проверка подключения к Redis
    try:
        if cache.redis_client:
            redis_result = cache.redis_client.ping()
            logger.info(f"Redis connection successful: {redis_result}")
        else:
            logger.warning("Redis client is not initialized. Cache functionality will be limited.")
    except Exception as e:
        logger.error(f"Redis connection failed: {str(e)}")
        logger.warning("Application will continue without Redis caching")


# Endpoint для регистрации пользователя
@app.post("/users/", response_model=schemas.UserResponse)
def create_user(user: schemas.UserCreate, db: Session = Depends(get_db)) -> models.User:
    """
    Регистрация нового пользователя
    """
    logger.debug(f"Attempting to create user with username: {user.username}")

    db_user = db.query(models.User).filter(models.User.username == user.username).first()
    if db_user:
        logger.warning(f"Username already registered: {user.username}")
        raise HTTPException(status_code=400, detail="Username already registered")

    db_user = db.query(models.User).filter(models.User.email == user.email).first()
    if db_user:
        logger.warning(f"Email already registered: {user.email}")
        raise HTTPException(status_code=400, detail="Email already registered")

    try:
        hashed_password = auth.get_password_hash(user.password)
        db_user = models.User(username=user.username, email=user.email, hashed_password=hashed_password)
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
        logger.info(f"User created successfully: {user.username}")
        return db_user
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating user: {str(e)}")
        raise HTTPException(status_code=500, detail="Error creating user")

# Endpoint для получения токена доступа
@app.post("/token", response_model=schemas.Token)
def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
) -> Dict[str, str]:
    """
    Получение JWT токена для аутентификации
    """
    logger.debug(f"Login attempt for username: {form_data.username}")

    user = auth.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        logger.warning(f"Failed login attempt for username: {form_data.username}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token_expires = timedelta(minutes=auth.ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = auth.create_access_token(
        data={"sub": user.username}, expires_delta=access_token_expires
    )

    logger.info(f"User {form_data.username} logged in successfully")
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/users/me/stats", response_model=schemas.UserStats)
def get_user_stats(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_active_user)
) -> Dict[str, int]:
    """
    Краткая статистика пользователя: число ссылок, кликов и действующих ссылок
    """
    links = db.query(models.Link).filter(models.Link.owner_id == current_user.id).all()
    return reports.user_totals(links)


def generate_unique_short_code(db: Session, length: int = 7) -> str:
    """
    Генерирует уникальный короткий код для ссылки

    Args:
        db: Сессия базы данных
        length: Длина короткого кода

    Returns:
        Уникальный короткий код
    """
    while True:
        short_code = shortuuid.uuid()[:length]
        if short_code not in RESERVED_CODES and not find_link_by_code(db, short_code):
            return short_code

def find_link_by_code(db: Session, code: str) -> Optional[models.Link]:
    """Поиск ссылки по короткому коду или пользовательскому алиасу"""
    return db.query(models.Link).filter(
        or_(models.Link.short_code == code, models.Link.custom_alias == code)
    ).first()

def validate_alias(alias: str) -> None:
    if not schemas.ALIAS_PATTERN.match(alias):
        raise ValidationError("Custom alias can only contain letters, numbers, hyphens, and underscores")
    if alias.lower() in RESERVED_CODES:
        raise ValidationError(f"Custom alias '{alias}' is reserved")

def parse_expiry_date(expires_at: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Преобразует дату истечения срока в локальное время без часового пояса

    Args:
        expires_at: Дата истечения срока в виде строки или объекта datetime

    Returns:
        Объект datetime или None
    """
    if not expires_at:
        return None

    if isinstance(expires_at, datetime):
        return expiration.to_local_naive(expires_at)

    try:
        # Обрабатываем ISO формат с учетом часового пояса
        parsed = datetime.fromisoformat(expires_at.replace('Z', '+00:00'))
    except ValueError as e:
        logger.error(f"Error parsing expiry date: {str(e)}")
        raise ValidationError(f"Invalid date format: {str(e)}")
    return expiration.to_local_naive(parsed)

def validate_future_expiry(expires_at: Optional[datetime]) -> None:
    if expires_at is not None and expires_at <= datetime.now():
        raise ValidationError("Expiration date must be in the future")

def get_owned_link(db: Session, link_id: int, user: models.User) -> models.Link:
    """Ссылка текущего пользователя; чужая ссылка неотличима от отсутствующей (кроме администратора)"""
    query = db.query(models.Link).filter(models.Link.id == link_id)
    if not auth.is_admin(user):
        query = query.filter(models.Link.owner_id == user.id)
    link = query.first()
    if not link:
        raise NotFoundError("Link not found")
    return link

def link_cache_payload(link: models.Link) -> Dict[str, Any]:
    return {
        "id": link.id,
        "original_url": link.original_url,
        "status": link.status,
        "expires_at": link.expires_at.isoformat() if link.expires_at else None,
        "redirect_type": link.redirect_type,
        "redirect_delay": link.redirect_delay,
    }

def invalidate_link(link: models.Link) -> None:
    cache.delete_link_cache(link.short_code, link.custom_alias)
    cache.delete_summary_cache(link.id)

def link_summary(link: models.Link, window_days: Optional[int] = None) -> Dict[str, Any]:
    """Сводка аналитики; сводка за окно по умолчанию кэшируется"""
    if window_days is not None:
        return analytics.summarize(link, window_days)

    summary = cache.get_summary_cache(link.id)
    if summary is None:
        summary = analytics.summarize(link)
        cache.set_summary_cache(link.id, summary)
    return summary

def link_with_analytics(link: models.Link, window_days: Optional[int] = None) -> schemas.LinkWithAnalytics:
    data = schemas.LinkResponse.model_validate(link).model_dump()
    return schemas.LinkWithAnalytics(**data, analytics=link_summary(link, window_days))

def commit_or_fail(db: Session, action: str, conflict_detail: Optional[str] = None) -> None:
    """
    Фиксация транзакции с переводом ошибок базы в ошибки API

    Нарушение ограничения уникальности дает ConflictError с conflict_detail
    (по умолчанию сообщение строится из action)
    """
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Integrity error while {action}: {str(e)}")
        raise ConflictError(conflict_detail or f"Conflict while {action}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error {action}: {str(e)}")
        logger.error(traceback.format_exc())
        raise PersistenceError(f"Error {action}")

# Endpoint для создания короткой ссылки
@app.post("/links/shorten", response_model=schemas.LinkResponse, status_code=201)
def create_short_link(
    link: schemas.LinkCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_active_user)
) -> models.Link:
    """
    Создание короткой ссылки

    Args:
        link: Данные для создания ссылки
        db: Сессия базы данных
        current_user: Текущий пользователь

    Returns:
        Созданная ссылка
    """
    logger.debug(f"Received request to create short link: {link.original_url}")

    if link.custom_alias:
        logger.debug(f"Custom alias provided: {link.custom_alias}")
        validate_alias(link.custom_alias)
        if find_link_by_code(db, link.custom_alias):
            raise ConflictError("Custom alias already in use")
        short_code = link.custom_alias
    else:
        short_code = generate_unique_short_code(db)
        logger.debug(f"Generated short code: {short_code}")

    expires_at = parse_expiry_date(link.expires_at)
    validate_future_expiry(expires_at)

    settings = link.settings or schemas.LinkSettings()

    db_link = models.Link(
        short_code=short_code,
        custom_alias=link.custom_alias,
        original_url=str(link.original_url),
        title=link.title,
        description=link.description,
        tags=link.tags or [],
        expires_at=expires_at,
        owner_id=current_user.id,
        **settings.model_dump()
    )
    db_link.qr_code = qr.qr_for_url(db_link.short_url)

    db.add(db_link)
    conflict_detail = "Custom alias already in use" if link.custom_alias else "Short code already in use"
    commit_or_fail(db, "creating link", conflict_detail)
    db.refresh(db_link)
    logger.info(f"Link created successfully: {short_code}")

    cache.set_link_cache(short_code, link_cache_payload(db_link))
    return db_link


@app.get("/healthz")
async def health_check() -> Dict[str, str]:
    """
    Эндпоинт для проверки работоспособности сервиса
    """
    try:
        db = next(get_db())
        db.execute(text("SELECT 1")).fetchone()
        db_status = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {str(e)}")
        db_status = "unhealthy"

    try:
        if cache.redis_client and cache.redis_client.ping():
            redis_status = "healthy"
        else:
            redis_status = "unhealthy"
    except Exception as e:
        logger.error(f"Redis health check failed: {str(e)}")
        redis_status = "unhealthy"

    is_healthy = db_status == "healthy"
    status_code = 200 if is_healthy else 503

    response = {
        "status": "healthy" if is_healthy else "unhealthy",
        "database": db_status,
        "redis": redis_status
    }

    return JSONResponse(content=response, status_code=status_code)


# Endpoint для списка ссылок с фильтрами и пагинацией
@app.get("/links", response_model=schemas.LinkList)
def list_links(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: str = Query("all", alias="status"),
    search: Optional[str] = None,
    time_range: Optional[int] = Query(None, ge=1),
    sort_by: str = "-created_at",
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_active_user)
) -> Dict[str, Any]:
    """
    Список ссылок пользователя

    Args:
        page: Номер страницы
        limit: Размер страницы
        status_filter: Статус ссылки или all
        search: Подстрока для поиска по URL, коду, алиасу, заголовку, описанию и тегам
        time_range: Только ссылки, созданные за последние N дней (и окно аналитики)
        sort_by: Поле сортировки, префикс '-' для убывания

    Returns:
        Страница ссылок с аналитикой и данные пагинации
    """
    if sort_by not in SORT_OPTIONS:
        raise ValidationError(f"Invalid sort field: {sort_by}")

    query = db.query(models.Link).filter(models.Link.owner_id == current_user.id)

    if status_filter != "all":
        allowed = [item.value for item in models.LinkStatus]
        if status_filter not in allowed:
            raise ValidationError(f"Invalid status filter: {status_filter}")
        query = query.filter(models.Link.status == status_filter)

    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            models.Link.original_url.ilike(pattern),
            models.Link.short_code.ilike(pattern),
            models.Link.custom_alias.ilike(pattern),
            models.Link.title.ilike(pattern),
            models.Link.description.ilike(pattern),
            cast(models.Link.tags, String).ilike(pattern)
        ))

    if time_range:
        query = query.filter(models.Link.created_at >= datetime.now() - timedelta(days=time_range))

    total = query.count()
    links = query.order_by(SORT_OPTIONS[sort_by], models.Link.id.desc()).offset((page - 1) * limit).limit(limit).all()
    logger.debug(f"Found {total} links for user {current_user.username}")

    urls = []
    for link in links:
        expiration.check_expiration(db, link)
        urls.append(link_with_analytics(link, time_range))

    return {
        "urls": urls,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit)
        }
    }


# Endpoint для сводного отчета по всем ссылкам пользователя
@app.get("/links/summary", response_model=schemas.Report)
def get_links_summary(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_active_user)
) -> Dict[str, Any]:
    """
    Сводная статистика по всем ссылкам пользователя
    """
    links = db.query(models.Link).filter(models.Link.owner_id == current_user.id).all()
    logger.debug(f"Building report over {len(links)} links for user {current_user.username}")
    return reports.build_report(links)


# Endpoint для получения ссылки с аналитикой
@app.get("/links/{link_id}", response_model=schemas.LinkWithAnalytics)
def get_link(
    link_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_active_user)
) -> schemas.LinkWithAnalytics:
    """
    Получение ссылки вместе со сводкой аналитики за последние 30 дней
    """
    link = get_owned_link(db, link_id, current_user)
    if expiration.check_expiration(db, link):
        invalidate_link(link)
    return link_with_analytics(link)


# Endpoint для обновления ссылки
@app.put("/links/{link_id}", response_model=schemas.LinkResponse)
def update_link(
    link_id: int,
    link_update: schemas.LinkUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_active_user)
) -> models.Link:
    """
    Обновление заголовка, описания, тегов, статуса, срока действия и настроек

    Блокировать и разблокировать ссылку может только администратор
    """
    logger.debug(f"Updating link: {link_id}")
    db_link = get_owned_link(db, link_id, current_user)

    if link_update.title is not None:
        db_link.title = link_update.title
    if link_update.description is not None:
        db_link.description = link_update.description
    if link_update.tags is not None:
        db_link.tags = link_update.tags

    if link_update.expires_at:
        expires_at = parse_expiry_date(link_update.expires_at)
        validate_future_expiry(expires_at)
        logger.debug(f"Updating expiry date: {expires_at}")
        db_link.expires_at = expires_at
        if db_link.is_expired:
            # Продление срока возвращает ссылку в работу
            db_link.is_expired = False
            if db_link.status == models.LinkStatus.EXPIRED.value:
                db_link.status = models.LinkStatus.ACTIVE.value

    if link_update.status and link_update.status != db_link.status:
        blocked = models.LinkStatus.BLOCKED.value
        if blocked in (link_update.status, db_link.status) and not auth.is_admin(current_user):
            logger.warning(f"User {current_user.username} tried to change blocked status of link {link_id}")
            raise HTTPException(status_code=403, detail="Only administrators can block or unblock links")
        if link_update.status == models.LinkStatus.ACTIVE.value and expiration.is_past(db_link.expires_at):
            raise ValidationError("Cannot activate a link past its expiration date")
        logger.debug(f"Changing status of link {link_id}: {db_link.status} -> {link_update.status}")
        db_link.status = link_update.status

    if link_update.settings:
        for field, value in link_update.settings.model_dump(exclude_none=True).items():
            setattr(db_link, field, value)

    commit_or_fail(db, "updating link")
    db.refresh(db_link)
    invalidate_link(db_link)

    logger.info(f"Link updated successfully: {db_link.short_code}")
    return db_link


@app.delete("/links/{link_id}", status_code=204)
def delete_link(
    link_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_active_user)
) -> Response:
    """
    Удаление ссылки вместе с ее аналитикой
    """
    logger.debug(f"Deleting link: {link_id}")
    db_link = get_owned_link(db, link_id, current_user)

    invalidate_link(db_link)
    db.delete(db_link)
    commit_or_fail(db, "deleting link")

    logger.info(f"Link deleted successfully: {link_id}")
    return Response(status_code=204)


@app.post("/links/{link_id}/qr", response_model=schemas.QRCodeResponse)
def regenerate_qr_code(
    link_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_active_user)
) -> Dict[str, str]:
    """
    Повторная генерация QR-кода короткой ссылки
    """
    db_link = get_owned_link(db, link_id, current_user)

    qr_code = qr.qr_for_url(db_link.short_url)
    if not qr_code:
        raise HTTPException(status_code=500, detail="Error generating QR code")

    db_link.qr_code = qr_code
    commit_or_fail(db, "saving QR code")
    return {"qr_code": qr_code}


def resolve_code(db: Session, code: str) -> Dict[str, Any]:
    """
    Поиск ссылки для перенаправления с проверкой срока действия

    Raises:
        NotFoundError: код не найден или ссылка отключена владельцем
        ExpiredError: срок действия истек или ссылка заблокирована
    """
    payload = cache.get_link_cache(code)
    if payload:
        cached_expiry = datetime.fromisoformat(payload["expires_at"]) if payload["expires_at"] else None
        if not expiration.is_past(cached_expiry):
            logger.debug("Cache hit, using cached link")
            return payload

    link = find_link_by_code(db, code)
    if not link:
        raise NotFoundError("Link not found")

    if expiration.check_expiration(db, link):
        invalidate_link(link)
        raise ExpiredError("Link has expired")

    if link.status == models.LinkStatus.INACTIVE.value:
        raise NotFoundError("Link not found")

    if not expiration.is_redirectable(link):
        raise ExpiredError("Link is no longer available")

    payload = link_cache_payload(link)
    cache.set_link_cache(code, payload)
    return payload

def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""

def build_click(request: Request, time_on_page: Optional[float], exit_page: Optional[str]) -> analytics.ClickInput:
    return analytics.ClickInput(
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        referrer=request.headers.get("referer", ""),
        accept_language=request.headers.get("accept-language", ""),
        time_on_page=time_on_page,
        exit_page=exit_page,
    )

DELAYED_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8"/>
    <meta http-equiv="refresh" content="{delay};url={url}">
    <title>Redirecting...</title>
    <style>
      body {{ font-family: Arial, sans-serif; display: flex; justify-content: center; align-items: center; height: 100vh; margin: 0; }}
      .container {{ text-align: center; }}
    </style>
  </head>
  <body>
    <div class="container">
      <h1>Redirecting in {delay} seconds...</h1>
      <p>Click <a href="{url}">here</a> if you're not redirected automatically.</p>
    </div>
  </body>
</html>
"""

INTERSTITIAL_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8"/>
    <title>You are leaving this site</title>
    <style>
      body {{ font-family: Arial, sans-serif; display: flex; justify-content: center; align-items: center; height: 100vh; margin: 0; }}
      .container {{ text-align: center; }}
    </style>
  </head>
  <body>
    <div class="container">
      <h1>You are about to visit</h1>
      <p>{url}</p>
      <p><a href="{url}">Continue</a></p>
    </div>
  </body>
</html>
"""

def redirect_response(payload: Dict[str, Any]) -> Response:
    """Ответ в зависимости от типа перенаправления ссылки"""
    url = payload["original_url"]
    redirect_type = payload["redirect_type"]

    if redirect_type == models.RedirectType.DELAYED.value:
        return HTMLResponse(DELAYED_PAGE.format(delay=int(payload["redirect_delay"]), url=html.escape(url, quote=True)))
    if redirect_type == models.RedirectType.INTERSTITIAL.value:
        return HTMLResponse(INTERSTITIAL_PAGE.format(url=html.escape(url, quote=True)))
    return RedirectResponse(url, status_code=307)


# Перенаправление по короткой ссылке (должно быть ПОСЛЕ всех специфичных маршрутов)
@app.get("/{code}")
def redirect_to_url(
    code: str,
    request: Request,
    background_tasks: BackgroundTasks,
    time_on_page: Optional[float] = Query(None, ge=0),
    exit_page: Optional[str] = None,
    db: Session = Depends(get_db)
) -> Response:
    """
    Перенаправление по короткому коду или алиасу

    Клик записывается в фоне после отправки ответа
    """
    logger.debug(f"Redirecting code: {code}")
    payload = resolve_code(db, code)

    click = build_click(request, time_on_page, exit_page)
    background_tasks.add_task(bg_tasks.record_click_task, db, payload["id"], click)

    logger.debug(f"Redirecting to: {payload['original_url']}")
    return redirect_response(payload)
