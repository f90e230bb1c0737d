class LinkError(Exception):
    """Базовая ошибка операций над ссылками"""
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFoundError(LinkError):
    """Код или алиас не найден, либо ссылка принадлежит другому пользователю"""
    status_code = 404


class ExpiredError(LinkError):
    """Срок действия ссылки истек или ссылка заблокирована"""
    status_code = 410


class ConflictError(LinkError):
    """Алиас уже занят"""
    status_code = 409


class ValidationError(LinkError):
    status_code = 400


class PersistenceError(LinkError):
    """Ошибка сохранения в базу данных"""
    status_code = 500
