# таксономия ошибок; status_code/code читает обработчик в api/routes.py

class StorytimeError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(StorytimeError):
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str | None = None):
        super().__init__(message or f"Missing required field: {field}")
        self.field = field


class AuthError(StorytimeError):
    status_code = 401
    code = "NOT_AUTHENTICATED"


class QuotaExceeded(StorytimeError):
    """Бизнес-условие, а не сбой: клиент показывает апгрейд, а не тост с ошибкой."""
    status_code = 429
    code = "LIMIT_REACHED"


class UpstreamOracleError(StorytimeError):
    status_code = 502
    code = "UPSTREAM_UNAVAILABLE"

    def __init__(self, oracle: str, message: str = "", http_status: int | None = None):
        super().__init__(f"{oracle}: {message}" if message else oracle)
        self.oracle = oracle
        self.http_status = http_status


class GenerationError(StorytimeError):
    status_code = 500
    code = "GENERATION_FAILED"


class StorageError(StorytimeError):
    """Хранилище недоступно. Можно повторить запрос."""
    status_code = 503
    code = "STORAGE_UNAVAILABLE"
    retryable = True


class NotFoundError(StorytimeError):
    status_code = 404
    code = "NOT_FOUND"
