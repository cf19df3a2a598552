"""
Таксономия ошибок движка цен и маршрутизации.
Каждая ошибка несёт стабильный код причины (snake_case) для вызывающей стороны.
"""
from dataclasses import dataclass
from typing import Any, Optional


class PreturiError(Exception):
    """Базовая ошибка операции движка."""

    status_code = 400

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code
        self.message = message or code


class ValidationError(PreturiError):
    """Некорректный ввод: отклоняется до любого обращения к хранилищу."""

    status_code = 400


class ResolutionError(PreturiError):
    """Не найден инструмент, pipeline или stage: операция прерывается целиком."""

    status_code = 404


class PolicyViolation(PreturiError):
    """Запрещено правилами: заблокированная tăviță, не выполнено условие отправки."""

    status_code = 409


class PersistenceError(PreturiError):
    """Хранилище не смогло выполнить запись; состояние не изменено."""

    status_code = 503


@dataclass
class OperationResult:
    """Результат операции на границе: прошла / не прошла и код причины."""

    ok: bool
    code: str = "ok"
    message: str = ""
    value: Optional[Any] = None

    @classmethod
    def success(cls, value: Any = None) -> "OperationResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: PreturiError) -> "OperationResult":
        return cls(ok=False, code=error.code, message=error.message)
