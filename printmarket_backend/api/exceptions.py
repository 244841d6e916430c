import logging

from django.db import DatabaseError, IntegrityError
from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import (
    APIException, NotFound, PermissionDenied, ValidationError,
)
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)

__all__ = [
    'ValidationError', 'NotFound', 'Forbidden', 'InvalidTransition',
    'Conflict', 'UpstreamUnavailable', 'api_exception_handler',
]


class Forbidden(PermissionDenied):
    default_detail = 'Недостаточно прав для выполнения операции'


class InvalidTransition(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = 'invalid_transition'

    def __init__(self, current, target):
        self.current = str(current)
        self.target = str(target)
        super().__init__(f'Недопустимый переход статуса: {self.current} -> {self.target}')


class Conflict(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Запись была изменена другим пользователем, обновите данные'
    default_code = 'conflict'


class UpstreamUnavailable(APIException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'База данных недоступна, попробуйте позже'
    default_code = 'upstream_unavailable'


def _message(detail):
    if isinstance(detail, list) and detail:
        return _message(detail[0])
    if isinstance(detail, dict) and detail:
        key, value = next(iter(detail.items()))
        message = _message(value)
        return message if key == 'non_field_errors' else f'{key}: {message}'
    return str(detail)


def api_exception_handler(exc, context):
    """Приводит все ошибки API к виду ``{"error": ..., "code": ...}``."""
    if isinstance(exc, IntegrityError):
        # нарушение ограничения при параллельной записи
        logger.warning('Integrity error in %s: %s', context.get('view').__class__.__name__, exc)
        exc = Conflict()
    elif isinstance(exc, DatabaseError):
        logger.exception('Database error in %s', context.get('view').__class__.__name__)
        exc = UpstreamUnavailable()

    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(exc, Http404):
        code = 'not_found'
    elif isinstance(exc, APIException):
        codes = exc.get_codes()
        code = codes if isinstance(codes, str) else 'invalid'
    else:
        code = 'error'

    body = {'error': _message(response.data.get('detail', response.data)
                              if isinstance(response.data, dict) else response.data),
            'code': code}
    if isinstance(exc, ValidationError) and isinstance(exc.detail, dict):
        body['details'] = response.data
    if isinstance(exc, InvalidTransition):
        body['from'] = exc.current
        body['to'] = exc.target
    response.data = body
    return response
