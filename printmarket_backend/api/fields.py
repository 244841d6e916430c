import logging

from rest_framework import serializers

logger = logging.getLogger(__name__)


def coerce_list(value, field_name='', owner=None):
    """Старые записи могут хранить в списковых полях что угодно."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    logger.warning('Malformed list in %s.%s: %r, using []', owner or '?', field_name, value)
    return []


class LenientListField(serializers.ListField):
    """
    Списковое поле, которое при чтении превращает некорректные данные
    в пустой список вместо ошибки всего ответа.
    """

    def get_attribute(self, instance):
        value = super().get_attribute(instance)
        return coerce_list(value, self.field_name, f'{type(instance).__name__}#{getattr(instance, "pk", "?")}')
