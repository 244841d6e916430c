"""
Расчёт отображаемых и списываемых цен.

Базовые цены в каталоге заведены под коэффициент 5.25, поэтому итоговая цена
считается как ``round(base_price / 5.25 * coefficient)``. Смена глобального
коэффициента пропорционально меняет все цены без перезаписи каталога.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict

REFERENCE_COEFFICIENT = Decimal('5.25')


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def compute_charged_price(base_price, coefficient) -> int:
    """Цена за единицу при текущем коэффициенте, округление как у Math.round."""
    price = _to_decimal(base_price) / REFERENCE_COEFFICIENT * _to_decimal(coefficient)
    return int(price.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def line_total(price: int, quantity: int) -> int:
    return price * quantity


def price_option_payload(option, coefficient, is_admin: bool = False) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        'id': option.id,
        'size': option.size,
        'price': compute_charged_price(option.price, coefficient),
    }
    if is_admin:
        payload['base_price'] = option.price
        payload['resin_ml'] = option.resin_ml
    return payload

