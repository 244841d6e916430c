"""
Движок скидок.

Каждое правило скидки содержит список условий. Условие это один из
фиксированных вариантов (роль, минимальная сумма покупок, окно дат и т.д.),
правило применяется, только если выполнены все его условия. Отсутствующее
условие ничего не ограничивает.
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

PERCENTAGE = 'percentage'
FIXED = 'fixed'
RULE_TYPES = (PERCENTAGE, FIXED)

CENT = Decimal('0.01')


@dataclass(frozen=True)
class UserContext:
    user_id: Optional[int]
    role: str
    subtotal: Decimal = Decimal('0')
    today: date = field(default_factory=date.today)
    registered_on: Optional[date] = None
    lifetime_spent: Decimal = Decimal('0')
    monthly_orders: int = 0
    monthly_spent: Decimal = Decimal('0')
    product_ids: FrozenSet[int] = frozenset()


@dataclass(frozen=True)
class RoleEquals:
    role: str
    kind = 'role'

    def holds(self, ctx: UserContext) -> bool:
        return ctx.role == self.role

    def to_dict(self):
        return {'kind': self.kind, 'role': self.role}


@dataclass(frozen=True)
class MinTotalSpent:
    amount: Decimal
    kind = 'min_total_spent'

    def holds(self, ctx: UserContext) -> bool:
        return ctx.lifetime_spent >= self.amount

    def to_dict(self):
        return {'kind': self.kind, 'amount': str(self.amount)}


@dataclass(frozen=True)
class MinOrderAmount:
    amount: Decimal
    kind = 'min_order_amount'

    def holds(self, ctx: UserContext) -> bool:
        return ctx.subtotal >= self.amount

    def to_dict(self):
        return {'kind': self.kind, 'amount': str(self.amount)}


@dataclass(frozen=True)
class DateWindow:
    start: Optional[date] = None
    end: Optional[date] = None
    kind = 'date_window'

    def holds(self, ctx: UserContext) -> bool:
        if self.start and ctx.today < self.start:
            return False
        if self.end and ctx.today > self.end:
            return False
        return True

    def to_dict(self):
        return {
            'kind': self.kind,
            'start': self.start.isoformat() if self.start else None,
            'end': self.end.isoformat() if self.end else None,
        }


@dataclass(frozen=True)
class UserEquals:
    user_id: int
    kind = 'user'

    def holds(self, ctx: UserContext) -> bool:
        return ctx.user_id == self.user_id

    def to_dict(self):
        return {'kind': self.kind, 'user_id': self.user_id}


@dataclass(frozen=True)
class RegisteredAfter:
    since: date
    kind = 'registered_after'

    def holds(self, ctx: UserContext) -> bool:
        return ctx.registered_on is not None and ctx.registered_on >= self.since

    def to_dict(self):
        return {'kind': self.kind, 'date': self.since.isoformat()}


@dataclass(frozen=True)
class MonthlyOrdersCount:
    count: int
    kind = 'monthly_orders_count'

    def holds(self, ctx: UserContext) -> bool:
        return ctx.monthly_orders >= self.count

    def to_dict(self):
        return {'kind': self.kind, 'count': self.count}


@dataclass(frozen=True)
class MonthlySpentAmount:
    amount: Decimal
    kind = 'monthly_spent_amount'

    def holds(self, ctx: UserContext) -> bool:
        return ctx.monthly_spent >= self.amount

    def to_dict(self):
        return {'kind': self.kind, 'amount': str(self.amount)}


@dataclass(frozen=True)
class ProductsInCart:
    product_ids: FrozenSet[int]
    kind = 'products'

    def holds(self, ctx: UserContext) -> bool:
        return bool(self.product_ids & ctx.product_ids)

    def to_dict(self):
        return {'kind': self.kind, 'product_ids': sorted(self.product_ids)}


CONDITION_KINDS = (
    RoleEquals.kind, MinTotalSpent.kind, MinOrderAmount.kind, DateWindow.kind,
    UserEquals.kind, RegisteredAfter.kind, MonthlyOrdersCount.kind,
    MonthlySpentAmount.kind, ProductsInCart.kind,
)


def _amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError(f'Некорректная сумма: {value!r}')
    if not amount.is_finite() or amount < 0:
        raise ValueError(f'Некорректная сумма: {value!r}')
    return amount


def _count(value) -> int:
    try:
        count = int(value)
    except (ValueError, TypeError):
        raise ValueError(f'Некорректное количество: {value!r}')
    if count < 0:
        raise ValueError(f'Некорректное количество: {value!r}')
    return count


def _date(value) -> Optional[date]:
    if value in (None, ''):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValueError(f'Некорректная дата: {value!r}')


def parse_condition(data: Dict[str, Any]):
    """Строит условие из словаря вида ``{"kind": ..., ...}``."""
    if not isinstance(data, dict):
        raise ValueError('Условие должно быть объектом')
    kind = data.get('kind')
    if kind == RoleEquals.kind:
        role = str(data.get('role') or '').strip()
        if not role:
            raise ValueError('Не указана роль')
        return RoleEquals(role)
    if kind == MinTotalSpent.kind:
        return MinTotalSpent(_amount(data.get('amount')))
    if kind == MinOrderAmount.kind:
        return MinOrderAmount(_amount(data.get('amount')))
    if kind == DateWindow.kind:
        start, end = _date(data.get('start')), _date(data.get('end'))
        if start and end and start > end:
            raise ValueError('Дата начала позже даты окончания')
        return DateWindow(start, end)
    if kind == UserEquals.kind:
        return UserEquals(_count(data.get('user_id')))
    if kind == RegisteredAfter.kind:
        registered = _date(data.get('date'))
        if registered is None:
            raise ValueError('Не указана дата регистрации')
        return RegisteredAfter(registered)
    if kind == MonthlyOrdersCount.kind:
        return MonthlyOrdersCount(_count(data.get('count')))
    if kind == MonthlySpentAmount.kind:
        return MonthlySpentAmount(_amount(data.get('amount')))
    if kind == ProductsInCart.kind:
        ids = data.get('product_ids') or []
        if not isinstance(ids, (list, tuple)):
            raise ValueError('product_ids должен быть списком')
        return ProductsInCart(frozenset(_count(pk) for pk in ids))
    raise ValueError(f'Неизвестный тип условия: {kind!r}')


def conditions_from_legacy(bag: Dict[str, Any]) -> List:
    """
    Переводит старый формат условий (словарь с нулями и пустыми строками
    вместо отсутствующих условий) в список типизированных условий.
    """
    conditions = []
    if not bag:
        return conditions
    if bag.get('role'):
        conditions.append(RoleEquals(str(bag['role'])))
    for key, cls in (('min_total_spent', MinTotalSpent),
                     ('min_order_amount', MinOrderAmount),
                     ('monthly_spent_amount', MonthlySpentAmount)):
        if bag.get(key) and _amount(bag[key]) > 0:
            conditions.append(cls(_amount(bag[key])))
    if bag.get('monthly_orders_count') and _count(bag['monthly_orders_count']) > 0:
        conditions.append(MonthlyOrdersCount(_count(bag['monthly_orders_count'])))
    if bag.get('start_date') or bag.get('end_date'):
        conditions.append(parse_condition({
            'kind': DateWindow.kind,
            'start': bag.get('start_date'),
            'end': bag.get('end_date'),
        }))
    if bag.get('user_id') not in (None, ''):
        conditions.append(UserEquals(_count(bag['user_id'])))
    if bag.get('registration_date_after'):
        conditions.append(RegisteredAfter(_date(bag['registration_date_after'])))
    if bag.get('product_ids'):
        conditions.append(parse_condition({'kind': ProductsInCart.kind, 'product_ids': bag['product_ids']}))
    return conditions


def parse_conditions(raw) -> List:
    if raw is None:
        return []
    if isinstance(raw, dict):
        return conditions_from_legacy(raw)
    if isinstance(raw, (list, tuple)):
        return [parse_condition(item) for item in raw]
    raise ValueError('conditions должен быть списком условий')


@dataclass(frozen=True)
class Rule:
    name: str
    type: str
    value: Decimal
    conditions: Tuple = ()

    def applies(self, ctx: UserContext) -> bool:
        return all(condition.holds(ctx) for condition in self.conditions)

    def amount_for(self, subtotal: Decimal) -> Decimal:
        if self.type == PERCENTAGE:
            return subtotal * self.value / Decimal('100')
        return self.value


def applicable_rules(rules: Iterable[Rule], ctx: UserContext) -> List[Rule]:
    return [rule for rule in rules if rule.applies(ctx)]


def compute_discount(subtotal, rules: Iterable[Rule], ctx: UserContext) -> Decimal:
    subtotal = Decimal(str(subtotal))
    if subtotal <= 0:
        return Decimal('0.00')
    total = sum((rule.amount_for(subtotal) for rule in applicable_rules(rules, ctx)), Decimal('0'))
    total = max(Decimal('0'), min(total, subtotal))
    return total.quantize(CENT, rounding=ROUND_HALF_UP)
