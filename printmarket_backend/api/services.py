import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import F, Q, Sum
from django.utils import timezone

from . import discounts
from .exceptions import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from .models import (
    CustomRequest, DiscountCondition, DiscountRule, Favorite, MarketSettings,
    Order, OrderItem, OrderStatus, Product, RequestStatus, User,
)
from .pricing import compute_charged_price, line_total
from .workflow import ORDER_TRANSITIONS, REQUEST_TRANSITIONS, can_transition

logger = logging.getLogger(__name__)

# заказы, которые не учитываются в сумме покупок пользователя
NOT_SPENT_STATUSES = (OrderStatus.CANCELLED, OrderStatus.UNPAID)


def load_rules(market_settings: MarketSettings) -> List[discounts.Rule]:
    rules = []
    for rule in market_settings.discount_rules.prefetch_related('conditions'):
        try:
            conditions = tuple(
                discounts.parse_condition({'kind': c.kind, **(c.params or {})})
                for c in rule.conditions.all()
            )
        except ValueError as e:
            # правило с битым условием не применяется
            logger.warning('Skipping discount rule %s: %s', rule.pk, e)
            continue
        rules.append(discounts.Rule(rule.name, rule.discount_type, rule.value, conditions))
    return rules


def build_user_context(user, subtotal=Decimal('0'), product_ids: Iterable[int] = (), today=None):
    today = today or timezone.localdate()
    spent_orders = Order.objects.filter(user=user).exclude(status__in=NOT_SPENT_STATUSES)
    month_orders = spent_orders.filter(created_at__year=today.year, created_at__month=today.month)
    registered_on = timezone.localtime(user.date_joined).date() if user.date_joined else None
    return discounts.UserContext(
        user_id=user.pk,
        role=user.role,
        subtotal=Decimal(str(subtotal)),
        today=today,
        registered_on=registered_on,
        lifetime_spent=spent_orders.aggregate(total=Sum('total_price'))['total'] or Decimal('0'),
        monthly_orders=month_orders.count(),
        monthly_spent=month_orders.aggregate(total=Sum('total_price'))['total'] or Decimal('0'),
        product_ids=frozenset(product_ids),
    )


def _choose_option(product: Product, item: Dict[str, Any]):
    options = list(product.price_options.all())
    if not options:
        raise ValidationError(f'У товара "{product.name}" нет вариантов цены')
    if item.get('option_id'):
        for option in options:
            if option.pk == item['option_id']:
                return option
        raise ValidationError(f'Вариант цены {item["option_id"]} не найден у товара "{product.name}"')
    if item.get('size'):
        for option in options:
            if option.size == item['size']:
                return option
        raise ValidationError(f'Размер "{item["size"]}" не найден у товара "{product.name}"')
    if len(options) == 1:
        return options[0]
    raise ValidationError(f'Не выбран размер для товара "{product.name}"')


def price_line_items(items: List[Dict[str, Any]], coefficient: Decimal) -> List[Dict[str, Any]]:
    """Сопоставляет позиции корзины с каталогом и считает цены на сервере."""
    if not items:
        raise ValidationError('Корзина пуста')

    product_ids = {item['product_id'] for item in items}
    products = {
        p.pk: p for p in Product.objects.filter(pk__in=product_ids, is_visible=True)
        .prefetch_related('price_options')
    }

    priced = []
    for item in items:
        product = products.get(item['product_id'])
        if product is None:
            raise ValidationError(f'Товар {item["product_id"]} не найден')
        option = _choose_option(product, item)
        price = compute_charged_price(option.price, coefficient)
        if price <= 0:
            raise ValidationError(f'Неверная цена товара: {product.name}')
        priced.append({
            'product': product,
            'option': option,
            'name': product.name,
            'size': option.size,
            'base_price': option.price,
            'price': price,
            'quantity': item['quantity'],
            'line_total': line_total(price, item['quantity']),
        })
    return priced


def quote_cart(user, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    market_settings = MarketSettings.load()
    priced = price_line_items(items, market_settings.price_coefficient)
    subtotal = Decimal(sum(p['line_total'] for p in priced))
    ctx = build_user_context(user, subtotal, (p['product'].pk for p in priced))
    rules = load_rules(market_settings)
    return {
        'items': priced,
        'subtotal': subtotal,
        'discounts': discounts.applicable_rules(rules, ctx),
        'discount_amount': discounts.compute_discount(subtotal, rules, ctx),
    }


class OrderWorkflow:
    """Создание заказов и переходы их статусов."""

    def __init__(self, actor: User):
        self.actor = actor

    def _require_admin(self):
        if not self.actor.is_admin:
            raise Forbidden('Изменять заказы может только администратор')

    def visible_orders(self, scope=None):
        qs = Order.objects.select_related('user').prefetch_related('items', 'assigned_executors')
        if self.actor.is_admin:
            return qs
        if self.actor.is_executor:
            if scope == 'own':
                return qs.filter(user=self.actor)
            if scope == 'assigned':
                return qs.filter(assigned_executors=self.actor)
            return qs.filter(Q(user=self.actor) | Q(assigned_executors=self.actor)).distinct()
        return qs.filter(user=self.actor)

    def list_orders(self, scope=None, status=None, search=None, user_id=None):
        qs = self.visible_orders(scope)
        if status:
            if status not in OrderStatus.values:
                raise ValidationError(f'Неизвестный статус заказа: {status}')
            qs = qs.filter(status=status)
        if search:
            search = str(search).strip()
            if not search.isdigit():
                return qs.none()
            qs = qs.filter(pk=int(search))
        if user_id and self.actor.is_admin:
            if not str(user_id).isdigit():
                raise ValidationError(f'Некорректный ID пользователя: {user_id}')
            qs = qs.filter(user_id=int(user_id))
        return qs.order_by('-created_at', '-id')

    def get_order(self, order_id) -> Order:
        try:
            return self.visible_orders().get(pk=order_id)
        except (Order.DoesNotExist, ValueError, TypeError):
            raise NotFound('Заказ не найден')

    @transaction.atomic
    def create_order(self, items, notes='', client_total=None) -> Order:
        quote = quote_cart(self.actor, items)
        subtotal = quote['subtotal']
        discount = quote['discount_amount']
        total = subtotal - discount

        if client_total is not None and Decimal(str(client_total)) != total:
            logger.warning(
                'Client total %s differs from server total %s for user %s, using server value',
                client_total, total, self.actor.pk,
            )

        order = Order.objects.create(
            user=self.actor,
            subtotal=subtotal,
            discount_amount=discount,
            total_price=total,
            notes=(notes or '').strip(),
            status=OrderStatus.CREATED,
        )
        OrderItem.objects.bulk_create([
            OrderItem(
                order=order,
                product=p['product'],
                name=p['name'],
                size=p['size'],
                base_price=p['base_price'],
                price=p['price'],
                quantity=p['quantity'],
                resin_ml=p['option'].resin_ml,
            )
            for p in quote['items']
        ])
        logger.info('Order %s created for user %s: total %s (discount %s)',
                    order.pk, self.actor.pk, total, discount)
        return order

    def _lock(self, order_id, version=None) -> Order:
        try:
            order = Order.objects.select_for_update().get(pk=order_id)
        except (Order.DoesNotExist, ValueError, TypeError):
            raise NotFound('Заказ не найден')
        if version is not None and version != order.version:
            logger.warning('Stale update of order %s: version %s, stored %s',
                           order.pk, version, order.version)
            raise Conflict()
        return order

    @staticmethod
    def _resolve_executors(executor_ids) -> List[User]:
        ids = list(dict.fromkeys(executor_ids))
        executors = {u.pk: u for u in User.objects.filter(pk__in=ids, role=User.Role.EXECUTOR)}
        missing = [pk for pk in ids if pk not in executors]
        if missing:
            raise ValidationError(
                f'Пользователи не являются исполнителями: {", ".join(map(str, missing))}'
            )
        return [executors[pk] for pk in ids]

    def _apply_status(self, order: Order, target):
        if not can_transition(ORDER_TRANSITIONS, order.status, target):
            logger.warning('Rejected order %s transition %s -> %s', order.pk, order.status, target)
            raise InvalidTransition(order.status, target)
        if order.status == target:
            return
        if target == OrderStatus.READY:
            for item in order.items.filter(product__isnull=False):
                Product.objects.filter(pk=item.product_id).update(
                    sales_count=F('sales_count') + item.quantity
                )
        logger.info('Order %s status %s -> %s', order.pk, order.status, target)
        order.status = target

    @transaction.atomic
    def update_order(self, order_id, data: Dict[str, Any]) -> Order:
        """
        Частичное обновление заказа администратором.

        Назначение исполнителей переводит заказ в статус ``accepted``, если
        такой переход разрешён из текущего статуса. Явно переданный статус
        проверяется по таблице переходов.
        """
        self._require_admin()
        order = self._lock(order_id, data.get('version'))

        if 'assigned_executors' in data:
            executors = self._resolve_executors(data['assigned_executors'])
            order.assigned_executors.set(executors)
            logger.info('Order %s executors set to %s', order.pk, [u.pk for u in executors])
            if executors and 'status' not in data and \
                    can_transition(ORDER_TRANSITIONS, order.status, OrderStatus.ACCEPTED):
                self._apply_status(order, OrderStatus.ACCEPTED)

        if 'status' in data:
            self._apply_status(order, data['status'])

        if 'admin_notes' in data:
            order.admin_notes = data['admin_notes'] or ''

        if 'total_price' in data:
            logger.info('Order %s total overridden: %s -> %s', order.pk, order.total_price, data['total_price'])
            order.total_price = data['total_price']

        order.version = F('version') + 1
        order.save()
        order.refresh_from_db()
        return order

    def assign_executors(self, order_id, executor_ids, version=None) -> Order:
        return self.update_order(order_id, {'assigned_executors': executor_ids, 'version': version})

    def set_status(self, order_id, status, version=None) -> Order:
        return self.update_order(order_id, {'status': status, 'version': version})


class CustomRequestWorkflow:

    def __init__(self, actor: User):
        self.actor = actor

    def visible_requests(self):
        qs = CustomRequest.objects.select_related('user', 'product')
        if self.actor.is_admin:
            return qs
        return qs.filter(user=self.actor)

    def list_requests(self, status=None):
        qs = self.visible_requests()
        if status:
            if status not in RequestStatus.values:
                raise ValidationError(f'Неизвестный статус заявки: {status}')
            qs = qs.filter(status=status)
        return qs.order_by('-created_at', '-id')

    @transaction.atomic
    def create_request(self, data: Dict[str, Any]) -> CustomRequest:
        if self.actor.is_admin:
            raise Forbidden('Заявки на замер создают покупатели и исполнители')
        request = CustomRequest.objects.create(
            user=self.actor,
            product=data.get('product'),
            product_name=data['product_name'],
            additional_name=data.get('additional_name', ''),
            model_links=data.get('model_links', []),
            required_heights=data.get('required_heights', []),
            images=data.get('images', []),
            status=RequestStatus.PENDING,
        )
        logger.info('Custom request %s created for user %s', request.pk, self.actor.pk)
        return request

    @transaction.atomic
    def update_request(self, request_id, data: Dict[str, Any]) -> CustomRequest:
        if not self.actor.is_admin:
            raise Forbidden('Изменять заявки может только администратор')
        try:
            request = CustomRequest.objects.select_for_update().get(pk=request_id)
        except (CustomRequest.DoesNotExist, ValueError, TypeError):
            raise NotFound('Заявка не найдена')

        if 'status' in data:
            target = data['status']
            if not can_transition(REQUEST_TRANSITIONS, request.status, target):
                logger.warning('Rejected request %s transition %s -> %s', request.pk, request.status, target)
                raise InvalidTransition(request.status, target)
            request.status = target
        if 'admin_notes' in data:
            request.admin_notes = data['admin_notes'] or ''
        request.save()
        logger.info('Custom request %s updated', request.pk)
        return request


@transaction.atomic
def toggle_favorite(user: User, product: Product) -> bool:
    deleted, _ = Favorite.objects.filter(user=user, product=product).delete()
    if deleted:
        Product.objects.filter(pk=product.pk, favorites_count__gt=0).update(
            favorites_count=F('favorites_count') - 1
        )
        logger.info('User %s removed product %s from favorites', user.pk, product.pk)
        return False
    Favorite.objects.create(user=user, product=product)
    Product.objects.filter(pk=product.pk).update(favorites_count=F('favorites_count') + 1)
    logger.info('User %s added product %s to favorites', user.pk, product.pk)
    return True


@transaction.atomic
def update_market_settings(data: Dict[str, Any], version: Optional[int] = None) -> MarketSettings:
    market_settings = MarketSettings.objects.select_for_update().get(pk=MarketSettings.load().pk)
    if version is not None and version != market_settings.version:
        logger.warning('Stale settings update: version %s, stored %s', version, market_settings.version)
        raise Conflict()

    for field in ('payment_info', 'price_coefficient', 'show_discount_on_products'):
        if field in data:
            setattr(market_settings, field, data[field])

    if 'discount_rules' in data:
        market_settings.discount_rules.all().delete()
        for position, rule in enumerate(data['discount_rules']):
            stored = DiscountRule.objects.create(
                settings=market_settings,
                position=position,
                name=rule['name'],
                discount_type=rule['type'],
                value=rule['value'],
            )
            DiscountCondition.objects.bulk_create([
                DiscountCondition(rule=stored, kind=c.kind,
                                  params={k: v for k, v in c.to_dict().items() if k != 'kind'})
                for c in rule['conditions']
            ])

    market_settings.version = F('version') + 1
    market_settings.save()
    market_settings.refresh_from_db()
    logger.info('Market settings updated, version %s', market_settings.version)
    return market_settings


def notification_summary(user: User, now=None) -> Dict[str, Any]:
    now = now or timezone.now()
    since = now - timedelta(hours=settings.MARKETPLACE['NOTIFICATION_WINDOW_HOURS'])
    messages = user.received_messages.filter(created_at__gt=since).count()

    if user.is_admin:
        orders = Order.objects.filter(created_at__gt=since).count()
        requests = CustomRequest.objects.filter(created_at__gt=since).count()
        notices = [
            (messages, f'{messages} новых сообщений'),
            (orders, f'{orders} новых заказов'),
            (requests, f'{requests} новых заявок'),
        ]
    else:
        orders = OrderWorkflow(user).visible_orders().filter(updated_at__gt=since).count()
        requests = CustomRequestWorkflow(user).visible_requests().filter(updated_at__gt=since).count()
        notices = [
            (messages, f'{messages} новых сообщений'),
            (orders, f'{orders} изменений в заказах'),
            (requests, f'{requests} изменений в заявках'),
        ]

    return {
        'messages': messages,
        'orders': orders,
        'custom_requests': requests,
        'since': since,
        'notifications': [text for count, text in notices if count > 0],
    }
