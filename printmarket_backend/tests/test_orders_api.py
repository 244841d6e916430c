from decimal import Decimal

import pytest

from api.models import DiscountCondition, DiscountRule, Order, Product, User

pytestmark = pytest.mark.django_db


@pytest.fixture
def cart(make_product):
    first = make_product('Дракон', options=((500, 'S'), (800, 'M')))
    second = make_product('Рыцарь', options=((300, '10 см'),))
    return [
        {'product_id': first.pk, 'quantity': 2, 'size': 'S'},
        {'product_id': second.pk, 'quantity': 1},
    ]


def advance(client, order_id, *statuses):
    for target in statuses:
        response = client.post(f'/api/orders/{order_id}/update_status/', {'status': target})
        assert response.status_code == 200, response.data
    return response


def test_order_total_is_computed_on_server(client_for, buyer, cart):
    response = client_for(buyer).post('/api/orders/', {'line_items': cart, 'total_price': '1'})

    assert response.status_code == 201
    assert Decimal(response.data['total_price']) == Decimal('1300')
    assert Decimal(response.data['subtotal']) == Decimal('1300')
    assert response.data['status'] == 'created'
    assert response.data['user']['id'] == buyer.pk
    assert [item['line_total'] for item in response.data['items']] == [1000, 300]
    # базовая цена видна только администратору
    assert 'base_price' not in response.data['items'][0]


def test_order_uses_current_coefficient(client_for, buyer, market_settings, make_product):
    market_settings.price_coefficient = Decimal('6.0')
    market_settings.save()
    product = make_product(options=((1000, 'L'),))

    response = client_for(buyer).post('/api/orders/', {'line_items': [{'product_id': product.pk, 'quantity': 1}]})

    assert response.status_code == 201
    assert response.data['items'][0]['price'] == 1143
    assert Decimal(response.data['total_price']) == Decimal('1143')


def test_legacy_products_payload(client_for, buyer, make_product):
    product = make_product(options=((500, 'S'), (700, 'M')))
    payload = {'products': [{'id': product.pk, 'quantity': 3, 'selectedSize': {'size': 'M'}}]}

    response = client_for(buyer).post('/api/orders/create_from_cart/', payload)

    assert response.status_code == 201
    assert response.data['items'][0]['size'] == 'M'
    assert Decimal(response.data['total_price']) == Decimal('2100')


@pytest.mark.parametrize('payload', [
    {'line_items': []},
    {},
    {'line_items': [{'product_id': 1, 'quantity': 0}]},
])
def test_invalid_cart_is_rejected(client_for, buyer, payload):
    response = client_for(buyer).post('/api/orders/', payload)
    assert response.status_code == 400
    assert 'error' in response.data
    assert Order.objects.count() == 0


def test_hidden_product_cannot_be_ordered(client_for, buyer, make_product):
    product = make_product(visible=False)
    response = client_for(buyer).post('/api/orders/', {'line_items': [{'product_id': product.pk, 'quantity': 1}]})
    assert response.status_code == 400


def test_unknown_size_is_rejected(client_for, buyer, make_product):
    product = make_product(options=((500, 'S'), (700, 'M')))
    client = client_for(buyer)

    assert client.post('/api/orders/', {'line_items': [{'product_id': product.pk, 'quantity': 1, 'size': 'XL'}]}).status_code == 400
    # без размера и с несколькими вариантами выбрать нельзя
    assert client.post('/api/orders/', {'line_items': [{'product_id': product.pk, 'quantity': 1}]}).status_code == 400


def test_discount_is_applied_at_creation(client_for, buyer, market_settings, cart):
    for name, kind, value, role in (('Покупателям', 'percentage', '10', 'buyer'),
                                    ('Исполнителям', 'fixed', '500', 'executor')):
        rule = DiscountRule.objects.create(settings=market_settings, name=name,
                                           discount_type=kind, value=Decimal(value))
        DiscountCondition.objects.create(rule=rule, kind='role', params={'role': role})

    response = client_for(buyer).post('/api/orders/', {'line_items': cart})

    assert response.status_code == 201
    assert Decimal(response.data['discount_amount']) == Decimal('130')
    assert Decimal(response.data['total_price']) == Decimal('1170')


def test_quote_matches_created_order(client_for, buyer, market_settings, cart):
    DiscountRule.objects.create(settings=market_settings, name='Всем', discount_type='fixed', value=Decimal('100'))
    client = client_for(buyer)

    quote = client.post('/api/orders/quote/', {'line_items': cart})
    order = client.post('/api/orders/', {'line_items': cart})

    assert quote.status_code == 200
    assert quote.data['discounts'] == [{'name': 'Всем', 'type': 'fixed', 'value': '100.00'}]
    assert Decimal(quote.data['total_price']) == Decimal(order.data['total_price']) == Decimal('1200')


def test_invalid_transition_is_rejected(client_for, buyer, admin_user, place_order):
    order_id = place_order(buyer)

    response = client_for(admin_user).post(f'/api/orders/{order_id}/update_status/', {'status': 'ready'})

    assert response.status_code == 400
    assert response.data['code'] == 'invalid_transition'
    assert response.data['from'] == 'created'
    assert response.data['to'] == 'ready'
    assert Order.objects.get(pk=order_id).status == 'created'


def test_full_lifecycle_and_idempotent_ready(client_for, buyer, admin_user, make_product, place_order):
    product = make_product()
    order_id = place_order(buyer, [{'product_id': product.pk, 'quantity': 2}])
    client = client_for(admin_user)

    response = advance(client, order_id, 'accepted', 'printing', 'delayed', 'coloring', 'packaging', 'ready')
    assert response.data['order']['status'] == 'ready'
    assert response.data['order']['items'][0]['base_price'] == 500

    again = client.post(f'/api/orders/{order_id}/update_status/', {'status': 'ready'})
    assert again.status_code == 200
    product.refresh_from_db()
    assert product.sales_count == 2

    assert client.post(f'/api/orders/{order_id}/update_status/', {'status': 'printing'}).status_code == 400


def test_cancelled_is_terminal(client_for, buyer, admin_user, place_order):
    order_id = place_order(buyer)
    client = client_for(admin_user)
    advance(client, order_id, 'unpaid', 'cancelled')

    response = client.post(f'/api/orders/{order_id}/update_status/', {'status': 'accepted'})
    assert response.status_code == 400


def test_assigning_executors_accepts_order(client_for, buyer, admin_user, place_order):
    first = User.objects.create_user(username='exec7', password='secret123', role='executor')
    second = User.objects.create_user(username='exec9', password='secret123', role='executor')
    order_id = place_order(buyer)

    response = client_for(admin_user).post(
        f'/api/orders/{order_id}/assign_executors/', {'executor_ids': [first.pk, second.pk]}
    )

    assert response.status_code == 200
    assert response.data['order']['status'] == 'accepted'
    assert set(response.data['order']['assigned_executors']) == {first.pk, second.pk}


def test_assigning_keeps_advanced_status(client_for, buyer, admin_user, executor, place_order):
    order_id = place_order(buyer)
    client = client_for(admin_user)
    advance(client, order_id, 'accepted', 'printing')

    response = client.post(f'/api/orders/{order_id}/assign_executors/', {'executor_ids': [executor.pk]})

    assert response.status_code == 200
    assert response.data['order']['status'] == 'printing'


def test_assigning_non_executor_fails(client_for, buyer, admin_user, executor, place_order):
    order_id = place_order(buyer)

    response = client_for(admin_user).post(
        f'/api/orders/{order_id}/assign_executors/', {'executor_ids': [executor.pk, buyer.pk]}
    )

    assert response.status_code == 400
    order = Order.objects.get(pk=order_id)
    assert order.status == 'created'
    assert not order.assigned_executors.exists()


def test_non_admin_cannot_change_order(client_for, buyer, executor, place_order):
    order_id = place_order(buyer)
    client = client_for(buyer)

    assert client.post(f'/api/orders/{order_id}/update_status/', {'status': 'cancelled'}).status_code == 403
    assert client.post(f'/api/orders/{order_id}/assign_executors/', {'executor_ids': [executor.pk]}).status_code == 403
    assert client.patch(f'/api/orders/{order_id}/', {'total_price': '1'}).status_code == 403
    assert Order.objects.get(pk=order_id).total_price == Decimal('500')


def test_unknown_order_is_not_found(client_for, admin_user):
    response = client_for(admin_user).post('/api/orders/999/update_status/', {'status': 'accepted'})
    assert response.status_code == 404
    assert response.data['code'] == 'not_found'


@pytest.mark.parametrize('method, url, payload', [
    ('get', '/api/orders/abc/', None),
    ('patch', '/api/orders/abc/', {'admin_notes': 'x'}),
    ('post', '/api/orders/abc/update_status/', {'status': 'accepted'}),
])
def test_malformed_order_id_is_not_found(client_for, admin_user, method, url, payload):
    response = getattr(client_for(admin_user), method)(url, payload)
    assert response.status_code == 404
    assert response.data['code'] == 'not_found'


def test_malformed_user_filter_is_rejected(client_for, admin_user):
    response = client_for(admin_user).get('/api/orders/', {'user_id': 'abc'})
    assert response.status_code == 400


def test_user_filter(client_for, buyer, executor, admin_user, place_order):
    own_id = place_order(buyer)
    place_order(executor)

    response = client_for(admin_user).get('/api/orders/', {'user_id': buyer.pk})
    assert [o['id'] for o in response.data] == [own_id]


def test_explicit_status_wins_over_assignment(client_for, buyer, admin_user, executor, place_order):
    order_id = place_order(buyer)
    client = client_for(admin_user)

    skipped = client.patch(f'/api/orders/{order_id}/',
                           {'assigned_executors': [executor.pk], 'status': 'printing'})
    assert skipped.status_code == 400
    assert skipped.data['from'] == 'created'
    assert skipped.data['to'] == 'printing'
    order = Order.objects.get(pk=order_id)
    assert order.status == 'created'
    assert not order.assigned_executors.exists()

    combined = client.patch(f'/api/orders/{order_id}/',
                            {'assigned_executors': [executor.pk], 'status': 'unpaid'})
    assert combined.status_code == 200
    assert combined.data['status'] == 'unpaid'
    assert combined.data['assigned_executors'] == [executor.pk]


def test_stale_version_conflicts(client_for, buyer, admin_user, place_order):
    order_id = place_order(buyer)
    client = client_for(admin_user)

    first = client.post(f'/api/orders/{order_id}/update_status/', {'status': 'accepted', 'version': 1})
    assert first.status_code == 200
    assert first.data['order']['version'] == 2

    stale = client.post(f'/api/orders/{order_id}/update_status/', {'status': 'printing', 'version': 1})
    assert stale.status_code == 409
    assert Order.objects.get(pk=order_id).status == 'accepted'


def test_admin_can_override_total_and_notes(client_for, buyer, admin_user, place_order):
    order_id = place_order(buyer)

    response = client_for(admin_user).patch(
        f'/api/orders/{order_id}/', {'total_price': '450.00', 'admin_notes': 'скидка за ожидание'}
    )

    assert response.status_code == 200
    assert Decimal(response.data['total_price']) == Decimal('450')
    assert response.data['admin_notes'] == 'скидка за ожидание'


def test_empty_update_is_rejected(client_for, buyer, admin_user, place_order):
    order_id = place_order(buyer)
    response = client_for(admin_user).patch(f'/api/orders/{order_id}/', {'version': 1})
    assert response.status_code == 400


def test_buyer_sees_only_own_orders(client_for, buyer, place_order):
    other = User.objects.create_user(username='other', password='secret123')
    own_id = place_order(buyer)
    foreign_id = place_order(other)
    client = client_for(buyer)

    listed = client.get('/api/orders/')
    assert [o['id'] for o in listed.data] == [own_id]
    assert client.get(f'/api/orders/{foreign_id}/').status_code == 404


def test_executor_scopes(client_for, buyer, admin_user, executor, place_order):
    own_id = place_order(executor)
    assigned_id = place_order(buyer)
    place_order(buyer)
    client_for(admin_user).post(f'/api/orders/{assigned_id}/assign_executors/', {'executor_ids': [executor.pk]})
    client = client_for(executor)

    assert {o['id'] for o in client.get('/api/orders/').data} == {own_id, assigned_id}
    assert [o['id'] for o in client.get('/api/orders/', {'scope': 'own'}).data] == [own_id]
    assert [o['id'] for o in client.get('/api/orders/', {'scope': 'assigned'}).data] == [assigned_id]


def test_admin_filters(client_for, buyer, admin_user, place_order):
    first = place_order(buyer)
    second = place_order(buyer)
    client = client_for(admin_user)
    advance(client, second, 'accepted')

    assert [o['id'] for o in client.get('/api/orders/', {'status': 'accepted'}).data] == [second]
    assert [o['id'] for o in client.get('/api/orders/', {'search': str(first)}).data] == [first]
    assert client.get('/api/orders/', {'search': 'abc'}).data == []
    assert client.get('/api/orders/', {'status': 'lost'}).status_code == 400


def test_status_table_endpoint(client_for, buyer):
    response = client_for(buyer).get('/api/orders/statuses/')
    rows = {row['value']: row for row in response.data}
    assert rows['delayed']['allowed'] == ['printing', 'coloring', 'packaging', 'cancelled']


def test_deleted_product_keeps_order_snapshot(client_for, buyer, make_product, place_order):
    product = make_product('Снимок')
    order_id = place_order(buyer, [{'product_id': product.pk, 'quantity': 1}])
    Product.objects.filter(pk=product.pk).delete()

    response = client_for(buyer).get(f'/api/orders/{order_id}/')
    assert response.data['items'][0]['name'] == 'Снимок'
    assert response.data['items'][0]['product'] is None
