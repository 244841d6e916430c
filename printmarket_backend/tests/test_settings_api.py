from decimal import Decimal

import pytest

from api.models import DiscountRule, MarketSettings

pytestmark = pytest.mark.django_db


RULES = [
    {
        'name': 'Постоянным покупателям',
        'type': 'percentage',
        'value': '10',
        'conditions': [
            {'kind': 'role', 'role': 'buyer'},
            {'kind': 'min_total_spent', 'amount': '5000'},
        ],
    },
    {
        'name': 'Старый формат',
        'type': 'fixed',
        'value': '200',
        'conditions': {'role': 'executor', 'min_order_amount': 0, 'start_date': '', 'end_date': ''},
    },
]


def test_defaults_are_public(api_client):
    response = api_client.get('/api/settings/')

    assert response.status_code == 200
    assert Decimal(response.data['price_coefficient']) == Decimal('5.25')
    assert response.data['payment_info'].startswith('Реквизиты для оплаты')
    assert response.data['discount_rules'] == []
    assert response.data['version'] == 1


def test_admin_updates_settings(client_for, admin_user, api_client):
    response = client_for(admin_user).put('/api/settings/', {
        'price_coefficient': '6.0',
        'show_discount_on_products': True,
        'discount_rules': RULES,
    })

    assert response.status_code == 200, response.data
    saved = response.data['settings']
    assert saved['version'] == 2
    assert Decimal(saved['price_coefficient']) == Decimal('6')
    assert saved['discount_rules'][0]['conditions'] == [
        {'kind': 'role', 'role': 'buyer'},
        {'kind': 'min_total_spent', 'amount': '5000'},
    ]
    # нули и пустые строки старого формата означают отсутствие условия
    assert saved['discount_rules'][1]['conditions'] == [{'kind': 'role', 'role': 'executor'}]
    assert api_client.get('/api/settings/').data == saved


def test_rules_are_replaced_wholesale(client_for, admin_user):
    client = client_for(admin_user)
    client.put('/api/settings/', {'discount_rules': RULES})
    client.put('/api/settings/', {'discount_rules': RULES[:1]})

    assert list(DiscountRule.objects.values_list('name', flat=True)) == ['Постоянным покупателям']


def test_stale_settings_version_conflicts(client_for, admin_user):
    client = client_for(admin_user)
    assert client.patch('/api/settings/', {'payment_info': 'Карта', 'version': 1}).status_code == 200

    response = client.patch('/api/settings/', {'payment_info': 'Другая карта', 'version': 1})

    assert response.status_code == 409
    assert response.data['code'] == 'conflict'
    assert MarketSettings.load().payment_info == 'Карта'


@pytest.mark.parametrize('payload', [
    {'price_coefficient': '0'},
    {'price_coefficient': '-1'},
    {'discount_rules': [{'name': 'Много', 'type': 'percentage', 'value': '150'}]},
    {'discount_rules': [{'name': 'Минус', 'type': 'fixed', 'value': '-5'}]},
    {'discount_rules': [{'name': 'Тип', 'type': 'bonus', 'value': '5'}]},
    {'discount_rules': [{'name': 'Условие', 'type': 'fixed', 'value': '5', 'conditions': [{'kind': 'moon_phase'}]}]},
])
def test_invalid_settings(client_for, admin_user, payload):
    response = client_for(admin_user).put('/api/settings/', payload)
    assert response.status_code == 400
    assert MarketSettings.load().version == 1


def test_only_admin_updates_settings(client_for, buyer, api_client):
    assert client_for(buyer).put('/api/settings/', {'payment_info': 'x'}).status_code == 403
    api_client.force_authenticate(user=None)
    assert api_client.put('/api/settings/', {'payment_info': 'x'}).status_code == 401
