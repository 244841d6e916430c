from decimal import Decimal

import pytest
from rest_framework.test import APIClient

from api.models import MarketSettings, PriceOption, Product, User


@pytest.fixture(autouse=True)
def media_root(settings, tmp_path):
    settings.MEDIA_ROOT = str(tmp_path / 'uploads')
    return settings.MEDIA_ROOT


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def admin_user(db):
    return User.objects.create_user(username='admin', password='secret123',
                                    role=User.Role.ADMIN, is_staff=True)


@pytest.fixture
def buyer(db):
    return User.objects.create_user(username='buyer', password='secret123', role=User.Role.BUYER)


@pytest.fixture
def executor(db):
    return User.objects.create_user(username='executor', password='secret123', role=User.Role.EXECUTOR)


@pytest.fixture
def client_for(api_client):
    def _client(user):
        api_client.force_authenticate(user=user)
        return api_client
    return _client


@pytest.fixture
def market_settings(db):
    return MarketSettings.load()


@pytest.fixture
def make_product(db):
    def _make(name='Фигурка', options=((500, 'S'),), visible=True):
        product = Product.objects.create(name=name, is_visible=visible)
        for position, (price, size) in enumerate(options):
            PriceOption.objects.create(product=product, position=position, size=size,
                                       price=price, resin_ml=Decimal('12.50'))
        return product
    return _make


@pytest.fixture
def place_order(client_for, make_product):
    """Оформляет заказ от имени пользователя и возвращает его id."""
    def _place(user, items=None):
        if items is None:
            product = make_product()
            items = [{'product_id': product.pk, 'quantity': 1}]
        response = client_for(user).post('/api/orders/', {'line_items': items})
        assert response.status_code == 201, response.data
        return response.data['id']
    return _place
