import pytest
from rest_framework.authtoken.models import Token

from api.models import User

pytestmark = pytest.mark.django_db


def register(client, username, role=None):
    payload = {'username': username, 'password': 'secret123'}
    if role:
        payload['role'] = role
    return client.post('/api/users/register/', payload)


def test_first_user_becomes_admin(api_client):
    first = register(api_client, 'founder')
    second = register(api_client, 'climber', role='admin')
    third = register(api_client, 'maker', role='executor')

    assert first.status_code == 201
    assert first.data['user']['role'] == 'admin'
    assert 'администратор' in first.data['message']
    assert User.objects.get(username='founder').is_staff
    assert second.data['user']['role'] == 'buyer'
    assert third.data['user']['role'] == 'executor'
    assert Token.objects.filter(key=first.data['token']).exists()


@pytest.mark.parametrize('username', ['ab', 'x' * 51])
def test_username_length(api_client, username):
    assert register(api_client, username).status_code == 400


def test_duplicate_username(api_client, buyer):
    assert register(api_client, 'buyer').status_code == 400


def test_login(api_client, buyer):
    ok = api_client.post('/api/users/login/', {'username': 'buyer', 'password': 'secret123'})
    assert ok.status_code == 200
    assert ok.data['user']['id'] == buyer.pk

    api_client.credentials(HTTP_AUTHORIZATION=f'Token {ok.data["token"]}')
    assert api_client.get('/api/users/me/').data['username'] == 'buyer'


@pytest.mark.parametrize('payload, status_code', [
    ({'username': 'buyer', 'password': 'wrong-pass'}, 401),
    ({'username': 'ghost', 'password': 'secret123'}, 404),
    ({'username': 'buyer'}, 400),
])
def test_login_failures(api_client, buyer, payload, status_code):
    response = api_client.post('/api/users/login/', payload)
    assert response.status_code == status_code
    assert 'error' in response.data


def test_profile_update(client_for, buyer):
    response = client_for(buyer).patch(f'/api/users/{buyer.pk}/', {'city': 'Казань', 'birthday': '1990-04-01'})

    assert response.status_code == 200
    assert response.data['city'] == 'Казань'
    assert response.data['birthday'] == '1990-04-01'


def test_role_change_requires_admin(client_for, buyer, admin_user):
    assert client_for(buyer).patch(f'/api/users/{buyer.pk}/', {'role': 'admin'}).status_code == 400

    response = client_for(admin_user).patch(f'/api/users/{buyer.pk}/', {'role': 'executor'})
    assert response.status_code == 200
    assert User.objects.get(pk=buyer.pk).is_executor


def test_cannot_edit_other_profile(client_for, buyer, executor):
    assert client_for(buyer).patch(f'/api/users/{executor.pk}/', {'city': 'Омск'}).status_code == 403


def test_admin_user_management(client_for, admin_user, buyer, executor):
    client = client_for(admin_user)

    assert {u['username'] for u in client.get('/api/users/').data} == {'admin', 'buyer', 'executor'}
    assert [u['username'] for u in client.get('/api/users/', {'role': 'executor'}).data] == ['executor']
    assert client.get('/api/users/executors/').data == [{'id': executor.pk, 'username': 'executor', 'role': 'executor'}]
    assert client.delete(f'/api/users/{admin_user.pk}/').status_code == 403
    assert client.delete(f'/api/users/{buyer.pk}/').status_code == 200
    assert not User.objects.filter(pk=buyer.pk).exists()


def test_user_list_is_admin_only(client_for, buyer):
    assert client_for(buyer).get('/api/users/').status_code == 403


def test_health(api_client):
    assert api_client.get('/api/health/').data == {'status': 'healthy'}
