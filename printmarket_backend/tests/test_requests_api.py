import pytest

from api.models import CustomRequest

pytestmark = pytest.mark.django_db


def request_payload(**changes):
    payload = {
        'product_name': 'Фигурка кота',
        'additional_name': '',
        'model_links': ['https://models.example/cat'],
        'required_heights': ['10 см', '15 см'],
        'images': ['/uploads/cat.png'],
    }
    payload.update(changes)
    return payload


def test_buyer_creates_request(client_for, buyer, make_product):
    product = make_product()
    response = client_for(buyer).post('/api/custom-requests/', request_payload(
        product_id=product.pk, images=['/uploads/1.png', '/uploads/2.png', '/uploads/3.png'],
    ))

    assert response.status_code == 201
    assert response.data['status'] == 'pending'
    assert response.data['product_id'] == product.pk
    assert response.data['user']['id'] == buyer.pk
    assert len(response.data['images']) == 3


@pytest.mark.parametrize('changes', [
    {'model_links': [f'https://models.example/{i}' for i in range(6)]},
    {'images': ['/1.png', '/2.png', '/3.png', '/4.png']},
    {'required_heights': [str(i) for i in range(6)]},
    {'product_name': '   '},
])
def test_request_limits(client_for, buyer, changes):
    response = client_for(buyer).post('/api/custom-requests/', request_payload(**changes))
    assert response.status_code == 400
    assert not CustomRequest.objects.exists()


def test_blank_entries_are_not_counted(client_for, buyer):
    links = ['https://a', '', '  ', 'https://b', 'https://c', 'https://d', 'https://e']
    response = client_for(buyer).post('/api/custom-requests/', request_payload(model_links=links))
    assert response.status_code == 201
    assert len(response.data['model_links']) == 5


def test_admin_cannot_create_request(client_for, admin_user):
    assert client_for(admin_user).post('/api/custom-requests/', request_payload()).status_code == 403


def test_admin_resolves_request(client_for, buyer, admin_user):
    request_id = client_for(buyer).post('/api/custom-requests/', request_payload()).data['id']
    client = client_for(admin_user)

    response = client.patch(f'/api/custom-requests/{request_id}/',
                            {'status': 'fulfilled', 'admin_notes': 'Модель готова'})
    assert response.status_code == 200
    assert response.data['status'] == 'fulfilled'
    assert response.data['admin_notes'] == 'Модель готова'

    back = client.patch(f'/api/custom-requests/{request_id}/', {'status': 'pending'})
    assert back.status_code == 400
    assert back.data['code'] == 'invalid_transition'


def test_only_admin_updates_request(client_for, buyer):
    client = client_for(buyer)
    request_id = client.post('/api/custom-requests/', request_payload()).data['id']
    assert client.patch(f'/api/custom-requests/{request_id}/', {'status': 'rejected'}).status_code == 403


def test_missing_request_is_not_found(client_for, admin_user):
    assert client_for(admin_user).patch('/api/custom-requests/404/', {'status': 'waiting'}).status_code == 404


@pytest.mark.parametrize('method', ['get', 'patch'])
def test_malformed_request_id_is_not_found(client_for, admin_user, method):
    response = getattr(client_for(admin_user), method)('/api/custom-requests/abc/', {'status': 'waiting'})
    assert response.status_code == 404


def test_unknown_status_filter_is_rejected(client_for, buyer):
    response = client_for(buyer).get('/api/custom-requests/', {'status': 'lost'})
    assert response.status_code == 400
    assert 'error' in response.data


def test_visibility_and_status_filter(client_for, buyer, executor, admin_user):
    own = client_for(buyer).post('/api/custom-requests/', request_payload()).data['id']
    client_for(executor).post('/api/custom-requests/', request_payload())

    assert [r['id'] for r in client_for(buyer).get('/api/custom-requests/').data] == [own]

    client = client_for(admin_user)
    client.patch(f'/api/custom-requests/{own}/', {'status': 'waiting'})
    assert len(client.get('/api/custom-requests/').data) == 2
    assert [r['id'] for r in client.get('/api/custom-requests/', {'status': 'waiting'}).data] == [own]


def test_malformed_lists_read_as_empty(client_for, buyer):
    legacy = CustomRequest.objects.create(user=buyer, product_name='Старая', model_links='ссылка', images={'a': 1})

    response = client_for(buyer).get(f'/api/custom-requests/{legacy.pk}/')

    assert response.status_code == 200
    assert response.data['model_links'] == []
    assert response.data['images'] == []
