import jwt

from app import db, User


def test_register_creates_customer_even_if_admin_requested(client, test_app):
    resp = client.post('/api/auth/register', json={'email': 'Novo@Loja.test', 'password': 'segredo1', 'role': 'ADMIN'})
    assert resp.status_code == 201
    assert resp.json['user']['role'] == 'CUSTOMER'
    assert resp.json['user']['email'] == 'novo@loja.test'

    payload = jwt.decode(resp.json['token'], 'test-secret', algorithms=['HS256'])
    assert payload['role'] == 'CUSTOMER'
    with test_app.app_context():
        assert User.query.filter_by(email='novo@loja.test').one().role == 'CUSTOMER'


def test_register_validation(client):
    assert client.post('/api/auth/register', json={'email': 'a@b.c'}).status_code == 400
    assert client.post('/api/auth/register', json={'email': 'a@b.c', 'password': '123'}).status_code == 400
    dup = client.post('/api/auth/register', json={'email': 'cliente@loja.test', 'password': 'segredo1'})
    assert dup.status_code == 400


def test_login(client):
    ok = client.post('/api/auth/login', json={'email': 'cliente@loja.test', 'password': 'clientepass'})
    assert ok.status_code == 200
    assert ok.json['user']['role'] == 'CUSTOMER'

    me = client.get('/api/auth/me', headers={'Authorization': f"Bearer {ok.json['token']}"})
    assert me.status_code == 200
    assert me.json['user']['email'] == 'cliente@loja.test'

    bad = client.post('/api/auth/login', json={'email': 'cliente@loja.test', 'password': 'errada'})
    assert bad.status_code == 401
    assert bad.json['error'] == 'Invalid credentials'


def test_guest_has_no_password_and_cannot_login(client, test_app):
    resp = client.post('/api/auth/guest')
    assert resp.status_code == 201
    email = resp.json['user']['email']
    assert resp.json['user']['role'] == 'GUEST'

    with test_app.app_context():
        assert db.session.query(User).filter_by(email=email).one().password_hash is None

    login = client.post('/api/auth/login', json={'email': email, 'password': 'qualquer'})
    assert login.status_code == 401


def test_missing_or_invalid_token_is_401(client):
    assert client.get('/api/auth/me').status_code == 401
    assert client.get('/api/auth/me', headers={'Authorization': 'Bearer lixo'}).status_code == 401


def test_admin_routes_reject_customers(client, customer_headers, admin_headers):
    assert client.get('/api/admin/products').status_code == 401
    assert client.get('/api/admin/products', headers=customer_headers).status_code == 403
    assert client.get('/api/admin/products', headers=admin_headers).status_code == 200


def test_unknown_route_returns_json_404(client):
    resp = client.get('/api/nao-existe')
    assert resp.status_code == 404
    assert resp.json == {'error': 'Route not found'}
