import os
import sys
import tempfile
from decimal import Decimal

import pytest

# Ensure project root is on sys.path for module resolution
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

# app.py reads its configuration at import time
_DB_FD, _DB_PATH = tempfile.mkstemp(suffix='.db')
os.environ['SECRET_KEY'] = 'test-secret'
os.environ['DATABASE_URL'] = f'sqlite:///{_DB_PATH}'
os.environ['PAYMENT_SANDBOX'] = 'true'
os.environ['RATELIMIT_ENABLED'] = 'false'
os.environ['BACKEND_URL'] = 'http://backend.test'
os.environ['LOG_FILE'] = os.path.join(tempfile.gettempdir(), 'vitrine-test.log')
os.environ.pop('GEO_DEFAULT_COUNTRY', None)

import pagamentos_gateway  # noqa: E402
from app import app, db, User, Product, Price, ProductRegion, set_password, create_token  # noqa: E402


@pytest.fixture
def test_app():
    app.config['TESTING'] = True
    pagamentos_gateway.reset_gateways()

    with app.app_context():
        db.drop_all()
        db.create_all()
        admin = User(email='admin@loja.test', password_hash=set_password('adminpass'), role='ADMIN')
        customer = User(email='cliente@loja.test', password_hash=set_password('clientepass'), role='CUSTOMER')
        other = User(email='outro@loja.test', password_hash=set_password('outropass'), role='CUSTOMER')
        db.session.add_all([admin, customer, other])
        db.session.commit()
        app.config['TEST_TOKENS'] = {
            'admin': create_token(admin),
            'customer': create_token(customer),
            'other': create_token(other),
        }
        app.config['TEST_USER_IDS'] = {'admin': admin.id, 'customer': customer.id, 'other': other.id}

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
    pagamentos_gateway.reset_gateways()


@pytest.fixture
def client(test_app):
    return test_app.test_client()


def _headers(test_app, who):
    return {'Authorization': f"Bearer {test_app.config['TEST_TOKENS'][who]}"}


@pytest.fixture
def admin_headers(test_app):
    return _headers(test_app, 'admin')


@pytest.fixture
def customer_headers(test_app):
    return _headers(test_app, 'customer')


@pytest.fixture
def other_headers(test_app):
    return _headers(test_app, 'other')


@pytest.fixture
def make_product(test_app):
    """Cria um produto com um preço; devolve (product_id, price_id)."""
    def _make(regions=('BR',), amount='19.90', is_active=True, name='Pack VIP', category='HD'):
        with test_app.app_context():
            product = Product(
                name=name,
                description='Conteúdo digital',
                image_url='https://img.loja.test/pack.png',
                is_active=is_active,
            )
            product.prices = [Price(amount=Decimal(amount), currency='BRL', category=category,
                                    delivery_link=f'https://t.me/+entrega-{name.replace(" ", "-").lower()}')]
            product.regions = [ProductRegion(country_code=code) for code in regions]
            db.session.add(product)
            db.session.commit()
            return product.id, product.prices[0].id
    return _make
