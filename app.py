import os
import re
import hmac
import uuid
import hashlib
import logging
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from functools import wraps

import click
import jwt
from dotenv import load_dotenv
from flask import Flask, request, jsonify, g
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_migrate import Migrate
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_talisman import Talisman
from flask_cors import CORS
from flask_login import LoginManager, UserMixin, current_user, login_required
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from geolocalizacao import resolve_country, is_available, normalize_region_code
from pagamentos_gateway import GATEWAYS, get_gateway, parse_webhook, to_cents, format_brl

# ----------------------------------------------------------------------
# 1. CONFIGURAÇÃO E LOGGING
# ----------------------------------------------------------------------

load_dotenv()

LOG_FILE = os.getenv('LOG_FILE', 'vitrine.log')
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOG_FILE),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    raise RuntimeError("SECRET_KEY is not set; set environment variable SECRET_KEY")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///vitrine.db")
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:3002").rstrip('/')
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
GEO_DEFAULT_COUNTRY = os.getenv("GEO_DEFAULT_COUNTRY")
JWT_EXPIRATION = timedelta(days=7)
ORDER_EXPIRATION_MINUTES = int(os.getenv('ORDER_EXPIRATION_MINUTES', '30'))
# Brasília (UTC-3) para relatórios
BRT_OFFSET = timedelta(hours=3)

app = Flask(__name__)
app.config['SECRET_KEY'] = SECRET_KEY
app.config['SQLALCHEMY_DATABASE_URI'] = DATABASE_URL
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['MAX_CONTENT_LENGTH'] = 10 * 1024 * 1024
app.config['RATELIMIT_ENABLED'] = os.getenv('RATELIMIT_ENABLED', 'true').lower() == 'true'

db = SQLAlchemy(app)
bcrypt = Bcrypt(app)
migrate = Migrate(app, db)
limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=["1000 per 15 minutes"],
    storage_uri="memory://"
)
CORS(app, resources={r"/api/*": {"origins": [FRONTEND_URL, "http://localhost:3000"]}}, supports_credentials=True)

force_https = os.getenv('FORCE_HTTPS', 'false').lower() == 'true'
strict_hsts = os.getenv('STRICT_HSTS', 'true').lower() == 'true'
csp_policy = {
    'default-src': ["'self'"],
    'style-src': ["'self'", "'unsafe-inline'"],
    'script-src': ["'self'"],
    'img-src': ["'self'", 'data:', 'https:'],
}
Talisman(app, content_security_policy=csp_policy, force_https=force_https, strict_transport_security=strict_hsts)

# API sem estado: o usuário vem do token Bearer em cada requisição
login_manager = LoginManager()
login_manager.init_app(app)
login_manager.session_protection = None


@login_manager.user_loader
def load_user(user_id):
    if user_id is None:
        return None
    return db.session.get(User, user_id)


@login_manager.request_loader
def load_user_from_request(req):
    auth = req.headers.get('Authorization', '')
    if not auth.startswith('Bearer '):
        return None
    token = auth[len('Bearer '):].strip()
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    except jwt.InvalidTokenError as e:
        logger.info(f"Token JWT inválido: {e}")
        return None
    user_id = payload.get('sub')
    if not user_id:
        return None
    return db.session.get(User, user_id)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Autenticação de usuário necessária'}), 401


# Helpers de log: nunca registrar PII ou IP em claro
def hmac_hash(value: str, length: int = 10) -> str:
    key = SECRET_KEY.encode('utf-8')
    return hmac.new(key, str(value).encode('utf-8'), hashlib.sha256).hexdigest()[:length]


def mask_ip(ip: str) -> str:
    if not ip:
        return ''
    if '.' in ip:
        parts = ip.split('.')
        if len(parts) == 4:
            return '.'.join(parts[:3] + ['xxx'])
        return ip
    if ':' in ip:
        parts = ip.split(':')
        return ':'.join(parts[:len(parts)-1] + ['xxxx'])
    return ip


def sanitize_for_log(value, maxlen: int = 120) -> str:
    s = str(value)
    s = s.replace('\n', '\\n').replace('\r', '\\r').replace('\t', ' ')
    if len(s) > maxlen:
        return s[:maxlen] + '...'
    return s


# ----------------------------------------------------------------------
# 2. FUNÇÕES DE SEGURANÇA
# ----------------------------------------------------------------------

def set_password(password):
    """Cria o hash seguro da senha antes de armazenar."""
    return bcrypt.generate_password_hash(password).decode('utf-8')


def check_password(password_hash, password):
    return bcrypt.check_password_hash(password_hash, password)


def create_token(user):
    now = datetime.now(timezone.utc)
    payload = {
        'sub': user.id,
        'email': user.email,
        'role': user.role,
        'iat': now,
        'exp': now + JWT_EXPIRATION,
    }
    return jwt.encode(payload, SECRET_KEY, algorithm="HS256")


def role_required(*roles):
    """Decorator para exigir login e checar o papel do usuário."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return jsonify({'error': 'Autenticação de usuário necessária'}), 401
            if current_user.role not in roles:
                logger.error(f"Acesso NEGADO. Usuário ID {current_user.id} tentou acessar {request.path}")
                return jsonify({'error': 'Acesso negado'}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


admin_required = role_required('ADMIN')

# ----------------------------------------------------------------------
# 3. MODELOS DE DADOS
# ----------------------------------------------------------------------

ROLES = ('ADMIN', 'CUSTOMER', 'GUEST')
ORDER_PENDING = 'PENDING'
ORDER_COMPLETED = 'COMPLETED'
ORDER_FAILED = 'FAILED'


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(dt):
    return dt.isoformat() + 'Z' if dt else None


class User(db.Model, UserMixin):
    __tablename__ = 'users'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(128), nullable=True)  # convidados não têm senha
    role = db.Column(db.String(20), nullable=False, default='CUSTOMER')
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    orders = db.relationship('Order', back_populates='user', lazy=True)

    def to_dict(self):
        return {'id': self.id, 'email': self.email, 'role': self.role, 'createdAt': _iso(self.created_at)}

    def __repr__(self):
        return f'<User {self.id} {self.role}>'


class Product(db.Model):
    __tablename__ = 'products'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    image_url = db.Column(db.String(500), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    telegram_link = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    prices = db.relationship('Price', back_populates='product', cascade='all, delete-orphan',
                             order_by='Price.created_at', lazy=True)
    regions = db.relationship('ProductRegion', back_populates='product', cascade='all, delete-orphan', lazy=True)

    def to_dict(self, admin=False):
        data = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'imageUrl': self.image_url,
            'isActive': self.is_active,
            'telegramLink': self.telegram_link,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
            'prices': [p.to_dict(include_delivery=admin) for p in self.prices],
        }
        if admin:
            data['regions'] = [r.to_dict() for r in self.regions]
        return data

    def __repr__(self):
        return f'<Product {self.name}>'


class Price(db.Model):
    __tablename__ = 'prices'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    product_id = db.Column(db.String(36), db.ForeignKey('products.id', ondelete='CASCADE'), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False)
    category = db.Column(db.String(50), nullable=False)
    delivery_link = db.Column(db.String(500), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    product = db.relationship('Product', back_populates='prices')
    # Ao apagar o preço os pedidos ficam com price_id nulo
    orders = db.relationship('Order', back_populates='price', lazy=True)

    def to_dict(self, include_delivery=False):
        data = {
            'id': self.id,
            'productId': self.product_id,
            'amount': float(self.amount),
            'currency': self.currency,
            'category': self.category,
            'createdAt': _iso(self.created_at),
        }
        if include_delivery:
            data['deliveryLink'] = self.delivery_link
        return data


class ProductRegion(db.Model):
    __tablename__ = 'product_regions'
    __table_args__ = (db.UniqueConstraint('product_id', 'country_code', name='uq_product_region'),)
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    product_id = db.Column(db.String(36), db.ForeignKey('products.id', ondelete='CASCADE'), nullable=False)
    country_code = db.Column(db.String(10), nullable=False)

    product = db.relationship('Product', back_populates='regions')

    def to_dict(self):
        return {'id': self.id, 'productId': self.product_id, 'countryCode': self.country_code}


class Order(db.Model):
    __tablename__ = 'orders'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    price_id = db.Column(db.String(36), db.ForeignKey('prices.id', ondelete='SET NULL'), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=ORDER_PENDING, index=True)
    gateway = db.Column(db.String(20), nullable=False)
    provider_tx_id = db.Column(db.String(100), nullable=True, index=True)
    download_link = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    user = db.relationship('User', back_populates='orders')
    price = db.relationship('Price', back_populates='orders')

    def to_dict(self, include_user=False):
        data = {
            'id': self.id,
            'userId': self.user_id,
            'priceId': self.price_id,
            'status': self.status,
            'gateway': self.gateway,
            'transactionId': self.provider_tx_id,
            'downloadLink': self.download_link if self.status == ORDER_COMPLETED else None,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
            'price': None,
        }
        if self.price:
            data['price'] = {
                'id': self.price.id,
                'amount': float(self.price.amount),
                'currency': self.price.currency,
                'category': self.price.category,
                'product': {
                    'id': self.price.product.id,
                    'name': self.price.product.name,
                    'imageUrl': self.price.product.image_url,
                    'telegramLink': self.price.product.telegram_link,
                },
            }
        if include_user and self.user:
            data['user'] = {'id': self.user.id, 'email': self.user.email, 'role': self.user.role}
        return data

    def __repr__(self):
        return f'<Order {self.id} {self.status}>'


class Setting(db.Model):
    __tablename__ = 'settings'
    key = db.Column(db.String(64), primary_key=True)
    value = db.Column(db.Text, nullable=False, default='')
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class PopupConfig(db.Model):
    __tablename__ = 'popup_config'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    message = db.Column(db.Text, nullable=False)
    button_text = db.Column(db.String(100), nullable=False)
    button_link = db.Column(db.String(500), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'message': self.message,
            'buttonText': self.button_text,
            'buttonLink': self.button_link,
            'isActive': self.is_active,
            'updatedAt': _iso(self.updated_at),
        }


with app.app_context():
    db.create_all()


# ----------------------------------------------------------------------
# 4. HELPERS DE REQUISIÇÃO
# ----------------------------------------------------------------------

SETTING_KEY_RE = re.compile(r'^[a-z0-9_]{1,64}$')
# chave no banco -> chave exposta em /api/settings/public
PUBLIC_SETTINGS = {'support_telegram': 'supportTelegram'}
# limite de Numeric(12, 2)
MAX_AMOUNT = Decimal('1e10')


def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _parse_amount(value):
    """Converte o valor para Decimal positivo; devolve None se inválido."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip().replace(',', '.'))
        if not amount.is_finite() or amount <= 0 or amount >= MAX_AMOUNT:
            return None
        amount = amount.quantize(Decimal('0.01'))
    except (InvalidOperation, ValueError):
        return None
    # valores menores que um centavo viram 0.00
    return amount if amount > 0 else None


def _parse_bool(value, default):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).lower() in ('1', 'true', 'yes', 'on')


def _parse_brt_day(value, end_of_day=False):
    """'YYYY-MM-DD' no horário de Brasília -> datetime UTC ingênuo."""
    day = datetime.strptime(value, '%Y-%m-%d')
    if end_of_day:
        day = day.replace(hour=23, minute=59, second=59)
    return day + BRT_OFFSET


@app.before_request
def resolve_geolocation():
    g.country = resolve_country(request.headers, default=GEO_DEFAULT_COUNTRY)


@app.route('/health')
@limiter.exempt
def health():
    return jsonify({
        'status': 'ok',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'geo': {'countryCode': g.country},
    })


# ----------------------------------------------------------------------
# 5. ROTAS DE AUTENTICAÇÃO
# ----------------------------------------------------------------------

@app.route('/api/auth/register', methods=['POST'])
@limiter.limit("25 per 15 minutes")
def register():
    data = _json_body()
    email = data.get('email')
    password = data.get('password')

    if not isinstance(email, str) or not isinstance(password, str) or not email or not password:
        return jsonify({'error': 'Email and password are required'}), 400
    if len(password) < 6:
        return jsonify({'error': 'Password must be at least 6 characters'}), 400

    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        return jsonify({'error': 'User with this email already exists'}), 400

    # Administradores só pelo comando `flask create-admin`
    user = User(email=email, password_hash=set_password(password), role='CUSTOMER')
    try:
        db.session.add(user)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({'error': 'User with this email already exists'}), 400

    logger.info(f"Novo cliente registrado. email_hash={hmac_hash(email)}")
    return jsonify({
        'message': 'User registered successfully',
        'user': user.to_dict(),
        'token': create_token(user),
    }), 201


@app.route('/api/auth/login', methods=['POST'])
@limiter.limit("25 per 15 minutes")
def login():
    data = _json_body()
    email = data.get('email')
    password = data.get('password')

    if not isinstance(email, str) or not isinstance(password, str) or not email or not password:
        return jsonify({'error': 'Email and password are required'}), 400

    user = User.query.filter_by(email=email.strip().lower()).first()
    # Convidado não tem senha: mesma resposta para não vazar que o email existe
    if not user or not user.password_hash or not check_password(user.password_hash, password):
        logger.warning(f"Login MAL-SUCEDIDO. email_hash={hmac_hash(email)}, IP={mask_ip(request.remote_addr or '')}")
        return jsonify({'error': 'Invalid credentials'}), 401

    logger.info(f"Login BEM-SUCEDIDO. Usuário ID: {user.id}, Role: {user.role}")
    return jsonify({
        'message': 'Login successful',
        'user': {'id': user.id, 'email': user.email, 'role': user.role},
        'token': create_token(user),
    })


@app.route('/api/auth/guest', methods=['POST'])
@limiter.limit("25 per 15 minutes")
def guest_session():
    user = User(email=f"guest_{uuid.uuid4()}@guest.local", role='GUEST')
    db.session.add(user)
    db.session.commit()
    logger.info(f"Sessão de convidado criada. Usuário ID: {user.id}")
    return jsonify({
        'message': 'Guest session created successfully',
        'user': {'id': user.id, 'email': user.email, 'role': user.role},
        'token': create_token(user),
    }), 201


@app.route('/api/auth/me', methods=['GET'])
@login_required
def me():
    return jsonify({'user': current_user.to_dict()})


# ----------------------------------------------------------------------
# 6. CATÁLOGO PÚBLICO (FILTRADO POR REGIÃO)
# ----------------------------------------------------------------------

def _sales_counts():
    rows = (
        db.session.query(Price.product_id, db.func.count(Order.id))
        .join(Order, Order.price_id == Price.id)
        .filter(Order.status == ORDER_COMPLETED)
        .group_by(Price.product_id)
        .all()
    )
    return {product_id: count for product_id, count in rows}


@app.route('/api/products', methods=['GET'])
def list_products():
    country = g.country
    try:
        products = Product.query.filter_by(is_active=True).all()
        sales = _sales_counts()
        visible = []
        for product in products:
            if not is_available([r.country_code for r in product.regions], country):
                continue
            data = product.to_dict()
            data['availableInRegion'] = True
            data['salesCount'] = sales.get(product.id, 0)
            visible.append(data)
        # mais vendidos primeiro
        visible.sort(key=lambda p: p['salesCount'], reverse=True)
        return jsonify({'products': visible, 'detectedCountry': country, 'totalCount': len(visible)})
    except SQLAlchemyError:
        logger.exception("Erro ao listar produtos")
        return jsonify({'error': 'Internal server error'}), 500


@app.route('/api/products/<product_id>', methods=['GET'])
def get_product(product_id):
    country = g.country
    product = db.session.get(Product, product_id)
    if not product:
        return jsonify({'error': 'Product not found'}), 404
    if not product.is_active:
        return jsonify({'error': 'Product not available'}), 404

    codes = [r.country_code for r in product.regions]
    if not codes:
        return jsonify({'error': 'Product not available - no regions configured', 'detectedCountry': country}), 403
    if not country:
        return jsonify({'error': 'Product not available - location not detected', 'detectedCountry': None}), 403
    if not is_available(codes, country):
        return jsonify({'error': 'Product not available in your region', 'detectedCountry': country}), 403

    return jsonify({'product': product.to_dict(), 'detectedCountry': country})


# ----------------------------------------------------------------------
# 7. PAGAMENTOS PIX
# ----------------------------------------------------------------------

PAYER_FIELDS = {
    'clientName': 'name',
    'clientCpf': 'cpf',
    'clientEmail': 'email',
    'clientPhone': 'phone',
}


def _webhook_url(gateway_name, order_id):
    if gateway_name == 'syncpay':
        return f"{BACKEND_URL}/api/payments/webhook-syncpay/{order_id}"
    return f"{BACKEND_URL}/api/payments/webhook/{order_id}"


@app.route('/api/payments/initiate-payment', methods=['POST'])
@login_required
@limiter.limit("20 per minute")
def initiate_payment():
    data = _json_body()
    price_id = data.get('priceId')
    gateway_name = str(data.get('gateway') or 'pushinpay').lower()
    user_id = current_user.id

    if not price_id:
        return jsonify({'error': 'priceId é obrigatório'}), 400
    if gateway_name not in GATEWAYS:
        return jsonify({'error': 'Gateway inválido. Use "pushinpay" ou "syncpay"'}), 400

    payer = None
    if gateway_name == 'syncpay':
        payer = {target: data.get(field) for field, target in PAYER_FIELDS.items()}
        if not all(isinstance(v, str) and v.strip() for v in payer.values()):
            return jsonify({
                'error': 'Para pagamentos via SyncPay, é necessário fornecer: clientName, clientCpf, clientEmail, clientPhone'
            }), 400

    price = db.session.get(Price, price_id)
    if not price:
        return jsonify({'error': 'Preço não encontrado'}), 404
    if not price.product.is_active:
        return jsonify({'error': 'Produto não está disponível'}), 400

    try:
        gateway = get_gateway(gateway_name)
    except RuntimeError as e:
        logger.critical(f"Gateway {gateway_name} sem configuração: {e}")
        return jsonify({'error': 'Falha ao iniciar pagamento', 'message': str(e)}), 500

    amount_cents = to_cents(price.amount)

    order = Order(user_id=user_id, price_id=price.id, status=ORDER_PENDING, gateway=gateway_name.upper())
    try:
        db.session.add(order)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.critical(f"Falha ao registrar pedido! User ID: {user_id}. Erro: {e}")
        return jsonify({'error': 'Falha ao iniciar pagamento', 'message': 'internal error'}), 500

    result = gateway.create_pix(amount_cents, _webhook_url(gateway_name, order.id), payer)
    if result['status'] != 'success':
        order.status = ORDER_FAILED
        db.session.commit()
        logger.error(f"Erro ao gerar PIX. Pedido: {order.id}, gateway={gateway_name}. Erro: {result['message']}")
        return jsonify({'error': 'Falha ao iniciar pagamento', 'message': result['message']}), 500

    order.provider_tx_id = result['tx_id']
    db.session.commit()
    logger.info(f"PIX gerado. Pedido: {order.id}, gateway={gateway_name}, valor={format_brl(amount_cents)}, tx_id={result['tx_id']}")

    return jsonify({
        'success': True,
        'orderId': order.id,
        'gateway': gateway_name,
        'transactionId': result['tx_id'],
        'productName': price.product.name,
        'priceCategory': price.category,
        'pixCode': result['pix_code'],
        'pixQrCodeBase64': result['qr_code_base64'],
        'amount': format_brl(amount_cents),
        'amountInCents': result.get('amount_cents', amount_cents),
        'status': result.get('provider_status'),
        'expiresAt': result.get('expires_at'),
        'message': result.get('message'),
    })


def reconcile_order(order_id, new_status, source):
    """Aplica o status vindo do webhook apenas se o pedido ainda estiver PENDING."""
    order = db.session.get(Order, order_id)
    if not order:
        logger.warning(f"Webhook {source}: pedido não encontrado. order_id={sanitize_for_log(order_id)}")
        return jsonify({'error': 'Pedido não encontrado'}), 404

    if order.status != ORDER_PENDING:
        logger.info(f"Webhook {source}: pedido {order.id} já processado ({order.status}). Ignorando.")
        return jsonify({'success': True, 'message': 'Webhook ignorado (pedido já processado)'})

    if new_status is None:
        return jsonify({'success': True, 'message': 'Webhook processado'})

    values = {'status': new_status, 'updated_at': _utcnow()}
    if new_status == ORDER_COMPLETED:
        if order.price:
            values['download_link'] = order.price.delivery_link
        else:
            logger.error(f"Pedido {order.id} pago sem preço associado; sem link de download.")

    # UPDATE condicional: uma entrega duplicada concorrente não altera nenhuma linha
    updated = (
        Order.query
        .filter(Order.id == order.id, Order.status == ORDER_PENDING)
        .update(values, synchronize_session=False)
    )
    db.session.commit()
    if not updated:
        logger.info(f"Webhook {source}: pedido {order.id} processado por outra entrega. Ignorando.")
        return jsonify({'success': True, 'message': 'Webhook ignorado (pedido já processado)'})

    logger.info(f"Pedido {order.id} atualizado via webhook {source} para status={new_status}")
    return jsonify({'success': True, 'message': 'Webhook processado'})


@app.route('/api/payments/webhook/<order_id>', methods=['POST'])
@limiter.exempt
def pushinpay_webhook(order_id):
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = request.form.to_dict()
    try:
        event = parse_webhook('pushinpay', payload)
        return reconcile_order(order_id, event['order_status'], 'PushinPay')
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Erro no processamento do webhook da PushinPay")
        return jsonify({'error': 'Erro interno do servidor'}), 500


@app.route('/api/payments/webhook-syncpay/<order_id>', methods=['POST'])
@limiter.exempt
def syncpay_webhook(order_id):
    payload = request.get_json(silent=True)
    try:
        event = parse_webhook('syncpay', payload if isinstance(payload, dict) else {})
    except ValueError as e:
        logger.warning(f"Webhook SyncPay com payload incompleto: {e}")
        return jsonify({'error': str(e)}), 400
    try:
        return reconcile_order(order_id, event['order_status'], 'SyncPay')
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Erro no processamento do webhook do SyncPay")
        return jsonify({'error': 'Erro interno do servidor'}), 500


@app.route('/api/payments/order/<order_id>', methods=['GET'])
@login_required
def get_order(order_id):
    order = db.session.get(Order, order_id)
    if not order:
        return jsonify({'error': 'Pedido não encontrado'}), 404
    if order.user_id != current_user.id and current_user.role != 'ADMIN':
        return jsonify({'error': 'Acesso negado'}), 403
    return jsonify({'order': order.to_dict()})


@app.route('/api/payments/check-status/<transaction_id>', methods=['GET'])
@login_required
@limiter.limit("1 per minute")
def check_payment_status(transaction_id):
    gateway_name = request.args.get('gateway', 'pushinpay').lower()
    if gateway_name not in GATEWAYS:
        return jsonify({'error': 'Gateway inválido. Use "pushinpay" ou "syncpay"'}), 400

    order = Order.query.filter_by(provider_tx_id=transaction_id).first()
    if order and order.user_id != current_user.id and current_user.role != 'ADMIN':
        return jsonify({'error': 'Acesso negado'}), 403

    try:
        result = get_gateway(gateway_name).get_transaction_status(transaction_id)
    except RuntimeError as e:
        result = {'status': 'error', 'message': str(e)}
    if result['status'] != 'success':
        logger.error(f"Erro na verificação de status tx_id={sanitize_for_log(transaction_id)}: {result['message']}")
        return jsonify({'error': 'Falha ao verificar status do pagamento', 'message': result['message']}), 500
    return jsonify({'success': True, 'transaction': result['transaction']})


def expire_pending_orders(max_age_minutes=ORDER_EXPIRATION_MINUTES):
    """Marca como FAILED os pedidos PENDING mais antigos que o limite."""
    cutoff = _utcnow() - timedelta(minutes=max_age_minutes)
    try:
        count = (
            Order.query
            .filter(Order.status == ORDER_PENDING, Order.created_at < cutoff)
            .update({'status': ORDER_FAILED, 'updated_at': _utcnow()}, synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Erro ao expirar pedidos pendentes")
        return 0
    if count:
        logger.info(f"Expirados {count} pedido(s) pendente(s) com mais de {max_age_minutes} minutos")
    return count


def start_order_expiration_job(interval_seconds):
    def run():
        with app.app_context():
            expire_pending_orders()
        timer = threading.Timer(interval_seconds, run)
        timer.daemon = True
        timer.start()

    logger.info(f"Job de expiração de pedidos iniciado (a cada {interval_seconds}s)")
    run()


# ----------------------------------------------------------------------
# 8. CONFIGURAÇÕES E POPUP (PÚBLICO)
# ----------------------------------------------------------------------

@app.route('/api/settings/public', methods=['GET'])
def public_settings():
    stored = {s.key: s.value for s in Setting.query.filter(Setting.key.in_(list(PUBLIC_SETTINGS))).all()}
    data = {public: stored.get(key, '') for key, public in PUBLIC_SETTINGS.items()}
    if not data['supportTelegram']:
        data['supportTelegram'] = os.getenv('SUPPORT_TELEGRAM', '')
    return jsonify(data)


@app.route('/api/settings/<key>', methods=['PUT'])
@admin_required
def update_setting(key):
    if not SETTING_KEY_RE.match(key):
        return jsonify({'error': 'Chave inválida'}), 400
    value = _json_body().get('value')
    if not isinstance(value, str):
        return jsonify({'error': 'value é obrigatório'}), 400

    setting = db.session.get(Setting, key)
    if setting:
        setting.value = value
    else:
        setting = Setting(key=key, value=value)
        db.session.add(setting)
    db.session.commit()
    logger.info(f"Configuração '{key}' atualizada por Admin {current_user.id}")
    return jsonify({'message': 'Setting updated successfully', 'key': key, 'value': value})


@app.route('/api/popup/active', methods=['GET'])
def active_popup():
    popup = PopupConfig.query.first()
    return jsonify({'popup': popup.to_dict() if popup and popup.is_active else None})


# ----------------------------------------------------------------------
# 9. ADMINISTRAÇÃO
# ----------------------------------------------------------------------

def _validate_price_payload(data):
    """Devolve (valores, erro)."""
    amount = _parse_amount(data.get('amount'))
    currency = data.get('currency')
    category = data.get('category')
    delivery_link = data.get('deliveryLink')
    if not delivery_link:
        return None, 'Each price tier must have a deliveryLink'
    if amount is None or not currency or not category:
        return None, 'Each price must have amount, currency, and category'
    return {
        'amount': amount,
        'currency': str(currency).upper(),
        'category': str(category),
        'delivery_link': str(delivery_link),
    }, None


@app.route('/api/admin/products', methods=['GET'])
@admin_required
def admin_list_products():
    products = Product.query.order_by(Product.created_at.desc()).all()
    return jsonify({'products': [p.to_dict(admin=True) for p in products]})


@app.route('/api/admin/products', methods=['POST'])
@admin_required
def admin_create_product():
    data = _json_body()
    name = data.get('name')
    description = data.get('description')
    image_url = data.get('imageUrl')
    if not all(isinstance(v, str) and v for v in (name, description, image_url)):
        return jsonify({'error': 'Name, description, and imageUrl are required'}), 400
    telegram_link = data.get('telegramLink')
    if telegram_link is not None and not isinstance(telegram_link, str):
        return jsonify({'error': 'telegramLink must be a string'}), 400

    price_values = []
    prices = data.get('prices')
    if prices is not None:
        if not isinstance(prices, list):
            return jsonify({'error': 'prices must be a list'}), 400
        for item in prices:
            values, error = _validate_price_payload(item if isinstance(item, dict) else {})
            if error:
                return jsonify({'error': error}), 400
            price_values.append(values)

    product = Product(
        name=name,
        description=description,
        image_url=image_url,
        is_active=_parse_bool(data.get('isActive'), True),
        telegram_link=telegram_link or None,
    )
    product.prices = [Price(**values) for values in price_values]
    db.session.add(product)
    db.session.commit()
    logger.info(f"Produto {product.id} criado por Admin {current_user.id} com {len(price_values)} preço(s)")
    return jsonify({'message': 'Product created successfully', 'product': product.to_dict(admin=True)}), 201


@app.route('/api/admin/products/<product_id>', methods=['PUT'])
@admin_required
def admin_update_product(product_id):
    product = db.session.get(Product, product_id)
    if not product:
        return jsonify({'error': 'Product not found'}), 404

    data = _json_body()
    for field in ('name', 'description', 'imageUrl', 'telegramLink'):
        if data.get(field) is not None and not isinstance(data[field], str):
            return jsonify({'error': f'{field} must be a string'}), 400

    product.name = data.get('name') or product.name
    product.description = data.get('description') or product.description
    product.image_url = data.get('imageUrl') or product.image_url
    product.is_active = _parse_bool(data.get('isActive'), product.is_active)
    if 'telegramLink' in data:
        product.telegram_link = data['telegramLink'] or None
    db.session.commit()
    logger.info(f"Produto {product.id} atualizado por Admin {current_user.id}")
    return jsonify({'message': 'Product updated successfully', 'product': product.to_dict(admin=True)})


@app.route('/api/admin/products/<product_id>', methods=['DELETE'])
@admin_required
def admin_delete_product(product_id):
    product = db.session.get(Product, product_id)
    if not product:
        return jsonify({'error': 'Product not found'}), 404
    db.session.delete(product)
    db.session.commit()
    logger.info(f"Produto {product_id} removido por Admin {current_user.id}")
    return jsonify({'message': 'Product deleted successfully'})


@app.route('/api/admin/products/regions', methods=['POST'])
@admin_required
def admin_add_region():
    data = _json_body()
    product_id = data.get('productId')
    raw_code = data.get('countryCode')
    if not product_id or not raw_code:
        return jsonify({'error': 'productId and countryCode are required'}), 400

    country_code = normalize_region_code(raw_code)
    if not country_code:
        return jsonify({'error': 'countryCode must be a 2-letter ISO code (e.g., BR, US, ES) or NON_BR'}), 400

    if not db.session.get(Product, product_id):
        return jsonify({'error': 'Product not found'}), 404

    region = ProductRegion.query.filter_by(product_id=product_id, country_code=country_code).first()
    if not region:
        region = ProductRegion(product_id=product_id, country_code=country_code)
        try:
            db.session.add(region)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            region = ProductRegion.query.filter_by(product_id=product_id, country_code=country_code).first()

    return jsonify({'message': 'Product region association created', 'region': region.to_dict()}), 201


@app.route('/api/admin/products/regions/<region_id>', methods=['DELETE'])
@admin_required
def admin_delete_region(region_id):
    region = db.session.get(ProductRegion, region_id)
    if not region:
        return jsonify({'error': 'Region not found'}), 404
    db.session.delete(region)
    db.session.commit()
    return jsonify({'message': 'Product region association deleted'})


@app.route('/api/admin/products/<product_id>/prices', methods=['POST'])
@admin_required
def admin_add_price(product_id):
    values, error = _validate_price_payload(_json_body())
    if error:
        return jsonify({'error': 'amount, currency, category, and deliveryLink are required'}), 400
    if not db.session.get(Product, product_id):
        return jsonify({'error': 'Product not found'}), 404

    price = Price(product_id=product_id, **values)
    db.session.add(price)
    db.session.commit()
    return jsonify({'message': 'Price tier created successfully', 'price': price.to_dict(include_delivery=True)}), 201


# Precisa vir antes de /prices/<price_id>
@app.route('/api/admin/prices/bulk-update', methods=['PUT'])
@admin_required
def admin_bulk_update_prices():
    data = _json_body()
    price_ids = data.get('priceIds')
    delivery_link = data.get('deliveryLink')
    if not isinstance(price_ids, list) or not price_ids:
        return jsonify({'error': 'priceIds must be a non-empty array'}), 400
    if not delivery_link:
        return jsonify({'error': 'deliveryLink is required'}), 400

    count = (
        Price.query
        .filter(Price.id.in_(price_ids))
        .update({'delivery_link': delivery_link}, synchronize_session=False)
    )
    db.session.commit()
    logger.info(f"Atualização em massa: {count} preço(s) com novo deliveryLink por Admin {current_user.id}")
    return jsonify({'message': 'Prices updated successfully', 'updatedCount': count})


@app.route('/api/admin/prices/<price_id>', methods=['PUT'])
@admin_required
def admin_update_price(price_id):
    price = db.session.get(Price, price_id)
    if not price:
        return jsonify({'error': 'Price not found'}), 404

    data = _json_body()
    if 'amount' in data:
        amount = _parse_amount(data['amount'])
        if amount is None:
            return jsonify({'error': 'amount must be a positive number'}), 400
        price.amount = amount
    if 'currency' in data:
        price.currency = str(data['currency']).upper()
    if 'category' in data:
        price.category = str(data['category'])
    if 'deliveryLink' in data:
        price.delivery_link = str(data['deliveryLink'])
    db.session.commit()
    return jsonify({'message': 'Price tier updated successfully', 'price': price.to_dict(include_delivery=True)})


@app.route('/api/admin/prices/<price_id>', methods=['DELETE'])
@admin_required
def admin_delete_price(price_id):
    price = db.session.get(Price, price_id)
    if not price:
        return jsonify({'error': 'Price not found'}), 404
    db.session.delete(price)
    db.session.commit()
    return jsonify({'message': 'Price tier deleted successfully'})


@app.route('/api/admin/orders', methods=['GET'])
@admin_required
def admin_list_orders():
    orders = Order.query.order_by(Order.created_at.desc()).all()
    return jsonify({'orders': [o.to_dict(include_user=True) for o in orders]})


@app.route('/api/admin/analytics', methods=['GET'])
@admin_required
def admin_analytics():
    start_date = request.args.get('startDate')
    end_date = request.args.get('endDate')
    product_id = request.args.get('productId')

    date_filters = []
    try:
        if start_date:
            date_filters.append(Order.created_at >= _parse_brt_day(start_date))
        if end_date:
            date_filters.append(Order.created_at <= _parse_brt_day(end_date, end_of_day=True))
    except ValueError:
        return jsonify({'error': 'startDate/endDate must be YYYY-MM-DD'}), 400

    completed = (
        Order.query
        .filter(Order.status == ORDER_COMPLETED, *date_filters)
        .order_by(Order.created_at.asc())
        .all()
    )
    if product_id:
        completed = [o for o in completed if o.price and o.price.product_id == product_id]

    total_revenue = Decimal('0')
    by_product = {}
    by_category = {}
    daily = {}
    for order in completed:
        if not order.price:
            continue
        amount = order.price.amount
        total_revenue += amount

        product = order.price.product
        entry = by_product.setdefault(product.id, {'productId': product.id, 'productName': product.name,
                                                   'revenue': Decimal('0'), 'orders': 0})
        entry['revenue'] += amount
        entry['orders'] += 1

        cat = by_category.setdefault(order.price.category, {'category': order.price.category,
                                                            'revenue': Decimal('0'), 'orders': 0})
        cat['revenue'] += amount
        cat['orders'] += 1

        day = (order.created_at - BRT_OFFSET).strftime('%Y-%m-%d')
        daily[day] = daily.get(day, Decimal('0')) + amount

    def count_status(status):
        return Order.query.filter(Order.status == status, *date_filters).count()

    total_orders = Order.query.filter(*date_filters).count()
    completed_count = len(completed)
    conversion_rate = (completed_count / total_orders * 100) if total_orders else 0
    average = (total_revenue / completed_count) if completed_count else Decimal('0')

    def money(entries):
        return [dict(e, revenue=float(e['revenue'])) for e in entries]

    return jsonify({
        'summary': {
            'totalRevenue': float(total_revenue),
            'totalOrders': completed_count,
            'pendingOrders': count_status(ORDER_PENDING),
            'failedOrders': count_status(ORDER_FAILED),
            'conversionRate': round(conversion_rate, 2),
            'uniqueCustomers': len({o.user_id for o in completed}),
            'averageOrderValue': round(float(average), 2),
        },
        'revenueByProduct': money(by_product.values()),
        'revenueByCategory': money(by_category.values()),
        'dailyRevenue': [{'date': d, 'revenue': float(v)} for d, v in sorted(daily.items())],
        'recentOrders': [o.to_dict(include_user=True) for o in reversed(completed[-10:])],
    })


@app.route('/api/admin/popup', methods=['GET'])
@admin_required
def admin_get_popup():
    popup = PopupConfig.query.first()
    return jsonify({'popup': popup.to_dict() if popup else None})


@app.route('/api/admin/popup', methods=['PUT'])
@admin_required
def admin_save_popup():
    data = _json_body()
    message = data.get('message')
    button_text = data.get('buttonText')
    button_link = data.get('buttonLink')
    if not message or not button_text or not button_link:
        return jsonify({'error': 'message, buttonText, and buttonLink are required'}), 400

    popup = PopupConfig.query.first()
    if not popup:
        popup = PopupConfig()
        db.session.add(popup)
    popup.message = message
    popup.button_text = button_text
    popup.button_link = button_link
    popup.is_active = _parse_bool(data.get('isActive'), True)
    db.session.commit()
    return jsonify({'message': 'Popup configuration saved successfully', 'popup': popup.to_dict()})


# ----------------------------------------------------------------------
# 10. COMANDOS CLI
# ----------------------------------------------------------------------

@app.cli.command("create-admin")
@click.option('--email', default=lambda: os.getenv("ADMIN_EMAIL", "admin@example.com"))
def create_admin(email):
    """Cria o usuário administrador inicial (senha em ADMIN_PASS)."""
    admin_password = os.getenv("ADMIN_PASS")
    if not admin_password:
        raise RuntimeError("ADMIN_PASS must be set to create admin user. Set ADMIN_PASS in environment variables.")

    email = email.strip().lower()
    if User.query.filter_by(email=email).first() is not None:
        raise click.ClickException(f"Usuário já existe (hash={hmac_hash(email)})")

    admin = User(email=email, password_hash=set_password(admin_password), role='ADMIN')
    db.session.add(admin)
    db.session.commit()
    logger.info(f"Usuário admin criado com sucesso. admin_hash={hmac_hash(email)}")
    click.echo(f"Admin criado: {admin.id}")


@app.cli.command("expire-orders")
@click.option('--minutes', default=ORDER_EXPIRATION_MINUTES, show_default=True, type=int)
def expire_orders_command(minutes):
    """Marca como FAILED os pedidos pendentes antigos."""
    count = expire_pending_orders(minutes)
    click.echo(f"{count} pedido(s) expirado(s)")


# ----------------------------------------------------------------------
# 11. TRATAMENTO DE ERROS
# ----------------------------------------------------------------------

@app.errorhandler(404)
def handle_404(e):
    logger.info(f"404 Not Found: {request.path}")
    return jsonify({'error': 'Route not found'}), 404


@app.errorhandler(405)
def handle_405(e):
    return jsonify({'error': 'Method not allowed'}), 405


@app.errorhandler(403)
def handle_403(e):
    logger.warning(f"403 Forbidden: {request.path} by IP: {mask_ip(request.remote_addr or '')}")
    return jsonify({'error': 'Acesso negado'}), 403


@app.errorhandler(429)
def handle_429(e):
    logger.warning(f"429 Rate limit: {request.path} by IP: {mask_ip(request.remote_addr or '')}")
    return jsonify({'error': 'Too many requests from this IP, please try again later.'}), 429


@app.errorhandler(500)
def handle_500(e):
    # Detalhes só no log do servidor
    logger.exception(f"Unhandled exception while handling request: {request.path}")
    return jsonify({'error': 'Internal server error'}), 500


if __name__ == '__main__':
    debug_mode = os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
    interval = int(os.getenv('ORDER_EXPIRATION_INTERVAL_SECONDS', '300'))
    if interval > 0:
        start_order_expiration_job(interval)
    app.run(port=int(os.getenv('PORT', '3002')), debug=debug_mode)
