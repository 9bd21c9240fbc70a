"""
Gateway adapters for PIX payments.
PushinPay and SyncPay talk to the real providers over HTTP; the sandbox
generates a local QR code so the checkout flow can run without credentials.
Adapters never raise to the caller: every operation returns a dict with
"status" set to "success" or "error".
"""
import io
import os
import time
import uuid
import base64
import logging
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

import qrcode
import requests

logger = logging.getLogger(__name__)

MIN_AMOUNT_CENTS = 50
DEFAULT_EXPIRATION_MINUTES = 30
REQUEST_TIMEOUT = 30

GATEWAYS = ('pushinpay', 'syncpay')

# Status de pedido
ORDER_COMPLETED = 'COMPLETED'
ORDER_FAILED = 'FAILED'


def to_cents(amount) -> int:
    """Converte um valor em reais (Decimal, float ou str) para centavos."""
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def format_brl(amount_cents: int) -> str:
    """Formata centavos no padrão pt-BR, ex.: 123456 -> 'R$ 1.234,56'."""
    reais = Decimal(amount_cents) / 100
    text = f"{reais:,.2f}".replace(',', '_').replace('.', ',').replace('_', '.')
    return f"R$ {text}"


def qr_code_base64(payload: str) -> str:
    """Gera um PNG do QR Code e devolve apenas o base64 (sem prefixo data:)."""
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=10, border=1)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffered = io.BytesIO()
    img.save(buffered, format="PNG")
    return base64.b64encode(buffered.getvalue()).decode('ascii')


def _error(message: str) -> Dict:
    return {"status": "error", "message": message}


def _upstream_message(exc: Exception) -> str:
    response = getattr(exc, 'response', None)
    if response is not None:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict):
            detail = body.get('message') or body.get('error')
            if detail:
                return str(detail)
    return str(exc)


class BaseGateway:
    name = 'base'

    def create_pix(self, amount_cents: int, webhook_url: str, payer: Optional[Dict] = None,
                   expires_in_minutes: int = DEFAULT_EXPIRATION_MINUTES) -> Dict:
        raise NotImplementedError()

    def get_transaction_status(self, tx_id: str) -> Dict:
        raise NotImplementedError()

    @classmethod
    def parse_webhook(cls, payload: Dict) -> Dict:
        raise NotImplementedError()


class PushinPayGateway(BaseGateway):
    """PushinPay API (https://app.theneo.io/pushinpay/pix).

    Webhooks carry ``status`` = ``paid`` | ``expired`` and the transaction id
    either nested under ``transaction`` or as ``transaction_id``/``id``.
    """
    name = 'pushinpay'
    PRODUCTION_URL = 'https://api.pushinpay.com.br'
    SANDBOX_URL = 'https://api-sandbox.pushinpay.com.br'
    STATUS_MAP = {'paid': ORDER_COMPLETED, 'expired': ORDER_FAILED}

    def __init__(self, token: str, environment: str = 'sandbox', session: Optional[requests.Session] = None):
        if not token:
            raise RuntimeError("PUSHINPAY_TOKEN is not set")
        self.token = token
        self.base_url = self.PRODUCTION_URL if environment == 'production' else self.SANDBOX_URL
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {token}',
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        })
        logger.info(f"PushinPay inicializado. base_url={self.base_url}")

    def create_pix(self, amount_cents, webhook_url, payer=None, expires_in_minutes=DEFAULT_EXPIRATION_MINUTES):
        if amount_cents < MIN_AMOUNT_CENTS:
            return _error("Valor mínimo da transação é R$ 0,50.")

        payload = {
            'value': amount_cents,
            'expires_in': expires_in_minutes * 60,
        }
        if webhook_url:
            payload['webhook_url'] = webhook_url

        try:
            resp = self.session.post(f"{self.base_url}/api/pix/cashIn", json=payload, timeout=REQUEST_TIMEOUT)
            resp.raise_for_status()
            data = resp.json()
            if not isinstance(data, dict):
                raise ValueError("unexpected cashIn response body")
        except (requests.RequestException, ValueError) as e:
            message = _upstream_message(e)
            logger.error(f"PushinPay: falha ao criar PIX. Erro: {message}")
            return _error(f"Failed to create PIX payment: {message}")

        logger.info(f"PushinPay: PIX criado. tx_id={data.get('id')} status={data.get('status')}")
        return {
            "status": "success",
            "tx_id": data.get('id'),
            "pix_code": data.get('qr_code'),
            "qr_code_base64": data.get('qr_code_base64'),
            "amount_cents": data.get('value', amount_cents),
            "provider_status": data.get('status'),
            "expires_at": data.get('expires_at'),
            "message": "PIX gerado.",
        }

    def get_transaction_status(self, tx_id):
        # PushinPay bloqueia a conta se consultado mais de uma vez por minuto
        try:
            resp = self.session.get(f"{self.base_url}/api/transactions/{tx_id}", timeout=REQUEST_TIMEOUT)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            message = _upstream_message(e)
            logger.error(f"PushinPay: falha ao consultar tx_id={tx_id}. Erro: {message}")
            return _error(f"Failed to get transaction status: {message}")
        return {"status": "success", "transaction": data}

    @classmethod
    def parse_webhook(cls, payload):
        transaction = payload.get('transaction')
        tx_id = None
        if isinstance(transaction, dict):
            tx_id = transaction.get('id')
        tx_id = tx_id or payload.get('transaction_id') or payload.get('id')
        raw_status = payload.get('status')
        return {
            "tx_id": tx_id,
            "provider_status": raw_status,
            "order_status": cls.STATUS_MAP.get(raw_status),
        }


class SyncPayGateway(BaseGateway):
    """SyncPay partner API (https://syncpay.apidog.io).

    Auth tokens last one hour; we refresh five minutes early and retry once
    on a 401. Amounts are sent in reais, not cents.
    """
    name = 'syncpay'
    DEFAULT_URL = 'https://api.syncpay.com.br'
    TOKEN_SAFETY_MARGIN = 300
    STATUS_MAP = {
        'PAID_OUT': ORDER_COMPLETED,
        'FAILED': ORDER_FAILED,
        'REFUNDED': ORDER_FAILED,
    }

    def __init__(self, client_id: str, client_secret: str, base_url: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        if not client_id or not client_secret:
            raise RuntimeError("SYNCPAY_CLIENT_ID and SYNCPAY_CLIENT_SECRET are required")
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = (base_url or self.DEFAULT_URL).rstrip('/')
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json', 'Content-Type': 'application/json'})
        self.access_token = None
        self.token_expires_at = 0.0
        self._auth_lock = threading.Lock()

    def _token_valid(self) -> bool:
        return bool(self.access_token) and time.time() < self.token_expires_at

    def reset_token(self):
        self.access_token = None
        self.token_expires_at = 0.0
        self.session.headers.pop('Authorization', None)

    def authenticate(self, force: bool = False, stale_token: Optional[str] = None):
        """Obtém um token novo se o atual expirou.
        Com ``force``, só renova se o token ainda for ``stale_token``; outra
        thread pode já ter renovado enquanto esta esperava o lock.
        """
        with self._auth_lock:
            if self._token_valid() and (not force or self.access_token != stale_token):
                return
            self.reset_token()
            resp = self.session.post(
                f"{self.base_url}/api/partner/v1/auth-token",
                json={'client_id': self.client_id, 'client_secret': self.client_secret},
                timeout=REQUEST_TIMEOUT,
            )
            resp.raise_for_status()
            data = resp.json()
            token = data.get('access_token') if isinstance(data, dict) else None
            if not token:
                detail = (data.get('message') or data.get('error')) if isinstance(data, dict) else None
                raise requests.RequestException(f"SyncPay auth response without access_token ({detail or 'empty body'})")
            try:
                expires_in = int(data.get('expires_in', 3600))
            except (TypeError, ValueError):
                expires_in = 3600
            self.access_token = token
            self.token_expires_at = time.time() + expires_in - self.TOKEN_SAFETY_MARGIN
            self.session.headers['Authorization'] = f"Bearer {token}"
            logger.info("SyncPay: autenticação concluída.")

    def create_pix(self, amount_cents, webhook_url, payer=None, expires_in_minutes=DEFAULT_EXPIRATION_MINUTES):
        if amount_cents < MIN_AMOUNT_CENTS:
            return _error("Valor mínimo da transação é R$ 0,50.")
        if not payer:
            return _error("SyncPay exige os dados do pagador (name, cpf, email, phone).")

        payload = {
            'amount': float(Decimal(amount_cents) / 100),
            'description': 'Pagamento PIX',
            'webhook_url': webhook_url,
            'client': payer,
        }

        try:
            self.authenticate()
            used_token = self.access_token
            resp = self._post_cash_in(payload)
            if resp.status_code == 401:
                logger.warning("SyncPay: token recusado (401), forçando nova autenticação.")
                self.authenticate(force=True, stale_token=used_token)
                resp = self._post_cash_in(payload)
                if resp.status_code == 401:
                    return _error("Failed to authenticate with SyncPay after retry. Please check your credentials.")
            resp.raise_for_status()
            data = resp.json()
            if not isinstance(data, dict):
                raise ValueError("unexpected cash-in response body")
        except (requests.RequestException, ValueError) as e:
            message = _upstream_message(e)
            logger.error(f"SyncPay: falha ao criar PIX. Erro: {message}")
            return _error(f"Failed to create SyncPay PIX payment: {message}")

        pix_code = data.get('pix_code') or ''
        logger.info(f"SyncPay: PIX criado. identifier={data.get('identifier')}")
        return {
            "status": "success",
            "tx_id": data.get('identifier'),
            "pix_code": pix_code,
            "qr_code_base64": qr_code_base64(pix_code) if pix_code else None,
            "amount_cents": amount_cents,
            "provider_status": 'PENDING',
            "expires_at": None,
            "message": data.get('message') or "PIX gerado.",
        }

    def _post_cash_in(self, payload):
        return self.session.post(f"{self.base_url}/api/partner/v1/cash-in", json=payload, timeout=REQUEST_TIMEOUT)

    def get_transaction_status(self, tx_id):
        return _error("SyncPay não oferece consulta de status nesta integração; aguarde o webhook.")

    @classmethod
    def parse_webhook(cls, payload):
        data = payload.get('data')
        if not isinstance(data, dict) or not data.get('id'):
            raise ValueError("Transaction ID not found in webhook payload")
        raw_status = data.get('status')
        return {
            "tx_id": data['id'],
            "provider_status": raw_status,
            "order_status": cls.STATUS_MAP.get(raw_status),
        }


class SandboxGateway(BaseGateway):
    """Simple sandbox that generates a QR code for PIX.
    It keeps the provider's webhook vocabulary so both webhook routes can be
    exercised locally. Only for development and tests.
    """

    def __init__(self, name: str = 'pushinpay'):
        self.name = name
        self.transactions = {}

    def create_pix(self, amount_cents, webhook_url, payer=None, expires_in_minutes=DEFAULT_EXPIRATION_MINUTES):
        if amount_cents < MIN_AMOUNT_CENTS:
            return _error("Valor mínimo da transação é R$ 0,50.")
        if self.name == 'syncpay' and not payer:
            return _error("SyncPay exige os dados do pagador (name, cpf, email, phone).")

        tx_id = str(uuid.uuid4())
        pix_code = f"PIX:{tx_id}|AMOUNT:{amount_cents}"
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=expires_in_minutes)
        self.transactions[tx_id] = {
            "id": tx_id,
            "status": "created",
            "value": amount_cents,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        return {
            "status": "success",
            "tx_id": tx_id,
            "pix_code": pix_code,
            "qr_code_base64": qr_code_base64(pix_code),
            "amount_cents": amount_cents,
            "provider_status": "created",
            "expires_at": expires_at.isoformat(),
            "message": "PIX gerado (sandbox).",
        }

    def get_transaction_status(self, tx_id):
        tx = self.transactions.get(tx_id)
        if not tx:
            return _error("Transaction not found (sandbox).")
        return {"status": "success", "transaction": tx}


WEBHOOK_PARSERS = {
    'pushinpay': PushinPayGateway.parse_webhook,
    'syncpay': SyncPayGateway.parse_webhook,
}

_instances: Dict[str, BaseGateway] = {}
_instances_lock = threading.Lock()


def sandbox_enabled() -> bool:
    return os.getenv('PAYMENT_SANDBOX', 'false').lower() == 'true'


def get_gateway(name: str = 'pushinpay') -> BaseGateway:
    """Devolve (e memoriza) o adaptador do gateway pedido.
    PAYMENT_SANDBOX=true troca ambos pelo sandbox. Credenciais ausentes
    levantam RuntimeError.
    """
    name = (name or 'pushinpay').lower()
    if name not in GATEWAYS:
        raise ValueError(f"Unknown gateway: {name}")
    key = f"sandbox:{name}" if sandbox_enabled() else name
    with _instances_lock:
        if key in _instances:
            return _instances[key]

        if sandbox_enabled():
            gateway = SandboxGateway(name)
        elif name == 'pushinpay':
            gateway = PushinPayGateway(
                token=os.getenv('PUSHINPAY_TOKEN', ''),
                environment=os.getenv('PUSHINPAY_ENVIRONMENT', 'sandbox').lower(),
            )
        else:
            gateway = SyncPayGateway(
                client_id=os.getenv('SYNCPAY_CLIENT_ID', ''),
                client_secret=os.getenv('SYNCPAY_CLIENT_SECRET', ''),
                base_url=os.getenv('SYNCPAY_BASE_URL'),
            )
        _instances[key] = gateway
        return gateway


def reset_gateways():
    with _instances_lock:
        _instances.clear()


def parse_webhook(name: str, payload: Dict) -> Dict:
    """Normaliza o payload do webhook do gateway sem precisar de credenciais."""
    return WEBHOOK_PARSERS[name](payload or {})
