import threading

import requests

import pagamentos_gateway
from pagamentos_gateway import (
    SandboxGateway,
    PushinPayGateway,
    SyncPayGateway,
    to_cents,
    format_brl,
    parse_webhook,
)


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.headers = {}

    def post(self, url, json=None, timeout=None):
        self.calls.append(('POST', url, json, dict(self.headers)))
        return self.responses.pop(0)

    def get(self, url, timeout=None):
        self.calls.append(('GET', url, None, dict(self.headers)))
        return self.responses.pop(0)


PAYER = {'name': 'Fulano', 'cpf': '12345678909', 'email': 'fulano@test.com', 'phone': '11999999999'}


def test_to_cents_rounds_half_up():
    assert to_cents('19.90') == 1990
    assert to_cents(0.5) == 50
    assert to_cents('10.005') == 1001


def test_format_brl_uses_brazilian_separators():
    assert format_brl(1990) == 'R$ 19,90'
    assert format_brl(123456) == 'R$ 1.234,56'


def test_sandbox_create_pix_returns_qr_and_txid():
    gw = SandboxGateway('pushinpay')
    res = gw.create_pix(1050, 'http://backend.test/api/payments/webhook/1')
    assert res['status'] == 'success'
    assert res['tx_id']
    assert res['pix_code'].startswith('PIX:')
    assert res['qr_code_base64'] and not res['qr_code_base64'].startswith('data:')
    assert gw.get_transaction_status(res['tx_id'])['status'] == 'success'


def test_sandbox_rejects_amount_below_minimum():
    res = SandboxGateway().create_pix(49, 'http://backend.test/hook')
    assert res['status'] == 'error'


def test_sandbox_syncpay_requires_payer():
    gw = SandboxGateway('syncpay')
    assert gw.create_pix(1000, 'http://backend.test/hook')['status'] == 'error'
    assert gw.create_pix(1000, 'http://backend.test/hook', PAYER)['status'] == 'success'


def test_pushinpay_create_pix_maps_response():
    session = FakeSession([FakeResponse(200, {
        'id': 'pp-123',
        'qr_code': '000201...',
        'qr_code_base64': 'iVBORw0KGgo=',
        'status': 'created',
        'value': 1990,
        'expires_at': '2026-01-01T00:30:00Z',
    })])
    gw = PushinPayGateway(token='tok', environment='production', session=session)
    res = gw.create_pix(1990, 'http://backend.test/api/payments/webhook/abc')

    assert res['status'] == 'success'
    assert res['tx_id'] == 'pp-123'
    assert res['pix_code'] == '000201...'
    method, url, body, headers = session.calls[0]
    assert url == 'https://api.pushinpay.com.br/api/pix/cashIn'
    assert body == {'value': 1990, 'expires_in': 1800, 'webhook_url': 'http://backend.test/api/payments/webhook/abc'}
    assert headers['Authorization'] == 'Bearer tok'


def test_pushinpay_upstream_error_message_is_returned():
    session = FakeSession([FakeResponse(422, {'message': 'valor inválido'})])
    gw = PushinPayGateway(token='tok', session=session)
    res = gw.create_pix(1990, 'http://backend.test/hook')
    assert res['status'] == 'error'
    assert 'valor inválido' in res['message']
    assert session.calls[0][1].startswith('https://api-sandbox.pushinpay.com.br')


def test_syncpay_authenticates_and_sends_reais():
    session = FakeSession([
        FakeResponse(200, {'access_token': 'abc', 'expires_in': 3600}),
        FakeResponse(200, {'message': 'ok', 'pix_code': '000201SYNC', 'identifier': 'sp-1'}),
    ])
    gw = SyncPayGateway('id', 'secret', base_url='https://sync.test', session=session)
    res = gw.create_pix(2500, 'http://backend.test/api/payments/webhook-syncpay/o1', PAYER)

    assert res['status'] == 'success'
    assert res['tx_id'] == 'sp-1'
    assert res['qr_code_base64']
    assert session.calls[0][1] == 'https://sync.test/api/partner/v1/auth-token'
    _, url, body, headers = session.calls[1]
    assert url == 'https://sync.test/api/partner/v1/cash-in'
    assert body['amount'] == 25.0
    assert body['client'] == PAYER
    assert headers['Authorization'] == 'Bearer abc'


def test_syncpay_retries_once_after_401():
    session = FakeSession([
        FakeResponse(200, {'access_token': 'old', 'expires_in': 3600}),
        FakeResponse(401, {'message': 'expired'}),
        FakeResponse(200, {'access_token': 'new', 'expires_in': 3600}),
        FakeResponse(200, {'message': 'ok', 'pix_code': '000201', 'identifier': 'sp-2'}),
    ])
    gw = SyncPayGateway('id', 'secret', session=session)
    res = gw.create_pix(2500, 'http://backend.test/hook', PAYER)
    assert res['status'] == 'success'
    assert gw.access_token == 'new'
    assert len(session.calls) == 4


def test_syncpay_gives_up_after_second_401():
    session = FakeSession([
        FakeResponse(200, {'access_token': 'old', 'expires_in': 3600}),
        FakeResponse(401, {}),
        FakeResponse(200, {'access_token': 'new', 'expires_in': 3600}),
        FakeResponse(401, {}),
    ])
    gw = SyncPayGateway('id', 'secret', session=session)
    res = gw.create_pix(2500, 'http://backend.test/hook', PAYER)
    assert res['status'] == 'error'
    assert 'after retry' in res['message']


def test_parse_webhook_status_mapping():
    assert parse_webhook('pushinpay', {'status': 'paid', 'transaction': {'id': 't1'}}) == {
        'tx_id': 't1', 'provider_status': 'paid', 'order_status': 'COMPLETED'}
    assert parse_webhook('pushinpay', {'status': 'expired', 'transaction_id': 't2'})['order_status'] == 'FAILED'
    assert parse_webhook('pushinpay', {'status': 'created'})['order_status'] is None

    assert parse_webhook('syncpay', {'data': {'id': 's1', 'status': 'PAID_OUT'}})['order_status'] == 'COMPLETED'
    assert parse_webhook('syncpay', {'data': {'id': 's1', 'status': 'REFUNDED'}})['order_status'] == 'FAILED'
    assert parse_webhook('syncpay', {'data': {'id': 's1', 'status': 'MED'}})['order_status'] is None


def test_parse_syncpay_webhook_without_id_raises():
    try:
        parse_webhook('syncpay', {'data': {'status': 'PAID_OUT'}})
    except ValueError as e:
        assert 'Transaction ID' in str(e)
    else:
        raise AssertionError('expected ValueError')


def test_syncpay_auth_without_token_returns_error():
    session = FakeSession([FakeResponse(200, {'error': 'invalid client'})])
    gw = SyncPayGateway('id', 'secret', session=session)
    res = gw.create_pix(2500, 'http://backend.test/hook', PAYER)
    assert res['status'] == 'error'
    assert 'access_token' in res['message']
    assert gw.access_token is None
    assert 'Authorization' not in session.headers


def test_pushinpay_non_object_body_returns_error():
    session = FakeSession([FakeResponse(200, ['unexpected'])])
    gw = PushinPayGateway(token='tok', session=session)
    assert gw.create_pix(1990, 'http://backend.test/hook')['status'] == 'error'


def test_syncpay_forced_refresh_skips_if_token_already_renewed():
    session = FakeSession([FakeResponse(200, {'access_token': 'first', 'expires_in': 3600})])
    gw = SyncPayGateway('id', 'secret', session=session)
    gw.authenticate()
    # outra requisição já trocou o token recusado
    gw.authenticate(force=True, stale_token='older')
    assert gw.access_token == 'first'
    assert len(session.calls) == 1


def test_get_gateway_is_shared_between_threads(monkeypatch):
    monkeypatch.setenv('PAYMENT_SANDBOX', 'true')
    pagamentos_gateway.reset_gateways()
    found = []
    threads = [threading.Thread(target=lambda: found.append(pagamentos_gateway.get_gateway('syncpay')))
               for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len({id(gw) for gw in found}) == 1
    pagamentos_gateway.reset_gateways()
