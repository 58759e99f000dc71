from decimal import Decimal
from uuid import uuid4

import pytest

from app import create_app
from models import User, Bet
from provably_fair import hash_server_seed

FIXED_SERVER_SEED = 'abc123'
FIXED_CLIENT_SEED = 'xyz'


def _fixed_seed():
    return FIXED_SERVER_SEED, hash_server_seed(FIXED_SERVER_SEED)


@pytest.fixture
def fixed_seed():
    # factory de server seed com resultados conhecidos (32.43, 62.43, ...)
    return _fixed_seed


@pytest.fixture
def client_seed():
    return FIXED_CLIENT_SEED


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'DATABASE_URL': f"sqlite:///{tmp_path / 'test.db'}",
        'DEFAULT_USERNAME': '',
        'RATE_LIMIT_ENABLED': False,
        'SETTLE_RETRY_BACKOFF': 0.0,
        'LOG_LEVEL': 'WARNING',
    })
    yield app
    app.extensions['db_engine'].dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def session_factory(app):
    return app.extensions['db_session']


@pytest.fixture
def service(app):
    return app.extensions['settlement']


@pytest.fixture
def fixed_service(service):
    service.seed_factory = _fixed_seed
    return service


@pytest.fixture
def make_user(session_factory):
    def _make(balance='1000', username=None):
        with session_factory() as db:
            user = User(username=username or f'player-{uuid4().hex[:8]}', balance=Decimal(balance))
            db.add(user)
            db.commit()
            return user.id
    return _make


@pytest.fixture
def balance_of(session_factory):
    def _balance(user_id):
        with session_factory() as db:
            return db.get(User, user_id).balance
    return _balance


@pytest.fixture
def bets_of(session_factory):
    def _bets(user_id):
        with session_factory() as db:
            return db.query(Bet).filter_by(user_id=user_id).order_by(Bet.nonce).all()
    return _bets
