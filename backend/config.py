import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def _bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///database.db')
    SQL_ECHO = _bool('SQL_ECHO', False)
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    CORS_ORIGINS = os.getenv('CORS_ORIGINS', '*')

    # regras do jogo
    HOUSE_EDGE = Decimal(os.getenv('HOUSE_EDGE', '1'))
    MIN_WIN_CHANCE = Decimal(os.getenv('MIN_WIN_CHANCE', '1'))
    MAX_WIN_CHANCE = Decimal(os.getenv('MAX_WIN_CHANCE', '98'))

    # liquidação
    SETTLE_MAX_RETRIES = int(os.getenv('SETTLE_MAX_RETRIES', '3'))
    SETTLE_RETRY_BACKOFF = float(os.getenv('SETTLE_RETRY_BACKOFF', '0.05'))
    SETTLE_LOCK_TIMEOUT = float(os.getenv('SETTLE_LOCK_TIMEOUT', '10'))

    RATE_LIMIT_ENABLED = _bool('RATE_LIMIT_ENABLED', True)
    RATE_LIMIT_BETS = int(os.getenv('RATE_LIMIT_BETS', '60'))
    RATE_LIMIT_WINDOW = float(os.getenv('RATE_LIMIT_WINDOW', '60'))

    # usuário padrão criado no primeiro run
    DEFAULT_USERNAME = os.getenv('DEFAULT_USERNAME', 'player1')
    DEFAULT_BALANCE = Decimal(os.getenv('DEFAULT_BALANCE', '1000'))
