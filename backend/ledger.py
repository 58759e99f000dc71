import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm.exc import StaleDataError

from errors import SettlementError, ConflictError, InsufficientBalance, InternalError, NotFound
from models import User, NonceSequence, Bet, new_id
from provably_fair import generate_server_seed, display_multiplier, to_money
from verification import ensure_verified

logger = logging.getLogger(__name__)

# SQLSTATE de falha de serialização / deadlock (Postgres)
RETRYABLE_SQLSTATES = {'40001', '40P01'}
# violação de UNIQUE / PK: outra transação gravou o mesmo nonce ou a mesma sequência
UNIQUE_VIOLATION = '23505'


@dataclass
class BetOutcome:
    bet_id: str
    user_id: str
    game_type: str
    amount: Decimal
    win: bool
    payout: Decimal
    multiplier: Decimal
    new_balance: Decimal
    result: Decimal
    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce: int
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        # o server seed é de uso único, então é revelado logo após a aposta
        data = {
            'betId': self.bet_id,
            'win': self.win,
            'payout': to_money(self.payout),
            'newBalance': to_money(self.new_balance),
            'multiplier': float(self.multiplier),
            'serverSeed': self.server_seed,
            'serverSeedHash': self.server_seed_hash,
            'clientSeed': self.client_seed,
            'nonce': self.nonce,
        }
        for key, value in self.extra.items():
            data[key] = float(value) if isinstance(value, Decimal) else value
        return data


def next_nonce(session, user_id):
    # roda dentro da transação da aposta; quem chama grava o novo nonce nela
    stmt = select(NonceSequence).where(NonceSequence.user_id == user_id).with_for_update()
    seq = session.execute(stmt).scalar_one_or_none()
    if seq is None:
        seq = NonceSequence(user_id=user_id, current_nonce=0)
        session.add(seq)
    return seq, seq.current_nonce + 1


def settle_bet(session, user_id, game, amount, params, client_seed,
               seed_factory=generate_server_seed) -> BetOutcome:
    # não faz commit; saldo insuficiente falha antes de qualquer escrita
    with session.no_autoflush:
        seq, nonce = next_nonce(session, user_id)
        user = session.execute(
            select(User).where(User.id == user_id).with_for_update()
        ).scalar_one_or_none()
    if user is None:
        raise NotFound('User not found')

    balance = user.balance
    if balance < amount:
        raise InsufficientBalance()

    server_seed, server_seed_hash = seed_factory()
    outcome = game.calculate_result(server_seed, client_seed, nonce, amount, params)
    multiplier = display_multiplier(outcome.multiplier)
    new_balance = balance + outcome.payout - amount
    if new_balance < 0:
        raise InternalError()

    bet = Bet(
        id=new_id(),
        user_id=user_id,
        game_type=game.game_type.value,
        amount=amount,
        multiplier=multiplier,
        win=outcome.win,
        payout=outcome.payout,
        server_seed=server_seed,
        server_seed_hash=server_seed_hash,
        client_seed=client_seed,
        nonce=nonce,
        game_data=outcome.game_data,
        result=outcome.result,
    )
    # nunca grava um registro que não se verifica
    ensure_verified(bet)

    user.balance = new_balance
    seq.current_nonce = nonce
    session.add(bet)
    session.flush()

    return BetOutcome(
        bet_id=bet.id,
        user_id=user_id,
        game_type=bet.game_type,
        amount=amount,
        win=outcome.win,
        payout=outcome.payout,
        multiplier=multiplier,
        new_balance=new_balance,
        result=outcome.result,
        server_seed=server_seed,
        server_seed_hash=server_seed_hash,
        client_seed=client_seed,
        nonce=nonce,
        extra=outcome.extra,
    )


def _sqlstate(orig):
    return getattr(orig, 'pgcode', None) or getattr(orig, 'sqlstate', None)


def is_unique_violation(exc):
    if _sqlstate(exc.orig) == UNIQUE_VIOLATION:
        return True
    msg = str(exc.orig).lower()
    return 'unique constraint failed' in msg or 'duplicate' in msg


def is_conflict(exc):
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, sa_exc.IntegrityError):
        # CHECK, NOT NULL e FK são bugs, não corrida
        return is_unique_violation(exc)
    if isinstance(exc, sa_exc.DBAPIError):
        if _sqlstate(exc.orig) in RETRYABLE_SQLSTATES:
            return True
        if isinstance(exc, sa_exc.OperationalError):
            msg = str(exc.orig).lower()
            return 'database is locked' in msg or 'deadlock' in msg
    return False


def run_in_transaction(session_factory, work, max_retries=3, backoff=0.05):
    # commit ou rollback; conflitos repetem a unidade inteira com backoff exponencial
    attempt = 0
    while True:
        try:
            with session_factory() as session:
                with session.begin():
                    return work(session)
        except SettlementError:
            raise
        except sa_exc.SQLAlchemyError as e:
            if not is_conflict(e):
                logger.exception('ledger transaction failed')
                raise InternalError() from e
            if attempt >= max_retries:
                logger.warning('ledger conflict, giving up after %d attempts: %s',
                               attempt + 1, e.__class__.__name__)
                raise ConflictError() from e
            delay = backoff * (2 ** attempt)
            attempt += 1
            logger.warning('ledger conflict (%s), retry %d/%d in %.3fs',
                           e.__class__.__name__, attempt, max_retries, delay)
            time.sleep(delay)
