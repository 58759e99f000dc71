# liquidação de apostas: toda falha vira um Result tipado

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select, func
from sqlalchemy import exc as sa_exc

from errors import SettlementError, ValidationError, ConflictError, InternalError, NotFound
from game_logic import build_games, resolve_game_type, parse_decimal, has_cents_precision
from ledger import run_in_transaction, settle_bet
from models import User, NonceSequence, Bet
from provably_fair import generate_server_seed, generate_client_seed, to_money, CENT
from verification import verify as verify_bet

logger = logging.getLogger(__name__)

MAX_CLIENT_SEED_LENGTH = 128
MAX_HISTORY_LIMIT = 50
RESERVED_FIELDS = ('amount', 'clientSeed')


@dataclass
class Result:
    value: Any = None
    error: Optional[SettlementError] = None

    @property
    def ok(self):
        return self.error is None


class PrincipalLocks:
    # um lock por jogador, descartado quando ninguém o segura

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, principal_id, timeout=None):
        with self._guard:
            entry = self._locks.setdefault(principal_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            if not entry[0].acquire(timeout=-1 if timeout is None else timeout):
                raise ConflictError('Another bet is still being settled, please retry')
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[principal_id]

    def __len__(self):
        return len(self._locks)


def parse_amount(value):
    amount = parse_decimal(value, 'amount')
    if amount <= 0:
        raise ValidationError('Bet amount must be positive')
    if not has_cents_precision(amount):
        raise ValidationError('Bet amount must have at most 2 decimal places')
    return amount.quantize(CENT)


def parse_client_seed(value):
    if value is None or value == '':
        return None
    if not isinstance(value, str):
        raise ValidationError('clientSeed must be a string')
    if len(value) > MAX_CLIENT_SEED_LENGTH:
        raise ValidationError(f'clientSeed must be at most {MAX_CLIENT_SEED_LENGTH} characters')
    return value


def bet_to_dict(bet):
    return {
        'id': bet.id,
        'gameType': bet.game_type,
        'amount': to_money(bet.amount),
        'multiplier': float(bet.multiplier),
        'win': bet.win,
        'payout': to_money(bet.payout),
        'result': to_money(bet.result),
        'gameData': bet.game_data or {},
        'serverSeed': bet.server_seed,
        'serverSeedHash': bet.server_seed_hash,
        'clientSeed': bet.client_seed,
        'nonce': bet.nonce,
        'createdAt': bet.created_at.isoformat() if bet.created_at else None,
    }


class SettlementService:

    def __init__(self, session_factory, games=None, max_retries=3, retry_backoff=0.05,
                 lock_timeout=10.0, seed_factory=generate_server_seed,
                 client_seed_factory=generate_client_seed):
        self._session_factory = session_factory
        self.games = games or build_games()
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.lock_timeout = lock_timeout
        self.seed_factory = seed_factory
        self.client_seed_factory = client_seed_factory
        self.locks = PrincipalLocks()

    def _prepare(self, game_type, payload):
        if not isinstance(payload, dict):
            raise ValidationError('Invalid request body')
        game = self.games.get(resolve_game_type(game_type))
        if game is None:
            raise ValidationError(f'Game {game_type} is not enabled')
        amount = parse_amount(payload.get('amount'))
        client_seed = parse_client_seed(payload.get('clientSeed')) or self.client_seed_factory()
        params = game.validate({k: v for k, v in payload.items() if k not in RESERVED_FIELDS})
        return game, amount, params, client_seed

    def settle(self, user_id, game_type, payload) -> Result:
        try:
            # validação pura, antes de abrir qualquer transação
            game, amount, params, client_seed = self._prepare(game_type, payload)
            with self.locks.hold(user_id, self.lock_timeout):
                outcome = run_in_transaction(
                    self._session_factory,
                    lambda session: settle_bet(session, user_id, game, amount, params,
                                               client_seed, seed_factory=self.seed_factory),
                    max_retries=self.max_retries,
                    backoff=self.retry_backoff,
                )
        except SettlementError as e:
            if e.status >= 500:
                logger.error('%s bet for %s failed: %s', game_type, user_id, e.kind)
            else:
                logger.info('%s bet for %s rejected: %s', game_type, user_id, e.kind)
            return Result(error=e)
        except Exception:
            logger.exception('%s bet for %s failed unexpectedly', game_type, user_id)
            return Result(error=InternalError())

        logger.info('settled bet %s user=%s game=%s nonce=%d win=%s payout=%s',
                    outcome.bet_id, user_id, outcome.game_type, outcome.nonce,
                    outcome.win, outcome.payout)
        return Result(value=outcome)

    def _read(self, query):
        try:
            with self._session_factory() as session:
                return query(session)
        except SettlementError:
            raise
        except sa_exc.SQLAlchemyError as e:
            logger.exception('ledger read failed')
            raise InternalError() from e

    def _guarded(self, fn, *args) -> Result:
        try:
            return Result(value=fn(*args))
        except SettlementError as e:
            return Result(error=e)

    def find_user(self, user_id):
        if not user_id:
            return None
        return self._read(lambda s: s.get(User, user_id))

    def verify(self, user_id, bet_id) -> Result:
        return self._guarded(self._verify, user_id, bet_id)

    def _verify(self, user_id, bet_id):
        if not bet_id:
            raise ValidationError('Bet ID is required')
        # só as apostas do próprio jogador
        bet = self._read(lambda s: s.execute(
            select(Bet).where(Bet.id == bet_id, Bet.user_id == user_id)
        ).scalar_one_or_none())
        if bet is None:
            raise NotFound('Bet not found')

        check = verify_bet(bet)
        if not check.verified:
            logger.error('bet %s failed verification: seed_hash_valid=%s matches_stored=%s',
                         bet.id, check.seed_hash_valid, check.matches_stored)
        return {
            'betId': bet.id,
            'verified': check.verified,
            'seedHashValid': check.seed_hash_valid,
            'matchesStored': check.matches_stored,
            'serverSeed': bet.server_seed,
            'serverSeedHash': bet.server_seed_hash,
            'clientSeed': bet.client_seed,
            'nonce': bet.nonce,
            'expectedResult': to_money(bet.result),
            'calculatedResult': check.recomputed_result,
            'gameType': bet.game_type,
            'gameData': bet.game_data or {},
        }

    def history(self, user_id, page=1, limit=20, game_type=None) -> Result:
        return self._guarded(self._history, user_id, page, limit, game_type)

    def _history(self, user_id, page, limit, game_type):
        page = max(1, page)
        limit = min(MAX_HISTORY_LIMIT, max(1, limit))
        conditions = [Bet.user_id == user_id]
        if game_type:
            conditions.append(Bet.game_type == resolve_game_type(game_type).value)

        def query(session):
            bets = session.execute(
                select(Bet).where(*conditions)
                .order_by(Bet.created_at.desc(), Bet.nonce.desc())
                .limit(limit).offset((page - 1) * limit)
            ).scalars().all()
            total = session.execute(select(func.count()).select_from(Bet).where(*conditions)).scalar_one()
            return bets, total

        bets, total = self._read(query)
        return {'bets': [bet_to_dict(b) for b in bets], 'total': total, 'page': page, 'limit': limit}

    def game_state(self, user_id, game_type=None) -> Result:
        return self._guarded(self._game_state, user_id, game_type)

    def _game_state(self, user_id, game_type):
        if game_type is not None:
            resolve_game_type(game_type)

        def query(session):
            user = session.get(User, user_id)
            if user is None:
                raise NotFound('User not found')
            seq = session.get(NonceSequence, user_id)
            return user.balance, (seq.current_nonce if seq else 0) + 1

        balance, nonce = self._read(query)
        return {'nextNonce': nonce, 'balance': to_money(balance)}
