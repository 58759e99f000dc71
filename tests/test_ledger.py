from decimal import Decimal

import pytest
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm.exc import StaleDataError

from errors import ConflictError, InternalError, InsufficientBalance, IntegrityError
from game_logic import Dice, Flip
from ledger import next_nonce, settle_bet, run_in_transaction, is_conflict
from models import NonceSequence, User


def _dice_over_50():
    dice = Dice()
    return dice, dice.validate({'betType': 'over', 'target': 50})


def test_next_nonce_creates_sequence(session_factory, make_user):
    user_id = make_user()
    with session_factory() as session:
        with session.begin():
            seq, nonce = next_nonce(session, user_id)
            assert nonce == 1
            assert seq.current_nonce == 0
            seq.current_nonce = nonce
    with session_factory() as session:
        _, nonce = next_nonce(session, user_id)
        assert nonce == 2


def test_dice_settlement_scenario(session_factory, make_user, balance_of, bets_of,
                                  fixed_seed, client_seed):
    user_id = make_user('1000')
    dice, params = _dice_over_50()

    def bet(session):
        return settle_bet(session, user_id, dice, Decimal('100'), params,
                          client_seed, seed_factory=fixed_seed)

    # nonce 1 -> 32.43, perde
    first = run_in_transaction(session_factory, bet)
    assert first.nonce == 1
    assert first.win is False
    assert first.payout == 0
    assert first.new_balance == Decimal('900')
    assert balance_of(user_id) == Decimal('900')

    # nonce 2 -> 62.43, ganha 198
    second = run_in_transaction(session_factory, bet)
    assert second.nonce == 2
    assert second.win is True
    assert second.payout == Decimal('198')
    assert second.new_balance == Decimal('998')
    assert balance_of(user_id) == Decimal('998')

    bets = bets_of(user_id)
    assert [b.nonce for b in bets] == [1, 2]
    assert bets[1].result == Decimal('62.43')
    assert bets[1].multiplier == Decimal('1.98')
    assert bets[1].game_type == 'dice'
    assert bets[1].server_seed_hash == fixed_seed()[1]


def test_winning_dice_from_fresh_balance(session_factory, make_user, balance_of,
                                         fixed_seed, client_seed):
    user_id = make_user('1000')
    dice, params = _dice_over_50()
    with session_factory() as session:
        with session.begin():
            session.add(NonceSequence(user_id=user_id, current_nonce=1))
    outcome = run_in_transaction(session_factory, lambda s: settle_bet(
        s, user_id, dice, Decimal('100'), params, client_seed, seed_factory=fixed_seed))
    assert outcome.nonce == 2
    assert outcome.payout == Decimal('198')
    assert balance_of(user_id) == Decimal('1098')


def test_stored_multiplier_is_rounded_payout_is_not(session_factory, make_user, balance_of,
                                                    bets_of, fixed_seed, client_seed):
    user_id = make_user('1000')
    dice = Dice()
    params = dice.validate({'betType': 'under', 'target': 7})
    with session_factory() as session:
        with session.begin():
            session.add(NonceSequence(user_id=user_id, current_nonce=7))
    # nonce 8 -> 0.11
    outcome = run_in_transaction(session_factory, lambda s: settle_bet(
        s, user_id, dice, Decimal('1000'), params, client_seed, seed_factory=fixed_seed))
    assert outcome.win is True
    assert outcome.payout == Decimal('14142.85')
    assert outcome.multiplier == Decimal('14.1428')
    assert outcome.to_dict()['multiplier'] == 14.1428
    assert balance_of(user_id) == Decimal('14142.85')
    bet = bets_of(user_id)[0]
    assert bet.payout == Decimal('14142.85')
    assert bet.multiplier == Decimal('14.1428')


def test_flip_settlement_scenario(session_factory, make_user, balance_of, fixed_seed, client_seed):
    user_id = make_user('500')
    flip = Flip()
    params = flip.validate({'side': 'cat'})

    def bet(session):
        return settle_bet(session, user_id, flip, Decimal('50'), params,
                          client_seed, seed_factory=fixed_seed)

    won = run_in_transaction(session_factory, bet)
    assert won.win is True
    assert won.payout == Decimal('100')
    assert balance_of(user_id) == Decimal('550')

    lost = run_in_transaction(session_factory, bet)
    assert lost.win is False
    assert balance_of(user_id) == Decimal('500')


def test_insufficient_balance_leaves_no_trace(session_factory, make_user, balance_of, bets_of):
    user_id = make_user('1000')
    dice, params = _dice_over_50()
    with pytest.raises(InsufficientBalance):
        run_in_transaction(session_factory, lambda s: settle_bet(
            s, user_id, dice, Decimal('2000'), params, 'c'))
    assert balance_of(user_id) == Decimal('1000')
    assert bets_of(user_id) == []
    with session_factory() as session:
        assert session.get(NonceSequence, user_id) is None


def test_whole_balance_can_be_wagered(session_factory, make_user, balance_of, fixed_seed, client_seed):
    user_id = make_user('100')
    dice, params = _dice_over_50()
    outcome = run_in_transaction(session_factory, lambda s: settle_bet(
        s, user_id, dice, Decimal('100'), params, client_seed, seed_factory=fixed_seed))
    assert outcome.new_balance == 0
    assert balance_of(user_id) == 0


def test_bad_seed_commitment_aborts(session_factory, make_user, balance_of, bets_of):
    user_id = make_user('1000')
    dice, params = _dice_over_50()
    with pytest.raises(IntegrityError):
        run_in_transaction(session_factory, lambda s: settle_bet(
            s, user_id, dice, Decimal('10'), params, 'c',
            seed_factory=lambda: ('abc123', '0' * 64)))
    assert balance_of(user_id) == Decimal('1000')
    assert bets_of(user_id) == []


def test_outcome_response_shape(session_factory, make_user, fixed_seed, client_seed):
    user_id = make_user('1000')
    dice, params = _dice_over_50()
    outcome = run_in_transaction(session_factory, lambda s: settle_bet(
        s, user_id, dice, Decimal('100'), params, client_seed, seed_factory=fixed_seed))
    data = outcome.to_dict()
    assert data['newBalance'] == 900.0
    assert data['payout'] == 0.0
    assert data['roll'] == 32.43
    assert data['winChance'] == 50.0
    assert data['serverSeed'] == 'abc123'
    assert data['clientSeed'] == 'xyz'
    assert data['nonce'] == 1


def test_retry_on_conflict(session_factory):
    calls = []

    def work(session):
        calls.append(1)
        if len(calls) < 3:
            raise StaleDataError('row changed')
        return 'ok'

    assert run_in_transaction(session_factory, work, max_retries=3, backoff=0) == 'ok'
    assert len(calls) == 3


def test_conflict_surfaces_after_retries(session_factory):
    calls = []

    def work(session):
        calls.append(1)
        raise sa_exc.IntegrityError('INSERT', {}, Exception('UNIQUE constraint failed'))

    with pytest.raises(ConflictError):
        run_in_transaction(session_factory, work, max_retries=2, backoff=0)
    assert len(calls) == 3


def test_store_failure_is_internal(session_factory):
    def work(session):
        raise sa_exc.OperationalError('SELECT', {}, Exception('unable to open database file'))

    with pytest.raises(InternalError) as info:
        run_in_transaction(session_factory, work, backoff=0)
    assert 'database' not in info.value.message


def test_check_violation_is_internal_and_not_retried(session_factory):
    calls = []

    def work(session):
        calls.append(1)
        raise sa_exc.IntegrityError(
            'UPDATE', {}, Exception('CHECK constraint failed: ck_users_balance_non_negative'))

    with pytest.raises(InternalError):
        run_in_transaction(session_factory, work, max_retries=3, backoff=0)
    assert len(calls) == 1


def test_real_check_violation_is_internal(session_factory, make_user, balance_of):
    user_id = make_user('10')

    def overdraw(session):
        user = session.get(User, user_id)
        user.balance = Decimal('-5')
        session.flush()

    with pytest.raises(InternalError):
        run_in_transaction(session_factory, overdraw, backoff=0)
    assert balance_of(user_id) == Decimal('10')


def test_business_errors_are_not_retried(session_factory):
    calls = []

    def work(session):
        calls.append(1)
        raise InsufficientBalance()

    with pytest.raises(InsufficientBalance):
        run_in_transaction(session_factory, work, backoff=0)
    assert len(calls) == 1


def test_conflict_classification():
    assert is_conflict(StaleDataError('x'))
    assert is_conflict(sa_exc.OperationalError('UPDATE', {}, Exception('database is locked')))
    assert not is_conflict(sa_exc.OperationalError('SELECT', {}, Exception('disk I/O error')))

    class SerializationFailure(Exception):
        pgcode = '40001'

    assert is_conflict(sa_exc.DBAPIError('UPDATE', {}, SerializationFailure()))


def test_only_unique_violations_are_conflicts():
    assert is_conflict(sa_exc.IntegrityError(
        'INSERT', {}, Exception('UNIQUE constraint failed: bets.user_id, bets.nonce')))
    assert not is_conflict(sa_exc.IntegrityError(
        'UPDATE', {}, Exception('CHECK constraint failed: ck_users_balance_non_negative')))
    assert not is_conflict(sa_exc.IntegrityError(
        'INSERT', {}, Exception('NOT NULL constraint failed: bets.server_seed')))
    assert not is_conflict(sa_exc.IntegrityError(
        'INSERT', {}, Exception('FOREIGN KEY constraint failed')))

    class UniqueViolation(Exception):
        pgcode = '23505'

    class ForeignKeyViolation(Exception):
        pgcode = '23503'

    assert is_conflict(sa_exc.IntegrityError('INSERT', {}, UniqueViolation()))
    assert not is_conflict(sa_exc.IntegrityError('INSERT', {}, ForeignKeyViolation()))
