import logging

from flask import Flask, Blueprint, current_app, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException, InternalServerError

from config import Config
from errors import SettlementError, ValidationError, Unauthorized, RateLimited
from game_logic import build_games
from models import User, make_engine, make_session_factory, init_db
from rate_limiter import RateLimiter, RateLimit
from settlement import SettlementService

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


def _service() -> SettlementService:
    return current_app.extensions['settlement']


def _error(err: SettlementError, headers=None):
    return jsonify(err.to_dict()), err.status, headers or {}


def _principal():
    # a sessão é emitida por outra camada; aqui só chega o id autenticado
    user = _service().find_user(request.headers.get('X-User-Id'))
    if user is None:
        raise Unauthorized()
    return user


def _rate_limit(user_id):
    if not current_app.config['RATE_LIMIT_ENABLED']:
        return {}
    limit = RateLimit(window=current_app.config['RATE_LIMIT_WINDOW'],
                      max_requests=current_app.config['RATE_LIMIT_BETS'])
    decision = current_app.extensions['rate_limiter'].hit(f'{user_id}:betting', limit)
    headers = decision.headers(limit)
    if decision.limited:
        raise RateLimited(headers=headers)
    return headers


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        raise ValidationError(f'{name} must be an integer')


@api.get('/balance')
def get_balance():
    user = _principal()
    result = _service().game_state(user.id)
    if not result.ok:
        return _error(result.error)
    return jsonify({'success': True, 'data': {'username': user.username, **result.value}})


@api.post('/game/<game_type>')
def place_bet(game_type):
    user = _principal()
    headers = _rate_limit(user.id)
    payload = request.get_json(silent=True)
    if payload is None:
        return _error(ValidationError('Invalid request body'), headers)

    result = _service().settle(user.id, game_type, payload)
    if not result.ok:
        return _error(result.error, headers)
    return jsonify({'success': True, 'result': result.value.to_dict()}), 200, headers


@api.get('/game/<game_type>')
def game_data(game_type):
    user = _principal()
    result = _service().game_state(user.id, game_type)
    if not result.ok:
        return _error(result.error)
    return jsonify({'success': True, 'data': result.value})


@api.get('/game/verify')
def verify_bet():
    user = _principal()
    result = _service().verify(user.id, request.args.get('betId'))
    if not result.ok:
        return _error(result.error)
    return jsonify({'success': True, 'data': result.value})


@api.get('/game/history')
def bet_history():
    user = _principal()
    result = _service().history(
        user.id,
        page=_int_arg('page', 1),
        limit=_int_arg('limit', 20),
        game_type=request.args.get('gameType') or None,
    )
    if not result.ok:
        return _error(result.error)
    return jsonify({'success': True, 'data': result.value})


def seed_default_user(session_factory, username, balance):
    with session_factory() as db:
        user = db.query(User).filter_by(username=username).first()
        if not user:
            user = User(username=username, balance=balance)
            db.add(user)
            db.commit()
            logger.info('created default user %s (%s)', username, user.id)
        return user.id


def register_error_handlers(app):

    @app.errorhandler(SettlementError)
    def handle_settlement_error(e):
        return _error(e, e.headers)

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        kind = (e.name or 'error').lower().replace(' ', '_')
        return jsonify({'success': False, 'error': kind, 'message': e.description}), e.code

    @app.errorhandler(InternalServerError)
    def handle_internal_error(e):
        # nunca expõe stack trace nem erro do banco
        logger.error('unhandled error: %r', getattr(e, 'original_exception', e))
        return jsonify({'success': False, 'error': 'internal_error',
                        'message': 'Internal server error'}), 500


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config['LOG_LEVEL'])
    CORS(app, origins=app.config['CORS_ORIGINS'])

    engine = make_engine(app.config['DATABASE_URL'], echo=app.config['SQL_ECHO'])
    init_db(engine)
    SessionLocal = make_session_factory(engine)

    games = build_games(
        house_edge=app.config['HOUSE_EDGE'],
        min_win_chance=app.config['MIN_WIN_CHANCE'],
        max_win_chance=app.config['MAX_WIN_CHANCE'],
    )
    app.extensions['db_engine'] = engine
    app.extensions['db_session'] = SessionLocal
    app.extensions['rate_limiter'] = RateLimiter()
    app.extensions['settlement'] = SettlementService(
        SessionLocal,
        games=games,
        max_retries=app.config['SETTLE_MAX_RETRIES'],
        retry_backoff=app.config['SETTLE_RETRY_BACKOFF'],
        lock_timeout=app.config['SETTLE_LOCK_TIMEOUT'],
    )

    # cria usuário padrão em primeiro run
    if app.config.get('DEFAULT_USERNAME'):
        seed_default_user(SessionLocal, app.config['DEFAULT_USERNAME'], app.config['DEFAULT_BALANCE'])

    app.register_blueprint(api)
    register_error_handlers(app)
    return app


if __name__ == '__main__':
    create_app().run(debug=False)
