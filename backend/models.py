import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    create_engine, event, Column, Integer, String, Numeric, Boolean, DateTime, JSON,
    ForeignKey, CheckConstraint, UniqueConstraint, Index,
)
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = 'users'
    id = Column(String(36), primary_key=True, default=new_id)
    username = Column(String, unique=True, index=True, nullable=False)
    balance = Column(Numeric(14, 2), nullable=False, default=1000)
    is_admin = Column(Boolean, nullable=False, default=False)
    # contador otimista: UPDATE ... WHERE version = ? detecta lost updates
    version = Column(Integer, nullable=False)

    __table_args__ = (CheckConstraint('balance >= 0', name='ck_users_balance_non_negative'),)
    __mapper_args__ = {'version_id_col': version}


class NonceSequence(Base):
    __tablename__ = 'user_game_sessions'
    user_id = Column(String(36), ForeignKey('users.id'), primary_key=True)
    current_nonce = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __table_args__ = (CheckConstraint('current_nonce >= 0', name='ck_nonce_non_negative'),)
    __mapper_args__ = {'version_id_col': version}


class Bet(Base):
    __tablename__ = 'bets'
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey('users.id'), nullable=False)
    game_type = Column(String(16), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    multiplier = Column(Numeric(12, 4), nullable=False)
    win = Column(Boolean, nullable=False)
    payout = Column(Numeric(14, 2), nullable=False, default=0)

    # provably fair
    server_seed = Column(String(64), nullable=False)
    server_seed_hash = Column(String(64), nullable=False)
    client_seed = Column(String, nullable=False)
    nonce = Column(Integer, nullable=False)

    game_data = Column(JSON)
    result = Column(Numeric(5, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'nonce', name='uq_bets_user_nonce'),
        Index('ix_bets_user_created', 'user_id', 'created_at'),
    )


def make_engine(url='sqlite:///database.db', echo=False):
    if url.startswith('sqlite'):
        # conexões compartilhadas entre threads do servidor; espera lock de escrita
        engine = create_engine(url, echo=echo,
                               connect_args={'check_same_thread': False, 'timeout': 30})

        @event.listens_for(engine, 'connect')
        def _sqlite_pragmas(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute('PRAGMA foreign_keys=ON')
            cur.close()

        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine):
    Base.metadata.create_all(engine)
