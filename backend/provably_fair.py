import hmac, hashlib, os, binascii
from decimal import Decimal, ROUND_DOWN

HOUSE_EDGE = Decimal("1")
FLIP_WIN_CHANCE = Decimal("49.5")

# 10000 resultados discretos: 0.00 .. 99.99
ROLL_RANGE = 10000

CENT = Decimal("0.01")
MULTIPLIER_STEP = Decimal("0.0001")


# Gera seeds e hash para provar justiça (revelar server_seed depois)
def generate_server_seed():
    seed = binascii.hexlify(os.urandom(32)).decode()
    return seed, hash_server_seed(seed)


def generate_client_seed():
    return binascii.hexlify(os.urandom(16)).decode()


def hash_server_seed(server_seed: str) -> str:
    return hashlib.sha256(server_seed.encode()).hexdigest()


def verify_server_seed(server_seed: str, server_seed_hash: str) -> bool:
    return hmac.compare_digest(hash_server_seed(server_seed), server_seed_hash)


def derive_roll(server_seed: str, client_seed: str, nonce: int) -> int:
    # HMAC-SHA256(server_seed, "client-nonce"): 8 primeiros hex, mod 10000 (centésimos)
    msg = f"{client_seed}-{nonce}".encode()
    digest = hmac.new(server_seed.encode(), msg, hashlib.sha256).hexdigest()
    return int(digest[:8], 16) % ROLL_RANGE


def derive_outcome(server_seed: str, client_seed: str, nonce: int) -> float:
    # resolução de 0.01: chances de vitória abaixo disso não são representáveis
    return derive_roll(server_seed, client_seed, nonce) / 100


def roll_to_decimal(roll: int) -> Decimal:
    return (Decimal(roll) / 100).quantize(CENT)


def decimal_to_roll(value) -> int:
    return int((Decimal(str(value)) * 100).to_integral_value())


def dice_win_chance(bet_type: str, target: Decimal) -> Decimal:
    if bet_type == "over":
        return Decimal(100) - target
    return target


def calculate_multiplier(win_chance: Decimal, house_edge: Decimal = HOUSE_EDGE) -> Decimal:
    if win_chance <= 0:
        raise ValueError("win chance must be positive")
    # valor exato: o pagamento é calculado a partir dele
    return (Decimal(100) - house_edge) / win_chance


def display_multiplier(multiplier: Decimal) -> Decimal:
    # só para gravar (Numeric(12, 4)) e exibir
    return multiplier.quantize(MULTIPLIER_STEP, rounding=ROUND_DOWN)


def calculate_payout(amount: Decimal, multiplier: Decimal, win: bool) -> Decimal:
    if not win:
        return Decimal("0.00")
    return (amount * multiplier).quantize(CENT, rounding=ROUND_DOWN)


def to_money(value) -> float:
    # valores visíveis ao jogador: sempre 2 casas
    return float(Decimal(value).quantize(CENT))
