from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, Any

from errors import ValidationError
from provably_fair import (
    HOUSE_EDGE, FLIP_WIN_CHANCE, CENT, derive_roll, roll_to_decimal,
    dice_win_chance, calculate_multiplier, calculate_payout,
)

MIN_TARGET = Decimal("0.01")
MAX_TARGET = Decimal("99.99")
MIN_WIN_CHANCE = Decimal("1")
MAX_WIN_CHANCE = Decimal("98")


class GameType(str, Enum):
    DICE = "dice"
    FLIP = "flip"


@dataclass
class GameResult:
    win: bool
    payout: Decimal
    multiplier: Decimal
    result: Decimal          # valor bruto 0.00..99.99, sempre
    game_data: Dict[str, Any]
    extra: Dict[str, Any] = field(default_factory=dict)  # campos específicos da resposta


def parse_decimal(value, name):
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{name} must be a number")
    try:
        dec = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be a number")
    if not dec.is_finite():
        raise ValidationError(f"{name} must be a number")
    return dec


def has_cents_precision(value: Decimal) -> bool:
    try:
        return value == value.quantize(CENT)
    except InvalidOperation:
        # grande demais para o contexto decimal
        return False


class Game:
    # validate e calculate_result são puros; validate roda antes da transação

    game_type: GameType

    def __init__(self, house_edge=HOUSE_EDGE, min_win_chance=MIN_WIN_CHANCE,
                 max_win_chance=MAX_WIN_CHANCE):
        self.house_edge = Decimal(house_edge)
        self.min_win_chance = Decimal(min_win_chance)
        self.max_win_chance = Decimal(max_win_chance)

    def validate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def calculate_result(self, server_seed, client_seed, nonce, amount, params) -> GameResult:
        raise NotImplementedError


class Dice(Game):
    game_type = GameType.DICE

    def validate(self, params):
        bet_type = params.get("betType")
        if bet_type not in ("over", "under"):
            raise ValidationError("betType must be 'over' or 'under'")
        target = parse_decimal(params.get("target"), "target")
        if target < MIN_TARGET or target > MAX_TARGET:
            raise ValidationError("Target must be between 0.01 and 99.99")
        if not has_cents_precision(target):
            raise ValidationError("Target must have at most 2 decimal places")
        win_chance = dice_win_chance(bet_type, target)
        if win_chance < self.min_win_chance or win_chance > self.max_win_chance:
            raise ValidationError(
                f"Win chance must be between {self.min_win_chance}% and {self.max_win_chance}%")
        return {"betType": bet_type, "target": target, "winChance": win_chance}

    def calculate_result(self, server_seed, client_seed, nonce, amount, params):
        roll = derive_roll(server_seed, client_seed, nonce)
        # compara em centésimos para evitar ruído de ponto flutuante
        target = int(params["target"] * 100)
        if params["betType"] == "over":
            win = roll > target
        else:
            win = roll < target
        multiplier = calculate_multiplier(params["winChance"], self.house_edge)
        result = roll_to_decimal(roll)
        return GameResult(
            win=win,
            payout=calculate_payout(amount, multiplier, win),
            multiplier=multiplier,
            result=result,
            game_data={
                "betType": params["betType"],
                "target": str(params["target"]),
                "winChance": str(params["winChance"]),
            },
            extra={"roll": result, "winChance": params["winChance"]},
        )


def flip_side(roll: int) -> str:
    # mapeamento canônico: < 50.00 -> cat, senão dog
    return "cat" if roll < 5000 else "dog"


class Flip(Game):
    game_type = GameType.FLIP

    def validate(self, params):
        side = params.get("side")
        if side not in ("cat", "dog"):
            raise ValidationError("Invalid side selection")
        return {"side": side}

    def calculate_result(self, server_seed, client_seed, nonce, amount, params):
        roll = derive_roll(server_seed, client_seed, nonce)
        landed = flip_side(roll)
        win = landed == params["side"]
        multiplier = calculate_multiplier(FLIP_WIN_CHANCE, self.house_edge)
        return GameResult(
            win=win,
            payout=calculate_payout(amount, multiplier, win),
            multiplier=multiplier,
            result=roll_to_decimal(roll),
            game_data={
                "side": params["side"],
                "flipResult": landed,
                "winChance": str(FLIP_WIN_CHANCE),
            },
            extra={"flipResult": landed},
        )


def build_games(house_edge=HOUSE_EDGE, min_win_chance=MIN_WIN_CHANCE,
                max_win_chance=MAX_WIN_CHANCE) -> Dict[GameType, Game]:
    kw = dict(house_edge=house_edge, min_win_chance=min_win_chance,
              max_win_chance=max_win_chance)
    return {GameType.DICE: Dice(**kw), GameType.FLIP: Flip(**kw)}


def resolve_game_type(value) -> GameType:
    try:
        return GameType(value)
    except ValueError:
        raise ValidationError(f"Unknown game type: {value!r}")
