from dataclasses import dataclass

from errors import IntegrityError
from provably_fair import verify_server_seed, derive_roll, decimal_to_roll


@dataclass(frozen=True)
class VerificationResult:
    seed_hash_valid: bool
    recomputed_result: float
    matches_stored: bool

    @property
    def verified(self):
        return self.seed_hash_valid and self.matches_stored


def verify(bet) -> VerificationResult:
    # só leitura; compara em centésimos para não depender de float
    seed_hash_valid = verify_server_seed(bet.server_seed, bet.server_seed_hash)
    roll = derive_roll(bet.server_seed, bet.client_seed, bet.nonce)
    return VerificationResult(
        seed_hash_valid=seed_hash_valid,
        recomputed_result=roll / 100,
        matches_stored=roll == decimal_to_roll(bet.result),
    )


def ensure_verified(bet) -> VerificationResult:
    check = verify(bet)
    if not check.seed_hash_valid:
        raise IntegrityError("Server seed does not match its committed hash")
    if not check.matches_stored:
        raise IntegrityError("Stored result does not match the recomputed outcome")
    return check
