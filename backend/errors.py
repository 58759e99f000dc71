# cada erro tem um "kind" estável e o status HTTP da resposta;
# a mensagem vai para o jogador, detalhes do banco só para o log


class SettlementError(Exception):
    kind = "internal_error"
    status = 500
    default_message = "Internal server error"

    def __init__(self, message=None, headers=None):
        self.message = message or self.default_message
        self.headers = headers
        super().__init__(self.message)

    def to_dict(self):
        return {"success": False, "error": self.kind, "message": self.message}


class ValidationError(SettlementError):
    kind = "invalid_request"
    status = 400
    default_message = "Invalid bet"


class InsufficientBalance(SettlementError):
    kind = "insufficient_balance"
    status = 400
    default_message = "Insufficient balance"


class ConflictError(SettlementError):
    # transação perdeu a corrida; pode tentar de novo
    kind = "conflict"
    status = 503
    default_message = "Bet could not be settled, please retry"


class IntegrityError(SettlementError):
    # registro de aposta que não confere com o seed ou o resultado
    kind = "integrity_error"
    status = 500
    default_message = "Bet record failed verification"


class InternalError(SettlementError):
    pass


class NotFound(SettlementError):
    kind = "not_found"
    status = 404
    default_message = "Not found"


class Unauthorized(SettlementError):
    kind = "unauthorized"
    status = 401
    default_message = "Authentication required"


class RateLimited(SettlementError):
    kind = "rate_limited"
    status = 429
    default_message = "Too many bets. Please slow down."
