class EngineError(Exception):
    """
    Base class for every error the settlement engine raises on purpose.
    `status_code` is what the admin API answers with.
    """

    status_code = 400

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"detail": self.message, **self.extra}


# -------------------------------
# Rejected before any write
# -------------------------------

class ValidationError(EngineError):
    status_code = 400


class OutOfRange(ValidationError):
    pass


class InvalidPaymentDetails(ValidationError):
    pass


class LimitExceeded(EngineError):
    status_code = 409

    def __init__(self, message: str, *, requested: float, pending: float, **extra):
        super().__init__(message, requested=requested, pending=pending, **extra)
        self.requested = requested
        self.pending = pending


class NotFound(EngineError):
    status_code = 404


class OrderNotFound(NotFound):
    pass


class AlreadyRefunded(EngineError):
    status_code = 409


class ConcurrencyConflict(EngineError):
    status_code = 409


class RequestInProgress(EngineError):
    status_code = 409


# -------------------------------
# Recorded, then surfaced
# -------------------------------

class GatewayError(EngineError):
    status_code = 502

    def __init__(self, message: str, *, ledger_id: str | None = None, timed_out: bool = False, **extra):
        super().__init__(message, ledger_id=ledger_id, timed_out=timed_out, **extra)
        self.ledger_id = ledger_id
        self.timed_out = timed_out


# -------------------------------
# Recovered locally
# -------------------------------

class PartialDataError(EngineError):
    pass
