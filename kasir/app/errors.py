from typing import Optional


class CheckoutError(Exception):
    """
    Domain failure with a machine-readable reason code.

    Routers let these propagate; `main.py` renders them as
    `{"valid": false, "reason": ..., "error": ...}` with `status_code`.
    """

    status_code = 400
    retryable = False

    def __init__(self, reason: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        out = {"valid": False, "reason": self.reason, "error": self.message}
        if self.retryable:
            out["retryable"] = True
        return out


class RuleViolation(CheckoutError):
    pass


class ConcurrencyConflict(CheckoutError):
    # Lost a race on a counter (voucher usage, stock, points). Safe to retry the checkout once.
    status_code = 409
    retryable = True
