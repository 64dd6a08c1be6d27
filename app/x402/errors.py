# app/x402/errors.py
"""
Exception taxonomy for the payment gate.

Each class carries the HTTP status the middleware answers with:
- ClientProtocolError: malformed proof or unsupported chain (400)
- PaymentRejected: invalid, insufficient or already used payment (402)
- DependencyUnavailable: a dependency needed to decide safely is down (503)
"""


class X402Error(Exception):
    """Base class for payment gate errors."""

    status_code = 500
    error = "Internal Server Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message}


class ClientProtocolError(X402Error):
    status_code = 400
    error = "Bad Request"


class InvalidTransactionHash(ClientProtocolError):
    error = "Invalid transaction hash format"


class UnsupportedChainError(ClientProtocolError):
    error = "Invalid chain"


class PaymentRejected(X402Error):
    status_code = 402
    error = "Payment Required"


class DependencyUnavailable(X402Error):
    status_code = 503
    error = "Service temporarily unavailable"


class ReplayStoreUnavailable(DependencyUnavailable):
    """The replay ledger could not be read or written."""
