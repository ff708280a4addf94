"""
errors.py — Error Taxonomy of the Print Order Service

Every failure the core reports is a subclass of `PrintServiceError`. Each class
carries a stable machine-readable `code` and the HTTP status the API layer
answers with, so callers can decide how to react without parsing messages.

Classes:
    - ValidationError:      malformed or out-of-range input
    - EmptyOrder, MissingRate, IncompleteRateCard: pricing failures
    - Forbidden, NotFound:  authorization / lookup
    - InvalidTransition, Conflict, InvalidState: order state
    - SignatureMismatch, AmountMismatch: payment integrity (never retried)
    - UpstreamUnavailable:  dependency failure, the only retryable class
"""


def _text(value):
    return getattr(value, "value", value)


class PrintServiceError(Exception):
    """Base class for all domain errors."""

    code = "error"
    status_code = 500
    retryable = False

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        body = {"error": self.code, "message": self.message}
        body.update(self.details)
        return body


class ValidationError(PrintServiceError):
    code = "validation_error"
    status_code = 400


class EmptyOrder(PrintServiceError):
    code = "empty_order"
    status_code = 400


class MissingRate(PrintServiceError):
    code = "missing_rate"
    status_code = 422

    def __init__(self, print_type, paper_size):
        super().__init__(
            f"No rate for {_text(print_type)}/{_text(paper_size)}",
            print_type=_text(print_type),
            paper_size=_text(paper_size),
        )


class IncompleteRateCard(PrintServiceError):
    code = "incomplete_rate_card"
    status_code = 422

    def __init__(self, missing):
        pairs = [f"{_text(p)}/{_text(s)}" for p, s in missing]
        super().__init__(
            f"Shop has no rate for: {', '.join(pairs)}",
            missing=pairs,
        )


class Forbidden(PrintServiceError):
    code = "forbidden"
    status_code = 403


class NotFound(PrintServiceError):
    code = "not_found"
    status_code = 404


class InvalidTransition(PrintServiceError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, current, requested):
        super().__init__(
            f"Cannot move order from '{_text(current)}' to '{_text(requested)}'",
            current_status=_text(current),
            requested_status=_text(requested),
        )
        self.current = current
        self.requested = requested


class Conflict(PrintServiceError):
    """The order was changed by another actor between read and write."""

    code = "conflict"
    status_code = 409

    def __init__(self, order_id, current, expected):
        super().__init__(
            f"Order {order_id} is '{_text(current)}', expected '{_text(expected)}'",
            order_id=order_id,
            current_status=_text(current),
            expected_status=_text(expected),
        )
        self.current = current


class InvalidState(PrintServiceError):
    code = "invalid_state"
    status_code = 409


class SignatureMismatch(PrintServiceError):
    code = "signature_mismatch"
    status_code = 400


class AmountMismatch(PrintServiceError):
    code = "amount_mismatch"
    status_code = 400


class UpstreamUnavailable(PrintServiceError):
    code = "upstream_unavailable"
    status_code = 503
    retryable = True
