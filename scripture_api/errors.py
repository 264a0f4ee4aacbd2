class ApiError(Exception):
    """Error surfaced to clients as a short message plus a machine-checkable code."""

    def __init__(self, status_code: int, code: str, message: str, headers: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.headers = headers


class BillingUnavailable(Exception):
    """The billing provider could not be reached or rejected the call."""


class WebhookSignatureError(Exception):
    """An inbound webhook payload failed signature verification."""


class LlmUnavailable(Exception):
    """The text generation backend failed or returned nothing."""


def validation_error(message: str) -> ApiError:
    return ApiError(400, "validation_error", message)


def auth_error(message: str) -> ApiError:
    return ApiError(401, "auth_error", message)


def forbidden(message: str) -> ApiError:
    return ApiError(403, "forbidden", message)


def payment_required(message: str) -> ApiError:
    return ApiError(402, "payment_required", message)


def billing_unavailable() -> ApiError:
    return ApiError(
        503,
        "billing_unavailable",
        "Payment provider is unavailable. Please try again.",
    )
