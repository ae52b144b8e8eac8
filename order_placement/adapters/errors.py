"""Errors a supplier adapter may raise. The core branches on each kind."""
from typing import List, Optional


class AdapterError(Exception):
    pass


class AuthenticationError(AdapterError):
    pass


class SessionExpiredError(AdapterError):
    pass


class ScrapingError(AdapterError):
    pass


class OrderMinimumError(AdapterError):
    def __init__(self, message: str, minimum, current_total):
        self.minimum = minimum
        self.current_total = current_total
        super().__init__(message)


class ItemUnavailableError(AdapterError):
    def __init__(self, message: str, items: List[dict]):
        self.items = items
        super().__init__(message)


class PriceChangedError(AdapterError):
    def __init__(self, message: str, changes: List[dict]):
        self.changes = changes
        super().__init__(message)


class AccountHoldError(AdapterError):
    pass


class CaptchaDetectedError(AdapterError):
    pass


class DeliveryUnavailableError(AdapterError):
    pass


class MaintenanceError(AdapterError):
    pass


class RateLimitedError(AdapterError):
    pass


class AdapterTimeoutError(AdapterError):
    pass


class TwoFactorRequired(AdapterError):
    def __init__(
        self,
        request_id: Optional[str] = None,
        session_token: Optional[str] = None,
        two_fa_type: str = "unknown",
        prompt_message: str = "Please enter your verification code",
        expires_in: Optional[int] = None,
    ):
        self.request_id = request_id
        self.session_token = session_token
        self.two_fa_type = two_fa_type
        self.prompt_message = prompt_message
        self.expires_in = expires_in
        super().__init__("Two-factor authentication required")
