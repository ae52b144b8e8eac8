from enum import Enum


class UserRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"

    def __str__(self):
        return self.value


class OrderStatus(str, Enum):
    PENDING = "pending"
    VERIFYING = "verifying"
    PRICE_CHANGED = "price_changed"
    PROCESSING = "processing"
    PENDING_REVIEW = "pending_review"
    PENDING_MANUAL = "pending_manual"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self):
        return self.value


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    PRICE_CHANGED = "price_changed"
    FAILED = "failed"
    SKIPPED = "skipped"

    def __str__(self):
        return self.value


class OrderItemStatus(str, Enum):
    PENDING = "pending"
    ADDED = "added"
    FAILED = "failed"
    SKIPPED = "skipped"

    def __str__(self):
        return self.value


class CredentialStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    FAILED = "failed"
    HOLD = "hold"

    def __str__(self):
        return self.value


class SupplierAuthType(str, Enum):
    PASSWORD = "password"
    TWO_FA_ONLY = "two_fa_only"
    WELCOME_URL = "welcome_url"

    def __str__(self):
        return self.value


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    def __str__(self):
        return self.value


class ChallengeRequestType(str, Enum):
    LOGIN = "login"
    CHECKOUT = "checkout"
    PRICE_REFRESH = "price_refresh"

    def __str__(self):
        return self.value


class TwoFactorType(str, Enum):
    SMS = "sms"
    TOTP = "totp"
    EMAIL = "email"
    UNKNOWN = "unknown"

    def __str__(self):
        return self.value


class ValidationType(str, Enum):
    ORDER_MINIMUM = "order_minimum"
    ITEM_MINIMUM = "item_minimum"
    ITEM_MAXIMUM = "item_maximum"
    ITEM_UNAVAILABLE = "item_unavailable"
    ITEMS_REMOVED = "items_removed"
    NO_DELIVERY = "no_delivery"
    CUTOFF_PASSED = "cutoff_passed"
    CUTOFF_APPROACHING = "cutoff_approaching"
    ACCOUNT_INACTIVE = "account_inactive"
    ACCOUNT_HOLD = "account_hold"
    PRICE_CHANGED = "price_changed"

    def __str__(self):
        return self.value


class RequirementType(str, Enum):
    ORDER_MINIMUM = "order_minimum"
    ITEM_MINIMUM = "item_minimum"
    DELIVERY_DAY = "delivery_day"
    CUTOFF_TIME = "cutoff_time"
    SERVICE_AREA = "service_area"
    MAX_QUANTITY = "max_quantity"
    ACCOUNT_STATUS = "account_status"

    def __str__(self):
        return self.value


class AuditAction(str, Enum):
    SUBMIT_ORDER = "submit_order"
    SUBMIT_BATCH = "submit_batch"
    CANCEL_ORDER = "cancel_order"
    RETRY_ORDER = "retry_order"
    VERIFY_PRICES = "verify_prices"
    ACCEPT_PRICE_CHANGES = "accept_price_changes"
    SKIP_VERIFICATION = "skip_verification"
    SUBMIT_2FA_CODE = "submit_2fa_code"
    CANCEL_2FA = "cancel_2fa"

    def __str__(self):
        return self.value
