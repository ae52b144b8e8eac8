from typing import List, Optional


class InvalidTransitionError(Exception):
    def __init__(self, order_id, current, target: str):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"Order {order_id} cannot move from {current} via {target}")


class OrderValidationError(Exception):
    """Blocking validation failure. ``errors`` and ``warnings`` are rule dicts."""

    def __init__(self, errors: Optional[List[dict]] = None, warnings: Optional[List[dict]] = None):
        self.errors = errors or []
        self.warnings = warnings or []
        super().__init__("; ".join(e["message"] for e in self.errors))


class OrderNotClaimableError(Exception):
    def __init__(self, order_id, status):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} is {status} and cannot be placed")


class ChallengeNotFoundError(Exception):
    pass


class CredentialBusy(Exception):
    """Another job holds the supplier session for this credential."""
