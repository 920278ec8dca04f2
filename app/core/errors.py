class BillingError(Exception):
    """Base class for failures raised by the billing services."""


class TerminalError(BillingError):
    """Processing can never succeed for this input; do not retry."""


class RetryableError(BillingError):
    """Transient failure; the event may be retried."""


class InvalidPayload(TerminalError):
    pass


class InvalidTransition(TerminalError):
    def __init__(self, current: str, action: str):
        super().__init__(f"Cannot apply {action} to a subscription in state {current}")
        self.current = current
        self.action = action


class ConcurrencyConflict(RetryableError):
    def __init__(self, subscription_id: int, expected_version: int):
        super().__init__(f"Subscription {subscription_id} changed concurrently (expected version {expected_version})")
        self.subscription_id = subscription_id
        self.expected_version = expected_version


class SignatureError(BillingError):
    pass


class ProviderAPIError(BillingError):
    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code
