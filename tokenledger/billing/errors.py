"""Billing failures that callers are expected to tell apart."""


class BillingError(Exception):
    """Base class for billing/ledger failures."""


class InvalidSignature(BillingError):
    """Webhook payload could not be authenticated. Terminal for the request."""


class MissingCustomerMapping(BillingError):
    """An event could not be attributed to a user; funds are never guessed."""

    def __init__(self, message: str, *, stripe_customer_id=None):
        super().__init__(message)
        self.stripe_customer_id = stripe_customer_id


class UnknownPriceMapping(BillingError):
    """A Stripe price is not in the plan/top-up catalog; no grant is made."""

    def __init__(self, price_id):
        super().__init__(f"no catalog entry for price {price_id!r}")
        self.price_id = price_id


class DownstreamGenerationFailure(BillingError):
    """The generation backend failed after tokens were reserved."""

    def __init__(self, message: str, *, status_code=None):
        super().__init__(message)
        self.status_code = status_code
