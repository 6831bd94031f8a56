from .errors import (
    BillingError,
    InvalidSignature,
    MissingCustomerMapping,
    UnknownPriceMapping,
    DownstreamGenerationFailure,
)
