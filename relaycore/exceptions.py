"""Error taxonomy for inbound processing and outbound delivery."""


class RelayError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class PaymentValidationError(RelayError):
    def __init__(self, message: str = "Invalid payment data or missing company_id"):
        super().__init__(message, status_code=400)


class SignatureVerificationError(RelayError):
    def __init__(self, provider: str):
        super().__init__(f"Invalid {provider} signature", status_code=400)


class DuplicateReferenceError(RelayError):
    """The ledger already holds an entry for this reference."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Duplicate ledger reference: {reference}", status_code=409)


class WebhookEventNotFoundError(RelayError):
    def __init__(self, event_id: str):
        super().__init__(f"Webhook event {event_id} not found", status_code=404)


class DestinationUnavailableError(RelayError):
    def __init__(self, message: str = "Webhook config missing or inactive"):
        super().__init__(message, status_code=400)


class MalformedEventError(RelayError):
    def __init__(self, message: str):
        super().__init__(message, status_code=500)
