from __future__ import annotations


class BillingValidationError(ValueError):
    """Raised when input is malformed; nothing is persisted."""


class InvalidTransitionError(ValueError):
    """Raised when an invoice operation has no edge from the current status."""

    def __init__(self, invoice_id: str, operation: str, current_status: str) -> None:
        super().__init__(f"cannot {operation} invoice {invoice_id} in status {current_status}")
        self.invoice_id = invoice_id
        self.operation = operation
        self.current_status = current_status


class DeliveryError(RuntimeError):
    """Raised or reported when an email or payment-gateway call fails."""

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class GatewayError(DeliveryError):
    """Raised when the payment gateway cannot create a checkout."""


class InvoiceNotFoundError(KeyError):
    """Raised when an invoice id is not present in the store."""


class UnknownPaymentRequestError(KeyError):
    """Raised when a gateway callback references an unknown external request id."""

    def __init__(self, external_request_id: str) -> None:
        super().__init__(external_request_id)
        self.external_request_id = external_request_id


class UnknownJobError(KeyError):
    """Raised when a job name has no registered handler."""


class JobAlreadyRunningError(RuntimeError):
    """Raised when a job is triggered while a run of the same name is in progress."""

    def __init__(self, job_name: str, running_run_id: str) -> None:
        super().__init__(f"job {job_name} is already running as {running_run_id}")
        self.job_name = job_name
        self.running_run_id = running_run_id


class StoreError(RuntimeError):
    """Raised when the persistence layer is unavailable or rejects an operation."""
