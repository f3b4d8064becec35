"""Shared exceptions module."""

from typing import Any, Optional

from pydantic import ValidationError


class CreamException(Exception):
    """Base exception for Cream services."""

    pass


class NotFoundException(CreamException):
    """Exception raised when an object is not found.

    Raised for missing subscriptions, invoices, customers, payment-method owners
    and organizations. Anticipated: reconcilers drop the organization and continue.
    """

    def __init__(self, message: Optional[str] = "Object not found", **context: Any):
        """Create a new NotFoundException instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.
            context: Identifiers that help locate the missing object in logs.

        """
        self.message = message
        self.context = context
        super().__init__(self.message)


class ExternalServiceError(CreamException):
    """Exception raised when an external service fails.

    Covers network failures, 5xx responses and rate limits from Stripe or
    big-poppa. Anticipated: reconcilers drop the organization and the next
    scheduled run retries it, since no notification flag was written.
    """

    def __init__(self, service_name: str, message: Optional[str] = "External service failed"):
        """Create a new ExternalServiceError instance.

        Args:
        ----
            service_name (str): The name of the external service.
            message (str, optional): The error message. Has default message.

        """
        self.service_name = service_name
        self.message = message
        super().__init__(f"{service_name}: {message}")


class JobValidationError(CreamException):
    """Exception raised when a queued job payload is malformed."""

    def __init__(self, task_name: str, errors: Optional[dict] = None):
        """Create a new JobValidationError instance.

        Args:
        ----
            task_name (str): The task whose payload failed validation.
            errors (dict, optional): Unpacked validation errors.

        """
        self.task_name = task_name
        self.errors = errors or {}
        super().__init__(f"Invalid job for {task_name}: {self.errors}")


class WorkerStopError(CreamException):
    """Exception raised to stop processing a job without retrying it."""

    def __init__(self, message: str, level: str = "warning", **context: Any):
        """Create a new WorkerStopError instance.

        Args:
        ----
            message (str): Why the job was stopped.
            level (str): Log level the worker should use when reporting the stop.
            context: Extra identifiers for the log line.

        """
        self.message = message
        self.level = level
        self.context = context
        super().__init__(self.message)


# Failures a reconciliation stage absorbs as a per-organization skip.
ANTICIPATED_ERRORS: tuple[type[Exception], ...] = (NotFoundException, ExternalServiceError)


def unpack_validation_error(exc: ValidationError) -> dict:
    """Unpack a Pydantic validation error into a dictionary.

    Args:
    ----
        exc (ValidationError): The Pydantic validation error.

    Returns:
    -------
        dict: The dictionary representation of the validation error.

    """
    error_messages = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        message = error["msg"]
        error_messages.append({field: message})

    return {"errors": error_messages}
