"""
Error taxonomy for the payment core.

Every error knows the HTTP status it maps to and how to render itself as a
JSON body; the handlers in main.py rely on both.
"""
from typing import Any, Dict, Optional


class MalipoError(Exception):
    """Base class for all errors raised by the payment core."""

    http_status = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "success": False,
            "error": self.message,
            "type": self.__class__.__name__,
        }
        body.update(self.details)
        return body


class ValidationError(MalipoError):
    """Bad input. Raised before any network call or store write."""

    http_status = 400

    def __init__(self, errors: Dict[str, str], message: str = "Validation failed"):
        super().__init__(message, errors=errors)
        self.errors = errors


class ConfigurationError(MalipoError):
    """Missing credentials or secrets for the requested environment."""

    http_status = 500


class UpstreamAuthError(MalipoError):
    """The provider rejected the OAuth client-credentials exchange."""

    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message, provider_status=status_code, provider_body=body)
        self.status_code = status_code
        self.body = body


class UpstreamPaymentError(MalipoError):
    """The provider rejected a payment request, or could not be reached."""

    http_status = 502

    def __init__(self, message: str, response: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.response = response


class PersistenceError(MalipoError):
    """A store read or write failed."""

    http_status = 500


class NotFoundError(MalipoError):
    http_status = 404


class ConflictError(MalipoError):
    http_status = 409


class UnrecognizedCallbackShape(MalipoError):
    """Callback payload matched none of the known provider shapes."""

    http_status = 200
