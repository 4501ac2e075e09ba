"""
Shared error taxonomy.

Integration errors are raised at the boundary to an external collaborator
(the Redis broker, the CRM HTTP API) so callers never have to catch
library-specific exceptions.
"""


class IntegrationError(Exception):
    """Base class for broker and CRM failures."""


class ConnectFailure(IntegrationError):
    """The broker or the CRM could not be reached."""


class PublishFailure(IntegrationError):
    """The broker rejected a publish or a queue operation."""


class AuthFailure(IntegrationError):
    """The CRM rejected our credentials."""


class ParseFailure(IntegrationError):
    """A message body could not be decoded or carries no order reference."""


class CrmRequestFailure(IntegrationError):
    """The CRM answered a request with a non-success status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"CRM returned {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class NotFound(LookupError):
    """A referenced record does not exist."""


class OutOfStock(ValueError):
    """An order line asks for more copies than are in stock."""

    def __init__(self, title: str, available: int) -> None:
        super().__init__(f"Insufficient stock for {title}. Available: {available}")
        self.title = title
        self.available = available
