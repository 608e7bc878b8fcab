"""
Error taxonomy for the collection engines.

Every engine raises one of these; the Flask app turns them into
``{"error": message}`` responses with the matching status code.
"""


class CollectionError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(CollectionError):
    """Unknown entity id."""
    status_code = 404


class InvalidState(CollectionError):
    """Operation attempted from a state that forbids it."""
    status_code = 409


class ValidationFailure(CollectionError):
    """Out-of-range or missing required field."""
    status_code = 400


class PreconditionFailure(CollectionError):
    """Insufficient balance, expired or out-of-stock reward item."""
    status_code = 422
