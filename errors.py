"""
Error taxonomy for the orders service.

Only ValidationError (and DuplicateReference) reach the customer when an
order is placed. The others are logged; the admin update path surfaces
NotFound and PersistenceUnavailable because it has no draft to fall back to.
"""


class OrderError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderError):
    status_code = 400


class DuplicateReference(ValidationError):
    status_code = 409


class NotFound(OrderError):
    status_code = 404


class PersistenceUnavailable(OrderError):
    status_code = 503


class NotificationFailure(OrderError):
    status_code = 502
