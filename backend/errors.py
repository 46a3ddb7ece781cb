class AppError(Exception):
    """Base app error."""

    status_code = 400
    code = "AppError"


class ValidationError(AppError):
    code = "InvalidArgument"


class NotFoundError(AppError):
    status_code = 404
    code = "NotFound"


class InsufficientStockError(AppError):
    status_code = 409
    code = "InsufficientStock"


class ConflictError(AppError):
    """Delete refused because other rows still reference the target."""

    status_code = 409
    code = "Conflict"
