"""Exceptions raised by the service modules and translated to JSON errors in app.py."""


class ValidationError(ValueError):
    """Submitted data breaks a business rule."""
    status_code = 400


class CapacityExceededError(ValidationError):
    """An allocation would push an employee's month past 100%."""

    def __init__(self, user_name, month, total, requested):
        self.user_name = user_name
        self.month = month
        self.total = total
        self.requested = requested
        available = max(0, 100 - total)
        super().__init__(
            f'{user_name} is already allocated {total:g}% in {month}; '
            f'only {available:g}% is available but {requested:g}% was requested'
        )


class PermissionDenied(Exception):
    status_code = 403
