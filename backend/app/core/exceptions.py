class AppError(Exception):
    """Base class for all application exceptions.

    ``status_code`` lets a host service map an error to a response without
    inspecting its type; ``details`` carries the offending ids.
    """

    status_code = 500

    def __init__(self, message: str, details: dict | None = None, status_code: int | None = None):
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class SchedulerError(AppError):
    """Raised when the scheduler reaches an invalid state or cannot trust its result."""

    status_code = 400


class ScheduleInputError(SchedulerError):
    """Raised when the input bundle is internally inconsistent (stale or dangling data)."""

    status_code = 422


class ConfigurationError(AppError):
    """Raised when process settings yield an unusable scheduler configuration."""
