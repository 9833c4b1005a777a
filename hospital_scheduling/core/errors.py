class SchedulingError(Exception):
    """Base for errors the scheduling core raises on purpose."""
    status_code = 400
    code = "scheduling_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code

class InvalidDefinition(SchedulingError):
    # malformed window / rule / series definitions; raised before any write
    status_code = 422
    code = "invalid_definition"

class NoAvailability(SchedulingError):
    status_code = 404
    code = "no_availability"

class BookingBusy(SchedulingError):
    # optimistic version kept moving under us; caller should retry later
    status_code = 503
    code = "busy_retry"

class SeriesBusy(SchedulingError):
    status_code = 503
    code = "series_busy"
