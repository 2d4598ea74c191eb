class TallyError(Exception):
    """Base class for errors raised by the tally services."""

    code = "TALLY_ERROR"
    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidValueError(TallyError, ValueError):
    code = "INVALID_VALUE"
    status_code = 400


class HistoryEntryNotFound(TallyError):
    code = "HISTORY_ENTRY_NOT_FOUND"
    status_code = 404


class RollbackNotAllowed(TallyError):
    code = "ROLLBACK_NOT_ALLOWED"
    status_code = 400


class RollbackConflict(TallyError):
    """The counter moved on since the history entry was written."""

    code = "ROLLBACK_CONFLICT"
    status_code = 409


class StoreWriteError(TallyError):
    code = "STORE_WRITE_FAILED"
    status_code = 503
