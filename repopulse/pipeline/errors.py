"""
Error taxonomy for the analysis pipeline.

"Busy" is deliberately absent: a held lock is an expected outcome, reported
as a None handle / an in-progress RunHandle rather than raised.
"""


class ProviderError(Exception):
    """The metrics provider could not produce a payload."""

    def __init__(self, message, transient=False, status_code=None):
        self.transient = transient
        self.status_code = status_code
        super().__init__(message)

    @classmethod
    def transient_error(cls, message, status_code=None):
        return cls(message, transient=True, status_code=status_code)

    @classmethod
    def permanent_error(cls, message, status_code=None):
        return cls(message, transient=False, status_code=status_code)


class LockLost(Exception):
    """The run's lease expired or was reclaimed by a newer run."""

    def __init__(self, repository, run_id=None):
        self.repository = repository
        self.run_id = run_id
        super().__init__(f"Lock for '{repository}' is no longer held by run {run_id}")


class LockUnavailableError(Exception):
    """Lock storage is unreachable. Transient — retry later, never run unlocked."""


class StoreConflict(Exception):
    """Optimistic-concurrency check failed on a run update."""

    def __init__(self, run_id, reason=''):
        self.run_id = run_id
        self.reason = reason
        message = f"Conflicting update on run {run_id}"
        if reason:
            message += f": {reason}"
        super().__init__(message)

