"""Sync-level exceptions raised by the services layer."""


class SyncError(Exception):
    """Base exception for sync pipeline failures."""

    pass


class CredentialExpiredError(SyncError):
    """No usable token and no way to refresh it.

    Terminal for the current attempt: the connection moves to ``error``
    and the user must reconnect.
    """

    def __init__(self, connection_id: str, reason: str = "credentials expired"):
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"Reconnect required for connection {connection_id}: {reason}")


class ConnectionNotFoundError(SyncError):
    """No connection with this id exists for the tenant."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Connection {connection_id} not found")


class ConnectionNotSyncableError(SyncError):
    """Connection is not ``active`` (pending, error, or revoked)."""

    def __init__(self, connection_id: str, status: str):
        self.connection_id = connection_id
        self.status = status
        super().__init__(
            f"Connection {connection_id} is {status}; reconnect required"
        )


class SyncTimeoutError(SyncError):
    """A pipeline stage exceeded its deadline."""

    def __init__(self, stage: str, seconds: float):
        self.stage = stage
        self.seconds = seconds
        super().__init__(f"{stage} exceeded its {seconds:g}s deadline")


class JobFinalizedError(SyncError):
    """Attempt to change a sync job that already reached a terminal status."""

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Sync job {job_id} is already {status}")
