# Copyright (c) 2021 Cisco Systems, Inc. and its affiliates
# All rights reserved.


class IsolatedDbError(Exception):
    """Base class for all errors raised by isolateddb."""


class StartupError(IsolatedDbError):
    """The engine instance could not be obtained or started."""


class InstanceCollisionError(IsolatedDbError):
    """Another process created the same-named instance concurrently.

    Raised by instance fixtures from `get_or_create` and retried by the
    starter; it only escapes wrapped in a StartupError.
    """


class NotPreparedError(IsolatedDbError, FileNotFoundError):
    """A database was requested before the template files were prepared."""


class NameCollision(IsolatedDbError):
    """Files for a freshly generated database name already exist."""


class SqlExecutionError(IsolatedDbError):
    """A statement failed; the rest of its script was not executed."""

    def __init__(self, message, database=None, statement=None):
        super().__init__(message)
        self.database = database
        self.statement = statement


class AvailabilityTimeoutError(IsolatedDbError):
    """A database did not accept connections within the attempt budget."""


class FileIoError(IsolatedDbError, OSError):
    """Copying, moving or deleting a database file failed."""

    def __init__(self, message, path=None):
        super().__init__(message)
        self.path = path


class InvalidHandleStateError(IsolatedDbError):
    """The operation is not valid for this database handle."""


class OperationCancelled(IsolatedDbError):
    """The caller cancelled the operation."""


def check_cancelled(cancel):
    """Raise OperationCancelled if the `cancel` event has been set."""
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Operation cancelled")
