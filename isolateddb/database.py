# Copyright (c) 2021 Cisco Systems, Inc. and its affiliates
# All rights reserved.

import contextlib
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor

from isolateddb.exceptions import FileIoError, InvalidHandleStateError
from isolateddb.executor import quote_literal, quote_name
from isolateddb.retrying import perform_with_retry

LOG = logging.getLogger(__name__)

DROP_ATTEMPTS = 4
DROP_DELAY = 0.1

DETACH_IF_EXISTS_SQL = """
IF EXISTS (SELECT name FROM sys.databases WHERE name = {literal})
BEGIN
    ALTER DATABASE {name} SET SINGLE_USER WITH ROLLBACK IMMEDIATE;
    EXEC master.dbo.sp_detach_db @dbname = {literal};
END
"""

_drop_pool = None
_drop_pool_lock = threading.Lock()


def drop_pool():
    """Return the thread pool that runs scheduled drops."""
    global _drop_pool
    with _drop_pool_lock:
        if _drop_pool is None:
            _drop_pool = ThreadPoolExecutor(
                max_workers=4, thread_name_prefix='isolateddb-drop'
            )
        return _drop_pool


def _remove_file(path):
    # Deleting a file that is already gone is a success.
    with contextlib.suppress(FileNotFoundError):
        os.remove(path)


class IsolatedDatabase:
    """A handle on one database created by an IsolatedDatabaseManager.

    The handle is owned by the caller, who is responsible for dropping
    it: explicitly with `drop_and_wait()` or `schedule_drop()`, or by
    using it as a context manager. The manager keeps no record of the
    databases it hands out.

    :param manager: The IsolatedDatabaseManager that created the database.
    :param url: SQLAlchemy URL of the database.
    :param name: The database name. The master database handle has no
        name and can't be dropped.
    """

    def __init__(self, manager, url, name=None):
        self.manager = manager
        self.url = url
        self.name = name
        self._executor = None
        self._dropped = False
        self._lock = threading.Lock()

    def __repr__(self):
        return f'<IsolatedDatabase name={self.name!r}>'

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.drop_and_wait()

    @property
    def dropped(self):
        return self._dropped

    @property
    def executor(self):
        """The SqlExecutor bound to this database."""
        if self._executor is None:
            self._executor = self.manager.executor_class(
                self.url, database=self.name or 'master'
            )
        return self._executor

    @property
    def engine(self):
        """A SQLAlchemy engine for this database.

        Its connections are not pooled, so none are left open to get in
        the way of dropping the database.
        """
        return self.executor.engine

    def connect(self):
        """Return a new connection object from the engine."""
        return self.engine.connect()

    def execute_sql(self, script, cancel=None):
        """Run a GO-separated SQL script against this database."""
        self.executor.execute(script, cancel)

    def execute_procedure(self, name, cancel=None, **params):
        self.executor.execute_procedure(name, cancel, **params)

    def wait_until_available(self, cancel=None):
        self.executor.wait_until_available(cancel)

    def drop(self, cancel=None):
        """Detach the database and delete its files.

        Once a drop has succeeded, later calls do nothing. A drop that
        failed or was cancelled can be called again. The detach and each
        file deletion are retried a few times, since a lingering
        connection or a virus scanner can hold on to them briefly.

        :raises InvalidHandleStateError: the handle has no database name.
        :raises FileIoError: a file could not be deleted.
        """
        self._check_droppable()
        with self._lock:
            if self._dropped:
                return
            self._drop(cancel)
            self._dropped = True

    def drop_and_wait(self, cancel=None):
        """Drop the database, returning when it is fully gone.

        Failures propagate to the caller.
        """
        self.drop(cancel)

    def schedule_drop(self, cancel=None):
        """Drop the database in the background and return immediately.

        A failure is logged and never raised here. The returned
        concurrent.futures.Future can be waited on if the outcome matters.
        """
        self._check_droppable()
        future = drop_pool().submit(self.drop, cancel)
        future.add_done_callback(self._log_drop_failure)
        return future

    # Internal methods below here.

    def _drop(self, cancel):
        LOG.info("Db -> Deleting database %s", self.name)
        literal = quote_literal(self.name)
        script = DETACH_IF_EXISTS_SQL.format(
            name=quote_name(self.name), literal=literal
        )
        master = self.manager.master()
        perform_with_retry(
            master.execute_sql,
            DROP_ATTEMPTS,
            delay=DROP_DELAY,
            cancel=cancel,
            fargs=[script],
            fkwargs=dict(cancel=cancel),
        )
        for path in self.manager.settings.files_for(self.name):
            self._delete_file(path, cancel)
        LOG.info("Db -> Deleted database %s", self.name)

    def _check_droppable(self):
        if self.name is None:
            raise InvalidHandleStateError(
                "Cannot drop database when name is null"
            )

    def _log_drop_failure(self, future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            LOG.error(
                "Background drop of database %s failed",
                self.name,
                exc_info=error,
            )

    def _delete_file(self, path, cancel):
        try:
            perform_with_retry(
                _remove_file,
                DROP_ATTEMPTS,
                delay=DROP_DELAY,
                exceptions=OSError,
                cancel=cancel,
                fargs=[path],
            )
        except OSError as e:
            raise FileIoError(
                f"Failed to delete '{path}': {e}", path=str(path)
            ) from e
