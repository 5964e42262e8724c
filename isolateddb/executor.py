# Copyright (c) 2021 Cisco Systems, Inc. and its affiliates
# All rights reserved.

import contextlib
import logging
import re

import sqlalchemy as sa
from sqlalchemy.pool import NullPool

from isolateddb.exceptions import (
    AvailabilityTimeoutError,
    OperationCancelled,
    SqlExecutionError,
    check_cancelled,
)
from isolateddb.retrying import perform_with_retry

LOG = logging.getLogger(__name__)

# A batch separator is the word GO alone on its line, any case.
BATCH_SEPARATOR = re.compile(
    r'^[ \t]*go[ \t\r]*$', re.IGNORECASE | re.MULTILINE
)

AVAILABILITY_ATTEMPTS = 4
AVAILABILITY_DELAY = 0.5


def split_batches(script):
    """Split a script into statements on GO lines, dropping empty ones."""
    statements = (s.strip() for s in BATCH_SEPARATOR.split(script))
    return [s for s in statements if s]


def quote_name(name):
    """Quote `name` as a bracketed SQL Server identifier."""
    return '[' + name.replace(']', ']]') + ']'


def quote_literal(value):
    """Quote `value` as an N'' SQL Server string literal."""
    return "N'" + str(value).replace("'", "''") + "'"


class SqlExecutor:
    """Run scripts and administrative commands against one database.

    The engine uses a NullPool so that closing a connection really closes
    it; a pooled connection would keep the database in use and block
    detaching it. Statements run in autocommit mode because SQL Server
    refuses CREATE/ALTER DATABASE inside a transaction.

    :param url: SQLAlchemy URL (or string) of the target database.
    :param database: Optional database name, used in log and error
        messages when it cannot be read from the URL.
    """

    def __init__(self, url, database=None):
        self.url = url
        self.engine = sa.create_engine(
            url, poolclass=NullPool, isolation_level='AUTOCOMMIT'
        )
        self.database = database or self.engine.url.database

    def __repr__(self):
        return f'<SqlExecutor database={self.database!r}>'

    def execute(self, script, cancel=None):
        """Execute each GO-separated statement of `script` in order.

        The first failing statement aborts the rest of the script.

        :raises SqlExecutionError: connecting or a statement failed.
        :raises OperationCancelled: `cancel` was set.
        """
        statements = split_batches(script)
        check_cancelled(cancel)
        with self._cursor() as cursor:
            for statement in statements:
                check_cancelled(cancel)
                self._run(cursor, statement)

    def execute_procedure(self, name, cancel=None, **params):
        """Call the stored procedure `name` with named parameters."""
        assignments = ', '.join(f'@{key} = ?' for key in params)
        statement = f'EXEC {name} {assignments}'.rstrip()
        check_cancelled(cancel)
        with self._cursor() as cursor:
            self._run(cursor, statement, tuple(params.values()))

    def wait_until_available(
        self, cancel=None, attempts=AVAILABILITY_ATTEMPTS,
        delay=AVAILABILITY_DELAY,
    ):
        """Open and close a connection until one succeeds.

        A database that was just created or attached can refuse
        connections for a short while.

        :raises AvailabilityTimeoutError: all attempts failed.
        """
        try:
            perform_with_retry(
                self._ping,
                attempts,
                delay=delay,
                exceptions=sa.exc.DBAPIError,
                cancel=cancel,
                logger=LOG,
            )
        except OperationCancelled:
            raise
        except sa.exc.DBAPIError as e:
            LOG.error("Error connecting to database %s", self.database)
            raise AvailabilityTimeoutError(
                f"Database {self.database!r} not available after "
                f"{attempts} attempts: {e}"
            ) from e

    # Internal methods below here.

    def _ping(self):
        with self.engine.connect():
            pass

    @contextlib.contextmanager
    def _cursor(self):
        try:
            connection = self.engine.connect()
        except sa.exc.DBAPIError as e:
            raise SqlExecutionError(
                f"Could not connect to database {self.database!r}: {e}",
                database=self.database,
            ) from e
        try:
            cursor = connection.connection.cursor()
            try:
                yield cursor
            finally:
                cursor.close()
        finally:
            connection.close()

    def _run(self, cursor, statement, params=()):
        LOG.debug("db ==> execute script %s", statement)
        dbapi_error = self.engine.dialect.loaded_dbapi.Error
        try:
            if params:
                cursor.execute(statement, params)
            else:
                cursor.execute(statement)
            self._drain(cursor)
        except dbapi_error as e:
            raise SqlExecutionError(
                f"Statement failed on database {self.database!r}: {e}",
                database=self.database,
                statement=statement,
            ) from e
        LOG.debug("db ==> finished script %s", statement)

    def _drain(self, cursor):
        # SQL Server runs the rest of a batch only as its result sets are
        # consumed, and reports errors in later statements the same way.
        self._log_messages(cursor)
        nextset = getattr(cursor, 'nextset', None)
        while nextset is not None and nextset():
            self._log_messages(cursor)

    def _log_messages(self, cursor):
        for message in getattr(cursor, 'messages', None) or ():
            LOG.debug(
                "db ==> msg: %s from %s", message[-1], self.database
            )
