# Copyright (c) 2021 Cisco Systems, Inc. and its affiliates
# All rights reserved.

import datetime
import enum
import logging
import os
import shutil
import threading
import time

from isolateddb.baseinstance import pick_instance
from isolateddb.database import IsolatedDatabase
from isolateddb.exceptions import (
    FileIoError,
    NameCollision,
    NotPreparedError,
    check_cancelled,
)
from isolateddb.executor import SqlExecutor, quote_literal, quote_name
from isolateddb.retrying import perform_with_retry

LOG = logging.getLogger(__name__)

PROVISION_ATTEMPTS = 3
PROVISION_DELAY = 0.1

CREATE_DATABASE_SQL = """
CREATE DATABASE {name}
ON PRIMARY (
    NAME = {logical_name},
    FILENAME = {mdf},
    SIZE = {size}MB,
    FILEGROWTH = {growth}MB
)
LOG ON (
    NAME = {logical_log_name},
    FILENAME = {ldf}
)
"""

ATTACH_DATABASE_SQL = """
CREATE DATABASE {name}
ON (FILENAME = {mdf}),
   (FILENAME = {ldf})
FOR ATTACH
"""

SINGLE_USER_SQL = (
    "ALTER DATABASE {name} SET SINGLE_USER WITH ROLLBACK IMMEDIATE"
)

_tick_lock = threading.Lock()
_last_tick = 0


def next_tick():
    """Return 100ns ticks since the epoch, strictly increasing per process."""
    global _last_tick
    with _tick_lock:
        _last_tick = max(time.time_ns() // 100, _last_tick + 1)
        return _last_tick


class InstanceState(enum.Enum):
    NOT_STARTED = 'not started'
    STARTING = 'starting'
    RUNNING = 'running'
    FAILED = 'failed'


class IsolatedDatabaseManager:
    """Creates isolated databases from a prepared template.

    Call `prepare()` once to build the template: a database whose schema
    is created by a callback, then detached so that its two files can be
    copied. Each `create_isolated_database()` call then attaches a fresh
    copy of those files under a new, unique name and returns an
    IsolatedDatabase handle for it.

    :param settings: IsolatedDatabaseSettings.
    :param instance: The InstanceFixture to run databases on. By default
        one is picked by `pick_instance()`.
    :param executor_class: Factory of SqlExecutor-like objects, called
        with a URL and a `database` keyword.
    :param name_generator: Optional callable returning new database names.
        Defaults to `new_database_name()`.
    """

    def __init__(
        self,
        settings,
        instance=None,
        executor_class=SqlExecutor,
        name_generator=None,
    ):
        self.settings = settings
        self.instance = instance if instance is not None else (
            pick_instance(settings)
        )
        self.executor_class = executor_class
        self.name_generator = name_generator or self.new_database_name
        self.state = InstanceState.NOT_STARTED
        self._state_lock = threading.Lock()

    def initialize(self, cancel=None):
        """Start the engine instance unless it already runs.

        Safe to call from several threads; only one starts the instance.
        After a failed start the next call tries again.
        """
        with self._state_lock:
            if self.state is InstanceState.RUNNING:
                return
            check_cancelled(cancel)
            self.state = InstanceState.STARTING
            try:
                self.instance.setUp()
            except Exception:
                self.state = InstanceState.FAILED
                raise
            self.state = InstanceState.RUNNING

    def url(self, database):
        """Return the URL of `database` on the engine instance."""
        if database == 'master' and self.settings.master_url:
            return self.settings.master_url
        return self.instance.url(database)

    def master(self):
        """Return a handle on the master database."""
        return IsolatedDatabase(self, self.url('master'))

    def new_database_name(self):
        """Return `<name>.<timestamp>.<ticks>`, ticks being 100ns units."""
        now = datetime.datetime.now()
        return f"{self.settings.name}.{now:%Y%m%d%H%M%S}.{next_tick()}"

    def prepare(self, create_schema, cancel=None):
        """Build the template database files.

        Creates an empty database, calls `create_schema(database, cancel)`
        with an IsolatedDatabase handle on it, detaches it and moves its
        files over the template files, replacing any earlier template.
        """
        self.initialize(cancel)
        self.settings.path.ensure_exists()

        database_name = self.name_generator()
        source_mdf, source_ldf = self.settings.files_for(database_name)

        LOG.info("Creating template database %s", database_name)
        self.master().execute_sql(
            CREATE_DATABASE_SQL.format(
                name=quote_name(database_name),
                logical_name=quote_literal(database_name),
                logical_log_name=quote_literal(database_name + '_log'),
                mdf=quote_literal(source_mdf),
                ldf=quote_literal(source_ldf),
                size=self.settings.initial_size_mb,
                growth=self.settings.growth_mb,
            ),
            cancel,
        )

        database = IsolatedDatabase(
            self, self.url(database_name), database_name
        )
        database.wait_until_available(cancel)
        create_schema(database, cancel)

        LOG.debug("Detaching database %s", database_name)
        self.detach(database_name, cancel)

        self._move(source_mdf, self.settings.template_mdf)
        self._move(source_ldf, self.settings.template_ldf)
        LOG.info(
            "Detached database '%s' and copied files to '%s'",
            database_name,
            self.settings.template_mdf,
        )

    def detach(self, database_name, cancel=None):
        """Detach a database, disconnecting everyone still using it."""
        master = self.master()
        master.execute_sql(
            SINGLE_USER_SQL.format(name=quote_name(database_name)), cancel
        )
        master.execute_procedure(
            'master.dbo.sp_detach_db', cancel, dbname=database_name
        )

    def create_isolated_database(self, cancel=None):
        """Attach a copy of the template under a new name.

        Up to three attempts are made; the error of the last one is
        raised.

        :raises NotPreparedError: `prepare()` has not produced the
            template files yet.
        """
        self.initialize(cancel)
        for path in (self.settings.template_mdf, self.settings.template_ldf):
            if not path.exists():
                raise NotPreparedError(
                    f"'{path}' is not yet prepared. Invoke prepare()"
                )
        return perform_with_retry(
            self._attach_copy,
            PROVISION_ATTEMPTS,
            delay=PROVISION_DELAY,
            cancel=cancel,
            fargs=[cancel],
            logger=LOG,
        )

    # Internal methods below here.

    def _attach_copy(self, cancel):
        database_name = self.name_generator()
        target_mdf, target_ldf = self.settings.files_for(database_name)
        if target_mdf.exists() or target_ldf.exists():
            raise NameCollision(
                f"Files for database {database_name} already exist"
            )

        LOG.info("Attaching database %s", database_name)
        created = []
        try:
            self._copy(self.settings.template_mdf, target_mdf, created)
            self._copy(self.settings.template_ldf, target_ldf, created)
            self.master().execute_sql(
                ATTACH_DATABASE_SQL.format(
                    name=quote_name(database_name),
                    mdf=quote_literal(target_mdf),
                    ldf=quote_literal(target_ldf),
                ),
                cancel,
            )
        except Exception:
            self._discard(created)
            raise
        LOG.info("Attached database %s", database_name)

        database = IsolatedDatabase(
            self, self.url(database_name), database_name
        )
        try:
            database.wait_until_available(cancel)
        except Exception:
            self._abandon(database)
            raise
        return database

    def _copy(self, source, target, created):
        # 'x' fails if another process claimed the same name first.
        try:
            with open(source, 'rb') as src:
                with open(target, 'xb') as dst:
                    created.append(target)
                    shutil.copyfileobj(src, dst)
        except FileExistsError as e:
            raise NameCollision(f"'{target}' already exists") from e
        except OSError as e:
            raise FileIoError(
                f"Failed to copy '{source}' to '{target}': {e}",
                path=str(target),
            ) from e

    def _discard(self, paths):
        for path in paths:
            try:
                os.remove(path)
            except OSError as e:
                LOG.warning("Could not remove '%s': %s", path, e)

    def _abandon(self, database):
        try:
            database.drop_and_wait()
        except Exception as e:
            LOG.warning("Could not drop database %s: %s", database.name, e)

    def _move(self, source, target):
        try:
            os.replace(source, target)
        except OSError as e:
            raise FileIoError(
                f"Failed to move '{source}' to '{target}': {e}",
                path=str(target),
            ) from e
