# Copyright (c) 2021 Cisco Systems, Inc. and its affiliates
# All rights reserved.

import abc
import importlib
import logging
import os
import pkgutil
import time

import fixtures
import sqlalchemy as sa

from isolateddb.exceptions import InstanceCollisionError, StartupError
from isolateddb.retrying import perform_with_retry

LOG = logging.getLogger(__name__)

# Retries after the first attempt, so four attempts in total.
MAX_COLLISION_RETRIES = 3


class InstanceFixture(fixtures.Fixture, metaclass=abc.ABCMeta):
    """Base class for engine instance fixtures.

    Fixtures are responsible for making sure a named SQL Server instance
    exists and is running, and for telling callers how to connect to any
    database on it. Setting the fixture up is idempotent at the engine
    level: an instance that already exists is reused, one that is already
    running stays running.

    Instance names are shared between processes. If two processes try to
    create the same instance at once, the loser's `get_or_create` raises
    InstanceCollisionError and is simply tried again, since the instance
    now exists.

    :param settings: IsolatedDatabaseSettings; `instance_name` names the
        instance.
    """

    def __init__(self, settings):
        super().__init__()
        self.settings = settings
        self.name = settings.instance_name

    def setUp(self):
        """Get or create the instance, then start it."""
        super().setUp()
        started = time.monotonic()
        LOG.info("Initializing db instance: '%s'", self.name)
        attempts = MAX_COLLISION_RETRIES + 1
        try:
            perform_with_retry(
                self.get_or_create,
                attempts,
                exceptions=InstanceCollisionError,
                logger=LOG,
            )
        except InstanceCollisionError as e:
            raise StartupError(
                f"Failed to get db instance: '{self.name}' after: "
                f"{attempts} attempts"
            ) from e
        self.start()
        LOG.info(
            "instance: '%s' initialized. It took: %.3fs",
            self.name,
            time.monotonic() - started,
        )

    @abc.abstractmethod
    def get_or_create(self):
        """Make sure the instance exists.

        :raises InstanceCollisionError: creation lost a race with another
            process creating the same instance.
        :raises StartupError: any other failure.
        """
        pass

    @abc.abstractmethod
    def start(self):
        """Start the instance; a no-op if it is already running."""
        pass

    @abc.abstractmethod
    def url(self, database) -> sa.engine.URL:
        """Return the SQLAlchemy URL of `database` on this instance."""
        pass


def pick_instance(settings, **kwargs):
    """Instantiate the instance fixture named in `settings`.

    The class is searched for in the modules under isolateddb.instances.
    The TEST_INSTANCE_FIXTURE environment variable, when set, overrides
    `settings.instance_fixture`.

    :raises AttributeError: no such class.
    """
    fixture_name = os.environ.get(
        'TEST_INSTANCE_FIXTURE', settings.instance_fixture
    )
    import isolateddb.instances

    for _, module, _ in pkgutil.iter_modules(isolateddb.instances.__path__):
        mod = importlib.import_module(f'isolateddb.instances.{module}')

        for name, obj in mod.__dict__.items():
            if name == fixture_name:
                return obj(settings, **kwargs)
    raise AttributeError(f'{fixture_name} not found')
