# Copyright (c) 2021 Cisco Systems, Inc. and its affiliates
# All rights reserved.

import importlib
import sys

import fixtures
import sqlalchemy as sa
import sqlalchemy.orm  # noqa: F401
import testresources

from isolateddb.baseinstance import pick_instance
from isolateddb.manager import IsolatedDatabaseManager
from isolateddb.settings import IsolatedDatabaseSettings

models_loaded = False


class DatabaseResource(testresources.TestResourceManager):
    """Test resource that prepares a template database.

    This resource is intended to be used as a testresource, such that it is
    created only once per process: the template database is built once,
    and each test then gets its own copy through an
    IsolatedDatabaseFixture. Because every test has a database of its own,
    this is safe to use for tests that run in parallel threads.

    The schema is either created by a `create_schema` callable, or from
    SQLAlchemy models.

    :param name: The system name, used for the template files and as the
        prefix of every database name.

    :param ModelBase: The SQLAlchemy ModelBase that your database objects are
        using. Its tables are created in the template database.

    :param models_module: The python module name that contains your SQLAlchemy
        models. The models will be imported at the right moment when
        building the template.
        e.g. 'myproject.schema.models'

    :param create_schema: A callable taking an IsolatedDatabase and a
        cancel event, used instead of ModelBase to create the schema.

    :param settings_kwargs: A dict of kwargs for IsolatedDatabaseSettings,
        on top of what the ISOLATEDDB_* environment variables set.

    :param instance_kwargs: A dict of kwargs to pass to the instance
        fixture when it is instantiated.
    """

    def __init__(
        self,
        name,
        ModelBase=None,
        models_module=None,  # NOSONAR
        create_schema=None,
        settings_kwargs=None,
        instance_kwargs=None,
    ):
        super().__init__()
        if create_schema is None and ModelBase is None:
            raise ValueError("Need either ModelBase or create_schema")
        self.name = name
        self.ModelBase = ModelBase
        self.models_module = models_module
        self.create_schema = create_schema
        self.settings_kwargs = settings_kwargs or {}
        self.instance_kwargs = instance_kwargs or {}

    def make(self, dep_resources):
        print("Creating new database resource...", file=sys.stderr)
        settings = IsolatedDatabaseSettings.from_environ(
            self.name, **self.settings_kwargs
        )
        self.manager = self.make_manager(settings)
        self.manager.prepare(self.create_schema or self.create_tables)
        return self

    def make_manager(self, settings):
        instance = pick_instance(settings, **self.instance_kwargs)
        return IsolatedDatabaseManager(settings, instance=instance)

    def _reset(self, resource, dependency_resources):
        # Override the base class to deliberately no-op. Tests never touch
        # the template, so no resets are necessary.
        return self

    def clean(self, resource):
        print("Cleaning up database resource...", file=sys.stderr)
        self.manager.instance.cleanUp()

    def create_isolated_database(self, cancel=None):
        return self.manager.create_isolated_database(cancel)

    def _load_models(self):
        importlib.import_module(self.models_module)

    def load_models(self):
        """Load DB models just once, across all threads."""
        global models_loaded
        if models_loaded is False and self.models_module is not None:
            models_loaded = True
            self._load_models()

    def create_tables(self, database, cancel=None):
        self.load_models()
        metadata = self.ModelBase.metadata
        metadata.create_all(bind=database.engine)


class IsolatedDatabaseFixture(fixtures.Fixture):
    """Test fixture that provides a database of its own.

    The database is attached from the template in setUp, and dropped
    when the fixture is cleaned up.

    :param source: An initialised DatabaseResource, or an
        IsolatedDatabaseManager with a prepared template.
    :param wait_for_drop: If true (the default), cleanup blocks until the
        database is detached and its files are deleted. If false, the drop
        runs in the background and failures are only logged.
    """

    def __init__(self, source, wait_for_drop=True):
        super().__init__()
        self.source = source
        self.wait_for_drop = wait_for_drop

    def setUp(self):
        super().setUp()
        self.database = self.source.create_isolated_database()
        if self.wait_for_drop:
            self.addCleanup(self.database.drop_and_wait)
        else:
            self.addCleanup(self.database.schedule_drop)

    @property
    def engine(self):
        """Return the Engine of the isolated database."""
        return self.database.engine

    @property
    def url(self):
        return self.database.url

    def connect(self):
        """Get a connection object to the isolated database."""
        return self.database.connect()


class SessionFixture(fixtures.Fixture):
    """Test fixture that sets up a database session.

    The session is closed at the end of the fixture's lifespan. There is
    nothing to roll back: the database it is bound to belongs to a single
    test and is dropped afterwards.

    :param database_fixture: An IsolatedDatabaseFixture that has been set
        up.
    :param debug: If true, send all DB statements emitted to the log.
    """

    def __init__(self, database_fixture, debug=False):
        super().__init__()
        self.database = database_fixture
        self.debug = debug

    def setUp(self):
        super().setUp()
        engine = self.database.engine
        if self.debug:
            engine.echo = True
        self.session = sa.orm.Session(bind=engine)
        self.addCleanup(self.session.close)
