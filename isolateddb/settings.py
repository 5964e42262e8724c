# Copyright (c) 2021 Cisco Systems, Inc. and its affiliates
# All rights reserved.

import dataclasses
import os
import re
import typing

from isolateddb.paths import RootedPath

DEFAULT_INSTANCE_NAME = 'isolated-db'
DEFAULT_ODBC_DRIVER = 'ODBC Driver 18 for SQL Server'
DEFAULT_INSTANCE_FIXTURE = 'LocalDbInstance'

# Must be usable as a file name and inside a [bracketed] identifier.
_NAME_RE = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.\-]*$')

_ENVIRON_FIELDS = {
    'ISOLATEDDB_PATH': 'path',
    'ISOLATEDDB_INSTANCE_NAME': 'instance_name',
    'ISOLATEDDB_MASTER_URL': 'master_url',
    'ISOLATEDDB_ODBC_DRIVER': 'odbc_driver',
}


@dataclasses.dataclass(frozen=True)
class IsolatedDatabaseSettings:
    """Configuration shared by a manager and every database it creates.

    :param name: The system name. Names the template files
        (`<name>.mdf`, `<name>_log.ldf`) and prefixes every generated
        database name.
    :param path: Absolute directory holding the template and all
        isolated database files. Defaults to `<tempdir>/<name>`.
    :param instance_name: Name of the engine instance to start and use.
    :param master_url: Optional SQLAlchemy URL of the master database. If
        not given, it is derived from the engine instance.
    :param initial_size_mb: Initial size of the template's primary file.
    :param growth_mb: File growth increment of the template's primary file.
    :param odbc_driver: ODBC driver name used in generated URLs.
    :param instance_fixture: Name of the instance fixture class to use,
        e.g. 'LocalDbInstance' or 'SqlServerContainerInstance'.
        NOTE: This can be overridden by setting the TEST_INSTANCE_FIXTURE
        environment variable.
    """

    name: str
    path: typing.Optional[RootedPath] = None
    instance_name: str = DEFAULT_INSTANCE_NAME
    master_url: typing.Optional[str] = None
    initial_size_mb: int = 1
    growth_mb: int = 1
    odbc_driver: str = DEFAULT_ODBC_DRIVER
    instance_fixture: str = DEFAULT_INSTANCE_FIXTURE

    def __post_init__(self):
        if not self.name or not _NAME_RE.match(self.name):
            raise ValueError(
                f"Invalid database name {self.name!r}: use letters, digits, "
                "'_', '.' and '-' only"
            )
        if self.path is None:
            path = RootedPath.temp(self.name)
        elif isinstance(self.path, RootedPath):
            path = self.path
        else:
            path = RootedPath(self.path)
        # Frozen dataclass; coerce in place.
        object.__setattr__(self, 'path', path)
        for field in ('initial_size_mb', 'growth_mb'):
            value = getattr(self, field)
            if not isinstance(value, int) or value < 1:
                raise ValueError(f"{field} must be a positive integer")

    @classmethod
    def from_environ(cls, name, environ=None, **overrides):
        """Build settings from ISOLATEDDB_* environment variables.

        Keyword overrides take precedence over the environment.
        """
        environ = os.environ if environ is None else environ
        kwargs = {
            field: environ[var]
            for var, field in _ENVIRON_FIELDS.items()
            if environ.get(var)
        }
        kwargs.update(overrides)
        return cls(name, **kwargs)

    def files_for(self, database_name):
        """Return the (mdf, ldf) paths used for `database_name`."""
        return (
            self.path.concat(database_name + '.mdf'),
            self.path.concat(database_name + '_log.ldf'),
        )

    @property
    def template_mdf(self):
        return self.files_for(self.name)[0]

    @property
    def template_ldf(self):
        return self.files_for(self.name)[1]
