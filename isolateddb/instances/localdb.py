# Copyright (c) 2021 Cisco Systems, Inc. and its affiliates
# All rights reserved.

import logging
import subprocess  # nosec

import sqlalchemy as sa

from isolateddb.baseinstance import InstanceFixture
from isolateddb.exceptions import InstanceCollisionError, StartupError

LOG = logging.getLogger(__name__)


class LocalDbInstance(InstanceFixture):
    """A SQL Server Express LocalDB instance.

    Instances are managed with the SqlLocalDB command line tool, which
    must be on the PATH (or passed as `executable`). Connections use
    Windows integrated authentication.

    :param settings: IsolatedDatabaseSettings.
    :param executable: The SqlLocalDB program to run.
    """

    def __init__(self, settings, executable='SqlLocalDB'):
        super().__init__(settings)
        self.executable = executable

    def get_or_create(self):
        if self.name in self.list_instances():
            return
        LOG.info("Creating LocalDB instance '%s'", self.name)
        result = self._call('create', self.name)
        if result.returncode == 0:
            return
        output = (result.stdout + result.stderr).strip()
        # The instance appeared between listing and creating it.
        if self.name in output:
            raise InstanceCollisionError(output)
        raise StartupError(
            f"Failed to create LocalDB instance '{self.name}': {output}"
        )

    def start(self):
        self._run('start', self.name)

    def list_instances(self):
        """Return the names of all LocalDB instances of this user."""
        output = self._run('info')
        return [line.strip() for line in output.splitlines() if line.strip()]

    def url(self, database):
        odbc = (
            f'Driver={{{self.settings.odbc_driver}}};'
            f'Server=(localdb)\\{self.name};'
            f'Database={database};'
            'Trusted_Connection=yes;'
            'TrustServerCertificate=yes;'
        )
        return sa.engine.URL.create(
            'mssql+pyodbc', query={'odbc_connect': odbc}
        )

    # Internal methods below here.

    def _call(self, *args):
        try:
            return subprocess.run(  # nosec
                [self.executable, *args],
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise StartupError(
                f"Cannot run {self.executable}: {e}"
            ) from e

    def _run(self, *args):
        result = self._call(*args)
        if result.returncode != 0:
            raise StartupError(
                f"{self.executable} {' '.join(args)} failed: "
                f"{(result.stdout + result.stderr).strip()}"
            )
        return result.stdout
