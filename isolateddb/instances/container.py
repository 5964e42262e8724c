# Copyright (c) 2021 Cisco Systems, Inc. and its affiliates
# All rights reserved.

import socket
import sys
from contextlib import closing

import docker
import sqlalchemy as sa
from retry import retry
from sqlalchemy.pool import NullPool

from isolateddb.baseinstance import InstanceFixture
from isolateddb.exceptions import InstanceCollisionError, StartupError

DEFAULT_SA_PASSWORD = 'Isolated-db-1'  # nosec
MSSQL_PORT = '1433/tcp'


class SqlServerContainerInstance(InstanceFixture):
    """A SQL Server Docker-based engine instance.

    The container is named after `settings.instance_name` and is shared
    by every process using that name; it is left running on cleanup
    unless `remove_on_cleanup` is set.

    The storage directory is bind-mounted at the same absolute path
    inside the container, so file names in CREATE DATABASE statements
    mean the same thing to the server and to this process. The server
    runs as root so it can read files copied in by this process.

    :param settings: IsolatedDatabaseSettings.
    :param image: Name of the SQL Server docker image to pull and use.
    :param sa_password: Password of the `sa` login.
    :param remove_on_cleanup: Kill the container when the fixture is
        cleaned up.
    """

    def __init__(
        self,
        settings,
        image='mcr.microsoft.com/mssql/server:2022-latest',
        sa_password=DEFAULT_SA_PASSWORD,
        remove_on_cleanup=False,
    ):
        super().__init__(settings)
        self.image = image
        self.sa_password = sa_password
        self.remove_on_cleanup = remove_on_cleanup
        self.container = None
        self.local_port = None

    def url(self, database):
        return sa.engine.URL.create(
            'mssql+pyodbc',
            username='sa',
            password=self.sa_password,
            host='127.0.0.1',
            port=self.local_port,
            database=database,
            query={
                'driver': self.settings.odbc_driver,
                'TrustServerCertificate': 'yes',
            },
        )

    # Internal methods below here.

    def setUp(self):
        self.client = docker.from_env()
        super().setUp()
        if self.remove_on_cleanup:
            self.addCleanup(self.container.kill)

    def get_or_create(self):
        storage = str(self.settings.path.ensure_exists())
        try:
            container = self.client.containers.get(self.name)
        except docker.errors.NotFound:
            pass
        else:
            self.check_storage_mounted(container, storage)
            self.container = container
            return
        self.pull_image()
        self.find_free_port()
        print("Creating SQL Server container ...", file=sys.stderr)
        try:
            self.container = self.client.containers.create(
                self.image,
                environment=dict(
                    ACCEPT_EULA='Y', MSSQL_SA_PASSWORD=self.sa_password
                ),
                name=self.name,
                network_mode='bridge',
                ports={MSSQL_PORT: self.local_port},
                user='root',
                volumes={storage: {'bind': storage, 'mode': 'rw'}},
            )
        except docker.errors.APIError as e:
            if e.status_code == 409 and self.name in str(e):
                raise InstanceCollisionError(str(e)) from e
            raise StartupError(
                f"Failed to create container '{self.name}': {e}"
            ) from e

    def start(self):
        self.container.reload()
        if self.container.status != 'running':
            print("Starting SQL Server container ...", file=sys.stderr)
            self.container.start()
            self.container.reload()
        self.local_port = self.published_port()
        self.wait_for_server_start()

    def pull_image(self):
        try:
            self.client.images.get(self.image)
        except docker.errors.ImageNotFound:
            print("Pulling SQL Server image ...", file=sys.stderr)
            self.client.images.pull(self.image)

    def check_storage_mounted(self, container, storage):
        """Make sure an existing container sees `storage` at its own path.

        Database file names are sent to the server as they are here, so
        a container created for another storage directory can't use them.
        """
        for mount in container.attrs.get('Mounts') or ():
            if mount.get('Destination') == storage:
                return
        raise StartupError(
            f"Container '{self.name}' does not mount '{storage}'. Remove "
            "it or use another instance name."
        )

    def published_port(self):
        bindings = self.container.attrs['NetworkSettings']['Ports']
        mapping = bindings.get(MSSQL_PORT)
        if not mapping:
            raise StartupError(
                f"Container '{self.name}' does not publish {MSSQL_PORT}"
            )
        return int(mapping[0]['HostPort'])

    def find_free_port(self):
        """Find a free port on which to run SQL Server locally."""
        # This initially binds to port 0, which makes the kernel pick a
        # real free port. We close the socket after determining which port
        # that was.
        with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
            s.bind(('localhost', 0))
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.local_port = s.getsockname()[1]
            print("Using port {}".format(self.local_port), file=sys.stderr)

    @retry(sa.exc.DBAPIError, tries=60, delay=1)
    def wait_for_server_start(self):
        engine = sa.create_engine(self.url('master'), poolclass=NullPool)
        try:
            with engine.connect():
                pass
        finally:
            engine.dispose()
        print("SQL Server is up", file=sys.stderr)
