from unittest import mock

import docker
import fixtures
import testtools

from isolateddb.exceptions import InstanceCollisionError, StartupError
from isolateddb.instances.container import SqlServerContainerInstance
from isolateddb.settings import IsolatedDatabaseSettings


class TestSqlServerContainerInstance(testtools.TestCase):
    """Test the container instance against a mocked Docker client."""

    def setUp(self):
        super().setUp()
        self.root = self.useFixture(fixtures.TempDir()).path
        self.settings = IsolatedDatabaseSettings(
            'orders_test', path=self.root, instance_name='ci-db'
        )
        self.instance = SqlServerContainerInstance(self.settings)
        self.instance.client = mock.Mock()
        self.containers = self.instance.client.containers
        self.useFixture(
            fixtures.MockPatchObject(self.instance, 'find_free_port')
        )
        self.instance.local_port = 14330

    def existing(self, destination):
        container = mock.Mock()
        container.attrs = {
            'Mounts': [
                {
                    'Type': 'bind',
                    'Source': destination,
                    'Destination': destination,
                    'RW': True,
                }
            ]
        }
        self.containers.get.return_value = container
        return container

    def test_existing_container_is_reused(self):
        existing = self.existing(self.root)
        self.instance.get_or_create()
        self.assertIs(existing, self.instance.container)
        self.containers.create.assert_not_called()

    def test_existing_container_without_storage(self):
        self.existing('/srv/other-storage')
        e = self.assertRaises(StartupError, self.instance.get_or_create)
        self.assertIn(self.root, str(e))
        self.assertIsNone(self.instance.container)
        self.containers.create.assert_not_called()

    def test_existing_container_without_mounts(self):
        self.containers.get.return_value.attrs = {'Mounts': []}
        self.assertRaises(StartupError, self.instance.get_or_create)

    def test_missing_container_is_created(self):
        self.containers.get.side_effect = docker.errors.NotFound('ci-db')
        self.instance.get_or_create()
        self.containers.create.assert_called_once()
        kwargs = self.containers.create.call_args.kwargs
        self.assertEqual('ci-db', kwargs['name'])
        self.assertEqual({'1433/tcp': 14330}, kwargs['ports'])
        self.assertEqual(
            {self.root: {'bind': self.root, 'mode': 'rw'}},
            kwargs['volumes'],
        )
        self.assertEqual('Y', kwargs['environment']['ACCEPT_EULA'])

    def test_name_conflict_is_a_collision(self):
        self.containers.get.side_effect = docker.errors.NotFound('ci-db')
        self.containers.create.side_effect = docker.errors.APIError(
            'Conflict',
            response=mock.Mock(status_code=409),
            explanation='The container name "/ci-db" is already in use',
        )
        self.assertRaises(
            InstanceCollisionError, self.instance.get_or_create
        )

    def test_other_api_error(self):
        self.containers.get.side_effect = docker.errors.NotFound('ci-db')
        self.containers.create.side_effect = docker.errors.APIError(
            'Server error',
            response=mock.Mock(status_code=500),
            explanation='no space left on device',
        )
        e = self.assertRaises(StartupError, self.instance.get_or_create)
        self.assertIn('no space left', str(e))

    def test_start_reads_published_port(self):
        container = mock.Mock(status='exited')
        container.attrs = {
            'NetworkSettings': {
                'Ports': {'1433/tcp': [{'HostIp': '', 'HostPort': '41433'}]}
            }
        }
        self.instance.container = container
        wait = self.useFixture(
            fixtures.MockPatchObject(self.instance, 'wait_for_server_start')
        ).mock
        self.instance.start()
        container.start.assert_called_once_with()
        self.assertEqual(41433, self.instance.local_port)
        wait.assert_called_once_with()

    def test_running_container_is_not_restarted(self):
        container = mock.Mock(status='running')
        container.attrs = {
            'NetworkSettings': {
                'Ports': {'1433/tcp': [{'HostIp': '', 'HostPort': '41433'}]}
            }
        }
        self.instance.container = container
        self.useFixture(
            fixtures.MockPatchObject(self.instance, 'wait_for_server_start')
        )
        self.instance.start()
        container.start.assert_not_called()

    def test_unpublished_port(self):
        container = mock.Mock(status='running')
        container.attrs = {'NetworkSettings': {'Ports': {}}}
        self.instance.container = container
        self.assertRaises(StartupError, self.instance.start)

    def test_url(self):
        url = self.instance.url('orders_test.1.2')
        self.assertEqual('mssql+pyodbc', url.drivername)
        self.assertEqual('sa', url.username)
        self.assertEqual(14330, url.port)
        self.assertEqual('orders_test.1.2', url.database)
        self.assertEqual(
            'ODBC Driver 18 for SQL Server', url.query['driver']
        )
