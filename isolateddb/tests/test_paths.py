import os

import fixtures
import testtools

from isolateddb.paths import RelativePath, RootedPath


class TestRootedPath(testtools.TestCase):
    def setUp(self):
        super().setUp()
        self.root = self.useFixture(fixtures.TempDir()).path

    def test_rejects_relative_path(self):
        self.assertRaises(ValueError, RootedPath, 'some/where')

    def test_concat(self):
        path = RootedPath(self.root).concat('db.mdf')
        self.assertEqual(os.path.join(self.root, 'db.mdf'), str(path))
        self.assertIsInstance(path, RootedPath)

    def test_concat_rejects_rooted_right_side(self):
        e = self.assertRaises(
            ValueError, RootedPath(self.root).concat, self.root
        )
        self.assertIn("Can't concatenate", str(e))

    def test_add_relative(self):
        path = RootedPath(self.root) + RelativePath('a/b')
        self.assertEqual(os.path.join(self.root, 'a', 'b'), os.fspath(path))

    def test_ensure_exists_creates_directories(self):
        path = RootedPath(self.root).concat(os.path.join('x', 'y'))
        self.assertFalse(path.exists())
        self.assertIs(path, path.ensure_exists())
        self.assertTrue(os.path.isdir(str(path)))
        # Again, for an existing directory.
        path.ensure_exists()

    def test_temp(self):
        path = RootedPath.temp('orders_test')
        self.assertEqual('orders_test', os.path.basename(str(path)))
        self.assertTrue(os.path.isabs(str(path)))

    def test_equality(self):
        self.assertEqual(RootedPath(self.root), RootedPath(self.root))
        self.assertEqual(
            {RootedPath(self.root)},
            {RootedPath(self.root), RootedPath(self.root)},
        )


class TestRelativePath(testtools.TestCase):
    def test_rejects_rooted_path(self):
        e = self.assertRaises(ValueError, RelativePath, os.path.abspath('x'))
        self.assertIn('is rooted', str(e))

    def test_concat(self):
        path = RelativePath('a').concat('b')
        self.assertEqual(os.path.join('a', 'b'), str(path))

    def test_full(self):
        self.assertEqual(
            RootedPath(os.path.abspath('a')), RelativePath('a').full()
        )


class TestFind(testtools.TestCase):
    def setUp(self):
        super().setUp()
        self.root = self.useFixture(fixtures.TempDir()).path
        os.makedirs(os.path.join(self.root, 'data', 'schema'))
        self.deep = os.path.join(self.root, 'src', 'pkg', 'tests')
        os.makedirs(self.deep)

    def test_finds_in_ancestor(self):
        found = RelativePath.find('data/schema', RootedPath(self.deep))
        self.assertEqual(
            RootedPath(os.path.join(self.root, 'data', 'schema')), found
        )

    def test_finds_in_start_directory(self):
        found = RelativePath.find(
            RelativePath('schema'),
            RootedPath(os.path.join(self.root, 'data')),
        )
        self.assertTrue(found.exists())

    def test_not_found(self):
        e = self.assertRaises(
            FileNotFoundError,
            RelativePath.find,
            'no-such-dir',
            RootedPath(self.deep),
            depth=3,
        )
        self.assertIn('no-such-dir', str(e))
