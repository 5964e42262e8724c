# Copyright (c) 2021 Cisco Systems, Inc. and its affiliates
# All rights reserved.

"""Path value types that refuse to mix absolute and relative paths."""

import os
import tempfile


class _PathValue:
    def __init__(self, path):
        self._path = os.fspath(path)

    def __str__(self):
        return self._path

    def __fspath__(self):
        return self._path

    def __repr__(self):
        return '{}({!r})'.format(type(self).__name__, self._path)

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self._path == other._path

    def __hash__(self):
        return hash((type(self), self._path))

    @staticmethod
    def _check_relative(base, right):
        if os.path.isabs(right):
            raise ValueError(
                f"Can't concatenate '{base}' with rooted path '{right}'"
            )


class RootedPath(_PathValue):
    """An absolute filesystem path."""

    def __init__(self, path):
        super().__init__(path)
        if not os.path.isabs(self._path):
            raise ValueError(f"Path '{self._path}' is not rooted.")

    def __add__(self, other):
        if not isinstance(other, RelativePath):
            return NotImplemented
        return RootedPath(os.path.join(self._path, str(other)))

    def concat(self, right):
        self._check_relative(self, right)
        return self + RelativePath(right)

    def exists(self):
        return os.path.exists(self._path)

    def ensure_exists(self):
        """Create the directory (and parents) if missing."""
        os.makedirs(self._path, exist_ok=True)
        return self

    @classmethod
    def temp(cls, sub=None):
        """Return the system temp directory, optionally joined with `sub`."""
        path = cls(tempfile.gettempdir())
        if sub is not None:
            path = path + RelativePath(sub)
        return path


class RelativePath(_PathValue):
    """A path relative to some other, unspecified, directory."""

    def __init__(self, path):
        super().__init__(path)
        if os.path.isabs(self._path):
            raise ValueError(f"Path '{self._path}' is rooted.")

    def __add__(self, other):
        if not isinstance(other, RelativePath):
            return NotImplemented
        return RelativePath(os.path.join(self._path, str(other)))

    def concat(self, right):
        self._check_relative(self, right)
        return self + RelativePath(right)

    def full(self):
        """Resolve against the current working directory."""
        return RootedPath(os.path.abspath(self._path))

    @classmethod
    def find(cls, part, start=None, depth=10):
        """Find `part` in `start` or one of its ancestors.

        Tries `start/part`, then `start/../part` and so on, `depth` times,
        and returns the first one that exists.

        :param part: a RelativePath (or string) to look for.
        :param start: RootedPath to start searching from. Defaults to the
            current working directory.
        :raises FileNotFoundError: nothing was found.
        """
        if part is None:
            raise ValueError("part must not be None")
        part = part if isinstance(part, RelativePath) else cls(part)
        if start is None:
            start = RootedPath(os.getcwd())
        candidate = part
        for _ in range(depth):
            full_path = start + candidate
            if full_path.exists():
                return RootedPath(os.path.normpath(str(full_path)))
            candidate = RelativePath(os.pardir) + candidate
        raise FileNotFoundError(
            f"Failed to find path {part}\nstartSearchingFrom: {start}"
        )
