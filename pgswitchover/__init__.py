from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version('pgswitchover')  # Must be the same used as 'name' in setup.py
    """:py:class:`str`: the version of the current pgswitchover module."""
except PackageNotFoundError:  # pragma: no cover - this should never happen during tests
    pass  # package is not installed
