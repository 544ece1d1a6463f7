"""
Pytest configuration for the xcheck test suite.

    python -m pytest                 # everything
    python -m pytest -m "not deep"   # skip the deep-tree traversal tests

Fixtures build xv6 images in memory with mkfs.XV6FS and write them to a
per-test temporary directory so xcheck can read them back from disk.
"""

import pytest

from mkfs import XV6FS


def pytest_configure(config):
    config.addinivalue_line("markers",
        "deep: tests that build directory chains deeper than the "
        "interpreter's recursion limit")


@pytest.fixture
def fs():
    """A freshly formatted default-geometry image."""
    image = XV6FS()
    image.format()
    return image


@pytest.fixture
def save_image(tmp_path):
    """Return a function that writes an XV6FS to disk and gives its path."""
    count = 0

    def _save(image):
        nonlocal count
        count += 1
        path = tmp_path / f"fs{count}.img"
        image.save(path)
        return str(path)

    return _save
