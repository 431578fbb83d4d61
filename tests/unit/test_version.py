"""
Test version management functionality for LedgerReplica.
"""

import unittest

from ledgerreplica import VERSION
from ledgerreplica.units.version import get_version


class TestVersion(unittest.TestCase):
    """Test version management functions."""

    def test_get_version(self):
        """Test get_version function."""
        self.assertEqual(get_version((1, 0, 0, "final", 0)), "1.0.0")
        self.assertEqual(get_version((2, 1, 3, "alpha", 1)), "2.1.3a1")
        self.assertEqual(get_version((3, 2, 0, "beta", 2)), "3.2.0b2")
        self.assertEqual(get_version((4, 0, 0, "rc", 1)), "4.0.0rc1")
        self.assertEqual(get_version((5, 0, 0, "dev", 3)), "5.0.0.dev3")

    def test_package_version(self):
        """The package VERSION tuple renders as a plain release."""
        self.assertEqual(get_version(VERSION), "0.3.0")


if __name__ == '__main__':
    unittest.main()
