"""
Version utility functions for LedgerReplica.

Builds the PEP 440 version string from the package VERSION tuple.
"""

from typing import Tuple

VersionTuple = Tuple[int, int, int, str, int]


def get_version(version: VersionTuple) -> str:
    """
    Return a PEP 440-compliant version number from a VERSION tuple.

    Args:
        version: Version tuple (major, minor, micro, releaselevel, serial)

    Returns:
        PEP 440-compliant version string
    """
    major, minor, micro, releaselevel, serial = version

    version_str = f"{major}.{minor}.{micro}"
    if releaselevel == "dev":
        version_str += f".dev{serial}"
    elif releaselevel != "final":
        short = {"alpha": "a", "beta": "b", "rc": "rc"}[releaselevel]
        version_str += f"{short}{serial}"

    return version_str
