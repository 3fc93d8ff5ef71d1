# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Native Library Version Compatibility

Parses the version string reported by the native library (TF_Version)
and checks it against the minimum this binding supports.

Usage:
    from tensorbind.compat import VersionInfo, check_library_version

    check_library_version("2.15.0", minimum="2.0.0")
"""

import re
from dataclasses import dataclass
from typing import Optional

from .errors import ConfigurationError


@dataclass(frozen=True)
class VersionInfo:
    """
    Semantic version representation.

    Supports comparison operators for version checks.

    Example:
        v = VersionInfo.parse("2.15.0-rc1")
        if v >= VersionInfo(2, 0, 0):
            print("Supported")
    """

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, version_str: str) -> "VersionInfo":
        """
        Parse version string to VersionInfo.

        Args:
            version_str: Version string like "2.15.0", "2.16.1-rc0" or "2.4"

        Returns:
            VersionInfo instance

        Raises:
            ValueError: If version string is invalid
        """
        if not version_str or not isinstance(version_str, str):
            raise ValueError(f"Invalid version string: {version_str}")

        # Remove build and pre-release suffixes like +cpu, -rc1, .dev0
        clean_version = re.split(r"[+\-]", version_str.strip())[0]
        clean_version = re.split(r"\.(dev|post|rc|a|b)\d*", clean_version)[0]

        parts = clean_version.split(".")
        if len(parts) < 2:
            raise ValueError(f"Invalid version string: {version_str}")

        try:
            major = int(parts[0])
            minor = int(parts[1])
            patch = int(parts[2]) if len(parts) > 2 else 0
        except ValueError as e:
            raise ValueError(f"Invalid version string: {version_str}") from e

        return cls(major=major, minor=minor, patch=patch)

    def _key(self) -> tuple:
        return (self.major, self.minor, self.patch)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    def __lt__(self, other: "VersionInfo") -> bool:
        return self._key() < other._key()

    def __le__(self, other: "VersionInfo") -> bool:
        return self._key() <= other._key()

    def __gt__(self, other: "VersionInfo") -> bool:
        return self._key() > other._key()

    def __ge__(self, other: "VersionInfo") -> bool:
        return self._key() >= other._key()


def check_library_version(
    found: str,
    minimum: Optional[str] = None,
    maximum: Optional[str] = None,
) -> VersionInfo:
    """
    Check that a native library version is within the supported range.

    Args:
        found: Version string reported by the library
        minimum: Minimum supported version (inclusive)
        maximum: Maximum supported version (inclusive)

    Returns:
        The parsed version.

    Raises:
        ConfigurationError: If the version is unparsable or out of range
    """
    try:
        version = VersionInfo.parse(found)
    except ValueError as e:
        raise ConfigurationError(
            f"cannot parse native library version '{found}'",
            config_key="min_library_version",
        ) from e

    if minimum and version < VersionInfo.parse(minimum):
        raise ConfigurationError(
            f"native library {version} is older than the required {minimum}",
            config_key="min_library_version",
            config_value=minimum,
        )

    if maximum and version > VersionInfo.parse(maximum):
        raise ConfigurationError(
            f"native library {version} is newer than the supported {maximum}",
            config_key="max_library_version",
            config_value=maximum,
        )

    return version
