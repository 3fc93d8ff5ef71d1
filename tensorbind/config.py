# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Binding Configuration

Selects the native runtime and tunes teardown and logging behaviour.
Values come from keyword arguments or from TENSORBIND_* environment
variables.

Example:
    config = BindingConfig.from_env()
    runtime = Runtime.from_config(config)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .compat import VersionInfo
from .errors import ConfigurationError
from .observability import Verbosity

RUNTIME_CHOICES = ("auto", "tensorflow", "loopback")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass
class BindingConfig:
    """
    Configuration for a Runtime.

    Attributes:
        runtime: Native API to load ("auto", "tensorflow", "loopback" or a
            name added with register_native_api).
            "auto" loads libtensorflow; the loopback runtime is never
            chosen unless named.
        library_path: Explicit path to libtensorflow; searched if None.
        min_library_version: Oldest libtensorflow release accepted.
        strict_teardown: Raise HandleLeak if handles survive shutdown.
        verbosity: Logging verbosity for the tensorbind logger.
    """

    runtime: str = "auto"
    library_path: Optional[str] = None
    min_library_version: str = "2.0.0"
    strict_teardown: bool = False
    verbosity: Verbosity = Verbosity.WARNING

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Check every field, raising ConfigurationError on the first bad one."""
        from .native.registry import list_native_apis

        choices = tuple(dict.fromkeys(RUNTIME_CHOICES + tuple(list_native_apis())))
        if self.runtime not in choices:
            raise ConfigurationError(
                f"unknown runtime '{self.runtime}', expected one of {choices}",
                config_key="runtime",
                config_value=self.runtime,
            )

        try:
            VersionInfo.parse(self.min_library_version)
        except ValueError as e:
            raise ConfigurationError(
                f"invalid version '{self.min_library_version}'",
                config_key="min_library_version",
                config_value=self.min_library_version,
            ) from e

        try:
            self.verbosity = Verbosity(int(self.verbosity))
        except ValueError as e:
            raise ConfigurationError(
                f"verbosity must be between 0 and 4, got {self.verbosity}",
                config_key="verbosity",
                config_value=str(self.verbosity),
            ) from e

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BindingConfig":
        """
        Build a config from TENSORBIND_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ.

        Returns:
            BindingConfig with defaults for unset variables.
        """
        env = os.environ if environ is None else environ
        kwargs = {}

        if "TENSORBIND_RUNTIME" in env:
            kwargs["runtime"] = env["TENSORBIND_RUNTIME"].strip().lower()
        if env.get("TENSORBIND_LIBRARY"):
            kwargs["library_path"] = env["TENSORBIND_LIBRARY"]
        if env.get("TENSORBIND_MIN_VERSION"):
            kwargs["min_library_version"] = env["TENSORBIND_MIN_VERSION"]
        if "TENSORBIND_STRICT_TEARDOWN" in env:
            kwargs["strict_teardown"] = _parse_bool(
                "TENSORBIND_STRICT_TEARDOWN", env["TENSORBIND_STRICT_TEARDOWN"]
            )
        if env.get("TENSORBIND_VERBOSITY"):
            raw = env["TENSORBIND_VERBOSITY"]
            try:
                kwargs["verbosity"] = int(raw)
            except ValueError:
                try:
                    kwargs["verbosity"] = Verbosity[raw.strip().upper()]
                except KeyError as e:
                    raise ConfigurationError(
                        f"invalid verbosity '{raw}'",
                        config_key="TENSORBIND_VERBOSITY",
                        config_value=raw,
                    ) from e

        return cls(**kwargs)


def _parse_bool(key: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(
        f"expected a boolean, got '{raw}'", config_key=key, config_value=raw
    )
