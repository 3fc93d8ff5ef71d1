# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Native API Registry

Selects and instantiates the NativeAPI named by a BindingConfig.

Features:
- Registration of NativeAPI classes by name
- "auto" resolves to libtensorflow; the loopback runtime is opt-in only
- Library version check against the configured minimum
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from ..compat import check_library_version
from ..config import BindingConfig
from ..errors import ConfigurationError
from .base import NativeAPI
from .ctypes_api import TensorFlowCAPI
from .loopback import LoopbackCAPI

logger = logging.getLogger("tensorbind.native.registry")

# Factory signature: (config) -> NativeAPI
NativeFactory = Callable[[BindingConfig], NativeAPI]

_lock = threading.Lock()
_factories: Dict[str, NativeFactory] = {
    "tensorflow": lambda config: TensorFlowCAPI(config.library_path),
    "loopback": lambda config: LoopbackCAPI(),
}
# The loopback runtime is never picked implicitly.
_AUTO_RUNTIME = "tensorflow"


def register_native_api(name: str, factory: NativeFactory) -> None:
    """
    Register a NativeAPI factory.

    Args:
        name: Runtime name used in BindingConfig.runtime.
        factory: Callable building the API from a config.
    """
    with _lock:
        _factories[name] = factory
        logger.debug("Registered native API: %s", name)


def list_native_apis() -> List[str]:
    """Get the names of all registered native APIs."""
    with _lock:
        return list(_factories.keys())


def _create(name: str, config: BindingConfig) -> NativeAPI:
    with _lock:
        factory = _factories.get(name)
    if factory is None:
        raise ConfigurationError(
            f"no native API registered as '{name}'",
            config_key="runtime",
            config_value=name,
        )

    api = factory(config)
    if api.name == "tensorflow":
        check_library_version(api.version(), minimum=config.min_library_version)
    logger.info("Using native API %s (version %s)", api.name, api.version())
    return api


def load_native_api(config: Optional[BindingConfig] = None) -> NativeAPI:
    """
    Load the NativeAPI selected by a config.

    Args:
        config: Binding configuration; read from the environment if None.

    Returns:
        A ready NativeAPI.

    Raises:
        LibraryNotFound: If "tensorflow" or "auto" was requested and
            libtensorflow cannot be loaded.
        ConfigurationError: If the library version is not supported.
    """
    config = config or BindingConfig.from_env()
    name = _AUTO_RUNTIME if config.runtime == "auto" else config.runtime
    return _create(name, config)
