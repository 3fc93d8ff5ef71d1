# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Tests for native API selection and the libtensorflow bindings.

Tests against a real libtensorflow are skipped when it is not installed.
"""

import logging

import numpy as np
import pytest

from tensorbind.config import BindingConfig
from tensorbind.core.types import DataType
from tensorbind.errors import ConfigurationError, LibraryNotFound
from tensorbind.native import registry as native_registry
from tensorbind.native.ctypes_api import TensorFlowCAPI, find_library
from tensorbind.native.loopback import LoopbackCAPI
from tensorbind.native.registry import list_native_apis, load_native_api, register_native_api
from tensorbind.runtime import Runtime

MISSING_LIBRARY = "/nonexistent/libtensorflow.so"


def _has_libtensorflow() -> bool:
    try:
        find_library()
    except LibraryNotFound:
        return False
    return True


requires_libtensorflow = pytest.mark.skipif(
    not _has_libtensorflow(), reason="libtensorflow not installed"
)


@pytest.fixture(autouse=True)
def restore_level():
    logger = logging.getLogger("tensorbind")
    level = logger.level
    yield
    logger.setLevel(level)


class TestLoadNativeApi:
    """Tests for load_native_api."""

    def test_loopback(self):
        """The loopback runtime is always available."""
        api = load_native_api(BindingConfig(runtime="loopback"))
        assert isinstance(api, LoopbackCAPI)

    def test_builtin_names(self):
        """Test both built-in runtimes are registered."""
        names = list_native_apis()
        assert "tensorflow" in names
        assert "loopback" in names

    def test_auto_requires_libtensorflow(self):
        """auto never substitutes the loopback runtime for a missing library."""
        config = BindingConfig(runtime="auto", library_path=MISSING_LIBRARY)
        with pytest.raises(LibraryNotFound) as exc_info:
            load_native_api(config)
        assert MISSING_LIBRARY in exc_info.value.message
        assert any("TENSORBIND_RUNTIME=loopback" in s for s in exc_info.value.suggestions)

    def test_default_runtime_requires_libtensorflow(self, monkeypatch):
        """Without TENSORBIND_RUNTIME the default runtime is libtensorflow."""
        monkeypatch.delenv("TENSORBIND_RUNTIME", raising=False)
        monkeypatch.setenv("TENSORBIND_LIBRARY", MISSING_LIBRARY)
        with pytest.raises(LibraryNotFound):
            Runtime.from_config()

    def test_explicit_tensorflow_missing(self):
        """An explicit tensorflow runtime does not fall back."""
        with pytest.raises(LibraryNotFound) as exc_info:
            load_native_api(BindingConfig(runtime="tensorflow", library_path=MISSING_LIBRARY))
        assert MISSING_LIBRARY in exc_info.value.message
        assert any("TENSORBIND_LIBRARY" in s for s in exc_info.value.suggestions)

    def test_unknown_runtime(self):
        """Unknown runtime names are rejected."""
        with pytest.raises(ConfigurationError):
            BindingConfig(runtime="cuda")
        with pytest.raises(ConfigurationError):
            native_registry._create("cuda", BindingConfig(runtime="loopback"))

    def test_registered_factory(self):
        """Registered factories are selectable by name."""
        created = []

        def factory(config):
            api = LoopbackCAPI()
            created.append(api)
            return api

        register_native_api("recording", factory)
        try:
            api = load_native_api(BindingConfig(runtime="recording"))
            assert created == [api]
        finally:
            native_registry._factories.pop("recording", None)

    def test_runtime_from_config(self):
        """Runtime.from_config loads the API and applies the verbosity."""
        with Runtime.from_config(BindingConfig(runtime="loopback", verbosity=4)) as rt:
            assert rt.api.name == "loopback"
            assert logging.getLogger("tensorbind").level == logging.DEBUG

    def test_env_config(self, monkeypatch):
        """Selection follows TENSORBIND_RUNTIME."""
        monkeypatch.setenv("TENSORBIND_RUNTIME", "loopback")
        assert isinstance(load_native_api(), LoopbackCAPI)


class TestFindLibrary:
    """Tests for find_library."""

    def test_missing_path(self):
        """A bad explicit path raises LibraryNotFound with the reason."""
        with pytest.raises(LibraryNotFound) as exc_info:
            find_library(MISSING_LIBRARY)
        assert exc_info.value.searched == MISSING_LIBRARY

    def test_constructor_propagates(self):
        """TensorFlowCAPI cannot be built without the library."""
        with pytest.raises(LibraryNotFound):
            TensorFlowCAPI(MISSING_LIBRARY)


@requires_libtensorflow
class TestTensorFlowCAPI:
    """Tests against a real libtensorflow."""

    def test_version(self):
        """The library reports a parseable version."""
        api = TensorFlowCAPI()
        assert api.name == "tensorflow"
        assert api.version()[0].isdigit()

    def test_two_operation_graph(self):
        """Build and run y = x * 3 on the real runtime."""
        from tensorbind import ops
        from tensorbind.scope import Scope
        from tensorbind.session import Session

        with Runtime(TensorFlowCAPI(), BindingConfig(runtime="tensorflow")) as rt:
            scope = Scope.new_root_scope(rt)
            x = ops.placeholder(scope.with_op_name("x"), DataType.Float, shape=[2])
            y = ops.multiply(scope, x, 3.0)
            with Session(scope.graph) as session:
                (result,) = session.run([y], feeds={x: np.array([1.0, 2.0], np.float32)})
                with result:
                    np.testing.assert_array_equal(result.numpy(), [3.0, 6.0])
            scope.graph.release()
            assert len(rt.registry) == 0
