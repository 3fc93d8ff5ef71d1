# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Pytest configuration for tensorbind Python tests.
"""

import sys
from pathlib import Path

import pytest

# Add the project root to sys.path so we can import tensorbind
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from tensorbind.config import BindingConfig  # noqa: E402
from tensorbind.native import LoopbackCAPI  # noqa: E402
from tensorbind.runtime import Runtime, set_runtime  # noqa: E402

# Skip test modules that require optional dependencies not installed
collect_ignore = []

# Check for hypothesis
try:
    import hypothesis  # noqa: F401
except ImportError:
    collect_ignore.append("test_property_based.py")


@pytest.fixture
def runtime():
    """
    Loopback runtime installed as the process default.

    Everything still live at the end of the test is released, and the
    test fails if any handle survives or the native side leaks.
    """
    rt = Runtime(LoopbackCAPI(), BindingConfig(runtime="loopback"))
    previous = set_runtime(rt)
    yield rt
    set_runtime(previous)
    rt.shutdown()
    rt.assert_no_leaks()
    assert all(count == 0 for count in rt.api.live_counts().values()), rt.api.live_counts()


@pytest.fixture
def api(runtime):
    return runtime.api
