# tests/conftest.py
import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import FakeIncrementalClient, FakeSink  # noqa: E402


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def incremental():
    return FakeIncrementalClient()


@pytest.fixture(autouse=True, scope="session")
def isolate_environment(tmp_path_factory):
    """Keep tests off the network-facing defaults and the real data dir."""
    old = os.environ.get("HISTFETCH_DATA_DIR")
    os.environ["HISTFETCH_DATA_DIR"] = str(tmp_path_factory.mktemp("histfetch_data"))

    from config.settings import CONFIG
    CONFIG.reload()
    yield
    if old is None:
        os.environ.pop("HISTFETCH_DATA_DIR", None)
    else:
        os.environ["HISTFETCH_DATA_DIR"] = old
    CONFIG.reload()
