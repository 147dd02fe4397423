import platformdirs
import pytest
import requests

from tests.fakes import JarSigner

_NETWORK_BLOCK_MSG = (
    "Network access is blocked during tests. Pass a FakeSession or mock requests.Session."
)


def _block_network(*_args, **_kwargs):
    """Raise instead of touching the network."""
    raise RuntimeError(_NETWORK_BLOCK_MSG)


def pytest_runtest_setup():
    """Replace the requests entry points with a blocker before every test."""
    requests.get = _block_network
    requests.post = _block_network
    requests.head = _block_network
    requests.request = _block_network
    requests.Session.request = _block_network


@pytest.fixture(autouse=True)
def _isolate_cache_dir(tmp_path_factory, monkeypatch):
    """Point the platformdirs cache location at a temporary directory."""
    cache_dir = tmp_path_factory.mktemp("apkgrab-cache")
    monkeypatch.setattr(platformdirs, "user_cache_dir", lambda *_a, **_kw: str(cache_dir))
    return cache_dir


@pytest.fixture(scope="session")
def signer():
    return JarSigner("apkgrab test repo")


@pytest.fixture(scope="session")
def other_signer():
    return JarSigner("someone else")
