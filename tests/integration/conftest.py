from dataclasses import replace

import pytest

from xrwall.client import SessionProxy
from xrwall.config import load_default_config
from xrwall.network_utils import find_free_port
from xrwall.server import RelayServer


@pytest.fixture
def relay_config():
    return replace(
        load_default_config(),
        port=find_free_port(),
        bind_address="127.0.0.1",
        client_timeout=1.0,
        heartbeat_interval=0.2,
        cleanup_interval=0.1,
        poll_timeout=10,
        shutdown_timeout=1.0,
        status_log_interval=60.0,
    )


@pytest.fixture
def relay(relay_config):
    server = RelayServer(relay_config)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def make_proxy(relay):
    created: list[SessionProxy] = []

    def factory(**kwargs) -> SessionProxy:
        proxy = SessionProxy(
            server="tcp://127.0.0.1",
            port=relay.config.port,
            heartbeat_interval=0.2,
            registration_timeout=2.0,
            **kwargs,
        )
        created.append(proxy)
        return proxy

    yield factory
    for proxy in created:
        proxy.disconnect()
