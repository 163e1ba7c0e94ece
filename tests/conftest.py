import argparse
import threading
import time
from unittest.mock import MagicMock

import paramiko
import pytest

from netconf_ops import common
from netconf_ops.common import Device
from netconf_ops.connection import ConnectionManager
from netconf_ops.credentials import CredentialResolver
from netconf_ops.sshconfig import HostPattern

JUMP_ADDRESS = "10.10.10.10"


class FakeDialer:
    """ConnectionManager._connect の代わりにダイヤル回数を数える"""

    def __init__(self, delay=0.0, fail=()):
        self.delay = delay
        self.fail = set(fail)
        self.calls = []
        self.clients = {}
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __call__(self, host, port, username, auth, sock=None):
        with self._lock:
            self.calls.append({"host": host, "port": port, "username": username, "auth": auth, "sock": sock})
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if host in self.fail:
                raise paramiko.SSHException(f"connection to {host} refused")
            client = MagicMock(name=f"client-{host}")
            with self._lock:
                self.clients.setdefault(host, []).append(client)
            return client
        finally:
            with self._lock:
                self.active -= 1

    def dials_to(self, host) -> int:
        return sum(1 for call in self.calls if call["host"] == host)


@pytest.fixture(autouse=True)
def reset_common():
    yield
    common.args = None
    common.config = None


@pytest.fixture
def mock_args():
    """CLI と同様に common.args を設定"""
    common.args = argparse.Namespace(
        debug=False,
        save=False,
        filters="",
        files=[],
        with_defaults=None,
        source="running",
        source_url=None,
        target=None,
        target_url=None,
        default_operation="merge",
        test_option=None,
        copy=False,
        lock=False,
        get_streams=False,
        stream="NETCONF",
        duration=None,
        host=None,
        inventory=None,
        username=None,
        password=None,
        port=None,
        workers=None,
        no_multiplexing=None,
    )
    return common.args


@pytest.fixture
def ssh_config():
    """踏み台エントリと 172.30.x.x を踏み台経由にするパターン"""
    return [
        HostPattern(patterns=["jump"], hostname=JUMP_ADDRESS, user="netops", identity_file="~/.ssh/id_jump"),
        HostPattern(patterns=[r"172\.30\."], proxy_command="ssh -W %h:%p jump"),
    ]


@pytest.fixture
def resolver(monkeypatch):
    """ファイルを読まない CredentialResolver"""
    r = CredentialResolver(prompt=lambda prompt: "secret", environ={})
    monkeypatch.setattr(r, "load_key", MagicMock(return_value=MagicMock(spec=paramiko.PKey)))
    return r


@pytest.fixture
def dialer():
    return FakeDialer()


@pytest.fixture
def make_manager(ssh_config, resolver, dialer):
    """ダイヤル層を dialer フィクスチャに差し替えた ConnectionManager"""
    def factory(**kwargs):
        connect = kwargs.pop("connect", dialer)
        kwargs.setdefault("ssh_config", ssh_config)
        kwargs.setdefault("resolver", resolver)
        manager = ConnectionManager(**kwargs)
        manager._connect = connect
        return manager
    return factory


@pytest.fixture
def make_device():
    def factory(address, **kwargs):
        kwargs.setdefault("port", 830)
        kwargs.setdefault("username", "admin")
        kwargs.setdefault("password", "admin")
        return Device(address=address, **kwargs)
    return factory
