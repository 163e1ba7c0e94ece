"""ConnectionManager のテスト（ダイヤル回数を数えるモック使用）"""

import threading
from unittest.mock import MagicMock

import paramiko
import pytest

from netconf_ops.connection import ConnectionManager, DeviceConnection
from netconf_ops.exceptions import (
    AlreadyConnected,
    AuthResolutionError,
    DialError,
    JumpHostUnresolvedError,
    NotConnected,
    UnsupportedProxyCommandError,
)
from netconf_ops.keepalive import KeepaliveMonitor
from netconf_ops.sshconfig import HostPattern

from conftest import JUMP_ADDRESS, FakeDialer


class TestDirectDial:
    """踏み台を経由しない dial() のテスト"""

    def test_unmatched_device_uses_password(self, make_manager, make_device, dialer):
        """ssh config に一致しない: デバイスのパスワードで直接接続"""
        manager = make_manager()
        device = make_device("192.0.2.1", username="operator", password="pw")
        conn = manager.dial(device)

        assert isinstance(conn, DeviceConnection)
        assert conn.address == "192.0.2.1"
        assert conn.jump is None
        assert len(dialer.calls) == 1
        call = dialer.calls[0]
        assert call["host"] == "192.0.2.1"
        assert call["port"] == 830
        assert call["username"] == "operator"
        assert call["auth"].password == "pw"
        assert call["sock"] is None
        assert "192.0.2.1" in manager

    def test_matched_identity_file_and_user(self, make_manager, make_device, dialer, resolver):
        """IdentityFile と User を持つエントリ: 鍵認証とユーザ上書き"""
        config = [HostPattern(patterns=[r"^198\.51\."], user="netops", identity_file="~/.ssh/id_ed25519")]
        manager = make_manager(ssh_config=config)
        manager.dial(make_device("198.51.100.7"))

        resolver.load_key.assert_called_once_with("~/.ssh/id_ed25519")
        call = dialer.calls[0]
        assert call["username"] == "netops"
        assert call["auth"].pkey is resolver.load_key.return_value
        assert call["auth"].password is None

    def test_no_ssh_config(self, resolver, make_device):
        """ssh config が空なら全デバイス直接接続"""
        dialer = FakeDialer()
        manager = ConnectionManager(ssh_config=[], resolver=resolver)
        manager._connect = dialer
        manager.dial(make_device("192.0.2.1"))
        assert dialer.dials_to("192.0.2.1") == 1

    def test_dial_error_wraps_cause(self, make_manager, make_device):
        """トランスポート障害は原因付きの DialError"""
        manager = make_manager(connect=FakeDialer(fail={"192.0.2.1"}))
        with pytest.raises(DialError) as exc:
            manager.dial(make_device("192.0.2.1"))
        assert isinstance(exc.value.__cause__, paramiko.SSHException)
        assert "192.0.2.1:830" in str(exc.value)
        assert "192.0.2.1" not in manager

    def test_dial_socket_error(self, make_manager, make_device):
        """ソケットエラーも DialError"""
        manager = make_manager(connect=MagicMock(side_effect=ConnectionRefusedError("refused")))
        with pytest.raises(DialError):
            manager.dial(make_device("192.0.2.1"))

    def test_auth_resolution_error(self, make_manager, make_device, resolver):
        """鍵の読み込み失敗はダイヤル前に伝播"""
        config = [HostPattern(patterns=["192"], identity_file="~/.ssh/missing")]
        resolver.load_key.side_effect = AuthResolutionError("missing")
        dialer = FakeDialer()
        manager = make_manager(ssh_config=config, connect=dialer)
        with pytest.raises(AuthResolutionError):
            manager.dial(make_device("192.0.2.1"))
        assert dialer.calls == []


class TestRegistry:
    """AlreadyConnected / NotConnected の前提条件"""

    def test_already_connected(self, make_manager, make_device):
        manager = make_manager()
        device = make_device("192.0.2.1")
        manager.dial(device)
        with pytest.raises(AlreadyConnected):
            manager.dial(device)

    def test_close_never_dialed(self, make_manager):
        manager = make_manager()
        with pytest.raises(NotConnected):
            manager.close_device("192.0.2.1")

    def test_close_twice(self, make_manager, make_device, dialer):
        manager = make_manager()
        manager.dial(make_device("192.0.2.1"))
        manager.close_device("192.0.2.1")
        dialer.clients["192.0.2.1"][0].close.assert_called_once()
        with pytest.raises(NotConnected):
            manager.close_device("192.0.2.1")

    def test_redial_after_close(self, make_manager, make_device, dialer):
        """切断後は再接続できる"""
        manager = make_manager()
        device = make_device("192.0.2.1")
        manager.dial(device)
        manager.close_device(device.address)
        manager.dial(device)
        assert dialer.dials_to("192.0.2.1") == 2

    def test_concurrent_dial_same_device(self, make_manager, make_device):
        """同一デバイスへの同時ダイヤルは片方のみ成功"""
        manager = make_manager(connect=FakeDialer(delay=0.1))
        device = make_device("192.0.2.1")
        results = []

        def dial():
            try:
                manager.dial(device)
                results.append("ok")
            except AlreadyConnected:
                results.append("already")

        threads = [threading.Thread(target=dial) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)
        assert sorted(results) == ["already", "ok"]


class TestJumpHost:
    """踏み台経由の dial() のテスト"""

    def test_tunnel_through_jump(self, make_manager, make_device, dialer):
        """踏み台接続の direct-tcpip チャネル上でデバイスへ接続"""
        manager = make_manager()
        conn = manager.dial(make_device("172.30.15.1"))

        assert dialer.dials_to(JUMP_ADDRESS) == 1
        jump_call = next(c for c in dialer.calls if c["host"] == JUMP_ADDRESS)
        assert jump_call["port"] == 22
        assert jump_call["username"] == "netops"
        jump_client = dialer.clients[JUMP_ADDRESS][0]
        jump_client.get_transport.return_value.open_channel.assert_called_once_with(
            "direct-tcpip", ("172.30.15.1", 830), ("127.0.0.1", 0)
        )
        device_call = next(c for c in dialer.calls if c["host"] == "172.30.15.1")
        assert device_call["sock"] is jump_client.get_transport.return_value.open_channel.return_value
        assert device_call["auth"].password == "admin"
        assert conn.jump is not None

    def test_multiplexed_single_jump_dial(self, make_manager, make_device, dialer):
        """同じ踏み台のデバイスは踏み台接続を共有"""
        manager = make_manager(multiplexing=True)
        manager.dial(make_device("172.30.15.1"))
        manager.dial(make_device("172.30.15.2"))

        assert dialer.dials_to(JUMP_ADDRESS) == 1
        assert len(manager.jump_connections) == 1

    def test_multiplexed_close_keeps_jump(self, make_manager, make_device, dialer):
        """close_device() は共有の踏み台接続を閉じない"""
        manager = make_manager(multiplexing=True)
        manager.dial(make_device("172.30.15.1"))
        manager.close_device("172.30.15.1")

        dialer.clients[JUMP_ADDRESS][0].close.assert_not_called()
        assert len(manager.jump_connections) == 1
        manager.close_all()
        dialer.clients[JUMP_ADDRESS][0].close.assert_called_once()

    def test_non_multiplexed_jump_per_device(self, make_manager, make_device, dialer):
        """多重化なしではデバイスごとに踏み台へ接続"""
        manager = make_manager(multiplexing=False)
        for i in range(1, 4):
            manager.dial(make_device(f"172.30.15.{i}"))

        assert dialer.dials_to(JUMP_ADDRESS) == 3
        assert len(manager.jump_connections) == 3

    def test_non_multiplexed_close_releases_jump(self, make_manager, make_device, dialer):
        """close_device() はデバイス専用の踏み台接続も閉じる"""
        manager = make_manager(multiplexing=False)
        manager.dial(make_device("172.30.15.1"))
        manager.close_device("172.30.15.1")

        dialer.clients[JUMP_ADDRESS][0].close.assert_called_once()
        assert manager.jump_connections == []

    def test_multiplexed_race_dials_once(self, make_manager, make_device):
        """同時接続でも踏み台へのダイヤルは1回だけ"""
        dialer = FakeDialer(delay=0.05)
        manager = make_manager(multiplexing=True, connect=dialer)
        devices = [make_device(f"172.30.15.{i}") for i in range(1, 11)]
        threads = [threading.Thread(target=manager.dial, args=(d,)) for d in devices]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert dialer.dials_to(JUMP_ADDRESS) == 1
        assert all(d.address in manager for d in devices)

    def test_unsupported_proxy_command(self, make_manager, make_device):
        """-W なしの ProxyCommand はダイヤル前に拒否"""
        config = [HostPattern(patterns=["172"], proxy_command="nc -x proxy:1080 %h %p")]
        dialer = FakeDialer()
        manager = make_manager(ssh_config=config, connect=dialer)
        with pytest.raises(UnsupportedProxyCommandError):
            manager.dial(make_device("172.30.15.1"))
        assert dialer.calls == []
        assert "172.30.15.1" not in manager

    def test_unresolved_jump_host(self, make_manager, make_device):
        config = [HostPattern(patterns=["172"], proxy_command="ssh -W %h:%p nowhere")]
        dialer = FakeDialer()
        manager = make_manager(ssh_config=config, connect=dialer)
        with pytest.raises(JumpHostUnresolvedError):
            manager.dial(make_device("172.30.15.1"))
        assert dialer.calls == []

    def test_jump_dial_failure(self, make_manager, make_device):
        dialer = FakeDialer(fail={JUMP_ADDRESS})
        manager = make_manager(connect=dialer)
        with pytest.raises(DialError, match="tunnel host"):
            manager.dial(make_device("172.30.15.1"))
        assert dialer.dials_to("172.30.15.1") == 0
        assert manager.jump_connections == []

    def test_device_failure_closes_private_jump(self, make_manager, make_device):
        """デバイス接続失敗時に専用の踏み台接続を残さない"""
        dialer = FakeDialer(fail={"172.30.15.1"})
        manager = make_manager(multiplexing=False, connect=dialer)
        with pytest.raises(DialError):
            manager.dial(make_device("172.30.15.1"))

        dialer.clients[JUMP_ADDRESS][0].close.assert_called_once()
        assert manager.jump_connections == []
        assert "172.30.15.1" not in manager

    def test_channel_failure_is_dial_error(self, make_manager, make_device, dialer):
        manager = make_manager(multiplexing=True)
        manager.dial(make_device("172.30.15.1"))
        jump_client = dialer.clients[JUMP_ADDRESS][0]
        jump_client.get_transport.return_value.open_channel.side_effect = paramiko.ChannelException(2, "prohibited")
        with pytest.raises(DialError):
            manager.dial(make_device("172.30.15.2"))


class TestCloseAll:
    """close_all() のテスト"""

    def test_closes_everything(self, make_manager, make_device, dialer, resolver, monkeypatch):
        close = MagicMock()
        monkeypatch.setattr(resolver, "close", close)
        manager = make_manager()
        manager.dial(make_device("192.0.2.1"))
        manager.dial(make_device("172.30.15.1"))

        assert manager.close_all() == []
        for clients in dialer.clients.values():
            for client in clients:
                client.close.assert_called_once()
        close.assert_called_once()
        assert "192.0.2.1" not in manager
        assert manager.jump_connections == []

    def test_failure_does_not_stop_teardown(self, make_manager, make_device, dialer):
        manager = make_manager()
        manager.dial(make_device("192.0.2.1"))
        manager.dial(make_device("192.0.2.2"))
        dialer.clients["192.0.2.1"][0].close.side_effect = OSError("broken pipe")

        errors = manager.close_all()
        assert len(errors) == 1
        dialer.clients["192.0.2.2"][0].close.assert_called_once()

    def test_context_manager(self, make_manager, make_device, dialer):
        with make_manager() as manager:
            manager.dial(make_device("192.0.2.1"))
        dialer.clients["192.0.2.1"][0].close.assert_called_once()


class TestKeepaliveAttach:
    def test_keepalive_monitor_started_and_stopped(self, make_manager, make_device):
        manager = make_manager(keepalive=True)
        conn = manager.dial(make_device("192.0.2.1"))
        assert isinstance(conn.keepalive, KeepaliveMonitor)
        assert conn.keepalive.is_alive()

        manager.close_device("192.0.2.1")
        conn.keepalive.join(2)
        assert not conn.keepalive.is_alive()

    def test_keepalive_off_by_default(self, make_manager, make_device):
        manager = make_manager()
        conn = manager.dial(make_device("192.0.2.1"))
        assert conn.keepalive is None
