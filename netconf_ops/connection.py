"""Device connection manager: direct or jump-host tunneled SSH connections per device."""

import threading
from logging import getLogger

import paramiko

from netconf_ops.credentials import Auth, CredentialResolver
from netconf_ops.exceptions import AlreadyConnected, DialError, NotConnected
from netconf_ops.jump import resolve_jump_host
from netconf_ops.keepalive import KeepaliveMonitor
from netconf_ops.sshconfig import load_ssh_config, match_host

logger = getLogger(__name__)

DIAL_TIMEOUT = 10

# paramiko and socket failures while dialing or opening a tunnel channel
TRANSPORT_ERRORS = (paramiko.SSHException, OSError, EOFError)


class Connection:
    """A live paramiko SSH client with an optional keepalive monitor."""

    def __init__(self, name, client, keepalive=None):
        self.name = name
        self.client = client
        self.keepalive = keepalive

    @property
    def transport(self) -> paramiko.Transport:
        return self.client.get_transport()

    def is_active(self) -> bool:
        transport = self.transport
        return transport is not None and transport.is_active()

    def close(self):
        if self.keepalive is not None:
            self.keepalive.stop()
        self.client.close()


class JumpConnection(Connection):
    def __init__(self, config, client, keepalive=None):
        super().__init__(f"{config.address}:{config.port}", client, keepalive)
        self.config = config

    def open_channel(self, address, port) -> paramiko.Channel:
        """Open a direct-tcpip channel from the jump host to address:port."""
        return self.transport.open_channel("direct-tcpip", (address, port), ("127.0.0.1", 0))


class DeviceConnection(Connection):
    def __init__(self, device, client, jump=None, keepalive=None):
        super().__init__(f"{device.address}:{device.port}", client, keepalive)
        self.device = device
        self.jump = jump

    @property
    def address(self) -> str:
        return self.device.address


class ConnectionManager:
    """Dial and track SSH connections for a fleet of devices.

    Devices whose address matches an SSH config entry with a ProxyCommand
    are tunneled through a jump host. With ``multiplexing`` one jump
    connection is shared by every device behind the same jump host;
    without it each device gets a jump connection of its own.

    :param multiplexing: share jump connections between devices
    :param keepalive: attach a KeepaliveMonitor to every connection
    :param ssh_config: HostPattern entries; read from ~/.ssh/config when None
    :param resolver: CredentialResolver, a new one when None
    :param timeout: TCP connect timeout in seconds
    """

    def __init__(self, multiplexing=True, keepalive=False, ssh_config=None, resolver=None, timeout=DIAL_TIMEOUT):
        self.multiplexing = multiplexing
        self.keepalive = keepalive
        self.timeout = timeout
        self.ssh_config = load_ssh_config() if ssh_config is None else list(ssh_config)
        self.resolver = resolver or CredentialResolver()

        self._lock = threading.Lock()
        self._jump_lock = threading.Lock()
        self._devices = {}
        self._dialing = set()
        # multiplexed: keyed by jump host address, otherwise by device address
        self._shared_jumps = {}
        self._private_jumps = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close_all()

    def __contains__(self, address):
        with self._lock:
            return address in self._devices

    @property
    def jump_connections(self) -> list:
        with self._lock:
            return list(self._shared_jumps.values()) + list(self._private_jumps.values())

    def dial(self, device) -> DeviceConnection:
        """Open and register the SSH connection of device.

        :raises AlreadyConnected: device is connected or being dialed
        :raises DialError: transport failure, direct or through the jump host
        """
        with self._lock:
            if device.address in self._devices or device.address in self._dialing:
                raise AlreadyConnected(device.address)
            self._dialing.add(device.address)
        try:
            conn = self._dial(device)
            with self._lock:
                self._devices[device.address] = conn
            return conn
        finally:
            with self._lock:
                self._dialing.discard(device.address)

    def _dial(self, device):
        host = match_host(self.ssh_config, device.address)
        if host is None:
            return self._open_device(device, device.username, Auth(password=device.password))

        auth = self.resolver.auth_for(host, device.password)
        user = host.user or device.username
        if not host.proxy_command:
            return self._open_device(device, user, auth)

        jump = self._get_jump(host.proxy_command, device)
        try:
            return self._open_device(device, user, auth, jump)
        except Exception:
            self._release_private_jump(device.address)
            raise

    def _open_device(self, device, user, auth, jump=None):
        target = f"{device.address}:{device.port}"
        try:
            if jump is not None:
                device.log.debug(f"Connecting to device {target} through proxy")
                sock = jump.open_channel(device.address, device.port)
            else:
                device.log.debug(f"Connecting to device {target}")
                sock = None
            client = self._connect(device.address, device.port, user, auth, sock=sock)
        except TRANSPORT_ERRORS as e:
            raise DialError(f"failed to dial to host: {target}, {e}") from e
        if jump is not None:
            device.log.info(f"Connected to device {target} through proxy")
        else:
            device.log.info(f"Connected to device {target}")
        return DeviceConnection(device, client, jump, self._start_keepalive(client, device.address))

    def _get_jump(self, command, device):
        config = resolve_jump_host(command, self.ssh_config, self.resolver)
        if not self.multiplexing:
            conn = self._open_jump(config, device.log)
            with self._lock:
                self._private_jumps[device.address] = conn
            return conn

        conn = self._shared_jumps.get(config.address)
        if conn is not None:
            return conn
        with self._jump_lock:
            conn = self._shared_jumps.get(config.address)
            if conn is None:
                conn = self._open_jump(config, logger)
                with self._lock:
                    self._shared_jumps[config.address] = conn
            return conn

    def _open_jump(self, config, log):
        log.debug(f"Connecting to proxy {config.address}")
        try:
            client = self._connect(config.address, config.port, config.user, config.auth)
        except TRANSPORT_ERRORS as e:
            raise DialError(f"failed to dial tunnel host: {config.address}, {e}") from e
        log.info(f"Connected to proxy {config.address}")
        return JumpConnection(config, client, self._start_keepalive(client, config.address))

    def _connect(self, host, port, username, auth, sock=None) -> paramiko.SSHClient:
        """Open one authenticated SSH client; sock is a tunnel channel or None."""
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=port,
                username=username,
                sock=sock,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                **auth.connect_kwargs(),
            )
        except Exception:
            client.close()
            raise
        return client

    def _start_keepalive(self, client, name):
        if not self.keepalive:
            return None
        monitor = KeepaliveMonitor(client, name=name)
        monitor.start()
        return monitor

    def _release_private_jump(self, address):
        if self.multiplexing:
            return
        with self._lock:
            jump = self._private_jumps.pop(address, None)
        if jump is not None:
            self._close_quietly(jump)

    def close_device(self, address):
        """Close the connection of address and, without multiplexing, its jump connection.

        :raises NotConnected: address has no registered connection
        """
        with self._lock:
            conn = self._devices.pop(address, None)
            jump = None if self.multiplexing else self._private_jumps.pop(address, None)
        try:
            if conn is None:
                raise NotConnected(address)
            conn.device.log.debug("Closing device ssh connections")
            conn.close()
        finally:
            if jump is not None:
                jump.close()

    def close_all(self) -> list:
        """Best-effort close of every connection and the ssh-agent; returns the close errors."""
        logger.info("Closing all underlying leftover ssh connections")
        with self._lock:
            conns = list(self._devices.values())
            conns += list(self._private_jumps.values()) + list(self._shared_jumps.values())
            self._devices.clear()
            self._private_jumps.clear()
            self._shared_jumps.clear()

        errors = []
        for conn in conns:
            err = self._close_quietly(conn)
            if err is not None:
                errors.append(err)
        try:
            self.resolver.close()
        except Exception as e:
            logger.warning(f"failed to close ssh-agent connection: {e}")
            errors.append(e)
        return errors

    @staticmethod
    def _close_quietly(conn):
        try:
            conn.close()
        except Exception as e:
            logger.warning(f"failed to close connection {conn.name}: {e}")
            return e
        return None
