"""NETCONF sessions over device connections, provided by ncclient."""

from logging import getLogger

from lxml import etree
from ncclient import NCClientError
from ncclient import manager
from ncclient.operations import RPCError
from ncclient.transport import SSHSession
import paramiko

from netconf_ops.exceptions import HandshakeError

logger = getLogger(__name__)

NETCONF_SUBSYSTEM = "netconf"
SESSION_TIMEOUT = 30
DEFAULT_DEVICE_PARAMS = {"name": "default"}


class ConnectedSSHSession(SSHSession):
    """ncclient SSH session over a transport that is already authenticated.

    The connection manager owns dialing and authentication, so instead of
    ``connect()`` the session opens the netconf subsystem channel on the
    given transport and runs the hello exchange.
    """

    def attach(self, transport, host):
        self._host = host
        self._transport = transport
        self._connected = True
        self._closing.clear()
        channel = transport.open_session()
        try:
            self._channel_id = channel.get_id()
            self._channel_name = f"{NETCONF_SUBSYSTEM}-subsystem-{self._channel_id}"
            channel.set_name(self._channel_name)
            channel.invoke_subsystem(NETCONF_SUBSYSTEM)
            self._channel = channel
            self._post_connect()
        except Exception:
            self._connected = False
            channel.close()
            raise


def open_session(connection, device=None, timeout=SESSION_TIMEOUT, device_params=None) -> manager.Manager:
    """Open a NETCONF session on connection and return its ncclient Manager.

    :raises HandshakeError: subsystem request or hello exchange failed
    """
    handler = manager.make_device_handler(device_params or DEFAULT_DEVICE_PARAMS)
    session = ConnectedSSHSession(handler)
    try:
        session.attach(connection.transport, connection.address)
    except (NCClientError, paramiko.SSHException, OSError, EOFError) as e:
        raise HandshakeError(f"failed to exchange hello messages, error: {e}") from e
    if device is not None:
        device.log.debug(f"Started netconf session with id: {session.id}")
    return manager.Manager(session, handler, timeout=timeout)


def close_session(session, device):
    """Send close-session; failures are logged, the connection is closed regardless."""
    try:
        session.close_session()
    except Exception as e:
        device.log.warning(f"failed to close netconf session: {e}")


def describe_rpc_error(err) -> str:
    """Full detail of an rpc-error reply: the rpc-error XML when present."""
    raw = getattr(err, "xml", None)
    if raw is not None and etree.iselement(raw):
        return etree.tostring(raw, pretty_print=True, encoding="unicode").rstrip("\n")
    fields = [
        ("type", err.type),
        ("tag", err.tag),
        ("severity", err.severity),
        ("path", err.path),
        ("message", err.message),
    ]
    return ", ".join(f"{name}={value}" for name, value in fields if value)


def is_rpc_error(err) -> bool:
    return isinstance(err, RPCError)
