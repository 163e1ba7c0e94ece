"""Exception types raised by the connection manager and the dispatch engine."""


class NetconfOpsError(Exception):
    """Base class for netconf-ops errors."""


class AlreadyConnected(NetconfOpsError):
    def __init__(self, address):
        super().__init__(f"device {address} is already connected")
        self.address = address


class NotConnected(NetconfOpsError):
    def __init__(self, address):
        super().__init__(f"failed to find existing device connection for {address}")
        self.address = address


class DialError(NetconfOpsError):
    """Direct or tunneled transport-level failure."""


class JumpHostUnresolvedError(NetconfOpsError):
    """The jump host named by a ProxyCommand cannot be resolved."""


class UnsupportedProxyCommandError(NetconfOpsError):
    """ProxyCommand is not of the ``ssh -W host:port jump`` shape."""


class AuthResolutionError(NetconfOpsError):
    """Private key cannot be read or parsed."""


class HandshakeError(NetconfOpsError):
    """NETCONF session could not be opened over a device connection."""


class ParallelError(NetconfOpsError):
    """One or more devices failed during a parallel run.

    :ivar errors: mapping of device address to the error it encountered
    :ivar total: number of devices in the run
    """

    def __init__(self, errors, total):
        super().__init__(f"{len(errors)} of {total} devices failed")
        self.errors = errors
        self.total = total
