"""Jump host resolution from ``ProxyCommand ssh -W %h:%p jump`` entries."""

from dataclasses import dataclass
from typing import Optional
import shlex

from netconf_ops.credentials import Auth
from netconf_ops.exceptions import JumpHostUnresolvedError, UnsupportedProxyCommandError
from netconf_ops.sshconfig import find_host

DEFAULT_SSH_PORT = 22


@dataclass(frozen=True)
class ProxyTarget:
    """Jump host token of a ProxyCommand.

    ``is_trailing`` is True for ``ssh -W host:port jump`` and False for
    ``ssh jump -W host:port``.
    """

    token: str
    is_trailing: bool

    @property
    def user(self) -> Optional[str]:
        user, sep, _ = self.token.partition("@")
        return user if sep else None

    @property
    def host(self) -> str:
        _, sep, host = self.token.partition("@")
        return host if sep else self.token


@dataclass(frozen=True)
class JumpConfig:
    address: str
    port: int
    user: Optional[str]
    auth: Auth


def parse_proxy_command(command) -> ProxyTarget:
    """Extract the jump host token from a ``-W`` ProxyCommand.

    :raises UnsupportedProxyCommandError: not one of the two ``-W`` shapes
    """
    try:
        argv = shlex.split(command)
    except ValueError as e:
        raise UnsupportedProxyCommandError(f"cannot parse proxy command: {command}: {e}") from e
    args = argv[1:]
    if "-W" not in args:
        raise UnsupportedProxyCommandError(f"only proxy command with -W is supported, got: {command}")
    idx = args.index("-W")
    if idx + 1 >= len(args):
        raise UnsupportedProxyCommandError(f"-W requires host:port, got: {command}")
    if idx == 1 and not args[0].startswith("-"):
        return ProxyTarget(token=args[0], is_trailing=False)
    if len(args) > idx + 2 and not args[-1].startswith("-"):
        return ProxyTarget(token=args[-1], is_trailing=True)
    raise UnsupportedProxyCommandError(f"cannot find jump host in proxy command: {command}")


def resolve_jump_host(command, hosts, resolver) -> JumpConfig:
    """Resolve address, port, user and auth of the jump host named by command.

    :param hosts: HostPattern entries to look the jump host up in (exact name)
    :param resolver: CredentialResolver providing the key
    """
    target = parse_proxy_command(command)
    host = find_host(hosts, target.host)
    if host is None:
        raise JumpHostUnresolvedError(f"no ssh config entry for jump host {target.host}")
    if not host.hostname:
        raise JumpHostUnresolvedError(f"address is required for jump host {target.host}")
    return JumpConfig(
        address=host.hostname,
        port=host.port or DEFAULT_SSH_PORT,
        user=target.user or host.user,
        auth=resolver.jump_auth(host),
    )
