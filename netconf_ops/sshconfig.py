"""SSH client configuration: Host entries in file order and first-match lookup.

Only ``Host``, ``HostName``, ``Port``, ``User``, ``IdentityFile`` and
``ProxyCommand`` are read. ``paramiko.SSHConfig.lookup`` merges every
matching block, while device lookup here must stop at the first entry
that matches, so entries are kept as an ordered list.
"""

from dataclasses import dataclass, field
from typing import Optional
import os
import re
from logging import getLogger

logger = getLogger(__name__)

USER_SSH_CONFIG = "~/.ssh/config"
SYSTEM_SSH_CONFIG = "/etc/ssh/ssh_config"

_KEYWORDS = {
    "hostname": "hostname",
    "port": "port",
    "user": "user",
    "identityfile": "identity_file",
    "proxycommand": "proxy_command",
}
_LINE = re.compile(r"^(\w+)(?:\s*=\s*|\s+)(.*)$")


@dataclass
class HostPattern:
    """One ``Host`` block of an SSH client configuration."""

    patterns: list = field(default_factory=list)
    hostname: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    identity_file: Optional[str] = None
    proxy_command: Optional[str] = None

    def matches(self, address) -> bool:
        """Regex search of each pattern token against the literal address.

        Tokens that are not valid regular expressions (``*``, ``?foo``) never match.
        """
        for token in self.patterns:
            try:
                if re.search(token, address):
                    return True
            except re.error:
                continue
        return False


def _unquote(value):
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def parse_ssh_config(lines) -> list[HostPattern]:
    """Parse SSH client config lines into HostPattern entries, preserving order."""
    hosts = []
    current = None
    for lineno, raw in enumerate(lines, 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        m = _LINE.match(line)
        if m is None:
            logger.debug(f"ssh config line {lineno} ignored: {line}")
            continue
        keyword, value = m.group(1).lower(), m.group(2).strip()
        if keyword == "host":
            current = HostPattern(patterns=value.split())
            hosts.append(current)
            continue
        if keyword == "match":
            current = None
            continue
        attr = _KEYWORDS.get(keyword)
        if current is None or attr is None:
            continue
        # first obtained value wins, as in ssh(1)
        if getattr(current, attr) is not None:
            continue
        if attr == "port":
            try:
                value = int(value)
            except ValueError:
                logger.warning(f"ssh config line {lineno}: invalid port {value!r}")
                continue
        elif attr != "proxy_command":
            value = _unquote(value)
        setattr(current, attr, value)
    return hosts


def read_ssh_config(path) -> list[HostPattern]:
    with open(os.path.expanduser(path)) as f:
        return parse_ssh_config(f)


def load_ssh_config(path=None, fallback=SYSTEM_SSH_CONFIG) -> list[HostPattern]:
    """Load the user SSH config, falling back to the system-wide one.

    An unreadable configuration is not fatal: the result is empty, so
    every device is dialed directly with password authentication.
    """
    path = path or USER_SSH_CONFIG
    try:
        return read_ssh_config(path)
    except OSError:
        logger.warning(f"failed to find ssh config from {path}, trying fallback: {fallback}")
    try:
        return read_ssh_config(fallback)
    except OSError:
        logger.warning("Failed to find ssh config file, using input configs")
        return []


def match_host(hosts, address) -> Optional[HostPattern]:
    """First entry, in file order, whose pattern matches the address."""
    for host in hosts:
        if host.matches(address):
            return host
    return None


def find_host(hosts, name) -> Optional[HostPattern]:
    """First entry listing name literally among its patterns."""
    for host in hosts:
        if name in host.patterns:
            return host
    return None
