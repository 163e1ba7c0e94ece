"""Private key loading and authentication method resolution."""

from dataclasses import dataclass
from typing import Optional
import getpass
import os
import threading
from logging import getLogger

import paramiko
from paramiko.pkey import UnknownKeyType

from netconf_ops.exceptions import AuthResolutionError

logger = getLogger(__name__)

DEFAULT_IDENTITY_FILE = "~/.ssh/id_rsa"
IDENTITY_ENV = "SSH_DEFAULT_IDENTITY_FILE"


@dataclass(frozen=True)
class Auth:
    """Exactly one authentication method for an SSH connection."""

    pkey: Optional[paramiko.PKey] = None
    password: Optional[str] = None
    allow_agent: bool = False

    def connect_kwargs(self) -> dict:
        """Keyword arguments for paramiko.SSHClient.connect()."""
        kwargs = {"look_for_keys": False, "allow_agent": self.allow_agent}
        if self.pkey is not None:
            kwargs["pkey"] = self.pkey
        elif self.password is not None:
            kwargs["password"] = self.password
        return kwargs


class CredentialResolver:
    """Resolve authentication per identity file, parsing each key only once.

    :param prompt: passphrase prompt, ``getpass.getpass`` by default
    :param environ: environment consulted for ``SSH_DEFAULT_IDENTITY_FILE``
    """

    def __init__(self, prompt=None, environ=None):
        self._prompt = prompt or getpass.getpass
        self._environ = os.environ if environ is None else environ
        self._keys = {}
        self._lock = threading.Lock()
        self.agent = None

    def load_key(self, path) -> paramiko.PKey:
        path = os.path.expanduser(path)
        # held across the prompt: one passphrase question per key
        with self._lock:
            key = self._keys.get(path)
            if key is None:
                key = self._parse_key(path)
                self._keys[path] = key
            return key

    def _parse_key(self, path):
        try:
            return paramiko.PKey.from_path(path)
        except paramiko.PasswordRequiredException:
            pass
        except (OSError, ValueError, paramiko.SSHException, UnknownKeyType) as e:
            raise AuthResolutionError(f"failed to load private key {path}: {e}") from e

        passphrase = self._prompt(f"Enter password for private key {path}: ")
        try:
            return paramiko.PKey.from_path(path, passphrase=passphrase)
        except (OSError, ValueError, paramiko.SSHException, UnknownKeyType) as e:
            raise AuthResolutionError(f"failed to load private key {path}: {e}") from e

    def auth_for(self, host, password) -> Auth:
        """Key auth when the matched entry names an identity file, password auth otherwise."""
        if host is not None and host.identity_file:
            return Auth(pkey=self.load_key(host.identity_file))
        return Auth(password=password)

    def default_identity(self) -> str:
        return self._environ.get(IDENTITY_ENV) or DEFAULT_IDENTITY_FILE

    def jump_auth(self, host) -> Auth:
        """Key auth for a jump host; jump hosts never use password auth.

        Without an IdentityFile the first key already resolved is reused;
        before any key is resolved the default identity is used, or the
        SSH agent when that file does not exist.
        """
        if host.identity_file:
            return Auth(pkey=self.load_key(host.identity_file))
        with self._lock:
            cached = next(iter(self._keys.values()), None)
        if cached is not None:
            return Auth(pkey=cached)

        identity = self.default_identity()
        logger.warning(f"no identity file found for host: {host.patterns[0]}, using default: {identity}")
        if not os.path.exists(os.path.expanduser(identity)) and self._agent_keys():
            logger.info(f"{identity} not found, using ssh-agent keys")
            return Auth(allow_agent=True)
        return Auth(pkey=self.load_key(identity))

    def _agent_keys(self):
        with self._lock:
            if self.agent is None:
                self.agent = paramiko.Agent()
            return self.agent.get_keys()

    def close(self):
        """Close the ssh-agent connection, if one was opened."""
        with self._lock:
            agent, self.agent = self.agent, None
        if agent is not None:
            agent.close()
