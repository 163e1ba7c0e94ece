"""Background keepalive for long-lived SSH connections."""

import threading
from logging import getLogger

import paramiko

logger = getLogger(__name__)

KEEPALIVE_NAME = "NETCONF_SUBSCRIPTION_KEEPALIVE"
KEEPALIVE_INTERVAL = 120


class KeepaliveMonitor(threading.Thread):
    """Send a global request on a fixed interval until the first failure or stop()."""

    def __init__(self, client, interval=KEEPALIVE_INTERVAL, name="ssh"):
        super().__init__(name=f"keepalive-{name}", daemon=True)
        self.client = client
        self.interval = interval
        self._stopped = threading.Event()

    def run(self):
        while not self._stopped.wait(self.interval):
            if not self.ping():
                logger.debug(f"{self.name}: connection is gone")
                return

    def ping(self) -> bool:
        transport = self.client.get_transport()
        if transport is None or not transport.is_active():
            return False
        try:
            transport.global_request(KEEPALIVE_NAME, wait=False)
        except (paramiko.SSHException, EOFError, OSError):
            return False
        return True

    def stop(self):
        self._stopped.set()
