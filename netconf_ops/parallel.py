"""Parallel dispatch: run one NETCONF operation on every device with bounded concurrency."""

from concurrent import futures
import os
import threading
from logging import getLogger

from netconf_ops.connection import ConnectionManager
from netconf_ops.exceptions import ParallelError
from netconf_ops.session import close_session, describe_rpc_error, is_rpc_error, open_session

logger = getLogger(__name__)


class ErrorRecord:
    """Write-once mapping of device address to error, safe for concurrent writers."""

    def __init__(self):
        self._errors = {}
        self._lock = threading.Lock()

    def set(self, address, err):
        with self._lock:
            self._errors.setdefault(address, err)

    def __len__(self):
        with self._lock:
            return len(self._errors)

    def __contains__(self, address):
        with self._lock:
            return address in self._errors

    def as_dict(self) -> dict:
        with self._lock:
            return dict(self._errors)


def default_workers() -> int:
    return os.cpu_count() or 1


def run_device(manager, device, operation, errors, session_opener=open_session, session_options=None) -> bool:
    """Dial, open a session, run operation, then close session and connection.

    A failure at any step is recorded against the device; nothing is raised.

    :returns: True when operation completed without error
    """
    try:
        connection = manager.dial(device)
    except Exception as e:
        device.log.debug(f"dial failed: {e}")
        errors.set(device.address, e)
        return False

    try:
        session = session_opener(connection, device, **(session_options or {}))
        try:
            operation(device, session)
        finally:
            close_session(session, device)
        return True
    except Exception as e:
        device.log.debug(f"{type(e).__name__}: {e}")
        errors.set(device.address, e)
        return False
    finally:
        try:
            manager.close_device(device.address)
        except Exception as e:
            device.log.warning(f"failed to close device connection: {e}")


def report_errors(errors):
    """Log one diagnostic per failed device; rpc-errors are rendered in full."""
    for address, err in errors.as_dict().items():
        msg = f"Device {address} failed"
        if is_rpc_error(err):
            logger.error(f"{msg}, RPCError:\n{describe_rpc_error(err)}")
        else:
            logger.error(f"{msg}, error: {err}")


def run_parallel(
    devices,
    operation,
    multiplexing=True,
    keepalive=False,
    max_workers=None,
    manager=None,
    session_opener=open_session,
    session_options=None,
):
    """Run ``operation(device, session)`` on every device.

    One task per device on a thread pool bounded to the number of CPUs
    unless max_workers is given. A failing device never stops the others.
    A manager created here is closed with close_all() before returning.

    :raises ParallelError: after every device finished, if any of them failed
    """
    devices = list(devices)
    errors = ErrorRecord()
    owned = manager is None
    if owned:
        manager = ConnectionManager(multiplexing=multiplexing, keepalive=keepalive)
    max_workers = max_workers or default_workers()
    logger.debug(f"run_parallel: {len(devices)} devices, max_workers={max_workers}")

    try:
        with futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_device = {
                executor.submit(
                    run_device, manager, device, operation, errors, session_opener, session_options
                ): device
                for device in devices
            }
            for future in futures.as_completed(future_to_device):
                device = future_to_device[future]
                try:
                    future.result()
                except Exception as e:
                    logger.error(f"{device.address} generated an exception: {e}")
                    errors.set(device.address, e)
    finally:
        if owned:
            manager.close_all()

    report_errors(errors)
    if len(errors):
        raise ParallelError(errors.as_dict(), len(devices))
