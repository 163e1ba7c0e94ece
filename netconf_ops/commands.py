"""NETCONF operations run per device by the subcommands.

Each ``cmd_*`` function has the ``(device, session)`` signature expected
by :func:`netconf_ops.parallel.run_parallel` and raises on failure.
Options come from ``common.args``; payloads read by the CLI are in
``common.args.filters`` and ``common.args.files``.
"""

import datetime
import time
from logging import getLogger

from lxml import etree
from ncclient.xml_ import to_ele

from netconf_ops import common
from netconf_ops.exceptions import NetconfOpsError

logger = getLogger(__name__)

GET_TIMEOUT = 300
EDIT_TIMEOUT = 300
COPY_TIMEOUT = 30
NOTIFICATION_POLL = 0.5

NETCONF_BASE_NS = "urn:ietf:params:xml:ns:netconf:base:1.0"
NOTIFICATION_NS = "urn:ietf:params:xml:ns:netconf:notification:1.0"
STREAMS_FILTER = '<netconf xmlns="urn:ietf:params:xml:ns:netmod:notification"><streams/></netconf>'


def subtree_filter(filters):
    """Wrap one or more subtree elements into a single <filter>; None when empty."""
    if not filters or not filters.strip():
        return None
    return f'<filter type="subtree">{filters.strip()}</filter>'


def strip_declaration(data) -> str:
    data = data.strip()
    if data.startswith("<?xml"):
        data = data[data.index("?>") + 2:].lstrip()
    return data


def as_config(data) -> str:
    """Edit payload as a <config> element, wrapping bare content."""
    data = strip_declaration(data)
    if data.startswith("<config"):
        return data
    return f'<config xmlns="{NETCONF_BASE_NS}">{data}</config>'


def save_or_log(device, xml, default_name, label):
    if getattr(common.args, "save", False):
        name = device.output_name(default_name)
        try:
            with open(name, mode="w") as f:
                f.write(xml)
        except OSError as e:
            device.log.error(f"Failed to create file: {e}, printing reply")
            device.log.info(f"{label} reply:\n{xml}")
            return
        device.log.info(f"Saved {label} reply to file {name}")
    else:
        device.log.info(f"{label} reply:\n{xml}")


def _with_defaults_kwargs():
    mode = getattr(common.args, "with_defaults", None)
    return {"with_defaults": mode} if mode else {}


def cmd_get(device, session):
    """<get> with subtree filters and optional with-defaults mode."""
    session.timeout = GET_TIMEOUT
    start = time.monotonic()
    reply = session.get(filter=subtree_filter(common.args.filters), **_with_defaults_kwargs())
    save_or_log(device, reply.xml, "get-filters.xml", "Get")
    device.log.info(f"Executed get filter request, took {time.monotonic() - start:.3f} seconds")


def cmd_get_config(device, session):
    session.timeout = GET_TIMEOUT
    start = time.monotonic()
    source = common.args.source
    reply = session.get_config(
        source=source, filter=subtree_filter(common.args.filters), **_with_defaults_kwargs()
    )
    save_or_log(device, reply.xml, f"get-config-{common.timestamp()}.xml", "Get-config")
    device.log.info(f"Executed get-config request, took {time.monotonic() - start:.3f} seconds")


def _datastore(session):
    return "candidate" if ":candidate" in session.server_capabilities else "running"


def cmd_edit_config(device, session):
    """Lock, edit, validate, commit and unlock for every payload file.

    Edits go to candidate when the device supports it, otherwise running.
    """
    session.timeout = EDIT_TIMEOUT
    caps = session.server_capabilities
    datastore = _datastore(session)
    validate = ":validate" in caps
    startup = ":startup" in caps
    error_option = "rollback-on-error" if ":rollback-on-error" in caps else "stop-on-error"
    test_option = getattr(common.args, "test_option", None)

    start = time.monotonic()
    for data in common.args.files:
        reply = session.lock(target=datastore)
        device.log.debug(f"Lock reply:\n{reply.xml}")

        reply = session.edit_config(
            config=as_config(data),
            target=datastore,
            default_operation=common.args.default_operation,
            test_option=test_option,
            error_option=error_option,
        )
        device.log.debug(f"Edit-config reply:\n{reply.xml}")

        if validate:
            reply = session.validate(source=datastore)
            device.log.debug(f"Validate reply:\n{reply.xml}")

        if datastore == "candidate":
            reply = session.commit()
            device.log.debug(f"Commit reply:\n{reply.xml}")

        reply = session.unlock(target=datastore)
        device.log.debug(f"Unlock reply:\n{reply.xml}")
    device.log.info(
        f"Executed {len(common.args.files)} edit-config requests, took {time.monotonic() - start:.3f} seconds"
    )

    if getattr(common.args, "copy", False) and startup and test_option != "test-only":
        start = time.monotonic()
        session.copy_config(source="running", target="startup")
        device.log.info(f"Executed copy-config request, took {time.monotonic() - start:.3f} seconds")


def cmd_copy_config(device, session):
    session.timeout = COPY_TIMEOUT
    source = common.args.source or common.args.source_url
    if not source:
        raise NetconfOpsError("no source specified")
    target = common.args.target or common.args.target_url
    if not target:
        raise NetconfOpsError("no target specified")

    start = time.monotonic()
    reply = session.copy_config(source=source, target=target)
    device.log.debug(f"Copy-config reply:\n{reply.xml}")
    device.log.info(f"Executed copy-config request, took {time.monotonic() - start:.3f} seconds")


def cmd_dispatch(device, session):
    """Send user-defined RPCs, optionally inside lock/commit/unlock."""
    session.timeout = EDIT_TIMEOUT
    datastore = _datastore(session)
    use_lock = getattr(common.args, "lock", False)

    start = time.monotonic()
    for data in common.args.files:
        if use_lock:
            device.log.debug(f"Locking {datastore} datastore")
            session.lock(target=datastore)

        reply = session.dispatch(to_ele(strip_declaration(data)))
        device.log.debug(f"Dispatch reply:\n{common.format_xml(reply.xml)}")

        if use_lock:
            if datastore == "candidate":
                device.log.debug("Committing changes")
                session.commit()
            device.log.debug(f"Unlocking {datastore} datastore")
            session.unlock(target=datastore)
    device.log.info(
        f"Executed {len(common.args.files)} dispatch requests, took {time.monotonic() - start:.3f} seconds"
    )


def _rfc3339(dt) -> str:
    return dt.astimezone(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def handle_notification(device, notification):
    """Log a received notification, or append it to the device's notification file."""
    xml = notification.notification_xml
    if isinstance(xml, bytes):
        xml = xml.decode()
    xml = common.format_xml(xml)
    event_time = None
    try:
        root = etree.fromstring(xml.encode())
        event_time = root.findtext(f"{{{NOTIFICATION_NS}}}eventTime")
    except etree.XMLSyntaxError:
        pass
    device.log.info(f"Received notification, timestamp: {event_time}")

    if getattr(common.args, "save", False):
        name = device.output_name("notifications.xml")
        try:
            with open(name, mode="a") as f:
                f.write(xml + "\n")
        except OSError as e:
            device.log.warning(f"Failed to open file for writing: {e}")
    else:
        device.log.info(f"Notification:\n{xml}")


def wait_notifications(device, session):
    """Pump notifications until the device context is cancelled."""
    while not device.ctx.cancelled:
        if not session.connected:
            raise NetconfOpsError("netconf session closed by device")
        notification = session.take_notification(block=True, timeout=NOTIFICATION_POLL)
        if notification is not None:
            handle_notification(device, notification)


def cmd_notification(device, session):
    """List notification streams, or subscribe and wait until cancelled."""
    start = time.monotonic()
    if getattr(common.args, "get_streams", False):
        reply = session.get(filter=("subtree", STREAMS_FILTER))
        device.log.info(f"Available streams:\n{common.format_xml(reply.xml)}")
        device.log.info(
            f"Fetched available notifications streams, took {time.monotonic() - start:.3f} seconds"
        )
        return

    stream = common.args.stream
    duration = getattr(common.args, "duration", None)
    if duration:
        now = datetime.datetime.now(datetime.timezone.utc)
        session.create_subscription(
            stream_name=stream,
            start_time=_rfc3339(now),
            stop_time=_rfc3339(now + datetime.timedelta(seconds=duration)),
        )
        device.log.info(
            f"Created subscription with duration: {duration}s, took {time.monotonic() - start:.3f} seconds"
        )
    else:
        session.create_subscription(stream_name=stream)
        device.log.info(f"Created subscription, took {time.monotonic() - start:.3f} seconds")

    wait_notifications(device, session)
    device.log.info(f"Subscription {stream} ended, duration {time.monotonic() - start:.3f} seconds")
