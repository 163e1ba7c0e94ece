"""Common utilities: settings, inventory loading, device records, cancellation, input files."""

from dataclasses import dataclass, field
from lxml import etree
import configparser
import datetime
import logging
import os
import sys
import threading
from logging import getLogger

logger = getLogger(__name__)

config = None
args = None

DEFAULT_CONFIG = "netconf-ops.ini"
DEFAULT_USERNAME = "admin"
DEFAULT_PASSWORD = "admin"
DEFAULT_PORT = 830
ENV_PREFIX = "NETCONF_"


class CancelContext:
    """Cancellation signal shared down a tree of contexts.

    Cancelling a context cancels every context derived from it with
    :meth:`child`. A child of an already cancelled parent starts cancelled.
    """

    def __init__(self, parent=None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children = []
        if parent is not None:
            parent._adopt(self)

    def child(self):
        return CancelContext(self)

    def _adopt(self, child):
        with self._lock:
            if not self._event.is_set():
                self._children.append(child)
                return
        child.cancel()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            children, self._children = self._children, []
        for child in children:
            child.cancel()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout=None) -> bool:
        """Block until cancelled or timeout; return True if cancelled."""
        return self._event.wait(timeout)

    def cancel_after(self, delay) -> threading.Timer:
        """Schedule a delayed cancel; the returned timer can be stopped with cancel()."""
        timer = threading.Timer(delay, self.cancel)
        timer.daemon = True
        timer.start()
        return timer


class DeviceLogger(logging.LoggerAdapter):
    """Prefix every message with the device address."""

    def process(self, msg, kwargs):
        return f"[{self.extra['device']}] {msg}", kwargs


def device_logger(address):
    return DeviceLogger(getLogger("netconf_ops.device"), {"device": address})


@dataclass
class Device:
    """One fleet member. Identity is the address."""

    address: str
    port: int = DEFAULT_PORT
    username: str = DEFAULT_USERNAME
    password: str = field(default=DEFAULT_PASSWORD, repr=False)
    suffix: str = ""
    ctx: CancelContext = field(default_factory=CancelContext, repr=False)
    log: logging.LoggerAdapter = field(default=None, repr=False)

    def __post_init__(self):
        if self.log is None:
            self.log = device_logger(self.address)

    def output_name(self, default):
        """File name for saved output: ``<address>-<suffix>`` or ``<address>-<default>``."""
        if self.suffix:
            return f"{self.address}-{self.suffix}"
        return f"{self.address}-{default}"


def get_default_config():
    """Search for config file in standard locations."""
    # カレントディレクトリ
    if os.path.isfile(DEFAULT_CONFIG):
        return DEFAULT_CONFIG
    # XDG_CONFIG_HOME（未設定なら ~/.config）
    xdg = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    xdg_path = os.path.join(xdg, "netconf-ops", DEFAULT_CONFIG)
    if os.path.isfile(xdg_path):
        return xdg_path
    return DEFAULT_CONFIG


def read_config(path=None):
    """Read the optional INI file holding [DEFAULT] connection settings."""
    global config
    config = configparser.ConfigParser(allow_no_value=True)
    read = config.read(path or get_default_config())
    if read:
        logger.debug(f"read config {read[0]}")
        for key in config.defaults():
            if key != "password":
                logger.debug(f"DEFAULT > {key} : {config.defaults()[key]}")
    return config


def get_setting(name, fallback=None, cast=str):
    """Resolve a setting: command-line flag, NETCONF_* env var, INI [DEFAULT], fallback."""
    value = getattr(args, name, None)
    if value is not None:
        return value
    env = os.environ.get(ENV_PREFIX + name.upper())
    if env:
        return cast(env)
    if config is not None and config.defaults().get(name):
        return cast(config.defaults()[name])
    return fallback


def use_multiplexing() -> bool:
    """Jump-host multiplexing is on unless disabled by flag, env or INI."""
    if getattr(args, "no_multiplexing", False):
        return False
    if os.environ.get(ENV_PREFIX + "NO_MULTIPLEXING", "").lower() in ("1", "true", "yes"):
        return False
    if config is not None:
        return config.getboolean("DEFAULT", "multiplexing", fallback=True)
    return True


def parse_inventory_line(text):
    """Parse one ``address [suffix]`` line; return None for blank lines and comments."""
    text = text.strip()
    if not text or text.startswith("#"):
        return None
    fields = text.split()
    suffix = fields[1] if len(fields) >= 2 else ""
    return fields[0], suffix


def read_inventory(path):
    with open(path) as f:
        return [host for host in map(parse_inventory_line, f) if host is not None]


def get_devices(ctx=None) -> list[Device]:
    """Build Device records from --host addresses or the inventory file."""
    username = get_setting("username", DEFAULT_USERNAME)
    password = get_setting("password", DEFAULT_PASSWORD)
    port = get_setting("port", DEFAULT_PORT, int)

    hosts = getattr(args, "host", None) or []
    if not hosts and os.environ.get(ENV_PREFIX + "HOST"):
        hosts = [h.strip() for h in os.environ[ENV_PREFIX + "HOST"].split(",") if h.strip()]
    inventory = get_setting("inventory")

    if hosts:
        entries = [(host, "") for host in hosts]
    elif inventory:
        try:
            entries = read_inventory(inventory)
        except OSError as e:
            logger.error(f"failed to read inventory {inventory}: {e}")
            sys.exit(1)
    else:
        logger.error("either --host or --inventory, -i must be specified")
        sys.exit(1)

    devices = []
    for address, suffix in entries:
        devices.append(
            Device(
                address=address,
                port=port,
                username=username,
                password=password,
                suffix=suffix,
                ctx=ctx.child() if ctx is not None else CancelContext(),
            )
        )
    logger.debug(f"{len(devices)} devices loaded")
    return devices


def stdin_has_data() -> bool:
    try:
        return not os.isatty(sys.stdin.fileno())
    except (AttributeError, OSError, ValueError):
        return False


def read_filters(path=None) -> str:
    """Read filter XML from a file or stdin; empty string when neither is given."""
    if path:
        with open(path) as f:
            return f.read()
    if stdin_has_data():
        return sys.stdin.read()
    return ""


def _read_file(path) -> str:
    with open(path) as f:
        data = f.read()
    return data[:-1] if data.endswith("\n") else data


def read_files(path=None) -> list[str]:
    """Read RPC payloads from a file, every file of a directory (sorted), or stdin."""
    if path:
        if os.path.isdir(path):
            return [
                _read_file(os.path.join(path, name))
                for name in sorted(os.listdir(path))
                if not os.path.isdir(os.path.join(path, name))
            ]
        return [_read_file(path)]
    if stdin_has_data():
        return [sys.stdin.read()]
    raise FileNotFoundError("no value, file or stdin available")


def format_xml(text) -> str:
    """Pretty print XML text; return the input unchanged when it does not parse."""
    text = text.strip("\n")
    parser = etree.XMLParser(remove_blank_text=True)
    try:
        root = etree.fromstring(text.encode(), parser)
    except etree.XMLSyntaxError:
        return text
    return etree.tostring(root, pretty_print=True, encoding="unicode").rstrip("\n")


def timestamp() -> str:
    return datetime.date.today().strftime("%Y_%m_%d")
