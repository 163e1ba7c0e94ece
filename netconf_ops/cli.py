#
#   Copyright ©︎2022-2025 AIKAWA Shigechika
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

import argparse
import re
import signal
import sys
from logging import getLogger
import logging
import logging.config
import os

if os.path.isfile("logging.ini"):
    logging.config.fileConfig("logging.ini")
else:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
logger = logging.getLogger(__name__)

from netconf_ops import __version__ as version
from netconf_ops import commands
from netconf_ops import common
from netconf_ops.exceptions import ParallelError
from netconf_ops.parallel import run_parallel

# the device keeps the session open after stop-time, so allow it some slack
SUBSCRIPTION_GRACE = 5

_DURATION = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+(?:\.\d+)?)s)?$")


def duration_type(value) -> float:
    """argparse type for durations like 90, 45s, 12m30s or 2h30m45s; returns seconds."""
    try:
        return float(value)
    except ValueError:
        pass
    m = _DURATION.match(value)
    if not value or m is None:
        raise argparse.ArgumentTypeError(f"invalid duration: {value!r} (e.g. 2h30m45s)")
    hours, minutes, seconds = m.groups()
    return int(hours or 0) * 3600 + int(minutes or 0) * 60 + float(seconds or 0)


def setup_logging(args):
    if args.logfile:
        try:
            handler = logging.FileHandler(args.logfile, mode="w")
        except OSError as e:
            logger.warning(f"Failed to open logging file: {e}. Using default logger")
        else:
            root = logging.getLogger()
            handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s'))
            for h in list(root.handlers):
                root.removeHandler(h)
            root.addHandler(handler)
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug logging enabled")


def install_signal_handlers(ctx):
    """Cancel ctx, and with it every device context, on SIGINT/SIGTERM."""
    def handler(signum, frame):
        logger.warning(f"Received signal {signal.Signals(signum).name}, exiting all notification subscriptions...")
        ctx.cancel()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def build_parser():
    # 共通オプション用の親パーサー
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        "-c", "--config", default=None, type=str,
        help="config filename (default: netconf-ops.ini or ~/.config/netconf-ops/netconf-ops.ini)",
    )
    parent.add_argument("-u", "--username", default=None, help="SSH username or env NETCONF_USERNAME (default: admin)")
    parent.add_argument("-p", "--password", default=None, help="SSH password or env NETCONF_PASSWORD (default: admin)")
    parent.add_argument("-P", "--port", default=None, type=int, help="Netconf port or env NETCONF_PORT (default: 830)")
    targets = parent.add_mutually_exclusive_group()
    targets.add_argument("-i", "--inventory", default=None, help="inventory file, one 'address [suffix]' per line")
    targets.add_argument(
        "--host", action="append", default=None,
        help="IP or IP's of devices to connect, repeat or separate with commas",
    )
    parent.add_argument("--debug", action="store_true", help="debug output")
    parent.add_argument("--logfile", default=None, help="log to file instead of stdout")
    parent.add_argument(
        "--workers", type=int, default=None,
        help="parallel workers (default: number of CPUs)",
    )
    parent.add_argument(
        "--no-multiplexing", dest="no_multiplexing", action="store_true", default=None,
        help="open one jump host connection per device instead of sharing it",
    )

    parser = argparse.ArgumentParser(
        prog="netconf-ops",
        description="netconf-ops: run NETCONF operations on network devices in parallel",
    )
    parser.add_argument("--version", action="version", version="%(prog)s " + version)
    subparsers = parser.add_subparsers(dest="subcommand")

    # get
    p_get = subparsers.add_parser("get", parents=[parent], help="execute get rpc")
    p_get.add_argument("-f", "--filter", dest="filter_file", default=None, help="file containing subtree filters, or stdin")
    p_get.add_argument(
        "-d", "--with-defaults", dest="with_defaults", default=None,
        choices=["report-all", "report-all-tagged", "trim", "explicit"],
    )
    p_get.add_argument("--save", action="store_true", help="save output to file")

    # get-config
    p_get_config = subparsers.add_parser("get-config", parents=[parent], help="execute get-config rpc")
    p_get_config.add_argument("-s", "--source", default="running", choices=["running", "candidate", "startup"])
    p_get_config.add_argument("-f", "--filter", dest="filter_file", default=None, help="file containing subtree filters")
    p_get_config.add_argument(
        "-d", "--with-defaults", dest="with_defaults", default=None,
        choices=["report-all", "report-all-tagged", "trim", "explicit"],
    )
    p_get_config.add_argument("--save", action="store_true", help="save output to file")

    # edit-config
    p_edit = subparsers.add_parser("edit-config", parents=[parent], help="execute edit-config rpc")
    p_edit.add_argument("-f", "--file", default=None, help="stdin, file or directory containing xml files")
    p_edit.add_argument(
        "-d", "--default-operation", dest="default_operation", default="merge",
        choices=["merge", "replace", "none"],
    )
    p_edit.add_argument(
        "-t", "--test-option", dest="test_option", default=None,
        choices=["test-then-set", "set", "test-only"],
    )
    p_edit.add_argument("--copy", action="store_true", help="run copy-config running to startup after edits")

    # copy-config
    p_copy = subparsers.add_parser("copy-config", parents=[parent], help="execute copy-config rpc")
    source = p_copy.add_mutually_exclusive_group(required=True)
    source.add_argument("-s", "--source", default=None, help="source configuration datastore")
    source.add_argument("-S", "--source-url", dest="source_url", default=None, help="source configuration url")
    target = p_copy.add_mutually_exclusive_group(required=True)
    target.add_argument("-t", "--target", default=None, help="target configuration datastore")
    target.add_argument("-T", "--target-url", dest="target_url", default=None, help="target configuration url")

    # dispatch
    p_dispatch = subparsers.add_parser("dispatch", parents=[parent], help="execute user-defined rpc")
    p_dispatch.add_argument("-f", "--file", default=None, help="stdin, file or directory containing xml files")
    p_dispatch.add_argument("-l", "--lock", action="store_true", help="run with datastore lock")

    # notification
    p_notif = subparsers.add_parser("notification", parents=[parent], help="execute create-subscription rpc")
    p_notif.add_argument("--get", dest="get_streams", action="store_true", help="get available notification streams")
    p_notif.add_argument("-s", "--stream", default="NETCONF", help="stream to subscribe")
    p_notif.add_argument(
        "-d", "--duration", type=duration_type, default=None,
        help="duration for subscription, e.g. 2h30m45s",
    )
    p_notif.add_argument("--save", action="store_true", help="append notifications to file")

    return parser


def prepare_inputs(args) -> bool:
    """Read filters and RPC payload files for the subcommand; True on error."""
    try:
        if args.subcommand == "get":
            args.filters = common.read_filters(args.filter_file)
            if not args.filters:
                logger.error("Failed to read filters, error: no file or stdin available")
                return True
        elif args.subcommand == "get-config":
            args.filters = common.read_filters(args.filter_file) if args.filter_file else ""
        elif args.subcommand in ("edit-config", "dispatch"):
            args.files = common.read_files(args.file)
    except OSError as e:
        logger.error(f"Failed to read input, error: {e}")
        return True
    return False


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    # サブコマンドなし → ヘルプ表示
    if args.subcommand is None:
        parser.print_help()
        return 0

    if args.host:
        args.host = [h.strip() for value in args.host for h in value.split(",") if h.strip()]

    setup_logging(args)
    common.args = args
    common.read_config(args.config)

    logger.debug("start")

    if prepare_inputs(args):
        return 1

    dispatch = {
        "get": commands.cmd_get,
        "get-config": commands.cmd_get_config,
        "edit-config": commands.cmd_edit_config,
        "copy-config": commands.cmd_copy_config,
        "dispatch": commands.cmd_dispatch,
        "notification": commands.cmd_notification,
    }
    func = dispatch[args.subcommand]

    ctx = common.CancelContext()
    devices = common.get_devices(ctx)
    workers = common.get_setting("workers", None, int)
    keepalive = False
    timer = None
    if args.subcommand == "notification":
        install_signal_handlers(ctx)
        if args.duration:
            timer = ctx.cancel_after(args.duration + SUBSCRIPTION_GRACE)
        if not args.get_streams:
            # 購読はキャンセルまで戻らないため、デバイスごとにワーカーが必要
            keepalive = True
            workers = workers or len(devices)

    try:
        run_parallel(
            devices,
            func,
            multiplexing=common.use_multiplexing(),
            keepalive=keepalive,
            max_workers=workers,
        )
    except ParallelError as e:
        logger.error(f"Failed to run netconf, error: {e}")
        return 1
    finally:
        if timer is not None:
            timer.cancel()

    logger.debug("end")
    return 0


if __name__ == "__main__":
    sys.exit(main())  # pragma: no cover
