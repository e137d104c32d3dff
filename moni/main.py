#
# Copyright (C) 2024 Monibot
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
import logging
import signal
import sys
from threading import Event
from types import FrameType
from typing import List, NoReturn, Optional, Sequence

import configargparse
import humanfriendly
from requests import RequestException

from moni import __version__
from moni.client import DEFAULT_API_SERVER_ADDRESS, DEFAULT_DELAY, DEFAULT_TRIALS, MonibotAPIClient
from moni.exceptions import APIError
from moni.log import get_logger_adapter, initial_root_logger_setup
from moni.moni_types import integer_range, non_empty_string, timespan_range
from moni.platform import PlatformProvider, PsutilPlatform, is_linux
from moni.procfs import ProcfsPlatform
from moni.sample_loop import MachineSampleLoop
from moni.sampler import Sampler
from moni.state import init_state
from moni.utils import mask_secret

logger: logging.LoggerAdapter = get_logger_adapter(__name__)

DEFAULT_SAMPLE_INTERVAL = 5 * 60
LOOP_CHECK_INTERVAL = 1
DEFAULT_LOG_MAX_SIZE = 1024 * 1024 * 5
DEFAULT_LOG_BACKUP_COUNT = 1

MIN_TRIALS, MAX_TRIALS = 1, 100
MIN_DELAY, MAX_DELAY = 1, 24 * 60 * 60
MIN_SAMPLE_INTERVAL, MAX_SAMPLE_INTERVAL = 60, 24 * 60 * 60

PLATFORM_PSUTIL = "psutil"
PLATFORM_PROCFS = "procfs"

EXIT_ERROR = 1
EXIT_USAGE = 2

API_COMMANDS = ("ping", "watchdogs", "watchdog", "machines", "machine", "sample", "metrics", "metric")
LOCAL_COMMANDS = ("help", "config", "version")

COMMANDS_HELP = """commands:
  ping                 Ping the Monibot API.
  watchdogs            List watchdogs.
  watchdog <watchdogId>
                       Get watchdog by id.
  machines             List machines.
  machine <machineId>  Get machine by id.
  sample <machineId>   Send resource usage (load/cpu/mem/disk/net) samples for a machine, every
                       --sample-interval, until interrupted.
  metrics              List metrics.
  metric <metricId>    Get metric by id.
  config               Show config values.
  version              Show moni program version.
  help                 Show this help page.

exit codes:
  0 ok, 1 error, 2 wrong user input
"""


def get_parser() -> configargparse.ArgumentParser:
    parser = configargparse.ArgumentParser(
        prog="moni",
        description="Moni - A command line tool for https://monibot.io",
        epilog=COMMANDS_HELP,
        formatter_class=configargparse.RawDescriptionHelpFormatter,
        auto_env_var_prefix="monibot_",
        add_config_file_help=True,
        add_env_var_help=False,
        default_config_files=["/etc/moni/config.ini"],
    )
    parser.add_argument("--config", is_config_file=True, help="Config file path")
    parser.add_argument(
        "--url",
        type=non_empty_string,
        default=DEFAULT_API_SERVER_ADDRESS,
        help="Monibot URL (default: %(default)s), can also be set via MONIBOT_URL",
    )
    parser.add_argument(
        "--api-key",
        dest="api_key",
        default="",
        help="Monibot API Key, can also be set via MONIBOT_API_KEY (recommended, the flag shows up in 'ps aux')",
    )
    parser.add_argument(
        "--trials",
        type=integer_range(MIN_TRIALS, MAX_TRIALS),
        default=DEFAULT_TRIALS,
        help="Max. send trials (default: %(default)s), can also be set via MONIBOT_TRIALS",
    )
    parser.add_argument(
        "--delay",
        type=timespan_range(MIN_DELAY, MAX_DELAY),
        default=DEFAULT_DELAY,
        help="Delay between trials, e.g '5s' (default: 5s), can also be set via MONIBOT_DELAY",
    )
    parser.add_argument(
        "--sample-interval",
        dest="sample_interval",
        type=timespan_range(MIN_SAMPLE_INTERVAL, MAX_SAMPLE_INTERVAL),
        default=DEFAULT_SAMPLE_INTERVAL,
        help="Machine sample interval, e.g '5m' (default: 5m), only relevant for the 'sample' command,"
        " can also be set via MONIBOT_SAMPLE_INTERVAL",
    )
    parser.add_argument(
        "--platform",
        choices=[PLATFORM_PSUTIL, PLATFORM_PROCFS],
        default=PLATFORM_PSUTIL,
        help="How resource usage is read: through psutil, or directly from /proc (linux only)"
        " (default: %(default)s)",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "-v", "--verbose", action="store_true", default=False, dest="verbose", help="Verbose output (MONIBOT_VERBOSE)"
    )

    logging_options = parser.add_argument_group("logging")
    logging_options.add_argument("--log-file", action="store", type=str, dest="log_file", default=None)
    logging_options.add_argument(
        "--log-rotate-max-size",
        action="store",
        type=integer_range(1, sys.maxsize),
        dest="log_rotate_max_size",
        default=DEFAULT_LOG_MAX_SIZE,
    )
    logging_options.add_argument(
        "--log-rotate-backup-count",
        action="store",
        type=integer_range(1, sys.maxsize),
        dest="log_rotate_backup_count",
        default=DEFAULT_LOG_BACKUP_COUNT,
    )

    parser.add_argument("command", nargs="?", choices=LOCAL_COMMANDS + API_COMMANDS, default="help")
    parser.add_argument("command_args", nargs="*", metavar="ARG")
    return parser


def parse_cmd_args(argv: Optional[Sequence[str]] = None) -> configargparse.Namespace:
    return get_parser().parse_args(argv)


def format_config(args: configargparse.Namespace) -> List[str]:
    return [
        f"url             {args.url}",
        f"apiKey          {mask_secret(args.api_key)}",
        f"trials          {args.trials}",
        f"delay           {humanfriendly.format_timespan(args.delay)}",
        f"sampleInterval  {humanfriendly.format_timespan(args.sample_interval)}",
        f"platform        {args.platform}",
        f"verbose         {args.verbose}",
    ]


def print_machines(machines: List[dict]) -> None:
    print(f"{'Id':<35} | Name")
    for machine in machines:
        print(f"{machine.get('id', ''):<35} | {machine.get('name', '')}")


def print_watchdogs(watchdogs: List[dict]) -> None:
    print(f"{'Id':<35} | {'Name':<25} | IntervalMillis")
    for watchdog in watchdogs:
        print(f"{watchdog.get('id', ''):<35} | {watchdog.get('name', ''):<25} | {watchdog.get('intervalMillis', '')}")


def print_metrics(metrics: List[dict]) -> None:
    print(f"{'Id':<35} | {'Name':<25} | Type")
    for metric in metrics:
        print(f"{metric.get('id', ''):<35} | {metric.get('name', ''):<25} | {metric.get('type', '')}")


def get_platform(name: str) -> PlatformProvider:
    if name == PLATFORM_PROCFS:
        return ProcfsPlatform()
    return PsutilPlatform()


def _fatal(exit_code: int, message: str) -> NoReturn:
    logger.error(message)
    sys.exit(exit_code)


def _command_arg(args: configargparse.Namespace, what: str) -> str:
    if not args.command_args or not args.command_args[0].strip():
        _fatal(EXIT_USAGE, f"empty {what}, usage: moni {args.command} <{what}>")
    return str(args.command_args[0])


def verify_preconditions(args: configargparse.Namespace) -> None:
    if not args.api_key:
        _fatal(EXIT_USAGE, "empty apiKey, set it via MONIBOT_API_KEY or --api-key")
    if args.platform == PLATFORM_PROCFS and not is_linux():
        _fatal(EXIT_USAGE, f"--platform {PLATFORM_PROCFS} is only supported on linux")


def run_sample_loop(args: configargparse.Namespace, client: MonibotAPIClient, machine_id: str) -> None:
    state = init_state()
    stop_event = Event()

    def sigterm_handler(sig: int, frame: Optional[FrameType]) -> None:
        logger.info("Got SIGTERM, stopping...")
        stop_event.set()

    signal.signal(signal.SIGTERM, sigterm_handler)

    sampler = Sampler(get_platform(args.platform))
    loop = MachineSampleLoop(sampler, client, machine_id, args.sample_interval, state=state, stop_event=stop_event)
    loop.start()
    try:
        # the main thread only waits for SIGTERM / Ctrl-C, or for the loop thread to die
        while loop.is_running() and not stop_event.wait(LOOP_CHECK_INTERVAL):
            pass
        if not stop_event.is_set():
            _fatal(EXIT_ERROR, "Sample loop stopped unexpectedly")
    finally:
        loop.stop()


def run_command(args: configargparse.Namespace, client: MonibotAPIClient) -> None:
    command = args.command
    if command == "ping":
        client.get_ping()
        print("ok")
    elif command == "watchdogs":
        print_watchdogs(client.get_watchdogs())
    elif command == "watchdog":
        watchdog_id = _command_arg(args, "watchdogId")
        print_watchdogs([client.get_watchdog(watchdog_id)])
    elif command == "machines":
        print_machines(client.get_machines())
    elif command == "machine":
        machine_id = _command_arg(args, "machineId")
        print_machines([client.get_machine(machine_id)])
    elif command == "sample":
        machine_id = _command_arg(args, "machineId")
        run_sample_loop(args, client, machine_id)
    elif command == "metrics":
        print_metrics(client.get_metrics())
    elif command == "metric":
        metric_id = _command_arg(args, "metricId")
        print_metrics([client.get_metric(metric_id)])
    else:
        raise AssertionError(f"unexpected command {command!r}")


def main() -> None:
    args = parse_cmd_args()

    if args.command == "help":
        get_parser().print_help()
        return
    if args.command == "version":
        print(f"moni {__version__}")
        return

    global logger
    logger = initial_root_logger_setup(
        logging.DEBUG if args.verbose else logging.INFO,
        args.log_file,
        args.log_rotate_max_size,
        args.log_rotate_backup_count,
    )

    if args.command == "config":
        for line in format_config(args):
            print(line)
        return

    verify_preconditions(args)

    try:
        client = MonibotAPIClient(
            api_key=args.api_key,
            server_address=args.url,
            trials=args.trials,
            delay=args.delay,
            curlify_requests=args.verbose,
        )
        run_command(args, client)
    except KeyboardInterrupt:
        pass
    except APIError as e:
        _fatal(EXIT_ERROR, f"Server error: {e}")
    except RequestException as e:
        _fatal(EXIT_ERROR, f"Failed to connect to server {args.url!r}: {e}")
    except Exception:
        logger.exception("Unexpected error occurred")
        sys.exit(EXIT_ERROR)


if __name__ == "__main__":
    main()
