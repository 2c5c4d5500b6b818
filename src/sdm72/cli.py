"""
Command line interface.

    sdm72 [options] tcp HOST[:PORT] COMMAND ...
    sdm72 [options] rtu [--device ...] [--baud-rate ...] COMMAND ...

Errors are printed and the process exits with the error's exit code.
"""

import argparse
import json
import signal
import sys
from typing import List, Optional, Tuple

from sdm72 import __version__
from sdm72.config import Settings, format_duration, parse_duration, settings as default_settings
from sdm72.daemon import DaemonPolicy, PollingDaemon
from sdm72.exceptions import ConfigError, SDM72Error
from sdm72.logger import get_logger, setup_logging
from sdm72.mqtt import MqttConfig, MqttPublisher, Publisher, StdoutPublisher
from sdm72.protocol import ReadAllResult
from sdm72.registers import (
    BAUD_RATE_CODES,
    PARITY_AND_STOP_BIT_CODES,
    PULSE_CONSTANT_CODES,
    PULSE_ENERGY_TYPE_CODES,
    REGISTER_MAP,
    SYSTEM_TYPE_CODES,
)
from sdm72.safe_client import SafeClient
from sdm72.transport import ModbusTransport, minimum_rtu_delay

logger = get_logger("sdm72")

LOG_LEVELS = ["ERROR", "WARNING", "INFO", "DEBUG"]

DEFAULT_PASSWORD = 1000


def parse_tcp_address(text: str, default_port: int = 502) -> Tuple[str, int]:
    """Split ``host[:port]`` (``[v6addr]:port`` for IPv6) into host and port."""
    host, port = text, default_port
    if text.startswith("["):
        end = text.find("]")
        if end < 0:
            raise ConfigError(f"Invalid address: {text}")
        host = text[1:end]
        rest = text[end + 1:]
        if rest:
            if not rest.startswith(":"):
                raise ConfigError(f"Invalid address: {text}")
            port = rest[1:]
    elif text.count(":") == 1:
        host, port = text.split(":")
    if not host:
        raise ConfigError(f"Invalid address: {text}")
    try:
        port = int(port)
    except ValueError:
        raise ConfigError(f"Invalid port in address: {text}") from None
    if not 1 <= port <= 65535:
        raise ConfigError(f"Invalid port in address: {text}")
    return host, port


def _duration(text: str) -> float:
    try:
        return parse_duration(text)
    except ConfigError as e:
        raise argparse.ArgumentTypeError(e.message) from e


def _ranged_int(low: int, high: int):
    def parse(text: str) -> int:
        try:
            value = int(text)
        except ValueError:
            raise argparse.ArgumentTypeError(f"invalid integer: {text!r}") from None
        if not low <= value <= high:
            raise argparse.ArgumentTypeError(f"must be in the range {low}..{high}")
        return value
    return parse


def _add_commands(parser: argparse.ArgumentParser, config: Settings) -> None:
    commands = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    daemon = commands.add_parser("daemon", help="Poll all values continuously and publish them")
    daemon.add_argument("--poll-interval", type=_duration, default=config.poll_interval_s,
                        help=f"Time between polls (default {format_duration(config.poll_interval_s)})")
    modes = daemon.add_subparsers(dest="mode", metavar="MODE", required=True)
    modes.add_parser("stdout", help="Print samples to stdout")
    mqtt_mode = modes.add_parser("mqtt", help="Publish samples to an MQTT broker")
    mqtt_mode.add_argument("--config-file", default=config.mqtt_config_file,
                           help=f"YAML configuration file (default {config.mqtt_config_file})")

    commands.add_parser("read-all", help="Read all measurements")
    commands.add_parser("read-all-settings", help="Read all settings")

    read = commands.add_parser("read", help="Read a single register")
    read.add_argument("name", choices=[d.name for d in REGISTER_MAP.readable()], metavar="NAME")

    write = commands.add_parser("write", help="Write a single setting")
    write.add_argument("name", choices=[d.name for d in REGISTER_MAP.writable()], metavar="NAME")
    write.add_argument("value", type=float)
    write.add_argument("--password", type=_ranged_int(0, 9999),
                       help="Password used when the meter is not yet authorized")

    password = commands.add_parser("password", help="Request key parameter programming authorization")
    password.add_argument("password", type=_ranged_int(0, 9999))

    def setting(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("--password", type=_ranged_int(0, 9999),
                         help="Password used when the meter is not yet authorized")
        return sub

    setting("set-wiring-type", "Set the wiring type").add_argument(
        "wiring_type", choices=sorted(SYSTEM_TYPE_CODES))
    setting("set-parity-and-stop-bit", "Set the RS485 parity and stop bits").add_argument(
        "parity_and_stop_bit", choices=sorted(PARITY_AND_STOP_BIT_CODES))
    setting("set-baud-rate", "Set the RS485 baud rate").add_argument(
        "baud_rate", type=int, choices=sorted(BAUD_RATE_CODES))
    setting("set-address", "Set the RS485 device address").add_argument(
        "address", type=_ranged_int(1, 247))
    setting("set-pulse-constant", "Set the pulse output constant in imp/kWh").add_argument(
        "pulse_constant", type=int, choices=sorted(PULSE_CONSTANT_CODES, reverse=True))
    setting("set-pulse-width", "Set the pulse output width in ms").add_argument(
        "pulse_width", type=_ranged_int(0, 65535))
    setting("set-password", "Set the meter password").add_argument(
        "new_password", type=_ranged_int(0, 9999))
    setting("set-auto-scroll-time", "Set the display auto scroll time in seconds").add_argument(
        "auto_scroll_time", type=_ranged_int(0, 60))
    setting("set-backlight-time", "Set the backlight time in minutes (0 always on, 121 always off)").add_argument(
        "backlight_time", type=_ranged_int(0, 121))
    setting("set-pulse-energy-type", "Set the energy type of the pulse output").add_argument(
        "pulse_energy_type", choices=sorted(PULSE_ENERGY_TYPE_CODES))
    setting("reset-historical-data", "Reset the resettable energy counters")


def build_parser(config: Settings = default_settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sdm72", description="Eastron SDM72D-M v2 energy meter tool")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More output, repeatable")
    parser.add_argument("-q", "--quiet", action="count", default=0, help="Less output, repeatable")
    parser.add_argument("--no-json", action="store_true", help="Print text instead of JSON")
    parser.add_argument("--timeout", type=_duration, default=config.timeout_s,
                        help=f"Modbus transaction timeout (default {format_duration(config.timeout_s)})")
    parser.add_argument("--delay", type=_duration, default=config.delay_s,
                        help=f"Pause between Modbus transactions (default {format_duration(config.delay_s)})")

    connections = parser.add_subparsers(dest="connection", metavar="CONNECTION", required=True)

    tcp = connections.add_parser("tcp", help="Connect over Modbus TCP")
    tcp.add_argument("address", help="HOST[:PORT]")
    _add_commands(tcp, config)

    rtu = connections.add_parser("rtu", help="Connect over Modbus RTU")
    rtu.add_argument("--device", default=config.serial_device, help=f"Serial device (default {config.serial_device})")
    rtu.add_argument("--baud-rate", type=int, choices=sorted(BAUD_RATE_CODES), default=config.baud_rate)
    rtu.add_argument("--address", type=_ranged_int(1, 247), default=config.device_address,
                     help="RS485 device address")
    rtu.add_argument("--parity-and-stop-bit", choices=sorted(PARITY_AND_STOP_BIT_CODES),
                     default=config.parity_and_stop_bit)
    _add_commands(rtu, config)
    return parser


def log_level(verbose: int, quiet: int, base: str) -> str:
    index = LOG_LEVELS.index(base) if base in LOG_LEVELS else LOG_LEVELS.index("INFO")
    index = min(max(index + verbose - quiet, 0), len(LOG_LEVELS) - 1)
    return LOG_LEVELS[index]


def check_rtu_delay(delay: float, baud_rate: int) -> float:
    """Raise a too small inter-frame delay to the RTU minimum for the baud rate."""
    minimum = minimum_rtu_delay(baud_rate)
    if delay < minimum:
        logger.warning(
            f"Your RTU delay of {format_duration(delay)} is below the minimum delay of "
            f"{format_duration(minimum)}, fallback to minimum"
        )
        return minimum
    return delay


def make_transport(args: argparse.Namespace, timeout: float) -> ModbusTransport:
    if args.connection == "tcp":
        host, port = parse_tcp_address(args.address, default_settings.tcp_port)
        return ModbusTransport.tcp(host, port, timeout=timeout)
    return ModbusTransport.rtu(
        args.device,
        baud_rate=args.baud_rate,
        parity_and_stop_bit=args.parity_and_stop_bit,
        unit_id=args.address,
        timeout=timeout,
    )


def ensure_authorization(client: SafeClient, password: Optional[int]) -> None:
    """Obtain KPPA before changing a setting, asking for the password when none was given."""
    if client.kppa().value == 1:
        return
    if password is None:
        if not sys.stdin.isatty():
            raise ConfigError("Authorization is required, pass --password")
        answer = input(f"Authorization is required, please enter password [{DEFAULT_PASSWORD}]: ").strip()
        try:
            password = int(answer) if answer else DEFAULT_PASSWORD
        except ValueError:
            raise ConfigError(f"Invalid password: {answer}") from None
    client.set_kppa(password)
    logger.debug("Authorization granted")


def print_result(result: ReadAllResult, no_json: bool) -> None:
    if no_json:
        print(result.text())
    else:
        print(json.dumps(result.to_dict(), indent=2))


def run_command(client: SafeClient, args: argparse.Namespace) -> None:
    command = args.command
    if command == "read-all":
        print_result(client.read_all(), args.no_json)
    elif command == "read-all-settings":
        print_result(client.read_all_settings(), args.no_json)
    elif command == "read":
        measurement = client.read(args.name)
        print(measurement.text() if args.no_json else json.dumps({measurement.name: measurement.value}))
    elif command == "password":
        client.set_kppa(args.password)
    else:
        ensure_authorization(client, args.password)
        if command == "write":
            client.write(args.name, args.value)
            print(f"{args.name} successfully changed to: {args.value:g}")
        elif command == "set-wiring-type":
            client.set_system_type(SYSTEM_TYPE_CODES[args.wiring_type])
            print(f"Wiring type successfully changed to: {args.wiring_type}")
        elif command == "set-parity-and-stop-bit":
            client.set_parity_and_stop_bit(PARITY_AND_STOP_BIT_CODES[args.parity_and_stop_bit])
            print(f"Parity and stop bit successfully changed to: {args.parity_and_stop_bit}")
        elif command == "set-baud-rate":
            client.set_baud_rate(BAUD_RATE_CODES[args.baud_rate])
            print(f"Baud rate successfully changed to: {args.baud_rate}")
        elif command == "set-address":
            client.set_address(args.address)
            print(f"Address successfully changed to: {args.address}")
        elif command == "set-pulse-constant":
            client.set_pulse_constant(PULSE_CONSTANT_CODES[args.pulse_constant])
            print(f"Pulse constant successfully changed to: {args.pulse_constant} imp/kWh")
        elif command == "set-pulse-width":
            client.set_pulse_width(args.pulse_width)
            print(f"Pulse width successfully changed to: {args.pulse_width} ms")
        elif command == "set-password":
            client.set_password(args.new_password)
            print(f"Password successfully changed to: {args.new_password}")
        elif command == "set-auto-scroll-time":
            client.set_auto_scroll_time(args.auto_scroll_time)
            print(f"Auto scroll time successfully changed to: {args.auto_scroll_time} s")
        elif command == "set-backlight-time":
            client.set_backlight_time(args.backlight_time)
            print(f"Backlight time successfully changed to: {args.backlight_time} min")
        elif command == "set-pulse-energy-type":
            client.set_pulse_energy_type(PULSE_ENERGY_TYPE_CODES[args.pulse_energy_type])
            print(f"Pulse energy type successfully changed to: {args.pulse_energy_type}")
        elif command == "reset-historical-data":
            client.reset_historical_data()
            print("Historical data successfully reset")
        else:
            raise ConfigError(f"Unknown command: {command}")


def make_publisher(args: argparse.Namespace) -> Publisher:
    if args.mode == "stdout":
        return StdoutPublisher(json_payload=not args.no_json)
    config = MqttConfig.load(args.config_file)
    if args.no_json:
        config = config.model_copy(update={"json_payload": False})
    publisher = MqttPublisher(config)
    publisher.connect()
    return publisher


def run_daemon(args: argparse.Namespace, timeout: float, delay: float) -> None:
    publisher = make_publisher(args)
    policy = DaemonPolicy.from_settings(
        default_settings, poll_interval=args.poll_interval, timeout=timeout, delay=delay
    )
    daemon = PollingDaemon(
        connect=lambda: SafeClient.open(make_transport(args, timeout), timeout=timeout, delay=delay),
        publisher=publisher,
        policy=policy,
    )

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping")
        daemon.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    try:
        daemon.run()
    finally:
        publisher.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(log_level(args.verbose, args.quiet, default_settings.log_level))

    try:
        timeout, delay = args.timeout, args.delay
        if timeout <= 0:
            raise ConfigError("Timeout must be greater than zero")
        if args.connection == "rtu":
            delay = check_rtu_delay(delay, args.baud_rate)

        if args.command == "daemon":
            run_daemon(args, timeout, delay)
            return 0

        with SafeClient.open(make_transport(args, timeout), timeout=timeout, delay=delay) as client:
            run_command(client, args)
    except SDM72Error as e:
        logger.error(e.message)
        return e.exit_code
    return 0


if __name__ == "__main__":
    sys.exit(main())
