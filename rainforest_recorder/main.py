# SPDX-License-Identifier: MPL-2.0
"""
Rainforest Recorder

Reads the instantaneous demand from a Rainforest EAGLE gateway, works out
the active time-of-use phase and when it changes next, and records both to
InfluxDB. Meant to be started periodically by cron or a systemd timer.

Each record-status run:
1. Fetches the demand reading from the gateway, retrying transient faults
2. Resolves the active phase, its end and the next phase from the schedule
3. Writes the demand and the phase transition to InfluxDB in one batch
4. Exits 0, or 1 if a fault surfaced (faults during the gateway's daily
   maintenance window are only logged)
"""

import argparse
import configparser
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from rainforest_recorder.day_types import DayType, HolidayCalendar, load_holiday_set
from rainforest_recorder.eagle import EagleAPIError, EagleClient
from rainforest_recorder.faults import (
    FaultSuppressionPolicy,
    MaintenanceWindow,
    parse_maintenance_window,
)
from rainforest_recorder.recorder import InfluxStore, RecordingPipeline
from rainforest_recorder.retry import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_MAX_ATTEMPTS,
    RetryPolicy,
    TransientNetworkFault,
)
from rainforest_recorder.schedule import (
    DEFAULT_TABLE,
    ScheduleError,
    ScheduleTable,
    parse_schedule,
    resolve_window,
    to_epoch,
)

# Logger will be configured later based on config/CLI args
logger = logging.getLogger(__name__)

CONFIG_SEARCH_PATHS = [
    "/etc/rainforest-recorder/rainforest-recorder.conf",
    "/run/rainforest-recorder/rainforest-recorder.conf",
    "/usr/lib/rainforest-recorder/rainforest-recorder.conf",
]

MODULE_LOGGERS = [
    'rainforest_recorder.main',
    'rainforest_recorder.eagle',
    'rainforest_recorder.retry',
    'rainforest_recorder.schedule',
    'rainforest_recorder.recorder',
    'rainforest_recorder.faults',
    'rainforest_recorder.day_types',
]


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass
class Config:
    """Application configuration."""
    # EAGLE gateway
    eagle_host: str
    eagle_username: str
    eagle_password: str
    device_id: str
    eagle_timeout: float = 10.0

    # InfluxDB
    influxdb_url: str = "http://localhost:8086"
    influxdb_org: str = ""
    influxdb_bucket: str = "rainforest"
    influxdb_token: Optional[str] = None

    # Schedule
    holidays: str = "US"  # Holiday ruleset name
    timezone: Optional[tzinfo] = None  # Local zone of the process if None
    schedule: ScheduleTable = field(default_factory=lambda: DEFAULT_TABLE)

    # Retry and maintenance
    retry_max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff: float = DEFAULT_BACKOFF_BASE
    maintenance_window: MaintenanceWindow = field(default_factory=MaintenanceWindow)

    # Logging
    logging_level: str = 'INFO'
    log_file: Optional[str] = None

    dry_run: bool = False


def find_default_config() -> Optional[str]:
    """
    Find configuration file using standard search paths.

    Returns:
        Path to first existing config file, or None if none found
    """
    for path in CONFIG_SEARCH_PATHS:
        if os.path.exists(path):
            logger.debug(f"Found configuration file: {path}")
            return path

    return None


def parse_timezone(value: str) -> tzinfo:
    """
    Parse an IANA timezone name.

    Raises:
        ValueError: If the zone is unknown
    """
    try:
        return ZoneInfo(value.strip())
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: '{value}'")


def _parse_schedule_section(parser: configparser.ConfigParser) -> ScheduleTable:
    """Build the schedule table from the [schedule] section, or the default table."""
    if parser.has_option('schedule', 'daily'):
        if parser.has_option('schedule', 'weekday') or parser.has_option('schedule', 'weekend'):
            raise ConfigurationError("Use either 'daily' or 'weekday'/'weekend' in [schedule], not both")
        return ScheduleTable.uniform(parse_schedule(parser.get('schedule', 'daily')))

    has_weekday = parser.has_option('schedule', 'weekday')
    has_weekend = parser.has_option('schedule', 'weekend')
    if not has_weekday and not has_weekend:
        return DEFAULT_TABLE
    if not (has_weekday and has_weekend):
        raise ConfigurationError("Both 'weekday' and 'weekend' must be set in [schedule]")

    return ScheduleTable({
        DayType.WEEKDAY: parse_schedule(parser.get('schedule', 'weekday')),
        DayType.WEEKEND_OR_HOLIDAY: parse_schedule(parser.get('schedule', 'weekend')),
    })


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from INI file and credentials directory.

    Args:
        config_path: Path to configuration INI file. If None, searches default locations.

    Returns:
        Config object with all settings

    Raises:
        ConfigurationError: If configuration is invalid or credentials missing
    """
    if config_path is None:
        config_path = find_default_config()
        if config_path is None:
            raise ConfigurationError(
                "No configuration file found. Searched: " + ", ".join(CONFIG_SEARCH_PATHS)
            )

    if not os.path.exists(config_path):
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(config_path)

    creds_dir = os.getenv('CREDENTIALS_DIRECTORY')
    if not creds_dir:
        raise ConfigurationError(
            "CREDENTIALS_DIRECTORY environment variable not set"
        )

    creds_path = Path(creds_dir)
    if not creds_path.exists():
        raise ConfigurationError(
            f"Credentials directory does not exist: {creds_dir}"
        )

    password_file = creds_path / "eagle_password"
    if not password_file.exists():
        raise ConfigurationError(
            f"eagle_password file not found in {creds_dir}"
        )

    # The token is only needed when writing, so it is optional here
    token_file = creds_path / "influxdb_token"
    influxdb_token = token_file.read_text().strip() if token_file.exists() else None

    try:
        config = Config(
            eagle_host=parser.get('eagle', 'host'),
            eagle_username=parser.get('eagle', 'username'),
            eagle_password=password_file.read_text().strip(),
            device_id=parser.get('eagle', 'device_id'),
            influxdb_token=influxdb_token,
        )

        if parser.has_option('eagle', 'timeout'):
            config.eagle_timeout = parser.getfloat('eagle', 'timeout')

        if parser.has_section('influxdb'):
            config.influxdb_url = parser.get('influxdb', 'url', fallback=config.influxdb_url)
            config.influxdb_org = parser.get('influxdb', 'org', fallback=config.influxdb_org)
            config.influxdb_bucket = parser.get('influxdb', 'bucket', fallback=config.influxdb_bucket)

        if parser.has_section('schedule'):
            if parser.has_option('schedule', 'holidays'):
                config.holidays = parser.get('schedule', 'holidays').strip()
            if parser.has_option('schedule', 'timezone'):
                config.timezone = parse_timezone(parser.get('schedule', 'timezone'))
            config.schedule = _parse_schedule_section(parser)

        # Fail on an unknown ruleset now rather than in the middle of a run
        load_holiday_set(config.holidays)

        if parser.has_option('retry', 'max_attempts'):
            config.retry_max_attempts = parser.getint('retry', 'max_attempts')
            if config.retry_max_attempts < 0:
                raise ConfigurationError("retry max_attempts must be non-negative")
        if parser.has_option('retry', 'backoff'):
            config.retry_backoff = parser.getfloat('retry', 'backoff')
            if config.retry_backoff < 0:
                raise ConfigurationError("retry backoff must be non-negative")

        if parser.has_option('maintenance', 'window'):
            config.maintenance_window = parse_maintenance_window(parser.get('maintenance', 'window'))

        if parser.has_option('logging', 'level'):
            config.logging_level = parser.get('logging', 'level').upper()
        if parser.has_option('logging', 'file'):
            config.log_file = parser.get('logging', 'file')

        return config

    except (configparser.NoSectionError, configparser.NoOptionError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}")
    except (ValueError, ScheduleError) as e:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {e}")


def apply_cli_overrides(config: Config, args: argparse.Namespace) -> None:
    """
    Apply command line argument overrides to configuration.

    Args:
        config: Configuration object to modify
        args: Parsed command line arguments
    """
    if getattr(args, 'dry_run', False):
        config.dry_run = True

    if args.log_level is not None:
        config.logging_level = args.log_level.upper()

    if args.verbose:
        config.logging_level = 'DEBUG'

    if args.log_file is not None:
        config.log_file = args.log_file


def configure_logging(level: str, log_file: Optional[str] = None) -> None:
    """
    Configure logging level and destination for all modules.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Append log output to this file instead of stderr
    """
    level_map = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL,
    }

    log_level = level_map.get(level.upper(), logging.INFO)

    handler: logging.Handler
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode='a')
    else:
        handler = logging.StreamHandler(sys.stderr)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s %(name)s - %(levelname)s - %(message)s',
        handlers=[handler],
        force=True,
    )

    for name in MODULE_LOGGERS:
        logging.getLogger(name).setLevel(log_level)


def flush_logging() -> None:
    """Flush the root handlers before the process exits."""
    for handler in logging.getLogger().handlers:
        handler.flush()


def _local_now(tz: Optional[tzinfo]) -> datetime:
    if tz is None:
        return datetime.now().astimezone()
    return datetime.now(tz)


def _to_utc(moment: datetime, tz: Optional[tzinfo]) -> datetime:
    """Convert a local wall-clock time (naive moments are in tz) to UTC."""
    if moment.tzinfo is None:
        moment = moment.astimezone() if tz is None else moment.replace(tzinfo=tz)
    return moment.astimezone(timezone.utc)


def record_status(config: Config, now: Optional[datetime] = None) -> int:
    """
    Record the current demand and phase transition.

    Args:
        config: Application configuration
        now: Local wall-clock time to resolve the schedule at (current time if None);
             naive values are taken in config.timezone

    Returns:
        Exit code (0 for success or a suppressed fault, 1 for error)
    """
    policy = FaultSuppressionPolicy(config.maintenance_window)

    try:
        if not config.dry_run and not config.influxdb_token:
            raise ConfigurationError(
                "influxdb_token credential is required unless running with --dry-run"
            )

        retry_policy = RetryPolicy(
            max_attempts=config.retry_max_attempts,
            backoff_base=config.retry_backoff,
        )
        with EagleClient(
            host=config.eagle_host,
            username=config.eagle_username,
            password=config.eagle_password,
            device_id=config.device_id,
            timeout=config.eagle_timeout,
            retry_policy=retry_policy,
        ) as eagle:
            reading = eagle.fetch_reading()

        local_now = now or _local_now(config.timezone)
        calendar = HolidayCalendar(config.holidays)
        window = resolve_window(config.schedule, calendar, local_now)
        logger.info(str(window))
        boundary = to_epoch(window.boundary.resolve(local_now.date(), config.timezone))

        if config.dry_run:
            RecordingPipeline(None, dry_run=True).record(reading, window, boundary)
        else:
            assert config.influxdb_token is not None
            with InfluxStore(
                url=config.influxdb_url,
                token=config.influxdb_token,
                org=config.influxdb_org,
                bucket=config.influxdb_bucket,
            ) as store:
                RecordingPipeline(store).record(reading, window, boundary)

    except Exception as e:
        return 0 if policy.handle(e, _to_utc(now, config.timezone) if now else None) else 1

    return 0


def list_devices(config: Config) -> int:
    """Print the devices known to the gateway."""
    try:
        with EagleClient(
            host=config.eagle_host,
            username=config.eagle_username,
            password=config.eagle_password,
            device_id=config.device_id,
            timeout=config.eagle_timeout,
        ) as eagle:
            devices = eagle.list_devices()
    except (EagleAPIError, TransientNetworkFault) as e:
        logger.error(f"Failed to list devices: {e}")
        return 1

    for device in devices:
        last_contact = (datetime.fromtimestamp(device.last_contact).astimezone().isoformat()
                        if device.last_contact is not None else "never")
        print(f"{device.hardware_address}  {device.name or '-'}  {device.model_id or '-'}  "
              f"{device.connection_status or '-'}  last contact: {last_contact}")
    return 0


def list_variables(config: Config) -> int:
    """Print every variable of the configured device."""
    try:
        with EagleClient(
            host=config.eagle_host,
            username=config.eagle_username,
            password=config.eagle_password,
            device_id=config.device_id,
            timeout=config.eagle_timeout,
        ) as eagle:
            variables = eagle.list_variables()
    except (EagleAPIError, TransientNetworkFault) as e:
        logger.error(f"Failed to list variables: {e}")
        return 1

    for variable in variables:
        value = variable.value if variable.value is not None else "-"
        units = f" {variable.units}" if variable.units else ""
        print(f"{variable.component or '-'}: {variable.name} = {value}{units}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to configuration file (default: searches /etc, /run, /usr/lib)'
    )
    common.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Logging level (overrides config file)'
    )
    common.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Increase verbosity (same as --log-level DEBUG)'
    )
    common.add_argument(
        '--log-file',
        type=str,
        default=None,
        help='Append log output to this file (overrides config file)'
    )

    parser = argparse.ArgumentParser(
        description='Record Rainforest EAGLE demand and time-of-use phases to InfluxDB'
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    record = subparsers.add_parser(
        'record-status',
        parents=[common],
        help='Record the current usage data to the database'
    )
    record.add_argument(
        '-d', '--dry-run',
        action='store_true',
        help='Fetch and compute everything but do not write to the database'
    )
    record.set_defaults(handler=record_status)

    devices = subparsers.add_parser('list-devices', parents=[common], help='List gateway devices')
    devices.set_defaults(handler=list_devices)

    variables = subparsers.add_parser('list-variables', parents=[common], help='List device variables')
    variables.set_defaults(handler=list_variables)

    return parser


def main(argv: Optional[list] = None) -> int:
    """Command line entry point."""
    args = build_parser().parse_args(argv)

    configure_logging('DEBUG' if args.verbose else (args.log_level or 'INFO'))

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        flush_logging()
        return 1

    apply_cli_overrides(config, args)
    configure_logging(config.logging_level, config.log_file)
    logger.info('starting')

    handler: Callable[[Config], int] = args.handler
    try:
        return handler(config)
    finally:
        flush_logging()


if __name__ == "__main__":
    exit(main())
