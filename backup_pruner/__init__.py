#!/usr/bin/python3

# Backup Pruner

import os
import re
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from dataclasses import dataclass, field, replace
from datetime import datetime
from fnmatch import fnmatch
from pathlib import Path
from pprint import pformat
from typing import Dict, List, Optional, Tuple

from dateutil.relativedelta import relativedelta
from humanfriendly.text import split
from loguru import logger
from simpleeval import InvalidExpression, simple_eval
from slack_sdk.webhook import WebhookClient
from tabulate import tabulate

# Keep the N most recent archives of a target no matter what
DEFAULT_KEEP_LAST = 5
# Keep the first archive of the N most recent months of the current year that precede the current month.
# The current month is kept in full on its own, so it doesn't count towards N
DEFAULT_KEEP_MONTHS = 2
# Keep the first archive of the N most recent years (current year included)
DEFAULT_KEEP_YEARS = 3

RETENTION_OPTIONS = ("keep_last", "keep_months", "keep_years")

"""
The names of the date components captured by :data:`BACKUP_NAME_PATTERN`, in the order
:class:`~datetime.datetime` expects them.
"""
DATE_COMPONENTS = ("year", "month", "day", "hour", "minute", "second")

"""
A regular expression object used to match backup archive names. Archives are named
``<target>-<YYYYMMDD>-<HHMMSS>.<extension>``, e.g. ``db-20261019-031500.tar.gz``.
The target may contain dashes itself, the last timestamp in the name wins.
"""
BACKUP_NAME_PATTERN = re.compile(
    r"""
    ^(?P<target>.+)
    -
    (?P<year>\d{4}  )
    (?P<month>\d{2} )
    (?P<day>\d{2}   )
    -
    (?P<hour>\d{2}  )
    (?P<minute>\d{2})
    (?P<second>\d{2})
    \.(?P<extension>.+)$
    """,
    re.VERBOSE | re.ASCII,
)


class PrunerError(Exception):
    pass


class EmptyGroupError(PrunerError):
    """Raised when retention is evaluated for a target without any backups."""


class ConfigError(PrunerError):
    pass


@dataclass
class Prune_Config:
    config_name: str
    keep_last: int = DEFAULT_KEEP_LAST
    keep_months: int = DEFAULT_KEEP_MONTHS
    keep_years: int = DEFAULT_KEEP_YEARS
    include_list: List[str] = field(default_factory=list)
    exclude_list: List[str] = field(default_factory=list)

    def __post_init__(self):
        for option in RETENTION_OPTIONS:
            setattr(self, option, parse_retention_count(getattr(self, option), option))

        if not self.include_list:
            self.include_list = []
        elif isinstance(self.include_list, str):
            self.include_list = split(self.include_list)

        if not self.exclude_list:
            self.exclude_list = []
        elif isinstance(self.exclude_list, str):
            self.exclude_list = split(self.exclude_list)

    def describe(self):
        return ", ".join(f"{option}={getattr(self, option)}" for option in RETENTION_OPTIONS)


@dataclass(frozen=True)
class BackupRecord:
    path_name: str  # full path to the archive
    target: str  # backup series the archive belongs to
    timestamp: datetime
    size: int = 0  # in bytes

    @property
    def name(self):
        return os.path.basename(self.path_name)

    @property
    def year(self):
        return self.timestamp.year

    @property
    def month(self):
        return self.timestamp.month

    @property
    def sort_key(self):
        """Chronological order, archives sharing a timestamp are ordered by file name."""
        return (self.timestamp, self.name)


@dataclass
class BackupPruner:
    config: Prune_Config  # Default retention policy from parameters and the config file's main section
    path: str = None
    config_file: str = None
    target_configs: dict = None  # Holds all target pattern sections and their policies from the config file
    dry_run: bool = False
    debug: bool = False
    silent: bool = False
    print_deleted: bool = False
    print_preserved: bool = False
    log_file: str = None
    environment: str = None
    slack_webhook: str = None
    stale_hours: int = 24

    max_backup_name_length: int = 0
    tabulate_rows: list = field(default_factory=list)

    def __post_init__(self):
        self.stale_hours = parse_retention_count(self.stale_hours or 0, "stale_hours")

        # Load target sections from file if it exists
        if self.config_file and Path(self.config_file).is_file():
            self.target_configs = load_config_file(
                configuration_file=self.config_file, app_config=False, base_config=self.config
            )
            logger.info(f"Config file '{self.config_file}' found")
        else:
            logger.debug(pformat(self.config))
            logger.info(f"Config file '{self.config_file}' not found. Command line parameters will be used")

    def notify(self, **kwargs):
        """Send a Slack notification about the run. A failed notification is logged, not raised."""
        try:
            slack_notify(webhook_url=self.slack_webhook, environment=self.environment, backup_path=self.path, **kwargs)
        except PrunerError as e:
            logger.error(e)

    @property
    def quiet(self):
        return self.silent or self.print_deleted or self.print_preserved

    def print_tabulate(self):
        table_columns = [
            "Backup" + " " * (self.max_backup_name_length - 7),
            "Timestamp",
            "Size" + " " * 4,
            "Status",
        ]

        table = tabulate(self.tabulate_rows, table_columns, tablefmt="rounded_outline") + "\n"

        print(table)

        # Write to log file. Couldn't use loguru for logging to a file due to message being too long
        if self.log_file:
            with open(self.log_file, "a") as file:
                file.write(table + "\n")

    def apply_config_to_target(self, target):
        """
        Find the retention policy for a target.

        :param target: The target of the backups.
        :return: The first config file section whose pattern matches the target, or the default policy.
        """

        if self.target_configs:
            for target_pattern, prune_config in self.target_configs.items():
                prune_config: Prune_Config
                if fnmatch(target, target_pattern):
                    return prune_config

        return self.config

    def prune_backups(self):
        """
        Prune the backups in a directory according to the retention policy of each target.

        :return: A list of (backup, exception) tuples for the backups that couldn't be deleted
        """
        tool_start_time = datetime.now()

        total_backup_size = 0
        total_backup_files_count = 0
        total_backup_deleted_size = 0
        total_backup_deleted_files_count = 0
        stale_targets = []
        failed_deletions = []

        backups_by_target = group_by_target(
            scan_directory(self.path, self.config.include_list, self.config.exclude_list)
        )

        # Find the maximum backup name length to size the backup name column
        # for tabulate so all tables are the same size
        if backups_by_target:
            self.max_backup_name_length = max(
                len(backup.name) for backups in backups_by_target.values() for backup in backups
            )

        for target, backups in backups_by_target.items():
            target_backup_size = 0
            target_backup_deleted_size = 0
            target_backup_deleted_files_count = 0
            self.tabulate_rows = []

            config = self.apply_config_to_target(target)

            logger.opt(colors=True).info(f"Processing target: <cyan>{target}</cyan>")
            logger.opt(colors=True).info(
                f"Using <fg #d0d5d6>{config.config_name}</fg #d0d5d6> retention policy: {config.describe()}"
            )

            backups = sorted(backups, key=lambda b: b.sort_key)
            most_recent_backup: BackupRecord = backups[-1]
            backups_to_preserve = find_preservation_criteria(backups, config)
            delete_list = backups_to_delete(backups, config)

            if self.stale_hours and most_recent_backup.timestamp < datetime.now() - relativedelta(
                hours=self.stale_hours
            ):
                stale_targets.append(target)
                logger.warning(
                    f"No backup taken for target {target} in the past {self.stale_hours} hours! Most recent backup:"
                    f" {most_recent_backup.timestamp}"
                )

            failures = delete_backups(delete_list, dry_run=self.dry_run)
            failed_deletions.extend(failures)
            failed_backups = {backup for backup, _ in failures}

            for backup in backups:
                if backup in backups_to_preserve:
                    matching_rules = "', '".join(backups_to_preserve[backup])
                    rule = "rule" if len(backups_to_preserve[backup]) == 1 else "rules"
                    backup_status = f"Preserving (matches '{matching_rules}' retention {rule})"

                    if self.print_preserved:
                        print(backup.path_name)
                else:
                    if backup in failed_backups:
                        backup_status = "Deleted (failed)"
                    else:
                        backup_status = "Deleted (dry run)" if self.dry_run else "Deleted"
                        target_backup_deleted_size += backup.size
                        target_backup_deleted_files_count += 1

                    if self.print_deleted:
                        print(backup.path_name)

                target_backup_size += backup.size
                self.tabulate_rows.append(
                    [backup.name, backup.timestamp, convert_bytes(backup.size), backup_status]
                )

            self.tabulate_rows.append(["", "", "", ""])
            self.tabulate_rows.append(
                [
                    f"Total: {len(backups)}",
                    "",
                    convert_bytes(target_backup_size),
                    (
                        "All backups preserved"
                        if not delete_list
                        else (
                            f"Deleted {target_backup_deleted_files_count} backups totaling"
                            f" {convert_bytes(target_backup_deleted_size)}"
                            + (" (dry run)" if self.dry_run else "")
                        )
                    ),
                ]
            )
            if not self.quiet:
                self.print_tabulate()

            total_backup_size += target_backup_size
            total_backup_files_count += len(backups)
            total_backup_deleted_size += target_backup_deleted_size
            total_backup_deleted_files_count += target_backup_deleted_files_count

        remaining_total_files = total_backup_files_count - total_backup_deleted_files_count
        remaining_total_size = total_backup_size - total_backup_deleted_size
        runtime = str(datetime.now() - tool_start_time).split(".")[0]

        if backups_by_target:
            logger.info(f"{'Targets:':<12} {len(backups_by_target)}")
            logger.info(f"{'Backups:':<12} {total_backup_files_count:<7} ({convert_bytes(total_backup_size)})")
            logger.info(
                f"{'Deleted:':<12} {total_backup_deleted_files_count:<7} ({convert_bytes(total_backup_deleted_size)})"
            )
            if failed_deletions:
                logger.info(f"{'Failed:':<12} {len(failed_deletions)}")
            logger.info(f"{'Remaining:':<12} {remaining_total_files:<7} ({convert_bytes(remaining_total_size)})")
            logger.info(f"{'Runtime:':<12} {runtime}")

            if stale_targets:
                target_spelling = "targets haven't" if len(stale_targets) > 1 else "target hasn't"
                logger.info(
                    f"{len(stale_targets)} {target_spelling} had a backup in the past {self.stale_hours} hours:"
                )

                for target in stale_targets:
                    logger.info(target)

                self.notify(
                    backup_status="warning",
                    status_message=(
                        f"No backup taken in the past {self.stale_hours} hours for: {', '.join(stale_targets)}"
                    ),
                )

            if failed_deletions:
                self.notify(
                    backup_status="warning",
                    status_message=f"Failed to delete {len(failed_deletions)} backups",
                )
        else:
            logger.info("No backups were found")

        self.notify(
            backup_status="success",
            backups_deleted=total_backup_deleted_files_count,
            size_deleted=convert_bytes(total_backup_deleted_size),
            total_size=convert_bytes(remaining_total_size),
            runtime=runtime,
        )

        return failed_deletions


def parse_backup_name(name, directory="", size=0) -> Optional[BackupRecord]:
    """
    Parse a directory entry name into a backup record.

    :param name: The file name (without directory).
    :param directory: The directory the file lives in.
    :param size: The size of the file in bytes.
    :return: A :class:`BackupRecord`, or None if the name isn't a backup archive.
    """

    match = BACKUP_NAME_PATTERN.match(name)
    if not match:
        return None

    components = match.groupdict()
    try:
        timestamp = datetime(*(int(components[component]) for component in DATE_COMPONENTS))
    except ValueError as e:
        logger.debug(f"Ignoring {name} since its timestamp isn't valid: {e}")
        return None

    return BackupRecord(
        path_name=os.path.join(directory, name),
        target=components["target"],
        timestamp=timestamp,
        size=size,
    )


def filter_exclude_include(backup_name, include_list, exclude_list):
    """
    Filter the backup name based on the include and exclude lists.

    :param backup_name: The file name of the backup.
    :param include_list: The list of patterns to include.
    :param exclude_list: The list of patterns to exclude.
    :return: True if the backup should be excluded, False otherwise.
    """

    if exclude_list and any(fnmatch(backup_name, p) for p in exclude_list):
        logger.debug(f"Excluded {backup_name} because it matched the exclude list")
        return True

    if include_list and not any(fnmatch(backup_name, p) for p in include_list):
        logger.debug(f"Excluded {backup_name} because it didn't match the include list")
        return True

    return False


def scan_directory(directory, include_list=None, exclude_list=None) -> List[BackupRecord]:
    """
    Scan a directory for backup archives.

    Only regular files directly inside the directory are considered. Errors listing the
    directory are not handled here since nothing can be pruned without a complete listing.

    :param directory: The directory to scan.
    :param include_list: Patterns a file name must match to be considered.
    :param exclude_list: Patterns that rule a file name out.
    :return: A list of :class:`BackupRecord` objects sorted by file name.
    """

    logger.info(f"Scanning path: {directory}")

    backups = []
    for entry in sorted(os.scandir(directory), key=lambda e: e.name):
        if not entry.is_file(follow_symlinks=False):
            continue

        backup = parse_backup_name(entry.name, directory)
        if not backup:
            logger.debug(f"Skipping {entry.name} since it isn't named like a backup")
            continue

        if filter_exclude_include(entry.name, include_list, exclude_list):
            continue

        backups.append(replace(backup, size=entry.stat(follow_symlinks=False).st_size))

    return backups


def group_by_target(backups) -> Dict[str, List[BackupRecord]]:
    """
    Partition backups by their target.

    :param backups: An iterable of :class:`BackupRecord` objects.
    :return: A dictionary with targets as keys (in sorted order) and lists of backups as values.
    """

    backups_by_target = {}
    for backup in backups:
        backups_by_target.setdefault(backup.target, []).append(backup)

    return dict(sorted(backups_by_target.items()))


def find_preservation_criteria(backups, config: Prune_Config) -> Dict[BackupRecord, List[str]]:
    """
    Collect the retention rules that preserve each backup of a target.

    :param backups: The backups of a single target.
    :param config: The retention policy to apply.
    :returns: A :class:`dict` with :class:`BackupRecord` objects as keys and
              :class:`list` objects containing the names of the matching
              retention rules as values. Backups that aren't keys are
              candidates for deletion.
    :raises: :exc:`EmptyGroupError` when no backups are given
    """

    backups = sorted(backups, key=lambda b: b.sort_key)
    if not backups:
        raise EmptyGroupError("Refusing to apply retention to an empty set of backups! (no current year to go by)")

    targets = {backup.target for backup in backups}
    if len(targets) > 1:
        raise PrunerError(f"Backups of different targets can't share a retention policy: {sorted(targets)}")

    backups_by_year = {}
    for backup in backups:
        backups_by_year.setdefault(backup.year, []).append(backup)

    current_year = max(backups_by_year)
    current_month = backups_by_year[current_year][-1].month

    backups_to_preserve = {}

    # The first backup of each of the most recent years
    for year in sorted(backups_by_year, reverse=True)[: config.keep_years]:
        backups_to_preserve.setdefault(backups_by_year[year][0], []).append("yearly")

    # The first backup of each of the most recent months before the current one in the current year
    first_backup_by_month = {}
    for backup in backups_by_year[current_year]:
        first_backup_by_month.setdefault(backup.month, backup)

    previous_months = sorted((month for month in first_backup_by_month if month < current_month), reverse=True)
    for month in previous_months[: config.keep_months]:
        backups_to_preserve.setdefault(first_backup_by_month[month], []).append("monthly")

    # Every backup of the current month
    for backup in backups_by_year[current_year]:
        if backup.month == current_month:
            backups_to_preserve.setdefault(backup, []).append("current month")

    if config.keep_last:
        for backup in backups[-config.keep_last :]:
            backups_to_preserve.setdefault(backup, []).append("recent")

    return backups_to_preserve


def backups_to_delete(backups, config: Prune_Config) -> List[BackupRecord]:
    """
    Select the backups of a target that the retention policy doesn't preserve.

    :param backups: The backups of a single target.
    :param config: The retention policy to apply.
    :return: The backups to delete, most recent first.
    :raises: :exc:`EmptyGroupError` when no backups are given
    """

    backups_to_preserve = find_preservation_criteria(backups, config)
    most_recent_first = sorted(backups, key=lambda b: b.sort_key, reverse=True)

    return [backup for backup in most_recent_first[config.keep_last :] if backup not in backups_to_preserve]


def delete_backups(backups, dry_run=False) -> List[Tuple[BackupRecord, OSError]]:
    """
    Delete backups from disk. A backup that can't be deleted is reported and skipped.

    :param backups: The backups to delete.
    :param dry_run: Only log what would be deleted.
    :return: A list of (backup, exception) tuples for the backups that couldn't be deleted.
    """

    failures = []
    for backup in backups:
        if dry_run:
            logger.debug(f"Would delete {backup.path_name}")
            continue

        try:
            os.remove(backup.path_name)
            logger.debug(f"Deleted {backup.path_name}")
        except OSError as e:
            logger.warning(f"Error occurred while deleting the file {backup.path_name}: {e}")
            failures.append((backup, e))

    return failures


def parse_retention_count(value, option="retention"):
    """
    Parse a retention count to a Python value.

    :param value: An integer, or a string containing a number or an
                  expression that can be evaluated to a number.
    :param option: The name of the option being parsed (used in error messages).
    :returns: A non-negative integer.
    :raises: :exc:`ConfigError` when the value can't be parsed
    """
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise ConfigError(f"Expected a number for {option}, got an empty value instead!")

        # Evaluate math expressions as a value (i.e. 4*2)
        try:
            value = simple_eval(value)
        except (InvalidExpression, ValueError, SyntaxError, TypeError):
            raise ConfigError(f"Expected a number or math expression for {option}, got '{value}' instead!")

    if isinstance(value, float) and value.is_integer():
        value = int(value)

    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Expected a whole number for {option}, got {type(value)} instead!")

    if value < 0:
        raise ConfigError(f"{option} can't be negative, got {value}!")

    return value


def load_config_file(configuration_file, app_config=False, base_config: Prune_Config = None):
    """
    Load the configuration file.

    :param configuration_file: The path to the configuration file.
    :param app_config: True if loading application-level configuration, False for target-level configuration.
    :param base_config: The policy that target sections inherit unset options from.

    :return: A dictionary of the loaded configuration data.
    """

    config_data = {}

    config = ConfigParser()
    try:
        config.read(configuration_file)
    except ConfigParserError as e:
        raise ConfigError(f"Failed to read config file {configuration_file}: {e}")

    for section in sorted(config.sections(), reverse=True):
        if app_config and section == "main":
            # We create a main config based off of the keys in BackupPruner object
            for option, data_type in BackupPruner.__annotations__.items():
                # These options won't be in the config file
                if option in [
                    "config",
                    "config_file",
                    "target_configs",
                    "path",
                    "max_backup_name_length",
                    "tabulate_rows",
                ]:
                    continue
                if not config.has_option(section, option):
                    continue

                try:
                    if data_type is bool:
                        config_value = config.getboolean(section, option)
                    elif data_type is int:
                        config_value = config.getint(section, option)
                    else:
                        config_value = config.get(section, option)
                except ValueError as e:
                    raise ConfigError(
                        f"Failed to retrieve {data_type.__name__} value for config option {option} under section"
                        f" {section}: {e}"
                    )

                config_data[option] = config_value

            for option in RETENTION_OPTIONS + ("include_list", "exclude_list"):
                if config.has_option(section, option):
                    config_data[option] = config.get(section, option)

            # Syslog is only used to setup logging
            if config.has_option(section, "syslog"):
                try:
                    config_data["syslog"] = config.getboolean(section, "syslog")
                except ValueError as e:
                    raise ConfigError(
                        f"Failed to retrieve bool value for config option syslog under section {section}: {e}"
                    )
        elif not app_config and section != "main":
            config_options = {
                option: config.get(section, option)
                for option in RETENTION_OPTIONS
                if config.has_option(section, option)
            }

            config_data[section] = replace(
                base_config or Prune_Config(config_name=section), config_name=section, **config_options
            )

    logger.debug(pformat(config_data, sort_dicts=False))
    return config_data


def slack_notify(
    webhook_url,
    environment,
    backup_path="",
    backup_status="",
    backups_deleted=0,
    size_deleted=0,
    total_size=0,
    runtime="",
    status_message="",
):
    if not webhook_url:
        return

    title_app = "Backup Pruner"

    if backup_status == "success":
        title = f"*{title_app} Success | {environment}*"
        notification_text = f"{title_app} successfully completed!"
        status_icon = ":large_green_circle:"
        theme_color = "#00b301"

        fields = [
            {"type": "mrkdwn", "text": f"*Backups Deleted*\n{backups_deleted}"},
            {"type": "mrkdwn", "text": f"*Size Deleted*\n{size_deleted}"},
            {"type": "mrkdwn", "text": f"*Current Total Size*\n{total_size}"},
            {"type": "mrkdwn", "text": f"*Runtime*\n{runtime}"},
        ]
    elif backup_status == "warning":
        title = f"*{title_app} Warning | {environment}*"
        notification_text = f"{title_app} warning!"
        status_icon = ":large_yellow_circle:"
        theme_color = "#ffd600"

        fields = [
            {"type": "mrkdwn", "text": f"*Alert*\n{status_message}"},
        ]
    else:
        title = f"*{title_app} Failure | {environment}*"
        notification_text = f"{title_app} failed!"
        status_icon = ":red_circle:"
        theme_color = "#df2220"

        fields = [
            {"type": "mrkdwn", "text": f"*Alert*\n{status_message}"},
        ]

    elements = [
        {
            "type": "mrkdwn",
            "text": f"Directory: {backup_path}",
        }
    ]

    payload = {
        "text": notification_text,
        "blocks": [
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"{status_icon} {title}"},
            }
        ],
        "attachments": [
            {
                "fallback": title,
                "color": theme_color,
                "blocks": [{"type": "section", "fields": fields}, {"type": "context", "elements": elements}],
            }
        ],
    }

    client = WebhookClient(webhook_url)
    response = client.send_dict(payload)

    if response.body == "ok":
        logger.debug("Successfully sent Slack message!")
    else:
        raise PrunerError(f"Failed to send Slack alert! Reason: {response.body}")


def convert_bytes(bytes_value):
    units = ["B", "KB", "MB", "GB", "TB"]
    unit_index = 0

    while bytes_value >= 1024 and unit_index < len(units) - 1:
        bytes_value /= 1024
        unit_index += 1

    return f"{bytes_value:.2f} {units[unit_index]}"
