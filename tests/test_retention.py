import random
from datetime import datetime

import pytest
from backup_pruner import (
    BackupRecord,
    ConfigError,
    EmptyGroupError,
    Prune_Config,
    PrunerError,
    backups_to_delete,
    delete_backups,
    filter_exclude_include,
    find_preservation_criteria,
    group_by_target,
    parse_backup_name,
    parse_retention_count,
)
from dateutil.relativedelta import relativedelta
from loguru import logger


def backup_name(target, timestamp, extension="tar.gz"):
    return f"{target}-{timestamp:%Y%m%d-%H%M%S}.{extension}"


def make_backup(target, timestamp, extension="tar.gz"):
    return parse_backup_name(backup_name(target, timestamp, extension), "/backups")


def monthly_backups(target, last_month, count):
    """One backup on the first of each month, ``count`` months ending with ``last_month``."""
    return [make_backup(target, last_month - relativedelta(months=i)) for i in range(count)]


def random_backups(seed, target="db", count=60):
    rng = random.Random(seed)
    start = datetime(2021, 1, 1)
    timestamps = {start + relativedelta(days=rng.randint(0, 6 * 365), hours=rng.randint(0, 23)) for _ in range(count)}
    return [make_backup(target, timestamp) for timestamp in timestamps]


@pytest.fixture
def default_config():
    return Prune_Config(config_name="test")


@pytest.fixture
def log_messages():
    messages = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)


class TestParseBackupName:
    """Test turning directory entry names into backup records."""

    def test_parse_backup_name(self):
        backup = parse_backup_name("db-20261019-031500.tar.gz", "/backups", size=42)

        assert backup == BackupRecord(
            path_name="/backups/db-20261019-031500.tar.gz",
            target="db",
            timestamp=datetime(2026, 10, 19, 3, 15),
            size=42,
        )
        assert backup.name == "db-20261019-031500.tar.gz"
        assert (backup.year, backup.month) == (2026, 10)

    def test_target_with_dashes(self):
        backup = parse_backup_name("my-web-site-20240229-235959.zip")

        assert backup.target == "my-web-site"
        assert backup.timestamp == datetime(2024, 2, 29, 23, 59, 59)
        assert backup.path_name == "my-web-site-20240229-235959.zip"

    @pytest.mark.parametrize(
        "name",
        [
            "notes.txt",
            "db-20261019-031500",  # no extension
            "-20261019-031500.tar.gz",  # no target
            "db-2026101-031500.tar.gz",
            "db_20261019_031500.tar.gz",
            "db-20261319-031500.tar.gz",  # month 13
            "db-２０２６１０１９-031500.tar.gz",  # fullwidth digits
            "db-20261019-０３１５００.tar.gz",
            "db-20230229-031500.tar.gz",  # not a leap year
            "db-20261019-246000.tar.gz",
        ],
    )
    def test_non_matching_names_are_skipped(self, name):
        assert parse_backup_name(name) is None


class TestGroupByTarget:
    """Test partitioning backups by target."""

    def test_group_by_target(self):
        backups = [
            make_backup("web", datetime(2026, 1, 1)),
            make_backup("db", datetime(2026, 1, 2)),
            make_backup("web", datetime(2026, 1, 3)),
            make_backup("cache", datetime(2026, 1, 4)),
        ]

        backups_by_target = group_by_target(backups)

        assert list(backups_by_target) == ["cache", "db", "web"]
        assert backups_by_target["web"] == [backups[0], backups[2]]
        assert backups_by_target["db"] == [backups[1]]
        assert sum(len(group) for group in backups_by_target.values()) == len(backups)

    def test_group_nothing(self):
        assert group_by_target([]) == {}


class TestRetentionScenarios:
    """Test the retention policy against complete backup histories."""

    def test_thirty_months(self, default_config):
        backups = monthly_backups("db", datetime(2026, 10, 1), 30)

        expected_preserved = {
            datetime(2026, 10, 1),  # recent, current month
            datetime(2026, 9, 1),  # recent, monthly
            datetime(2026, 8, 1),  # recent, monthly
            datetime(2026, 7, 1),  # recent
            datetime(2026, 6, 1),  # recent
            datetime(2026, 1, 1),  # yearly
            datetime(2025, 1, 1),  # yearly
            datetime(2024, 5, 1),  # yearly
        }

        delete_list = backups_to_delete(backups, default_config)
        preserved = {b.timestamp for b in backups} - {b.timestamp for b in delete_list}

        assert preserved == expected_preserved
        assert len(delete_list) == 22
        # Most recent first
        assert delete_list == sorted(delete_list, key=lambda b: b.sort_key, reverse=True)

    def test_preservation_reasons(self, default_config):
        backups = monthly_backups("db", datetime(2026, 10, 1), 30)
        by_timestamp = {b.timestamp: b for b in backups}

        backups_to_preserve = find_preservation_criteria(backups, default_config)

        assert backups_to_preserve[by_timestamp[datetime(2026, 10, 1)]] == ["current month", "recent"]
        assert backups_to_preserve[by_timestamp[datetime(2026, 9, 1)]] == ["monthly", "recent"]
        assert backups_to_preserve[by_timestamp[datetime(2026, 1, 1)]] == ["yearly"]
        assert backups_to_preserve[by_timestamp[datetime(2024, 5, 1)]] == ["yearly"]
        assert by_timestamp[datetime(2026, 5, 1)] not in backups_to_preserve

    def test_two_targets_six_months(self, default_config):
        backups = monthly_backups("web", datetime(2026, 6, 1), 6) + monthly_backups("db", datetime(2026, 6, 15), 6)

        for target, target_backups in group_by_target(backups).items():
            # The oldest backup is also the first backup of the year
            assert backups_to_delete(target_backups, default_config) == []

        no_calendar_rules = Prune_Config(config_name="test", keep_months=0, keep_years=0)
        for target, target_backups in group_by_target(backups).items():
            delete_list = backups_to_delete(target_backups, no_calendar_rules)
            assert len(delete_list) == 1
            assert delete_list[0].target == target
            assert delete_list[0].month == 1

    def test_fewer_backups_than_keep_last(self, default_config):
        backups = [make_backup("web", datetime(2019 + i, 3, 1)) for i in range(3)]

        assert backups_to_delete(backups, default_config) == []

    def test_empty_group(self, default_config):
        with pytest.raises(EmptyGroupError):
            find_preservation_criteria([], default_config)

        with pytest.raises(EmptyGroupError):
            backups_to_delete([], default_config)

    def test_mixed_targets_are_refused(self, default_config):
        backups = [make_backup("web", datetime(2026, 1, 1)), make_backup("db", datetime(2026, 1, 1))]

        with pytest.raises(PrunerError):
            backups_to_delete(backups, default_config)


class TestRetentionRules:
    """Test each retention rule on its own."""

    def test_whole_current_month_is_preserved(self):
        config = Prune_Config(config_name="test", keep_last=2, keep_months=0, keep_years=0)
        backups = [make_backup("db", datetime(2026, 10, day)) for day in range(1, 11)]
        backups.append(make_backup("db", datetime(2026, 9, 30)))

        delete_list = backups_to_delete(backups, config)

        assert [b.timestamp for b in delete_list] == [datetime(2026, 9, 30)]

    def test_monthly_rule_skips_current_month(self):
        config = Prune_Config(config_name="test")
        backups = [make_backup("db", datetime(2026, 10, day)) for day in range(1, 9)]
        for month in (7, 8, 9):
            backups.append(make_backup("db", datetime(2026, month, 1)))
            backups.append(make_backup("db", datetime(2026, month, 15)))
        backups.append(make_backup("db", datetime(2026, 1, 1)))

        delete_list = backups_to_delete(backups, config)

        assert [b.timestamp for b in delete_list] == [
            datetime(2026, 9, 15),
            datetime(2026, 8, 15),
            datetime(2026, 7, 15),
            datetime(2026, 7, 1),
        ]

    def test_monthly_rule_only_looks_at_current_year(self):
        config = Prune_Config(config_name="test", keep_last=0, keep_months=2, keep_years=0)
        backups = [
            make_backup("db", datetime(2025, 11, 1)),
            make_backup("db", datetime(2025, 12, 1)),
            make_backup("db", datetime(2026, 1, 5)),
        ]

        delete_list = backups_to_delete(backups, config)

        assert [b.timestamp for b in delete_list] == [datetime(2025, 12, 1), datetime(2025, 11, 1)]

    def test_yearly_rule(self):
        config = Prune_Config(config_name="test", keep_last=0, keep_months=0, keep_years=3)
        backups = [make_backup("db", datetime(year, 1, 1)) for year in range(2019, 2027)]
        backups += [make_backup("db", datetime(year, 6, 1)) for year in range(2024, 2026)]

        delete_list = backups_to_delete(backups, config)

        assert [b.timestamp for b in delete_list] == [
            datetime(2025, 6, 1),
            datetime(2024, 6, 1),
            datetime(2023, 1, 1),
            datetime(2022, 1, 1),
            datetime(2021, 1, 1),
            datetime(2020, 1, 1),
            datetime(2019, 1, 1),
        ]

    def test_ties_are_broken_by_file_name(self):
        config = Prune_Config(config_name="test", keep_last=0, keep_months=0, keep_years=1)
        backups = [
            make_backup("db", datetime(2026, 1, 1), "zip"),
            make_backup("db", datetime(2026, 1, 1), "tar.gz"),
            make_backup("db", datetime(2026, 2, 1)),
        ]

        for _ in range(5):
            random.shuffle(backups)
            delete_list = backups_to_delete(backups, config)
            assert [b.name for b in delete_list] == ["db-20260101-000000.zip"]

    def test_input_is_not_mutated(self, default_config):
        backups = monthly_backups("db", datetime(2026, 10, 1), 30)
        snapshot = list(backups)

        backups_to_delete(backups, default_config)

        assert backups == snapshot


@pytest.mark.parametrize("seed", range(8))
class TestRetentionProperties:
    """Test the guarantees of the retention policy on random backup histories."""

    def test_keep_last_is_never_deleted(self, seed, default_config):
        backups = random_backups(seed)
        delete_list = set(backups_to_delete(backups, default_config))

        most_recent = sorted(backups, key=lambda b: b.sort_key)[-default_config.keep_last :]
        assert not delete_list.intersection(most_recent)

    def test_first_backup_of_recent_years_is_never_deleted(self, seed, default_config):
        backups = random_backups(seed)
        delete_list = set(backups_to_delete(backups, default_config))

        years = sorted({b.year for b in backups}, reverse=True)[: default_config.keep_years]
        for year in years:
            first = min((b for b in backups if b.year == year), key=lambda b: b.sort_key)
            assert first not in delete_list

    def test_current_month_and_previous_months_are_preserved(self, seed, default_config):
        backups = random_backups(seed)
        delete_list = set(backups_to_delete(backups, default_config))

        latest = max(backups, key=lambda b: b.sort_key)
        current_year = [b for b in backups if b.year == latest.year]
        assert not delete_list.intersection(b for b in current_year if b.month == latest.month)

        previous_months = sorted({b.month for b in current_year if b.month < latest.month}, reverse=True)
        for month in previous_months[: default_config.keep_months]:
            first = min((b for b in current_year if b.month == month), key=lambda b: b.sort_key)
            assert first not in delete_list

    def test_selection_is_deterministic(self, seed, default_config):
        backups = random_backups(seed)
        shuffled = list(backups)
        random.Random(seed).shuffle(shuffled)

        assert backups_to_delete(backups, default_config) == backups_to_delete(shuffled, default_config)

    def test_other_targets_have_no_influence(self, seed, default_config):
        backups = random_backups(seed)
        others = random_backups(seed + 100, target="web")

        backups_by_target = group_by_target(backups + others)

        assert backups_to_delete(backups_by_target["db"], default_config) == backups_to_delete(
            backups, default_config
        )


class TestDeleteBackups:
    """Test removing backups from disk."""

    def test_delete_backups(self, tmp_path):
        names = [backup_name("db", datetime(2026, 1, day)) for day in range(1, 4)]
        for name in names:
            (tmp_path / name).touch()

        backups = [parse_backup_name(name, str(tmp_path)) for name in names[:2]]
        failures = delete_backups(backups)

        assert failures == []
        assert sorted(p.name for p in tmp_path.iterdir()) == [names[2]]

    def test_failures_are_isolated(self, tmp_path, log_messages):
        names = [backup_name("db", datetime(2026, 1, day)) for day in range(1, 4)]
        (tmp_path / names[0]).touch()
        (tmp_path / names[2]).touch()

        backups = [parse_backup_name(name, str(tmp_path)) for name in names]
        failures = delete_backups(backups)

        assert [backup for backup, _ in failures] == [backups[1]]
        assert isinstance(failures[0][1], FileNotFoundError)
        assert list(tmp_path.iterdir()) == []
        assert len(log_messages) == 1
        assert backups[1].path_name in log_messages[0]

    def test_dry_run(self, tmp_path):
        name = backup_name("db", datetime(2026, 1, 1))
        (tmp_path / name).touch()

        assert delete_backups([parse_backup_name(name, str(tmp_path))], dry_run=True) == []
        assert (tmp_path / name).exists()


class TestConfig:
    """Test retention policy values."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (4, 4),
            ("7", 7),
            (" 2*3 ", 6),
            ("8/2", 4),
            (0, 0),
        ],
    )
    def test_parse_retention_count(self, value, expected):
        assert parse_retention_count(value) == expected

    @pytest.mark.parametrize("value", ["", "-1", -3, "abc", "2.5", "True", True, None, "1,2"])
    def test_invalid_retention_count(self, value):
        with pytest.raises(ConfigError):
            parse_retention_count(value)

    def test_prune_config(self):
        config = Prune_Config(
            config_name="test", keep_last="3", keep_months="1+1", include_list="db-*, web-*", exclude_list=None
        )

        assert (config.keep_last, config.keep_months, config.keep_years) == (3, 2, 3)
        assert config.include_list == ["db-*", "web-*"]
        assert config.exclude_list == []
        assert config.describe() == "keep_last=3, keep_months=2, keep_years=3"

    def test_filter_exclude_include(self):
        assert filter_exclude_include("db-20260101-000000.tar.gz", ["web-*"], []) is True
        assert filter_exclude_include("db-20260101-000000.tar.gz", ["db-*"], []) is False
        assert filter_exclude_include("db-20260101-000000.tar.gz", [], ["*.tar.gz"]) is True
        assert filter_exclude_include("db-20260101-000000.tar.gz", None, None) is False
