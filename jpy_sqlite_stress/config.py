"""
Workload configuration: typed sections, built-in defaults and JSON loading.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any

DEFAULT_CONFIG_FILE = "config.json"


class ConfigurationError(Exception):
    """
    Exception raised when a workload configuration is malformed.
    """

    pass


@dataclass(frozen=True)
class ValueRange:
    min: float
    max: float


@dataclass(frozen=True)
class DatabaseConfig:
    path: str = "stress_test.db"


@dataclass(frozen=True)
class WorkloadSizeConfig:
    concurrent_workers: int = 8
    test_records: int = 1000000
    transaction_size: int = 100


@dataclass(frozen=True)
class InsertConfig:
    single_inserts: int = 1000
    batch_size: int = 1000
    progress_report_interval: int = 100


@dataclass(frozen=True)
class SelectConfig:
    select_all_limit: int = 1000
    join_limit: int = 100


@dataclass(frozen=True)
class UpdateConfig:
    single_updates: int = 100
    batch_updates: int = 900
    single_update_progress_interval: int = 10
    batch_update_progress_interval: int = 100


@dataclass(frozen=True)
class DeleteConfig:
    test_data_records: int = 1000
    single_deletes: int = 100
    progress_report_interval: int = 10
    batch_progress_interval: int = 100


@dataclass(frozen=True)
class TransactionConfig:
    transaction_inserts: int = 5000
    progress_report_interval: int = 500


@dataclass(frozen=True)
class ConcurrencyConfig:
    operations_per_worker: int = 500
    worker_progress_interval: int = 20


@dataclass(frozen=True)
class DataGenerationConfig:
    usernames: tuple[str, ...] = ("alice", "bob", "charlie", "diana", "eve", "frank")
    domains: tuple[str, ...] = ("gmail.com", "yahoo.com", "outlook.com", "test.com")
    transaction_types: tuple[str, ...] = ("deposit", "withdrawal", "transfer", "payment")
    transaction_descriptions: tuple[str, ...] = (
        "Salary payment",
        "Grocery shopping",
        "Rent payment",
        "Investment",
        "Refund",
    )
    log_levels: tuple[str, ...] = ("INFO", "WARNING", "ERROR", "DEBUG")
    log_messages: tuple[str, ...] = (
        "User login successful",
        "Transaction processed",
        "Database connection established",
        "Cache cleared",
        "Backup completed",
    )
    age_range: ValueRange = ValueRange(18, 98)
    salary_range: ValueRange = ValueRange(0, 100000)
    transaction_amount_range: ValueRange = ValueRange(-1000, 1000)
    user_id_range: ValueRange = ValueRange(1, 1000)


@dataclass(frozen=True)
class DataTypesConfig:
    large_text_size: int = 10000
    large_blob_size: int = 50000


# JSON section name -> (attribute on WorkloadSpec, section class)
_SECTIONS: dict[str, tuple[str, type]] = {
    "database": ("database", DatabaseConfig),
    "testConfiguration": ("test_configuration", WorkloadSizeConfig),
    "insertPerformance": ("insert", InsertConfig),
    "selectPerformance": ("select", SelectConfig),
    "updatePerformance": ("update", UpdateConfig),
    "deletePerformance": ("delete", DeleteConfig),
    "transactionPerformance": ("transaction", TransactionConfig),
    "concurrency": ("concurrency", ConcurrencyConfig),
    "dataGeneration": ("data_generation", DataGenerationConfig),
    "dataTypes": ("data_types", DataTypesConfig),
}

_INTERVAL_FIELDS = (
    "progress_report_interval",
    "single_update_progress_interval",
    "batch_update_progress_interval",
    "batch_progress_interval",
    "worker_progress_interval",
)


def _camel_to_snake(name: str) -> str:
    return "".join("_" + c.lower() if c.isupper() else c for c in name)


@dataclass(frozen=True)
class WorkloadSpec:
    """
    Read-only description of the workload shape.

    Every quantity the phases use comes from here; nothing is mutated while a
    run is in progress. Use with_overrides() to derive a changed copy.
    """

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    test_configuration: WorkloadSizeConfig = field(default_factory=WorkloadSizeConfig)
    insert: InsertConfig = field(default_factory=InsertConfig)
    select: SelectConfig = field(default_factory=SelectConfig)
    update: UpdateConfig = field(default_factory=UpdateConfig)
    delete: DeleteConfig = field(default_factory=DeleteConfig)
    transaction: TransactionConfig = field(default_factory=TransactionConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    data_generation: DataGenerationConfig = field(default_factory=DataGenerationConfig)
    data_types: DataTypesConfig = field(default_factory=DataTypesConfig)

    def with_overrides(self, **sections: dict[str, Any]) -> "WorkloadSpec":
        """
        Return a copy with some section fields replaced.

        Example:
            spec.with_overrides(concurrency={"operations_per_worker": 10})
        """
        changes = {}
        for attr, values in sections.items():
            section = getattr(self, attr)
            changes[attr] = replace(section, **values)
        return replace(self, **changes)

    def validate(self) -> "WorkloadSpec":
        """
        Check ranges, vocabularies and quantities.

        Returns:
            self, so loading can chain on it

        Raises:
            ConfigurationError: On the first malformed value found
        """
        generation = self.data_generation
        for name in (
            "usernames",
            "domains",
            "transaction_types",
            "transaction_descriptions",
            "log_levels",
            "log_messages",
        ):
            if not getattr(generation, name):
                raise ConfigurationError(f"dataGeneration.{name} must not be empty")
        for name in ("age_range", "salary_range", "transaction_amount_range", "user_id_range"):
            value_range = getattr(generation, name)
            if value_range.min > value_range.max:
                raise ConfigurationError(
                    f"dataGeneration.{name} is inverted: min {value_range.min} > max {value_range.max}"
                )

        if self.insert.batch_size <= 0:
            raise ConfigurationError("insertPerformance.batchSize must be positive")
        if self.test_configuration.concurrent_workers <= 0:
            raise ConfigurationError("testConfiguration.concurrentWorkers must be positive")
        if not self.database.path:
            raise ConfigurationError("database.path must not be empty")

        for attr, section_cls in _SECTIONS.values():
            section = getattr(self, attr)
            for section_field in fields(section_cls):
                value = getattr(section, section_field.name)
                if isinstance(value, bool) or not isinstance(value, int):
                    continue
                if section_field.name in _INTERVAL_FIELDS and value <= 0:
                    raise ConfigurationError(f"{attr}.{section_field.name} must be positive")
                if value < 0:
                    raise ConfigurationError(f"{attr}.{section_field.name} must not be negative")
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkloadSpec":
        """
        Build a spec from a config.json style document.

        Sections and keys the document leaves out keep their defaults; unknown
        keys are ignored.
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Workload configuration must be a JSON object")
        sections = {}
        for json_name, (attr, section_cls) in _SECTIONS.items():
            raw = data.get(json_name)
            if raw is None:
                continue
            if not isinstance(raw, dict):
                raise ConfigurationError(f"{json_name} must be a JSON object")
            sections[attr] = _build_section(section_cls, raw, json_name)
        return cls(**sections)


def _build_section(section_cls: type, raw: dict[str, Any], json_name: str) -> Any:
    known = {f.name: f for f in fields(section_cls)}
    defaults = section_cls()
    values = {}
    for key, value in raw.items():
        name = _camel_to_snake(key)
        if name not in known:
            logging.debug(f"Ignoring unknown configuration key {json_name}.{key}")
            continue
        current = getattr(defaults, name)
        try:
            if isinstance(current, ValueRange):
                values[name] = ValueRange(float(value["min"]), float(value["max"]))
            elif isinstance(current, tuple):
                if not isinstance(value, list):
                    raise TypeError(f"expected a list, got {type(value).__name__}")
                values[name] = tuple(str(item) for item in value)
            elif isinstance(current, int):
                values[name] = int(value)
            else:
                values[name] = str(value)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value for {json_name}.{key}: {value!r}") from e
    return section_cls(**values)


def load_workload_spec(path: str | None = None) -> WorkloadSpec:
    """
    Load and validate the workload configuration.

    A missing or unreadable file, or one that is not valid JSON, falls back to
    the built-in defaults with a warning.

    Args:
        path: JSON file to read (default: config.json in the working directory)

    Returns:
        The validated WorkloadSpec

    Raises:
        ConfigurationError: If the document parses but describes a malformed workload
    """
    path = path or DEFAULT_CONFIG_FILE
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        logging.warning(f"Configuration file {path} not found, using default configuration values.")
        return WorkloadSpec().validate()
    except (OSError, json.JSONDecodeError) as e:
        logging.warning(f"Error loading {path}: {e}. Using default configuration values.")
        return WorkloadSpec().validate()

    spec = WorkloadSpec.from_dict(data).validate()
    logging.info(f"Loaded workload configuration from {os.path.abspath(path)}")
    return spec
