"""
Synthetic record generation for the workload phases.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import json
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from jpy_sqlite_stress.config import DataGenerationConfig, DataTypesConfig, WorkloadSpec

_PROFILE_DATA = json.dumps(
    {"preferences": {"theme": "dark"}, "settings": {"notifications": True}}
).encode("utf-8")


@dataclass(frozen=True)
class TypedValue:
    data_type: str
    value: Any


class ValueGenerator:
    """
    Draws users, transactions, logs and typed values from the configured
    vocabularies and ranges.

    Every record of a kind has the same keys; only the values vary. All
    randomness comes from the supplied random.Random.
    """

    def __init__(self, spec: WorkloadSpec, rng: random.Random | None = None) -> None:
        spec.validate()
        self.config: DataGenerationConfig = spec.data_generation
        self.data_types: DataTypesConfig = spec.data_types
        self.rng = rng or random.Random()

    def _int_between(self, low: float, high: float) -> int:
        return self.rng.randint(int(low), int(high))

    def _float_between(self, low: float, high: float) -> float:
        return self.rng.uniform(low, high)

    def user(self, user_index: int) -> dict[str, Any]:
        config = self.config
        return {
            "username": f"{self.rng.choice(config.usernames)}{user_index}",
            "email": f"user{user_index}@{self.rng.choice(config.domains)}",
            "age": self._int_between(config.age_range.min, config.age_range.max),
            "salary": self._float_between(config.salary_range.min, config.salary_range.max),
            "is_active": self.rng.random() > 0.5,
            "profile_data": _PROFILE_DATA,
        }

    def worker_user(self, worker_id: int, iteration: int) -> dict[str, Any]:
        """A user whose username is unique across all concurrent workers."""
        config = self.config
        username = f"worker{worker_id}_user{iteration}"
        return {
            "username": username,
            "email": f"{username}@concurrent.test",
            "age": self._int_between(config.age_range.min, config.age_range.max),
            "salary": self._float_between(0, config.salary_range.max),
            "is_active": self.rng.random() > 0.5,
        }

    def user_id(self) -> int:
        return self._int_between(self.config.user_id_range.min, self.config.user_id_range.max)

    def transaction(self, user_id: int | None) -> dict[str, Any]:
        config = self.config
        amount_range = config.transaction_amount_range
        return {
            "user_id": user_id,
            "amount": self._float_between(amount_range.min, amount_range.max),
            "type": self.rng.choice(config.transaction_types),
            "description": self.rng.choice(config.transaction_descriptions),
        }

    def log(self) -> dict[str, Any]:
        return {
            "level": self.rng.choice(self.config.log_levels),
            "message": self.rng.choice(self.config.log_messages),
            "metadata": json.dumps(
                {
                    "ip": f"192.168.1.{self.rng.randrange(255)}",
                    "session_id": self.rng.randbytes(16).hex(),
                }
            ),
        }

    def typed_values(self) -> list[TypedValue]:
        """One value per SQLite storage shape, including two oversized ones."""
        return [
            TypedValue("INTEGER", 42),
            TypedValue("REAL", 3.14159),
            TypedValue("TEXT", "Hello, 世界! 🌍"),
            TypedValue("BLOB", b"Binary data test"),
            TypedValue("NULL", None),
            TypedValue("BOOLEAN", True),
            TypedValue("DATE", datetime.now(timezone.utc).isoformat()),
            TypedValue("JSON", json.dumps({"key": "value", "array": [1, 2, 3]})),
            TypedValue("LARGE_TEXT", "A" * self.data_types.large_text_size),
            TypedValue("LARGE_BLOB", b"B" * self.data_types.large_blob_size),
        ]
