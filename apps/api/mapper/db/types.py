"""Custom SQLAlchemy types for aggregate count columns."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.types import JSON, TypeDecorator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MapAggregates:
    """
    Status counts stored on a map (and territory).

    `not_home` holds only outstanding not-home addresses; exhausted ones
    count toward completion and are folded into progress instead.
    """

    not_done: int = 0
    done: int = 0
    not_home: int = 0
    dnc: int = 0
    invalid: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "notDone": self.not_done,
            "done": self.done,
            "notHome": self.not_home,
            "dnc": self.dnc,
            "invalid": self.invalid,
        }

    @classmethod
    def from_value(cls, value: Any) -> MapAggregates:
        """Build from a stored dict or JSON string; malformed input yields zeros."""
        if value is None or value == "":
            return cls()
        if isinstance(value, MapAggregates):
            return value
        if isinstance(value, (str, bytes)):
            try:
                value = json.loads(value)
            except ValueError:
                logger.warning("Unparseable aggregates value, defaulting to zeros")
                return cls()
        if not isinstance(value, dict):
            return cls()

        def _count(key: str) -> int:
            raw = value.get(key, 0)
            try:
                return int(raw)
            except (TypeError, ValueError):
                return 0

        return cls(
            not_done=_count("notDone"),
            done=_count("done"),
            not_home=_count("notHome"),
            dnc=_count("dnc"),
            invalid=_count("invalid"),
        )


class AggregatesType(TypeDecorator):
    """Persist MapAggregates as a JSON object with fixed keys."""

    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return MapAggregates.from_value(value).to_dict()

    def process_result_value(self, value, dialect):
        if value is None:
            return MapAggregates()
        return MapAggregates.from_value(value)
