"""Enum definitions for application constants."""

from enum import Enum


class Role(str, Enum):
    """
    User roles with increasing privilege levels.

    - READ_ONLY: Publishers - view maps, record call outcomes, take quicklinks
    - CONDUCTOR: Field service group conductors - reset maps and territories
    - ADMINISTRATOR: Congregation admin - change map structure and options
    """
    READ_ONLY = "read_only"
    CONDUCTOR = "conductor"
    ADMINISTRATOR = "administrator"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


class AddressStatus(str, Enum):
    """
    Outcome of the last call at an address.

        not_done → done | not_home
        not_home → not_home (tries += 1) | done
        any → do_not_call | invalid
        reset: done, not_home → not_done
    """
    NOT_DONE = "not_done"
    DONE = "done"
    NOT_HOME = "not_home"
    DO_NOT_CALL = "do_not_call"
    INVALID = "invalid"


# Statuses reset back to not_done by map/territory resets
RESETTABLE_STATUSES = (AddressStatus.DONE.value, AddressStatus.NOT_HOME.value)


class MapType(str, Enum):
    """Single-floor (landed) or multi-floor (apartment block) maps."""
    SINGLE = "single"
    MULTI = "multi"


class AssignmentType(str, Enum):
    """
    Assignment kinds.

    Only NORMAL assignments count toward quicklink load balancing.
    PERSONAL assignments are long-lived claims by a single publisher.
    """
    NORMAL = "normal"
    PERSONAL = "personal"
