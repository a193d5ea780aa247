"""Time and randomness sources for computed variable values.

The engine never calls ``datetime.now`` or ``random`` directly; it asks a
ValueProvider, so tests can pin "now" and the random token.
"""

import random
import string
from datetime import date, datetime, timedelta, timezone
from typing import Protocol

from chatflow.flow.models import SetVariableValueType

_TOKEN_ALPHABET = string.digits + string.ascii_lowercase


class ValueProvider(Protocol):
    """Source of the current time and random tokens."""

    def now(self) -> datetime: ...

    def random_token(self) -> str: ...


class SystemValueProvider:
    """Wall clock (UTC) and a process-local random generator."""

    def __init__(self, rng: random.Random | None = None, token_length: int = 6) -> None:
        self._rng = rng or random.Random()
        self._token_length = token_length

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def random_token(self) -> str:
        return "".join(self._rng.choice(_TOKEN_ALPHABET) for _ in range(self._token_length))


class FixedValueProvider:
    """Deterministic provider for tests and replays."""

    def __init__(self, now: datetime, token: str = "abc123") -> None:
        self._now = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
        self._token = token

    def now(self) -> datetime:
        return self._now

    def random_token(self) -> str:
        return self._token


def _iso_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    utc = moment.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _iso_day(day: date) -> str:
    return day.isoformat()


def computed_value(value_type: SetVariableValueType, provider: ValueProvider) -> str:
    """Value of a non-custom set-variable type.

    Raises:
        ValueError: for CUSTOM, whose value comes from the node config
    """
    if value_type == SetVariableValueType.EMPTY:
        return ""
    if value_type == SetVariableValueType.NOW:
        return _iso_timestamp(provider.now())
    if value_type == SetVariableValueType.RANDOM:
        return provider.random_token()

    today = provider.now().astimezone(timezone.utc).date()
    if value_type == SetVariableValueType.TODAY:
        return _iso_day(today)
    if value_type == SetVariableValueType.YESTERDAY:
        return _iso_day(today - timedelta(days=1))
    if value_type == SetVariableValueType.TOMORROW:
        return _iso_day(today + timedelta(days=1))
    raise ValueError(f"Value type '{value_type.value}' is not computed")
