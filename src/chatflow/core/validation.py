"""Typed validation of end-user answers.

Each input node type implies a validator (number, email, phone, url, text);
a node may override it through its ``validation`` config field. Validators
receive the raw answer and the node config and return a ValidationOutcome.

Usage:
    from chatflow.core.validation import InputValidatorRegistry

    @InputValidatorRegistry.register("postcode")
    def validate_postcode(value: str, config: InputConfig) -> ValidationOutcome:
        ...
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from urllib.parse import urlparse

from chatflow.core.errors import GraphIntegrityError, ValidationError
from chatflow.flow.models import InputConfig, InputNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of validating one answer."""

    is_valid: bool
    value: str = ""
    reason: str | None = None

    @classmethod
    def ok(cls, value: str) -> "ValidationOutcome":
        return cls(is_valid=True, value=value)

    @classmethod
    def fail(cls, reason: str) -> "ValidationOutcome":
        return cls(is_valid=False, reason=reason)

    def unwrap(self) -> str:
        """Return the normalized value.

        Raises:
            ValidationError: If the answer was rejected
        """
        if not self.is_valid:
            raise ValidationError(self.reason or "Invalid answer")
        return self.value


InputValidator = Callable[[str, InputConfig], ValidationOutcome]

_validators: dict[str, InputValidator] = {}
_validators_lock = Lock()

# Validation implied by the node type when the config does not override it
DEFAULT_VALIDATION: dict[str, str] = {
    "input-number": "number",
    "input-mail": "email",
    "input-phone": "phone",
    "input-webSite": "url",
}


class InputValidatorRegistry:
    """
    Thread-safe registry of answer validators.

    All mutations are protected by a lock so custom validators can be
    registered while turns run on other threads.
    """

    @classmethod
    def register(cls, name: str) -> Callable[[InputValidator], InputValidator]:
        """
        Register a validator function under a name.

        Args:
            name: Validation kind referenced by node configs

        Returns:
            Decorator function
        """

        def decorator(func: InputValidator) -> InputValidator:
            with _validators_lock:
                if name in _validators:
                    logger.warning(
                        f"Validator '{name}' already registered, overwriting",
                        extra={"validator_name": name},
                    )
                _validators[name] = func
            return func

        return decorator

    @classmethod
    def get(cls, name: str) -> InputValidator:
        """
        Get validator by name.

        Raises:
            ValueError: If validator is not registered
        """
        with _validators_lock:
            if name not in _validators:
                raise ValueError(
                    f"Validator '{name}' not registered. Available: {list(_validators.keys())}"
                )
            return _validators[name]

    @classmethod
    def list_validators(cls) -> list[str]:
        with _validators_lock:
            return list(_validators.keys())

    @classmethod
    def is_registered(cls, name: str) -> bool:
        with _validators_lock:
            return name in _validators


def validation_kind(node: InputNode) -> str:
    """Validation kind for an input node: config override, then node type default."""
    return node.config.validation or DEFAULT_VALIDATION.get(node.type, "text")


def validate_input(node: InputNode, answer: str | None) -> ValidationOutcome:
    """Validate an end-user answer for an input node.

    Raises:
        GraphIntegrityError: If the node names a validator that is not registered
    """
    value = (answer or "").strip()
    if not value:
        return ValidationOutcome.fail("Answer cannot be empty")
    kind = validation_kind(node)
    if not InputValidatorRegistry.is_registered(kind):
        raise GraphIntegrityError(
            f"Node '{node.id}' uses unknown validator '{kind}'",
            context={"node_id": node.id, "validator": kind},
        )
    return InputValidatorRegistry.get(kind)(value, node.config)


# === BUILT-IN VALIDATORS ===

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_ALLOWED = re.compile(r"^\+?[\d\s().-]+$")


@InputValidatorRegistry.register("text")
def validate_text(value: str, config: InputConfig) -> ValidationOutcome:
    return ValidationOutcome.ok(value)


@InputValidatorRegistry.register("number")
def validate_number(value: str, config: InputConfig) -> ValidationOutcome:
    """Accept decimal numbers (comma as decimal separator too) within min/max."""
    normalized = value.replace(",", ".") if value.count(",") == 1 and "." not in value else value
    try:
        number = float(normalized)
    except ValueError:
        return ValidationOutcome.fail("Answer is not a number")
    if number != number or number in (float("inf"), float("-inf")):
        return ValidationOutcome.fail("Answer is not a number")
    if config.min is not None and number < config.min:
        return ValidationOutcome.fail(f"Number must be at least {config.min:g}")
    if config.max is not None and number > config.max:
        return ValidationOutcome.fail(f"Number must be at most {config.max:g}")
    return ValidationOutcome.ok(normalized)


@InputValidatorRegistry.register("email")
def validate_email(value: str, config: InputConfig) -> ValidationOutcome:
    if not _EMAIL_PATTERN.match(value):
        return ValidationOutcome.fail("Answer is not a valid email address")
    return ValidationOutcome.ok(value)


@InputValidatorRegistry.register("phone")
def validate_phone(value: str, config: InputConfig) -> ValidationOutcome:
    """Digits with optional +, spaces, dots, dashes and parentheses; 8 to 15 digits."""
    if not _PHONE_ALLOWED.match(value):
        return ValidationOutcome.fail("Answer is not a valid phone number")
    digits = sum(ch.isdigit() for ch in value)
    if not 8 <= digits <= 15:
        return ValidationOutcome.fail("Answer is not a valid phone number")
    return ValidationOutcome.ok(value)


@InputValidatorRegistry.register("url")
def validate_url(value: str, config: InputConfig) -> ValidationOutcome:
    """Accept http(s) URLs; a bare domain gets an https:// prefix."""
    candidate = value if "://" in value else f"https://{value}"
    parsed = urlparse(candidate)
    if parsed.scheme not in ("http", "https") or "." not in parsed.netloc or " " in value:
        return ValidationOutcome.fail("Answer is not a valid URL")
    return ValidationOutcome.ok(value)
