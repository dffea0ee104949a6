"""Schema and rule validation for request bodies and responses.

Schemas are JSON Schema (Draft 2020-12) checked with ``jsonschema``.
Compiled validators are cached per schema content. A handful of extra
``format`` values are registered on top of the standard ones: ``phone``,
``credit-card``, ``ssn``, ``postal-code``, ``strong-password``,
``color-hex`` and ``semver`` (camelCase spellings are accepted too).
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable

import jsonschema
from jsonschema import Draft202012Validator, FormatChecker

from actionrail.core.errors import ValidationError
from actionrail.core.models import MISSING, ValidationPolicy, ValidationRule
from actionrail.core.serialization import canonical_json
from actionrail.processors import jsonpath
from actionrail.processors.expression import ExpressionError, evaluate

logger = logging.getLogger("actionrail.validation")

_PHONE = re.compile(r"^\+?[\d\s\-().]{7,20}$")
_SSN = re.compile(r"^(?!000|666|9\d\d)\d{3}-?(?!00)\d{2}-?(?!0000)\d{4}$")
_POSTAL = re.compile(r"^(\d{5}(-\d{4})?|[A-Za-z]\d[A-Za-z] ?\d[A-Za-z]\d)$")
_COLOR_HEX = re.compile(r"^#([0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
_SEMVER = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)


def is_phone(value: str) -> bool:
    digits = re.sub(r"\D", "", value)
    return bool(_PHONE.match(value)) and 7 <= len(digits) <= 15


def is_credit_card(value: str) -> bool:
    """Luhn check over 13-19 digits; spaces and dashes are ignored."""
    digits = re.sub(r"[\s-]", "", value)
    if not digits.isdigit() or not 13 <= len(digits) <= 19:
        return False
    total = 0
    for i, ch in enumerate(reversed(digits)):
        d = int(ch)
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def is_strong_password(value: str) -> bool:
    return (
        len(value) >= 8
        and re.search(r"[a-z]", value) is not None
        and re.search(r"[A-Z]", value) is not None
        and re.search(r"\d", value) is not None
        and re.search(r"[^A-Za-z0-9]", value) is not None
    )


CUSTOM_FORMATS: dict[str, Callable[[str], bool]] = {
    "phone": is_phone,
    "credit-card": is_credit_card,
    "ssn": lambda v: bool(_SSN.match(v)),
    "postal-code": lambda v: bool(_POSTAL.match(v)),
    "strong-password": is_strong_password,
    "color-hex": lambda v: bool(_COLOR_HEX.match(v)),
    "semver": lambda v: bool(_SEMVER.match(v)),
}

_ALIASES = {
    "creditCard": "credit-card",
    "postalCode": "postal-code",
    "strongPassword": "strong-password",
    "colorHex": "color-hex",
}


def _string_check(fn: Callable[[str], bool]) -> Callable[[Any], bool]:
    def check(instance: Any) -> bool:
        # Formats only constrain strings; other types pass.
        if not isinstance(instance, str):
            return True
        return fn(instance)

    return check


class SchemaValidator:
    """Validates values against JSON Schemas and custom field rules."""

    def __init__(self) -> None:
        self._format_checker = FormatChecker()
        self._compiled: dict[str, Draft202012Validator] = {}
        for name, fn in CUSTOM_FORMATS.items():
            self.register_format(name, fn)
        for alias, name in _ALIASES.items():
            self.register_format(alias, CUSTOM_FORMATS[name])

    def register_format(self, name: str, check: Callable[[str], bool]) -> None:
        self._format_checker.checks(name)(_string_check(check))

    def _compile(self, schema: dict[str, Any]) -> Draft202012Validator:
        key = canonical_json(schema)
        validator = self._compiled.get(key)
        if validator is None:
            try:
                Draft202012Validator.check_schema(schema)
            except jsonschema.SchemaError as exc:
                raise ValidationError(f"Invalid schema: {exc.message}", code="INVALID_SCHEMA") from exc
            validator = Draft202012Validator(schema, format_checker=self._format_checker)
            self._compiled[key] = validator
        return validator

    def validate(self, value: Any, schema: dict[str, Any]) -> list[dict[str, Any]]:
        """Every schema violation, as ``{path, message, code, value}`` dicts."""
        validator = self._compile(schema)
        errors = sorted(validator.iter_errors(value), key=lambda e: [str(p) for p in e.absolute_path])
        return [
            {
                "path": jsonpath.format_path(tuple(e.absolute_path)),
                "message": e.message,
                "code": f"SCHEMA_{str(e.validator).upper()}",
                "value": e.instance,
            }
            for e in errors
        ]

    def is_valid(self, value: Any, schema: dict[str, Any]) -> bool:
        return self._compile(schema).is_valid(value)

    def validate_rules(self, rules: tuple[ValidationRule, ...] | list[ValidationRule], data: Any) -> list[dict[str, Any]]:
        """Check custom regex/expression rules against fields of ``data``."""
        errors: list[dict[str, Any]] = []
        for rule in rules:
            value = jsonpath.get(data, rule.path, MISSING)
            value = None if value is MISSING else value
            try:
                if rule.kind == "regex":
                    ok = isinstance(value, str) and re.search(rule.pattern, value) is not None
                elif rule.kind == "expression":
                    ok = bool(evaluate(rule.pattern, {"value": value, "data": data}))
                else:
                    raise ValidationError(f"Unknown rule kind {rule.kind!r}", code="INVALID_RULE")
            except (re.error, ExpressionError) as exc:
                logger.warning("Validation rule for %s failed to run: %s", rule.path, exc)
                ok = False
            if not ok:
                errors.append(
                    {
                        "path": jsonpath.normalize(rule.path),
                        "message": rule.message or f"Value at {rule.path} failed {rule.kind} rule",
                        "code": f"RULE_{rule.kind.upper()}",
                        "value": value,
                    }
                )
        return errors

    def check(self, value: Any, schema: dict[str, Any], *, what: str = "value", action_id: str | None = None) -> None:
        """Raise ValidationError listing every violation, if there are any."""
        errors = self.validate(value, schema)
        if errors:
            raise ValidationError(
                f"{what} failed validation: {errors[0]['path']} {errors[0]['message']}",
                errors=errors,
                action_id=action_id,
            )

    def validate_request(self, policy: ValidationPolicy | None, body: Any, *, action_id: str | None = None) -> None:
        if policy is None:
            return
        errors: list[dict[str, Any]] = []
        if policy.request_schema:
            errors.extend(self.validate(body, policy.request_schema))
        if policy.rules:
            errors.extend(self.validate_rules(policy.rules, body))
        if errors:
            raise ValidationError(
                f"Request failed validation: {errors[0]['path']} {errors[0]['message']}",
                errors=errors,
                action_id=action_id,
            )

    def validate_response(self, policy: ValidationPolicy | None, response: Any, *, action_id: str | None = None) -> None:
        if policy is None or not policy.validate_response or not policy.response_schema:
            return
        self.check(response, policy.response_schema, what="Response", action_id=action_id)
