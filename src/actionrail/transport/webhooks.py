"""HMAC signature checks for inbound webhooks.

Each config is stored under an id (the server uses the trigger name) and
says how the sender signs its requests:

    scheme   signed bytes                     header value
    hmac     body                             ``<prefix><digest>``
    slack    ``v0:<timestamp>:<body>``        ``v0=<digest>`` plus a timestamp header
    stripe   ``<t>.<body>``                   ``t=<t>,v1=<digest>[,v1=...]``

Signed timestamps older than ``tolerance_s`` are rejected. Digests are
compared with :func:`hmac.compare_digest`.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping

from actionrail.core.errors import ValidationError

logger = logging.getLogger("actionrail.webhooks")

ALGORITHMS = ("sha1", "sha256", "sha512")
ENCODINGS = ("hex", "base64")


class SignatureScheme(str, Enum):
    HMAC = "hmac"
    SLACK = "slack"
    STRIPE = "stripe"


@dataclass
class WebhookConfig:
    secret: str
    algorithm: str = "sha256"
    header_name: str = "X-Signature"
    prefix: str = ""
    encoding: str = "hex"
    scheme: SignatureScheme = SignatureScheme.HMAC
    timestamp_header: str | None = None
    tolerance_s: float = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookConfig:
        known = set(cls.__dataclass_fields__)
        values = {k: v for k, v in data.items() if k in known}
        if "scheme" in values:
            values["scheme"] = SignatureScheme(values["scheme"])
        return cls(**values)

    def describe(self) -> dict[str, Any]:
        """Everything but the secret."""
        return {
            "algorithm": self.algorithm,
            "header_name": self.header_name,
            "has_prefix": bool(self.prefix),
            "encoding": self.encoding,
            "scheme": self.scheme.value,
        }


@dataclass
class WebhookResult:
    valid: bool
    error: str | None = None
    computed_signature: str | None = None
    provided_signature: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "error": self.error}


def validate_config(config: WebhookConfig) -> list[str]:
    errors: list[str] = []
    if not config.secret:
        errors.append("secret is required")
    if config.algorithm not in ALGORITHMS:
        errors.append(f"algorithm must be one of {', '.join(ALGORITHMS)}")
    if not config.header_name:
        errors.append("header_name is required")
    if config.encoding not in ENCODINGS:
        errors.append(f"encoding must be one of {', '.join(ENCODINGS)}")
    if config.scheme is SignatureScheme.SLACK and not config.timestamp_header:
        errors.append("slack configs need a timestamp_header")
    return errors


def _as_bytes(payload: str | bytes) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


class WebhookValidator:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._configs: dict[str, WebhookConfig] = {}
        self.validations = 0
        self.accepted = 0

    def __contains__(self, config_id: str) -> bool:
        return config_id in self._configs

    def set_config(self, config_id: str, config: WebhookConfig | dict[str, Any]) -> None:
        if isinstance(config, dict):
            config = WebhookConfig.from_dict(config)
        errors = validate_config(config)
        if errors:
            raise ValidationError(
                f"Invalid webhook config {config_id!r}: {'; '.join(errors)}",
                code="INVALID_WEBHOOK_CONFIG",
                errors=[{"path": "", "message": e} for e in errors],
            )
        self._configs[config_id] = config
        logger.debug("Webhook config %s set (%s, %s)", config_id, config.scheme.value, config.algorithm)

    def remove_config(self, config_id: str) -> bool:
        return self._configs.pop(config_id, None) is not None

    def get(self, config_id: str) -> WebhookConfig | None:
        return self._configs.get(config_id)

    def clear(self) -> None:
        self._configs.clear()

    # --- Presets ---

    def github(self, config_id: str, secret: str) -> None:
        self.set_config(
            config_id,
            WebhookConfig(secret=secret, header_name="X-Hub-Signature-256", prefix="sha256="),
        )

    def slack(self, config_id: str, secret: str) -> None:
        self.set_config(
            config_id,
            WebhookConfig(
                secret=secret,
                header_name="X-Slack-Signature",
                prefix="v0=",
                scheme=SignatureScheme.SLACK,
                timestamp_header="X-Slack-Request-Timestamp",
            ),
        )

    def stripe(self, config_id: str, secret: str) -> None:
        self.set_config(
            config_id,
            WebhookConfig(secret=secret, header_name="Stripe-Signature", scheme=SignatureScheme.STRIPE),
        )

    def generic(
        self,
        config_id: str,
        secret: str,
        algorithm: str = "sha256",
        header_name: str = "X-Signature",
        *,
        prefix: str = "",
        encoding: str = "hex",
    ) -> None:
        self.set_config(
            config_id,
            WebhookConfig(secret=secret, algorithm=algorithm, header_name=header_name, prefix=prefix, encoding=encoding),
        )

    # --- Signing ---

    def _digest(self, config: WebhookConfig, signed: bytes) -> str:
        mac = hmac.new(config.secret.encode("utf-8"), signed, getattr(hashlib, config.algorithm))
        if config.encoding == "base64":
            return base64.b64encode(mac.digest()).decode("ascii")
        return mac.hexdigest()

    def _signed_bytes(self, config: WebhookConfig, payload: bytes, timestamp: str | None) -> bytes:
        if config.scheme is SignatureScheme.SLACK:
            return b"v0:" + (timestamp or "").encode("ascii") + b":" + payload
        if config.scheme is SignatureScheme.STRIPE:
            return (timestamp or "").encode("ascii") + b"." + payload
        return payload

    def compute_signature(
        self,
        payload: str | bytes,
        config: WebhookConfig,
        timestamp: str | int | None = None,
    ) -> str:
        """The header value a sender using ``config`` would attach to ``payload``."""
        stamp = None if timestamp is None else str(timestamp)
        digest = self._digest(config, self._signed_bytes(config, _as_bytes(payload), stamp))
        if config.scheme is SignatureScheme.STRIPE:
            return f"t={stamp},v1={digest}"
        return f"{config.prefix}{digest}"

    def _check_timestamp(self, config: WebhookConfig, timestamp: str | None) -> str | None:
        if timestamp is None:
            return "Signature timestamp missing"
        try:
            sent_at = float(timestamp)
        except ValueError:
            return f"Invalid signature timestamp {timestamp!r}"
        if abs(self._clock() - sent_at) > config.tolerance_s:
            return "Signature timestamp outside tolerance"
        return None

    # --- Validation ---

    def validate(
        self,
        config_id: str,
        payload: str | bytes,
        signature: str,
        timestamp: str | None = None,
    ) -> WebhookResult:
        """Check ``signature`` for ``payload`` under the config stored as ``config_id``.

        For slack configs ``timestamp`` is the request timestamp header; for
        stripe it is read from the signature itself.
        """
        config = self._configs.get(config_id)
        if config is None:
            return WebhookResult(False, f"Webhook configuration not found: {config_id}")

        self.validations += 1
        body = _as_bytes(payload)
        if config.scheme is SignatureScheme.STRIPE:
            fields: dict[str, list[str]] = {}
            for item in signature.split(","):
                name, _, value = item.strip().partition("=")
                fields.setdefault(name, []).append(value)
            timestamp = (fields.get("t") or [None])[0]
            provided = fields.get("v1", [])
        else:
            provided = [signature]
            if config.prefix and signature.startswith(config.prefix):
                provided = [signature[len(config.prefix):]]

        if config.scheme is not SignatureScheme.HMAC:
            problem = self._check_timestamp(config, timestamp)
            if problem:
                logger.warning("Webhook %s rejected: %s", config_id, problem)
                return WebhookResult(False, problem, provided_signature=signature)

        expected = self._digest(config, self._signed_bytes(config, body, timestamp))
        valid = any(hmac.compare_digest(expected.encode("ascii"), p.encode("utf-8")) for p in provided)
        computed = self.compute_signature(body, config, timestamp)
        if not valid:
            logger.warning("Webhook %s rejected: signature mismatch (%d bytes)", config_id, len(body))
            return WebhookResult(False, "Signature validation failed", computed, signature)
        self.accepted += 1
        logger.debug("Webhook %s signature accepted", config_id)
        return WebhookResult(True, None, computed, signature)

    def validate_request(self, config_id: str, body: str | bytes, headers: Mapping[str, str]) -> WebhookResult:
        """Like :meth:`validate`, reading the signature (and timestamp) from ``headers``."""
        config = self._configs.get(config_id)
        if config is None:
            return WebhookResult(False, f"Webhook configuration not found: {config_id}")
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get(config.header_name.lower())
        if not signature:
            return WebhookResult(False, f"Signature header not found: {config.header_name}")
        timestamp = lowered.get(config.timestamp_header.lower()) if config.timestamp_header else None
        return self.validate(config_id, body, signature, timestamp)

    def test_config(self, config_id: str, payload: str = "test") -> dict[str, Any]:
        """Sign ``payload`` with a stored config, to compare against a sender's output."""
        config = self._configs.get(config_id)
        if config is None:
            return {"success": False, "error": f"Configuration not found: {config_id}"}
        timestamp = None if config.scheme is SignatureScheme.HMAC else str(int(self._clock()))
        return {"success": True, "signature": self.compute_signature(payload, config, timestamp)}

    def list_configs(self) -> list[dict[str, Any]]:
        return [{"id": config_id, **config.describe()} for config_id, config in self._configs.items()]

    def stats(self) -> dict[str, Any]:
        by_algorithm: dict[str, int] = {}
        for config in self._configs.values():
            by_algorithm[config.algorithm] = by_algorithm.get(config.algorithm, 0) + 1
        return {
            "configs": len(self._configs),
            "by_algorithm": by_algorithm,
            "validations": self.validations,
            "accepted": self.accepted,
        }
