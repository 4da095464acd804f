"""Retry decisions and delay parsing for upstream errors."""

from __future__ import annotations

import json
import math
import random
import re
import threading
import time
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

MAX_RETRY_BACKOFF = 5.0
MAX_QUOTA_COOLDOWN = 30 * 60.0
QUOTA_COOLDOWN = 5 * 60.0

EXPONENTIAL_BACKOFF_BASE = 0.5
EXPONENTIAL_BACKOFF_MAX = 8.0
EXPONENTIAL_BACKOFF_JITTER = 0.75

DEFAULT_RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

COMMON_RETRYABLE_PATTERNS = (
    "unavailable_model",
    "tokens_limit_reached",
    "context_length_exceeded",
    "context length",
    "model_overloaded",
    "overloaded",
    "thought_signature",
    "name cannot be empty",
    "messages parameter is illegal",
    "unknown_model",
    "max_tokens",
    "rate_limit_exceeded",
    "extra_forbidden",
    "enable-auto-tool-choice",
    "tool_call_parser",
    "valid string",
)

ANTHROPIC_RETRYABLE_PATTERNS = (
    "overloaded_error",
    "prompt is too long",
    "prompt: length",
)

GEMINI_RETRYABLE_PATTERNS = (
    "resource_exhausted",
    "the response was blocked",
    "content has no parts",
    "quota exceeded",
)

_QUOTA_PATTERNS = ("resource_exhausted", "quota exceeded", "quota_exceeded")
_RETRYABLE_CLIENT_STATUSES = (400, 413, 422)
_MESSAGE_PREFIXES = ("retry in ", "wait ", "retry after ")

_NANOSECOND = 1
_DURATION_UNITS = {
    "ns": _NANOSECOND,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DIGITS = re.compile(r"[0-9]*")
_MAX_NANOS = (1 << 63) - 1

Body = Union[bytes, str, None]


@dataclass(frozen=True)
class RPCDetail:
    """One entry of an RPC-style ``error.details`` list."""

    retry_delay: str = ""
    type_url: str = ""


def parse_go_duration(text: str) -> float:
    """Parse a duration such as ``"1h30m"`` or ``"2.5s"`` into seconds.

    Raises ValueError for anything that is not a valid duration.
    """
    rest = text
    negative = False
    if rest[:1] in ("-", "+"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise ValueError(f"invalid duration {text!r}")

    total = 0
    while rest:
        if not (rest[0] == "." or "0" <= rest[0] <= "9"):
            raise ValueError(f"invalid duration {text!r}")
        whole = _DIGITS.match(rest).group()
        rest = rest[len(whole):]
        fraction = ""
        if rest.startswith("."):
            rest = rest[1:]
            fraction = _DIGITS.match(rest).group()
            rest = rest[len(fraction):]
        if not whole and not fraction:
            raise ValueError(f"invalid duration {text!r}")

        end = 0
        while end < len(rest) and rest[end] != "." and not ("0" <= rest[end] <= "9"):
            end += 1
        unit_name = rest[:end]
        rest = rest[end:]
        if not unit_name:
            raise ValueError(f"missing unit in duration {text!r}")
        unit = _DURATION_UNITS.get(unit_name)
        if unit is None:
            raise ValueError(f"unknown unit {unit_name!r} in duration {text!r}")

        value = int(whole or "0") * unit
        if fraction:
            value += int(Fraction(int(fraction), 10 ** len(fraction)) * unit)
        total += value
        if total > _MAX_NANOS + (1 if negative else 0):
            raise ValueError(f"invalid duration {text!r}")

    return (-total if negative else total) / 1e9


def calculate_backoff(attempt: int) -> float:
    """Exponential backoff in seconds for ``attempt``, with random jitter."""
    delay = EXPONENTIAL_BACKOFF_BASE
    for _ in range(attempt):
        delay *= 2
        if delay >= EXPONENTIAL_BACKOFF_MAX:
            delay = EXPONENTIAL_BACKOFF_MAX
            break
    return delay + random.random() * EXPONENTIAL_BACKOFF_JITTER


def wait_with_cancel(cancel_event: Optional[threading.Event], seconds: float) -> bool:
    """Sleep for ``seconds`` unless ``cancel_event`` is set first.

    Returns True when the wait was cut short by the event.
    """
    if seconds <= 0:
        return False
    if cancel_event is None:
        time.sleep(seconds)
        return False
    return cancel_event.wait(seconds)


def cap_retry_delay(seconds: float) -> float:
    """Clamp a retry delay to the range 0 to MAX_RETRY_BACKOFF."""
    if seconds <= 0:
        return 0.0
    return min(float(seconds), MAX_RETRY_BACKOFF)


def _lower_text(body: Body) -> str:
    if body is None:
        return ""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    return body.lower()


def parse_quota_exhaustion(body: Body) -> float:
    """Cooldown in seconds implied by a quota-exhaustion error body, or 0."""
    if not body:
        return 0.0
    lower = _lower_text(body)
    if "per 86400s" in lower or "perday" in lower:
        return MAX_QUOTA_COOLDOWN
    if any(pattern in lower for pattern in _QUOTA_PATTERNS):
        return QUOTA_COOLDOWN
    return 0.0


def is_retryable_status(
    status_code: int,
    provider_codes: Optional[Sequence[int]] = None,
    global_codes: Optional[Sequence[int]] = None,
) -> bool:
    """Whether a status is retryable; provider codes win over global ones, then defaults."""
    if provider_codes:
        return status_code in provider_codes
    if global_codes:
        return status_code in global_codes
    return status_code in DEFAULT_RETRYABLE_STATUS_CODES


def is_retryable_client_error(status_code: int, body: Body, provider: str = "") -> bool:
    """Whether a 400/413/422 body names an error another target might not have."""
    if status_code not in _RETRYABLE_CLIENT_STATUSES or not body:
        return False
    lower = _lower_text(body)
    if any(pattern in lower for pattern in COMMON_RETRYABLE_PATTERNS):
        return True
    provider_lower = provider.lower()
    if "anthropic" in provider_lower and any(p in lower for p in ANTHROPIC_RETRYABLE_PATTERNS):
        return True
    if ("gemini" in provider_lower or "vertex" in provider_lower) and any(
        p in lower for p in GEMINI_RETRYABLE_PATTERNS
    ):
        return True
    return False


def parse_retry_delay_from_rpc_details(details: Optional[Iterable[RPCDetail]]) -> float:
    """First valid ``retryDelay`` among the details, capped, or 0."""
    for detail in details or ():
        if detail.retry_delay:
            try:
                return cap_retry_delay(parse_go_duration(detail.retry_delay))
            except ValueError:
                continue
    return 0.0


def parse_retry_delay_from_message(message: str) -> float:
    """Delay named in phrases like "retry in 3 seconds", capped, or 0."""
    lower = message.lower()
    for prefix in _MESSAGE_PREFIXES:
        idx = lower.find(prefix)
        if idx == -1:
            continue
        candidate = lower[idx + len(prefix):]
        end = 0
        while end < len(candidate) and "0" <= candidate[end] <= "9":
            end += 1
        if end == 0:
            continue
        value = float(candidate[:end])
        if math.isinf(value) or value <= 0:
            continue
        return cap_retry_delay(math.floor(value * 1e9) / 1e9)
    return 0.0


class _ShapeError(ValueError):
    pass


def _field(obj: Mapping[str, Any], name: str) -> Any:
    if name in obj:
        return obj[name]
    lowered = name.lower()
    for key, value in obj.items():
        if key.lower() == lowered:
            return value
    return None


def _string_field(obj: Mapping[str, Any], name: str) -> str:
    value = _field(obj, name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise _ShapeError(name)
    return value


def _decode_error_envelope(value: Any) -> Tuple[List[RPCDetail], str]:
    if value is None:
        return [], ""
    if not isinstance(value, dict):
        raise _ShapeError("envelope")
    error = _field(value, "error")
    if error is None:
        return [], ""
    if not isinstance(error, dict):
        raise _ShapeError("error")

    raw_details = _field(error, "details")
    details: List[RPCDetail] = []
    if raw_details is not None:
        if not isinstance(raw_details, list):
            raise _ShapeError("details")
        for item in raw_details:
            if item is None:
                details.append(RPCDetail())
            elif isinstance(item, dict):
                details.append(
                    RPCDetail(
                        retry_delay=_string_field(item, "retryDelay"),
                        type_url=_string_field(item, "@type"),
                    )
                )
            else:
                raise _ShapeError("detail")
    return details, _string_field(error, "message")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def _delay_from_envelope(details: List[RPCDetail], message: str) -> float:
    delay = parse_retry_delay_from_rpc_details(details)
    if delay > 0:
        return delay
    if message:
        return parse_retry_delay_from_message(message)
    return 0.0


def _header(headers: Optional[Mapping[str, str]], name: str) -> str:
    if not headers:
        return ""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return ""


def parse_retry_delay(headers: Optional[Mapping[str, str]], body: Body) -> float:
    """Retry delay in seconds from a Retry-After header or an error body, or 0."""
    retry_after = _header(headers, "Retry-After")
    if retry_after:
        try:
            seconds = parse_go_duration(retry_after + "s")
        except ValueError:
            seconds = 0.0
        if seconds > 0:
            return cap_retry_delay(seconds)

    if not body:
        return 0.0
    try:
        document = json.loads(body, parse_constant=_reject_constant)
    except ValueError:
        return 0.0

    try:
        delay = _delay_from_envelope(*_decode_error_envelope(document))
        if delay > 0:
            return delay
    except _ShapeError:
        pass

    if document is None or isinstance(document, list):
        try:
            envelopes = [_decode_error_envelope(item) for item in document or ()]
        except _ShapeError:
            return 0.0
        if envelopes:
            return _delay_from_envelope(*envelopes[0])
    return 0.0