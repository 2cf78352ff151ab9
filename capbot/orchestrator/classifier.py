"""Error classification for provisioner failures.

Maps a raw error payload (CLI text, a JSON service error, or a mixture of
both) to an :class:`~capbot.core.models.ErrorKind`.  The mapping is an
**ordered** tuple of :class:`ClassificationRule`; the first rule whose
predicate matches wins, so the order is the priority:

1. ``RATE_LIMIT``      before capacity, since throttling messages can mention capacity
2. ``LIMIT_EXCEEDED``  before capacity, since OCI phrases it as "service limits were exceeded"
3. ``CAPACITY``
4. ``DUPLICATE``
5. ``AUTH``
6. ``INTERNAL_ERROR``
7. ``NETWORK``
8. ``CONFIG``

Anything else is ``UNKNOWN``.  :meth:`ErrorClassifier.classify` is total:
it never raises, whatever it is given.

Payload normalisation
~~~~~~~~~~~~~~~~~~~~~
The OCI CLI prints ``ServiceError:`` followed by a JSON object.  Before
matching, the embedded object's ``code``, ``message`` and ``status`` are
extracted and the CamelCase code is split into words
(``TooManyRequests`` → ``too many requests``), and the status becomes an
``http NNN`` token.  The original text is always matched as well.

Typical usage::

    from capbot.orchestrator.classifier import classify

    classify("Out of host capacity.")                      # ErrorKind.CAPACITY
    classify({"code": "TooManyRequests", "status": 429})   # ErrorKind.RATE_LIMIT
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Final

from capbot.core.models import ErrorKind

__all__ = [
    "ClassificationRule",
    "DEFAULT_RULES",
    "ErrorClassifier",
    "classify",
    "normalize_payload",
]

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_JSON_FIELDS: Final[tuple[str, ...]] = ("code", "message", "status")


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassificationRule:
    """One ``(predicate, ErrorKind)`` pair.

    Attributes:
        name: Short label used in debug logs and tests.
        kind: Kind returned when the predicate matches.
        predicate: Callable receiving the normalised (lower-case) payload.
    """

    name: str
    kind: ErrorKind
    predicate: Callable[[str], bool]

    @classmethod
    def from_patterns(cls, name: str, kind: ErrorKind, *patterns: str) -> ClassificationRule:
        """Build a rule matching any of the regular expression *patterns*."""
        compiled = re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE)
        return cls(name=name, kind=kind, predicate=lambda text: compiled.search(text) is not None)


DEFAULT_RULES: Final[tuple[ClassificationRule, ...]] = (
    ClassificationRule.from_patterns(
        "rate-limit",
        ErrorKind.RATE_LIMIT,
        r"too many requests",
        r"rate.?limit",
        r"throttl",
        r"\b429\b",
    ),
    ClassificationRule.from_patterns(
        "limit-exceeded",
        ErrorKind.LIMIT_EXCEEDED,
        r"limit exceeded",
        r"limitexceeded",
        r"limits? (?:were|was|has been) exceeded",
    ),
    ClassificationRule.from_patterns(
        "capacity",
        ErrorKind.CAPACITY,
        r"out of (?:host )?capacity",
        r"host capacity",
        r"insufficient capacity",
        r"quota exceeded",
        r"service limit",
        r"resource unavailable",
        r"capacity",
    ),
    ClassificationRule.from_patterns(
        "duplicate",
        ErrorKind.DUPLICATE,
        r"display name already exists",
        r"instance.*already exists",
        r"duplicate.*name",
    ),
    ClassificationRule.from_patterns(
        "auth",
        ErrorKind.AUTH,
        r"not ?authenticated",
        r"authentication",
        r"not ?authorized",
        r"authorization",
        r"unauthorized",
        r"\bhttp 401\b",
    ),
    ClassificationRule.from_patterns(
        "internal-error",
        ErrorKind.INTERNAL_ERROR,
        r"internal ?error",
        r"internal server error",
        r"\bhttp 5\d\d\b",
    ),
    ClassificationRule.from_patterns(
        "network",
        ErrorKind.NETWORK,
        r"network",
        r"time(?:d)? ?out",
        r"connection",
        r"could not connect",
        r"name resolution",
    ),
    ClassificationRule.from_patterns(
        "config",
        ErrorKind.CONFIG,
        r"not found",
        r"invalid.*id",
        r"does not exist",
        r"invalid ?parameter",
        r"missing required",
    ),
)


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def _split_camel(value: str) -> str:
    return _CAMEL_BOUNDARY.sub(" ", value)


def _extract_fields(obj: Mapping[str, Any]) -> list[str]:
    parts: list[str] = []
    for field in _JSON_FIELDS:
        value = obj.get(field)
        if value is None:
            continue
        if field == "status":
            parts.append(f"http {value}")
        elif field == "code":
            parts.append(_split_camel(str(value)))
        else:
            parts.append(str(value))
    return parts


def _embedded_json(text: str) -> Mapping[str, Any] | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        obj = json.loads(text[start : end + 1])
    except ValueError:
        return None
    return obj if isinstance(obj, Mapping) else None


def normalize_payload(raw: Any) -> str:
    """Flatten *raw* into one lower-case string suitable for pattern matching.

    Accepts ``str``, ``bytes``, a mapping (parsed JSON) or ``None``; any
    other object is converted with :func:`str`.
    """
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, Mapping):
        parts = _extract_fields(raw)
        parts.append(json.dumps(raw, default=str))
        return " ".join(parts).lower()

    text = str(raw)
    parts = [text]
    embedded = _embedded_json(text)
    if embedded is not None:
        parts.extend(_extract_fields(embedded))
    return " ".join(parts).lower()


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class ErrorClassifier:
    """Ordered-rule classifier.

    Args:
        rules: Rules in priority order.  Defaults to :data:`DEFAULT_RULES`.
    """

    def __init__(self, rules: tuple[ClassificationRule, ...] = DEFAULT_RULES) -> None:
        self._rules = rules

    @property
    def rules(self) -> tuple[ClassificationRule, ...]:
        return self._rules

    def match(self, raw: Any) -> ClassificationRule | None:
        """Return the first matching rule, or ``None``."""
        try:
            text = normalize_payload(raw)
        except Exception:  # noqa: BLE001
            logger.debug("Could not normalise error payload %r.", raw, exc_info=True)
            return None
        if not text:
            return None
        for rule in self._rules:
            if rule.predicate(text):
                return rule
        return None

    def classify(self, raw: Any) -> ErrorKind:
        """Return the :class:`ErrorKind` of *raw*; ``UNKNOWN`` if nothing matches."""
        rule = self.match(raw)
        if rule is None:
            logger.debug("Unclassified error payload: %.200r", raw)
            return ErrorKind.UNKNOWN
        return rule.kind


_DEFAULT_CLASSIFIER = ErrorClassifier()


def classify(raw: Any) -> ErrorKind:
    """Classify *raw* with the default rule set."""
    return _DEFAULT_CLASSIFIER.classify(raw)
