"""Repository categorization by ordered keyword rules.

Rules are evaluated top to bottom and the first match wins, so specific
rules (``iot-server``) must stay ahead of the general ones (``iot-firmware``).
Reordering ``CATEGORY_RULES`` changes classification results.
"""
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Sequence

from org_compliance.domain.models import AuditResult


DEFAULT_CATEGORY = "general"

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")

IOT_WORDS = frozenset({"iot", "sensor", "sensors"})
IOT_SERVER_WORDS = frozenset({"server", "backend", "mqtt", "telemetry", "influxdb", "grafana"})
IOT_CONTEXT_WORDS = frozenset({"iot", "alteriom"})
FIRMWARE_WORDS = frozenset({
    "iot", "firmware", "embedded", "esp32", "esp8266", "arduino", "platformio",
    "sensor", "sensors", "lora", "mesh", "microcontroller",
})


Predicate = Callable[[FrozenSet[str]], bool]


@dataclass(frozen=True)
class CategoryRule:
    category: str
    predicate: Predicate


def _any_of(*words: str) -> Predicate:
    wanted = frozenset(words)
    return lambda tokens: not wanted.isdisjoint(tokens)


def _all_groups(*groups: Iterable[str]) -> Predicate:
    required = [frozenset(group) for group in groups]
    return lambda tokens: all(not group.isdisjoint(tokens) for group in required)


CATEGORY_RULES: Sequence[CategoryRule] = (
    CategoryRule("iot-server", _all_groups(IOT_WORDS, IOT_SERVER_WORDS)),
    CategoryRule("iot-documentation", _all_groups({"documentation", "docs"}, IOT_CONTEXT_WORDS)),
    CategoryRule("iot-infrastructure", _all_groups({"docker"}, IOT_CONTEXT_WORDS)),
    CategoryRule("iot-firmware", _any_of(*FIRMWARE_WORDS)),
    CategoryRule("ai-agent", _any_of("ai", "agent", "agents", "automation")),
    CategoryRule("api", _any_of("api", "server", "backend")),
    CategoryRule("frontend", _any_of("react", "frontend", "ui")),
    CategoryRule("cli-tool", _any_of("cli", "tool", "tools", "utility")),
    CategoryRule("library", _any_of("library", "package", "sdk")),
)


def tokenize(keywords: Iterable[str], name: str, description: str) -> FrozenSet[str]:
    """Lower-case word tokens drawn from keywords, name and description."""
    text = " ".join([*keywords, name or "", description or ""]).lower()
    return frozenset(_TOKEN_PATTERN.findall(text))


def categorize(signals) -> str:
    """Classify a repository into exactly one category.

    Args:
        signals: Any object exposing ``keywords``, ``name`` and ``description``

    Returns:
        The category of the first matching rule, or ``general``
    """
    tokens = tokenize(signals.keywords, signals.name, signals.description)
    for rule in CATEGORY_RULES:
        if rule.predicate(tokens):
            return rule.category
    return DEFAULT_CATEGORY


def group_by_category(results: Iterable[AuditResult]) -> Dict[str, List[str]]:
    """Bucket audited repositories by classification, in first-seen order."""
    groups: Dict[str, List[str]] = OrderedDict()
    for result in results:
        groups.setdefault(result.classification, []).append(result.repository.full_name)
    return groups
