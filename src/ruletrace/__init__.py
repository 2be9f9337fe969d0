"""ruletrace package root."""

from ruletrace.exceptions import (
    ConfigError,
    DuplicateRuleError,
    ManifestLoadError,
    NeverThrown,
    ParseError,
    RuletraceError,
    SessionClosedError,
)
from ruletrace.invariants import never
from ruletrace.log import configure_library_defaults

__all__ = [
    "__version__",
    "ConfigError",
    "DuplicateRuleError",
    "ManifestLoadError",
    "NeverThrown",
    "ParseError",
    "RuletraceError",
    "SessionClosedError",
    "never",
]

__version__ = "0.1.0"

configure_library_defaults()
