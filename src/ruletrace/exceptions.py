"""Exception taxonomy for ruletrace."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ruletrace.model import DocumentSpan


class RuletraceError(Exception):
    """Base class for every error raised by ruletrace."""


class ConfigError(RuletraceError):
    """Malformed configuration; raised by the config loader only."""


class ManifestLoadError(RuletraceError):
    """A rule source could not be read or parsed."""

    def __init__(self, message: str, *, source: str = "") -> None:
        super().__init__(f"{source}: {message}" if source else message)
        self.source = source


class DuplicateRuleError(RuletraceError):
    """Two declarations share one rule id within a single extraction pass."""

    def __init__(
        self,
        rule_id: str,
        *,
        first: DocumentSpan,
        second: DocumentSpan,
    ) -> None:
        super().__init__(
            f"duplicate rule id {rule_id!r}: declared at {first} and again at {second}"
        )
        self.rule_id = rule_id
        self.first = first
        self.second = second


class ParseError(RuletraceError):
    """One rule marker is malformed; only that rule is dropped."""

    def __init__(self, message: str, *, path: str, line: int, rule_id: str = "") -> None:
        super().__init__(f"{path}:{line}: {message}")
        self.message = message
        self.path = path
        self.line = line
        self.rule_id = rule_id


class UnknownSpecError(RuletraceError, KeyError):
    """A query named a spec the session does not own."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown spec"


class NotBuiltError(RuletraceError):
    """A query arrived before the spec's first successful rebuild."""


class SessionClosedError(RuletraceError):
    """A rebuild was requested while the spec's worker is not running."""


class NeverThrown(RuntimeError):
    """Raised by ``never()`` when a statically unreachable path is reached."""

    def __init__(self, reason: str, *, env: dict[str, object] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.env = dict(env or {})
