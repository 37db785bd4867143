"""Per-invocation tally of warnings, errors and follow-up suggestions."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field


@dataclass
class RunContext:
    """Threaded through component calls and summarised once at exit."""

    debug: bool = False
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    def warn(self, message: str, logger: logging.Logger | None = None) -> None:
        self.warnings.append(message)
        if logger is not None:
            logger.warning(message)

    def error(self, message: str, logger: logging.Logger | None = None) -> None:
        self.errors.append(message)
        if logger is not None:
            logger.error(message)

    def suggest(self, message: str) -> None:
        if message not in self.suggestions:
            self.suggestions.append(message)

    @property
    def clean(self) -> bool:
        return not self.errors and not self.warnings

    def summary_lines(self) -> list[str]:
        lines: list[str] = []
        if self.errors or self.warnings:
            lines.append(f"Completed with {len(self.errors)} error(s) and {len(self.warnings)} warning(s)")
        if self.suggestions:
            lines.append("Suggested next steps:")
            lines.extend(f"  - {item}" for item in self.suggestions)
        return lines


__all__ = ["RunContext"]
