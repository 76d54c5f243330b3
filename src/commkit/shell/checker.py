"""Security checking of extracted commands.

Evaluates commands against blacklist and whitelist rules:
- Blacklist rules reject a matching command
- In whitelist mode, a command must match at least one whitelist rule
- Blacklist takes precedence over the whitelist
- Checking stops at the first violation
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from commkit.shell.errors import SecurityCheckError
from commkit.shell.extractor import CommandExtractor
from commkit.shell.models import CommandRule, ExtractedCommand

logger = structlog.get_logger(__name__)


class SecurityChecker:
    """Checks extracted commands against blacklist and whitelist rules.

    Checkers are immutable: each with_* method returns a new checker, so
    a configured instance can be shared across threads.

    Example:
        checker = (
            SecurityChecker()
            .with_blacklist(CommandRule("rm"))
            .with_whitelist(CommandRule("ls"), CommandRule("cat"))
            .with_whitelist_mode(True)
        )
        checker.check(CommandExtractor().extract("ls -la | cat"))
    """

    def __init__(
        self,
        blacklist: Iterable[CommandRule] = (),
        whitelist: Iterable[CommandRule] = (),
        whitelist_mode: bool = False,
    ):
        self._blacklist = tuple(blacklist)
        self._whitelist = tuple(whitelist)
        self._whitelist_mode = whitelist_mode

    @property
    def blacklist(self) -> tuple[CommandRule, ...]:
        return self._blacklist

    @property
    def whitelist(self) -> tuple[CommandRule, ...]:
        return self._whitelist

    @property
    def whitelist_mode(self) -> bool:
        return self._whitelist_mode

    @property
    def has_rules(self) -> bool:
        """Whether checking can ever reject a command."""
        return bool(self._blacklist) or self._whitelist_mode

    def with_blacklist(self, *rules: CommandRule) -> SecurityChecker:
        """Return a checker with the rules appended to the blacklist."""
        return SecurityChecker(self._blacklist + rules, self._whitelist, self._whitelist_mode)

    def with_whitelist(self, *rules: CommandRule) -> SecurityChecker:
        """Return a checker with the rules appended to the whitelist."""
        return SecurityChecker(self._blacklist, self._whitelist + rules, self._whitelist_mode)

    def with_whitelist_mode(self, enabled: bool) -> SecurityChecker:
        """Return a checker with whitelist mode switched on or off."""
        return SecurityChecker(self._blacklist, self._whitelist, enabled)

    def check(self, commands: Iterable[ExtractedCommand]) -> None:
        """Check commands in order, raising on the first violation.

        Args:
            commands: Extracted commands to check.

        Raises:
            SecurityCheckError: If a command is blacklisted, or is not
                whitelisted while whitelist mode is on.
        """
        for command in commands:
            self.check_command(command)

    def check_command(self, command: ExtractedCommand) -> None:
        """Check a single command, raising SecurityCheckError on violation."""
        for rule in self._blacklist:
            if rule.matches(command):
                logger.warning(
                    "security_check_failed",
                    command=command.name,
                    rule=rule.pattern,
                    violation="blacklist",
                    source=command.source.value,
                )
                raise SecurityCheckError(command.name, "blacklist", rule=rule.pattern)

        if self._whitelist_mode and not any(rule.matches(command) for rule in self._whitelist):
            logger.warning(
                "security_check_failed",
                command=command.name,
                violation="whitelist",
                source=command.source.value,
            )
            raise SecurityCheckError(command.name, "whitelist")


def check_commands(
    commands: Iterable[ExtractedCommand],
    checker: SecurityChecker | None = None,
) -> None:
    """Check commands with an optional checker; no checker allows everything."""
    if checker is None:
        return
    checker.check(commands)


def check_script(text: str, checker: SecurityChecker | None = None) -> list[ExtractedCommand]:
    """Extract the commands in text and check them.

    Args:
        text: Script or command line.
        checker: Checker to apply, or None to only extract.

    Returns:
        The extracted commands, when all of them pass.

    Raises:
        ShellParseError: If the text is not valid shell syntax.
        SecurityCheckError: On the first violating command.
    """
    commands = CommandExtractor().extract(text)
    check_commands(commands, checker)
    return commands


def get_security_check_error(exc: BaseException | None) -> SecurityCheckError | None:
    """Find a SecurityCheckError in an exception or its cause chain."""
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, SecurityCheckError):
            return exc
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return None
