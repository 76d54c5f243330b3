"""Configuration for the gosh executor.

Provides the executor's kill timeout, security rules and handler
registry, loadable from YAML files.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from commkit.shell.checker import SecurityChecker
from commkit.shell.handlers import Handler, HandlerRegistry
from commkit.shell.models import ArgMatcher, CommandRule, CommandSource, MatchMode

if TYPE_CHECKING:
    from commkit.config import CommkitSettings

DEFAULT_KILL_TIMEOUT = 6.0


@dataclass
class GoshConfig:
    """Configuration for running scripts through the embedded interpreter.

    Builder methods return new configs; the original is left unchanged.

    Attributes:
        kill_timeout: Seconds before an external process is killed.
        blacklist: Rules that reject matching commands.
        whitelist_mode: Whether commands must match a whitelist rule.
        whitelist: Rules that admit commands in whitelist mode.
        handlers: In-process handlers that replace executables.
        precheck: Check the extracted commands before running anything.
    """

    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    blacklist: list[CommandRule] = field(default_factory=list)
    whitelist_mode: bool = False
    whitelist: list[CommandRule] = field(default_factory=list)
    handlers: HandlerRegistry = field(default_factory=HandlerRegistry)
    precheck: bool = True

    def with_kill_timeout(self, seconds: float) -> GoshConfig:
        return replace(self, kill_timeout=seconds)

    def with_blacklist(self, *rules: CommandRule) -> GoshConfig:
        return replace(self, blacklist=[*self.blacklist, *rules])

    def with_blacklist_simple(self, *names: str) -> GoshConfig:
        """Blacklist commands by exact name."""
        return self.with_blacklist(*(CommandRule(name) for name in names))

    def with_whitelist_mode(self, enabled: bool) -> GoshConfig:
        return replace(self, whitelist_mode=enabled)

    def with_whitelist(self, *rules: CommandRule) -> GoshConfig:
        return replace(self, whitelist=[*self.whitelist, *rules])

    def with_whitelist_simple(self, *names: str) -> GoshConfig:
        """Whitelist commands by exact name."""
        return self.with_whitelist(*(CommandRule(name) for name in names))

    def with_handler(
        self,
        pattern: str,
        handler: Handler,
        mode: MatchMode = MatchMode.GLOB,
        priority: int = 0,
        description: str = "",
    ) -> GoshConfig:
        """Return a config whose registry also holds the given handler."""
        handlers = self.handlers.copy()
        handlers.register(pattern, handler, priority=priority, match_mode=mode, description=description)
        return replace(self, handlers=handlers)

    def security_checker(self) -> SecurityChecker:
        """Build the checker enforcing this config's rules."""
        return SecurityChecker(self.blacklist, self.whitelist, self.whitelist_mode)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GoshConfig:
        """Create config from dictionary.

        Rules are either plain command names (exact match) or mappings
        with pattern, mode, args and sources keys.

        Args:
            data: Configuration dictionary.

        Returns:
            GoshConfig instance.
        """
        return cls(
            kill_timeout=float(data.get("kill_timeout", DEFAULT_KILL_TIMEOUT)),
            blacklist=[_rule_from_data(item) for item in data.get("blacklist") or []],
            whitelist_mode=bool(data.get("whitelist_mode", False)),
            whitelist=[_rule_from_data(item) for item in data.get("whitelist") or []],
            precheck=bool(data.get("precheck", True)),
        )

    @classmethod
    def from_yaml(cls, path: Path | str) -> GoshConfig:
        """Load config from YAML file; a missing file yields the defaults."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def load_default(cls, settings: CommkitSettings | None = None) -> GoshConfig:
        """Load configuration from the default locations.

        Looks for config in:
        1. settings.gosh_config_file
        2. ~/.config/commkit/gosh.yaml
        3. ./gosh.yaml (project local)

        The settings kill timeout applies when the file sets none.

        Returns:
            GoshConfig instance.
        """
        candidates = [
            Path.home() / ".config" / "commkit" / "gosh.yaml",
            Path("gosh.yaml"),
        ]
        if settings is not None and settings.gosh_config_file is not None:
            candidates.insert(0, Path(settings.gosh_config_file).expanduser())

        data: dict[str, Any] = {}
        for candidate in candidates:
            if candidate.exists():
                with open(candidate) as f:
                    data = yaml.safe_load(f) or {}
                break

        if settings is not None:
            data.setdefault("kill_timeout", settings.kill_timeout)
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary (handlers are not serialized)."""
        return {
            "kill_timeout": self.kill_timeout,
            "precheck": self.precheck,
            "whitelist_mode": self.whitelist_mode,
            "blacklist": [_rule_to_data(rule) for rule in self.blacklist],
            "whitelist": [_rule_to_data(rule) for rule in self.whitelist],
        }


def _rule_from_data(item: str | dict[str, Any]) -> CommandRule:
    if isinstance(item, str):
        return CommandRule(item)
    rule = CommandRule(item["pattern"], MatchMode(item.get("mode", "exact")))
    matchers = [
        ArgMatcher(
            position=int(arg.get("position", -1)),
            pattern=arg["pattern"],
            mode=MatchMode(arg.get("mode", "exact")),
        )
        for arg in item.get("args") or []
    ]
    sources = [CommandSource(source) for source in item.get("sources") or []]
    return rule.with_args_filter(*matchers).with_source_filter(*sources)


def _rule_to_data(rule: CommandRule) -> str | dict[str, Any]:
    if rule.mode is MatchMode.EXACT and not rule.args_filter and not rule.source_filter:
        return rule.pattern
    return {
        "pattern": rule.pattern,
        "mode": rule.mode.value,
        "args": [
            {"position": m.position, "pattern": m.pattern, "mode": m.mode.value}
            for m in rule.args_filter
        ],
        "sources": [source.value for source in rule.source_filter],
    }
