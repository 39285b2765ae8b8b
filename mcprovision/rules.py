import logging
import platform
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .errors import UnsupportedPlatform

log = logging.getLogger(__name__)


def get_os_name(system: Optional[str] = None) -> str:
    """Gets the current OS name ('windows', 'osx', 'linux')."""
    system = system or platform.system()
    if system == 'Windows': return 'windows'
    elif system == 'Darwin': return 'osx'
    elif system == 'Linux': return 'linux'
    else: raise UnsupportedPlatform(f"Unsupported platform: {system}")


def get_arch_name(machine: Optional[str] = None) -> str:
    """Gets the current architecture name ('x64', 'x86', 'arm64', 'arm32')."""
    machine = (machine or platform.machine()).lower()
    if machine in ['amd64', 'x86_64']: return 'x64'
    elif machine in ['i386', 'i686', 'x86']: return 'x86'
    elif machine in ['arm64', 'aarch64']: return 'arm64'
    elif machine.startswith('arm') and '64' not in machine: return 'arm32'
    else:
        log.warning(f"Unsupported architecture: {machine}. Falling back to 'x64'. This might cause issues.")
        return 'x64'


@dataclass(frozen=True)
class PlatformFacts:
    """The small fact set rules are evaluated against."""
    os_name: str
    arch: str
    os_version: str = ''
    features: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def current(cls, features: Iterable[str] = ()) -> 'PlatformFacts':
        return cls(get_os_name(), get_arch_name(), platform.version(), frozenset(features))

    def with_features(self, features: Iterable[str]) -> 'PlatformFacts':
        return PlatformFacts(self.os_name, self.arch, self.os_version, frozenset(features))

    @property
    def arch_bits(self) -> str:
        """Value substituted for ``${arch}`` in legacy natives classifiers."""
        if self.arch == 'x64': return '64'
        if self.arch == 'x86': return '32'
        return self.arch


@dataclass(frozen=True)
class Rule:
    action: str
    os_name: Optional[str] = None
    os_arch: Optional[str] = None
    os_version: Optional[str] = None
    features: Tuple[Tuple[str, bool], ...] = ()

    @classmethod
    def parse(cls, data: Any) -> 'Rule':
        if not isinstance(data, dict):
            raise ValueError("rule must be an object")
        action = data.get('action')
        if action not in ('allow', 'disallow'):
            raise ValueError(f"rule action must be 'allow' or 'disallow', got {action!r}")
        os_rule = data.get('os') or {}
        if not isinstance(os_rule, dict):
            raise ValueError("rule 'os' must be an object")
        features = data.get('features') or {}
        if not isinstance(features, dict):
            raise ValueError("rule 'features' must be an object")
        return cls(
            action=action,
            os_name=os_rule.get('name'),
            os_arch=os_rule.get('arch'),
            os_version=os_rule.get('version'),
            features=tuple(sorted((str(k), bool(v)) for k, v in features.items())),
        )


def _arch_matches(rule_arch: str, facts: PlatformFacts) -> bool:
    # Manifests only ever say "x86" to single out 32-bit JVMs.
    if rule_arch == 'x86':
        return facts.arch == 'x86'
    return rule_arch == facts.arch


def applies(rule: Rule, facts: PlatformFacts) -> bool:
    """True when every condition of ``rule`` holds for ``facts`` (the action is ignored)."""
    if rule.os_name is not None and rule.os_name != facts.os_name:
        return False
    if rule.os_arch is not None and not _arch_matches(rule.os_arch, facts):
        return False
    if rule.os_version is not None:
        try:
            if re.search(rule.os_version, facts.os_version) is None:
                return False
        except re.error:
            log.warning(f"Invalid os.version pattern in rule: {rule.os_version!r}")
            return False
    for name, expected in rule.features:
        if (name in facts.features) != expected:
            return False
    return True


def is_allowed(rules: Iterable[Rule], facts: PlatformFacts) -> bool:
    """
    Checks if an item (library/argument) should be included based on its rules.

    No rules means always included. Otherwise the item is denied by default,
    allowed by a matching 'allow' rule, and denied outright by any matching
    'disallow' rule.
    """
    rules = tuple(rules)
    if not rules:
        return True
    allowed = False
    for rule in rules:
        if not applies(rule, facts):
            continue
        if rule.action == 'disallow':
            return False
        allowed = True
    return allowed


def parse_rules(data: Any) -> Tuple[Rule, ...]:
    if data is None:
        return ()
    if not isinstance(data, list):
        raise ValueError("rules must be a list")
    return tuple(Rule.parse(item) for item in data)


def interpret_arguments(entries: Iterable[Any], facts: PlatformFacts) -> List[str]:
    """Flattens a manifest argument list, dropping entries whose rules don't allow them."""
    result: List[str] = []
    for entry in entries:
        if isinstance(entry, str):
            result.append(entry)
        elif isinstance(entry, dict):
            if not is_allowed(parse_rules(entry.get('rules')), facts):
                continue
            value = entry.get('value')
            if isinstance(value, list):
                result.extend(str(v) for v in value)
            elif isinstance(value, str):
                result.append(value)
            else:
                raise ValueError(f"Unsupported value type in argument object: {value!r}")
        else:
            raise ValueError(f"Unsupported argument format: {entry!r}")
    return result


def enabled_features(options: Mapping[str, Any]) -> Dict[str, bool]:
    """Feature flags derived from user options."""
    return {
        'is_demo_user': bool(options.get('demo', False)),
        'has_custom_resolution': bool(options.get('resolution_width') and options.get('resolution_height')),
    }
