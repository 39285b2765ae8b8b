import logging
import re
from typing import Any, Dict, Iterable, List, Mapping

from .errors import UnresolvedPlaceholder

log = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r'\$\{([A-Za-z0-9_.\-]+)\}')


def replace_text(value: Any, replacements: Dict[str, str]) -> Any:
    """
    Replaces all occurrences of specified substrings within a string.
    Does not use regular expressions.

    Used for the ``:thisdir:`` token in config files. Non-string values
    (numbers, booleans, lists) are returned untouched.
    """
    if not isinstance(value, str):
        return value

    modified_value = value
    for search_string, replace_string in replacements.items():
        modified_value = modified_value.replace(search_string, replace_string)
    return modified_value


def substitute(argument: str, values: Mapping[str, str]) -> str:
    """
    Replaces every ``${name}`` placeholder in a launch argument.

    Raises:
        UnresolvedPlaceholder: if ``values`` has no entry for a placeholder.
    """
    def _lookup(match: 're.Match[str]') -> str:
        name = match.group(1)
        if name not in values:
            raise UnresolvedPlaceholder(name, argument)
        return values[name]

    return PLACEHOLDER_PATTERN.sub(_lookup, argument)


def substitute_all(arguments: Iterable[str], values: Mapping[str, str]) -> List[str]:
    return [substitute(arg, values) for arg in arguments]
