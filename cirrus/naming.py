"""Group naming convention for secondary resources.

Provider APIs give keypairs and security groups no back-reference to the
nodes using them, so ownership is encoded in the name:

    cirrus-web            shared name for group "web"
    cirrus-web-1a2b3c4d   unique name for group "web"

The convention is a policy object passed to whoever needs it, so
deployments sharing an account can use distinct prefixes.
"""

from __future__ import annotations

import re
import secrets
from typing import Protocol, runtime_checkable


@runtime_checkable
class NamingConvention(Protocol):
    def shared_name_for_group(self, group: str) -> str: ...

    def unique_name_for_group(self, group: str) -> str: ...

    def group_of(self, name: str) -> str | None:
        """Owning group encoded in name, None if name is not ours."""
        ...


class GroupNamingConvention:
    def __init__(self, prefix: str = "cirrus", delimiter: str = "-", suffix_length: int = 8) -> None:
        if not prefix or any(c.isspace() for c in prefix):
            raise ValueError(f"Invalid prefix: {prefix!r}")
        if len(delimiter) != 1:
            raise ValueError(f"Delimiter must be a single character: {delimiter!r}")
        self.prefix = prefix
        self.delimiter = delimiter
        self.suffix_length = suffix_length
        d = re.escape(delimiter)
        self._pattern = re.compile(
            rf"^{re.escape(prefix)}{d}(?P<group>.+?)(?:{d}[0-9a-f]{{{suffix_length}}})?$"
        )

    def __repr__(self) -> str:
        return f"GroupNamingConvention(prefix={self.prefix!r}, delimiter={self.delimiter!r})"

    def _check(self, group: str) -> str:
        if not group or any(c.isspace() for c in group):
            raise ValueError(f"Invalid group name: {group!r}")
        return group

    def shared_name_for_group(self, group: str) -> str:
        return f"{self.prefix}{self.delimiter}{self._check(group)}"

    def unique_name_for_group(self, group: str) -> str:
        suffix = secrets.token_hex(self.suffix_length // 2 + 1)[: self.suffix_length]
        return f"{self.shared_name_for_group(group)}{self.delimiter}{suffix}"

    def group_of(self, name: str) -> str | None:
        match = self._pattern.match(name)
        return match.group("group") if match else None
