"""Provider adapters."""

from cirrus.providers.aws import AWS
from cirrus.providers.memory import Memory

__all__ = ["AWS", "Memory"]
