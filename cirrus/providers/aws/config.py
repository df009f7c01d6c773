"""AWS provider configuration.

Immutable configuration dataclass for the EC2 provider.
"""

from __future__ import annotations

import typing
from dataclasses import dataclass

from cirrus.api.provider import ProviderConfig

if typing.TYPE_CHECKING:
    from cirrus.providers.aws.provider import AWSProvider


@dataclass(frozen=True, slots=True)
class AWS(ProviderConfig):
    """AWS provider configuration.

    Each region is a scope: keypair and security group names only need to
    be unique within it.

    Example:
        >>> from cirrus.providers.aws import AWS
        >>> config = AWS(regions=("us-west-2",))

    Args:
        regions: Regions this provider may operate in.
        profile: Named AWS profile. If None, the default credential chain.
        request_timeout: Connect/read timeout of each API call in seconds.
        group_tag: Tag key recording the group a node belongs to.
    """

    regions: tuple[str, ...] = ("us-east-1",)
    profile: str | None = None
    request_timeout: int = 30
    group_tag: str = "cirrus:group"

    @property
    def type(self) -> str: return "aws"

    async def create_provider(self) -> AWSProvider:
        from cirrus.providers.aws.provider import AWSProvider
        return await AWSProvider.create(self)
