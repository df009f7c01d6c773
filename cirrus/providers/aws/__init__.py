"""AWS EC2 provider for Cirrus.

Example:
    from cirrus import ComputeService
    from cirrus.providers.aws import AWS

    service = await ComputeService.create(AWS(regions=("us-east-1",)))
"""

from cirrus.providers.aws.config import AWS
from cirrus.providers.aws.provider import AWSProvider

__all__ = ["AWS", "AWSProvider"]
