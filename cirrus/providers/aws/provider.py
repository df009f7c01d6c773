"""EC2 adapter: nodes, images, keypairs and security groups per region."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from cirrus.api.model import (
    Image,
    ImageStatus,
    KeyPair,
    Node,
    NodeStatus,
    NodeTemplate,
    ResourceRef,
    ScopedName,
    SecondaryKind,
    SecondaryResource,
    SecurityGroup,
)
from cirrus.core.exceptions import (
    ConfigurationError,
    CreationConflictError,
    ResourceInUseError,
    ResourceNotFoundError,
    TransportError,
)
from cirrus.providers.aws.config import AWS
from cirrus.retry import error_code, on_error_code, retry

log = logger.bind(component="aws")

type ClientFactory = Callable[[str], AbstractAsyncContextManager[Any]]
"""Factory returning an async context manager for the EC2 client of a region."""

NOT_FOUND = frozenset({
    "InvalidInstanceID.NotFound",
    "InvalidInstanceID.Malformed",
    "InvalidAMIID.NotFound",
    "InvalidAMIID.Unavailable",
    "InvalidKeyPair.NotFound",
    "InvalidGroup.NotFound",
    "InvalidGroupId.NotFound",
})
CONFLICT = frozenset({"InvalidKeyPair.Duplicate", "InvalidGroup.Duplicate"})
IN_USE = frozenset({"DependencyViolation", "InvalidGroup.InUse", "IncorrectInstanceState"})
THROTTLED = frozenset({
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "Unavailable",
    "ServiceUnavailable",
})

INSTANCE_STATES: dict[str, NodeStatus] = {
    "shutting-down": NodeStatus.STOPPING,
}

IMAGE_STATES: dict[str, ImageStatus] = {
    "pending": ImageStatus.SAVING,
    "transient": ImageStatus.SAVING,
    "available": ImageStatus.ACTIVE,
    "failed": ImageStatus.ERROR,
    "invalid": ImageStatus.ERROR,
}

LIVE_STATES = ("pending", "running", "stopping", "stopped")


def _translate(e: ClientError, operation: str, subject: ResourceRef | ScopedName) -> Exception | None:
    """Cirrus error for a ClientError, None when it has no portable meaning."""
    code = error_code(e) or ""
    message = e.response.get("Error", {}).get("Message", str(e))
    if code in NOT_FOUND:
        return ResourceNotFoundError(subject)
    if code in CONFLICT:
        key = subject if isinstance(subject, ScopedName) else ScopedName(subject.scope, subject.id)
        return CreationConflictError(key, code)
    if code in IN_USE:
        return ResourceInUseError(subject, message)
    status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    if code in THROTTLED or status >= 500:
        return TransportError(operation, message, code=code)
    return None


def _tags(raw: dict[str, Any]) -> dict[str, str]:
    return {t["Key"]: t["Value"] for t in raw.get("Tags", [])}


class AWSProvider:
    """ComputeProvider over the EC2 API; the scope of every resource is its region."""

    def __init__(self, config: AWS, ec2: ClientFactory | None = None) -> None:
        self.config = config
        self._ec2 = ec2 or self._session_factory()

    @classmethod
    async def create(cls, config: AWS) -> AWSProvider:
        return cls(config)

    @property
    def name(self) -> str:
        return "aws"

    def _session_factory(self) -> ClientFactory:
        session = aioboto3.Session(profile_name=self.config.profile)
        boto_config = BotoConfig(
            connect_timeout=self.config.request_timeout,
            read_timeout=self.config.request_timeout,
        )

        @asynccontextmanager
        async def factory(region: str) -> AsyncIterator[Any]:
            async with session.client("ec2", region_name=region, config=boto_config) as client:
                yield client

        return factory

    def _check_scope(self, scope: str) -> None:
        if scope not in self.config.regions:
            raise ConfigurationError(
                f"Region '{scope}' not enabled. Enabled: {', '.join(self.config.regions)}"
            )

    @retry(on=on_error_code(*THROTTLED), max_attempts=4, base_delay=0.5)
    async def _call(self, scope: str, operation: str, **kwargs: Any) -> dict[str, Any]:
        async with self._ec2(scope) as ec2:
            return await getattr(ec2, operation)(**kwargs)

    async def _request(
        self, scope: str, operation: str, subject: ResourceRef | ScopedName, **kwargs: Any,
    ) -> dict[str, Any]:
        self._check_scope(scope)
        try:
            return await self._call(scope, operation, **kwargs)
        except ClientError as e:
            translated = _translate(e, operation, subject)
            if translated is None:
                raise
            raise translated from e
        except BotoCoreError as e:
            raise TransportError(operation, str(e)) from e

    def _to_node(self, scope: str, raw: dict[str, Any]) -> Node:
        tags = _tags(raw)
        return Node(
            ref=ResourceRef(scope, raw["InstanceId"]),
            status=NodeStatus.parse(raw["State"]["Name"], INSTANCE_STATES),
            raw=raw,
            group=tags.get(self.config.group_tag),
            name=tags.get("Name"),
            keypair=raw.get("KeyName"),
            security_groups=tuple(g["GroupName"] for g in raw.get("SecurityGroups", [])),
            public_ip=raw.get("PublicIpAddress"),
        )

    async def _describe_instances(self, scope: str, **kwargs: Any) -> list[Node]:
        nodes: list[Node] = []
        token: str | None = None
        while True:
            page = await self._request(
                scope, "describe_instances", ScopedName(scope, "instances"),
                **kwargs, **({"NextToken": token} if token else {}),
            )
            nodes.extend(
                self._to_node(scope, inst)
                for reservation in page.get("Reservations", [])
                for inst in reservation.get("Instances", [])
            )
            token = page.get("NextToken")
            if not token:
                return nodes

    # -------------------------------------------------------------------------
    # Nodes and images
    # -------------------------------------------------------------------------

    async def get_node(self, ref: ResourceRef) -> Node | None:
        try:
            nodes = await self._describe_instances(ref.scope, InstanceIds=[ref.id])
        except ResourceNotFoundError:
            # Freshly launched instances can be invisible for a moment
            return None
        return nodes[0] if nodes else None

    async def get_image(self, ref: ResourceRef) -> Image | None:
        try:
            response = await self._request(ref.scope, "describe_images", ref, ImageIds=[ref.id])
        except ResourceNotFoundError:
            return None
        images = response.get("Images", [])
        if not images or images[0].get("State") == "deregistered":
            return None
        raw = images[0]
        return Image(
            ref=ref,
            status=ImageStatus.parse(raw.get("State", ""), IMAGE_STATES),
            raw=raw,
            name=raw.get("Name"),
        )

    async def list_nodes(self, scope: str) -> Sequence[Node]:
        return await self._describe_instances(scope)

    async def _security_group_ids(self, scope: str, names: tuple[str, ...]) -> list[str]:
        response = await self._request(
            scope, "describe_security_groups", ScopedName(scope, ",".join(names)),
            Filters=[{"Name": "group-name", "Values": list(names)}],
        )
        found = {g["GroupName"]: g["GroupId"] for g in response.get("SecurityGroups", [])}
        missing = [n for n in names if n not in found]
        if missing:
            raise ResourceNotFoundError(ScopedName(scope, missing[0]))
        return [found[n] for n in names]

    async def create_nodes(
        self,
        scope: str,
        group: str,
        count: int,
        template: NodeTemplate,
        keypair: str | None,
        security_groups: tuple[str, ...],
    ) -> Sequence[Node]:
        params: dict[str, Any] = {
            "ImageId": template.image_id,
            "InstanceType": template.size,
            "MinCount": count,
            "MaxCount": count,
            "TagSpecifications": [{
                "ResourceType": "instance",
                "Tags": [{"Key": self.config.group_tag, "Value": group}],
            }],
        }
        if keypair:
            params["KeyName"] = keypair
        if security_groups:
            params["SecurityGroupIds"] = await self._security_group_ids(scope, security_groups)
        if template.user_data:
            params["UserData"] = template.user_data

        response = await self._request(scope, "run_instances", ScopedName(scope, group), **params)
        nodes = [self._to_node(scope, inst) for inst in response.get("Instances", [])]
        log.info(
            "Launched {n} instance(s) in {region}: {ids}",
            n=len(nodes), region=scope, ids=[n.ref.id for n in nodes],
        )
        return nodes

    async def destroy_node(self, ref: ResourceRef) -> Node | None:
        node = await self.get_node(ref)
        if node is None:
            return None
        try:
            await self._request(ref.scope, "terminate_instances", ref, InstanceIds=[ref.id])
        except ResourceNotFoundError:
            return None
        return node

    async def suspend_node(self, ref: ResourceRef) -> None:
        await self._request(ref.scope, "stop_instances", ref, InstanceIds=[ref.id])

    async def resume_node(self, ref: ResourceRef) -> None:
        await self._request(ref.scope, "start_instances", ref, InstanceIds=[ref.id])

    # -------------------------------------------------------------------------
    # Keypairs
    # -------------------------------------------------------------------------

    async def create_keypair(self, scope: str, name: str) -> KeyPair:
        key = ScopedName(scope, name)
        response = await self._request(scope, "create_key_pair", key, KeyName=name)
        return KeyPair(
            scope=scope,
            name=response["KeyName"],
            fingerprint=response.get("KeyFingerprint", ""),
            private_key=response.get("KeyMaterial"),
            id=response.get("KeyPairId"),
        )

    async def find_keypair(self, scope: str, name: str) -> KeyPair | None:
        try:
            response = await self._request(
                scope, "describe_key_pairs", ScopedName(scope, name), KeyNames=[name],
            )
        except ResourceNotFoundError:
            return None
        pairs = response.get("KeyPairs", [])
        if not pairs:
            return None
        raw = pairs[0]
        return KeyPair(
            scope=scope,
            name=raw["KeyName"],
            fingerprint=raw.get("KeyFingerprint", ""),
            id=raw.get("KeyPairId"),
        )

    # -------------------------------------------------------------------------
    # Security groups
    # -------------------------------------------------------------------------

    async def create_security_group(
        self, scope: str, name: str, ports: tuple[int, ...],
    ) -> SecurityGroup:
        key = ScopedName(scope, name)
        response = await self._request(
            scope, "create_security_group", key,
            GroupName=name, Description=f"cirrus security group {name}",
        )
        group_id = response["GroupId"]

        permissions: list[dict[str, Any]] = [
            {
                "IpProtocol": "tcp",
                "FromPort": port,
                "ToPort": port,
                "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
            }
            for port in ports
        ]
        permissions.append({
            "IpProtocol": "-1",
            "UserIdGroupPairs": [{
                "GroupId": group_id,
                "Description": "All traffic from same security group",
            }],
        })
        ref = ResourceRef(scope, group_id)
        try:
            await self._request(
                scope, "authorize_security_group_ingress", ref,
                GroupId=group_id, IpPermissions=permissions,
            )
        except Exception:
            # A group without its rules would be found and reused as is
            log.warning("Rolling back security group {name} ({ref})", name=name, ref=ref)
            try:
                await self._request(scope, "delete_security_group", ref, GroupId=group_id)
            except Exception as cleanup:
                log.error("Could not delete security group {ref}: {e}", ref=ref, e=cleanup)
            raise
        return SecurityGroup(scope=scope, name=name, id=group_id, ports=ports)

    async def find_security_group(self, scope: str, name: str) -> SecurityGroup | None:
        response = await self._request(
            scope, "describe_security_groups", ScopedName(scope, name),
            Filters=[{"Name": "group-name", "Values": [name]}],
        )
        groups = response.get("SecurityGroups", [])
        if not groups:
            return None
        raw = groups[0]
        ports = tuple(
            sorted({p["FromPort"] for p in raw.get("IpPermissions", []) if "FromPort" in p})
        )
        return SecurityGroup(scope=scope, name=raw["GroupName"], id=raw["GroupId"], ports=ports)

    # -------------------------------------------------------------------------
    # Orphan reconciliation
    # -------------------------------------------------------------------------

    async def list_secondary(self, scope: str) -> Sequence[SecondaryResource]:
        subject = ScopedName(scope, "*")
        pairs = await self._request(scope, "describe_key_pairs", subject)
        groups = await self._request(scope, "describe_security_groups", subject)
        return [
            *(
                SecondaryResource(SecondaryKind.KEYPAIR, ResourceRef(scope, kp["KeyName"]), kp["KeyName"], kp)
                for kp in pairs.get("KeyPairs", [])
            ),
            *(
                SecondaryResource(
                    SecondaryKind.SECURITY_GROUP, ResourceRef(scope, sg["GroupId"]), sg["GroupName"], sg,
                )
                for sg in groups.get("SecurityGroups", [])
            ),
        ]

    async def delete_secondary(self, resource: SecondaryResource) -> None:
        scope = resource.ref.scope
        match resource.kind:
            case SecondaryKind.KEYPAIR:
                await self._request(scope, "delete_key_pair", resource.ref, KeyName=resource.name)
            case SecondaryKind.SECURITY_GROUP:
                await self._request(scope, "delete_security_group", resource.ref, GroupId=resource.ref.id)

    async def referenced_names(self, scope: str) -> frozenset[str]:
        nodes = await self._describe_instances(
            scope, Filters=[{"Name": "instance-state-name", "Values": list(LIVE_STATES)}],
        )
        names: set[str] = set()
        for node in nodes:
            names.update(node.security_groups)
            if node.keypair:
                names.add(node.keypair)
        return frozenset(names)
