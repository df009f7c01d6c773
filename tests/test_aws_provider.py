"""AWSProvider against a scripted EC2 client; no AWS account involved."""

from __future__ import annotations

from collections import defaultdict, deque
from contextlib import asynccontextmanager

import pytest
from botocore.exceptions import ClientError

from cirrus.api.model import (
    ImageStatus,
    NodeStatus,
    NodeTemplate,
    ResourceRef,
    ScopedName,
    SecondaryKind,
    SecondaryResource,
)
from cirrus.api.provider import ComputeProvider
from cirrus.core.exceptions import (
    ConfigurationError,
    CreationConflictError,
    ResourceInUseError,
    ResourceNotFoundError,
    TransportError,
)
from cirrus.providers.aws import AWS, AWSProvider

REGION = "us-east-1"


def client_error(code: str, operation: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": f"{code} happened"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeEC2:
    """Replies to any EC2 operation with queued responses or errors; the last response repeats."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.responses: dict[str, deque] = defaultdict(deque)
        self.errors: dict[str, deque] = defaultdict(deque)

    def reply(self, operation: str, *responses: dict) -> None:
        self.responses[operation].extend(responses)

    def fail(self, operation: str, *errors: Exception) -> None:
        self.errors[operation].extend(errors)

    def called(self, operation: str) -> list[dict]:
        return [kwargs for op, kwargs in self.calls if op == operation]

    def __getattr__(self, operation: str):
        async def call(**kwargs):
            self.calls.append((operation, kwargs))
            if self.errors[operation]:
                raise self.errors[operation].popleft()
            queued = self.responses[operation]
            if len(queued) > 1:
                return queued.popleft()
            return queued[0] if queued else {}

        return call


def instance(instance_id: str, state: str, **extra) -> dict:
    return {
        "InstanceId": instance_id,
        "State": {"Name": state},
        "Tags": [{"Key": "cirrus:group", "Value": "web"}, {"Key": "Name", "Value": "web-1"}],
        "KeyName": "cirrus-web",
        "SecurityGroups": [{"GroupName": "cirrus-web", "GroupId": "sg-1"}],
        **extra,
    }


def reservations(*instances: dict, token: str | None = None) -> dict:
    page: dict = {"Reservations": [{"Instances": list(instances)}]}
    if token:
        page["NextToken"] = token
    return page


@pytest.fixture
def ec2() -> FakeEC2:
    return FakeEC2()


@pytest.fixture
def aws(ec2) -> AWSProvider:
    @asynccontextmanager
    async def factory(region: str):
        yield ec2

    return AWSProvider(AWS(regions=(REGION,)), factory)


class TestNodes:
    @pytest.mark.asyncio
    async def test_get_node_maps_instance(self, aws, ec2):
        ec2.reply("describe_instances", reservations(instance("i-1", "running", PublicIpAddress="1.2.3.4")))

        node = await aws.get_node(ResourceRef(REGION, "i-1"))

        assert node.ref == ResourceRef(REGION, "i-1")
        assert node.status is NodeStatus.RUNNING
        assert node.group == "web"
        assert node.name == "web-1"
        assert node.keypair == "cirrus-web"
        assert node.security_groups == ("cirrus-web",)
        assert node.public_ip == "1.2.3.4"
        assert ec2.called("describe_instances") == [{"InstanceIds": ["i-1"]}]

    @pytest.mark.parametrize(
        ("state", "status"),
        [
            ("pending", NodeStatus.PENDING),
            ("shutting-down", NodeStatus.STOPPING),
            ("stopped", NodeStatus.STOPPED),
            ("terminated", NodeStatus.TERMINATED),
            ("rebooting", NodeStatus.UNRECOGNIZED),
        ],
    )
    @pytest.mark.asyncio
    async def test_instance_states(self, aws, ec2, state, status):
        ec2.reply("describe_instances", reservations(instance("i-1", state)))
        assert (await aws.get_node(ResourceRef(REGION, "i-1"))).status is status

    @pytest.mark.asyncio
    async def test_missing_instance_is_none(self, aws, ec2):
        ec2.fail("describe_instances", client_error("InvalidInstanceID.NotFound", "DescribeInstances"))
        assert await aws.get_node(ResourceRef(REGION, "i-gone")) is None

    @pytest.mark.asyncio
    async def test_list_nodes_follows_pages(self, aws, ec2):
        ec2.reply(
            "describe_instances",
            reservations(instance("i-1", "running"), token="next"),
            reservations(instance("i-2", "pending")),
        )

        nodes = await aws.list_nodes(REGION)

        assert [n.ref.id for n in nodes] == ["i-1", "i-2"]
        assert ec2.called("describe_instances")[1] == {"NextToken": "next"}

    @pytest.mark.asyncio
    async def test_create_nodes(self, aws, ec2):
        ec2.reply("describe_security_groups", {"SecurityGroups": [{"GroupName": "cirrus-web", "GroupId": "sg-1"}]})
        ec2.reply("run_instances", {"Instances": [instance("i-1", "pending"), instance("i-2", "pending")]})
        template = NodeTemplate(image_id="ami-1", size="t3.micro", user_data="#!/bin/sh")

        nodes = await aws.create_nodes(REGION, "web", 2, template, "cirrus-web", ("cirrus-web",))

        assert [n.status for n in nodes] == [NodeStatus.PENDING] * 2
        (params,) = ec2.called("run_instances")
        assert params["ImageId"] == "ami-1"
        assert params["MinCount"] == params["MaxCount"] == 2
        assert params["KeyName"] == "cirrus-web"
        assert params["SecurityGroupIds"] == ["sg-1"]
        assert params["UserData"] == "#!/bin/sh"
        assert params["TagSpecifications"][0]["Tags"] == [{"Key": "cirrus:group", "Value": "web"}]

    @pytest.mark.asyncio
    async def test_create_nodes_with_missing_security_group(self, aws, ec2):
        ec2.reply("describe_security_groups", {"SecurityGroups": []})
        template = NodeTemplate(image_id="ami-1", size="t3.micro")

        with pytest.raises(ResourceNotFoundError):
            await aws.create_nodes(REGION, "web", 1, template, None, ("cirrus-web",))
        assert ec2.called("run_instances") == []

    @pytest.mark.asyncio
    async def test_destroy_node(self, aws, ec2):
        ec2.reply("describe_instances", reservations(instance("i-1", "running")))

        node = await aws.destroy_node(ResourceRef(REGION, "i-1"))

        assert node.status is NodeStatus.RUNNING
        assert ec2.called("terminate_instances") == [{"InstanceIds": ["i-1"]}]

    @pytest.mark.asyncio
    async def test_destroy_missing_node(self, aws, ec2):
        ec2.reply("describe_instances", {"Reservations": []})

        assert await aws.destroy_node(ResourceRef(REGION, "i-gone")) is None
        assert ec2.called("terminate_instances") == []


class TestImages:
    @pytest.mark.parametrize(
        ("state", "status"),
        [("pending", ImageStatus.SAVING), ("available", ImageStatus.ACTIVE), ("failed", ImageStatus.ERROR)],
    )
    @pytest.mark.asyncio
    async def test_image_states(self, aws, ec2, state, status):
        ec2.reply("describe_images", {"Images": [{"ImageId": "ami-1", "State": state, "Name": "base"}]})

        image = await aws.get_image(ResourceRef(REGION, "ami-1"))

        assert image.status is status
        assert image.name == "base"

    @pytest.mark.asyncio
    async def test_deregistered_image_is_gone(self, aws, ec2):
        ec2.reply("describe_images", {"Images": [{"ImageId": "ami-1", "State": "deregistered"}]})
        assert await aws.get_image(ResourceRef(REGION, "ami-1")) is None


class TestSecondaryResources:
    @pytest.mark.asyncio
    async def test_create_keypair(self, aws, ec2):
        ec2.reply("create_key_pair", {"KeyName": "cirrus-web", "KeyFingerprint": "ab:cd", "KeyMaterial": "PEM"})

        keypair = await aws.create_keypair(REGION, "cirrus-web")

        assert keypair.key == ScopedName(REGION, "cirrus-web")
        assert keypair.private_key == "PEM"

    @pytest.mark.asyncio
    async def test_duplicate_keypair_is_a_conflict(self, aws, ec2):
        ec2.fail("create_key_pair", client_error("InvalidKeyPair.Duplicate", "CreateKeyPair"))

        with pytest.raises(CreationConflictError) as exc_info:
            await aws.create_keypair(REGION, "cirrus-web")
        assert exc_info.value.key == ScopedName(REGION, "cirrus-web")

    @pytest.mark.asyncio
    async def test_find_keypair(self, aws, ec2):
        ec2.reply("describe_key_pairs", {"KeyPairs": [{"KeyName": "cirrus-web", "KeyFingerprint": "ab:cd"}]})

        keypair = await aws.find_keypair(REGION, "cirrus-web")

        assert keypair.fingerprint == "ab:cd"
        assert keypair.private_key is None

    @pytest.mark.asyncio
    async def test_find_missing_keypair(self, aws, ec2):
        ec2.fail("describe_key_pairs", client_error("InvalidKeyPair.NotFound", "DescribeKeyPairs"))
        assert await aws.find_keypair(REGION, "cirrus-web") is None

    @pytest.mark.asyncio
    async def test_create_security_group_opens_ports(self, aws, ec2):
        ec2.reply("create_security_group", {"GroupId": "sg-9"})

        group = await aws.create_security_group(REGION, "cirrus-web", (22, 8080))

        assert group.id == "sg-9"
        (params,) = ec2.called("authorize_security_group_ingress")
        assert params["GroupId"] == "sg-9"
        ports = [p.get("FromPort") for p in params["IpPermissions"]]
        assert ports == [22, 8080, None]
        assert params["IpPermissions"][-1]["UserIdGroupPairs"][0]["GroupId"] == "sg-9"

    @pytest.mark.asyncio
    async def test_group_is_deleted_when_rules_fail(self, aws, ec2):
        ec2.reply("create_security_group", {"GroupId": "sg-9"})
        ec2.fail(
            "authorize_security_group_ingress",
            client_error("InvalidPermission.Malformed", "AuthorizeSecurityGroupIngress"),
        )

        with pytest.raises(ClientError):
            await aws.create_security_group(REGION, "cirrus-web", (22,))

        assert ec2.called("delete_security_group") == [{"GroupId": "sg-9"}]

    @pytest.mark.asyncio
    async def test_rule_failure_surfaces_when_rollback_fails(self, aws, ec2):
        ec2.reply("create_security_group", {"GroupId": "sg-9"})
        ec2.fail(
            "authorize_security_group_ingress",
            client_error("InvalidPermission.Malformed", "AuthorizeSecurityGroupIngress"),
        )
        ec2.fail("delete_security_group", client_error("DependencyViolation", "DeleteSecurityGroup"))

        with pytest.raises(ClientError) as exc_info:
            await aws.create_security_group(REGION, "cirrus-web", (22,))
        assert exc_info.value.response["Error"]["Code"] == "InvalidPermission.Malformed"

    @pytest.mark.asyncio
    async def test_find_security_group(self, aws, ec2):
        ec2.reply("describe_security_groups", {
            "SecurityGroups": [{
                "GroupName": "cirrus-web",
                "GroupId": "sg-9",
                "IpPermissions": [{"FromPort": 8080}, {"FromPort": 22}, {"IpProtocol": "-1"}],
            }],
        })

        group = await aws.find_security_group(REGION, "cirrus-web")

        assert group.id == "sg-9"
        assert group.ports == (22, 8080)

    @pytest.mark.asyncio
    async def test_list_secondary(self, aws, ec2):
        ec2.reply("describe_key_pairs", {"KeyPairs": [{"KeyName": "cirrus-web"}]})
        ec2.reply("describe_security_groups", {"SecurityGroups": [{"GroupName": "cirrus-web", "GroupId": "sg-1"}]})

        listed = await aws.list_secondary(REGION)

        assert [(r.kind, r.ref.id, r.name) for r in listed] == [
            (SecondaryKind.KEYPAIR, "cirrus-web", "cirrus-web"),
            (SecondaryKind.SECURITY_GROUP, "sg-1", "cirrus-web"),
        ]

    @pytest.mark.asyncio
    async def test_security_group_in_use(self, aws, ec2):
        ec2.fail("delete_security_group", client_error("DependencyViolation", "DeleteSecurityGroup"))
        resource = SecondaryResource(SecondaryKind.SECURITY_GROUP, ResourceRef(REGION, "sg-1"), "cirrus-web")

        with pytest.raises(ResourceInUseError):
            await aws.delete_secondary(resource)
        assert ec2.called("delete_security_group") == [{"GroupId": "sg-1"}]

    @pytest.mark.asyncio
    async def test_delete_keypair_by_name(self, aws, ec2):
        resource = SecondaryResource(SecondaryKind.KEYPAIR, ResourceRef(REGION, "cirrus-web"), "cirrus-web")

        await aws.delete_secondary(resource)

        assert ec2.called("delete_key_pair") == [{"KeyName": "cirrus-web"}]

    @pytest.mark.asyncio
    async def test_referenced_names(self, aws, ec2):
        ec2.reply(
            "describe_instances",
            reservations(instance("i-1", "running"), instance("i-2", "stopped", KeyName="other")),
        )

        assert await aws.referenced_names(REGION) == {"cirrus-web", "other"}
        (params,) = ec2.called("describe_instances")
        assert params["Filters"][0]["Name"] == "instance-state-name"


class TestErrors:
    @pytest.mark.asyncio
    async def test_throttling_is_retried(self, aws, ec2):
        ec2.fail("describe_key_pairs", client_error("RequestLimitExceeded", "DescribeKeyPairs"))
        ec2.reply("describe_key_pairs", {"KeyPairs": [{"KeyName": "cirrus-web"}]})

        assert (await aws.find_keypair(REGION, "cirrus-web")).name == "cirrus-web"
        assert len(ec2.called("describe_key_pairs")) == 2

    @pytest.mark.asyncio
    async def test_server_error_is_transport_error(self, aws, ec2):
        ec2.fail("describe_images", client_error("ServerError", "DescribeImages", status=500))

        with pytest.raises(TransportError) as exc_info:
            await aws.get_image(ResourceRef(REGION, "ami-1"))
        assert exc_info.value.code == "ServerError"

    @pytest.mark.asyncio
    async def test_unmapped_errors_propagate(self, aws, ec2):
        ec2.fail("describe_images", client_error("UnauthorizedOperation", "DescribeImages"))

        with pytest.raises(ClientError):
            await aws.get_image(ResourceRef(REGION, "ami-1"))

    @pytest.mark.asyncio
    async def test_region_must_be_enabled(self, aws):
        with pytest.raises(ConfigurationError, match="eu-west-1"):
            await aws.list_nodes("eu-west-1")


def test_satisfies_protocol(aws):
    assert isinstance(aws, ComputeProvider)


class TestPowerState:
    @pytest.mark.asyncio
    async def test_suspend_and_resume(self, aws, ec2):
        ref = ResourceRef(REGION, "i-1")

        await aws.suspend_node(ref)
        await aws.resume_node(ref)

        assert ec2.called("stop_instances") == [{"InstanceIds": ["i-1"]}]
        assert ec2.called("start_instances") == [{"InstanceIds": ["i-1"]}]

    @pytest.mark.asyncio
    async def test_suspend_missing(self, aws, ec2):
        ec2.fail("stop_instances", client_error("InvalidInstanceID.NotFound", "StopInstances"))

        with pytest.raises(ResourceNotFoundError):
            await aws.suspend_node(ResourceRef(REGION, "i-gone"))
