from __future__ import annotations
from typing import TYPE_CHECKING

import pytest

from e3.secgroup import AWSEnv
from e3.secgroup.group import (
    DEFAULT_EGRESS_PERMISSION,
    DependencyViolationError,
    PartialCreateError,
    SecurityGroup,
    SecurityGroupConfig,
    unique_id,
)

if TYPE_CHECKING:
    from typing import Any

OWNER_ID = "123456789012"


def describe_response(**kwargs: Any) -> dict[str, Any]:
    """Return a describe_security_groups response for sg-1."""
    group = {
        "GroupId": "sg-1",
        "GroupName": "web",
        "Description": "web servers",
        "OwnerId": OWNER_ID,
        "VpcId": "vpc-1",
        "IpPermissions": [],
        "IpPermissionsEgress": [],
        "Tags": [],
    }
    group.update(kwargs)
    return {"SecurityGroups": [group]}


def web_config(**kwargs: Any) -> SecurityGroupConfig:
    params: dict[str, Any] = {
        "name": "web",
        "description": "web servers",
        "vpc_id": "vpc-1",
        "ingress": [
            {
                "protocol": "tcp",
                "from_port": 80,
                "to_port": 8000,
                "cidr_blocks": ["10.0.0.0/8"],
            }
        ],
        "egress": [],
        "tags": {"Name": "web", "Env": "test"},
        "create_timeout": 0,
        "retry_delay": 0,
    }
    params.update(kwargs)
    return SecurityGroupConfig(**params)


WEB_PERMISSION = {
    "FromPort": 80,
    "ToPort": 8000,
    "IpProtocol": "tcp",
    "IpRanges": [{"CidrIp": "10.0.0.0/8"}],
}


def test_create() -> None:
    """Create a VPC group with tags and without the default egress rule."""
    aws_env = AWSEnv(regions=["us-east-1"], stub=True)
    resource = SecurityGroup(session=aws_env)
    stubber = aws_env.stub("ec2")

    stubber.add_response(
        "create_security_group",
        {"GroupId": "sg-1"},
        {
            "GroupName": "web",
            "Description": "web servers",
            "VpcId": "vpc-1",
            "TagSpecifications": [
                {
                    "ResourceType": "security-group",
                    "Tags": [
                        {"Key": "Env", "Value": "test"},
                        {"Key": "Name", "Value": "web"},
                    ],
                }
            ],
        },
    )
    stubber.add_response(
        "describe_security_groups",
        describe_response(IpPermissionsEgress=[DEFAULT_EGRESS_PERMISSION]),
        {"GroupIds": ["sg-1"]},
    )
    stubber.add_response(
        "revoke_security_group_egress",
        {},
        {"GroupId": "sg-1", "IpPermissions": [DEFAULT_EGRESS_PERMISSION]},
    )
    stubber.add_response(
        "authorize_security_group_ingress",
        {},
        {"GroupId": "sg-1", "IpPermissions": [WEB_PERMISSION]},
    )
    stubber.add_response(
        "describe_security_groups",
        describe_response(
            IpPermissions=[WEB_PERMISSION],
            Tags=[{"Key": "Name", "Value": "web"}, {"Key": "Env", "Value": "test"}],
        ),
        {"GroupIds": ["sg-1"]},
    )

    with stubber:
        state = resource.create(web_config())
        stubber.assert_no_pending_responses()

    assert state["id"] == "sg-1"
    assert state["arn"] == f"arn:aws:ec2:us-east-1:{OWNER_ID}:security-group/sg-1"
    assert state["vpc_id"] == "vpc-1"
    assert state["tags"] == {"Name": "web", "Env": "test"}
    assert state["egress"] == []
    assert state["ingress"] == [
        {
            "protocol": "tcp",
            "from_port": 80,
            "to_port": 8000,
            "self": False,
            "description": "",
            "cidr_blocks": ["10.0.0.0/8"],
        }
    ]
    assert state["revoke_rules_on_delete"] is False


def test_create_rejected_rules() -> None:
    """A group whose rules are rejected still exists."""
    aws_env = AWSEnv(regions=["us-east-1"], stub=True)
    resource = SecurityGroup(session=aws_env)
    stubber = aws_env.stub("ec2")

    stubber.add_response("create_security_group", {"GroupId": "sg-1"})
    stubber.add_response("describe_security_groups", describe_response())
    stubber.add_response("revoke_security_group_egress", {})
    stubber.add_client_error(
        "authorize_security_group_ingress",
        service_error_code="InvalidParameterValue",
        service_message="invalid port range",
    )

    with stubber:
        with pytest.raises(PartialCreateError, match="InvalidParameterValue") as e:
            resource.create(web_config())
    assert e.value.group_id == "sg-1"


def test_create_wait_for_group() -> None:
    """Creation waits until the group can be described."""
    aws_env = AWSEnv(regions=["us-east-1"], stub=True)
    resource = SecurityGroup(session=aws_env)
    stubber = aws_env.stub("ec2")

    stubber.add_response("create_security_group", {"GroupId": "sg-1"})
    stubber.add_client_error(
        "describe_security_groups", service_error_code="InvalidGroup.NotFound"
    )
    stubber.add_response("describe_security_groups", describe_response())
    stubber.add_response("revoke_security_group_egress", {})
    stubber.add_response("describe_security_groups", describe_response())

    with stubber:
        state = resource.create(web_config(ingress=None, create_timeout=10))
        stubber.assert_no_pending_responses()
    assert state["ingress"] == []


def test_read_not_found() -> None:
    aws_env = AWSEnv(regions=["us-east-1"], stub=True)
    resource = SecurityGroup(session=aws_env)
    stubber = aws_env.stub("ec2")

    stubber.add_client_error(
        "describe_security_groups",
        service_error_code="InvalidGroup.NotFound",
        expected_params={"GroupIds": ["sg-1"]},
    )
    with stubber:
        assert resource.read("sg-1") is None


def test_read_partition() -> None:
    aws_env = AWSEnv(regions=["cn-north-1"], stub=True)
    resource = SecurityGroup(session=aws_env)
    stubber = aws_env.stub("ec2")

    stubber.add_response("describe_security_groups", describe_response())
    with stubber:
        state = resource.read("sg-1")
    assert state is not None
    assert state["arn"].startswith("arn:aws-cn:ec2:cn-north-1:")


def test_update() -> None:
    """Revoke removed rules, authorize new ones and update tags."""
    aws_env = AWSEnv(regions=["us-east-1"], stub=True)
    resource = SecurityGroup(session=aws_env)
    stubber = aws_env.stub("ec2")

    state = {
        "id": "sg-1",
        "name": "web",
        "description": "web servers",
        "vpc_id": "vpc-1",
        "ingress": [
            {
                "protocol": "tcp",
                "from_port": 80,
                "to_port": 8000,
                "self": False,
                "description": "",
                "cidr_blocks": ["10.0.0.0/8"],
            }
        ],
        "egress": [],
        "tags": {"Name": "web", "Old": "x"},
    }
    config = web_config(
        ingress=[
            {
                "protocol": "6",
                "from_port": 443,
                "to_port": 443,
                "cidr_blocks": ["10.0.0.0/8"],
            }
        ],
        egress=None,
        tags={"Name": "web2"},
    )
    https_permission = {**WEB_PERMISSION, "FromPort": 443, "ToPort": 443}

    stubber.add_response(
        "describe_security_groups",
        describe_response(IpPermissions=[WEB_PERMISSION]),
        {"GroupIds": ["sg-1"]},
    )
    stubber.add_response(
        "revoke_security_group_ingress",
        {},
        {"GroupId": "sg-1", "IpPermissions": [WEB_PERMISSION]},
    )
    stubber.add_response(
        "authorize_security_group_ingress",
        {},
        {"GroupId": "sg-1", "IpPermissions": [https_permission]},
    )
    stubber.add_response(
        "delete_tags", {}, {"Resources": ["sg-1"], "Tags": [{"Key": "Old"}]}
    )
    stubber.add_response(
        "create_tags",
        {},
        {"Resources": ["sg-1"], "Tags": [{"Key": "Name", "Value": "web2"}]},
    )
    stubber.add_response(
        "describe_security_groups",
        describe_response(
            IpPermissions=[https_permission], Tags=[{"Key": "Name", "Value": "web2"}]
        ),
        {"GroupIds": ["sg-1"]},
    )

    with stubber:
        new_state = resource.update(state, config)
        stubber.assert_no_pending_responses()

    assert new_state["tags"] == {"Name": "web2"}
    assert [rule["from_port"] for rule in new_state["ingress"]] == [443]


def test_requires_replacement() -> None:
    state = {"name": "web", "description": "web servers", "vpc_id": "vpc-1"}
    assert SecurityGroup.requires_replacement(state, web_config()) == []
    assert SecurityGroup.requires_replacement(
        state, web_config(name="api", description="api", vpc_id="vpc-2")
    ) == ["name", "description", "vpc_id"]
    assert SecurityGroup.requires_replacement(
        state, web_config(name=None, name_prefix="api-")
    ) == ["name_prefix"]


def test_delete_dependency_violation() -> None:
    """Deleting a group still referenced fails after the timeout."""
    aws_env = AWSEnv(regions=["us-east-1"], stub=True)
    resource = SecurityGroup(session=aws_env)
    stubber = aws_env.stub("ec2")

    stubber.add_client_error(
        "delete_security_group",
        service_error_code="DependencyViolation",
        service_message="resource sg-1 has a dependent object",
        expected_params={"GroupId": "sg-1"},
    )
    with stubber:
        with pytest.raises(DependencyViolationError, match="DependencyViolation"):
            resource.delete({"id": "sg-1"}, timeout=0, delay=0)


def test_delete_retry() -> None:
    """Deletion is retried while the group is still referenced."""
    aws_env = AWSEnv(regions=["us-east-1"], stub=True)
    resource = SecurityGroup(session=aws_env)
    stubber = aws_env.stub("ec2")

    stubber.add_client_error(
        "delete_security_group", service_error_code="DependencyViolation"
    )
    stubber.add_response("delete_security_group", {}, {"GroupId": "sg-1"})
    with stubber:
        resource.delete({"id": "sg-1"}, timeout=60, delay=0)
        stubber.assert_no_pending_responses()


def test_delete_revoke_rules() -> None:
    """All rules are revoked before deletion when revoke_rules_on_delete."""
    aws_env = AWSEnv(regions=["us-east-1"], stub=True)
    resource = SecurityGroup(session=aws_env)
    stubber = aws_env.stub("ec2")

    cycle_permission = {
        "FromPort": 0,
        "ToPort": 0,
        "IpProtocol": "icmp",
        "UserIdGroupPairs": [{"GroupId": "sg-2", "UserId": OWNER_ID}],
    }
    stubber.add_response(
        "describe_security_groups",
        describe_response(
            IpPermissions=[WEB_PERMISSION], IpPermissionsEgress=[cycle_permission]
        ),
        {"GroupIds": ["sg-1"]},
    )
    stubber.add_response(
        "revoke_security_group_ingress",
        {},
        {"GroupId": "sg-1", "IpPermissions": [WEB_PERMISSION]},
    )
    stubber.add_response(
        "revoke_security_group_egress",
        {},
        {"GroupId": "sg-1", "IpPermissions": [cycle_permission]},
    )
    stubber.add_response("delete_security_group", {}, {"GroupId": "sg-1"})

    with stubber:
        resource.delete({"id": "sg-1", "revoke_rules_on_delete": True})
        stubber.assert_no_pending_responses()


def test_delete_already_deleted() -> None:
    aws_env = AWSEnv(regions=["us-east-1"], stub=True)
    resource = SecurityGroup(session=aws_env)
    stubber = aws_env.stub("ec2")

    stubber.add_client_error(
        "delete_security_group", service_error_code="InvalidGroup.NotFound"
    )
    with stubber:
        resource.delete({"id": "sg-1"}, timeout=0, delay=0)


def test_revoke_already_revoked() -> None:
    """Revoking rules that do not exist anymore is not an error."""
    aws_env = AWSEnv(regions=["us-east-1"], stub=True)
    resource = SecurityGroup(session=aws_env)
    stubber = aws_env.stub("ec2")

    stubber.add_client_error(
        "revoke_security_group_egress",
        service_error_code="InvalidPermission.NotFound",
    )
    with stubber:
        resource.revoke({"GroupId": "sg-1"}, "egress", [DEFAULT_EGRESS_PERMISSION])


def test_config_defaults() -> None:
    config = SecurityGroupConfig(tags={"Count": 1})
    assert config.ingress is None
    assert config.egress is None
    assert config.tags == {"Count": "1"}
    assert config.description == "Managed by e3-secgroup"

    name = config.resolved_name()
    assert name.startswith("e3-secgroup-")
    assert config.resolved_name() == name

    config = SecurityGroupConfig(name_prefix="web-")
    assert config.resolved_name().startswith("web-")


def test_config_resolve() -> None:
    config = SecurityGroupConfig(
        ingress=[
            {
                "protocol": "tcp",
                "from_port": 80,
                "to_port": 80,
                "security_groups": ["ref:lb", "sg-2"],
            }
        ]
    )
    assert config.references == {"lb"}
    resolved = config.resolve({"lb": "sg-1"})
    assert resolved.ingress is not None
    assert resolved.ingress[0]["security_groups"] == {"sg-1", "sg-2"}
    assert config.ingress is not None
    assert config.ingress[0]["security_groups"] == {"ref:lb", "sg-2"}


def test_unique_id() -> None:
    first = unique_id("test-")
    second = unique_id("test-")
    assert first.startswith("test-")
    assert first < second
