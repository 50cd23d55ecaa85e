"""Helpers for acceptance tests running against a real EC2 endpoint.

The helpers raise AssertionError when a check fails so that they can be
used directly from pytest test functions.
"""

from __future__ import annotations
from typing import TYPE_CHECKING
import logging

from botocore.exceptions import ClientError

from e3.secgroup import SecurityGroupError, session
from e3.secgroup.group import NOT_FOUND_ERRORS, SecurityGroup
from e3.secgroup.rules import normalize_rule, rule_hash

if TYPE_CHECKING:
    from typing import Any, Iterable, Optional
    from e3.secgroup import Session

logger = logging.getLogger("e3.secgroup.testing")


@session()
def check_exists(
    group_id: str, region: Optional[str] = None, session: Optional[Session] = None
) -> dict[str, Any]:
    """Check that a group exists and return its description.

    :param group_id: id of the group
    :param region: region of the group, None for the session default
    :param session: the session to use. If None Env().aws_env is used
    """
    group = SecurityGroup(region=region, session=session).describe(group_id)
    assert group is not None, f"security group {group_id} not found"
    return group


@session()
def check_destroyed(
    group_ids: Iterable[str],
    region: Optional[str] = None,
    session: Optional[Session] = None,
) -> None:
    """Check that none of the groups exists anymore.

    :param group_ids: ids of the groups
    :param region: region of the groups, None for the session default
    :param session: the session to use. If None Env().aws_env is used
    """
    resource = SecurityGroup(region=region, session=session)
    for group_id in group_ids:
        try:
            groups = resource.client.describe_security_groups(GroupIds=[group_id])[
                "SecurityGroups"
            ]
        except ClientError as e:
            if e.response["Error"]["Code"] not in NOT_FOUND_ERRORS:
                raise
            continue
        assert not any(
            group["GroupId"] == group_id for group in groups
        ), f"security group {group_id} still exists"


def check_rule_attr(
    state: dict[str, Any],
    direction: str,
    rule: dict[str, Any],
    attribute: str,
    value: Any,
) -> None:
    """Check the attribute of a rule recorded in a group state.

    :param state: the group state as returned by SecurityGroup.read
    :param direction: "ingress" or "egress"
    :param rule: the rule to look for, compared by hash
    :param attribute: name of the attribute to check
    :param value: expected value
    """
    expected_hash = rule_hash(normalize_rule(rule))
    for candidate in state[direction]:
        if rule_hash(candidate) == expected_hash:
            assert candidate.get(attribute) == value, (
                f"{direction} rule {attribute}: expected {value!r}, "
                f"got {candidate.get(attribute)!r}"
            )
            return
    raise AssertionError(f"{direction} rule not found in {state['id']}: {rule}")


def cycle_ip_perm_for_group(group_id: str) -> dict[str, Any]:
    """Return an egress permission referencing group_id.

    Authorizing it on two groups, each referencing the other, creates a
    dependency cycle preventing their deletion.
    """
    return {
        "FromPort": 0,
        "ToPort": 0,
        "IpProtocol": "icmp",
        "UserIdGroupPairs": [{"GroupId": group_id}],
    }


@session()
def add_rule_cycle(
    primary: str,
    secondary: str,
    region: Optional[str] = None,
    session: Optional[Session] = None,
) -> None:
    """Make two groups reference each other in their egress rules.

    :param primary: id of the first group
    :param secondary: id of the second group
    :param region: region of the groups, None for the session default
    :param session: the session to use. If None Env().aws_env is used
    """
    client = SecurityGroup(region=region, session=session).client
    for group_id, peer_id in ((primary, secondary), (secondary, primary)):
        logger.info(f"adding rule cycle from {group_id} to {peer_id}")
        try:
            client.authorize_security_group_egress(
                GroupId=group_id, IpPermissions=[cycle_ip_perm_for_group(peer_id)]
            )
        except ClientError as e:
            raise SecurityGroupError(
                f"error authorizing security group {group_id} rules: {e}",
                origin="add_rule_cycle",
            ) from e


@session()
def remove_rule_cycle(
    primary: str,
    secondary: str,
    region: Optional[str] = None,
    session: Optional[Session] = None,
) -> None:
    """Revoke every rule of two groups, removing any cycle between them.

    :param primary: id of the first group
    :param secondary: id of the second group
    :param region: region of the groups, None for the session default
    :param session: the session to use. If None Env().aws_env is used
    """
    resource = SecurityGroup(region=region, session=session)
    for group_id in (primary, secondary):
        group = resource.describe(group_id)
        if group is None:
            continue
        try:
            resource.revoke_all_rules(group)
        except ClientError as e:
            raise SecurityGroupError(
                f"error revoking rules of security group {group_id}: {e}",
                origin="remove_rule_cycle",
            ) from e
