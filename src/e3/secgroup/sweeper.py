"""Delete security groups left behind by acceptance tests."""

from __future__ import annotations
from typing import TYPE_CHECKING
import logging

from botocore.exceptions import ClientError

from e3.secgroup import SecurityGroupError, iterate, session
from e3.secgroup.group import SecurityGroup

if TYPE_CHECKING:
    from typing import Optional
    from e3.secgroup import Session

logger = logging.getLogger("e3.secgroup.sweeper")

DEFAULT_TAG_VALUE = "e3-acc-revoke*"


class SweepError(SecurityGroupError):
    """A security group cannot be swept."""


@session()
def sweep_security_groups(
    region: Optional[str] = None,
    tag_value: str = DEFAULT_TAG_VALUE,
    session: Optional[Session] = None,
) -> list[str]:
    """Revoke the rules of matching groups, then delete them.

    All rules are revoked before deleting any group so that groups
    referencing each other can be deleted.

    :param region: region to sweep, None for the session default region
    :param tag_value: pattern of the tag value identifying the groups
    :param session: the session to use. If None Env().aws_env is used
    :return: ids of the deleted groups
    """
    resource = SecurityGroup(region=region, session=session)
    groups = list(
        iterate(
            resource.client.describe_security_groups,
            "SecurityGroups",
            Filters=[{"Name": "tag-value", "Values": [tag_value]}],
        )
    )
    if not groups:
        logger.debug("no security groups to sweep")
        return []

    for group in groups:
        for direction, key in (
            ("ingress", "IpPermissions"),
            ("egress", "IpPermissionsEgress"),
        ):
            try:
                resource.revoke(group, direction, group.get(key) or [])
            except ClientError as e:
                raise SweepError(
                    f"error revoking {direction} rules of security group "
                    f"{group['GroupId']}: {e}",
                    origin="sweep_security_groups",
                ) from e

    deleted = []
    for group in groups:
        try:
            resource.client.delete_security_group(GroupId=group["GroupId"])
        except ClientError as e:
            raise SweepError(
                f"error deleting security group {group['GroupId']}: {e}",
                origin="sweep_security_groups",
            ) from e
        logger.info(f"swept security group {group['GroupId']}")
        deleted.append(group["GroupId"])
    return deleted
