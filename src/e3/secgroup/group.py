"""Security group resource: create, read, update and delete."""

from __future__ import annotations
from typing import TYPE_CHECKING
from datetime import datetime, timezone
import copy
import itertools
import logging
import time

from botocore.exceptions import ClientError

from e3.secgroup import SecurityGroupError, partition_for_region, session
from e3.secgroup.rules import (
    RuleSet,
    expand_ip_perms,
    ip_perm_gather,
    match_rules,
    normalize_rule,
)
from e3.secgroup.validation import (
    validate_name,
    validate_name_prefix,
    validate_rule,
)

if TYPE_CHECKING:
    from typing import Any, Optional
    from e3.secgroup import Session
    from e3.secgroup.rules import Rule

logger = logging.getLogger("e3.secgroup.group")

DEFAULT_DESCRIPTION = "Managed by e3-secgroup"
DEFAULT_NAME_PREFIX = "e3-secgroup-"
DEFAULT_CREATE_TIMEOUT = 600.0
DEFAULT_DELETE_TIMEOUT = 600.0
DEFAULT_RETRY_DELAY = 5.0

# Prefix of peer group references resolved when applying a plan
REFERENCE_PREFIX = "ref:"

NOT_FOUND_ERRORS = ("InvalidGroup.NotFound", "InvalidSecurityGroupID.NotFound")

# Rule added by EC2 to every new VPC security group
DEFAULT_EGRESS_PERMISSION = {
    "FromPort": 0,
    "ToPort": 0,
    "IpProtocol": "-1",
    "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
}

_unique_id_counter = itertools.count(1)


class DependencyViolationError(SecurityGroupError):
    """The group is still referenced and cannot be deleted."""


class GroupNotFoundError(SecurityGroupError):
    """The group does not exist."""


class PartialCreateError(SecurityGroupError):
    """The group was created but configuring its rules failed."""

    def __init__(self, message: str, group_id: str) -> None:
        """Initialize a PartialCreateError.

        :param message: the exception message
        :param group_id: id of the created group
        """
        super().__init__(message, origin="create")
        self.group_id = group_id


def unique_id(prefix: str) -> str:
    """Return a unique name starting with prefix.

    Names generated by the same process are ordered by creation time.
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    return f"{prefix}{timestamp}{next(_unique_id_counter):08x}"


class SecurityGroupConfig:
    """Declaration of a security group."""

    def __init__(
        self,
        name: Optional[str] = None,
        name_prefix: Optional[str] = None,
        description: str = DEFAULT_DESCRIPTION,
        vpc_id: Optional[str] = None,
        ingress: Optional[list[dict[str, Any]]] = None,
        egress: Optional[list[dict[str, Any]]] = None,
        tags: Optional[dict[str, str]] = None,
        revoke_rules_on_delete: bool = False,
        create_timeout: float = DEFAULT_CREATE_TIMEOUT,
        delete_timeout: float = DEFAULT_DELETE_TIMEOUT,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        """Initialize a security group declaration.

        :param name: name of the group. If None a name is generated from
            name_prefix
        :param name_prefix: prefix of the generated name. Ignored if name is
            set
        :param description: description of the group
        :param vpc_id: VPC of the group. If None the group is created in the
            default VPC (or EC2-Classic)
        :param ingress: ingress rules. If None ingress rules are not managed
        :param egress: egress rules. If None egress rules are not managed. Note
            that the default allow all egress rule of a VPC group is always
            removed at creation
        :param tags: tags of the group
        :param revoke_rules_on_delete: if True revoke all rules of the group
            before deleting it. This is needed when groups reference each
            other
        :param create_timeout: seconds to wait for the group to be visible
        :param delete_timeout: seconds during which deletion is retried
            while the group is still referenced
        :param retry_delay: seconds between two retries
        """
        if name is not None:
            validate_name(name)
        if name_prefix is not None:
            validate_name_prefix(name_prefix)

        self.name = name
        self.name_prefix = name_prefix
        self.description = description
        self.vpc_id = vpc_id
        self.tags = {str(key): str(value) for key, value in (tags or {}).items()}
        self.revoke_rules_on_delete = revoke_rules_on_delete
        self.create_timeout = create_timeout
        self.delete_timeout = delete_timeout
        self.retry_delay = retry_delay

        self.ingress = self._rules(ingress, "ingress")
        self.egress = self._rules(egress, "egress")
        self._generated_name: Optional[str] = None

    @staticmethod
    def _rules(
        rules: Optional[list[dict[str, Any]]], direction: str
    ) -> Optional[list[Rule]]:
        if rules is None:
            return None
        result = []
        for rule in rules:
            validate_rule(rule, direction)
            result.append(normalize_rule(rule))
        return result

    def resolved_name(self) -> str:
        """Return the name of the group to create.

        A generated name is computed once per declaration.
        """
        if self.name is not None:
            return self.name
        if self._generated_name is None:
            prefix = self.name_prefix
            if prefix is None:
                prefix = DEFAULT_NAME_PREFIX
            self._generated_name = unique_id(prefix)
        return self._generated_name

    @property
    def references(self) -> set[str]:
        """Return logical names of groups referenced by the rules."""
        result = set()
        for rule in (self.ingress or []) + (self.egress or []):
            for peer in rule.get("security_groups") or []:
                if peer.startswith(REFERENCE_PREFIX):
                    result.add(peer[len(REFERENCE_PREFIX) :])
        return result

    def resolve(self, group_ids: dict[str, str]) -> SecurityGroupConfig:
        """Return a copy with peer references replaced by group ids.

        :param group_ids: map logical name -> group id
        :raises SecurityGroupError: if a reference is unknown
        """
        result = copy.copy(self)

        def resolve_peer(peer: str) -> str:
            if not peer.startswith(REFERENCE_PREFIX):
                return peer
            logical_name = peer[len(REFERENCE_PREFIX) :]
            if logical_name not in group_ids:
                raise SecurityGroupError(
                    f"unknown security group reference {peer}", origin="resolve"
                )
            return group_ids[logical_name]

        def resolve_rules(rules: Optional[list[Rule]]) -> Optional[list[Rule]]:
            if rules is None:
                return None
            resolved = []
            for rule in rules:
                rule = dict(rule)
                if "security_groups" in rule:
                    rule["security_groups"] = {
                        resolve_peer(peer) for peer in rule["security_groups"]
                    }
                resolved.append(rule)
            return resolved

        result.ingress = resolve_rules(self.ingress)
        result.egress = resolve_rules(self.egress)
        return result


class SecurityGroup:
    """Operations on EC2 security groups of a region."""

    @session()
    def __init__(
        self, region: Optional[str] = None, session: Optional[Session] = None
    ) -> None:
        """Initialize the resource.

        :param region: region of the groups. If None the session default
            region is used
        :param session: the session to use. If None Env().aws_env is used
        """
        assert session is not None
        self.session = session
        self.region = region if region is not None else session.default_region
        self.client = session.client("ec2", self.region)

    def describe(self, group_id: str) -> Optional[dict[str, Any]]:
        """Return a group as returned by describe_security_groups.

        :param group_id: id of the group
        :return: the group data or None if the group does not exist
        """
        try:
            groups = self.client.describe_security_groups(GroupIds=[group_id])[
                "SecurityGroups"
            ]
        except ClientError as e:
            if e.response["Error"]["Code"] in NOT_FOUND_ERRORS:
                return None
            raise

        for group in groups:
            if group["GroupId"] == group_id:
                return group
        return None

    def exists(self, group_id: str) -> bool:
        """Return True if the group exists."""
        return self.describe(group_id) is not None

    def wait_for_group(
        self, group_id: str, timeout: float, delay: float
    ) -> dict[str, Any]:
        """Wait until a new group can be described.

        :raises SecurityGroupError: if the group is not visible after timeout
            seconds
        """
        deadline = time.monotonic() + timeout
        while True:
            group = self.describe(group_id)
            if group is not None:
                return group
            if time.monotonic() >= deadline:
                raise SecurityGroupError(
                    f"timeout while waiting for security group {group_id}",
                    origin="wait_for_group",
                )
            logger.debug(f"waiting for security group {group_id}")
            time.sleep(delay)

    def authorize(
        self, group: dict[str, Any], direction: str, rules: list[Rule]
    ) -> None:
        """Authorize rules on a group.

        :param group: the group data
        :param direction: "ingress" or "egress"
        :param rules: rules to authorize
        """
        if not rules:
            return
        perms = expand_ip_perms(group, rules)
        logger.info(f"authorizing {direction} rules on {group['GroupId']}: {perms}")
        if direction == "ingress":
            self.client.authorize_security_group_ingress(
                GroupId=group["GroupId"], IpPermissions=perms
            )
        else:
            self.client.authorize_security_group_egress(
                GroupId=group["GroupId"], IpPermissions=perms
            )

    def revoke(
        self,
        group: dict[str, Any],
        direction: str,
        perms: list[dict[str, Any]],
    ) -> None:
        """Revoke permissions from a group.

        :param group: the group data
        :param direction: "ingress" or "egress"
        :param perms: IpPermissions to revoke
        """
        if not perms:
            return
        logger.info(f"revoking {direction} rules on {group['GroupId']}: {perms}")
        try:
            if direction == "ingress":
                self.client.revoke_security_group_ingress(
                    GroupId=group["GroupId"], IpPermissions=perms
                )
            else:
                self.client.revoke_security_group_egress(
                    GroupId=group["GroupId"], IpPermissions=perms
                )
        except ClientError as e:
            if e.response["Error"]["Code"] != "InvalidPermission.NotFound":
                raise
            logger.warning(
                f"{direction} rules already revoked on {group['GroupId']}: "
                f"{e.response['Error'].get('Message')}"
            )

    def revoke_all_rules(self, group: dict[str, Any]) -> None:
        """Revoke every ingress and egress permission of a group.

        :param group: the group data as returned by describe
        """
        self.revoke(group, "ingress", group.get("IpPermissions") or [])
        self.revoke(group, "egress", group.get("IpPermissionsEgress") or [])

    def update_rules(
        self,
        group: dict[str, Any],
        direction: str,
        old: list[Rule],
        new: list[Rule],
    ) -> None:
        """Revoke rules not declared anymore and authorize new ones."""
        old_rules = RuleSet(old)
        new_rules = RuleSet(new)
        self.revoke(
            group, direction, expand_ip_perms(group, old_rules.difference(new_rules))
        )
        self.authorize(group, direction, new_rules.difference(old_rules))

    def update_tags(
        self, group_id: str, old: dict[str, str], new: dict[str, str]
    ) -> None:
        removed = sorted(key for key in old if key not in new)
        changed = {key: value for key, value in new.items() if old.get(key) != value}
        if removed:
            self.client.delete_tags(
                Resources=[group_id], Tags=[{"Key": key} for key in removed]
            )
        if changed:
            self.client.create_tags(
                Resources=[group_id],
                Tags=[{"Key": key, "Value": changed[key]} for key in sorted(changed)],
            )

    def create(self, config: SecurityGroupConfig) -> dict[str, Any]:
        """Create a group.

        Tags are set at creation so that a group whose rules are rejected
        is still tagged.

        :param config: the declaration, with peer references resolved
        :return: the state of the new group
        """
        name = config.resolved_name()
        params: dict[str, Any] = {"GroupName": name, "Description": config.description}
        if config.vpc_id:
            params["VpcId"] = config.vpc_id
        if config.tags:
            params["TagSpecifications"] = [
                {
                    "ResourceType": "security-group",
                    "Tags": [
                        {"Key": key, "Value": config.tags[key]}
                        for key in sorted(config.tags)
                    ],
                }
            ]

        logger.info(f"creating security group {name}")
        group_id = self.client.create_security_group(**params)["GroupId"]
        group = self.wait_for_group(
            group_id, timeout=config.create_timeout, delay=config.retry_delay
        )

        try:
            if group.get("VpcId"):
                logger.info(f"revoking default egress rule of {group_id}")
                self.revoke(group, "egress", [DEFAULT_EGRESS_PERMISSION])
                self.authorize(group, "egress", config.egress or [])
            elif config.egress:
                logger.warning(f"egress rules ignored for non VPC group {group_id}")
            self.authorize(group, "ingress", config.ingress or [])
        except ClientError as e:
            raise PartialCreateError(
                f"security group {group_id} created but its rules were "
                f"rejected: {e}",
                group_id=group_id,
            ) from e

        state = self.read(group_id, config)
        if state is None:
            raise GroupNotFoundError(
                f"security group {group_id} disappeared", origin="create"
            )
        return state

    def read(
        self, group_id: str, config: Optional[SecurityGroupConfig] = None
    ) -> Optional[dict[str, Any]]:
        """Return the state of a group.

        :param group_id: id of the group
        :param config: if not None, remote rules are split following the
            declared rules
        :return: the state or None if the group does not exist anymore
        """
        group = self.describe(group_id)
        if group is None:
            logger.warning(f"security group {group_id} not found")
            return None

        owner_id = group.get("OwnerId")
        ingress = ip_perm_gather(group_id, group.get("IpPermissions") or [], owner_id)
        egress = ip_perm_gather(
            group_id, group.get("IpPermissionsEgress") or [], owner_id
        )
        if config is not None:
            if config.ingress is not None:
                ingress = match_rules(config.ingress, ingress)
            if config.egress is not None:
                egress = match_rules(config.egress, egress)

        return {
            "id": group_id,
            "arn": f"arn:{partition_for_region(self.region)}:ec2:{self.region}:"
            f"{owner_id}:security-group/{group_id}",
            "name": group["GroupName"],
            "description": group.get("Description", ""),
            "vpc_id": group.get("VpcId"),
            "owner_id": owner_id,
            "ingress": ingress,
            "egress": egress,
            "tags": {tag["Key"]: tag["Value"] for tag in group.get("Tags") or []},
            "revoke_rules_on_delete": (
                config.revoke_rules_on_delete if config is not None else False
            ),
        }

    @staticmethod
    def requires_replacement(
        state: dict[str, Any], config: SecurityGroupConfig
    ) -> list[str]:
        """Return attributes whose change requires a new group."""
        result = []
        if config.name is not None:
            if config.name != state["name"]:
                result.append("name")
        elif config.name_prefix is not None:
            if not state["name"].startswith(config.name_prefix):
                result.append("name_prefix")
        if config.description != state["description"]:
            result.append("description")
        if config.vpc_id is not None and config.vpc_id != state["vpc_id"]:
            result.append("vpc_id")
        return result

    def update(
        self, state: dict[str, Any], config: SecurityGroupConfig
    ) -> dict[str, Any]:
        """Update rules and tags of a group.

        :param state: current state of the group
        :param config: the declaration, with peer references resolved
        :return: the new state
        """
        group_id = state["id"]
        group = self.describe(group_id)
        if group is None:
            raise GroupNotFoundError(
                f"security group {group_id} not found", origin="update"
            )

        if config.ingress is not None:
            self.update_rules(group, "ingress", state["ingress"], config.ingress)
        if config.egress is not None:
            if group.get("VpcId"):
                self.update_rules(group, "egress", state["egress"], config.egress)
            else:
                logger.warning(f"egress rules ignored for non VPC group {group_id}")
        self.update_tags(group_id, state["tags"], config.tags)

        new_state = self.read(group_id, config)
        if new_state is None:
            raise GroupNotFoundError(
                f"security group {group_id} disappeared", origin="update"
            )
        return new_state

    def delete(
        self,
        state: dict[str, Any],
        timeout: float = DEFAULT_DELETE_TIMEOUT,
        delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        """Delete a group.

        Deletion is retried while EC2 reports a dependency violation, which
        happens when another group still references this one or while
        network interfaces using the group are being deleted.

        :param state: state of the group
        :param timeout: seconds during which deletion is retried
        :param delay: seconds between two retries
        :raises DependencyViolationError: if the group is still referenced
            after timeout seconds
        """
        group_id = state["id"]
        if state.get("revoke_rules_on_delete"):
            group = self.describe(group_id)
            if group is not None:
                self.revoke_all_rules(group)

        deadline = time.monotonic() + timeout
        while True:
            try:
                self.client.delete_security_group(GroupId=group_id)
                logger.info(f"deleted security group {group_id}")
                return
            except ClientError as e:
                code = e.response["Error"]["Code"]
                if code in NOT_FOUND_ERRORS:
                    logger.info(f"security group {group_id} already deleted")
                    return
                if code != "DependencyViolation":
                    raise
                if time.monotonic() >= deadline:
                    raise DependencyViolationError(
                        f"DependencyViolation: {e.response['Error'].get('Message')}",
                        origin=f"delete {group_id}",
                    ) from e
            logger.info(f"security group {group_id} still in use, retrying")
            time.sleep(delay)
