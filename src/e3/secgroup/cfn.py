"""Render security group declarations as CloudFormation resources."""

from __future__ import annotations
from typing import TYPE_CHECKING

from troposphere import Ref, Tags, Template, ec2

from e3.secgroup import name_to_id
from e3.secgroup.group import REFERENCE_PREFIX
from e3.secgroup.protocol import ALL_PROTOCOLS

if TYPE_CHECKING:
    from typing import Any
    from troposphere import AWSObject
    from e3.secgroup.config import Config
    from e3.secgroup.group import SecurityGroupConfig
    from e3.secgroup.rules import Rule


def _peer(peer: str) -> Any:
    """Return the CloudFormation value identifying a peer group."""
    if peer.startswith(REFERENCE_PREFIX):
        return Ref(name_to_id(peer[len(REFERENCE_PREFIX) :]))
    return peer


def rule_properties(rule: Rule, direction: str) -> list[dict[str, Any]]:
    """Return properties of the CloudFormation rules for a rule.

    CloudFormation rules have a single source so one set of properties is
    returned per source. Self references are not included.

    :param rule: the rule
    :param direction: "ingress" or "egress"
    """
    base: dict[str, Any] = {"IpProtocol": rule["protocol"]}
    if rule["protocol"] != ALL_PROTOCOLS:
        base["FromPort"] = rule["from_port"]
        base["ToPort"] = rule["to_port"]
    if rule.get("description"):
        base["Description"] = rule["description"]

    if direction == "ingress":
        prefix_list_key = "SourcePrefixListId"
        group_key = "SourceSecurityGroupId"
    else:
        prefix_list_key = "DestinationPrefixListId"
        group_key = "DestinationSecurityGroupId"

    result = []
    for cidr in rule.get("cidr_blocks") or []:
        result.append({**base, "CidrIp": cidr})
    for cidr in rule.get("ipv6_cidr_blocks") or []:
        result.append({**base, "CidrIpv6": cidr})
    for prefix_list in rule.get("prefix_list_ids") or []:
        result.append({**base, prefix_list_key: prefix_list})
    for peer in sorted(rule.get("security_groups") or []):
        owner_id, _, identifier = peer.rpartition("/")
        properties = {**base, group_key: _peer(identifier)}
        if owner_id and direction == "ingress":
            properties["SourceSecurityGroupOwnerId"] = owner_id
        result.append(properties)
    return result


def to_troposphere(logical_name: str, config: SecurityGroupConfig) -> list[AWSObject]:
    """Return the CloudFormation resources of a declared group.

    Self references cannot be declared inline, they are returned as
    standalone SecurityGroupIngress or SecurityGroupEgress resources.

    :param logical_name: logical name of the group
    :param config: the declaration
    """
    group_id = name_to_id(logical_name)
    params: dict[str, Any] = {"GroupDescription": config.description}
    if config.name is not None:
        params["GroupName"] = config.name
    if config.vpc_id is not None:
        params["VpcId"] = config.vpc_id
    if config.tags:
        params["Tags"] = Tags(config.tags)

    extra: list[AWSObject] = []
    for direction, rules in (("ingress", config.ingress), ("egress", config.egress)):
        if rules is None:
            continue
        inline = []
        for num, rule in enumerate(rules):
            inline.extend(
                ec2.SecurityGroupRule(**properties)
                for properties in rule_properties(rule, direction)
            )
            if not rule.get("self"):
                continue
            self_params = {
                "GroupId": Ref(group_id),
                "IpProtocol": rule["protocol"],
            }
            if rule["protocol"] != ALL_PROTOCOLS:
                self_params["FromPort"] = rule["from_port"]
                self_params["ToPort"] = rule["to_port"]
            if rule.get("description"):
                self_params["Description"] = rule["description"]
            if direction == "ingress":
                extra.append(
                    ec2.SecurityGroupIngress(
                        name_to_id(f"{logical_name}-self-ingress-{num}"),
                        SourceSecurityGroupId=Ref(group_id),
                        **self_params,
                    )
                )
            else:
                extra.append(
                    ec2.SecurityGroupEgress(
                        name_to_id(f"{logical_name}-self-egress-{num}"),
                        DestinationSecurityGroupId=Ref(group_id),
                        **self_params,
                    )
                )
        if direction == "ingress":
            params["SecurityGroupIngress"] = inline
        else:
            params["SecurityGroupEgress"] = inline

    return [ec2.SecurityGroup(group_id, **params), *extra]


def to_template(config: Config, description: str | None = None) -> Template:
    """Return a template with every declared group.

    :param config: the declarations
    :param description: description of the template
    """
    template = Template(Description=description)
    for logical_name, group in config.groups.items():
        for resource in to_troposphere(logical_name, group):
            template.add_resource(resource)
    return template
