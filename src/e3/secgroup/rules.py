"""Conversion between EC2 permissions and security group rules.

A rule is an attribute map with the following keys:

* protocol: canonical protocol (see e3.secgroup.protocol)
* from_port, to_port: port range (0 when EC2 does not return it)
* self: True if the group itself is a source
* description: rule description, empty string when unset
* cidr_blocks, ipv6_cidr_blocks, prefix_list_ids: optional lists
* security_groups: optional set of peer group identifiers

The EC2 API stores one permission per (protocol, from_port, to_port) tuple
listing all its sources, while a declaration can split the same tuple
across several rules. ip_perm_gather and expand_ip_perms convert between
both representations, rule_hash gives a rule an identity that does not
depend on the order of its sources.
"""

from __future__ import annotations
from typing import TYPE_CHECKING
import logging
import zlib

from e3.secgroup.protocol import ALL_PROTOCOLS, protocol_for_value
from e3.secgroup.validation import InvalidRuleError

if TYPE_CHECKING:
    from typing import Any, Iterable, Iterator, Optional

    Rule = dict[str, Any]

logger = logging.getLogger("e3.secgroup.rules")

LIST_SOURCES = ("cidr_blocks", "ipv6_cidr_blocks", "prefix_list_ids")
SOURCES = (*LIST_SOURCES, "security_groups")


def normalize_rule(raw: dict[str, Any]) -> Rule:
    """Return a rule with defaults set and canonical values.

    :param raw: rule as declared
    """
    rule: Rule = {
        "protocol": protocol_for_value(str(raw["protocol"])),
        "from_port": int(raw["from_port"]),
        "to_port": int(raw["to_port"]),
        "self": bool(raw.get("self", False)),
        "description": raw.get("description") or "",
    }
    for key in LIST_SOURCES:
        if raw.get(key):
            rule[key] = list(raw[key])
    if raw.get("security_groups"):
        rule["security_groups"] = set(raw["security_groups"])
    return rule


def flatten_group_pairs(
    pairs: Iterable[dict[str, Any]], owner_id: Optional[str] = None
) -> list[dict[str, Any]]:
    """Compute the identifier of each peer group of a permission.

    VPC groups are identified by their id, EC2-Classic groups by their name.
    Groups from another account than owner_id are prefixed by
    "<user id>/".

    :param pairs: UserIdGroupPairs of a permission
    :param owner_id: account owning the security group
    :return: a list of dicts with GroupId, Description and, for EC2-Classic
        groups, GroupName holding the identifier
    """
    result = []
    for pair in pairs:
        user_id = pair.get("UserId")
        if not user_id or (owner_id is not None and user_id == owner_id):
            user_id = None

        group_name = pair.get("GroupName")
        vpc = not group_name
        identifier = pair.get("GroupId") if vpc else group_name

        if user_id is not None:
            identifier = f"{user_id}/{identifier}"

        if vpc:
            result.append(
                {"GroupId": identifier, "Description": pair.get("Description")}
            )
        else:
            result.append(
                {
                    "GroupId": pair.get("GroupId"),
                    "GroupName": identifier,
                    "Description": pair.get("Description"),
                }
            )
    return result


def ip_perm_gather(
    group_id: str,
    permissions: Iterable[dict[str, Any]],
    owner_id: Optional[str] = None,
) -> list[Rule]:
    """Gather EC2 permissions into rules.

    Permissions sharing protocol and ports are merged into a single rule.
    A peer pair referencing group_id sets self instead of being listed in
    security_groups.

    :param group_id: id of the group the permissions belong to
    :param permissions: IpPermissions or IpPermissionsEgress as returned by
        describe_security_groups
    :param owner_id: account owning the group
    :return: the rules, in no particular order
    """
    rules: dict[str, Rule] = {}
    for perm in permissions:
        from_port = perm.get("FromPort", 0)
        to_port = perm.get("ToPort", 0)
        protocol = perm["IpProtocol"]

        rule = rules.setdefault(f"{protocol}-{from_port}-{to_port}", {})
        rule["from_port"] = from_port
        rule["to_port"] = to_port
        rule["protocol"] = protocol
        rule.setdefault("self", False)

        description = ""

        for key, ranges, field in (
            ("cidr_blocks", perm.get("IpRanges"), "CidrIp"),
            ("ipv6_cidr_blocks", perm.get("Ipv6Ranges"), "CidrIpv6"),
            ("prefix_list_ids", perm.get("PrefixListIds"), "PrefixListId"),
        ):
            if not ranges:
                continue
            sources = rule.setdefault(key, [])
            for item in ranges:
                sources.append(item[field])
                if item.get("Description"):
                    description = item["Description"]

        groups = []
        pairs = flatten_group_pairs(perm.get("UserIdGroupPairs") or [], owner_id)
        for group in pairs:
            if group["GroupId"] == group_id:
                rule["self"] = True
            else:
                groups.append(group)
            if group.get("Description"):
                description = group["Description"]

        if groups:
            peers = rule.setdefault("security_groups", set())
            for group in groups:
                peers.add(group.get("GroupName") or group["GroupId"])

        if description:
            rule["description"] = description
        else:
            rule.setdefault("description", "")

    return list(rules.values())


def expand_ip_perms(
    group: dict[str, Any], rules: Iterable[Rule]
) -> list[dict[str, Any]]:
    """Build EC2 permissions from rules.

    :param group: the security group as returned by
        describe_security_groups. GroupId, GroupName and VpcId are used
    :param rules: the rules to convert
    :return: a list of IpPermissions suitable for authorize and revoke calls
    :raises InvalidRuleError: if a rule for all protocols has ports
    """
    vpc = bool(group.get("VpcId"))
    result = []
    for rule in rules:
        from_port = int(rule["from_port"])
        to_port = int(rule["to_port"])
        perm: dict[str, Any] = {
            "FromPort": from_port,
            "ToPort": to_port,
            "IpProtocol": rule["protocol"],
        }

        if perm["IpProtocol"] == ALL_PROTOCOLS and (from_port or to_port):
            raise InvalidRuleError(
                f"from_port ({from_port}) and to_port ({to_port}) must both be 0 "
                'to use the \'ALL\' "-1" protocol!',
                origin="expand_ip_perms",
            )

        description = rule.get("description") or ""
        extra = {"Description": description} if description else {}

        groups = sorted(rule.get("security_groups") or [])
        if rule.get("self"):
            groups.append(group["GroupId"] if vpc else group["GroupName"])

        if groups:
            pairs = []
            for name in groups:
                owner_id, _, identifier = name.rpartition("/")
                pair: dict[str, Any] = (
                    {"GroupId": identifier} if vpc else {"GroupName": identifier}
                )
                if owner_id:
                    pair["UserId"] = owner_id
                pair.update(extra)
                pairs.append(pair)
            perm["UserIdGroupPairs"] = pairs

        if rule.get("cidr_blocks"):
            perm["IpRanges"] = [
                {"CidrIp": cidr, **extra} for cidr in rule["cidr_blocks"]
            ]
        if rule.get("ipv6_cidr_blocks"):
            perm["Ipv6Ranges"] = [
                {"CidrIpv6": cidr, **extra} for cidr in rule["ipv6_cidr_blocks"]
            ]
        if rule.get("prefix_list_ids"):
            perm["PrefixListIds"] = [
                {"PrefixListId": pl, **extra} for pl in rule["prefix_list_ids"]
            ]

        result.append(perm)
    return result


def rule_hash_key(rule: Rule) -> str:
    """Return the string identifying a rule.

    Sources are sorted so that the key does not depend on their order.
    """
    parts = [
        str(int(rule["from_port"])),
        str(int(rule["to_port"])),
        protocol_for_value(str(rule["protocol"])),
        "true" if rule.get("self") else "false",
    ]
    for key in SOURCES:
        parts.extend(sorted(rule.get(key) or []))
    if rule.get("description"):
        parts.append(rule["description"])
    return "".join(f"{part}-" for part in parts)


def rule_hash(rule: Rule) -> int:
    """Return the identity of a rule, as used to diff rule sets."""
    return zlib.crc32(rule_hash_key(rule).encode("utf-8"))


class RuleSet:
    """Set of rules deduplicated on their hash."""

    def __init__(self, rules: Optional[Iterable[Rule]] = None) -> None:
        self.rules: dict[int, Rule] = {}
        for rule in rules or []:
            self.add(rule)

    def add(self, rule: Rule) -> None:
        self.rules[rule_hash(rule)] = rule

    def difference(self, other: RuleSet) -> list[Rule]:
        """Return rules of this set that are not in other."""
        return [rule for h, rule in self.rules.items() if h not in other.rules]

    def __contains__(self, rule: Rule) -> bool:
        return rule_hash(rule) in self.rules

    def __iter__(self) -> Iterator[Rule]:
        return iter(self.rules.values())

    def __len__(self) -> int:
        return len(self.rules)


def _match_key(rule: Rule) -> tuple[str, int, int]:
    return (
        protocol_for_value(str(rule["protocol"])),
        int(rule["from_port"]),
        int(rule["to_port"]),
    )


def match_rules(local: Iterable[Rule], remote: Iterable[Rule]) -> list[Rule]:
    """Split gathered rules following the layout of declared rules.

    Each declared rule claims, in a remote rule with the same protocol and
    ports, the sources it lists and the self flag if set. Sources left
    unclaimed are returned as additional rules so that changes made outside
    of the declaration show up when diffing.

    :param local: declared rules
    :param remote: rules returned by ip_perm_gather
    :return: the rules to record in the state
    """
    remaining = []
    for rule in remote:
        copied = dict(rule)
        for key in SOURCES:
            if key in copied:
                copied[key] = list(copied[key])
        remaining.append(copied)

    saves = []
    for rule in local:
        key = _match_key(rule)
        for candidate in remaining:
            if _match_key(candidate) != key:
                continue
            if rule.get("self") and not candidate.get("self"):
                continue
            if not all(
                set(rule.get(k) or []) <= set(candidate.get(k) or []) for k in SOURCES
            ):
                continue

            saved: Rule = {
                "protocol": candidate["protocol"],
                "from_port": candidate["from_port"],
                "to_port": candidate["to_port"],
                "self": bool(rule.get("self")),
                "description": candidate.get("description") or "",
            }
            for k in SOURCES:
                claimed = rule.get(k) or []
                if not claimed:
                    continue
                saved[k] = set(claimed) if k == "security_groups" else list(claimed)
                candidate[k] = [v for v in candidate[k] if v not in claimed]
            if rule.get("self"):
                candidate["self"] = False
            saves.append(saved)
            break

    for candidate in remaining:
        if not candidate.get("self") and not any(candidate.get(k) for k in SOURCES):
            continue
        for k in SOURCES:
            if k in candidate and not candidate[k]:
                del candidate[k]
        if "security_groups" in candidate:
            candidate["security_groups"] = set(candidate["security_groups"])
        saves.append(candidate)

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"matched rules: {saves}")
    return saves
