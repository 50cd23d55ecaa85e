"""Validation of security group declarations."""

from __future__ import annotations
from typing import TYPE_CHECKING
import ipaddress

from e3.secgroup import SecurityGroupError
from e3.secgroup.protocol import ALL_PROTOCOLS, protocol_for_value

if TYPE_CHECKING:
    from typing import Any, Optional

MAX_NAME_LENGTH = 255
MAX_NAME_PREFIX_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 255

RULE_SOURCES = ("cidr_blocks", "ipv6_cidr_blocks", "prefix_list_ids", "security_groups")


class InvalidCIDRError(SecurityGroupError):
    """A CIDR block cannot be parsed or is not a network address."""


class InvalidRuleError(SecurityGroupError):
    """A rule declaration is rejected."""


class InvalidNameError(SecurityGroupError):
    """A group name or name prefix is rejected."""


def validate_cidr_network_address(
    value: str, attribute: str, version: Optional[int] = None
) -> None:
    """Check that value is a network CIDR.

    :param value: the CIDR to check, e.g. 10.0.0.0/8
    :param attribute: name of the attribute holding the value, for error
        messages
    :param version: if not None, the expected IP version (4 or 6)
    :raises InvalidCIDRError: if value is not a valid network CIDR
    """
    if not isinstance(value, str):
        raise InvalidCIDRError(
            f"{attribute}: invalid CIDR address: {value!r}",
            origin="validate_cidr_network_address",
        )
    try:
        if "/" not in value:
            raise ValueError(value)
        network = ipaddress.ip_network(value, strict=False)
    except ValueError as e:
        raise InvalidCIDRError(
            f"{attribute}: invalid CIDR address: {value}",
            origin="validate_cidr_network_address",
        ) from e

    if str(network) != value:
        raise InvalidCIDRError(
            f"{attribute}: {value!r} must contain a valid network CIDR, "
            f"got {str(network)!r}",
            origin="validate_cidr_network_address",
        )

    if version is not None and network.version != version:
        raise InvalidCIDRError(
            f"{attribute}: {value!r} is not an IPv{version} CIDR",
            origin="validate_cidr_network_address",
        )


def validate_port(value: Any, attribute: str) -> int:
    """Check a port number and return it as an int.

    :param value: port number, as an int or a decimal string
    :param attribute: name of the attribute, for error messages
    :raises InvalidRuleError: if the port is not in [-1, 65535]
    """
    try:
        port = int(value)
    except (TypeError, ValueError) as e:
        raise InvalidRuleError(
            f"{attribute}: {value!r} is not a port number", origin="validate_port"
        ) from e
    if port < -1 or port > 65535:
        raise InvalidRuleError(
            f"{attribute}: {port} is not in the range [-1, 65535]",
            origin="validate_port",
        )
    return port


def validate_rule(rule: dict[str, Any], direction: str) -> None:
    """Check a rule as declared by the user.

    :param rule: rule attribute map
    :param direction: "ingress" or "egress", for error messages
    :raises InvalidRuleError: if ports, protocol or description are invalid
    :raises InvalidCIDRError: if a CIDR block is invalid
    """
    if not isinstance(rule, dict):
        raise InvalidRuleError(
            f"{direction}: expecting a rule mapping, got {rule!r}",
            origin="validate_rule",
        )

    for key in ("protocol", "from_port", "to_port"):
        if key not in rule:
            raise InvalidRuleError(
                f"{direction}: {key} is required", origin="validate_rule"
            )

    protocol = rule["protocol"]
    if not isinstance(protocol, str):
        protocol = str(protocol)
    from_port = validate_port(rule["from_port"], f"{direction}.from_port")
    to_port = validate_port(rule["to_port"], f"{direction}.to_port")

    # EC2 silently ignores the ports of an all protocols rule
    if protocol_for_value(protocol) == ALL_PROTOCOLS and (from_port or to_port):
        raise InvalidRuleError(
            f"{direction}: from_port ({from_port}) and to_port ({to_port}) must "
            'both be 0 to use the \'ALL\' "-1" protocol!',
            origin="validate_rule",
        )

    for key in RULE_SOURCES:
        sources = rule.get(key)
        if sources is None:
            continue
        if not isinstance(sources, (list, set, tuple)) or not all(
            isinstance(source, str) for source in sources
        ):
            raise InvalidRuleError(
                f"{direction}.{key}: expecting a list of strings, got {sources!r}",
                origin="validate_rule",
            )

    for cidr in rule.get("cidr_blocks") or []:
        validate_cidr_network_address(cidr, f"{direction}.cidr_blocks", version=4)
    for cidr in rule.get("ipv6_cidr_blocks") or []:
        validate_cidr_network_address(
            cidr, f"{direction}.ipv6_cidr_blocks", version=6
        )

    description = rule.get("description") or ""
    if not isinstance(description, str):
        raise InvalidRuleError(
            f"{direction}.description: expecting a string, got {description!r}",
            origin="validate_rule",
        )
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise InvalidRuleError(
            f"{direction}.description: must be at most "
            f"{MAX_DESCRIPTION_LENGTH} characters",
            origin="validate_rule",
        )


def validate_name(name: str) -> None:
    """Check a security group name.

    :raises InvalidNameError: if the name is too long or looks like an id
    """
    if len(name) > MAX_NAME_LENGTH:
        raise InvalidNameError(
            f"name: {name!r} cannot be longer than {MAX_NAME_LENGTH} characters",
            origin="validate_name",
        )
    if name.startswith("sg-"):
        raise InvalidNameError(
            f"name: {name!r} cannot start with sg-", origin="validate_name"
        )


def validate_name_prefix(prefix: str) -> None:
    """Check a security group name prefix.

    :raises InvalidNameError: if the prefix is too long
    """
    if len(prefix) > MAX_NAME_PREFIX_LENGTH:
        raise InvalidNameError(
            f"name_prefix: {prefix!r} cannot be longer than "
            f"{MAX_NAME_PREFIX_LENGTH} characters",
            origin="validate_name_prefix",
        )
