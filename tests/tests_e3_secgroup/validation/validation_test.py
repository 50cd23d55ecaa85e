from __future__ import annotations

import pytest

from e3.secgroup import SecurityGroupError
from e3.secgroup.validation import (
    InvalidCIDRError,
    InvalidNameError,
    InvalidRuleError,
    validate_cidr_network_address,
    validate_name,
    validate_name_prefix,
    validate_port,
    validate_rule,
)


@pytest.mark.parametrize("value", ["1.2.3.4/33", "::/244", "10.0.0.0", "foo/8"])
def test_invalid_cidr(value: str) -> None:
    """Malformed CIDR blocks are rejected."""
    with pytest.raises(InvalidCIDRError, match=f"invalid CIDR address: {value}"):
        validate_cidr_network_address(value, "cidr_blocks")


def test_cidr_not_a_string() -> None:
    with pytest.raises(InvalidCIDRError, match="invalid CIDR address: 10"):
        validate_cidr_network_address(10, "cidr_blocks")  # type: ignore


@pytest.mark.parametrize("value", ["10.0.0.1/8", "2001:db8::1/32"])
def test_cidr_host_bits(value: str) -> None:
    """CIDR blocks must be network addresses."""
    with pytest.raises(InvalidCIDRError, match="must contain a valid network CIDR"):
        validate_cidr_network_address(value, "cidr_blocks")


def test_valid_cidr() -> None:
    validate_cidr_network_address("10.0.0.0/8", "cidr_blocks", version=4)
    validate_cidr_network_address("0.0.0.0/0", "cidr_blocks")
    validate_cidr_network_address("::/0", "ipv6_cidr_blocks", version=6)

    with pytest.raises(InvalidCIDRError, match="is not an IPv4 CIDR"):
        validate_cidr_network_address("::/0", "cidr_blocks", version=4)


def test_errors_are_security_group_errors() -> None:
    for error in (InvalidCIDRError, InvalidNameError, InvalidRuleError):
        assert issubclass(error, SecurityGroupError)


def test_validate_port() -> None:
    assert validate_port("80", "from_port") == 80
    assert validate_port(-1, "from_port") == -1
    with pytest.raises(InvalidRuleError, match="not in the range"):
        validate_port(65536, "to_port")
    with pytest.raises(InvalidRuleError, match="is not a port number"):
        validate_port("http", "to_port")


def test_validate_rule() -> None:
    validate_rule(
        {
            "protocol": "tcp",
            "from_port": 80,
            "to_port": 8000,
            "cidr_blocks": ["10.0.0.0/8"],
            "ipv6_cidr_blocks": ["::/0"],
        },
        "ingress",
    )
    validate_rule({"protocol": "-1", "from_port": 0, "to_port": 0}, "egress")

    with pytest.raises(InvalidRuleError, match="to_port is required"):
        validate_rule({"protocol": "tcp", "from_port": 80}, "ingress")

    with pytest.raises(InvalidRuleError, match="must both be 0"):
        validate_rule({"protocol": "all", "from_port": 80, "to_port": 80}, "ingress")

    with pytest.raises(InvalidCIDRError, match="invalid CIDR address: 1.2.3.4/33"):
        validate_rule(
            {
                "protocol": "tcp",
                "from_port": 80,
                "to_port": 80,
                "cidr_blocks": ["1.2.3.4/33"],
            },
            "ingress",
        )

    with pytest.raises(InvalidCIDRError, match="invalid CIDR address: ::/244"):
        validate_rule(
            {
                "protocol": "tcp",
                "from_port": 80,
                "to_port": 80,
                "ipv6_cidr_blocks": ["::/244"],
            },
            "egress",
        )

    with pytest.raises(InvalidRuleError, match="at most 255 characters"):
        validate_rule(
            {
                "protocol": "tcp",
                "from_port": 80,
                "to_port": 80,
                "description": "a" * 256,
            },
            "ingress",
        )


def test_validate_rule_types() -> None:
    with pytest.raises(InvalidRuleError, match="expecting a rule mapping"):
        validate_rule(["tcp", 80, 80], "ingress")  # type: ignore

    with pytest.raises(InvalidRuleError, match="cidr_blocks: expecting a list"):
        validate_rule(
            {"protocol": "tcp", "from_port": 80, "to_port": 80, "cidr_blocks": [10]},
            "ingress",
        )

    with pytest.raises(InvalidRuleError, match="description: expecting a string"):
        validate_rule(
            {"protocol": "tcp", "from_port": 80, "to_port": 80, "description": 1},
            "egress",
        )

def test_validate_name() -> None:
    validate_name("web")
    validate_name_prefix("web-")

    with pytest.raises(InvalidNameError, match="cannot start with sg-"):
        validate_name("sg-web")
    with pytest.raises(InvalidNameError, match="cannot be longer than 255"):
        validate_name("a" * 256)
    with pytest.raises(InvalidNameError, match="cannot be longer than 100"):
        validate_name_prefix("a" * 101)
