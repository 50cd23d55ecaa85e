"""IP protocol names and numbers as accepted by EC2 security group rules."""

from __future__ import annotations
from typing import TYPE_CHECKING
import logging

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger("e3.secgroup.protocol")

# IANA protocol numbers that can be given by name. "all" is the EC2 wildcard
PROTOCOL_NUMBERS: dict[str, int] = {
    "udp": 17,
    "tcp": 6,
    "icmp": 1,
    "all": -1,
}

ALL_PROTOCOLS = "-1"


def protocol_for_value(value: str) -> str:
    """Return the canonical name of a protocol.

    The value can be a protocol name or its number, in any case. "all" and
    "-1" are both converted to "-1". Numbers without a known name are
    returned unchanged.

    :param value: protocol name or number
    :return: the canonical protocol
    """
    protocol = value.lower()
    if protocol in (ALL_PROTOCOLS, "all"):
        return ALL_PROTOCOLS

    if protocol in PROTOCOL_NUMBERS:
        return protocol

    try:
        number = int(protocol)
    except ValueError:
        logger.warning(f"Unable to determine valid protocol: {value}")
        return protocol

    for name, protocol_number in PROTOCOL_NUMBERS.items():
        if number == protocol_number:
            return name.lower()

    logger.warning(f"Unable to determine valid protocol: no match for {value}")
    return protocol


def protocol_state_func(value: Any) -> str:
    """Return the protocol as stored in a rule state.

    :param value: the configured protocol. Only strings are accepted
    :return: the canonical protocol or an empty string if value is not a
        string
    """
    if isinstance(value, str):
        return protocol_for_value(value)

    logger.warning(f"Non string value given for protocol: {value!r}")
    return ""
