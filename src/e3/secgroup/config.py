"""Load security group declarations from YAML files.

The expected format is::

    region: eu-west-1
    settings:
      create_timeout: 600
      delete_timeout: 600
      retry_delay: 5
    security_groups:
      web:
        name: web
        description: web servers
        vpc_id: vpc-1234
        revoke_rules_on_delete: true
        ingress:
          - protocol: tcp
            from_port: 80
            to_port: 8000
            cidr_blocks: [10.0.0.0/8]
            security_groups: ["ref:worker"]
        tags:
          Name: web

Peer groups declared in the same file are referenced with ref:<name>.
"""

from __future__ import annotations
from typing import TYPE_CHECKING
import logging

import yaml

from e3.secgroup import SecurityGroupError
from e3.secgroup.group import (
    DEFAULT_CREATE_TIMEOUT,
    DEFAULT_DELETE_TIMEOUT,
    DEFAULT_RETRY_DELAY,
    SecurityGroupConfig,
)

if TYPE_CHECKING:
    from typing import Any, Optional

logger = logging.getLogger("e3.secgroup.config")

GROUP_KEYS = {
    "name",
    "name_prefix",
    "description",
    "vpc_id",
    "ingress",
    "egress",
    "tags",
    "revoke_rules_on_delete",
}
SETTINGS = {
    "create_timeout": DEFAULT_CREATE_TIMEOUT,
    "delete_timeout": DEFAULT_DELETE_TIMEOUT,
    "retry_delay": DEFAULT_RETRY_DELAY,
}


class ConfigError(SecurityGroupError):
    """Invalid declaration file."""


def _mapping(value: Any, attribute: str, origin: str) -> dict[str, Any]:
    """Return a copy of a mapping, an empty one if value is None."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(
            f"{attribute}: expecting a mapping, got {value!r}", origin=origin
        )
    return dict(value)


def _check_declaration(logical_name: str, declaration: dict[str, Any]) -> None:
    """Check the type of the attributes of a group declaration."""
    for key in ("name", "name_prefix", "description", "vpc_id"):
        value = declaration.get(key)
        if value is not None and not isinstance(value, str):
            raise ConfigError(
                f"{key}: expecting a string, got {value!r}", origin=logical_name
            )

    for key in ("ingress", "egress"):
        rules = declaration.get(key)
        if rules is None:
            continue
        if not isinstance(rules, list) or not all(
            isinstance(rule, dict) for rule in rules
        ):
            raise ConfigError(
                f"{key}: expecting a list of rules, got {rules!r}", origin=logical_name
            )

    _mapping(declaration.get("tags"), "tags", origin=logical_name)

    revoke = declaration.get("revoke_rules_on_delete", False)
    if not isinstance(revoke, bool):
        raise ConfigError(
            f"revoke_rules_on_delete: expecting a boolean, got {revoke!r}",
            origin=logical_name,
        )


class Config:
    """Set of security group declarations."""

    def __init__(
        self,
        groups: dict[str, SecurityGroupConfig],
        region: Optional[str] = None,
        settings: Optional[dict[str, float]] = None,
    ) -> None:
        """Initialize a configuration.

        :param groups: map logical name -> declaration
        :param region: region of the groups, None for the session default
        :param settings: timeouts, see SETTINGS
        """
        self.groups = groups
        self.region = region
        self.settings = dict(SETTINGS)
        self.settings.update(settings or {})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Create a configuration from the loaded YAML document.

        :raises ConfigError: if the document is not valid
        """
        if not isinstance(data, dict):
            raise ConfigError("expecting a mapping", origin="config")

        unknown = set(data) - {"region", "settings", "security_groups"}
        if unknown:
            raise ConfigError(
                f"unknown keys: {', '.join(sorted(unknown))}", origin="config"
            )

        region = data.get("region")
        if region is not None and not isinstance(region, str):
            raise ConfigError(
                f"region: expecting a string, got {region!r}", origin="config"
            )

        settings = _mapping(data.get("settings"), "settings", origin="config")
        unknown = set(settings) - set(SETTINGS)
        if unknown:
            raise ConfigError(
                f"unknown settings: {', '.join(sorted(unknown))}", origin="config"
            )
        for key, value in settings.items():
            try:
                settings[key] = float(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(
                    f"settings.{key}: {value!r} is not a number", origin="config"
                ) from e

        declarations = _mapping(
            data.get("security_groups"), "security_groups", origin="config"
        )
        groups = {}
        for logical_name, declaration in declarations.items():
            declaration = _mapping(declaration, "declaration", origin=logical_name)
            unknown = set(declaration) - GROUP_KEYS
            if unknown:
                raise ConfigError(
                    f"unknown keys: {', '.join(sorted(unknown))}",
                    origin=logical_name,
                )
            _check_declaration(logical_name, declaration)
            try:
                groups[logical_name] = SecurityGroupConfig(
                    **declaration,
                    **settings,
                )
            except SecurityGroupError as e:
                raise ConfigError(str(e), origin=logical_name) from e

        result = cls(groups, region=region, settings=settings)
        for logical_name, group in groups.items():
            missing = group.references - set(groups)
            if missing:
                raise ConfigError(
                    f"unknown security group references: "
                    f"{', '.join(sorted(missing))}",
                    origin=logical_name,
                )
        logger.debug(f"loaded security groups: {', '.join(groups)}")
        return result

    @classmethod
    def load(cls, path: str) -> Config:
        """Load a configuration from a YAML file.

        :param path: path to the file
        """
        try:
            with open(path) as fd:
                data = yaml.safe_load(fd)
        except OSError as e:
            raise ConfigError(f"cannot read {path}: {e}", origin="config") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"cannot parse {path}: {e}", origin="config") from e
        return cls.from_dict(data or {})
