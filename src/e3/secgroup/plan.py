"""Reconcile declared security groups with EC2 and a local state file."""

from __future__ import annotations
from typing import TYPE_CHECKING
import json
import logging
import os

from e3.secgroup import SecurityGroupError
from e3.secgroup.config import ConfigError
from e3.secgroup.group import PartialCreateError, SecurityGroup
from e3.secgroup.rules import RuleSet

if TYPE_CHECKING:
    from typing import Any, Optional
    from e3.secgroup import Session
    from e3.secgroup.config import Config
    from e3.secgroup.group import SecurityGroupConfig

logger = logging.getLogger("e3.secgroup.plan")

CREATE = "create"
UPDATE = "update"
REPLACE = "replace"
DELETE = "delete"
NOOP = "noop"

# Placeholder for the id of a group that does not exist yet
COMPUTED = "<computed>"


def _load_rules(rules: list[dict[str, Any]]) -> list[dict[str, Any]]:
    result = []
    for rule in rules:
        rule = dict(rule)
        if "security_groups" in rule:
            rule["security_groups"] = set(rule["security_groups"])
        result.append(rule)
    return result


def _dump_rules(rules: list[dict[str, Any]]) -> list[dict[str, Any]]:
    result = []
    for rule in rules:
        rule = dict(rule)
        if "security_groups" in rule:
            rule["security_groups"] = sorted(rule["security_groups"])
        result.append(rule)
    return result


class State:
    """States of the applied security groups, indexed by logical name.

    Groups are kept in creation order, including in the saved file.
    """

    def __init__(
        self,
        groups: Optional[dict[str, dict[str, Any]]] = None,
        path: Optional[str] = None,
    ) -> None:
        """Initialize a state.

        :param groups: map logical name -> group state
        :param path: file where the state is saved. If None the state is
            kept in memory only
        """
        self.groups = groups if groups is not None else {}
        self.path = path

    @classmethod
    def load(cls, path: str) -> State:
        """Load a state file, an empty state is returned if it does not exist."""
        if not os.path.exists(path):
            return cls(path=path)
        with open(path) as fd:
            data = json.load(fd)
        groups = {}
        for logical_name, group in data.get("security_groups", {}).items():
            group["ingress"] = _load_rules(group.get("ingress", []))
            group["egress"] = _load_rules(group.get("egress", []))
            groups[logical_name] = group
        return cls(groups, path=path)

    def save(self) -> None:
        """Save the state if it is bound to a file."""
        if self.path is None:
            return
        groups = {}
        for logical_name, group in self.groups.items():
            group = dict(group)
            group["ingress"] = _dump_rules(group["ingress"])
            group["egress"] = _dump_rules(group["egress"])
            groups[logical_name] = group
        with open(self.path, "w") as fd:
            json.dump({"security_groups": groups}, fd, indent=2)

    @property
    def group_ids(self) -> dict[str, str]:
        return {name: group["id"] for name, group in self.groups.items()}


def creation_order(groups: dict[str, SecurityGroupConfig]) -> list[str]:
    """Sort logical names so that referenced groups come first.

    :raises ConfigError: if declarations reference each other in a cycle
    """
    result: list[str] = []
    pending = {name: set(group.references) for name, group in groups.items()}
    while pending:
        ready = sorted(name for name, deps in pending.items() if not deps - set(result))
        if not ready:
            raise ConfigError(
                f"reference cycle between {', '.join(sorted(pending))}",
                origin="creation_order",
            )
        for name in ready:
            result.append(name)
            del pending[name]
    return result


def deletion_order(groups: dict[str, dict[str, Any]]) -> list[str]:
    """Sort logical names of recorded groups so that referencing groups come first.

    References are read from the peers of the recorded rules. Otherwise
    groups come in reverse order of creation. Groups referencing each other
    keep that order: their rules must be revoked before deleting them.

    :param groups: map logical name -> group state, in creation order
    """
    names = {}
    for logical_name, group in groups.items():
        names[group["id"]] = logical_name
        if not group.get("vpc_id"):
            # EC2-Classic peers are identified by name
            names[group["name"]] = logical_name

    referenced_by: dict[str, set[str]] = {name: set() for name in groups}
    for logical_name, group in groups.items():
        for rule in group["ingress"] + group["egress"]:
            for peer in rule.get("security_groups") or []:
                target = names.get(peer)
                if target is not None and target != logical_name:
                    referenced_by[target].add(logical_name)

    result: list[str] = []
    pending = list(reversed(list(groups)))
    while pending:
        ready = [name for name in pending if not referenced_by[name] - set(result)]
        if not ready:
            logger.debug(f"reference cycle between {', '.join(pending)}")
            ready = pending
        result.extend(ready)
        pending = [name for name in pending if name not in ready]
    return result


class Plan:
    """Actions needed to converge EC2 toward the declarations."""

    def __init__(
        self, config: Config, state: State, session: Optional[Session] = None
    ) -> None:
        """Initialize a plan.

        :param config: the declarations
        :param state: the state of previously applied groups
        :param session: the session to use. If None Env().aws_env is used
        """
        self.config = config
        self.state = state
        self.resource = SecurityGroup(region=config.region, session=session)

    def refresh(self) -> None:
        """Read the remote state of every recorded group.

        Groups deleted outside of this tool are dropped from the state.
        """
        group_ids = self.state.group_ids
        for logical_name in list(self.state.groups):
            recorded = self.state.groups[logical_name]
            config = self.config.groups.get(logical_name)
            if config is not None:
                config = config.resolve(self._known_ids(group_ids))
            state = self.resource.read(recorded["id"], config)
            if state is None:
                logger.warning(f"{logical_name}: security group deleted outside")
                del self.state.groups[logical_name]
                continue
            state["revoke_rules_on_delete"] = recorded.get(
                "revoke_rules_on_delete", False
            )
            if recorded.get("tainted"):
                state["tainted"] = True
            self.state.groups[logical_name] = state

    def _known_ids(self, group_ids: dict[str, str]) -> dict[str, str]:
        result = {name: COMPUTED for name in self.config.groups}
        result.update(group_ids)
        return result

    def _action(self, logical_name: str) -> str:
        config = self.config.groups[logical_name]
        state = self.state.groups.get(logical_name)
        if state is None:
            return CREATE
        if state.get("tainted") or SecurityGroup.requires_replacement(state, config):
            return REPLACE

        config = config.resolve(self._known_ids(self.state.group_ids))
        if config.ingress is not None and set(RuleSet(config.ingress).rules) != set(
            RuleSet(state["ingress"]).rules
        ):
            return UPDATE
        if (
            config.egress is not None
            and state.get("vpc_id")
            and set(RuleSet(config.egress).rules) != set(RuleSet(state["egress"]).rules)
        ):
            return UPDATE
        if config.tags != state["tags"]:
            return UPDATE
        if config.revoke_rules_on_delete != state.get("revoke_rules_on_delete", False):
            return UPDATE
        return NOOP

    def actions(self) -> list[tuple[str, str]]:
        """Return the list of (action, logical name) to apply, in order.

        Groups are created following their references. Groups removed from
        the declarations are deleted last, referencing groups first.
        """
        result = [
            (self._action(name), name) for name in creation_order(self.config.groups)
        ]
        removed = {
            name: group
            for name, group in self.state.groups.items()
            if name not in self.config.groups
        }
        result.extend((DELETE, name) for name in deletion_order(removed))
        return result

    def _delete(self, logical_name: str) -> None:
        self.resource.delete(
            self.state.groups[logical_name],
            timeout=self.config.settings["delete_timeout"],
            delay=self.config.settings["retry_delay"],
        )
        del self.state.groups[logical_name]

    def _delete_all(self, logical_names: list[str]) -> list[str]:
        """Delete groups, in the given order.

        Rules of every group with revoke_rules_on_delete set are revoked
        before the first deletion, so that groups referencing each other
        can be deleted.

        :return: logical names of the deleted groups
        """
        for logical_name in logical_names:
            state = self.state.groups[logical_name]
            if not state.get("revoke_rules_on_delete"):
                continue
            group = self.resource.describe(state["id"])
            if group is not None:
                self.resource.revoke_all_rules(group)

        deleted = []
        for logical_name in logical_names:
            logger.info(f"{DELETE:8} {logical_name}")
            self._delete(logical_name)
            deleted.append(logical_name)
        return deleted

    def _create(self, logical_name: str) -> None:
        config = self.config.groups[logical_name]
        config.resolved_name()
        try:
            state = self.resource.create(config.resolve(self.state.group_ids))
        except PartialCreateError as e:
            state = self.resource.read(e.group_id)
            if state is not None:
                state["tainted"] = True
                state["revoke_rules_on_delete"] = config.revoke_rules_on_delete
                self.state.groups[logical_name] = state
            raise
        self.state.groups[logical_name] = state

    def apply(self) -> list[tuple[str, str]]:
        """Apply the plan.

        The state is saved after the last successful action even if an
        action fails.

        :return: the applied actions
        """
        self.refresh()
        actions = self.actions()
        try:
            for action, logical_name in actions:
                if action in (NOOP, DELETE):
                    continue
                logger.info(f"{action:8} {logical_name}")
                if action == CREATE:
                    self._create(logical_name)
                elif action == REPLACE:
                    self._delete(logical_name)
                    self._create(logical_name)
                elif action == UPDATE:
                    config = self.config.groups[logical_name].resolve(
                        self.state.group_ids
                    )
                    self.state.groups[logical_name] = self.resource.update(
                        self.state.groups[logical_name], config
                    )
                else:
                    raise SecurityGroupError(
                        f"unknown action {action}", origin="apply"
                    )
            self._delete_all(
                [logical_name for action, logical_name in actions if action == DELETE]
            )
        finally:
            self.state.save()
        return actions

    def destroy(self) -> list[str]:
        """Delete every group recorded in the state.

        :return: logical names of the deleted groups
        """
        self.refresh()
        try:
            return self._delete_all(deletion_order(self.state.groups))
        finally:
            self.state.save()
