"""Command line interface to manage security groups from a YAML file."""

from __future__ import annotations
import logging
import sys

import botocore.exceptions

from e3.env import Env
from e3.main import Main
from e3.secgroup import AWSEnv, SecurityGroupError, Session
from e3.secgroup.cfn import to_template
from e3.secgroup.config import Config
from e3.secgroup.plan import NOOP, Plan, State
from e3.secgroup.sweeper import DEFAULT_TAG_VALUE, sweep_security_groups

logger = logging.getLogger("e3.secgroup.main")

DEFAULT_STATE_FILE = "e3-secgroup.state.json"
ROLE_SESSION_NAME = "e3-secgroup"


class SecGroupMain(Main):
    """Main to handle security groups from command line."""

    def __init__(
        self,
        default_profile: str | None = None,
        assume_role: tuple[str, str] | None = None,
    ) -> None:
        """Initialize main.

        :param default_profile: default AWS profile to use
        :param assume_role: tuple containing the two values that are passed
            to Session.assume_role(). If set, security groups are managed
            with the credentials of that role
        """
        super().__init__(platform_args=False)
        self.argument_parser.add_argument(
            "--profile",
            help="choose AWS profile{}".format(
                "" if default_profile is None else f", default is {default_profile}"
            ),
            default=default_profile,
        )
        self.argument_parser.add_argument(
            "--region",
            help="choose region (default: region of the configuration file, "
            "then AWS_DEFAULT_REGION)",
        )
        self.argument_parser.add_argument(
            "--assume-role",
            metavar="ROLE_ARN",
            help="assume this role to manage security groups",
        )
        self.argument_parser.add_argument(
            "--state",
            default=DEFAULT_STATE_FILE,
            help=f"state file (default: {DEFAULT_STATE_FILE})",
        )

        subs = self.argument_parser.add_subparsers(
            title="commands", description="available commands", dest="command"
        )
        subs.required = True

        apply_args = subs.add_parser("apply", help="create or update security groups")
        apply_args.add_argument("config", help="YAML configuration file")
        apply_args.add_argument(
            "--dry-run", action="store_true", help="show the plan only"
        )
        apply_args.set_defaults(command="apply")

        destroy_args = subs.add_parser(
            "destroy", help="delete the security groups recorded in the state"
        )
        destroy_args.add_argument("config", help="YAML configuration file")
        destroy_args.set_defaults(command="destroy")

        show_args = subs.add_parser(
            "show", help="show the equivalent CloudFormation template"
        )
        show_args.add_argument("config", help="YAML configuration file")
        show_args.set_defaults(command="show")

        sweep_args = subs.add_parser(
            "sweep", help="delete security groups left by acceptance tests"
        )
        sweep_args.add_argument(
            "--tag-value",
            default=DEFAULT_TAG_VALUE,
            help=f"tag value of the groups to delete (default: {DEFAULT_TAG_VALUE})",
        )
        sweep_args.set_defaults(command="sweep")

        self.assume_role = assume_role
        self.aws_env: Session | None = None

    def start_session(self, aws_env: Session | None = None) -> Session:
        """Start the AWS session.

        If an assume_role was passed in the constructor or with
        --assume-role, then the role is assumed.

        :param aws_env: custom AWS session to use
        """
        assert self.args is not None
        regions = [self.args.region] if self.args.region else None
        if aws_env is not None:
            self.aws_env = aws_env
        else:
            assume_role = self.assume_role
            if self.args.assume_role:
                assume_role = (self.args.assume_role, ROLE_SESSION_NAME)
            if assume_role:
                main_session = Session(regions=regions, profile=self.args.profile)
                self.aws_env = main_session.assume_role(assume_role[0], assume_role[1])
                Env().aws_env = self.aws_env
            else:
                self.aws_env = AWSEnv(regions=regions, profile=self.args.profile)
        return self.aws_env

    def load_config(self) -> Config:
        assert self.args is not None
        config = Config.load(self.args.config)
        if self.args.region is not None:
            config.region = self.args.region
        return config

    def execute(
        self,
        args: list[str] | None = None,
        known_args_only: bool = False,
        aws_env: Session | None = None,
    ) -> int:
        """Execute application and return exit status.

        See parse_args arguments.
        """
        self.parse_args(args, known_args_only)
        assert self.args is not None

        try:
            if self.args.command == "show":
                print(to_template(self.load_config()).to_json())
                return 0

            aws_env = self.start_session(aws_env)

            if self.args.command == "sweep":
                deleted = sweep_security_groups(
                    region=self.args.region,
                    tag_value=self.args.tag_value,
                    session=aws_env,
                )
                logger.info(f"swept {len(deleted)} security groups")
                return 0

            plan = Plan(self.load_config(), State.load(self.args.state), aws_env)
            if self.args.command == "apply":
                if self.args.dry_run:
                    plan.refresh()
                    for action, logical_name in plan.actions():
                        if action != NOOP:
                            print(f"{action:8} {logical_name}")
                    return 0
                plan.apply()
            elif self.args.command == "destroy":
                plan.destroy()
            return 0
        except botocore.exceptions.ClientError as e:
            logger.error(str(e))
            return 1
        except SecurityGroupError as e:
            logger.error(str(e))
            return 1


def main() -> None:
    sys.exit(SecGroupMain().execute())
