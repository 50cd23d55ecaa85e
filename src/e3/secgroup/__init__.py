"""Manage EC2 security groups and their rules."""

from __future__ import annotations
from typing import TYPE_CHECKING
import botocore.session
import logging
import os
import re

from botocore.stub import Stubber

from e3.error import E3Error
from e3.env import Env

logger = logging.getLogger("e3.secgroup")

if TYPE_CHECKING:
    from typing import Any, Callable, Iterator, Optional
    import botocore.client
    import botocore.stub


class SecurityGroupError(E3Error):
    """Base error for security group operations."""

    def __init__(self, message: str, origin: Optional[str] = None) -> None:
        """Initialize a SecurityGroupError.

        :param message: the exception message
        :param origin: the name of the function, class, or module having raised
        """
        super().__init__(message, origin)
        self.message = message


class Session:
    """Handle AWS session and EC2 clients."""

    def __init__(
        self,
        regions: Optional[list[str]] = None,
        stub: bool = False,
        profile: Optional[str] = None,
        credentials: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize an AWS session.

        :param regions: list of regions to work on. The first region is
            considered as the default region. This parameter should be provided
            if AWS environment variables are not used to specify the region
        :param stub: if True clients are necessarily stubbed
        :param profile: profile name
        :param credentials: AWS credentials dictionary containing the
            following keys: AccessKeyId, SecretAccessKey, SessionToken
            as returned by ``assume_role``
        """
        if profile is not None or credentials is None:
            self.session = botocore.session.Session(profile=profile)
        else:
            self.session = botocore.session.Session()
            self.session.set_credentials(
                access_key=credentials["AccessKeyId"],
                secret_key=credentials["SecretAccessKey"],
                token=credentials["SessionToken"],
            )

        self.profile = profile
        if regions is None:
            # ('region', 'AWS_DEFAULT_REGION', None, None), see
            # botocore/configprovider.py
            region_variable = self.session.SESSION_VARIABLES["region"][1]
            region = os.environ.get(region_variable, "")
            if not region:
                raise ValueError(
                    "region should be specified either using regions "
                    "parameter or using AWS environment variables"
                )
            self.regions = [region]
        else:
            self.regions = regions

        self.default_region = self.regions[0]

        self.force_stub = stub
        self.clients: dict[str, dict[str, botocore.client.BaseClient]] = {}
        self.stubbers: dict[str, dict[str, botocore.stub.Stubber]] = {}

    def assume_role(
        self,
        role_arn: str,
        role_session_name: str,
        session_duration: Optional[int] = None,
    ) -> Session:
        """Return a session with ``role_arn`` credentials.

        :param role_arn: ARN of the role to assume
        :param role_session_name: a name to associate with the created
            session
        :param session_duration: session duration in seconds or None for
            default
        """
        arguments: dict[str, Any] = {
            "RoleArn": role_arn,
            "RoleSessionName": role_session_name,
        }
        if session_duration is not None:
            arguments["DurationSeconds"] = session_duration

        logger.debug(f"assume role {role_arn} ({role_session_name})")
        response = self.client("sts", region=self.regions[0]).assume_role(
            **arguments
        )
        return Session(regions=self.regions, credentials=response["Credentials"])

    def stub(
        self, name: str, region: Optional[str] = None
    ) -> Optional[botocore.stub.Stubber]:
        """Return stub for a given client.

        Note that if the client does not exist yet it will be created.

        :param name: client name
        :param region: region associated with the client. If None the default
            region is taken.
        :return: the stub instance or None if the session is not stubbed
        """
        if not self.force_stub:
            return None
        if region is None:
            region = self.default_region

        if name not in self.stubbers or region not in self.stubbers[name]:
            self.client(name, region)

        return self.stubbers[name][region]

    def client(
        self, name: str, region: Optional[str] = None
    ) -> botocore.client.BaseClient:
        """Get a client.

        :param name: client name
        :param region: region associated with the client. If None the default
            region is taken.
        :return: a client instance
        """
        if region is None:
            region = self.default_region

        assert region is not None, "no region or default_region set"

        if name not in self.clients:
            self.clients[name] = {}
            self.stubbers[name] = {}

        if region not in self.clients[name]:
            self.clients[name][region] = self.session.create_client(
                name, region_name=region
            )
            if self.force_stub:
                self.stubbers[name][region] = Stubber(self.clients[name][region])
                self.stubbers[name][region].activate()

        return self.clients[name][region]


class AWSEnv(Session):
    """AWS session registered as the process wide environment."""

    def __init__(
        self,
        regions: Optional[list[str]] = None,
        stub: bool = False,
        profile: Optional[str] = None,
    ):
        """Initialize an AWS session.

        Once initialized the session can be accessed from Env().aws_env

        :param regions: list of regions to work on. The first region is
            considered as the default region.
        :param stub: if True clients are necessarily stubbed
        :param profile: profile name
        """
        super().__init__(regions=regions, stub=stub, profile=profile)
        env = Env()
        env.aws_env = self


def session() -> Callable:
    """Decorate a function to handle automatically AWS session retrieval.

    The function in input should take an argument called session. When the
    caller does not provide it, Env().aws_env is used.
    """

    def decorator(func):
        def wrapper(*args, **kwargs):
            if kwargs.get("session") is not None:
                session = kwargs.pop("session")
            else:
                kwargs.pop("session", None)
                session = Env().aws_env
            return func(*args, session=session, **kwargs)

        return wrapper

    return decorator


def iterate(fun: Callable, key: str, **kwargs: Any) -> Iterator[Any]:
    """Create an iterator over a paginated botocore function.

    :param fun: the function to call
    :param key: the key in the returned data containing the elements
    :param kwargs: parameters passed to the function
    """
    result = fun(**kwargs)
    yield from result.get(key, [])

    while result.get("NextToken"):
        result = fun(NextToken=result["NextToken"], **kwargs)
        yield from result.get(key, [])


def partition_for_region(region: str) -> str:
    """Return the AWS partition a region belongs to.

    :param region: a region name such as eu-west-1
    """
    if region.startswith("cn-"):
        return "aws-cn"
    elif region.startswith("us-gov-"):
        return "aws-us-gov"
    return "aws"


def name_to_id(name: str) -> str:
    """Convert a resource name to a CloudFormation logical id.

    Characters that are not alphanumeric are removed, the first character and
    characters following a dash or an underscore are uppercased.
    """

    def replacement(match):
        """Return uppercased second character of the match."""
        return match.group(1)[1].upper()

    resource_id = re.sub(
        r"[^a-zA-Z0-9]", "", re.sub(r"([-_][a-z])", replacement, name)
    )
    resource_id = resource_id[0].upper() + resource_id[1:]
    return resource_id
