"""Provide fixtures for e3 secgroup tests."""

from __future__ import annotations
from typing import TYPE_CHECKING
import pytest

if TYPE_CHECKING:
    from pytest import MonkeyPatch


@pytest.fixture(autouse=True)
def set_ci(monkeypatch: MonkeyPatch) -> None:
    """Toggle on CI by default.

    That variable is set by GitLab and may lead to different local test results
    if not set.
    """
    monkeypatch.setenv("CI", "true")


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch: MonkeyPatch) -> None:
    """Use fake credentials so that no test can reach a real account.

    Acceptance tests are expected to provide their own profile.
    """
    for name in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN"):
        monkeypatch.setenv(name, "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("AWS_PROFILE", raising=False)
