"""Shared pytest configuration and fixtures."""

import os
import sys
from typing import Any, List, Optional, Sequence, Tuple

import pytest
from pydantic import SecretStr

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from nestedlab.config import LabConfig
from nestedlab.errors import RemoteExecutionError
from nestedlab.schemas.models import RemoteResult

ADMIN_PASSWORD = "Sup3r-Secret-Pass!"


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: marks tests that need real Azure resources",
    )


def pytest_collection_modifyitems(config, items):
    if os.environ.get("NESTEDLAB_INTEGRATION") == "1":
        return  # real lab available - run everything

    skip_integration = pytest.mark.skip(reason="Set NESTEDLAB_INTEGRATION=1 to run against a live lab")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


class FakeRemoteClient:
    """
    Stand-in for PSRemoteClient.

    Text replies (execute/run) and JSON replies (run_json) are served from
    separate queues; an exception in a queue is raised instead of returned.
    Empty queues answer with "" and None.
    """

    def __init__(self):
        self.calls: List[Tuple[str, str, Tuple[str, ...]]] = []
        self.text_replies: List[Any] = []
        self.json_replies: List[Any] = []
        self.reachable = True
        self.reachability_checks: List[str] = []

    def queue_text(self, *replies: Any) -> "FakeRemoteClient":
        self.text_replies.extend(replies)
        return self

    def queue_json(self, *replies: Any) -> "FakeRemoteClient":
        self.json_replies.extend(replies)
        return self

    @property
    def scripts(self) -> List[str]:
        return [script for _, script, _ in self.calls]

    @staticmethod
    def _next(queue: List[Any], default: Any) -> Any:
        reply = queue.pop(0) if queue else default
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def execute(self, host: str, script: str, secrets: Sequence[str] = ()) -> RemoteResult:
        self.calls.append((host, script, tuple(secrets)))
        text = self._next(self.text_replies, "")
        return RemoteResult(host=host, success=True, output=[text] if text else [])

    async def run(self, host: str, script: str, secrets: Sequence[str] = ()) -> RemoteResult:
        return await self.execute(host, script, secrets)

    async def run_json(self, host: str, script: str, secrets: Sequence[str] = ()) -> Any:
        self.calls.append((host, script, tuple(secrets)))
        return self._next(self.json_replies, None)

    async def wait_until_reachable(self, host: str, attempts: Optional[int] = None, delay: Optional[float] = None) -> bool:
        self.reachability_checks.append(host)
        return self.reachable


def remote_failure(message: str = "boom", host: str = "20.0.0.1") -> RemoteExecutionError:
    return RemoteExecutionError(f"{host}: {message}", host=host, errors=[message])


@pytest.fixture
def fake_client():
    return FakeRemoteClient()


@pytest.fixture
def lab_config(tmp_path):
    return LabConfig(admin_password=SecretStr(ADMIN_PASSWORD), config_dir=tmp_path)


@pytest.fixture
def ssh_key_file(tmp_path):
    path = tmp_path / "id_ed25519.pub"
    path.write_text("ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITestKey lab@controller\n", encoding="utf-8")
    return path
