"""Shared fakes and fixtures for the remediation test suite."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from remediation.handlers import (
    AgentGateway,
    AgentInfo,
    ApiClient,
    EnginePorts,
    FileOperator,
    HealthProbe,
    NotificationSender,
    QueryRunner,
)
from remediation.playbooks import EngineSettings, PlaybookEngine


@pytest.fixture(autouse=True)
def reset_package_logging():
    """Remove handlers the command line entry points install on the package logger."""
    yield
    logger = logging.getLogger("remediation")
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


class FakeAgentGateway(AgentGateway):
    """
    In-memory agent gateway.

    ``failures`` maps an action to the number of times it fails before
    succeeding (-1 fails forever). ``delays`` maps an action to seconds to
    sleep before acknowledging.
    """

    def __init__(
        self,
        agents: Optional[List[AgentInfo]] = None,
        failures: Optional[Dict[str, int]] = None,
        delays: Optional[Dict[str, float]] = None,
    ) -> None:
        self.agents = agents or [
            AgentInfo(
                id="agent-db",
                name="Database agent",
                capabilities=["database_monitoring", "database_admin"],
            ),
            AgentInfo(id="agent-web", name="Web agent", capabilities=["web_admin"]),
        ]
        self.failures = dict(failures or {})
        self.delays = dict(delays or {})
        self.sent: List[Dict[str, Any]] = []
        self.completed: List[str] = []
        self.active = 0
        self.max_active = 0

    async def find_agents(self, capability: str) -> List[AgentInfo]:
        return [a for a in self.agents if capability in a.capabilities]

    async def send(
        self,
        agent_id: str,
        action: str,
        parameters: Dict[str, Any],
        execution_id: str,
        step_id: str,
    ) -> Dict[str, Any]:
        self.sent.append(
            {
                "agent_id": agent_id,
                "action": action,
                "parameters": parameters,
                "execution_id": execution_id,
                "step_id": step_id,
            }
        )
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(action)
            if delay:
                await asyncio.sleep(delay)

            remaining = self.failures.get(action, 0)
            if remaining:
                if remaining > 0:
                    self.failures[action] = remaining - 1
                raise RuntimeError(f"agent rejected '{action}'")
        finally:
            self.active -= 1

        self.completed.append(step_id)
        return {"message_id": f"msg-{len(self.sent)}", "status": "accepted"}

    @property
    def actions(self) -> List[str]:
        return [message["action"] for message in self.sent]

    @property
    def step_ids(self) -> List[str]:
        return [message["step_id"] for message in self.sent]


class FakeNotificationSender(NotificationSender):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []

    async def send(
        self,
        channel: str,
        recipients: List[str],
        subject: Optional[str],
        message: str,
    ) -> Dict[str, Any]:
        if self.fail:
            raise ConnectionError("SMTP unavailable")
        self.sent.append(
            {"channel": channel, "recipients": recipients, "subject": subject, "message": message}
        )
        return {"sent_at": "2026-01-01T00:00:00+00:00"}


class FakeApiClient(ApiClient):
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: List[Dict[str, Any]] = []

    async def request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
        timeout_seconds: float,
    ) -> Dict[str, Any]:
        self.requests.append(
            {"method": method, "url": url, "headers": headers, "body": body, "timeout": timeout_seconds}
        )
        return {"status_code": self.status_code, "body": {"ok": True}}


class FakeQueryRunner(QueryRunner):
    def __init__(self) -> None:
        self.queries: List[Dict[str, Any]] = []

    async def run(
        self, query: str, parameters: Dict[str, Any], database: Optional[str] = None
    ) -> Dict[str, Any]:
        self.queries.append({"query": query, "parameters": parameters, "database": database})
        return {"rows": [{"active_connections": 12}], "row_count": 1}


class FakeFileOperator(FileOperator):
    def __init__(self) -> None:
        self.operations: List[Dict[str, Any]] = []

    async def perform(
        self,
        operation: str,
        path: str,
        content: Optional[str] = None,
        destination: Optional[str] = None,
    ) -> Dict[str, Any]:
        self.operations.append(
            {"operation": operation, "path": path, "content": content, "destination": destination}
        )
        return {"operation": operation, "path": path}


class FakeHealthProbe(HealthProbe):
    def __init__(
        self,
        services: Optional[Dict[str, bool]] = None,
        urls: Optional[Dict[str, bool]] = None,
    ) -> None:
        self.services = dict(services or {})
        self.urls = dict(urls or {})
        self.url_calls: List[Dict[str, Any]] = []

    async def service_healthy(self, service: str) -> bool:
        return self.services.get(service, True)

    async def url_healthy(self, url: str, timeout_seconds: float) -> bool:
        self.url_calls.append({"url": url, "timeout": timeout_seconds})
        return self.urls.get(url, True)


@pytest.fixture
def agents() -> FakeAgentGateway:
    return FakeAgentGateway()


@pytest.fixture
def notifications() -> FakeNotificationSender:
    return FakeNotificationSender()


@pytest.fixture
def ports(agents: FakeAgentGateway, notifications: FakeNotificationSender) -> EnginePorts:
    return EnginePorts(
        agents=agents,
        notifications=notifications,
        api=FakeApiClient(),
        queries=FakeQueryRunner(),
        files=FakeFileOperator(),
        health=FakeHealthProbe(),
    )


@pytest.fixture
def sleeps() -> List[float]:
    """Retry delays requested by the executor."""
    return []


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(_env_file=None, default_approval_timeout_minutes=30)


@pytest_asyncio.fixture
async def engine(ports: EnginePorts, settings: EngineSettings, sleeps: List[float]):
    """Engine wired to fake ports; retry delays are recorded, not slept."""

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    engine = PlaybookEngine(ports=ports, settings=settings, sleep=fake_sleep)
    yield engine
    await engine.shutdown()
