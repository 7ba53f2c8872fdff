"""External collaborator interfaces used by the step handlers."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx


@dataclass
class AgentInfo:
    """An agent known to the agent gateway."""

    id: str
    name: str = ""
    capabilities: List[str] = field(default_factory=list)
    active: bool = True


class AgentGateway(ABC):
    """
    Agent discovery and dispatch.

    Delivery is at-most-once; the engine does not retry at this level
    (step-level retry covers it).
    """

    @abstractmethod
    async def find_agents(self, capability: str) -> List[AgentInfo]:
        """Agents advertising a capability."""
        pass

    @abstractmethod
    async def send(
        self,
        agent_id: str,
        action: str,
        parameters: Dict[str, Any],
        execution_id: str,
        step_id: str,
    ) -> Dict[str, Any]:
        """
        Send an action request to an agent.

        Returns:
            Acknowledgement payload (at least a message id)
        """
        pass


class NotificationSender(ABC):
    """Notification delivery (email, Slack, Teams, webhook)."""

    @abstractmethod
    async def send(
        self,
        channel: str,
        recipients: List[str],
        subject: Optional[str],
        message: str,
    ) -> Dict[str, Any]:
        """Deliver a message. Raises on delivery failure."""
        pass


class ApiClient(ABC):
    """HTTP calls issued by ``api_call`` steps."""

    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
        timeout_seconds: float,
    ) -> Dict[str, Any]:
        """Perform a request and return ``{status_code, body, ...}``."""
        pass


class QueryRunner(ABC):
    """Database access for ``database_query`` steps."""

    @abstractmethod
    async def run(
        self,
        query: str,
        parameters: Dict[str, Any],
        database: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run a query and return its result."""
        pass


class FileOperator(ABC):
    """Filesystem access for ``file_operation`` steps."""

    @abstractmethod
    async def perform(
        self,
        operation: str,
        path: str,
        content: Optional[str] = None,
        destination: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Perform a read, write, delete or move."""
        pass


class HealthProbe(ABC):
    """Service and URL health lookups for dependency safety checks."""

    @abstractmethod
    async def service_healthy(self, service: str) -> bool:
        pass

    @abstractmethod
    async def url_healthy(self, url: str, timeout_seconds: float) -> bool:
        pass


class HttpxApiClient(ApiClient):
    """
    Default ApiClient backed by ``httpx.AsyncClient``.

    Non-2xx responses raise, so the step fails and its retry policy applies.
    """

    def __init__(self, default_timeout: float = 30.0, follow_redirects: bool = True) -> None:
        self.default_timeout = default_timeout
        self.follow_redirects = follow_redirects

    async def request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
        timeout_seconds: float,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"headers": headers}
        if body is not None:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        t0 = time.time()
        async with httpx.AsyncClient(
            timeout=timeout_seconds or self.default_timeout,
            follow_redirects=self.follow_redirects,
        ) as client:
            response = await client.request(method, url, **kwargs)
        response.raise_for_status()

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text

        return {
            "status_code": response.status_code,
            "body": payload,
            "latency_ms": int((time.time() - t0) * 1000),
        }


class HttpxHealthProbe(HealthProbe):
    """
    Health probe that GETs URLs with ``httpx`` and reads service health from
    a static map (services default to healthy).
    """

    def __init__(self, service_health: Optional[Dict[str, bool]] = None) -> None:
        self.service_health = dict(service_health or {})

    async def service_healthy(self, service: str) -> bool:
        return self.service_health.get(service, True)

    async def url_healthy(self, url: str, timeout_seconds: float) -> bool:
        try:
            async with httpx.AsyncClient(
                timeout=timeout_seconds, follow_redirects=True
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError:
            return False
        return 200 <= response.status_code < 400


@dataclass
class EnginePorts:
    """
    The set of external collaborators handed to the engine.

    Any port left as None makes steps that need it fail with
    ``PortNotConfiguredError``.
    """

    agents: Optional[AgentGateway] = None
    notifications: Optional[NotificationSender] = None
    api: Optional[ApiClient] = None
    queries: Optional[QueryRunner] = None
    files: Optional[FileOperator] = None
    health: Optional[HealthProbe] = None

    @classmethod
    def with_defaults(cls, http_timeout_seconds: float = 30.0, **ports: Any) -> "EnginePorts":
        """Ports with the httpx-backed API client and health probe filled in."""
        ports.setdefault("api", HttpxApiClient(default_timeout=http_timeout_seconds))
        ports.setdefault("health", HttpxHealthProbe())
        return cls(**ports)
