"""
Schema and generated-API collaborator.
Schema generation and the generated APIs themselves live outside the control plane;
the control plane only admits, meters and logs the calls made to them.
"""
import abc
from typing import Any, Dict, Optional

from backlify.errors import ServiceUnavailable


class SchemaBackend(abc.ABC):
    """Interface to the service that generates schemas and serves generated APIs"""

    @abc.abstractmethod
    async def generate_schema(self, principal: str, body: Any) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def modify_schema(self, principal: str, body: Any) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def create_api(self, principal: str, body: Any) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def handle_api_request(
        self,
        principal: str,
        api_id: str,
        method: str,
        path: str,
        body: Any,
        query: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        ...


class UnavailableSchemaBackend(SchemaBackend):
    """Default backend used when no schema service is wired in"""

    async def _unavailable(self) -> Dict[str, Any]:
        raise ServiceUnavailable("Schema service is not configured")

    async def generate_schema(self, principal, body):
        return await self._unavailable()

    async def modify_schema(self, principal, body):
        return await self._unavailable()

    async def create_api(self, principal, body):
        return await self._unavailable()

    async def handle_api_request(self, principal, api_id, method, path, body, query=None):
        return await self._unavailable()
