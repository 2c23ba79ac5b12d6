"""Assistant configuration resolved lazily by name."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from llm_threads.config import ClientConfig
from llm_threads.transport import Transport

logger = logging.getLogger(__name__)


class Assistant:
    """A named assistant on the remote service.

    ``get_id()`` reuses an existing assistant with the same name, otherwise
    creates one from ``params`` (model defaults to ``config.default_model``).
    Lookup and creation happen at most once per instance.
    """

    def __init__(
        self,
        name: str,
        transport: Transport,
        *,
        params: Mapping[str, Any] | None = None,
        id: str | None = None,
        config: ClientConfig | None = None,
    ) -> None:
        self.name = name
        self.id = id
        self.description: str | None = (params or {}).get("description")
        self._transport = transport
        self._params = dict(params or {})
        self._config = config or ClientConfig.from_env()
        self._remote: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Assistant(name={self.name!r}, id={self.id!r})"

    async def get_id(self) -> str:
        if self.id is not None:
            return self.id
        async with self._lock:
            if self.id is not None:
                return self.id
            existing = [a for a in await self._transport.list_assistants() if a.get("name") == self.name]
            if existing:
                self._remote = existing[0]
                logger.debug("Reusing assistant %r (%s)", self.name, self._remote["id"])
            else:
                params = {"name": self.name, "model": self._config.default_model, **self._params}
                self._remote = await self._transport.create_assistant(params)
                logger.info("Created assistant %r (%s)", self.name, self._remote["id"])
            self.id = str(self._remote["id"])
            return self.id

    async def get_assistant(self) -> dict[str, Any]:
        """The remote assistant record. An id given up front is not looked up."""
        await self.get_id()
        return self._remote or {"id": self.id, "name": self.name, "description": self.description}
