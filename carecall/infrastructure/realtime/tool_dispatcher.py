"""
Tool Dispatcher
Executes realtime-model function calls against the internal tool endpoints

Each call session owns one dispatcher. Requests go through a FIFO queue
drained by a single worker task, so results reach the model in the order
the calls were requested.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from carecall.infrastructure.realtime.tool_definitions import TOOL_NAMES

logger = logging.getLogger(__name__)

ResultCallback = Callable[[str, str, Dict[str, Any]], Awaitable[None]]

TOOL_FAILED = {"error": "Tool execution failed"}


class ToolDispatcher:
    """
    Bounded-timeout POSTs to `{base_url}/tools/{name}` authenticated with
    the shared `X-Webhook-Secret` header.
    """

    def __init__(
        self,
        base_url: str,
        webhook_secret: Optional[str],
        call_session_id: str,
        line_id: str,
        timeout: float = 10.0,
        transport_retries: int = 2,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.call_session_id = call_session_id
        self.line_id = line_id

        headers = {"Content-Type": "application/json"}
        if webhook_secret:
            headers["X-Webhook-Secret"] = webhook_secret

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=httpx.AsyncHTTPTransport(retries=transport_retries),
        )
        self._headers = headers

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._on_result: Optional[ResultCallback] = None
        self._closed = False

    # ========== Queue ==========

    def start(self, on_result: ResultCallback) -> None:
        """Start the worker; `on_result(call_id, name, result)` receives each result in order."""
        self._on_result = on_result
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())

    async def submit(self, call_id: str, name: str, arguments: str) -> None:
        if self._closed:
            logger.debug(f"Dropping tool call {name} after close")
            return
        await self._queue.put((call_id, name, arguments))

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                break
            call_id, name, arguments = item
            result = await self.execute(name, arguments)
            if self._on_result is not None and not self._closed:
                try:
                    await self._on_result(call_id, name, result)
                except Exception as e:
                    logger.error(f"Failed to deliver result of {name}: {e}", exc_info=True)

    # ========== Execution ==========

    async def execute(self, name: str, arguments: Any) -> Dict[str, Any]:
        """
        Run one tool call.

        Never raises: unknown tools and transport failures come back as
        `{"error": ...}` results the model can talk about.
        """
        if name not in TOOL_NAMES:
            logger.warning(f"Unknown tool requested: {name}", extra={"call_session_id": self.call_session_id})
            return {"error": f"Unknown tool: {name}"}

        if isinstance(arguments, str):
            try:
                args = json.loads(arguments) if arguments else {}
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON arguments for {name}")
                return {"error": "Invalid tool arguments"}
        else:
            args = dict(arguments or {})

        body = {
            **args,
            "callSessionId": self.call_session_id,
            "lineId": self.line_id,
        }

        try:
            response = await self._client.post(
                f"{self.base_url}/tools/{name}",
                json=body,
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            logger.error(
                f"Tool {name} request failed: {e}",
                extra={"call_session_id": self.call_session_id, "tool": name}
            )
            return dict(TOOL_FAILED)

        try:
            payload = response.json()
        except ValueError:
            payload = {"message": response.text}

        if response.status_code >= 400:
            logger.error(
                f"Tool {name} returned {response.status_code}",
                extra={"call_session_id": self.call_session_id, "tool": name}
            )
            if isinstance(payload, dict) and payload.get("error"):
                return payload
            return dict(TOOL_FAILED)

        logger.info(f"Tool {name} executed", extra={"call_session_id": self.call_session_id, "tool": name})
        return payload if isinstance(payload, dict) else {"result": payload}

    async def close(self) -> None:
        """Stop the worker, dropping queued calls, and close the HTTP client."""
        if self._closed:
            return
        self._closed = True

        while not self._queue.empty():
            self._queue.get_nowait()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        if self._owns_client:
            await self._client.aclose()
