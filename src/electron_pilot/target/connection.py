"""Connection to a running Electron application over the DevTools protocol.

Discovery uses the HTTP endpoint every remote-debugging port exposes
(``/json/list``); evaluation and screenshots use the Chrome DevTools Protocol
over the page's WebSocket. Each call opens its own short-lived socket.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import json
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from electron_pilot.logging import Loggers
from electron_pilot.security.errors import TargetError

logger = Loggers.target()

DEFAULT_PORTS: tuple[int, ...] = (9222, 9223, 9224, 9225)
DEFAULT_HOST = "127.0.0.1"
PROTOCOL_TIMEOUT_SECONDS = 10.0
DISCOVERY_TIMEOUT_SECONDS = 1.0
# Screenshots of large windows exceed the websockets default frame limit
MAX_MESSAGE_BYTES = 64 * 1024 * 1024

NO_TARGET_MESSAGE = (
    "No running Electron application found with remote debugging enabled. "
    "Start your app with: electron . --remote-debugging-port=9222"
)


@dataclass(frozen=True)
class DevToolsTarget:
    """One debuggable page reported by /json/list."""

    id: str
    title: str
    url: str
    websocket_debugger_url: str
    type: str
    port: int

    @classmethod
    def from_json(cls, data: dict[str, Any], port: int) -> "DevToolsTarget":
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            url=str(data.get("url") or ""),
            websocket_debugger_url=str(data.get("webSocketDebuggerUrl") or ""),
            type=str(data.get("type") or ""),
            port=port,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "type": self.type,
            "port": self.port,
        }


@dataclass
class EvaluationResult:
    """Outcome of Runtime.evaluate in the page.

    success is False when the expression threw; error then holds the
    exception text reported by the page.
    """

    success: bool
    value: Any = None
    type: str = "undefined"
    error: str | None = None


@runtime_checkable
class TargetConnection(Protocol):
    """What the controller and screenshot service need from a live target."""

    async def list_targets(self) -> list[DevToolsTarget]: ...

    async def evaluate(self, expression: str) -> EvaluationResult: ...

    async def capture_screenshot(self, window_title: str | None = None) -> bytes: ...


def is_main_target(target: DevToolsTarget) -> bool:
    """True for ordinary page targets (not DevTools windows or workers)."""
    return target.type == "page" and not target.url.startswith("devtools://")


def select_target(
    targets: list[DevToolsTarget], window_title: str | None = None
) -> DevToolsTarget | None:
    """Pick the page to talk to.

    With window_title, the first page whose title contains it (case-insensitive)
    wins. Otherwise the first page target that is not a DevTools window.
    """
    pages = [t for t in targets if is_main_target(t) and t.websocket_debugger_url]
    if window_title:
        wanted = window_title.lower()
        for target in pages:
            if wanted in target.title.lower():
                return target
        return None
    return pages[0] if pages else None


class DevToolsConnection:
    """TargetConnection backed by a local remote-debugging port."""

    def __init__(
        self,
        ports: tuple[int, ...] | list[int] = DEFAULT_PORTS,
        host: str = DEFAULT_HOST,
        timeout: float = PROTOCOL_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.ports = tuple(ports)
        self.host = host
        self.timeout = timeout
        self.transport = transport
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: Any) -> "DevToolsConnection":
        return cls(ports=settings.debugging_ports, host=settings.debugging_host)

    async def list_targets(self) -> list[DevToolsTarget]:
        """Scan the configured ports and return every reported target."""
        targets: list[DevToolsTarget] = []
        async with httpx.AsyncClient(
            timeout=DISCOVERY_TIMEOUT_SECONDS, transport=self.transport
        ) as client:
            for port in self.ports:
                url = f"http://{self.host}:{port}/json/list"
                try:
                    response = await client.get(url)
                    response.raise_for_status()
                    entries = response.json()
                except (httpx.HTTPError, ValueError) as e:
                    logger.debug("debug_port_unavailable", port=port, error=str(e))
                    continue
                if not isinstance(entries, list):
                    logger.warning("unexpected_target_list", port=port, body_type=type(entries).__name__)
                    continue
                targets.extend(
                    DevToolsTarget.from_json(entry, port) for entry in entries if isinstance(entry, dict)
                )

        logger.debug("targets_discovered", count=len(targets))
        return targets

    async def find_target(self, window_title: str | None = None) -> DevToolsTarget:
        """Return the page to talk to.

        Raises:
            TargetError: If no suitable page is found.
        """
        targets = await self.list_targets()
        if not targets:
            raise TargetError(NO_TARGET_MESSAGE)

        target = select_target(targets, window_title)
        if target is None:
            if window_title:
                raise TargetError(f"No window matching title: {window_title}")
            raise TargetError("No suitable target found in Electron application")

        logger.info("target_selected", port=target.port, title=target.title)
        return target

    async def evaluate(self, expression: str) -> EvaluationResult:
        """Evaluate an expression in the main page and return it by value."""
        target = await self.find_target()
        response = await self._call(
            target,
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": False},
        )

        details = response.get("exceptionDetails")
        if details:
            exception = details.get("exception") or {}
            return EvaluationResult(
                success=False,
                error=exception.get("description") or details.get("text", "Evaluation failed"),
            )

        remote = response.get("result", {})
        return EvaluationResult(
            success=True,
            value=remote.get("value"),
            type=remote.get("type", "undefined"),
        )

    async def capture_screenshot(self, window_title: str | None = None) -> bytes:
        """Capture the page as PNG bytes."""
        target = await self.find_target(window_title)
        response = await self._call(target, "Page.captureScreenshot", {"format": "png"})
        try:
            return base64.b64decode(response["data"])
        except (KeyError, ValueError) as e:
            raise TargetError("Malformed screenshot response") from e

    async def _call(
        self, target: DevToolsTarget, method: str, params: dict[str, Any]
    ) -> dict[str, Any]:
        """Send one protocol request and wait for its response.

        Raises:
            TargetError: On connection failure, protocol error, or timeout.
        """
        message_id = next(self._ids)
        try:
            async with asyncio.timeout(self.timeout):
                async with connect(
                    target.websocket_debugger_url, max_size=MAX_MESSAGE_BYTES
                ) as ws:
                    await ws.send(json.dumps({"id": message_id, "method": method, "params": params}))
                    async for raw in ws:
                        response = json.loads(raw)
                        if response.get("id") != message_id:
                            continue
                        if "error" in response:
                            raise TargetError(
                                f"DevTools Protocol error: {response['error'].get('message', 'unknown')}"
                            )
                        return response.get("result", {})
        except TimeoutError as e:
            raise TargetError(f"Command execution timeout ({self.timeout:g}s)") from e
        except (OSError, WebSocketException) as e:
            raise TargetError(f"WebSocket error: {e}") from e
        except ValueError as e:
            raise TargetError(f"Malformed DevTools response: {e}") from e

        raise TargetError("Connection closed before a response arrived")
