"""
Best-effort corrective command dispatch.

Sends a restart instruction for a stagnant node through the relay.
Failures are logged and returned, never raised, so the caller can surface
them on the event bus.
"""

import logging
from typing import Any, Dict

import aiohttp

from fleetwatch.backend.health.checks import SECRET_HEADER, build_url

logger = logging.getLogger(__name__)

COMMAND_PATH = "/api/command/{node_id}"


class RelayCommandSink:
    """CorrectiveActionSink that POSTs a restart command to the relay."""

    def __init__(self, relay_url: str, secret: str = "", timeout_seconds: float = 10.0,
                 command: str = "restart-service"):
        self.relay_url = relay_url
        self.secret = secret
        self.timeout_seconds = timeout_seconds
        self.command = command

    def _body(self, reason: str) -> Dict[str, Any]:
        return {"command": self.command, "reason": reason}

    async def __call__(self, node_id: str, reason: str) -> bool:
        """Dispatch the command. Returns True when the relay accepted it."""
        if not self.relay_url:
            logger.warning(f"No relay configured; cannot send {self.command} to {node_id}")
            return False

        url = build_url(self.relay_url, COMMAND_PATH.format(node_id=node_id))
        headers = {SECRET_HEADER: self.secret} if self.secret else {}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    json=self._body(reason),
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as response:
                    if response.status >= 400:
                        logger.warning(f"{self.command} for {node_id} rejected: HTTP {response.status}")
                        return False
        except Exception as e:
            logger.warning(f"{self.command} for {node_id} failed: {e}")
            return False

        logger.info(f"{self.command} sent to {node_id} ({reason})")
        return True
