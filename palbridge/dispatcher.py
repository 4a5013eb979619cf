"""Request dispatcher.

Routes Takaro `request` messages to action handlers and sends exactly one
`response` per request, tagged with the request's id, whatever happens:
success, unknown action, bad arguments or a handler that raises.
"""

import logging
from typing import Any, Awaitable, Callable, Mapping

from .actions import Action, Handler
from .context import BridgeMetrics

logger = logging.getLogger(__name__)

Sender = Callable[[dict[str, Any]], Awaitable[bool]]


class RequestDispatcher:
    """Dispatches {requestId, payload: {action, args}} to a handler table."""

    def __init__(
        self,
        handlers: Mapping[Action, Handler],
        send: Sender,
        metrics: BridgeMetrics | None = None,
    ):
        self.handlers = dict(handlers)
        self.send = send
        self.metrics = metrics or BridgeMetrics()

    def resolve(self, action_name: Any) -> Handler | None:
        try:
            return self.handlers.get(Action(action_name))
        except (ValueError, TypeError):
            return None

    async def dispatch(self, message: dict[str, Any]) -> dict[str, Any]:
        """Handle one request message and send its response.

        Returns:
            The response message that was sent.
        """
        request_id = message.get("requestId")
        payload = message.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        action_name = payload.get("action")
        args = payload.get("args")

        self.metrics.record_request()
        if not request_id:
            logger.warning(f"Request for {action_name} has no requestId")
        logger.info(f"Takaro request: {action_name} (ID: {request_id})")

        handler = self.resolve(action_name)
        if handler is None:
            logger.warning(f"Unknown action: {action_name}")
            response_payload: Any = {"error": f"Unknown action: {action_name}"}
        else:
            try:
                response_payload = await handler(args)
            except Exception as e:
                self.metrics.errors += 1
                logger.exception(f"Error handling {action_name}")
                response_payload = {"error": str(e) or type(e).__name__}

        logger.debug(f"Sending response for {action_name}: {response_payload}")
        response = {
            "type": "response",
            "requestId": request_id,
            "payload": response_payload,
        }
        if not await self.send(response):
            logger.warning(f"Response for {action_name} ({request_id}) was not delivered")
        return response
