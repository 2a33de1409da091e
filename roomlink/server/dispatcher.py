"""Relay dispatcher: delivers envelopes to session outbound channels.

The dispatcher is pure routing. The registry decides who receives an
envelope; the dispatcher serializes it once and writes it to each
recipient's channel. Nothing is buffered or retried. Sends that fail are
returned to the caller so the registry can reconcile session state.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Iterable, List

from roomlink.protocol import Envelope

if TYPE_CHECKING:
    from roomlink.server.registry import Session

logger = logging.getLogger(__name__)


class RelayDispatcher:
    """Fan an envelope out to a set of sessions."""

    async def deliver(
        self, envelope: Envelope, recipients: Iterable["Session"]
    ) -> List[str]:
        """Send an envelope to every recipient concurrently.

        Args:
            envelope: Envelope to deliver. Its payload is forwarded unchanged.
            recipients: Sessions to deliver to.

        Returns:
            Session ids whose channel failed to accept the message.
        """
        sessions = list(recipients)
        if not sessions:
            return []

        message = envelope.to_json()
        results = await asyncio.gather(
            *(session.channel.send(message) for session in sessions),
            return_exceptions=True,
        )

        failed = []
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning(
                    f"Failed to deliver {envelope.type} to {session.session_id}: {result}"
                )
                failed.append(session.session_id)
            else:
                logger.debug(
                    f"Delivered {envelope.type} from {envelope.sender_id} "
                    f"to {session.session_id}"
                )
        return failed
