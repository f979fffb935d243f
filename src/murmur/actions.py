"""Default action execution for generated responses.

A response names zero or more actions. Delivery of the reply text goes
through a callback supplied by the platform adapter; participation actions
change how the agent treats the room from then on.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from murmur.logging import get_logger
from murmur.models import ParticipantState

if TYPE_CHECKING:
    from murmur.models import Memory
    from murmur.orchestrator import DeliveryCallback
    from murmur.store import DatabaseAdapter

log = get_logger("actions")

REPLY = "REPLY"
NONE = "NONE"
IGNORE = "IGNORE"
FOLLOW_ROOM = "FOLLOW_ROOM"
UNFOLLOW_ROOM = "UNFOLLOW_ROOM"
MUTE_ROOM = "MUTE_ROOM"
UNMUTE_ROOM = "UNMUTE_ROOM"

# Participation actions and the state they leave the room in
PARTICIPATION_STATES: dict[str, ParticipantState] = {
    FOLLOW_ROOM: ParticipantState.FOLLOWED,
    UNFOLLOW_ROOM: ParticipantState.NONE,
    MUTE_ROOM: ParticipantState.MUTED,
    UNMUTE_ROOM: ParticipantState.NONE,
}


class DefaultActionExecutor:
    """Delivers replies and applies participation changes."""

    action_names: list[str] = [
        REPLY,
        NONE,
        IGNORE,
        FOLLOW_ROOM,
        UNFOLLOW_ROOM,
        MUTE_ROOM,
        UNMUTE_ROOM,
    ]

    def __init__(self, db: DatabaseAdapter, agent_id: str) -> None:
        self.db = db
        self.agent_id = agent_id

    async def process_actions(
        self,
        message: Memory,
        responses: list[Memory],
        state: dict[str, Any],
        callback: DeliveryCallback | None,
    ) -> None:
        """Run the actions of each response.

        Args:
            message: The inbound message being answered.
            responses: Response messages produced for it.
            state: Composed state (unused by the default actions).
            callback: Sends content back to the platform. Without one,
                replies are only logged.
        """
        for response in responses:
            actions = [a.strip().upper() for a in response.content.actions]
            unknown = [a for a in actions if a not in self.action_names]
            if unknown:
                log.warning("unknown_actions", message_id=message.id, actions=unknown)

            for action in actions:
                target = PARTICIPATION_STATES.get(action)
                if target is not None:
                    await self.db.set_participant_state(message.room_id, self.agent_id, target)

            if IGNORE in actions or not response.content.text:
                log.debug("reply_suppressed", message_id=message.id, actions=actions)
                continue

            if callback is None:
                log.info("reply_without_callback", room_id=message.room_id, response_id=response.id)
                continue

            await callback(response.content)
            log.info(
                "reply_delivered",
                room_id=message.room_id,
                response_id=response.id,
                in_reply_to=message.id,
            )
