"""Per-conversation autopilot for autonomous tool loops.

Drives the cycle: model response -> tool execution -> re-send. Each
conversation moves through ``idle -> armed -> sending`` (or ``paused``
while a tool result awaits a human), and the state guard absorbs signals
that arrive early or twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from parley.api.models import Conversation
from parley.config import AutopilotSettings

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 100


class AutopilotState(StrEnum):
    IDLE = "idle"
    ARMED = "armed"
    SENDING = "sending"
    PAUSED = "paused"


@dataclass
class AutopilotSession:
    state: AutopilotState = AutopilotState.IDLE
    iteration_count: int = 0


def is_enabled(config: AutopilotSettings | None, override: bool | None = None) -> bool:
    """Whether autopilot runs. A per-conversation override beats configuration.

    A missing autopilot group means off; a present group defaults to on.
    """
    if override is not None:
        return override
    if config is None:
        return False
    return config.enabled


class Autopilot:
    """Autopilot sessions keyed by conversation id.

    Sessions are created on first use and live until ``cleanup``.
    """

    def __init__(self, config: AutopilotSettings | None) -> None:
        self._config = config
        self._sessions: dict[str, AutopilotSession] = {}

    @property
    def max_turns(self) -> int:
        return self._config.max_turns if self._config else DEFAULT_MAX_TURNS

    def enabled(self, conversation: Conversation) -> bool:
        return is_enabled(self._config, conversation.autopilot)

    def _session(self, conversation_id: str) -> AutopilotSession:
        if conversation_id not in self._sessions:
            self._sessions[conversation_id] = AutopilotSession()
        return self._sessions[conversation_id]

    def get_state(self, conversation_id: str) -> AutopilotState:
        return self._session(conversation_id).state

    def iteration_count(self, conversation_id: str) -> int:
        return self._session(conversation_id).iteration_count

    def arm(self, conversation_id: str) -> AutopilotState:
        session = self._session(conversation_id)
        session.state = AutopilotState.ARMED
        logger.debug("autopilot: armed %s", conversation_id)
        return session.state

    def disarm(self, conversation_id: str) -> AutopilotState:
        """Back to idle with a fresh turn count (cancel, error, user abort)."""
        session = self._session(conversation_id)
        session.state = AutopilotState.IDLE
        session.iteration_count = 0
        logger.debug("autopilot: disarmed %s", conversation_id)
        return session.state

    def on_response_complete(
        self, conversation_id: str, conversation: Conversation
    ) -> AutopilotState:
        """Arm if the latest assistant turn asked for tools."""
        session = self._session(conversation_id)
        if not self.enabled(conversation):
            return session.state

        last = conversation.last_assistant_turn()
        if last is None or not last.tool_uses():
            session.state = AutopilotState.IDLE
            logger.debug("autopilot: no tool calls in %s, idle", conversation_id)
            return session.state

        session.iteration_count += 1
        if session.iteration_count > self.max_turns:
            session.state = AutopilotState.IDLE
            logger.warning(
                "autopilot: %s exceeded max_turns=%d, stopping", conversation_id, self.max_turns
            )
            return session.state

        session.state = AutopilotState.ARMED
        logger.debug(
            "autopilot: armed %s (iteration %d)", conversation_id, session.iteration_count
        )
        return session.state

    def on_tools_complete(
        self, conversation_id: str, conversation: Conversation
    ) -> AutopilotState:
        """Decide whether to re-send once tool execution reports back."""
        session = self._session(conversation_id)
        if session.state != AutopilotState.ARMED:
            logger.debug(
                "autopilot: on_tools_complete ignored for %s (state=%s)",
                conversation_id,
                session.state,
            )
            return session.state

        unresolved = conversation.unresolved_tool_calls()
        if unresolved:
            logger.debug(
                "autopilot: %d tool calls still running in %s", len(unresolved), conversation_id
            )
            return session.state

        awaiting = conversation.awaiting_tool_calls()
        if awaiting:
            session.state = AutopilotState.PAUSED
            logger.debug(
                "autopilot: %d results await approval in %s, pausing",
                len(awaiting),
                conversation_id,
            )
            return session.state

        # Denied calls carry an error result and count as resolved
        ledger = conversation.tool_ledger()
        if ledger and all(e.result and e.result.is_error for e in ledger):
            logger.info("autopilot: every tool call in %s failed or was denied", conversation_id)

        session.state = AutopilotState.SENDING
        logger.debug("autopilot: all tools resolved in %s, sending", conversation_id)
        return session.state

    def cleanup(self, conversation_id: str) -> None:
        self._sessions.pop(conversation_id, None)
