"""Pydantic v2 schemas for API request validation.

Bodies use the camelCase keys producing agents already send.
"""

from pydantic import BaseModel, ConfigDict, Field


class ScheduleMessageRequest(BaseModel):
    """Body of POST /schedule-message.

    Required fields are optional here so the route can answer 400 with the
    list of required fields instead of a generic validation error.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(default=None, alias="userId")
    agent_id: str | None = Field(default=None, alias="agentId")
    message_data: dict | None = Field(default=None, alias="messageData")
    priority: str = "medium"
    can_delay: bool = Field(default=True, alias="canDelay")
    final_message: str | None = Field(default=None, alias="finalMessage")
    conversation_id: str | None = Field(default=None, alias="conversationId")
    sequence_id: str | None = Field(default=None, alias="sequenceId")
    sequence_position: int | None = Field(default=None, alias="sequencePosition")
    sequence_total: int | None = Field(default=None, alias="sequenceTotal")
    requires_fresh_context: bool = Field(default=False, alias="requiresFreshContext")

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.user_id:
            missing.append("userId")
        if not self.agent_id:
            missing.append("agentId")
        if not self.message_data:
            missing.append("messageData")
        return missing


class SupersedeRequest(BaseModel):
    reason: str = "superseded"
