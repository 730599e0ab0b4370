from pydantic import BaseModel, Field

from kgagent.session import Session


class AgentState(BaseModel):
    """Conversation state owned by the orchestrator.

    Holds the conversation store plus the working-task flag.  The flag
    is raised when a user request starts and lowered when the model
    stops asking for tools, or when something tells the agent to stand
    down.  While it is lowered, finished tool results are not sent back
    to the model.

    Example:
        state = AgentState()
        state.is_working_on_task = True
    """

    session: Session = Field(default_factory=Session)
    is_working_on_task: bool = False

    @property
    def conversation_id(self) -> str:
        return self.session.session_id
