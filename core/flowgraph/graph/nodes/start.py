"""Start node: the entry point of every run."""

from flowgraph.graph.extension import HandleSpec, NodeContext, NodeExtension, NodeResult
from flowgraph.graph.models import DEFAULT_HANDLE


class StartNode(NodeExtension):
    """Passes the run input through and records it as the user turn."""

    name = "start"
    label = "Start"
    outputs = (HandleSpec(DEFAULT_HANDLE, "Output"),)

    async def execute(self, ctx: NodeContext) -> NodeResult:
        # A nested start sharing the caller's session already sees this turn
        if ctx.input == ctx.services.conversation.last_content():
            return NodeResult(output=ctx.input, message_role=None)
        return NodeResult(output=ctx.input, message_role="user")
