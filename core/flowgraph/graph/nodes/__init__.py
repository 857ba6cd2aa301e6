"""Built-in node types."""

from flowgraph.graph.extension import NodeExtension
from flowgraph.graph.nodes.agent import AgentNode, AgentNodeData
from flowgraph.graph.nodes.memory import MemoryNode, MemoryNodeData, MemoryOperation
from flowgraph.graph.nodes.output import OutputFormat, OutputNode, OutputNodeData
from flowgraph.graph.nodes.parallel import BranchDefinition, ParallelNode, ParallelNodeData
from flowgraph.graph.nodes.router import RouteDefinition, RouterNode, RouterNodeData
from flowgraph.graph.nodes.start import StartNode
from flowgraph.graph.nodes.subflow import SubflowNode, SubflowNodeData
from flowgraph.graph.nodes.tool import ToolNode, ToolNodeData
from flowgraph.graph.nodes.while_loop import WhileLoopNode, WhileLoopNodeData


def builtin_extensions() -> list[NodeExtension]:
    return [
        StartNode(),
        AgentNode(),
        RouterNode(),
        ParallelNode(),
        ToolNode(),
        WhileLoopNode(),
        SubflowNode(),
        OutputNode(),
        MemoryNode(),
    ]


__all__ = [
    "builtin_extensions",
    "StartNode",
    "AgentNode",
    "AgentNodeData",
    "RouterNode",
    "RouterNodeData",
    "RouteDefinition",
    "ParallelNode",
    "ParallelNodeData",
    "BranchDefinition",
    "ToolNode",
    "ToolNodeData",
    "WhileLoopNode",
    "WhileLoopNodeData",
    "SubflowNode",
    "SubflowNodeData",
    "OutputNode",
    "OutputNodeData",
    "OutputFormat",
    "MemoryNode",
    "MemoryNodeData",
    "MemoryOperation",
]
