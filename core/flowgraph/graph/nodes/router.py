"""
Router node - LLM classification onto one of the connected routes.

Routes are the node's outgoing edges (error/rejected handles excluded). The
model picks one through the ``select_route`` tool; a plain-text answer is
matched against route ids and names, and anything unusable falls back to the
first route. The router forwards its input unchanged and adds nothing to the
conversation.
"""

import logging
import re
from dataclasses import dataclass

from pydantic import BaseModel, Field

from flowgraph.graph.executor import notify
from flowgraph.graph.extension import HandleSpec, NodeContext, NodeExtension, NodeResult
from flowgraph.graph.models import ERROR_HANDLE, REJECTED_HANDLE, NodeData, WorkflowEdge, WorkflowNode
from flowgraph.graph.validator import IssueCode, ValidationIssue
from flowgraph.llm.provider import InvokeOptions, Tool

logger = logging.getLogger(__name__)

NON_ROUTE_HANDLES = frozenset({ERROR_HANDLE, REJECTED_HANDLE})


class RouteDefinition(BaseModel):
    id: str
    label: str = ""
    description: str | None = None


class RouterNodeData(NodeData):
    model: str | None = None
    prompt: str | None = None  # extra routing rules
    routes: list[RouteDefinition] = Field(default_factory=list)


@dataclass
class RouteOption:
    handle: str
    target: str
    name: str
    description: str = ""


ROUTER_SYSTEM_PROMPT = """You are a routing classifier. Your task is to select which route best handles the user's message.

## Routes

{routes}
{rules}
## Instructions

- Analyze the user's message.
- Select the most appropriate route based on the descriptions and rules.
- Use the 'select_route' tool to make your decision."""


def route_edges(node_id: str, edges: list[WorkflowEdge]) -> list[WorkflowEdge]:
    return [e for e in edges if e.source == node_id and e.handle not in NON_ROUTE_HANDLES]


class RouterNode(NodeExtension):
    name = "router"
    label = "Router"
    data_model = RouterNodeData
    outputs = (
        HandleSpec("route-1", "Route 1"),
        HandleSpec("route-2", "Route 2"),
        HandleSpec(ERROR_HANDLE, "Error"),
        HandleSpec(REJECTED_HANDLE, "Rejected"),
    )

    def validate(self, node: WorkflowNode, edges: list[WorkflowEdge]) -> list[ValidationIssue]:
        _, issues = self.check_data(node)
        if not route_edges(node.id, edges):
            issues.append(
                ValidationIssue.error(
                    IssueCode.MISSING_ROUTES,
                    f"Router \"{node.label}\" must have at least one route connected",
                    node_id=node.id,
                )
            )
        return issues

    def get_dynamic_outputs(self, node: WorkflowNode) -> list[HandleSpec]:
        routes = node.data.get("routes") or []
        if not routes:
            return list(self.outputs)
        handles = [HandleSpec(r["id"], r.get("label") or r["id"]) for r in routes if "id" in r]
        return handles + [HandleSpec(ERROR_HANDLE, "Error"), HandleSpec(REJECTED_HANDLE, "Rejected")]

    async def execute(self, ctx: NodeContext) -> NodeResult:
        data: RouterNodeData = ctx.data  # type: ignore[assignment]
        services = ctx.services
        options = self._route_options(ctx, data)
        if not options:
            raise ValueError(f"Router \"{ctx.node.label}\" has no routes defined")

        route_text = "\n\n".join(self._describe(o) for o in options)
        rules = f"\n## Routing Rules\n\n{data.prompt}\n" if data.prompt else ""
        system_prompt = ROUTER_SYSTEM_PROMPT.format(routes=route_text, rules=rules)
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": ctx.input},
        ]
        model = data.model or services.default_model
        await services.compact_if_needed(messages, model)
        select_route = Tool(
            name="select_route",
            description="Selects the appropriate route for the user input",
            parameters={
                "type": "object",
                "properties": {
                    "route_id": {
                        "type": "string",
                        "description": "The ID of the selected route",
                        "enum": [o.handle for o in options],
                    },
                    "reasoning": {
                        "type": "string",
                        "description": "Brief explanation for why this route was selected",
                    },
                },
                "required": ["route_id", "reasoning"],
            },
        )

        response = await services.invoke(
            messages,
            model,
            InvokeOptions(
                temperature=0,
                max_tokens=100,
                tools=[select_route],
                tool_choice={"type": "function", "function": {"name": "select_route"}},
            ),
        )

        selected, reasoning = self._pick(options, response.tool_calls, response.content)
        fallback_used = selected is None
        if selected is None:
            selected = options[0]
            logger.warning(f"⚠ {ctx.node.label}: no valid route selected, falling back to '{selected.name}'")

        logger.info(f"   → Routed to {selected.name}")
        await notify(services.options.callbacks.on_route_selected, ctx.node_id, selected.handle)
        return NodeResult(
            output=ctx.input,
            next_handles=[selected.handle],
            message_role=None,
            metadata={
                "selected_route": selected.handle,
                "selected_node_id": selected.target,
                "selected_name": selected.name,
                "reasoning": reasoning,
                "fallback_used": fallback_used,
            },
        )

    @staticmethod
    def _describe(option: RouteOption) -> str:
        text = f'Route ID: "{option.handle}"\nName: "{option.name}"'
        if option.description:
            text += f"\nDescription: {option.description}"
        return text

    @staticmethod
    def _route_options(ctx: NodeContext, data: RouterNodeData) -> list[RouteOption]:
        definitions = {r.id: r for r in data.routes}
        options: list[RouteOption] = []
        seen: set[str] = set()
        for edge in route_edges(ctx.node_id, ctx.services.graph.edges):
            if edge.handle in seen:
                continue
            seen.add(edge.handle)
            target = ctx.services.get_node(edge.target)
            definition = definitions.get(edge.handle)
            name = (
                (definition.label if definition else "")
                or (target.label if target else "")
                or edge.label
                or edge.handle
            )
            description = (definition.description if definition else None) or (
                target.data.get("description") if target else None
            )
            options.append(RouteOption(edge.handle, edge.target, name, description or ""))
        return options

    @staticmethod
    def _pick(options: list[RouteOption], tool_calls: list, content: str) -> tuple[RouteOption | None, str]:
        by_handle = {o.handle: o for o in options}
        for call in tool_calls:
            if call.name != "select_route":
                continue
            chosen = by_handle.get(str(call.input.get("route_id", "")))
            if chosen is not None:
                return chosen, str(call.input.get("reasoning", ""))

        text = (content or "").strip()
        if not text:
            return None, ""
        lowered = text.lower()
        for option in options:
            if option.handle.lower() == lowered or option.name.lower() == lowered:
                return option, ""
        for option in options:
            if option.handle.lower() in lowered or option.name.lower() in lowered:
                return option, ""
        match = re.search(r"\d+", text)
        if match:
            index = int(match.group()) - 1
            if 0 <= index < len(options):
                return options[index], ""
        return None, ""
