"""
While-loop node - repeats its ``body`` subgraph until a condition says done.

The body always runs at least once. Each pass walks from the ``body`` edge
until control returns to the loop node (or the walk dead-ends); that pass's
output feeds the next pass. After each pass either a custom evaluator from
``ExecutionOptions.custom_evaluators`` or a small model call decides whether
to continue. The loop leaves through the ``done`` handle with the last output.
"""

import inspect
import logging
from typing import Literal

from pydantic import Field

from flowgraph.graph.errors import NodeExecutionError
from flowgraph.graph.executor import LoopState
from flowgraph.graph.extension import HandleSpec, NodeContext, NodeExtension, NodeResult
from flowgraph.graph.models import NodeData, WorkflowEdge, WorkflowNode
from flowgraph.graph.validator import IssueCode, ValidationIssue
from flowgraph.llm.provider import InvokeOptions

logger = logging.getLogger(__name__)

BODY_HANDLE = "body"
DONE_HANDLE = "done"

DEFAULT_CONDITION_PROMPT = (
    "Based on the current output, should we continue iterating to improve the result? "
    'Respond with only "continue" or "done".'
)
LOOP_CONTROLLER_PROMPT = 'You are a loop controller. Respond with only "continue" or "done".'


class WhileLoopNodeData(NodeData):
    condition_prompt: str = DEFAULT_CONDITION_PROMPT
    condition_model: str | None = None
    max_iterations: int = Field(default=10, gt=0)
    on_max_iterations: Literal["warning", "error"] = "warning"
    custom_evaluator: str | None = None


class WhileLoopNode(NodeExtension):
    name = "while_loop"
    label = "While Loop"
    data_model = WhileLoopNodeData
    outputs = (HandleSpec(BODY_HANDLE, "Loop Body"), HandleSpec(DONE_HANDLE, "Exit"))
    allows_self_loop = True

    def validate(self, node: WorkflowNode, edges: list[WorkflowEdge]) -> list[ValidationIssue]:
        _, issues = self.check_data(node)
        outgoing = {e.handle for e in edges if e.source == node.id}
        if BODY_HANDLE not in outgoing:
            issues.append(
                ValidationIssue.error(
                    IssueCode.UNCONNECTED_HANDLE,
                    f"Loop body of \"{node.label}\" is not connected",
                    node_id=node.id,
                )
            )
        if DONE_HANDLE not in outgoing:
            issues.append(
                ValidationIssue.warning(
                    IssueCode.UNCONNECTED_HANDLE,
                    f"Loop exit of \"{node.label}\" is not connected",
                    node_id=node.id,
                )
            )
        return issues

    async def execute(self, ctx: NodeContext) -> NodeResult:
        data: WhileLoopNodeData = ctx.data  # type: ignore[assignment]
        services = ctx.services
        body_edges = services.get_outgoing_edges(BODY_HANDLE)
        if not body_edges:
            raise NodeExecutionError(f"Loop body of \"{ctx.node.label}\" is not connected", ctx.node_id)
        body_start = body_edges[0].target

        current = ctx.input
        outputs: list[str] = []
        iteration = 0
        finished = False
        while iteration < data.max_iterations:
            if iteration > 0 and not await self._should_continue(ctx, data, iteration, outputs, current):
                finished = True
                break
            services.check_cancelled()
            logger.info(f"   ↻ {ctx.node.label}: iteration {iteration + 1}/{data.max_iterations}")
            current = await services.execute_subgraph(body_start, current, stop_at={ctx.node_id})
            outputs.append(current)
            iteration += 1

        if not finished and iteration >= data.max_iterations:
            if data.on_max_iterations == "error":
                raise NodeExecutionError(
                    f"While loop reached max iterations ({data.max_iterations})", ctx.node_id
                )
            logger.warning(f"⚠ {ctx.node.label} reached max iterations ({data.max_iterations})")

        return NodeResult(
            output=current,
            next_handles=[DONE_HANDLE],
            message_role=None,
            metadata={"iterations": iteration, "max_iterations_reached": not finished},
        )

    async def _should_continue(
        self,
        ctx: NodeContext,
        data: WhileLoopNodeData,
        iteration: int,
        outputs: list[str],
        current: str,
    ) -> bool:
        services = ctx.services
        if data.custom_evaluator:
            evaluator = services.options.custom_evaluators.get(data.custom_evaluator)
            if evaluator is None:
                raise NodeExecutionError(
                    f"Custom evaluator '{data.custom_evaluator}' is not registered", ctx.node_id
                )
            state = LoopState(
                node_id=ctx.node_id,
                iteration=iteration,
                outputs=list(outputs),
                last_output=outputs[-1] if outputs else None,
                input=current,
            )
            decision = evaluator(state)
            if inspect.isawaitable(decision):
                decision = await decision
            return bool(decision)

        previous = f"\nPrevious outputs: {len(outputs)} iterations" if len(outputs) > 1 else ""
        prompt = (
            f"{data.condition_prompt}\n\n"
            f"Current iteration: {iteration}\n"
            f"Last output: {current}{previous}\n\n"
            'Respond with only "continue" or "done".'
        )
        messages = [
            {"role": "system", "content": LOOP_CONTROLLER_PROMPT},
            {"role": "user", "content": prompt},
        ]
        model = data.condition_model or services.default_model
        await services.compact_if_needed(messages, model)
        response = await services.invoke(
            messages,
            model,
            InvokeOptions(temperature=0, max_tokens=10),
        )
        return "continue" in response.content.strip().lower()
