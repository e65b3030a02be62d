import re
from typing import Any, AsyncIterator

from evoflow.application.workflow.handlers.base import HandlerContext, NodeHandler
from evoflow.domain.workflow.entities.workflow import ConditionRule, NodeType, WorkflowNode
from evoflow.domain.workflow.exceptions import ConditionEvaluationError
from evoflow.domain.workflow.value_objects.cancellation import CancellationToken
from evoflow.domain.workflow.value_objects.condition import (
    ConditionOperator,
    RuleOutcome,
    combine,
    evaluate_rule,
)
from evoflow.domain.workflow.value_objects.events import HandlerEvent
from evoflow.domain.workflow.value_objects.reference import UNRESOLVED, ReferenceResolver

TRUE_HANDLE = "true"
FALSE_HANDLE = "false"


class ConditionNodeHandler(NodeHandler):
    """
    Evaluates the node's rules and routes execution through the "true" or
    "false" output handle. The node's output is the boolean result.
    """

    @property
    def node_type(self) -> NodeType:
        return NodeType.CONDITION

    def validate(self, node: WorkflowNode) -> list[str]:
        rules = node.data.rules()
        if not rules:
            return ["At least one condition is required"]

        errors = []
        valid_operators = {op.value for op in ConditionOperator}
        for index, rule in enumerate(rules, start=1):
            if not rule.input_reference.strip():
                errors.append(f"Condition {index}: inputReference is required")
            if rule.operator not in valid_operators:
                errors.append(f"Condition {index}: unknown operator '{rule.operator}'")
                continue
            operator = ConditionOperator(rule.operator)
            if not operator.is_unary and rule.compare_value in (None, ""):
                errors.append(f"Condition {index}: compareValue is required for '{operator.value}'")
        return errors

    async def handle(
        self,
        node: WorkflowNode,
        resolved_inputs: dict[str, Any],
        context: HandlerContext,
        cancellation: CancellationToken,
    ) -> AsyncIterator[HandlerEvent]:
        outcomes = [self._evaluate(node.id, rule, context) for rule in node.data.rules()]
        result = combine(outcomes)

        yield HandlerEvent.progress(
            {
                "type": "condition-evaluated",
                "result": result,
                "rules": [
                    {
                        "inputValue": outcome.input_value,
                        "operator": outcome.operator.value,
                        "compareValue": outcome.compare_value,
                        "joiner": outcome.joiner,
                        "result": outcome.result,
                    }
                    for outcome in outcomes
                ],
            }
        )
        yield HandlerEvent.complete(result, active_handle=TRUE_HANDLE if result else FALSE_HANDLE)

    @staticmethod
    def _evaluate(node_id: str, rule: ConditionRule, context: HandlerContext) -> RuleOutcome:
        if ReferenceResolver.is_reference(rule.input_reference):
            input_value = context.resolve_reference(rule.input_reference)
            if input_value is UNRESOLVED:
                input_value = None
        else:
            input_value = context.interpolate(rule.input_reference)

        compare_value = rule.compare_value
        if isinstance(compare_value, str):
            compare_value = context.interpolate(compare_value)

        operator = ConditionOperator(rule.operator)
        try:
            result = evaluate_rule(input_value, operator, compare_value)
        except re.error as e:
            raise ConditionEvaluationError(node_id, f"Invalid regex '{compare_value}': {e}") from e

        return RuleOutcome(
            input_value=input_value,
            operator=operator,
            compare_value=compare_value,
            joiner=rule.joiner,
            result=result,
        )
