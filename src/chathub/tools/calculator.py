import operator
from typing import Any

from chathub.sessions.schema import ToolInvocation
from chathub.tools.registry import Tool, ToolContext

OPERATIONS = {
    "add": operator.add,
    "subtract": operator.sub,
    "multiply": operator.mul,
    "divide": operator.truediv,
}

CALCULATOR_TOOL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "operation": {
            "type": "string",
            "enum": list(OPERATIONS),
            "description": "The type of operation to execute.",
        },
        "number1": {"type": "number", "description": "The first number to operate on."},
        "number2": {"type": "number", "description": "The second number to operate on."},
    },
    "required": ["operation", "number1", "number2"],
}


def calculate(operation: str, number1: float, number2: float) -> float:
    try:
        fn = OPERATIONS[operation]
    except KeyError:
        raise ValueError(f"Unknown operation: {operation}") from None
    return fn(number1, number2)


def make_calculator_tool(context: ToolContext) -> Tool:
    def _run(operation: str, number1: float, number2: float) -> str:
        result = calculate(operation, number1, number2)
        text = f"{result:g}" if isinstance(result, float) else str(result)
        context.send_tool_response(
            ToolInvocation(
                tool_name="calculator",
                tool_args={"operation": operation, "number1": number1, "number2": number2},
                tool_response=text,
            )
        )
        return text

    return Tool(
        name="calculator",
        description="Can perform mathematical operations.",
        parameters=CALCULATOR_TOOL_SCHEMA,
        implementation=_run,
        fallback_message="The calculation failed.",
    )
