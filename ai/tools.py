"""
Oracle tools - function schemas offered to the model and their dispatch.

Each tool maps 1:1 onto an ExecutionEngine operation. Arguments are checked
here for shape; the execution engine still runs every risk check itself.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from core.execution import ExecutionEngine, ExecutionResult
from core.models import ExitReason, Side

logger = logging.getLogger(__name__)

OPEN_POSITION = "open_position"
CLOSE_POSITION = "close_position"


# ─── Schemas ───────────────────────────────────────────────────────────────

TOOL_SCHEMAS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": OPEN_POSITION,
            "description": "Open a new perpetual futures position with a market order.",
            "parameters": {
                "type": "object",
                "properties": {
                    "symbol": {"type": "string", "description": "Base asset, e.g. BTC"},
                    "side": {"type": "string", "enum": [s.value for s in Side]},
                    "leverage": {"type": "integer", "minimum": 1},
                    "margin_usdt": {"type": "number", "exclusiveMinimum": 0},
                    "stop_loss": {"type": "number"},
                    "take_profit": {"type": "number"},
                },
                "required": ["symbol", "side", "leverage", "margin_usdt"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": CLOSE_POSITION,
            "description": "Close some or all of an open position with a reduce-only market order.",
            "parameters": {
                "type": "object",
                "properties": {
                    "symbol": {"type": "string"},
                    "percentage": {"type": "number", "minimum": 1, "maximum": 100},
                },
                "required": ["symbol"],
            },
        },
    },
]


@dataclass
class ToolInvocation:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


# ─── Dispatch ──────────────────────────────────────────────────────────────

class ToolDispatcher:
    """Run oracle tool invocations against the execution engine, in order."""

    def __init__(self, execution: ExecutionEngine):
        self.execution = execution

    def dispatch(self, invocation: ToolInvocation) -> dict[str, Any]:
        args = invocation.arguments or {}
        try:
            if invocation.name == OPEN_POSITION:
                result = self.execution.open(
                    symbol=str(args["symbol"]),
                    side=str(args["side"]).lower(),
                    leverage=args["leverage"],
                    margin_usdt=args["margin_usdt"],
                    stop_loss=args.get("stop_loss"),
                    profit_target=args.get("take_profit"),
                )
            elif invocation.name == CLOSE_POSITION:
                result = self.execution.close(
                    symbol=str(args["symbol"]),
                    percentage=args.get("percentage", 100),
                    reason=ExitReason.ORACLE,
                )
            else:
                logger.warning(f"Oracle requested unknown tool {invocation.name!r}")
                return self._rejected(invocation, f"unknown tool {invocation.name!r}")
        except KeyError as e:
            return self._rejected(invocation, f"missing argument {e}")

        return {"tool": invocation.name, "arguments": args, **result.to_dict()}

    def dispatch_all(self, invocations: list[ToolInvocation]) -> list[dict[str, Any]]:
        results = []
        for invocation in invocations:
            outcome = self.dispatch(invocation)
            logger.info(
                f"Oracle tool {invocation.name} {invocation.arguments} -> "
                f"{'ok' if outcome.get('success') else outcome.get('error')}"
            )
            results.append(outcome)
        return results

    @staticmethod
    def _rejected(invocation: ToolInvocation, error: str) -> dict[str, Any]:
        symbol = str((invocation.arguments or {}).get("symbol", ""))
        result = ExecutionResult(success=False, symbol=symbol.upper(), error=error)
        return {"tool": invocation.name, "arguments": invocation.arguments, **result.to_dict()}
