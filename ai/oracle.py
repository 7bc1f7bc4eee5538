"""
Decision Oracle - LLM client that turns a snapshot into tool invocations.

The oracle is advisory. Whatever it asks for goes through ToolDispatcher and
the ExecutionEngine, which apply every hard limit on their own.
"""

import json
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any

from ai.tools import TOOL_SCHEMAS, ToolInvocation
from core.exceptions import ConfigurationError, OracleUnavailable

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an autonomous trader managing a USDT-margined perpetual futures account.

You receive a JSON snapshot with market data per symbol, account state, open positions,
recent trades, your previous decision and the risk guardrails.

Rules:
- Only trade symbols listed in guardrails.trading_symbols
- Leverage must stay within guardrails.leverage_range
- Never exceed guardrails.max_positions open positions or one position per symbol
- Positions are closed mechanically by stop-loss, trailing and holding-time rules
- Use the open_position and close_position tools to act; call no tool to hold

Reply with a short market analysis and the reasoning behind your actions."""


# ─── Data Structures ───────────────────────────────────────────────────────

@dataclass
class OracleDecision:
    """Narrative plus the ordered tool calls the oracle asked for."""
    text: str
    tool_invocations: list[ToolInvocation] = field(default_factory=list)


class DecisionOracle(ABC):
    @abstractmethod
    def decide(self, snapshot: dict[str, Any]) -> OracleDecision:
        """Return a decision for ``snapshot``; raise OracleUnavailable on failure."""


# ─── LLM Oracle ────────────────────────────────────────────────────────────

class LLMDecisionOracle(DecisionOracle):
    """
    Oracle backed by an OpenAI-compatible chat completions endpoint.

    Responsibilities:
    - Send the snapshot with the open_position/close_position tool schemas
    - Parse tool calls into ToolInvocation objects, in order
    - Raise OracleUnavailable on transport or parse failures
    """

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: str | None = None,
        timeout_s: float = 120.0,
        max_tokens: int = 4000,
        temperature: float = 0.3,
    ):
        self.model = model
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens
        self.temperature = temperature

        # Lazy-import provider SDK
        import openai
        self.client = openai.OpenAI(api_key=api_key, base_url=base_url, timeout=timeout_s)

    def decide(self, snapshot: dict[str, Any]) -> OracleDecision:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": json.dumps(snapshot, default=str)},
        ]
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                tools=TOOL_SCHEMAS,
                tool_choice="auto",
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except Exception as e:
            logger.error(f"Oracle request failed: {e}", exc_info=True)
            raise OracleUnavailable(f"oracle request failed: {e}") from e

        if not response.choices:
            raise OracleUnavailable("oracle returned no choices")

        message = response.choices[0].message
        invocations = []
        for call in message.tool_calls or []:
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                logger.warning(
                    f"Dropping tool call {call.function.name}: arguments are not JSON "
                    f"({call.function.arguments[:200]!r})"
                )
                continue
            if not isinstance(arguments, dict):
                logger.warning(f"Dropping tool call {call.function.name}: arguments are not an object")
                continue
            invocations.append(ToolInvocation(name=call.function.name, arguments=arguments))

        text = (message.content or "").strip()
        logger.info(f"Oracle returned {len(invocations)} tool call(s), {len(text)} chars of analysis")
        return OracleDecision(text=text, tool_invocations=invocations)


# ─── Timeout Guard ─────────────────────────────────────────────────────────

def consult_oracle(oracle: DecisionOracle, snapshot: dict[str, Any], timeout_s: float) -> OracleDecision:
    """
    Run ``oracle.decide`` with a hard wall-clock limit.

    A call still running after ``timeout_s`` is abandoned and the cycle sees
    OracleUnavailable. The worker thread is not joined.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="oracle")
    future = pool.submit(oracle.decide, snapshot)
    try:
        return future.result(timeout=timeout_s)
    except FuturesTimeout as e:
        logger.error(f"Oracle did not answer within {timeout_s:.0f}s")
        raise OracleUnavailable(f"oracle timed out after {timeout_s}s") from e
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


# ─── Mock Oracle (for testing) ─────────────────────────────────────────────

class MockDecisionOracle(DecisionOracle):
    """Mock oracle returning a fixed decision, or raising a fixed error."""

    def __init__(self, decision: OracleDecision | None = None, error: Exception | None = None):
        self.decision = decision or OracleDecision(text="hold")
        self.error = error
        self.call_count = 0
        self.snapshots: list[dict[str, Any]] = []

    def decide(self, snapshot: dict[str, Any]) -> OracleDecision:
        self.call_count += 1
        self.snapshots.append(snapshot)
        if self.error is not None:
            raise self.error
        return self.decision


# ─── Factory ───────────────────────────────────────────────────────────────

def create_decision_oracle(
    model: str,
    api_key: str | None,
    base_url: str | None = None,
    timeout_s: float = 120.0,
    max_tokens: int = 4000,
    temperature: float = 0.3,
) -> DecisionOracle:
    """Build the LLM oracle; missing credentials are a configuration error."""
    if not api_key:
        raise ConfigurationError("No oracle API key configured (OPENAI_API_KEY or OPENROUTER_API_KEY)")
    return LLMDecisionOracle(
        model=model,
        api_key=api_key,
        base_url=base_url,
        timeout_s=timeout_s,
        max_tokens=max_tokens,
        temperature=temperature,
    )
