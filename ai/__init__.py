"""
AI Oracle Module

Builds the decision snapshot, consults the LLM oracle and dispatches the
tool calls it returns. The oracle can only request opens and closes.

Core principle: RiskEngine & ExecutionEngine remain the hard authority.
"""
