from __future__ import annotations

from tgdigest.llm.errors import BudgetExceededError, LLMError
from tgdigest.llm.gateway import LLMGateway, build_gateway

__all__ = ["BudgetExceededError", "LLMError", "LLMGateway", "build_gateway"]
