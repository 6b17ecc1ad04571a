"""Token and cost estimation for previews and run reporting."""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from council.utils.helpers import estimate_tokens

logger = logging.getLogger(__name__)

# USD per 1K tokens (input, output), matched by model-name prefix
DEFAULT_PRICING: Dict[str, Tuple[float, float]] = {
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4o": (0.0025, 0.01),
    "gpt-4.1-mini": (0.0004, 0.0016),
    "gpt-4.1": (0.002, 0.008),
    "gpt-3.5-turbo": (0.0005, 0.0015),
}


@dataclass
class UsageEstimate:
    """Estimated token usage and cost of one inference call."""
    model_name: str
    input_tokens: int
    output_tokens: int
    cost_usd: float

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, object]:
        return {
            "model": self.model_name,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "cost_usd": round(self.cost_usd, 6),
        }


class CostEstimator:
    """Estimate token counts and costs from prompt/response sizes.

    Models without a pricing entry (local Ollama models, for example) are
    estimated at zero cost.
    """

    def __init__(self, pricing: Optional[Dict[str, Tuple[float, float]]] = None):
        self.pricing = dict(DEFAULT_PRICING)
        if pricing:
            self.pricing.update(pricing)

    def price_for(self, model_name: str) -> Tuple[float, float]:
        # Longest matching prefix wins so "gpt-4o-mini" is not priced as "gpt-4o"
        for prefix in sorted(self.pricing, key=len, reverse=True):
            if model_name.startswith(prefix):
                return self.pricing[prefix]
        return (0.0, 0.0)

    def estimate(
        self,
        model_name: str,
        prompt: Optional[str] = None,
        response: Optional[str] = None,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
    ) -> UsageEstimate:
        """
        Estimate usage for one call.

        Args:
            model_name: Model the call targets
            prompt: Prompt text (used when input_tokens is not given)
            response: Response text (used when output_tokens is not given)
            input_tokens: Known input token count
            output_tokens: Known output token count

        Returns:
            UsageEstimate
        """
        if input_tokens is None:
            input_tokens = estimate_tokens(prompt)
        if output_tokens is None:
            output_tokens = estimate_tokens(response)

        input_price, output_price = self.price_for(model_name)
        cost = (input_tokens / 1000.0) * input_price + (output_tokens / 1000.0) * output_price
        return UsageEstimate(
            model_name=model_name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
        )
