from typing import Dict, Optional


# USD per 1M tokens.
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "deepseek-chat": {"input": 0.28, "output": 0.42},
    "deepseek-reasoner": {"input": 0.55, "output": 2.19},
    "gpt-4-turbo-preview": {"input": 10.0, "output": 30.0},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "MiniMax-M2.5": {"input": 0.30, "output": 1.20},
    "default": {"input": 0.28, "output": 0.42},
}


def calculate_cost(model: Optional[str], input_tokens: int, output_tokens: int) -> float:
    pricing = MODEL_PRICING.get(model or "", MODEL_PRICING["default"])
    cost = (max(input_tokens, 0) / 1_000_000) * pricing["input"]
    cost += (max(output_tokens, 0) / 1_000_000) * pricing["output"]
    return round(cost, 6)
