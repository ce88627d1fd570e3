from dataclasses import dataclass


@dataclass
class EngineConfig:
    """Tunables of the correction engine, filled from Settings by the API layer."""

    correction_temperature: float = 0.3
    correction_max_tokens: int = 2000
    alternative_base_temperature: float = 0.7
    alternative_temperature_step: float = 0.1
    alternative_max_temperature: float = 1.2
    alternative_max_tokens: int = 200
    context_chars: int = 500
    prompt_context_chars: int = 300
    max_expansion_ratio: float = 2.5
    rate_limit_delay: float = 0.5
    repetition_delay: float = 0.3
    structural_context_chars: int = 2000
    structural_max_tokens: int = 8000
