import re
import logging
from dataclasses import dataclass, field
from typing import Optional

from core.engine_config import EngineConfig
from models import DiffStats
from services.span_locator import SpanMatch
from utils.text_cleaner import word_count

logger = logging.getLogger("galley.generator")

SYSTEM_PROMPT = """\
Eres un Editor Literario Técnico especializado en corrección invisible.
Tu objetivo es solucionar inconsistencias lógicas manteniendo la prosa EXACTA del autor original.
NO eres un co-autor creativo. NO mejores el estilo. NO resumas.
Tu única métrica de éxito es que el lector no note que el texto ha sido editado.

REGLAS ABSOLUTAS:
1. Mantén el tono, vocabulario y ritmo del autor.
2. NO añadas información nueva que no sea estrictamente necesaria.
3. Devuelve SOLO el texto corregido, sin explicaciones, sin markdown, sin comillas."""

CORRECTION_PROMPT_TEMPLATE = """\
### CONTEXTO PREVIO (NO EDITAR)
{prev_context}

### TEXTO A CORREGIR (TARGET)
"{target}"

### CONTEXTO POSTERIOR (NO EDITAR)
{next_context}

### LA INCONSISTENCIA A REPARAR
Instrucción: {instruction}
Solución requerida: {suggestion}

### REGLAS DE EJECUCIÓN (CRÍTICO)
1. Reescribe SOLAMENTE el "TEXTO A CORREGIR".
2. Mantén el tono, vocabulario y ritmo del autor (ver Contexto Previo para referencia).
3. El nuevo texto debe fluir naturalmente hacia el "Contexto Posterior".
4. NO añadas información nueva que no sea estrictamente necesaria para la corrección.
5. Devuelve SOLO el texto corregido, sin explicaciones ni markdown ni comillas."""

ALTERNATIVE_SYSTEM_PROMPT = (
    "Eres un editor literario experto en variación de vocabulario. Devuelve solo la frase alternativa."
)

ALTERNATIVE_PROMPT_TEMPLATE = """\
Eres un editor literario. Debes proponer UNA alternativa para la siguiente frase repetitiva, \
manteniendo el mismo significado pero con vocabulario diferente.

FRASE ORIGINAL: "{phrase}"

CONTEXTO: {context}

PROBLEMA: {description}

REGLAS:
1. Mantén el significado exacto
2. Usa vocabulario completamente diferente
3. Mantén el tono y registro del texto
4. Devuelve SOLO la frase alternativa, sin explicaciones ni comillas

FRASE ALTERNATIVA:"""

_PREAMBLE_PATTERNS = [
    re.compile(r"^(?:aquí tienes|aquí está|here is|here's)[^:\n]*:", re.IGNORECASE),
    re.compile(r"^(?:el texto|the text)[^:\n]*:", re.IGNORECASE),
    re.compile(r"^(?:texto corregido|corrected text|corrección|correction)[^:\n]*:", re.IGNORECASE),
    re.compile(r"^```[a-z]*\n?", re.IGNORECASE),
]
_TRAILING_FENCE_RE = re.compile(r"\n?```\s*$")
_WRAPPING_QUOTES = ('"', "'", "“", "”", "«", "»")


@dataclass
class CorrectionResult:
    success: bool
    original_text: str
    corrected_text: str
    diff_stats: DiffStats = field(default_factory=DiffStats)
    error: Optional[str] = None


def calculate_diff_stats(original: str, corrected: str) -> DiffStats:
    delta = word_count(corrected) - word_count(original)
    return DiffStats(
        words_added=max(0, delta),
        words_removed=max(0, -delta),
        length_change=len(corrected) - len(original),
    )


def sanitize_response(response: Optional[str]) -> str:
    """Strip preambles, code fences and wrapping quotes from a model reply."""
    cleaned = (response or "").strip()
    for pattern in _PREAMBLE_PATTERNS:
        cleaned = pattern.sub("", cleaned, count=1).strip()
    cleaned = _TRAILING_FENCE_RE.sub("", cleaned).strip()
    if cleaned[:1] in _WRAPPING_QUOTES:
        cleaned = cleaned[1:]
    if cleaned[-1:] in _WRAPPING_QUOTES:
        cleaned = cleaned[:-1]
    return cleaned.strip()


def alternative_temperature(variation_index: int, config: Optional[EngineConfig] = None) -> float:
    """Sampling temperature for the n-th alternative phrasing of the same content."""
    cfg = config or EngineConfig()
    value = cfg.alternative_base_temperature + cfg.alternative_temperature_step * max(variation_index, 0)
    return round(min(value, cfg.alternative_max_temperature), 3)


class CorrectionGenerator:
    """One "rewrite only this span" exchange with the generative service.

    Service errors and anomalous replies come back as failed results, never
    as exceptions, so a batch can carry on with the next issue.
    """

    def __init__(self, llm_client, config: Optional[EngineConfig] = None):
        self.llm_client = llm_client
        self.config = config or EngineConfig()

    def _failed(self, original: str, error: str) -> CorrectionResult:
        return CorrectionResult(
            success=False,
            original_text=original,
            corrected_text=original,
            diff_stats=DiffStats(),
            error=error,
        )

    def _validate(self, original: str, raw: Optional[str]) -> CorrectionResult:
        corrected = sanitize_response(raw)
        if not corrected:
            return self._failed(original, "empty response")
        if len(corrected) > len(original) * self.config.max_expansion_ratio:
            return self._failed(original, "length anomaly")
        return CorrectionResult(
            success=True,
            original_text=original,
            corrected_text=corrected,
            diff_stats=calculate_diff_stats(original, corrected),
        )

    def build_prompt(self, document: str, span: SpanMatch, instruction: str, suggestion: str) -> str:
        window = self.config.context_chars
        shown = self.config.prompt_context_chars
        prev_context = document[max(0, span.start - window):span.start]
        next_context = document[span.end:span.end + window]
        return CORRECTION_PROMPT_TEMPLATE.format(
            prev_context=prev_context[-shown:],
            target=span.text,
            next_context=next_context[:shown],
            instruction=instruction,
            suggestion=suggestion or "Corrige la inconsistencia con el mínimo cambio posible.",
        )

    def correct(self, document: str, span: SpanMatch, instruction: str, suggestion: str = "") -> CorrectionResult:
        prompt = self.build_prompt(document, span, instruction, suggestion)
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        try:
            raw = self.llm_client.chat(
                messages,
                temperature=self.config.correction_temperature,
                max_tokens=self.config.correction_max_tokens,
            )
        except Exception as exc:
            logger.warning("correction generation failed strategy=%s error=%s", span.strategy, exc)
            return self._failed(span.text, str(exc))

        result = self._validate(span.text, raw)
        if not result.success:
            logger.info(
                "correction discarded reason=%s original_chars=%d",
                result.error,
                len(span.text),
            )
        return result

    def generate_alternative(
        self,
        phrase: str,
        context: str,
        description: str,
        variation_index: int = 0,
    ) -> CorrectionResult:
        prompt = ALTERNATIVE_PROMPT_TEMPLATE.format(phrase=phrase, context=context, description=description)
        messages = [
            {"role": "system", "content": ALTERNATIVE_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        try:
            raw = self.llm_client.chat(
                messages,
                temperature=alternative_temperature(variation_index, self.config),
                max_tokens=self.config.alternative_max_tokens,
            )
        except Exception as exc:
            logger.warning("alternative generation failed index=%d error=%s", variation_index, exc)
            return self._failed(phrase, str(exc))

        result = self._validate(phrase, raw)
        if result.success and result.corrected_text == phrase:
            return self._failed(phrase, "alternative identical to original")
        return result
