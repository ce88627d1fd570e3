import re
import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from core.engine_config import EngineConfig
from core.llm_client import LLMError
from core.manuscript_text import (
    chapter_body,
    delete_chapters,
    find_chapter,
    insert_at_chapter_end,
    insert_at_chapter_start,
    renumber_chapters,
    replace_chapter_body,
)
from core.progress import ProgressReporter, emit_progress
from models import (
    ResolutionOption,
    ResolutionType,
    RewriteMode,
    StructuralIssue,
    StructuralResolutionProgress,
    TransitionPosition,
)
from services.correction_generator import sanitize_response
from services.errors import StructuralResolutionError
from utils.text_cleaner import word_count

logger = logging.getLogger("galley.resolution")

MIN_CHAPTER_CHARS = 100
MIN_TRANSITION_CHARS = 50
MODIFY_CHAPTER_CHARS = 8000

REWRITE_TEMPERATURE = 0.8
VARY_TEMPERATURE_STEP = 0.1
MAX_REWRITE_TEMPERATURE = 1.2
MERGE_TEMPERATURE = 0.6
MODIFY_TEMPERATURE = 0.4
TRANSITION_TEMPERATURE = 0.7
MERGE_MAX_TOKENS = 5000
REWRITE_MAX_TOKENS = 4000
TRANSITION_MAX_TOKENS = 1500

REWRITE_SYSTEM_PROMPT = "Eres un novelista profesional que reescribe capítulos manteniendo el estilo del autor."
MERGE_SYSTEM_PROMPT = "Eres un editor literario que fusiona capítulos duplicados."
TRANSITION_SYSTEM_PROMPT = "Eres un escritor literario que crea transiciones narrativas fluidas."

REWRITE_PROMPT_TEMPLATE = """\
Eres un novelista experto. El siguiente capítulo tiene contenido duplicado con otros capítulos y debe ser \
COMPLETAMENTE REESCRITO con eventos DIFERENTES.

PROBLEMA: {description}

CAPÍTULO ANTERIOR (para continuidad):
{previous}

CAPÍTULO A REESCRIBIR:
{body}

CAPÍTULO SIGUIENTE (para continuidad):
{following}

INSTRUCCIONES:
1. {instruction}
2. Mantén los mismos personajes
3. Asegura continuidad con el capítulo anterior y siguiente
4. Mantén el estilo y tono del autor original
5. Longitud similar al original ({words} palabras aprox.)

Devuelve SOLO el contenido del capítulo reescrito, sin el encabezado "Capítulo X":"""

_REWRITE_INSTRUCTIONS: Dict[RewriteMode, str] = {
    RewriteMode.NEW_EVENTS: "Genera contenido COMPLETAMENTE NUEVO y DIFERENTE, con eventos distintos",
    RewriteMode.VARY_OCCURRENCES: (
        "Conserva la función de la escena en la trama pero cámbiala de forma que no repita "
        "las otras apariciones: distinto escenario, acciones y diálogos"
    ),
    RewriteMode.REMOVE_FIRST_OCCURRENCE: (
        "Elimina la primera aparición de la interacción redundante y conserva la segunda, "
        "ajustando lo mínimo para que el texto siga fluyendo"
    ),
    RewriteMode.REMOVE_SECOND_OCCURRENCE: (
        "Elimina la segunda aparición de la interacción redundante y conserva la primera, "
        "ajustando lo mínimo para que el texto siga fluyendo"
    ),
    RewriteMode.DIFFERENTIATE: (
        "Modifica una de las interacciones repetidas para que aporte información o matices "
        "distintos en lugar de repetir la otra"
    ),
    RewriteMode.FIX_DIALOGUE: (
        "Corrige los diálogos y referencias temporales para que sean coherentes con la "
        "cronología de la historia, con cambios mínimos"
    ),
    RewriteMode.ADD_CLARIFICATION: (
        "Añade una breve aclaración narrativa que resuelva la aparente incoherencia sin "
        "alterar el resto del capítulo"
    ),
}

MERGE_PROMPT_TEMPLATE = """\
Eres un editor literario experto. Debes FUSIONAR los siguientes capítulos duplicados en UNO SOLO, \
conservando los mejores elementos de cada uno.

CAPÍTULO {first}:
{first_body}

CAPÍTULO {second}:
{second_body}

INSTRUCCIONES:
1. Combina los mejores elementos narrativos de ambos capítulos
2. Elimina redundancias y repeticiones
3. Mantén coherencia narrativa
4. El resultado debe ser UN SOLO capítulo cohesivo
5. Mantén el estilo y tono originales

Devuelve SOLO el contenido fusionado del capítulo, sin encabezados:"""

MODIFY_PROMPT_TEMPLATE = """\
Eres un editor literario experto. Debes modificar el siguiente capítulo para resolver una \
inconsistencia de continuidad.

PROBLEMA DETECTADO:
{description}

CAPÍTULO A MODIFICAR (Capítulo {chapter}):
{scope_note}{body}

INSTRUCCIONES:
1. Modifica SOLO las partes necesarias para que sea consistente con el Capítulo {other}
2. Mantén el estilo narrativo, tono y voz del autor original
3. Los cambios deben ser mínimos y quirúrgicos
4. Devuelve el capítulo completo modificado, sin explicaciones ni markdown

CAPÍTULO CORREGIDO:"""

EXPLANATION_PROMPT_TEMPLATE = """\
Eres un editor literario experto. Debes añadir una explicación narrativa sutil que justifique una \
aparente inconsistencia.

PROBLEMA DETECTADO:
{description}

CAPÍTULO DONDE AÑADIR EXPLICACIÓN (Capítulo {chapter}):
{scope_note}{body}

INSTRUCCIONES:
1. Añade una frase o párrafo breve que explique narrativamente la inconsistencia
2. La explicación debe ser natural y fluir con el texto existente
3. Puede ser un pensamiento del personaje, una transición temporal, o un detalle contextual
4. Mantén el estilo del autor
5. Devuelve el capítulo completo con la explicación integrada, sin comentarios ni markdown

CAPÍTULO CON EXPLICACIÓN:"""

FRAGMENT_NOTE = (
    "(Fragmento inicial del capítulo. El resto se conserva sin cambios: devuelve solo este fragmento "
    "corregido.)\n"
)

_TRANSITION_CONTEXT = """\
PROBLEMA DETECTADO:
{description}

CONTEXTO - FINAL DEL CAPÍTULO {from_chapter}:
\"\"\"
{ending}
\"\"\"

CONTEXTO - INICIO DEL CAPÍTULO {to_chapter}:
\"\"\"
{starting}
\"\"\""""

TRANSITION_END_PROMPT = """\
Tu tarea es generar 1-2 párrafos de TRANSICIÓN que se añadirán al FINAL del Capítulo {from_chapter} \
para crear una conexión narrativa fluida con el Capítulo {to_chapter}.

{context}

INSTRUCCIONES:
1. Genera SOLO 1-2 párrafos de transición (máximo 200 palabras)
2. La transición debe cerrar naturalmente la escena del Capítulo {from_chapter}
3. Incluye sutilmente una anticipación del cambio de escena, ubicación o tiempo
4. Mantén el mismo estilo narrativo y tono del texto original
5. NO uses frases cliché como "mientras tanto" o "en otro lugar"
6. Devuelve SOLO los párrafos de transición, sin explicaciones ni markdown

PÁRRAFOS DE TRANSICIÓN:"""

TRANSITION_START_PROMPT = """\
Tu tarea es generar 1-2 párrafos de APERTURA que se añadirán al INICIO del Capítulo {to_chapter} \
para crear una conexión narrativa fluida con el Capítulo {from_chapter}.

{context}

INSTRUCCIONES:
1. Genera SOLO 1-2 párrafos de apertura (máximo 200 palabras)
2. La apertura debe orientar al lector sobre el cambio de escena, ubicación o tiempo
3. Conecta sutilmente con lo que ocurrió en el Capítulo {from_chapter}
4. Mantén el mismo estilo narrativo y tono del texto original
5. NO uses frases cliché como "mientras tanto" o "al día siguiente"
6. Devuelve SOLO los párrafos de apertura, sin explicaciones ni markdown

PÁRRAFOS DE APERTURA:"""

TRANSITION_BOTH_PROMPT = """\
Tu tarea es generar transiciones COMPLEMENTARIAS: un párrafo de cierre para el Capítulo {from_chapter} \
y otro de apertura para el Capítulo {to_chapter}.

{context}

INSTRUCCIONES:
1. Genera exactamente 2 secciones claramente separadas
2. CIERRE (1 párrafo): transición natural que cierra el Capítulo {from_chapter}
3. APERTURA (1 párrafo): orientación que abre el Capítulo {to_chapter}
4. Máximo 150 palabras por sección
5. Mantén el mismo estilo narrativo y tono

Formato de respuesta:
---CIERRE---
[párrafo de cierre]
---APERTURA---
[párrafo de apertura]"""

_BOTH_SECTIONS_RE = re.compile(
    r"---\s*(?:CIERRE|CLOSE)\s*---\s*(.*?)---\s*(?:APERTURA|OPEN)\s*---\s*(.*)",
    re.IGNORECASE | re.DOTALL,
)
_DELIMITER_RE = re.compile(r"---[^-\n]*---")


def split_transition_sections(text: str) -> Optional[Tuple[str, str]]:
    """Split a two-part transition reply into (closing, opening)."""
    match = _BOTH_SECTIONS_RE.search(text or "")
    if not match:
        return None
    closing, opening = match.group(1).strip(), match.group(2).strip()
    if not closing or not opening:
        return None
    return closing, opening


def split_editable_head(body: str, limit: int = MODIFY_CHAPTER_CHARS) -> Tuple[str, str]:
    """Split a chapter body into the head sent for editing and the tail kept verbatim.

    The cut falls on the last paragraph break before ``limit`` when there is one.
    """
    if len(body) <= limit:
        return body, ""
    cut = body.rfind("\n\n", 0, limit)
    if cut <= 0:
        cut = limit
    return body[:cut], body[cut:]


class ResolutionExecutor:
    """Applies one resolution option to a manuscript.

    Every resolution reads what it needs, generates all new text, validates
    it and only then builds the new content. Any failure raises
    ``StructuralResolutionError`` and the caller's content stays as it was.
    """

    def __init__(self, llm_client, config: Optional[EngineConfig] = None):
        self.llm_client = llm_client
        self.config = config or EngineConfig()

    async def execute(
        self,
        content: str,
        issue: StructuralIssue,
        option: ResolutionOption,
        on_progress: ProgressReporter = None,
    ) -> str:
        handlers = {
            ResolutionType.DELETE: self._apply_delete,
            ResolutionType.REWRITE: self._apply_rewrite,
            ResolutionType.MERGE: self._apply_merge,
            ResolutionType.MODIFY_A: self._apply_continuity,
            ResolutionType.MODIFY_B: self._apply_continuity,
            ResolutionType.ADD_EXPLANATION: self._apply_continuity,
            ResolutionType.ADD_TRANSITION: self._apply_transition,
        }
        handler = handlers.get(option.type)
        if handler is None:
            raise StructuralResolutionError(f"unsupported resolution type: {option.type}", option.id)

        logger.info(
            "structural resolution started issue_id=%s option_id=%s type=%s",
            issue.id,
            option.id,
            option.type.value,
        )
        await emit_progress(
            on_progress,
            StructuralResolutionProgress(phase="resolving", message=f"Aplicando: {option.label}"),
        )
        try:
            updated = await handler(content, issue, option, on_progress)
        except StructuralResolutionError as exc:
            if exc.option_id is None:
                exc.option_id = option.id
            await emit_progress(on_progress, StructuralResolutionProgress(phase="error", message=str(exc)))
            raise

        if option.type in (ResolutionType.DELETE, ResolutionType.MERGE):
            updated = renumber_chapters(updated)
        await emit_progress(
            on_progress,
            StructuralResolutionProgress(phase="completed", message=f"Resolución aplicada: {option.label}"),
        )
        logger.info(
            "structural resolution completed issue_id=%s option_id=%s chars_before=%d chars_after=%d",
            issue.id,
            option.id,
            len(content),
            len(updated),
        )
        return updated

    async def _generate(self, messages: List[Dict[str, str]], temperature: float, max_tokens: int) -> str:
        try:
            raw = await asyncio.to_thread(
                self.llm_client.chat,
                messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except LLMError as exc:
            raise StructuralResolutionError(f"generation failed: {exc}") from exc
        return sanitize_response(raw)

    @staticmethod
    def _require_length(text: str, minimum: int, what: str):
        if len(text or "") < minimum:
            raise StructuralResolutionError(f"{what} too short or empty ({len(text or '')} chars)")

    @staticmethod
    def _require_body(content: str, number: Optional[int]) -> str:
        if number is None:
            raise StructuralResolutionError("resolution option names no chapter")
        body = chapter_body(content, number)
        if body is None:
            raise StructuralResolutionError(f"chapter {number} not found")
        return body

    async def _apply_delete(self, content, issue, option, on_progress) -> str:
        if not option.chapters_to_delete:
            raise StructuralResolutionError("no chapters to delete")
        for number in option.chapters_to_delete:
            self._require_body(content, number)
        try:
            return delete_chapters(content, option.chapters_to_delete)
        except ValueError as exc:
            raise StructuralResolutionError(str(exc)) from exc

    def _rewrite_prompt(self, content: str, number: int, body: str, description: str, mode: RewriteMode) -> str:
        limit = self.config.structural_context_chars
        previous = chapter_body(content, number - 1)
        following = chapter_body(content, number + 1)
        return REWRITE_PROMPT_TEMPLATE.format(
            description=description,
            previous=previous[:limit] if previous else "Es el primer capítulo.",
            body=body,
            following=following[:limit] if following else "Es el último capítulo.",
            instruction=_REWRITE_INSTRUCTIONS.get(mode, _REWRITE_INSTRUCTIONS[RewriteMode.NEW_EVENTS]),
            words=word_count(body),
        )

    def _rewrite_temperature(self, mode: RewriteMode, index: int) -> float:
        if mode == RewriteMode.NEW_EVENTS:
            return REWRITE_TEMPERATURE
        if mode == RewriteMode.VARY_OCCURRENCES:
            return round(min(REWRITE_TEMPERATURE + VARY_TEMPERATURE_STEP * index, MAX_REWRITE_TEMPERATURE), 3)
        return MODIFY_TEMPERATURE

    async def _apply_rewrite(self, content, issue, option, on_progress) -> str:
        chapters = option.chapters_to_rewrite or option.chapters_to_merge[:1]
        if not chapters:
            raise StructuralResolutionError("no chapters to rewrite")
        mode = option.rewrite_mode or RewriteMode.NEW_EVENTS
        bodies = {number: self._require_body(content, number) for number in chapters}

        rewritten: Dict[int, str] = {}
        for index, number in enumerate(chapters):
            await emit_progress(
                on_progress,
                StructuralResolutionProgress(
                    phase="rewriting",
                    message=f"Generando nuevo contenido para Capítulo {number}...",
                    current=index + 1,
                    total=len(chapters),
                ),
            )
            prompt = self._rewrite_prompt(content, number, bodies[number], issue.description, mode)
            text = await self._generate(
                [
                    {"role": "system", "content": REWRITE_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self._rewrite_temperature(mode, index),
                max_tokens=REWRITE_MAX_TOKENS,
            )
            self._require_length(text, MIN_CHAPTER_CHARS, f"rewritten chapter {number}")
            rewritten[number] = text

        updated = content
        for number, text in rewritten.items():
            updated = replace_chapter_body(updated, number, text)
        return updated

    async def _apply_merge(self, content, issue, option, on_progress) -> str:
        chapters = option.chapters_to_merge
        if len(chapters) < 2:
            raise StructuralResolutionError("merge needs two chapters")
        first, second = chapters[0], chapters[1]
        first_body = self._require_body(content, first)
        second_body = self._require_body(content, second)

        await emit_progress(
            on_progress,
            StructuralResolutionProgress(phase="rewriting", message=f"Fusionando Capítulos {first} y {second}..."),
        )
        merged = await self._generate(
            [
                {"role": "system", "content": MERGE_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": MERGE_PROMPT_TEMPLATE.format(
                        first=first,
                        first_body=first_body,
                        second=second,
                        second_body=second_body,
                    ),
                },
            ],
            temperature=MERGE_TEMPERATURE,
            max_tokens=MERGE_MAX_TOKENS,
        )
        self._require_length(merged, MIN_CHAPTER_CHARS, "merged chapter")
        updated = replace_chapter_body(content, first, merged)
        return delete_chapters(updated, [second])

    def _continuity_chapters(self, issue: StructuralIssue, option: ResolutionOption) -> Tuple[int, int]:
        conflict = issue.conflict_details
        if conflict is not None:
            chapter_a, chapter_b = conflict.chapter_a, conflict.chapter_b
        elif len(issue.affected_chapters) >= 2:
            chapter_a, chapter_b = issue.affected_chapters[0], issue.affected_chapters[1]
        else:
            raise StructuralResolutionError("continuity conflict names fewer than two chapters")

        if option.type == ResolutionType.MODIFY_A:
            return option.chapter_to_modify or chapter_a, chapter_b
        return option.chapter_to_modify or chapter_b, chapter_a

    async def _apply_continuity(self, content, issue, option, on_progress) -> str:
        target, other = self._continuity_chapters(issue, option)
        body = self._require_body(content, target)

        await emit_progress(
            on_progress,
            StructuralResolutionProgress(phase="rewriting", message=f"Generando corrección para Capítulo {target}..."),
        )
        head, tail = split_editable_head(body)
        template = EXPLANATION_PROMPT_TEMPLATE if option.type == ResolutionType.ADD_EXPLANATION else MODIFY_PROMPT_TEMPLATE
        prompt = template.format(
            description=issue.description,
            chapter=target,
            scope_note=FRAGMENT_NOTE if tail else "",
            body=head,
            other=other,
        )
        text = await self._generate(
            [{"role": "user", "content": prompt}],
            temperature=MODIFY_TEMPERATURE,
            max_tokens=self.config.structural_max_tokens,
        )
        self._require_length(text, MIN_CHAPTER_CHARS, f"modified chapter {target}")
        if tail:
            logger.info("chapter edited by head chapter=%d head_chars=%d tail_chars=%d", target, len(head), len(tail))
            text = f"{text.rstrip()}\n\n{tail.lstrip()}"
        return replace_chapter_body(content, target, text)

    async def _apply_transition(self, content, issue, option, on_progress) -> str:
        ctx = option.transition_context
        if ctx is None:
            raise StructuralResolutionError("transition option carries no chapter context")
        for number in (ctx.from_chapter, ctx.to_chapter):
            if find_chapter(content, number) is None:
                raise StructuralResolutionError(f"chapter {number} not found")

        position = option.transition_position or TransitionPosition.END
        templates = {
            TransitionPosition.END: TRANSITION_END_PROMPT,
            TransitionPosition.START: TRANSITION_START_PROMPT,
            TransitionPosition.BOTH: TRANSITION_BOTH_PROMPT,
        }
        context_block = _TRANSITION_CONTEXT.format(
            description=issue.description,
            from_chapter=ctx.from_chapter,
            to_chapter=ctx.to_chapter,
            ending=ctx.ending_context,
            starting=ctx.starting_context,
        )
        prompt = templates[position].format(
            from_chapter=ctx.from_chapter,
            to_chapter=ctx.to_chapter,
            context=context_block,
        )

        await emit_progress(
            on_progress,
            StructuralResolutionProgress(
                phase="rewriting",
                message=f"Generando transición narrativa entre Capítulo {ctx.from_chapter} y {ctx.to_chapter}...",
            ),
        )
        text = await self._generate(
            [
                {"role": "system", "content": TRANSITION_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=TRANSITION_TEMPERATURE,
            max_tokens=TRANSITION_MAX_TOKENS,
        )
        self._require_length(text, MIN_TRANSITION_CHARS, "transition")

        if position == TransitionPosition.START:
            return insert_at_chapter_start(content, ctx.to_chapter, text)
        if position == TransitionPosition.END:
            return insert_at_chapter_end(content, ctx.from_chapter, text)

        sections = split_transition_sections(text)
        if sections is None:
            logger.info("transition sections not found, inserting single passage option_id=%s", option.id)
            passage = _DELIMITER_RE.sub("", text).strip()
            self._require_length(passage, MIN_TRANSITION_CHARS, "transition")
            return insert_at_chapter_end(content, ctx.from_chapter, passage)
        closing, opening = sections
        updated = insert_at_chapter_end(content, ctx.from_chapter, closing)
        return insert_at_chapter_start(updated, ctx.to_chapter, opening)
