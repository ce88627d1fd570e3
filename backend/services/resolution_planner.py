import logging
from typing import List, Optional, Sequence
from uuid import uuid4

from core.manuscript_text import EPILOGUE_NUMBER
from models import (
    AuditIssue,
    ContinuityConflict,
    CorrectionRecord,
    ResolutionOption,
    ResolutionType,
    RewriteMode,
    StructuralIssue,
    StructuralIssueType,
    TransitionContext,
    TransitionPosition,
)
from services.structural_classifier import Classification, StructuralClassifier, strip_instruction_tags

logger = logging.getLogger("galley.planner")

REWRITE_TOKENS = 3000
VARY_TOKENS_PER_CHAPTER = 1500
MODIFY_TOKENS = 1500
EXPLANATION_TOKENS = 800
MERGE_TOKENS = 4000
OCCURRENCE_TOKENS = 2000
DIFFERENTIATE_TOKENS = 2500
TRANSITION_TOKENS = 1200
TRANSITION_BOTH_TOKENS = 2000
MAX_OPTIONS = 4


def _join(chapters: Sequence[int]) -> str:
    return ", ".join(str(c) for c in chapters)


def _chapter_name(number: int) -> str:
    if number == EPILOGUE_NUMBER:
        return "Epílogo"
    return f"Capítulo {number}"


def plan_redundant_interaction(chapters: List[int]) -> List[ResolutionOption]:
    target = chapters[:1]
    name = _chapter_name(target[0]) if target else "Epílogo"
    return [
        ResolutionOption(
            id="remove-first-occurrence",
            type=ResolutionType.REWRITE,
            label="Eliminar primera aparición",
            description=(
                f"Elimina la primera interacción redundante del {name}, manteniendo la segunda "
                "que es más significativa narrativamente."
            ),
            recommended=True,
            chapters_to_rewrite=target,
            rewrite_mode=RewriteMode.REMOVE_FIRST_OCCURRENCE,
            estimated_tokens=OCCURRENCE_TOKENS,
        ),
        ResolutionOption(
            id="remove-second-occurrence",
            type=ResolutionType.REWRITE,
            label="Eliminar segunda aparición",
            description=f"Elimina la segunda interacción del {name}, manteniendo solo la primera.",
            chapters_to_rewrite=target,
            rewrite_mode=RewriteMode.REMOVE_SECOND_OCCURRENCE,
            estimated_tokens=OCCURRENCE_TOKENS,
        ),
        ResolutionOption(
            id="modify-to-differ",
            type=ResolutionType.REWRITE,
            label="Modificar para diferenciar",
            description="Modifica una de las interacciones para que sean claramente diferentes y no redundantes.",
            chapters_to_rewrite=target,
            rewrite_mode=RewriteMode.DIFFERENTIATE,
            estimated_tokens=DIFFERENTIATE_TOKENS,
        ),
    ]


def plan_dialogue_fix(chapters: List[int]) -> List[ResolutionOption]:
    return [
        ResolutionOption(
            id="fix-dialogue",
            type=ResolutionType.REWRITE,
            label="Corregir el diálogo",
            description=(
                "Modifica el diálogo para que sea consistente con la cronología establecida. "
                "Ajusta la referencia temporal para que coincida con los eventos."
            ),
            recommended=True,
            chapters_to_rewrite=list(chapters),
            rewrite_mode=RewriteMode.FIX_DIALOGUE,
            estimated_tokens=OCCURRENCE_TOKENS,
        ),
        ResolutionOption(
            id="add-clarification",
            type=ResolutionType.REWRITE,
            label="Añadir aclaración narrativa",
            description=(
                "Mantiene el diálogo pero añade una aclaración del narrador que explique la "
                "discrepancia o corrija la percepción del lector."
            ),
            chapters_to_rewrite=list(chapters),
            rewrite_mode=RewriteMode.ADD_CLARIFICATION,
            estimated_tokens=DIFFERENTIATE_TOKENS,
        ),
    ]


def plan_repeated_scene(chapters: List[int]) -> List[ResolutionOption]:
    first, last = chapters[0], chapters[-1]
    return [
        ResolutionOption(
            id="vary-all-scenes",
            type=ResolutionType.REWRITE,
            label="Variar la escena en cada capítulo",
            description=(
                f"Mantiene la primera aparición y genera variaciones únicas para los capítulos "
                f"{_join(chapters[1:])}. Cada variación tendrá un enfoque narrativo diferente."
            ),
            recommended=True,
            chapter_to_keep=first,
            chapters_to_rewrite=chapters[1:],
            rewrite_mode=RewriteMode.VARY_OCCURRENCES,
            estimated_tokens=len(chapters) * VARY_TOKENS_PER_CHAPTER,
        ),
        ResolutionOption(
            id="keep-first-remove-rest",
            type=ResolutionType.DELETE,
            label="Eliminar escena de capítulos posteriores",
            description=f"Mantiene la escena solo en el Capítulo {first} y elimina los capítulos {_join(chapters[1:])}",
            chapter_to_keep=first,
            chapters_to_delete=chapters[1:],
        ),
        ResolutionOption(
            id="keep-last-remove-rest",
            type=ResolutionType.DELETE,
            label="Mantener solo en el último capítulo",
            description=f"Elimina los capítulos {_join(chapters[:-1])} y mantiene la escena solo en el Capítulo {last}",
            chapter_to_keep=last,
            chapters_to_delete=chapters[:-1],
        ),
    ]


def plan_duplicates(chapters: List[int]) -> List[ResolutionOption]:
    first, last = chapters[0], chapters[-1]
    options = [
        ResolutionOption(
            id="delete-keep-first",
            type=ResolutionType.DELETE,
            label=f"Eliminar duplicados (mantener Capítulo {first})",
            description=f"Mantiene el Capítulo {first} y elimina los capítulos {_join(chapters[1:])}",
            chapter_to_keep=first,
            chapters_to_delete=chapters[1:],
        ),
        ResolutionOption(
            id="delete-keep-last",
            type=ResolutionType.DELETE,
            label=f"Eliminar duplicados (mantener Capítulo {last})",
            description=f"Mantiene el Capítulo {last} y elimina los capítulos {_join(chapters[:-1])}",
            chapter_to_keep=last,
            chapters_to_delete=chapters[:-1],
        ),
    ]
    merge_slots = 1 if len(chapters) == 2 else 0
    for chapter in chapters[1:]:
        if len(options) >= MAX_OPTIONS - merge_slots:
            break
        options.append(
            ResolutionOption(
                id=f"rewrite-{chapter}",
                type=ResolutionType.REWRITE,
                label=f"Reescribir Capítulo {chapter}",
                description=f"Genera contenido completamente nuevo para el Capítulo {chapter}, diferente al Capítulo {first}",
                chapters_to_rewrite=[chapter],
                rewrite_mode=RewriteMode.NEW_EVENTS,
                estimated_tokens=REWRITE_TOKENS,
            )
        )
    if len(chapters) == 2:
        options.append(
            ResolutionOption(
                id=f"merge-{first}-{last}",
                type=ResolutionType.MERGE,
                label=f"Fusionar Capítulos {first} y {last}",
                description="Combina los mejores elementos de ambos capítulos en uno solo",
                chapters_to_merge=[first, last],
                estimated_tokens=MERGE_TOKENS,
            )
        )
    return options


def plan_continuity(conflict: ContinuityConflict) -> List[ResolutionOption]:
    a, b = conflict.chapter_a, conflict.chapter_b
    return [
        ResolutionOption(
            id=f"modify-a-{a}",
            type=ResolutionType.MODIFY_A,
            label=f"Modificar Capítulo {a}",
            description=f"Ajustar el Capítulo {a} para que sea consistente con el Capítulo {b}",
            chapter_to_modify=a,
            estimated_tokens=MODIFY_TOKENS,
        ),
        ResolutionOption(
            id=f"modify-b-{b}",
            type=ResolutionType.MODIFY_B,
            label=f"Modificar Capítulo {b}",
            description=f"Ajustar el Capítulo {b} para que sea consistente con el Capítulo {a}",
            chapter_to_modify=b,
            estimated_tokens=MODIFY_TOKENS,
        ),
        ResolutionOption(
            id=f"explain-{a}-{b}",
            type=ResolutionType.ADD_EXPLANATION,
            label="Añadir explicación narrativa",
            description=(
                "Insertar una explicación en el texto que justifique la aparente inconsistencia "
                "(paso del tiempo, cambio de planes del personaje, etc.)"
            ),
            chapter_to_modify=b,
            estimated_tokens=EXPLANATION_TOKENS,
        ),
    ]


def plan_transition(context: TransitionContext) -> List[ResolutionOption]:
    src, dst = context.from_chapter, context.to_chapter
    return [
        ResolutionOption(
            id=f"add-transition-end-{src}",
            type=ResolutionType.ADD_TRANSITION,
            label=f"Añadir transición al final del Capítulo {src}",
            description=(
                f"Genera 1-2 párrafos de transición al final del Capítulo {src} que faciliten el paso "
                f"narrativo hacia el Capítulo {dst}."
            ),
            recommended=True,
            chapter_to_modify=src,
            transition_position=TransitionPosition.END,
            transition_context=context,
            estimated_tokens=TRANSITION_TOKENS,
        ),
        ResolutionOption(
            id=f"add-transition-start-{dst}",
            type=ResolutionType.ADD_TRANSITION,
            label=f"Añadir transición al inicio del Capítulo {dst}",
            description=(
                f"Genera 1-2 párrafos de apertura del Capítulo {dst} que conecten narrativamente con "
                f"el cierre del Capítulo {src}."
            ),
            chapter_to_modify=dst,
            transition_position=TransitionPosition.START,
            transition_context=context,
            estimated_tokens=TRANSITION_TOKENS,
        ),
        ResolutionOption(
            id=f"add-transition-both-{src}-{dst}",
            type=ResolutionType.ADD_TRANSITION,
            label="Añadir transiciones a ambos capítulos",
            description=(
                f"Genera un párrafo de cierre para el Capítulo {src} y otro de apertura para el "
                f"Capítulo {dst}, creando una conexión narrativa fluida."
            ),
            chapters_to_merge=[src, dst],
            transition_position=TransitionPosition.BOTH,
            transition_context=context,
            estimated_tokens=TRANSITION_BOTH_TOKENS,
        ),
    ]


class ResolutionPlanner:
    """Enumerate mutually exclusive resolution options for a classified issue."""

    def plan(self, classification: Classification) -> List[ResolutionOption]:
        chapters = classification.affected_chapters
        if classification.type == StructuralIssueType.CONTINUITY_CONFLICT and classification.conflict:
            return plan_continuity(classification.conflict)
        if classification.type == StructuralIssueType.NARRATIVE_FLOW_BREAK and classification.transition:
            return plan_transition(classification.transition)
        if classification.redundant_interaction and len(chapters) <= 1:
            return plan_redundant_interaction(chapters)
        if classification.dialogue_fix:
            return plan_dialogue_fix(chapters)
        if len(chapters) < 2:
            return []
        if classification.repeated_scene and len(chapters) > 2:
            return plan_repeated_scene(chapters)
        return plan_duplicates(chapters)

    def build_issue(
        self,
        issue_id: str,
        issue: AuditIssue,
        classification: Classification,
    ) -> Optional[StructuralIssue]:
        options = self.plan(classification)
        if not options:
            return None
        recommended = next((o.id for o in options if o.recommended), None)
        return StructuralIssue(
            id=issue_id,
            type=classification.type,
            severity=issue.severity,
            description=strip_instruction_tags(issue.description),
            affected_chapters=classification.affected_chapters,
            resolution_options=options,
            conflict_details=classification.conflict,
            recommended_option=recommended,
        )


_default_classifier = StructuralClassifier()
_default_planner = ResolutionPlanner()


def structural_issue_from_record(
    record: CorrectionRecord,
    content: str,
    classifier: Optional[StructuralClassifier] = None,
    planner: Optional[ResolutionPlanner] = None,
) -> Optional[StructuralIssue]:
    """Recompute a record's structural issue and its options from instruction and location."""
    issue = AuditIssue(
        description=strip_instruction_tags(record.instruction),
        location=record.location,
        severity=record.severity,
    )
    classification = (classifier or _default_classifier).classify(issue, content)
    if classification is None:
        return None
    return (planner or _default_planner).build_issue(record.id, issue, classification)


def detect_structural_issues(
    issues: Sequence[AuditIssue],
    content: str,
    classifier: Optional[StructuralClassifier] = None,
    planner: Optional[ResolutionPlanner] = None,
) -> List[StructuralIssue]:
    detected: List[StructuralIssue] = []
    for issue in issues:
        classification = (classifier or _default_classifier).classify(issue, content)
        if classification is None:
            continue
        structural = (planner or _default_planner).build_issue(f"structural-{uuid4().hex[:12]}", issue, classification)
        if structural is not None:
            detected.append(structural)
    return detected


def select_best_option(issue: StructuralIssue) -> Optional[ResolutionOption]:
    """The option an unattended run should apply for an issue."""
    options = issue.resolution_options
    if not options:
        return None
    if issue.recommended_option:
        for option in options:
            if option.id == issue.recommended_option:
                return option

    def _first(*types: ResolutionType) -> Optional[ResolutionOption]:
        for option_type in types:
            for option in options:
                if option.type == option_type:
                    return option
        return None

    if issue.type in (StructuralIssueType.DUPLICATE_CHAPTERS, StructuralIssueType.DUPLICATE_SCENES):
        preferred = _first(ResolutionType.MERGE, ResolutionType.DELETE)
    elif issue.type == StructuralIssueType.REDUNDANT_CONTENT:
        preferred = _first(ResolutionType.MERGE, ResolutionType.REWRITE)
    elif issue.type == StructuralIssueType.CONTINUITY_CONFLICT:
        preferred = _first(ResolutionType.MODIFY_A, ResolutionType.MODIFY_B, ResolutionType.ADD_EXPLANATION)
    elif issue.type == StructuralIssueType.NARRATIVE_FLOW_BREAK:
        preferred = _first(ResolutionType.ADD_TRANSITION)
    else:
        preferred = None
    return preferred or options[0]
