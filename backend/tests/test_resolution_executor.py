import pytest

from core.llm_client import LLMError
from core.manuscript_text import chapter_body, split_chapters
from models import (
    ContinuityConflict,
    ResolutionOption,
    ResolutionType,
    RewriteMode,
    StructuralIssue,
    StructuralIssueType,
    TransitionContext,
    TransitionPosition,
)
from services.errors import StructuralResolutionError
from services.resolution_executor import (
    FRAGMENT_NOTE,
    MODIFY_CHAPTER_CHARS,
    ResolutionExecutor,
    split_editable_head,
    split_transition_sections,
)

CONTENT = "".join(f"Capítulo {n}\n\nTexto original del capítulo {n}.\n\n" for n in range(1, 5))
LONG_TEXT = "Un amanecer gris cubría el puerto mientras los pescadores recogían las redes en silencio. " * 2
PASSAGE = "La noche cayó sobre la ciudad y nadie volvió a hablar de lo ocurrido en el muelle."


class ScriptedLLM:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def chat(self, messages, temperature=None, max_tokens=None):
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        response = self.responses.pop(0) if self.responses else ""
        if isinstance(response, Exception):
            raise response
        return response


def _issue(issue_type=StructuralIssueType.DUPLICATE_CHAPTERS, chapters=(2, 3), **kwargs) -> StructuralIssue:
    return StructuralIssue(
        id="corr-1",
        type=issue_type,
        description="Los capítulos 2 y 3 son idénticos",
        affected_chapters=list(chapters),
        **kwargs,
    )


def _transition(position: TransitionPosition) -> ResolutionOption:
    return ResolutionOption(
        id=f"add-transition-{position.value}",
        type=ResolutionType.ADD_TRANSITION,
        label="Añadir transición",
        description="",
        transition_position=position,
        transition_context=TransitionContext(from_chapter=2, to_chapter=3, ending_context="fin", starting_context="inicio"),
    )


@pytest.mark.asyncio
async def test_delete_renumbers_remaining_chapters():
    events = []
    option = ResolutionOption(
        id="delete-keep-first", type=ResolutionType.DELETE, label="Eliminar", description="", chapters_to_delete=[3]
    )
    updated = await ResolutionExecutor(ScriptedLLM()).execute(CONTENT, _issue(), option, on_progress=events.append)

    assert [b.number for b in split_chapters(updated)] == [1, 2, 3]
    assert chapter_body(updated, 3) == "Texto original del capítulo 4."
    assert [e.phase for e in events] == ["resolving", "completed"]


@pytest.mark.asyncio
async def test_delete_unknown_chapter_leaves_content_untouched():
    option = ResolutionOption(
        id="delete-keep-first", type=ResolutionType.DELETE, label="Eliminar", description="", chapters_to_delete=[3, 9]
    )
    with pytest.raises(StructuralResolutionError) as excinfo:
        await ResolutionExecutor(ScriptedLLM()).execute(CONTENT, _issue(), option)
    assert excinfo.value.option_id == "delete-keep-first"


@pytest.mark.asyncio
async def test_merge_replaces_first_and_drops_second():
    llm = ScriptedLLM(LONG_TEXT)
    option = ResolutionOption(
        id="merge-2-3", type=ResolutionType.MERGE, label="Fusionar", description="", chapters_to_merge=[2, 3]
    )
    updated = await ResolutionExecutor(llm).execute(CONTENT, _issue(), option)

    assert [b.number for b in split_chapters(updated)] == [1, 2, 3]
    assert chapter_body(updated, 2) == LONG_TEXT.strip()
    assert chapter_body(updated, 3) == "Texto original del capítulo 4."
    assert llm.calls[0]["temperature"] == 0.6
    assert llm.calls[0]["max_tokens"] == 5000


@pytest.mark.asyncio
async def test_short_rewrite_fails_and_reports_error():
    events = []
    option = ResolutionOption(
        id="rewrite-3",
        type=ResolutionType.REWRITE,
        label="Reescribir",
        description="",
        chapters_to_rewrite=[3],
        rewrite_mode=RewriteMode.NEW_EVENTS,
    )
    with pytest.raises(StructuralResolutionError) as excinfo:
        await ResolutionExecutor(ScriptedLLM("Demasiado corto.")).execute(CONTENT, _issue(), option, events.append)

    assert excinfo.value.option_id == "rewrite-3"
    assert events[-1].phase == "error"


@pytest.mark.asyncio
async def test_vary_occurrences_rewrites_each_chapter_with_rising_temperature():
    llm = ScriptedLLM(LONG_TEXT, LONG_TEXT.replace("gris", "rojo"))
    option = ResolutionOption(
        id="vary-all-scenes",
        type=ResolutionType.REWRITE,
        label="Variar",
        description="",
        chapters_to_rewrite=[2, 4],
        rewrite_mode=RewriteMode.VARY_OCCURRENCES,
    )
    updated = await ResolutionExecutor(llm).execute(CONTENT, _issue(chapters=(1, 2, 4)), option)

    assert [c["temperature"] for c in llm.calls] == [0.8, 0.9]
    assert "gris" in chapter_body(updated, 2)
    assert "rojo" in chapter_body(updated, 4)
    assert chapter_body(updated, 1) == "Texto original del capítulo 1."
    assert "Es el último capítulo." in llm.calls[1]["messages"][1]["content"]


@pytest.mark.asyncio
async def test_failed_second_rewrite_writes_nothing():
    llm = ScriptedLLM(LONG_TEXT, LLMError("quota"))
    option = ResolutionOption(
        id="vary-all-scenes",
        type=ResolutionType.REWRITE,
        label="Variar",
        description="",
        chapters_to_rewrite=[2, 3],
        rewrite_mode=RewriteMode.VARY_OCCURRENCES,
    )
    with pytest.raises(StructuralResolutionError, match="quota"):
        await ResolutionExecutor(llm).execute(CONTENT, _issue(), option)


@pytest.mark.asyncio
async def test_modify_b_uses_conflict_details():
    llm = ScriptedLLM(LONG_TEXT)
    issue = _issue(
        StructuralIssueType.CONTINUITY_CONFLICT,
        chapters=(1, 4),
        conflict_details=ContinuityConflict(chapter_a=1, chapter_b=4),
    )
    option = ResolutionOption(id="modify-b-4", type=ResolutionType.MODIFY_B, label="Modificar", description="")
    updated = await ResolutionExecutor(llm).execute(CONTENT, issue, option)

    assert chapter_body(updated, 4) == LONG_TEXT.strip()
    assert chapter_body(updated, 1) == "Texto original del capítulo 1."
    assert llm.calls[0]["temperature"] == 0.4


@pytest.mark.asyncio
async def test_transition_end_and_start():
    end = await ResolutionExecutor(ScriptedLLM(PASSAGE)).execute(CONTENT, _issue(), _transition(TransitionPosition.END))
    assert chapter_body(end, 2) == f"Texto original del capítulo 2.\n\n{PASSAGE}"
    assert chapter_body(end, 3) == "Texto original del capítulo 3."

    start = await ResolutionExecutor(ScriptedLLM(PASSAGE)).execute(CONTENT, _issue(), _transition(TransitionPosition.START))
    assert chapter_body(start, 3) == f"{PASSAGE}\n\nTexto original del capítulo 3."
    assert chapter_body(start, 2) == "Texto original del capítulo 2."


@pytest.mark.asyncio
async def test_transition_both_splits_sections():
    reply = f"---CIERRE---\n{PASSAGE}\n---APERTURA---\nAmaneció despacio sobre los tejados."
    updated = await ResolutionExecutor(ScriptedLLM(reply)).execute(CONTENT, _issue(), _transition(TransitionPosition.BOTH))

    assert chapter_body(updated, 2).endswith(PASSAGE)
    assert chapter_body(updated, 3).startswith("Amaneció despacio sobre los tejados.")
    assert "---" not in updated


@pytest.mark.asyncio
async def test_transition_both_without_sections_inserts_single_passage():
    updated = await ResolutionExecutor(ScriptedLLM(PASSAGE)).execute(CONTENT, _issue(), _transition(TransitionPosition.BOTH))
    assert chapter_body(updated, 2).endswith(PASSAGE)
    assert chapter_body(updated, 3) == "Texto original del capítulo 3."


@pytest.mark.asyncio
async def test_async_progress_reporter_is_awaited():
    seen = []

    async def reporter(event):
        seen.append(event.phase)

    option = ResolutionOption(
        id="delete-keep-first", type=ResolutionType.DELETE, label="Eliminar", description="", chapters_to_delete=[4]
    )
    await ResolutionExecutor(ScriptedLLM()).execute(CONTENT, _issue(), option, reporter)
    assert seen == ["resolving", "completed"]


def test_split_transition_sections_accepts_english_delimiters():
    assert split_transition_sections("---CLOSE--- fin ---OPEN--- inicio") == ("fin", "inicio")
    assert split_transition_sections("---CIERRE---\n\n---APERTURA--- x") is None
    assert split_transition_sections("sin delimitadores") is None


@pytest.mark.asyncio
async def test_modify_long_chapter_keeps_text_past_the_edit_window():
    paragraphs = [
        f"Párrafo {n}: el viento golpeaba las ventanas del faro mientras Marta repasaba las cuentas del invierno."
        for n in range(200)
    ]
    long_body = "\n\n".join(paragraphs)
    content = f"Capítulo 1\n\nTexto original del capítulo 1.\n\nCapítulo 2\n\n{long_body}\n"

    class EchoLLM:
        """Returns the chapter text it was shown, unchanged."""

        def __init__(self):
            self.shown = None

        def chat(self, messages, temperature=None, max_tokens=None):
            prompt = messages[-1]["content"]
            self.shown = prompt.split(FRAGMENT_NOTE, 1)[1].split("\n\nINSTRUCCIONES", 1)[0]
            return self.shown

    llm = EchoLLM()
    issue = _issue(
        StructuralIssueType.CONTINUITY_CONFLICT,
        chapters=(1, 2),
        conflict_details=ContinuityConflict(chapter_a=1, chapter_b=2),
    )
    option = ResolutionOption(id="modify-b-2", type=ResolutionType.MODIFY_B, label="Modificar", description="")
    updated = await ResolutionExecutor(llm).execute(content, issue, option)

    assert len(long_body) > MODIFY_CHAPTER_CHARS
    assert len(llm.shown) <= MODIFY_CHAPTER_CHARS
    assert chapter_body(updated, 2) == long_body
    assert chapter_body(updated, 1) == "Texto original del capítulo 1."


def test_split_editable_head_cuts_on_paragraph_break():
    assert split_editable_head("corto", limit=100) == ("corto", "")
    head, tail = split_editable_head("aaaa\n\nbbbb\n\ncccc", limit=8)
    assert (head, tail) == ("aaaa", "\n\nbbbb\n\ncccc")
    assert split_editable_head("x" * 10, limit=4) == ("xxxx", "xxxxxx")
