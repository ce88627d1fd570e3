from services.repetition_search import (
    extract_ngram_phrases,
    extract_repetitive_phrases,
    find_all_occurrences,
    is_generic_issue,
)


def test_generic_issue_needs_vague_wording_and_vague_location():
    description = "La autora describe el dolor de cabeza de forma repetitiva a lo largo de la novela"
    assert is_generic_issue(description, "general") is True
    assert is_generic_issue(description, "") is True
    assert is_generic_issue(description, "Capítulo 3") is False
    assert is_generic_issue("Los ojos de Elena cambian de color", "general") is False


def test_specific_location_with_vague_marker_is_still_generic():
    assert is_generic_issue("Se repite frecuentemente", "Capítulo 2 y varios más") is True


def test_quoted_phrases_are_extracted_first():
    description = 'Se repite "el corazón le latía con fuerza" en varios capítulos'
    assert extract_repetitive_phrases(description) == ["el corazón le latía con fuerza"]


def test_lead_in_phrase():
    assert extract_repetitive_phrases("Usa frases como mirada penetrante, una y otra vez") == ["mirada penetrante"]


def test_verb_anchored_phrase_when_nothing_is_quoted():
    assert extract_repetitive_phrases("El autor repite la tos del abuelo en exceso") == ["la tos del abuelo en exceso"]


def test_no_phrase_in_plain_description():
    assert extract_repetitive_phrases("El ritmo decae") == []


def test_ngram_phrases_need_two_occurrences():
    content = (
        "Capítulo 1\n\nEl faro brillaba sobre la costa dormida.\n\n"
        "Capítulo 2\n\nDesde lejos se veía el faro encendido toda la noche.\n"
    )
    phrases = extract_ngram_phrases("El faro aparece demasiadas veces", content)
    assert len(phrases) == 1
    assert "faro" in phrases[0]
    assert 20 <= len(phrases[0]) <= 200

    assert extract_ngram_phrases("La costa aparece demasiadas veces", content) == []


def test_find_all_occurrences_tolerates_case_and_line_breaks():
    content = (
        "Capítulo 1\n\nEl corazón le latía con fuerza al verla.\n\n"
        "Capítulo 2\n\nOtra vez, el corazón le LATÍA\ncon fuerza en el pecho.\n"
    )
    found = find_all_occurrences(content, ["latía con fuerza"])

    assert [item.chapter_number for item in found] == [1, 2]
    assert [item.chapter_title for item in found] == ["Capítulo 1", "Capítulo 2"]
    assert found[0].position < found[1].position
    for item in found:
        assert content[item.position:item.position + len(item.text)] == item.text
        assert item.context.startswith("...") and item.context.endswith("...")
    assert found[1].text == "LATÍA\ncon fuerza"


def test_find_all_occurrences_sorts_across_phrases():
    content = "Capítulo 1\n\nbeta alfa beta.\n"
    found = find_all_occurrences(content, ["alfa", "beta", "   "])
    assert [item.text for item in found] == ["beta", "alfa", "beta"]
