import pytest

from src.lightup.cleaner import MarkdownCleaner, ScanState, clean_core, clean_text


def _run(deltas: list[str]) -> list[str]:
    cleaner = MarkdownCleaner()
    pieces: list[str] = []
    for delta in deltas:
        pieces.extend(cleaner.feed(delta))
    pieces.extend(cleaner.finish())
    return pieces


@pytest.mark.parametrize(
    "sentence, expected",
    [
        ("The sky is blue.", "The sky is blue."),
        ("The sky is blue", "The sky is blue."),
        ("Is the sky blue?", "Is the sky blue?"),
        ('He said "stop."', 'He said "stop."'),
    ],
)
def test_clean_sentence_is_unchanged_apart_from_terminal_punctuation(sentence: str, expected: str) -> None:
    assert clean_text(sentence) == expected


def test_boilerplate_lead_in_is_stripped_across_deltas() -> None:
    pieces = _run(["Explanation of the Text: ", "The sky is blue. It", " is clear"])

    assert "".join(pieces) == "The sky is blue. It is clear."


def test_bold_lead_in_heading_is_dropped() -> None:
    assert clean_text("**Explanation of the Text:** The sky is blue.") == " The sky is blue."


def test_markdown_span_is_never_split() -> None:
    cleaner = MarkdownCleaner()

    first = cleaner.feed("Key facts: **sky")
    assert first == ["Key facts: "]
    assert cleaner.state is ScanState.MARKDOWN_SPAN

    second = cleaner.feed("** is blue.\n")
    assert second == ["**sky**", " is blue.", "\n"]
    assert cleaner.state is ScanState.PROSE


def test_bold_delimiter_split_between_deltas() -> None:
    pieces = _run(["Hello *", "*bold** done"])

    assert pieces == ["Hello ", "**bold**", " done."]


def test_adjacent_duplicate_sentence_is_skipped() -> None:
    assert clean_text("This is a repeated phrase. This is a repeated phrase.") == "This is a repeated phrase."


def test_repeated_substring_collapses_to_one() -> None:
    text = "the quick brown fox jumps the quick brown fox jumps over"

    assert clean_text(text) == "the quick brown fox jumps over."


def test_second_consecutive_heading_is_suppressed() -> None:
    assert clean_text("## Overview\n## Details\nText here") == "## Overview\nText here."


def test_bullets_are_normalised_without_terminal_punctuation() -> None:
    assert clean_text("* item one\n• second") == "- item one\n- second"


def test_spacing_around_punctuation() -> None:
    assert clean_text("Hello , world !") == "Hello, world!"
    assert clean_core("red;green", "sentence") == "red; green."


def test_unterminated_bold_is_unwrapped_at_end_of_stream() -> None:
    assert clean_text("**unterminated") == "unterminated."


def test_whitespace_only_delta_passes_through() -> None:
    cleaner = MarkdownCleaner()

    assert cleaner.feed("First line\n") == ["First line.\n"]
    assert cleaner.feed("\n") == ["\n"]


def test_numbered_items_keep_their_marker_and_get_no_period() -> None:
    assert clean_text("1. First item\n2. Second item\n") == "1. First item\n2. Second item\n"


def test_bullet_before_bold_term_keeps_single_space() -> None:
    assert clean_text("- **Term**: definition here\n") == "- **Term**: definition here.\n"


def test_fullwidth_terminators_end_sentences() -> None:
    cleaner = MarkdownCleaner()

    assert cleaner.feed("你好。世界") == ["你好。"]
    assert cleaner.finish() == ["世界."]


def test_long_unpunctuated_text_is_emitted_in_bounded_pieces() -> None:
    text = " ".join(f"word{index}" for index in range(4000))
    cleaner = MarkdownCleaner()

    streamed = cleaner.feed(text)
    pieces = streamed + cleaner.finish()

    assert len(streamed) > 50
    assert max(len(piece) for piece in pieces) <= 500
    assert "".join(pieces) == text + "."
