import fitz
import pytest

from conftest import pdf_text
from services.pdf_renderer import MARGIN, PAGE_HEIGHT, PAGE_WIDTH, TextPdfRenderer


@pytest.fixture
def renderer():
    return TextPdfRenderer()


def test_sets_condensed_title_and_author(renderer):
    output = renderer.render("Some text.", "Chapter 1: Basics", "Learning Things", author="Ann Author")

    with fitz.open(stream=output, filetype="pdf") as doc:
        assert doc.metadata["title"] == "Learning Things - Chapter 1: Basics (Condensed)"
        assert doc.metadata["author"] == "Ann Author"


def test_fixed_page_size(renderer):
    output = renderer.render("text", "Ch", "Book")

    with fitz.open(stream=output, filetype="pdf") as doc:
        rect = doc[0].rect
        assert (round(rect.width), round(rect.height)) == (round(PAGE_WIDTH), round(PAGE_HEIGHT))


def test_long_text_paginates_inside_margins(renderer):
    paragraph = "Condensation keeps the core ideas and drops the filler. " * 12
    text = "\n\n".join(paragraph for _ in range(40))

    output = renderer.render(text, "Long Chapter", "Book")

    with fitz.open(stream=output, filetype="pdf") as doc:
        assert doc.page_count > 1
        for page in doc:
            for x0, y0, x1, y1, *_ in page.get_text("words"):
                assert x0 >= MARGIN - 1
                assert x1 <= page.rect.width - MARGIN + 1
                assert y1 <= page.rect.height - MARGIN + 1


def test_markdown_structure_is_rendered_as_text(renderer):
    text = "# Heading\n\nIntro with **bold** words.\n\n- bullet one\n- bullet two\n\n1. step one\n\n```\ncode line\n```"

    output = renderer.render(text, "Chapter", "Book")
    rendered = pdf_text(output)

    assert "Heading" in rendered
    assert "Intro with bold words." in rendered
    assert "**" not in rendered
    assert "bullet one" in rendered
    assert "1. step one" in rendered
    assert "code line" in rendered
    assert "```" not in rendered


def test_chapter_title_comes_first(renderer):
    rendered = pdf_text(renderer.render("Body text.", "The Title", "Book"))
    assert rendered.index("The Title") < rendered.index("Body text.")


def test_very_long_word_is_broken(renderer):
    word = "x" * 500
    output = renderer.render(word, "Ch", "Book")

    rendered = pdf_text(output).replace("\n", "")
    assert rendered.count("x") == 500


@pytest.mark.parametrize("title, body", [
    ("Глава первая", "Привет, мир! Сжатый текст главы."),
    ("第一章", "这是压缩后的章节内容。"),
    ("Κεφάλαιο 1", "Καλημέρα κόσμε."),
])
def test_non_latin_text_survives_rendering(renderer, title, body):
    rendered = pdf_text(renderer.render(f"{body}\n\n- {body}", title, "Book"))

    assert title in rendered
    assert body in rendered
    assert "·" not in rendered


def test_markup_characters_are_not_interpreted(renderer):
    rendered = pdf_text(renderer.render("Use <b>tags</b> & entities like &amp; freely.", "Ch", "Book"))
    assert "Use <b>tags</b> & entities like &amp; freely." in rendered
