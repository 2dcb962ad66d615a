"""Book model helpers."""
from chaptersmith.models.book import Book, normalize_toc


def test_normalize_toc_drops_blank_and_non_string_entries():
    assert normalize_toc(["Intro", "", None, 3, "Core"]) == ["Intro", "Core"]


def test_normalize_toc_rejects_non_lists():
    assert normalize_toc(None) == []
    assert normalize_toc("Intro") == []
    assert normalize_toc({"0": "Intro"}) == []


def test_book_toc_uses_the_same_filtering():
    book = Book(title="Book", table_of_contents=["Intro", "", "Core"])

    assert book.toc == normalize_toc(book.table_of_contents) == ["Intro", "Core"]
