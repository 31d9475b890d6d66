from __future__ import annotations

import zipfile
from pathlib import Path

import pytest

from bookterm.archive import open_archive
from bookterm.manifest import (
    KIND_MARKUP,
    KIND_NON_TEXT,
    KIND_TEXT,
    MalformedPackageError,
    MissingRootError,
    classify_media_type,
    resolve_manifest,
)
from conftest import chapter_doc

NAV_DOC = """<?xml version="1.0" encoding="utf-8"?>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
  <head><title>Contents</title></head>
  <body>
    <nav epub:type="toc">
      <ol>
        <li><a href="ch1.xhtml">Opening</a></li>
        <li><a href="ch2.xhtml#start">The   Middle</a></li>
      </ol>
    </nav>
  </body>
</html>
"""

NCX_DOC = """<?xml version="1.0" encoding="UTF-8"?>
<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">
  <navMap>
    <navPoint id="p1" playOrder="1">
      <navLabel><text>First Part</text></navLabel>
      <content src="ch1.xhtml"/>
      <navPoint id="p1a" playOrder="2">
        <navLabel><text>Second Part</text></navLabel>
        <content src="ch2.xhtml"/>
      </navPoint>
    </navPoint>
  </navMap>
</ncx>
"""


def _docs() -> list[tuple[str, str, str]]:
    return [
        ("ch1", "ch1.xhtml", chapter_doc("One", "Alpha.")),
        ("ch2", "ch2.xhtml", chapter_doc("Two", "Beta.")),
        ("ch3", "ch3.xhtml", chapter_doc("Three", "Gamma.")),
    ]


def test_resolves_metadata_and_spine(make_epub) -> None:
    epub = make_epub(
        _docs(),
        authors=("Ada Writer", "Bo Coauthor"),
        extra_items=[("cover-img", "images/cover.jpg", "image/jpeg", b"\xff\xd8\xff")],
        extra_metadata='    <meta name="cover" content="cover-img"/>\n    <dc:publisher>Small Press</dc:publisher>',
    )
    with open_archive(epub) as handle:
        manifest = resolve_manifest(handle)

    meta = manifest.metadata
    assert manifest.opf_path == "OEBPS/content.opf"
    assert meta.title == "Sample Book"
    assert meta.authors == ("Ada Writer", "Bo Coauthor")
    assert meta.author == "Ada Writer, Bo Coauthor"
    assert meta.language == "en"
    assert meta.identifier == "urn:uuid:1234"
    assert meta.cover == "OEBPS/images/cover.jpg"
    assert meta.get("publisher") == ("Small Press",)
    assert [ref.path for ref in manifest.spine] == [
        "OEBPS/ch1.xhtml",
        "OEBPS/ch2.xhtml",
        "OEBPS/ch3.xhtml",
    ]
    assert [ref.index for ref in manifest.spine] == [0, 1, 2]
    assert manifest.ordered_content_refs[0] == ("OEBPS/ch1.xhtml", "application/xhtml+xml")
    assert all(ref.kind == KIND_MARKUP for ref in manifest.spine)


def test_spine_order_wins_over_archive_order(make_epub) -> None:
    epub = make_epub(_docs(), spine=["ch3", "ch1", "ch2"], reverse_entries=True)
    with open_archive(epub) as handle:
        manifest = resolve_manifest(handle)
    assert [ref.item_id for ref in manifest.spine] == ["ch3", "ch1", "ch2"]


def test_unknown_spine_id_is_malformed(make_epub) -> None:
    epub = make_epub(_docs(), spine=["ch1", "ghost", "ch2"])
    with open_archive(epub) as handle:
        with pytest.raises(MalformedPackageError, match="ghost"):
            resolve_manifest(handle)


def test_missing_container_is_missing_root(make_epub) -> None:
    epub = make_epub(_docs(), container=False)
    with open_archive(epub) as handle:
        with pytest.raises(MissingRootError):
            resolve_manifest(handle)


def test_container_without_rootfile_is_missing_root(tmp_path: Path) -> None:
    epub = tmp_path / "empty-root.epub"
    with zipfile.ZipFile(epub, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip")
        zf.writestr(
            "META-INF/container.xml",
            '<container xmlns="urn:oasis:names:tc:opendocument:xmlns:container"><rootfiles/></container>',
        )
    with open_archive(epub) as handle:
        with pytest.raises(MissingRootError):
            resolve_manifest(handle)


def test_unparsable_package_document_is_malformed(tmp_path: Path) -> None:
    epub = tmp_path / "broken.epub"
    with zipfile.ZipFile(epub, "w") as zf:
        zf.writestr(
            "META-INF/container.xml",
            '<container xmlns="urn:oasis:names:tc:opendocument:xmlns:container">'
            '<rootfiles><rootfile full-path="content.opf"/></rootfiles></container>',
        )
        zf.writestr("content.opf", "<package><manifest>")
    with open_archive(epub) as handle:
        with pytest.raises(MalformedPackageError):
            resolve_manifest(handle)


def test_non_text_spine_items_are_flagged(make_epub) -> None:
    docs = _docs() + [("pic", "plate.png", b"\x89PNG")]
    epub = make_epub(docs, media_types={"pic": "image/png"})
    with open_archive(epub) as handle:
        manifest = resolve_manifest(handle)
    assert manifest.spine[-1].kind == KIND_NON_TEXT
    assert manifest.spine[-1].media_type == "image/png"


def test_empty_spine_falls_back_to_manifest_markup(make_epub) -> None:
    epub = make_epub(_docs(), spine=[])
    with open_archive(epub) as handle:
        manifest = resolve_manifest(handle)
    assert [ref.item_id for ref in manifest.spine] == ["ch1", "ch2", "ch3"]


def test_toc_titles_from_nav_document(make_epub) -> None:
    epub = make_epub(
        _docs(),
        extra_items=[("nav", "nav.xhtml", "application/xhtml+xml", NAV_DOC)],
    )
    with open_archive(epub) as handle:
        manifest = resolve_manifest(handle)
    assert manifest.toc == {0: "Opening", 1: "The Middle"}


def test_toc_titles_from_ncx(make_epub) -> None:
    epub = make_epub(
        _docs(),
        extra_items=[("ncx", "toc.ncx", "application/x-dtbncx+xml", NCX_DOC)],
    )
    with open_archive(epub) as handle:
        manifest = resolve_manifest(handle)
    assert manifest.toc == {0: "First Part", 1: "Second Part"}


@pytest.mark.parametrize(
    ("media_type", "path", "expected"),
    [
        ("application/xhtml+xml", "a.xhtml", KIND_MARKUP),
        ("text/html; charset=utf-8", "a.html", KIND_MARKUP),
        ("text/plain", "a.txt", KIND_TEXT),
        ("image/jpeg", "a.jpg", KIND_NON_TEXT),
        (None, "a.htm", KIND_MARKUP),
        (None, "a.bin", KIND_NON_TEXT),
    ],
)
def test_classify_media_type(media_type: str | None, path: str, expected: str) -> None:
    assert classify_media_type(media_type, path) == expected

