from __future__ import annotations

import zipfile
from pathlib import Path
from typing import Callable, Sequence

import pytest

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""


def xhtml(title: str, body: str) -> str:
    return f"""<?xml version="1.0" encoding="utf-8"?>
<html xmlns="http://www.w3.org/1999/xhtml">
  <head><title>{title}</title><style>p {{ margin: 0 }}</style></head>
  <body>
{body}
  </body>
</html>
"""


def chapter_doc(title: str, *paragraphs: str) -> str:
    body = [f"    <h1>{title}</h1>"]
    body.extend(f"    <p>{text}</p>" for text in paragraphs)
    return xhtml(title, "\n".join(body))


Document = tuple[str, str, "str | bytes"]


def build_epub(
    epub_path: Path,
    documents: Sequence[Document],
    *,
    title: str = "Sample Book",
    authors: Sequence[str] = ("Sample Author",),
    language: str = "en",
    spine: Sequence[str] | None = None,
    extra_items: Sequence[tuple[str, str, str, bytes | str]] = (),
    media_types: dict[str, str] | None = None,
    extra_metadata: str = "",
    container: bool = True,
    reverse_entries: bool = False,
) -> Path:
    """
    Write a minimal EPUB 3 package under OEBPS/.

    ``documents`` are (id, href, content) triples; ``spine`` defaults to their
    order. ``extra_items`` are (id, href, media-type, content) manifest
    entries kept out of the spine unless listed there.
    """
    media_types = media_types or {}
    creators = "\n".join(f"    <dc:creator>{name}</dc:creator>" for name in authors)
    items = [
        f'    <item id="{doc_id}" href="{href}" media-type="{media_types.get(doc_id, "application/xhtml+xml")}"/>'
        for doc_id, href, _ in documents
    ]
    for item_id, href, media, _ in extra_items:
        properties = ' properties="nav"' if item_id == "nav" else ""
        items.append(f'    <item id="{item_id}" href="{href}" media-type="{media}"{properties}/>')
    spine_ids = list(spine) if spine is not None else [doc_id for doc_id, _, _ in documents]
    itemrefs = "\n".join(f'    <itemref idref="{doc_id}"/>' for doc_id in spine_ids)
    opf_xml = f"""<?xml version="1.0" encoding="UTF-8"?>
<package version="3.0" unique-identifier="BookId" xmlns="http://www.idpf.org/2007/opf">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    <dc:title>{title}</dc:title>
{creators}
    <dc:language>{language}</dc:language>
    <dc:identifier id="BookId">urn:uuid:1234</dc:identifier>
{extra_metadata}
  </metadata>
  <manifest>
{chr(10).join(items)}
  </manifest>
  <spine>
{itemrefs}
  </spine>
</package>
"""
    entries: list[tuple[str, str | bytes]] = [("mimetype", "application/epub+zip")]
    if container:
        entries.append(("META-INF/container.xml", CONTAINER_XML))
    entries.append(("OEBPS/content.opf", opf_xml))
    entries.extend((f"OEBPS/{href}", content) for _, href, content in documents)
    entries.extend((f"OEBPS/{href}", content) for _, href, _, content in extra_items)
    if reverse_entries:
        entries = entries[:1] + list(reversed(entries[1:]))
    with zipfile.ZipFile(epub_path, "w") as zf:
        for name, content in entries:
            zf.writestr(name, content)
    return epub_path


@pytest.fixture
def make_epub(tmp_path: Path) -> Callable[..., Path]:
    counter = {"value": 0}

    def _make(documents: Sequence[Document] | None = None, **kwargs: object) -> Path:
        counter["value"] += 1
        if documents is None:
            documents = [
                ("ch1", "ch1.xhtml", chapter_doc("Chapter One", "This is the first chapter.")),
                ("ch2", "ch2.xhtml", chapter_doc("Chapter Two", "This is the second chapter.")),
                ("ch3", "ch3.xhtml", chapter_doc("Chapter Three", "This is the third chapter.")),
            ]
        target = tmp_path / f"book{counter['value']}.epub"
        return build_epub(target, documents, **kwargs)  # type: ignore[arg-type]

    return _make
