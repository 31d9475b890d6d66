from __future__ import annotations

import logging
import warnings
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning

from .archive import ArchiveHandle, EntryMissingError, normalize_entry_name

logger = logging.getLogger(__name__)

CONTAINER_PATH = "META-INF/container.xml"
CONTAINER_NS = "urn:oasis:names:tc:opendocument:xmlns:container"
DC_NS = "http://purl.org/dc/elements/1.1/"
NCX_MEDIA_TYPE = "application/x-dtbncx+xml"

HTML_EXTS = (".xhtml", ".html", ".htm")
MARKUP_MEDIA_TYPES = {
    "application/xhtml+xml",
    "text/html",
    "application/xml",
    "text/xml",
    "application/x-dtbook+xml",
}

KIND_MARKUP = "markup"
KIND_TEXT = "text"
KIND_NON_TEXT = "non_text"


class PackageError(RuntimeError):
    """Base class for package document (OPF) resolution failures."""


class MissingRootError(PackageError):
    """Raised when META-INF/container.xml or its rootfile pointer is absent."""


class MalformedPackageError(PackageError):
    """Raised when the package document cannot be parsed or is inconsistent."""


@dataclass(frozen=True)
class BookMetadata:
    title: str | None = None
    authors: tuple[str, ...] = ()
    language: str | None = None
    cover: str | None = None
    identifier: str | None = None
    fields: tuple[tuple[str, tuple[str, ...]], ...] = ()

    @property
    def author(self) -> str | None:
        return ", ".join(self.authors) if self.authors else None

    def get(self, key: str) -> tuple[str, ...]:
        for name, values in self.fields:
            if name == key:
                return values
        return ()


@dataclass(frozen=True)
class ManifestItem:
    id: str
    href: str
    path: str
    media_type: str | None
    properties: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ContentRef:
    index: int
    item_id: str
    path: str
    media_type: str | None
    kind: str
    linear: bool = True


@dataclass(frozen=True)
class Manifest:
    opf_path: str
    metadata: BookMetadata
    items: dict[str, ManifestItem]
    spine: tuple[ContentRef, ...]
    toc: dict[int, str] = field(default_factory=dict)

    @property
    def ordered_content_refs(self) -> list[tuple[str, str | None]]:
        return [(ref.path, ref.media_type) for ref in self.spine]


def _strip_tag(tag: str) -> str:
    return tag.split("}", 1)[-1] if "}" in tag else tag


def _get_attr(elem: ET.Element, name: str) -> str | None:
    for attr, value in elem.attrib.items():
        if _strip_tag(attr) == name:
            return value
    return None


def _children(elem: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in elem if _strip_tag(child.tag) == name]


def _first_child(elem: ET.Element, name: str) -> ET.Element | None:
    for child in elem:
        if _strip_tag(child.tag) == name:
            return child
    return None


def _text_of(elem: ET.Element) -> str:
    return " ".join("".join(elem.itertext()).split())


def _resolve_relative_path(base_file: str, href: str) -> str:
    href = href.split("#", 1)[0]
    base = str(PurePosixPath(base_file).parent)
    if base not in ("", ".", "/"):
        combined = f"{base}/{href}"
    else:
        combined = href
    return normalize_entry_name(combined)


def classify_media_type(media_type: str | None, path: str) -> str:
    normalized = (media_type or "").split(";", 1)[0].strip().lower()
    if normalized in MARKUP_MEDIA_TYPES:
        return KIND_MARKUP
    if normalized == "text/plain":
        return KIND_TEXT
    if not normalized and path.lower().endswith(HTML_EXTS):
        return KIND_MARKUP
    return KIND_NON_TEXT


def _parse_xml(raw: str, what: str) -> ET.Element:
    try:
        return ET.fromstring(raw.lstrip("\ufeff").lstrip())
    except ET.ParseError as exc:
        raise MalformedPackageError(f"Cannot parse {what}: {exc}") from exc


def find_opf_path(handle: ArchiveHandle) -> str:
    # META-INF/container.xml -> rootfiles/rootfile@full-path
    try:
        container = handle.read_text(CONTAINER_PATH)
    except EntryMissingError as exc:
        raise MissingRootError(f"{CONTAINER_PATH} not found in {handle.path.name}") from exc
    root = _parse_xml(container, CONTAINER_PATH)
    for rf in root.iter(f"{{{CONTAINER_NS}}}rootfile"):
        full = rf.attrib.get("full-path")
        if full:
            return normalize_entry_name(full)
    for rf in root.iter("rootfile"):
        full = rf.attrib.get("full-path")
        if full:
            return normalize_entry_name(full)
    raise MissingRootError(f"No rootfile declared in {CONTAINER_PATH}")


def _parse_metadata(root: ET.Element, items: dict[str, ManifestItem]) -> BookMetadata:
    fields: dict[str, list[str]] = {}
    authors: list[str] = []
    cover_id: str | None = None
    metadata_el = _first_child(root, "metadata")
    elements = list(metadata_el.iter()) if metadata_el is not None else []
    for elem in elements:
        if not isinstance(elem.tag, str):
            continue
        if elem.tag.startswith(f"{{{DC_NS}}}"):
            key = _strip_tag(elem.tag)
            value = _text_of(elem)
            if not value:
                continue
            fields.setdefault(key, []).append(value)
            if key == "creator":
                role = (_get_attr(elem, "role") or "").lower()
                if role in ("", "aut", "author") and value not in authors:
                    authors.append(value)
        elif _strip_tag(elem.tag) == "meta":
            name = (_get_attr(elem, "name") or "").lower()
            content = _get_attr(elem, "content")
            if name == "cover" and content:
                cover_id = content.strip()

    cover: str | None = None
    if cover_id and cover_id in items:
        cover = items[cover_id].path
    if cover is None:
        for item in items.values():
            if "cover-image" in item.properties:
                cover = item.path
                break

    def _first(key: str) -> str | None:
        values = fields.get(key)
        return values[0] if values else None

    return BookMetadata(
        title=_first("title"),
        authors=tuple(authors),
        language=_first("language"),
        cover=cover,
        identifier=_first("identifier"),
        fields=tuple((key, tuple(values)) for key, values in fields.items()),
    )


def _parse_items(root: ET.Element, opf_path: str) -> dict[str, ManifestItem]:
    manifest_el = _first_child(root, "manifest")
    if manifest_el is None:
        raise MalformedPackageError("Package document has no <manifest>")
    items: dict[str, ManifestItem] = {}
    for child in _children(manifest_el, "item"):
        item_id = _get_attr(child, "id")
        href = _get_attr(child, "href")
        if not item_id or not href:
            logger.warning("Skipping manifest item without id/href: %s", child.attrib)
            continue
        properties = frozenset((_get_attr(child, "properties") or "").split())
        items[item_id] = ManifestItem(
            id=item_id,
            href=href,
            path=_resolve_relative_path(opf_path, href),
            media_type=_get_attr(child, "media-type"),
            properties=properties,
        )
    return items


def _parse_spine(
    root: ET.Element, items: dict[str, ManifestItem]
) -> tuple[tuple[ContentRef, ...], str | None]:
    spine_el = _first_child(root, "spine")
    if spine_el is None:
        raise MalformedPackageError("Package document has no <spine>")
    refs: list[ContentRef] = []
    for itemref in _children(spine_el, "itemref"):
        idref = _get_attr(itemref, "idref")
        if not idref or idref not in items:
            raise MalformedPackageError(f"Spine references unknown manifest id: {idref!r}")
        item = items[idref]
        refs.append(
            ContentRef(
                index=len(refs),
                item_id=idref,
                path=item.path,
                media_type=item.media_type,
                kind=classify_media_type(item.media_type, item.path),
                linear=(_get_attr(itemref, "linear") or "yes").lower() != "no",
            )
        )
    if not refs:
        logger.warning("Empty spine; falling back to manifest order of markup documents")
        for item in items.values():
            kind = classify_media_type(item.media_type, item.path)
            if kind != KIND_MARKUP or "nav" in item.properties:
                continue
            refs.append(
                ContentRef(
                    index=len(refs),
                    item_id=item.id,
                    path=item.path,
                    media_type=item.media_type,
                    kind=kind,
                )
            )
    return tuple(refs), _get_attr(spine_el, "toc")


def _parse_nav_document(html: str) -> list[tuple[str, str]]:
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
        soup = BeautifulSoup(html, "lxml")
    nav_tags = []
    for nav in soup.find_all("nav"):
        nav_type = (nav.get("epub:type") or "").lower()
        role = (nav.get("role") or "").lower()
        if "toc" in nav_type or role == "doc-toc":
            nav_tags.append(nav)
    if not nav_tags:
        nav_tags = soup.find_all("nav")
    entries: list[tuple[str, str]] = []
    for nav in nav_tags:
        for anchor in nav.find_all("a"):
            href = anchor.get("href")
            if not href:
                continue
            entries.append((href, " ".join(anchor.get_text(" ").split())))
    return entries


def _parse_ncx_document(xml_text: str) -> list[tuple[str, str]]:
    try:
        root = ET.fromstring(xml_text.lstrip("\ufeff").lstrip())
    except ET.ParseError:
        return []

    def _collect_points(elem: ET.Element, acc: list[tuple[str, str]]) -> None:
        for nav_point in _children(elem, "navPoint"):
            label_elem = next(
                (node for node in nav_point.iter() if _strip_tag(node.tag) == "text"), None
            )
            content_elem = _first_child(nav_point, "content")
            href = _get_attr(content_elem, "src") if content_elem is not None else None
            if href:
                text = _text_of(label_elem) if label_elem is not None else ""
                acc.append((href, text))
            _collect_points(nav_point, acc)

    entries: list[tuple[str, str]] = []
    nav_map = _first_child(root, "navMap")
    if nav_map is not None:
        _collect_points(nav_map, entries)
    return entries


def _resolve_toc(
    handle: ArchiveHandle,
    items: dict[str, ManifestItem],
    spine: tuple[ContentRef, ...],
    ncx_id: str | None,
) -> dict[int, str]:
    nav_candidates = [item.path for item in items.values() if "nav" in item.properties]
    ncx_candidates: list[str] = []
    if ncx_id and ncx_id in items:
        ncx_candidates.append(items[ncx_id].path)
    ncx_candidates.extend(
        item.path
        for item in items.values()
        if (item.media_type or "").lower() == NCX_MEDIA_TYPE and item.path not in ncx_candidates
    )

    entries: list[tuple[str, str]] = []
    for source, parse in (
        *((path, _parse_nav_document) for path in nav_candidates),
        *((path, _parse_ncx_document) for path in ncx_candidates),
    ):
        try:
            found = parse(handle.read_text(source))
        except EntryMissingError:
            logger.warning("Table of contents %s is missing from the archive", source)
            continue
        if found:
            entries = [(_resolve_relative_path(source, href), title) for href, title in found]
            break

    spine_map: dict[str, int] = {}
    for ref in spine:
        spine_map.setdefault(ref.path.casefold(), ref.index)
    toc: dict[int, str] = {}
    for path, title in entries:
        spine_index = spine_map.get(path.casefold())
        if spine_index is None or not title:
            continue
        toc.setdefault(spine_index, title)
    return toc


def resolve_manifest(handle: ArchiveHandle) -> Manifest:
    opf_path = find_opf_path(handle)
    try:
        opf_xml = handle.read_text(opf_path)
    except EntryMissingError as exc:
        raise MalformedPackageError(f"Package document {opf_path} not found") from exc
    root = _parse_xml(opf_xml, opf_path)
    if _strip_tag(root.tag) != "package":
        raise MalformedPackageError(f"{opf_path} is not a package document")
    items = _parse_items(root, opf_path)
    metadata = _parse_metadata(root, items)
    spine, ncx_id = _parse_spine(root, items)
    toc = _resolve_toc(handle, items, spine, ncx_id)
    logger.debug(
        "Resolved %s: %d manifest items, %d spine entries, %d toc titles",
        opf_path,
        len(items),
        len(spine),
        len(toc),
    )
    return Manifest(opf_path=opf_path, metadata=metadata, items=items, spine=spine, toc=toc)
