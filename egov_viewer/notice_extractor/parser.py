"""Parsing utilities for e-Gov notice documents."""
from __future__ import annotations

import codecs
import logging
import re
import zipfile
from collections.abc import Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from hashlib import sha256
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from lxml import etree

if TYPE_CHECKING:
    from .extract import ExtractionOptions, UniversalRecord

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {
    ".xml",
    ".zip",
}

XML_DECLARATION_RE = re.compile(
    rb"^\s*<\?xml[^>]*?encoding\s*=\s*[\"']([A-Za-z0-9._\-]+)[\"']",
)
PSEUDO_ATTRIBUTE_RE = re.compile(r"([\w:\-]+)\s*=\s*(?:\"([^\"]*)\"|'([^']*)')")

DEFAULT_CASE_NAME = "読み込みファイル"
DEFAULT_PI_TARGET = "xml-stylesheet"


class MalformedXmlError(ValueError):
    """Raised when a document is not well-formed XML."""


@dataclass
class ElementNode:
    """One element of a parsed document.

    ``content`` is set only on leaves (elements without element children);
    internal nodes keep ``content`` as ``None`` even when they carry direct
    text. ``processing_instructions`` holds PI data and ``instruction_targets``
    the matching PI targets; both are populated on the root only.
    """

    name: str
    attributes: dict[str, str] = field(default_factory=dict)
    content: str | None = None
    children: list[ElementNode] = field(default_factory=list)
    processing_instructions: list[str] = field(default_factory=list)
    instruction_targets: list[str] = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def instructions(self) -> list[tuple[str, str]]:
        targets = self.instruction_targets
        return [
            (targets[index] if index < len(targets) else DEFAULT_PI_TARGET, data)
            for index, data in enumerate(self.processing_instructions)
        ]

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"name": self.name, "attributes": dict(self.attributes)}
        if self.content is not None:
            data["content"] = self.content
        data["children"] = [child.to_dict() for child in self.children]
        if self.processing_instructions:
            data["processing_instructions"] = list(self.processing_instructions)
            data["instruction_targets"] = list(self.instruction_targets)
        return data


@dataclass
class SourceDocument:
    """Decoded document text together with where it came from."""

    path: str
    name: str
    text: str

    @property
    def case_name(self) -> str:
        parts = PurePosixPath(self.path).parts
        if len(parts) > 1:
            return parts[0]
        return DEFAULT_CASE_NAME


@dataclass
class DocumentResult:
    """Outcome of extracting one source document."""

    source: SourceDocument
    tree: ElementNode | None = None
    record: UniversalRecord | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.record is not None

    @property
    def detected_xsl(self) -> str | None:
        if self.tree is None:
            return None
        return stylesheet_href(self.tree)


@dataclass
class FileScanResult:
    """Metadata captured during scanning of a single document."""

    file: str
    sha256: str
    status: str = "ok"
    error: str | None = None
    title: str | None = None
    section_count: int = 0
    row_count: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "file": self.file,
            "sha256": self.sha256,
            "status": self.status,
            "error": self.error,
            "title": self.title,
            "section_count": self.section_count,
            "row_count": self.row_count,
        }


def _qualified_name(name: str, nsmap: dict[str | None, str]) -> str:
    qname = etree.QName(name)
    if qname.namespace is None:
        return qname.localname
    for prefix, uri in nsmap.items():
        if uri == qname.namespace and prefix:
            return f"{prefix}:{qname.localname}"
    return qname.localname


def _namespace_declarations(element: etree._Element) -> dict[str, str]:
    parent = element.getparent()
    inherited = parent.nsmap if parent is not None else {}
    declared: dict[str, str] = {}
    for prefix, uri in element.nsmap.items():
        if inherited.get(prefix) == uri:
            continue
        declared["xmlns" if prefix is None else f"xmlns:{prefix}"] = uri
    return declared


def _leaf_text(element: etree._Element) -> str:
    parts = [element.text or ""]
    parts.extend(child.tail or "" for child in element)
    return "".join(parts).strip()


def _build_node(element: etree._Element) -> ElementNode:
    nsmap = element.nsmap
    attributes = _namespace_declarations(element)
    for key, value in element.attrib.items():
        attributes[_qualified_name(key, nsmap)] = value
    children = [
        _build_node(child) for child in element if isinstance(child.tag, str)
    ]
    return ElementNode(
        name=_qualified_name(element.tag, nsmap),
        attributes=attributes,
        content=None if children else _leaf_text(element),
        children=children,
    )


def _top_level_instructions(root: etree._Element) -> list[etree._ProcessingInstruction]:
    siblings = list(reversed(list(root.itersiblings(preceding=True))))
    siblings.extend(root.itersiblings())
    return [
        sibling for sibling in siblings if isinstance(sibling, etree._ProcessingInstruction)
    ]


def parse_xml(text: str | bytes) -> ElementNode:
    """Parse XML text into an :class:`ElementNode` tree.

    ``str`` input has already been decoded, so any encoding named in its XML
    declaration is ignored. ``bytes`` input honours the declaration.
    """
    if isinstance(text, str):
        data = text.encode("utf-8")
        xml_parser = etree.XMLParser(
            encoding="utf-8", resolve_entities=False, no_network=True
        )
    else:
        data = text
        xml_parser = etree.XMLParser(resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(data, xml_parser)
    except etree.XMLSyntaxError as exc:
        raise MalformedXmlError(f"XML parse failed: {exc}") from exc
    node = _build_node(root)
    instructions = _top_level_instructions(root)
    node.processing_instructions = [pi.text or "" for pi in instructions]
    node.instruction_targets = [pi.target for pi in instructions]
    return node


def to_xml(node: ElementNode) -> str:
    """Serialize a tree back to XML text.

    Tag names, attributes, leaf content and top-level processing
    instructions survive; text at internal nodes does not.
    """
    lines = ['<?xml version="1.0" encoding="UTF-8"?>']
    for target, data in node.instructions():
        lines.append(f"<?{target} {data}?>" if data else f"<?{target}?>")
    lines.append(_serialize_element(node))
    return "\n".join(lines)


def _escape_attribute(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("\t", "&#9;")
        .replace("\n", "&#10;")
        .replace("\r", "&#13;")
    )


def _escape_text(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace("\r", "&#13;")
    )


def _serialize_element(node: ElementNode) -> str:
    attributes = "".join(
        f' {key}="{_escape_attribute(value)}"' for key, value in node.attributes.items()
    )
    if node.children:
        inner = "".join(_serialize_element(child) for child in node.children)
        return f"<{node.name}{attributes}>{inner}</{node.name}>"
    return f"<{node.name}{attributes}>{_escape_text(node.content or '')}</{node.name}>"


def stylesheet_href(node: ElementNode) -> str | None:
    for data in node.processing_instructions:
        for match in PSEUDO_ATTRIBUTE_RE.finditer(data):
            if match.group(1) == "href":
                return match.group(2) if match.group(2) is not None else match.group(3)
    return None


def decode_document(raw: bytes) -> str:
    if raw.startswith(codecs.BOM_UTF8):
        return raw[len(codecs.BOM_UTF8):].decode("utf-8", errors="replace")
    encoding = "utf-8"
    match = XML_DECLARATION_RE.match(raw)
    if match:
        declared = match.group(1).decode("ascii")
        try:
            codecs.lookup(declared)
        except LookupError:
            logger.warning("Unknown encoding %r in XML declaration; using UTF-8", declared)
        else:
            encoding = declared
    return raw.decode(encoding, errors="replace")


def iter_supported_files(root: Path) -> Iterator[Path]:
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        if path.suffix.lower() in SUPPORTED_EXTENSIONS:
            yield path


def _is_xml_name(name: str) -> bool:
    return name.lower().endswith(".xml")


def iter_source_documents(path: Path, base_path: Path) -> Iterator[SourceDocument]:
    """Yield the XML documents held by ``path`` (an XML file or a zip archive)."""
    suffix = path.suffix.lower()
    if suffix == ".zip":
        with zipfile.ZipFile(path) as archive:
            for info in archive.infolist():
                if info.is_dir() or not _is_xml_name(info.filename):
                    continue
                try:
                    raw = archive.read(info)
                except (RuntimeError, NotImplementedError, zipfile.BadZipFile) as exc:
                    # Encrypted entries and unsupported compression land here.
                    logger.error("Skipping %s in %s: %s", info.filename, path.name, exc)
                    continue
                yield SourceDocument(
                    path=info.filename,
                    name=PurePosixPath(info.filename).name,
                    text=decode_document(raw),
                )
        return
    if suffix == ".xml":
        if path.is_relative_to(base_path):
            rel_file = str(path.relative_to(base_path).as_posix())
        else:
            rel_file = path.name
        yield SourceDocument(
            path=rel_file,
            name=path.name,
            text=decode_document(path.read_bytes()),
        )


def _extract_one(
    source: SourceDocument,
    options: ExtractionOptions | None,
) -> DocumentResult:
    from .extract import extract_universal_record

    try:
        tree = parse_xml(source.text)
    except MalformedXmlError as exc:
        logger.warning("Failed to parse %s: %s", source.path, exc)
        return DocumentResult(source=source, error=str(exc))
    record = extract_universal_record(tree, options)
    logger.debug("Extracted %s (%d sections)", source.path, len(record.sections))
    return DocumentResult(source=source, tree=tree, record=record)


def extract_documents(
    sources: Iterable[SourceDocument],
    *,
    options: ExtractionOptions | None = None,
    max_workers: int = 1,
) -> list[DocumentResult]:
    """Extract every source, isolating failures per document.

    Results come back in input order whatever ``max_workers`` is.
    """
    run = partial(_extract_one, options=options)
    if max_workers <= 1:
        return [run(source) for source in sources]
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(run, sources))


def _scan_result(result: DocumentResult) -> FileScanResult:
    digest = sha256(result.source.text.encode("utf-8")).hexdigest()
    if result.record is None:
        return FileScanResult(
            file=result.source.path,
            sha256=digest,
            status="error",
            error=result.error,
        )
    return FileScanResult(
        file=result.source.path,
        sha256=digest,
        title=result.record.title,
        section_count=len(result.record.sections),
        row_count=sum(len(section.rows) for section in result.record.sections),
    )


def collect_sources(target: Path, base_path: Path) -> list[SourceDocument]:
    paths = [target] if target.is_file() else list(iter_supported_files(target))
    sources: list[SourceDocument] = []
    for file_path in paths:
        try:
            sources.extend(iter_source_documents(file_path, base_path))
        except (OSError, zipfile.BadZipFile) as exc:
            logger.error("Failed to read %s: %s", file_path, exc)
    return sources


def scan_directory(
    target: Path,
    base_path: Path,
    *,
    options: ExtractionOptions | None = None,
    max_workers: int = 1,
) -> tuple[list[DocumentResult], dict[str, FileScanResult]]:
    sources = collect_sources(target, base_path)
    results = extract_documents(sources, options=options, max_workers=max_workers)
    files = {result.source.path: _scan_result(result) for result in results}
    return results, files


def group_cases(results: Iterable[DocumentResult]) -> dict[str, list[DocumentResult]]:
    cases: dict[str, list[DocumentResult]] = {}
    for result in results:
        cases.setdefault(result.source.case_name, []).append(result)
    return cases
