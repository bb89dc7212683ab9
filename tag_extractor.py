"""
Template Tag Extractor

Finds every tag a .docx template references.

Template syntax:
    {{client.name}}                  scalar substitution
    {#assignees} ... {/assignees}    loop / conditional block
    {^client.email} ... {/client.email}   inverted block (rendered when empty)

Word splits typed text into runs arbitrarily, so a tag like {{client.name}}
is often spread over several runs. Text is therefore read per paragraph
with python-docx before tags are parsed.

Stories scanned, in this order:
- the document body, tables and text boxes included
- section headers and footers
- footnotes and endnotes
"""
import io
import re
import zipfile
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Set, Tuple

from docx import Document
from docx.opc.constants import CONTENT_TYPE as CT
from docx.opc.exceptions import PackageNotFoundError
from docx.oxml import parse_xml
from docx.oxml.ns import qn
from docx.text.paragraph import Paragraph
from lxml import etree

from errors import MalformedTemplate
from tag_map import is_mapped

# {{ scalar }} | {#block} | {^block} | {/block}
TOKEN_PATTERN = re.compile(
    r'\{\{\s*(?P<scalar>[^{}<>\s][^{}<>]*?)\s*\}\}'
    r'|\{(?P<kind>[#^/])\s*(?P<block>[^{}<>\s][^{}<>]*?)\s*\}'
)

SCALAR = 'scalar'
BLOCK_OPEN = '#'
BLOCK_INVERTED = '^'
BLOCK_CLOSE = '/'

NOTE_CONTENT_TYPES = (CT.WML_FOOTNOTES, CT.WML_ENDNOTES)


@dataclass
class Token:
    """A tag occurrence inside text."""
    kind: str        # scalar, '#', '^' or '/'
    name: str
    start: int
    end: int

    @property
    def raw(self) -> str:
        if self.kind == SCALAR:
            return f"{{{{{self.name}}}}}"
        return f"{{{self.kind}{self.name}}}"


@dataclass
class Story:
    """One text flow of a document and the package part that holds it."""
    part_name: str          # zip member name, e.g. word/header1.xml
    element: Any            # w:body, w:hdr, w:ftr, w:footnotes or w:endnotes
    detached: bool = False  # parsed copy, not tracked by the Document


@dataclass
class TemplateInspection:
    """Summary of the tags used by a template."""
    scalar_tags: List[str] = field(default_factory=list)
    block_tags: List[str] = field(default_factory=list)

    @property
    def all_tags(self) -> Set[str]:
        return set(self.scalar_tags) | set(self.block_tags)

    @property
    def mapped_tags(self) -> List[str]:
        return sorted(tag for tag in self.all_tags if is_mapped(tag))

    @property
    def unmapped_tags(self) -> List[str]:
        return sorted(tag for tag in self.all_tags if not is_mapped(tag))


def iter_tokens(text: str) -> Iterator[Token]:
    """Yield tag tokens found in plain text, in order."""
    for match in TOKEN_PATTERN.finditer(text):
        if match.group('scalar') is not None:
            yield Token(SCALAR, match.group('scalar'), match.start(), match.end())
        else:
            yield Token(match.group('kind'), match.group('block'), match.start(), match.end())


# =============================================================================
# Reading .docx packages
# =============================================================================

def open_document(template_binary: bytes):
    """
    Load a template with python-docx.

    Raises:
        MalformedTemplate: not binary, not a zip archive, or not a Word document
    """
    if not isinstance(template_binary, (bytes, bytearray, memoryview)):
        raise MalformedTemplate("Template content must be binary")

    try:
        return Document(io.BytesIO(bytes(template_binary)))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError, etree.XMLSyntaxError) as e:
        raise MalformedTemplate(f"Template is not a valid .docx document: {e}") from e


def iter_stories(doc) -> Iterator[Story]:
    """
    Yield every story of a document that can hold tags.

    Body, header and footer elements are live: edits are saved with the
    Document. Footnotes and endnotes are parsed copies (detached), since
    python-docx does not model those parts.
    """
    yield Story(doc.part.partname.membername, doc.element.body)

    seen = {doc.part.partname}
    for section in doc.sections:
        for header_footer in (
            section.header, section.first_page_header, section.even_page_header,
            section.footer, section.first_page_footer, section.even_page_footer,
        ):
            # A linked header has no part of its own; asking for one would add it
            if header_footer.is_linked_to_previous:
                continue
            part = header_footer.part
            if part.partname in seen:
                continue
            seen.add(part.partname)
            yield Story(part.partname.membername, part.element)

    for part in doc.part.package.iter_parts():
        if part.content_type in NOTE_CONTENT_TYPES and part.partname not in seen:
            seen.add(part.partname)
            yield Story(part.partname.membername, parse_xml(part.blob), detached=True)


def iter_paragraphs(element) -> Iterator[Paragraph]:
    """All paragraphs below an element in document order, nested tables and text boxes included."""
    for p in element.iter(qn('w:p')):
        yield Paragraph(p, None)


def story_text(element) -> str:
    """Plain text of a story, one line per paragraph."""
    return '\n'.join(paragraph.text for paragraph in iter_paragraphs(element))


# =============================================================================
# Tag extraction
# =============================================================================

def _iter_template_tokens(template_binary: bytes) -> Iterator[Token]:
    for story in iter_stories(open_document(template_binary)):
        for paragraph in iter_paragraphs(story.element):
            yield from iter_tokens(paragraph.text)


def _collect(template_binary: bytes) -> Tuple[List[str], List[str]]:
    scalars: List[str] = []
    blocks: List[str] = []
    for token in _iter_template_tokens(template_binary):
        target = scalars if token.kind == SCALAR else blocks
        if token.name not in target:
            target.append(token.name)
    return scalars, blocks


def extract_tags(template_binary: bytes) -> Set[str]:
    """
    Return the deduplicated set of tag names used by a template.

    Block names ({#list}, {^flag}) are reported alongside scalar tags.
    """
    scalars, blocks = _collect(template_binary)
    return set(scalars) | set(blocks)


def extract_tags_ordered(template_binary: bytes) -> List[str]:
    """Tag names in first-seen order (scalars and blocks interleaved by story)."""
    seen: List[str] = []
    for token in _iter_template_tokens(template_binary):
        if token.name not in seen:
            seen.append(token.name)
    return seen


def inspect_template(template_binary: bytes) -> TemplateInspection:
    """Split a template's tags into scalar and block tags."""
    scalars, blocks = _collect(template_binary)
    return TemplateInspection(scalar_tags=scalars, block_tags=blocks)
