"""
Docx Template Renderer

Renders a .docx template against a generation context.

Rendering happens in three passes:
1. Paragraph normalisation with python-docx. Tags split across runs are
   pulled into the run where they start. Blocks whose opening and closing
   tags sit in different paragraphs are linked on the element tree:
   - both tags alone in their paragraphs: the two paragraphs are dropped and
     the bare tags stand between their neighbours, so the loop repeats whole
     paragraphs without leaving empty ones behind
   - otherwise the tags stay inside their runs and each iteration closes and
     reopens the same paragraph elements
   - opening and closing paragraphs in different containers (table cells,
     text boxes) raise RenderMismatch
2. Translation of every text part into a Jinja2 template rendered with XML
   autoescaping.
3. Each rendered part is parsed back; XML that does not parse raises
   RenderMismatch instead of producing a document Word cannot open.

Lookup rules:
- Names resolve against a scope stack, innermost block item first.
- None renders as "", booleans as true/false, newlines as Word line breaks.
- {#name}: list -> once per item, mapping -> once with the mapping as
  scope, other truthy value -> once, falsy -> skipped.
- {^name}: rendered only when the value is falsy.
- An unknown top-level name raises RenderMismatch. Inside a block an
  unknown name renders empty, since loop items are free-form records.
"""
import io
import json
import logging
import zipfile
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Tuple

from docx import Document
from docx.opc.oxml import serialize_part_xml
from docx.text.paragraph import Paragraph
from jinja2 import Environment, TemplateSyntaxError
from lxml import etree
from markupsafe import Markup, escape

from errors import RenderMismatch
from path_resolver import get_by_path
from tag_extractor import (
    BLOCK_CLOSE,
    BLOCK_INVERTED,
    BLOCK_OPEN,
    SCALAR,
    iter_paragraphs,
    iter_stories,
    iter_tokens,
    open_document,
)

logger = logging.getLogger(__name__)

LINE_BREAK = '</w:t><w:br/><w:t xml:space="preserve">'

DOCX_MIME_TYPE = 'application/vnd.openxmlformats-officedocument.wordprocessingml.document'


class TemplateRenderer(ABC):
    """Contract the generation pipeline needs from a renderer."""

    @abstractmethod
    def render(self, template_binary: bytes, context: Dict[str, Any]) -> bytes:
        """Render a template; raise RenderMismatch on tag/context conflicts."""


class DocxTemplateRenderer(TemplateRenderer):
    """
    Jinja2-backed renderer for {{tag}} / {#block} .docx templates.

    Usage:
        renderer = DocxTemplateRenderer()
        output = renderer.render(template_bytes, context)
    """

    def __init__(self, linebreaks: bool = True, paragraph_loop: bool = True):
        self.linebreaks = linebreaks
        self.paragraph_loop = paragraph_loop
        self.env = Environment(autoescape=True, keep_trailing_newline=True)
        self.env.globals.update(
            _value=self._value,
            _section=self._section,
            _inverted=self._inverted,
        )

    def render(self, template_binary: bytes, context: Dict[str, Any]) -> bytes:
        """
        Render a template against a context.

        Args:
            template_binary: Raw .docx bytes
            context: Generation context (not modified)

        Returns:
            The rendered .docx bytes

        Raises:
            MalformedTemplate: template is not a readable .docx
            RenderMismatch: unknown tag, unbalanced block, or a block layout
                that cannot produce valid document XML
        """
        doc = open_document(template_binary)

        spanning: Dict[str, List[str]] = {}
        detached: Dict[str, bytes] = {}
        for story in iter_stories(doc):
            logger.debug(f"Normalising {story.part_name}")
            spanning[story.part_name] = self.normalize_story(story.element)
            if story.detached:
                detached[story.part_name] = serialize_part_xml(story.element)

        normalized = io.BytesIO()
        doc.save(normalized)

        output = io.BytesIO()
        with zipfile.ZipFile(normalized) as zin:
            with zipfile.ZipFile(output, 'w', zipfile.ZIP_DEFLATED) as zout:
                for item in zin.infolist():
                    data = detached.get(item.filename)
                    if data is None:
                        data = zin.read(item.filename)
                    if item.filename in spanning:
                        logger.debug(f"Rendering {item.filename}")
                        data = self.render_part(data.decode('utf-8'), context, spanning[item.filename])
                    zout.writestr(item, data)
        return output.getvalue()

    # =========================================================================
    # Pass 1: paragraph normalisation
    # =========================================================================

    def normalize_story(self, element) -> List[str]:
        """
        Normalise every paragraph below a story element, in place.

        Returns:
            Names of blocks whose tags sit in different paragraphs
        """
        paragraphs = list(iter_paragraphs(element))
        for paragraph in paragraphs:
            merge_paragraph_runs(paragraph)
        return self._link_block_paragraphs(paragraphs)

    def _link_block_paragraphs(self, paragraphs: List[Paragraph]) -> List[str]:
        open_blocks: List[Tuple[str, str, Paragraph, bool]] = []
        spanning: List[str] = []
        collapse: List[Tuple[Paragraph, str]] = []

        for paragraph in paragraphs:
            text = _run_text(paragraph)
            tokens = list(iter_tokens(text))
            alone = len(tokens) == 1 and text.strip() == text[tokens[0].start:tokens[0].end]

            for token in tokens:
                raw = text[token.start:token.end]
                if token.kind in (BLOCK_OPEN, BLOCK_INVERTED):
                    open_blocks.append((token.name, raw, paragraph, alone))
                    continue
                if token.kind != BLOCK_CLOSE:
                    continue
                if not open_blocks or open_blocks[-1][0] != token.name:
                    # Unbalanced; translate() reports the offending tag
                    return spanning

                name, open_raw, open_paragraph, open_alone = open_blocks.pop()
                if open_paragraph._p is paragraph._p:
                    continue
                if open_paragraph._p.getparent() is not paragraph._p.getparent():
                    raise RenderMismatch(
                        tag=name,
                        explanation="Block opens and closes in different table cells or text boxes",
                    )
                spanning.append(name)
                if self.paragraph_loop and open_alone and alone:
                    collapse.append((open_paragraph, open_raw))
                    collapse.append((paragraph, raw))

        for paragraph, raw in collapse:
            _replace_with_text(paragraph._p, raw)
        return spanning

    # =========================================================================
    # Pass 2: translation to Jinja2
    # =========================================================================

    def translate(self, xml: str) -> str:
        """Translate tag syntax in normalised part XML into Jinja2 source."""
        out: List[str] = []
        stack: List[tuple] = []
        position = 0

        for token in iter_tokens(xml):
            out.append(_literal(xml[position:token.start]))
            position = token.end
            name = json.dumps(token.name)

            if token.kind == SCALAR:
                out.append(f"{{{{ _value(_scopes, {name}) }}}}")
            elif token.kind == BLOCK_OPEN:
                stack.append((BLOCK_OPEN, token.name))
                out.append(
                    f"{{% for _item in _section(_scopes, {name}) %}}"
                    f"{{% with _scopes = _scopes + [_item] %}}"
                )
            elif token.kind == BLOCK_INVERTED:
                stack.append((BLOCK_INVERTED, token.name))
                out.append(f"{{% if _inverted(_scopes, {name}) %}}")
            elif token.kind == BLOCK_CLOSE:
                if not stack:
                    raise RenderMismatch(
                        tag=token.name,
                        explanation="Closing tag has no matching opening tag",
                    )
                kind, opened = stack.pop()
                if opened != token.name:
                    raise RenderMismatch(
                        tag=token.name,
                        explanation=f"Closing tag does not match the open block '{opened}'",
                    )
                out.append("{% endwith %}{% endfor %}" if kind == BLOCK_OPEN else "{% endif %}")

        out.append(_literal(xml[position:]))

        if stack:
            raise RenderMismatch(tag=stack[-1][1], explanation="Block is never closed")
        return ''.join(out)

    # =========================================================================
    # Pass 3: render and check one part
    # =========================================================================

    def render_part(self, xml: str, context: Dict[str, Any], spanning: Optional[List[str]] = None) -> bytes:
        """Render one normalised text part; the result always parses as XML."""
        source = self.translate(xml)
        try:
            template = self.env.from_string(source)
        except TemplateSyntaxError as e:
            raise RenderMismatch(explanation=f"Template syntax error: {e.message}") from e

        rendered = template.render(_scopes=[context]).encode('utf-8')
        try:
            etree.fromstring(rendered)
        except etree.XMLSyntaxError as e:
            logger.error(f"Rendered part is not well formed: {e}")
            raise RenderMismatch(
                tag=spanning[0] if spanning else None,
                explanation="Block layout produces an invalid Word document",
            ) from e
        return rendered

    # =========================================================================
    # Lookup helpers (called from the generated Jinja2 source)
    # =========================================================================

    def _lookup(self, scopes: List[Any], name: str) -> Any:
        if name == '.':
            return scopes[-1]

        root = name.split('.', 1)[0]
        for scope in reversed(scopes):
            if isinstance(scope, Mapping) and root in scope:
                return get_by_path(scope, name)

        if len(scopes) > 1:
            return None
        raise RenderMismatch(tag=name, explanation="Tag is not defined in the generation context")

    def _value(self, scopes: List[Any], name: str) -> Markup:
        value = self._lookup(scopes, name)
        if value is None:
            text = ''
        elif isinstance(value, bool):
            text = 'true' if value else 'false'
        else:
            text = str(value)

        escaped = str(escape(text))
        if self.linebreaks:
            escaped = escaped.replace('\n', LINE_BREAK)
        return Markup(escaped)

    def _section(self, scopes: List[Any], name: str) -> List[Any]:
        value = self._lookup(scopes, name)
        if isinstance(value, (list, tuple)):
            return list(value)
        if isinstance(value, Mapping):
            return [value] if value else []
        return [{}] if value else []

    def _inverted(self, scopes: List[Any], name: str) -> bool:
        return not self._lookup(scopes, name)


def merge_paragraph_runs(paragraph: Paragraph) -> None:
    """Rewrite a paragraph's runs so no tag is split between two of them."""
    runs = paragraph.runs
    texts = [run.text for run in runs]
    if '{' not in ''.join(texts):
        return

    for run, before, after in zip(runs, texts, merge_split_tokens(texts)):
        if after != before:
            run.text = after


def merge_split_tokens(pieces: List[str]) -> List[str]:
    """
    Move each tag that spans several run texts into the run where it starts.

    Text outside tags stays in its original run, so formatting of the
    surrounding words survives.
    """
    pieces = list(pieces)
    while True:
        starts = []
        offset = 0
        for piece in pieces:
            starts.append(offset)
            offset += len(piece)

        for token in iter_tokens(''.join(pieces)):
            first = _piece_at(starts, pieces, token.start)
            last = _piece_at(starts, pieces, token.end - 1)
            if first == last:
                continue
            cut = token.end - starts[last]
            pieces[first] += ''.join(pieces[first + 1:last]) + pieces[last][:cut]
            for index in range(first + 1, last):
                pieces[index] = ''
            pieces[last] = pieces[last][cut:]
            break
        else:
            return pieces


def _piece_at(starts: List[int], pieces: List[str], position: int) -> int:
    for index in range(len(pieces) - 1, -1, -1):
        if pieces[index] and starts[index] <= position:
            return index
    return 0


def _run_text(paragraph: Paragraph) -> str:
    return ''.join(run.text for run in paragraph.runs)


def _replace_with_text(element, text: str) -> None:
    """Swap an element for bare text, keeping whatever text followed it."""
    parent = element.getparent()
    previous = element.getprevious()
    following = text + (element.tail or '')
    if previous is None:
        parent.text = (parent.text or '') + following
    else:
        previous.tail = (previous.tail or '') + following
    parent.remove(element)


def _literal(chunk: str) -> str:
    """Protect raw XML from being read as Jinja2 syntax."""
    if '{' not in chunk:
        return chunk
    return '{% raw %}' + chunk + '{% endraw %}'


def preview_text(document_binary: bytes) -> Optional[str]:
    """Paragraph text of a rendered document, for previews."""
    try:
        doc = Document(io.BytesIO(document_binary))
        return '\n'.join(p.text for p in doc.paragraphs)
    except Exception as e:
        logger.warning(f"Could not extract preview text: {e}")
        return None
