"""
DOCX Merger - binds generated SOW content into a Word template.

Placeholder syntax in templates:
    Scalar:  {project_title}
    Loop:    {#deliverables}{name} - {description}{/deliverables}

A loop whose tags share one paragraph repeats the inline text between
them. A loop that closes in a later paragraph repeats everything between
the two tags: the text after {#name}, the paragraphs/tables in between
and the text before {/name}. Text outside the tags stays once, and tag
paragraphs left empty are dropped. In a table row whose first cell starts
with {#name} and whose last cell ends with {/name}, the whole row repeats.
Loops nest, and inside a loop the current record's fields shadow the
outer bindings.

Tags are resolved in the body, in table cells and in headers/footers.
A tag split across runs is handled: a paragraph containing tags is
collapsed into its first run, which keeps that run's formatting.

FAILURES:
- MalformedTemplate: the bytes are not an openable .docx package
- MergeError: one or more tags could not be resolved (all are reported)
"""
import copy
import io
import logging
import re
import zipfile
from collections import ChainMap
from typing import Any, Dict, List, Optional, Tuple

from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from docx.oxml.ns import qn
from docx.text.paragraph import Paragraph
from lxml import etree

from models import GeneratedContent
from utils.errors import AppError

logger = logging.getLogger(__name__)

DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

TAG_RE = re.compile(r"\{([#/]?)([A-Za-z_][A-Za-z0-9_.]*)\}")
# Row loop: {#name} leads the first cell, {/name} ends the last cell
ROW_OPEN_RE = re.compile(r"^\s*\{#([A-Za-z_][A-Za-z0-9_.]*)\}")
ROW_CLOSE_RE = re.compile(r"\{/([A-Za-z_][A-Za-z0-9_.]*)\}\s*$")

_UNRESOLVED = object()


class MalformedTemplate(AppError):
    error_code = "MALFORMED_TEMPLATE"
    status_code = 422


class MergeError(AppError):
    error_code = "MERGE_ERROR"
    status_code = 422

    def __init__(self, message: str, unresolved: Optional[List[str]] = None):
        super().__init__(message)
        self.unresolved = list(unresolved or [])


# ============================================================================
# BINDING MAP
# ============================================================================

def _wrap_text(values: List[str]) -> List[Dict[str, str]]:
    return [{"text": value} for value in values]


def build_binding_map(content: GeneratedContent) -> Dict[str, Any]:
    """
    Flatten generated content into the data passed to the template.

    String arrays are wrapped as {text: value} so loops use {text};
    structured arrays keep their field names; doc_merge_map goes last and
    may override anything above.
    """
    sow = content.sow
    data: Dict[str, Any] = {
        # Scalar fields
        "project_title": sow.project_title,
        "client_name": sow.client_name,
        "overview": sow.overview,
        "pricing_model": sow.pricing.model,
        "pricing_amount": _format_value(sow.pricing.amount),
        "pricing_currency": sow.pricing.currency,
        "pricing_notes": sow.pricing.notes,

        # Loop arrays of plain strings
        "objectives": _wrap_text(sow.objectives),
        "scope_included": _wrap_text(sow.scope_included),
        "scope_excluded": _wrap_text(sow.scope_excluded),
        "assumptions": _wrap_text(sow.assumptions),
        "terms": _wrap_text(sow.terms),

        # Loop arrays of records
        "deliverables": [d.model_dump() for d in sow.deliverables],
        "timeline": [t.model_dump() for t in sow.timeline],
        "risks": [r.model_dump() for r in sow.risks],

        # Nested loop: {#roles_responsibilities}{role}{#responsibilities}{text}{/responsibilities}{/roles_responsibilities}
        "roles_responsibilities": [
            {"role": rr.role, "responsibilities": _wrap_text(rr.responsibilities)}
            for rr in sow.roles_responsibilities
        ],
    }
    data.update(content.doc_merge_map)
    return data


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# ============================================================================
# MERGE ENGINE
# ============================================================================

class DocxMerger:
    """Renders {tag} / {#loop}...{/loop} placeholders in a .docx template."""

    def merge(self, template_bytes: bytes, data: Dict[str, Any]) -> bytes:
        document = self._open(template_bytes)
        errors: List[str] = []
        scope = ChainMap(dict(data))

        self._render_sequence(list(document.element.body), scope, errors)
        for part_element in self._header_footer_elements(document):
            self._render_sequence(list(part_element), scope, errors)

        if errors:
            unresolved = list(dict.fromkeys(errors))
            raise MergeError(f"Template merge failed: {'; '.join(unresolved)}", unresolved=unresolved)

        out = io.BytesIO()
        document.save(out)
        return out.getvalue()

    def merge_content(self, template_bytes: bytes, content: GeneratedContent) -> bytes:
        data = build_binding_map(content)
        logger.debug(f"Rendering DOCX template with placeholders: {sorted(data)}")
        return self.merge(template_bytes, data)

    # ------------------------------------------------------------------

    def _open(self, template_bytes: bytes):
        if not template_bytes:
            raise MalformedTemplate("Template file is empty")
        try:
            return Document(io.BytesIO(template_bytes))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError, etree.XMLSyntaxError) as e:
            raise MalformedTemplate(f"Template is not a valid .docx file: {e}")

    def _header_footer_elements(self, document) -> List[Any]:
        elements = []
        seen = set()
        for section in document.sections:
            for part in (
                section.header, section.footer,
                section.first_page_header, section.first_page_footer,
                section.even_page_header, section.even_page_footer,
            ):
                # Linked parts have no definition of their own
                if part.is_linked_to_previous:
                    continue
                element = part._element
                if id(element) not in seen:
                    seen.add(id(element))
                    elements.append(element)
        return elements

    def _render_sequence(self, elements: List[Any], scope: ChainMap, errors: List[str]) -> None:
        i = 0
        while i < len(elements):
            element = elements[i]
            if element.tag == qn("w:p"):
                open_match = _find_block_open(_paragraph_text(element))
                if open_match is None:
                    self._render_paragraph(element, scope, errors)
                    i += 1
                    continue
                name = open_match.group(2)
                close = _find_block_close(elements, i, open_match)
                if close is None:
                    errors.append(f"Unclosed loop {{#{name}}}")
                    i += 1
                    continue
                close_index, close_match = close
                kept_tail = self._expand_block(
                    elements[i:close_index + 1], open_match, close_match, name, scope, errors
                )
                # Text after the close tag stays in place and may open another loop
                i = close_index if kept_tail else close_index + 1
                continue
            if element.tag == qn("w:tbl"):
                self._render_table(element, scope, errors)
            i += 1

    def _expand_block(self, span: List[Any], open_match, close_match, name: str, scope: ChainMap, errors: List[str]) -> bool:
        """
        Repeat the content between an open tag and a close tag in a later
        paragraph. Text around the tags in their own paragraphs belongs to
        the loop body (after the open tag, before the close tag) or stays
        outside it (before the open tag, after the close tag).
        """
        open_el, close_el = span[0], span[-1]
        open_text = _paragraph_text(open_el)
        close_text = _paragraph_text(close_el)
        before, head = open_text[:open_match.start()], open_text[open_match.end():]
        tail, after = close_text[:close_match.start()], close_text[close_match.end():]

        body = list(span[1:-1])
        if head.strip():
            body.insert(0, _paragraph_copy(open_el, head))
        if tail.strip():
            body.append(_paragraph_copy(close_el, tail))

        for child_scope in self._loop_scopes(name, scope, errors):
            clones = [copy.deepcopy(el) for el in body]
            for clone in clones:
                close_el.addprevious(clone)
            self._render_sequence(clones, child_scope, errors)

        for element in span[1:-1]:
            element.getparent().remove(element)
        if before.strip():
            _set_paragraph_text(open_el, before)
            self._render_paragraph(open_el, scope, errors)
        else:
            open_el.getparent().remove(open_el)
        if after.strip():
            _set_paragraph_text(close_el, after)
            return True
        close_el.getparent().remove(close_el)
        return False

    def _render_table(self, tbl, scope: ChainMap, errors: List[str]) -> None:
        for row in tbl.findall(qn("w:tr")):
            row_loop = _row_loop(row)
            if row_loop is None:
                for cell in row.findall(qn("w:tc")):
                    self._render_sequence(list(cell), scope, errors)
                continue

            # {#name} opens in the first cell and {/name} closes in the last: repeat the row
            name, first_p, first_text, last_p, last_text = row_loop
            _set_paragraph_text(first_p, ROW_OPEN_RE.sub("", first_text, count=1))
            _set_paragraph_text(last_p, ROW_CLOSE_RE.sub("", last_text, count=1))
            for child_scope in self._loop_scopes(name, scope, errors):
                clone = copy.deepcopy(row)
                row.addprevious(clone)
                for cell in clone.findall(qn("w:tc")):
                    self._render_sequence(list(cell), child_scope, errors)
            tbl.remove(row)

    def _render_paragraph(self, p_element, scope: ChainMap, errors: List[str]) -> None:
        text = _paragraph_text(p_element)
        if not TAG_RE.search(text):
            return
        _set_paragraph_text(p_element, self._render_inline(text, scope, errors))

    def _render_inline(self, text: str, scope: ChainMap, errors: List[str]) -> str:
        out = []
        pos = 0
        while True:
            match = TAG_RE.search(text, pos)
            if not match:
                out.append(text[pos:])
                break
            out.append(text[pos:match.start()])
            kind, name = match.group(1), match.group(2)
            if kind == "#":
                close = _find_inline_close(text, match.end(), name)
                if close is None:
                    errors.append(f"Unclosed loop {{#{name}}}")
                    pos = match.end()
                    continue
                inner = text[match.end():close.start()]
                for child_scope in self._loop_scopes(name, scope, errors):
                    out.append(self._render_inline(inner, child_scope, errors))
                pos = close.end()
            elif kind == "/":
                errors.append(f"Unexpected closing tag {{/{name}}}")
                pos = match.end()
            else:
                value = _lookup(name, scope)
                if value is _UNRESOLVED:
                    errors.append(f"Unresolved placeholder {{{name}}}")
                else:
                    out.append(_format_value(value))
                pos = match.end()
        return "".join(out)

    def _loop_scopes(self, name: str, scope: ChainMap, errors: List[str]) -> List[ChainMap]:
        value = _lookup(name, scope)
        if value is _UNRESOLVED:
            errors.append(f"Unresolved loop {{#{name}}}")
            return []
        if isinstance(value, (list, tuple)):
            return [scope.new_child(item if isinstance(item, dict) else {"text": item}) for item in value]
        if isinstance(value, dict):
            return [scope.new_child(value)]
        # Conditional section: render once when truthy
        return [scope] if value else []


def _lookup(name: str, scope: ChainMap) -> Any:
    head, *rest = name.split(".")
    if head not in scope:
        return _UNRESOLVED
    value = scope[head]
    for part in rest:
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _UNRESOLVED
    return value


def _paragraph_text(p_element) -> str:
    return "".join(run.text for run in Paragraph(p_element, None).runs)


def _set_paragraph_text(p_element, text: str) -> None:
    """Collapse the paragraph's runs into the first one, which keeps its formatting."""
    paragraph = Paragraph(p_element, None)
    runs = paragraph.runs
    if not runs:
        paragraph.add_run(text)
        return
    runs[0].text = text
    for run in runs[1:]:
        run._r.getparent().remove(run._r)


def _paragraph_copy(p_element, text: str):
    clone = copy.deepcopy(p_element)
    _set_paragraph_text(clone, text)
    return clone


def _find_block_open(text: str):
    """First {#name} in the paragraph that is not closed within it."""
    pos = 0
    while True:
        match = TAG_RE.search(text, pos)
        if not match:
            return None
        if match.group(1) != "#":
            pos = match.end()
            continue
        close = _find_inline_close(text, match.end(), match.group(2))
        if close is None:
            return match
        pos = close.end()


def _find_block_close(elements: List[Any], open_index: int, open_match) -> Optional[Tuple[int, Any]]:
    name = open_match.group(2)
    depth = 0
    for j in range(open_index, len(elements)):
        if elements[j].tag != qn("w:p"):
            continue
        start = open_match.end() if j == open_index else 0
        for match in TAG_RE.finditer(_paragraph_text(elements[j]), start):
            if match.group(2) != name or not match.group(1):
                continue
            if match.group(1) == "#":
                depth += 1
            elif depth == 0:
                return j, match
            else:
                depth -= 1
    return None


def _loop_balance(text: str, name: str) -> int:
    balance = 0
    for match in TAG_RE.finditer(text):
        if match.group(2) == name and match.group(1):
            balance += 1 if match.group(1) == "#" else -1
    return balance


def _edge_paragraph(cell, last: bool):
    paragraphs = [p for p in cell.findall(qn("w:p")) if _paragraph_text(p).strip()]
    if not paragraphs:
        return None
    return paragraphs[-1] if last else paragraphs[0]


def _row_loop(row) -> Optional[Tuple[str, Any, str, Any, str]]:
    cells = row.findall(qn("w:tc"))
    if len(cells) < 2:
        return None
    first_p, last_p = _edge_paragraph(cells[0], last=False), _edge_paragraph(cells[-1], last=True)
    if first_p is None or last_p is None:
        return None
    first_text, last_text = _paragraph_text(first_p), _paragraph_text(last_p)
    open_match, close_match = ROW_OPEN_RE.match(first_text), ROW_CLOSE_RE.search(last_text)
    if not open_match or not close_match or open_match.group(1) != close_match.group(1):
        return None
    name = open_match.group(1)
    if _loop_balance(first_text, name) != 1 or _loop_balance(last_text, name) != -1:
        return None
    return name, first_p, first_text, last_p, last_text


def _find_inline_close(text: str, start: int, name: str):
    depth = 0
    for match in TAG_RE.finditer(text, start):
        if match.group(2) != name or not match.group(1):
            continue
        if match.group(1) == "#":
            depth += 1
        elif depth == 0:
            return match
        else:
            depth -= 1
    return None


# ============================================================================
# SAMPLE TEMPLATE (mock blob store + template authoring)
# ============================================================================

def build_sample_template() -> bytes:
    """
    Build a structurally valid SOW template containing every placeholder
    bound by build_binding_map, so the whole pipeline can run without
    SharePoint. For a branded template, author one in Word and upload it.
    """
    document = Document()

    def loop(name: str, *lines: str, style: Optional[str] = None) -> None:
        document.add_paragraph(f"{{#{name}}}")
        for line in lines:
            document.add_paragraph(line, style=style)
        document.add_paragraph(f"{{/{name}}}")

    document.add_heading("STATEMENT OF WORK", level=0)
    document.add_heading("{project_title}", level=1)
    document.add_paragraph("Client: {client_name}")

    document.add_heading("1. Overview", level=2)
    document.add_paragraph("{overview}")

    document.add_heading("2. Objectives", level=2)
    loop("objectives", "{text}", style="List Bullet")

    document.add_heading("3. Scope", level=2)
    document.add_paragraph("Included:")
    loop("scope_included", "{text}", style="List Bullet")
    document.add_paragraph("Excluded:")
    loop("scope_excluded", "{text}", style="List Bullet")

    document.add_heading("4. Deliverables", level=2)
    document.add_paragraph("Summary: {#deliverables}{name}; {/deliverables}")
    loop("deliverables", "{name}: {description}", "Acceptance criteria: {acceptance_criteria}")

    document.add_heading("5. Timeline", level=2)
    timeline = document.add_table(rows=2, cols=2)
    timeline.cell(0, 0).text = "Milestone"
    timeline.cell(0, 1).text = "ETA"
    timeline.cell(1, 0).text = "{#timeline}{milestone}"
    timeline.cell(1, 1).text = "{eta}{/timeline}"

    document.add_heading("6. Roles and Responsibilities", level=2)
    document.add_paragraph("{#roles_responsibilities}")
    document.add_paragraph("{role}")
    loop("responsibilities", "{text}", style="List Bullet")
    document.add_paragraph("{/roles_responsibilities}")

    document.add_heading("7. Assumptions", level=2)
    loop("assumptions", "{text}", style="List Bullet")

    document.add_heading("8. Risks", level=2)
    loop("risks", "{risk} -> {mitigation}", style="List Bullet")

    document.add_heading("9. Pricing", level=2)
    table = document.add_table(rows=3, cols=2)
    for row, (label, value) in zip(table.rows, (
        ("Model", "{pricing_model}"),
        ("Amount", "{pricing_currency} {pricing_amount}"),
        ("Notes", "{pricing_notes}"),
    )):
        row.cells[0].text = label
        row.cells[1].text = value

    document.add_heading("10. Terms", level=2)
    loop("terms", "{text}", style="List Number")

    footer = document.sections[0].footer
    footer.paragraphs[0].text = "{client_name} - {project_title}"

    out = io.BytesIO()
    document.save(out)
    return out.getvalue()
