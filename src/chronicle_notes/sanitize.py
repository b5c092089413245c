"""HTML sanitization for user-supplied rich text.

Wraps nh3 with a user-generated-content allow-list extended for the note
editor's output: CSS classes, inline styles on text containers, tables,
@mention and entity preview links, and inline GM secrets.
"""
import copy
import re
from typing import Any, Dict, List, Optional, Set

import nh3

_EXTRA_TAGS = {
    "span", "div", "p",
    "table", "thead", "tbody", "tfoot", "tr", "td", "th", "colgroup", "col", "caption",
}


def _build_attributes() -> Dict[str, Set[str]]:
    attributes = {tag: set(attrs) for tag, attrs in nh3.ALLOWED_ATTRIBUTES.items()}
    # nh3 sets rel itself through link_rel; allowing it as well is an error.
    attributes["a"] = (attributes.get("a", set()) - {"rel"}) | {
        "data-mention-id",
        "data-entity-preview",
    }
    attributes["*"] = attributes.get("*", set()) | {"class"}
    for tag in ("span", "p", "div", "td", "th"):
        attributes[tag] = attributes.get(tag, set()) | {"style"}
    for tag in ("td", "th"):
        attributes[tag] |= {"colspan", "rowspan"}
    for tag in ("div", "span"):
        attributes[tag] |= {"data-type"}
    attributes["span"] |= {"data-secret"}
    return attributes


_TAGS = set(nh3.ALLOWED_TAGS) | _EXTRA_TAGS
_ATTRIBUTES = _build_attributes()

_SPAN_TAG_RE = re.compile(r"<(/?)span\b([^>]*)>", re.IGNORECASE)
_SECRET_ATTR_RE = re.compile(r"\bdata-secret\b", re.IGNORECASE)


def sanitize_html(html: Optional[str]) -> str:
    """Strip scripts, event handlers and javascript: URLs from editor HTML.

    Must run on every externally supplied HTML mirror before it is stored.
    """
    if not html:
        return ""
    return nh3.clean(html, tags=_TAGS, attributes=_ATTRIBUTES)


def strip_secrets_html(html: Optional[str]) -> str:
    """Remove inline GM secrets so the HTML can be shown to other readers.

    A secret span is dropped up to its matching close tag, including any
    spans nested inside it. An unterminated secret hides the rest of the text.
    """
    if not html:
        return ""
    parts: List[str] = []
    pos = 0
    depth = 0  # open spans inside the secret being dropped
    for match in _SPAN_TAG_RE.finditer(html):
        closing = bool(match.group(1))
        if depth:
            depth += -1 if closing else 1
            if depth == 0:
                pos = match.end()
        elif not closing and _SECRET_ATTR_RE.search(match.group(2)):
            parts.append(html[pos:match.start()])
            depth = 1
    if not depth:
        parts.append(html[pos:])
    return "".join(parts)


def _has_secret_mark(node: Dict[str, Any]) -> bool:
    marks = node.get("marks")
    if not isinstance(marks, list):
        return False
    return any(isinstance(m, dict) and m.get("type") == "secret" for m in marks)


def _strip_secret_nodes(node: Dict[str, Any]) -> None:
    children = node.get("content")
    if not isinstance(children, list):
        return
    kept = []
    for child in children:
        if isinstance(child, dict):
            if child.get("type") == "text" and _has_secret_mark(child):
                continue
            _strip_secret_nodes(child)
        kept.append(child)
    node["content"] = kept


def strip_secrets_json(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return a copy of an editor document without text marked ``secret``.

    The input is left untouched. Non-dict input is returned as is.
    """
    if not isinstance(doc, dict):
        return doc
    stripped = copy.deepcopy(doc)
    _strip_secret_nodes(stripped)
    return stripped
