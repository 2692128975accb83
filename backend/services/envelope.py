# backend/services/envelope.py
"""
Tolerant codec for the JSON envelopes the personas answer with.

Models stream their envelope token by token, sometimes wrapped in a
markdown fence or preceded by a sentence of prose. Nothing here attempts a
full incremental JSON parse: we scan for the outermost object and fall back
to salvaging the primary field with a regex.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError

from core.errors import SchemaMismatch

PRIMARY_FIELDS = {
    "interviewer": "response",
    "coordinator": "message",
    "resumeCoordinator": "message",
    "setupVerifier": "message",
}

_ESCAPES = {'"': '"', "\\": "\\", "/": "/", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t"}

_QNUM_RE = re.compile(r'"questionNumber"\s*:\s*"?(\d+)')
_COMPLETE_RE = re.compile(r'"isInterviewComplete"\s*:\s*(true|false)')
_READY_RE = re.compile(r'"READY"\s*:\s*(true|false)')
_STR_FIELD_TPL = r'"%s"\s*:\s*"'
_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*")


class PartialEnvelope(ValueError):
    """Buffer does not (yet) contain a usable envelope."""


class InterviewerEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    response: str = ""
    questionNumber: int = 0
    isInterviewComplete: bool = False


class CoordinatorEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str = ""
    READY: bool = False
    role: Optional[str] = None
    focusArea: Optional[str] = None
    level: Optional[str] = None


def primary_field(instruction_type: Optional[str]) -> str:
    return PRIMARY_FIELDS.get(instruction_type or "", "response")


# ---------------------------
# Scanning helpers
# ---------------------------

def outermost_object(text: str) -> Optional[str]:
    """
    Brace-balanced scan from the first '{'. String and escape aware, so braces
    inside string values don't count. Returns None while the object is still open.
    """
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def partial_string_field(buffer: str, field: str) -> Optional[str]:
    """
    Decode the value of `"field": "..."` up to the closing quote or the end of
    the buffer. An escape sequence cut off by the end of the buffer is held
    back, so a longer buffer always decodes to an extension of a shorter one.
    Returns None when the field has not started yet.
    """
    m = re.search(_STR_FIELD_TPL % re.escape(field), buffer)
    if not m:
        return None
    out = []
    i = m.end()
    n = len(buffer)
    while i < n:
        ch = buffer[i]
        if ch == '"':
            break
        if ch != "\\":
            out.append(ch)
            i += 1
            continue
        if i + 1 >= n:
            break
        esc = buffer[i + 1]
        if esc != "u":
            out.append(_ESCAPES.get(esc, esc))
            i += 2
            continue
        code = _hex4(buffer, i + 2)
        if code is None:
            break
        if 0xD800 <= code <= 0xDBFF:
            # surrogate pair: need the low half too
            if buffer[i + 6:i + 8] != "\\u":
                if i + 8 > n:
                    break
                out.append("�")
                i += 6
                continue
            low = _hex4(buffer, i + 8)
            if low is None:
                break
            if 0xDC00 <= low <= 0xDFFF:
                out.append(chr(0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)))
                i += 12
                continue
            out.append("�")
            i += 6
            continue
        if 0xDC00 <= code <= 0xDFFF:
            out.append("�")
        else:
            out.append(chr(code))
        i += 6
    return "".join(out)


def _hex4(buffer: str, at: int) -> Optional[int]:
    chunk = buffer[at:at + 4]
    if len(chunk) < 4:
        return None
    try:
        return int(chunk, 16)
    except ValueError:
        return None


# ---------------------------
# Parsing
# ---------------------------

def parse_tolerant(text: str, field: str = "response") -> Dict[str, Any]:
    """
    (a) whole buffer as JSON, (b) outermost {...}, (c) regex salvage of the
    primary field plus the control flags. Raises PartialEnvelope when none work.
    """
    if text is None:
        raise PartialEnvelope("empty buffer")
    try:
        obj = json.loads(text)
        if isinstance(obj, dict):
            return obj
    except ValueError:
        pass

    blob = outermost_object(text)
    if blob is not None:
        try:
            obj = json.loads(blob)
            if isinstance(obj, dict):
                return obj
        except ValueError:
            pass

    salvaged: Dict[str, Any] = {}
    for name in {field, "response", "message"}:
        val = partial_string_field(text, name)
        if val is not None:
            salvaged[name] = val
    if field not in salvaged:
        raise PartialEnvelope(f"no '{field}' field in buffer")

    m = _QNUM_RE.search(text)
    if m:
        salvaged["questionNumber"] = int(m.group(1))
    m = _COMPLETE_RE.search(text)
    if m:
        salvaged["isInterviewComplete"] = m.group(1) == "true"
    m = _READY_RE.search(text)
    if m:
        salvaged["READY"] = m.group(1) == "true"
    for name in ("role", "focusArea", "level"):
        val = partial_string_field(text, name)
        if val:
            salvaged[name] = val
    return salvaged


def display_text(buffer: str, field: str = "response") -> str:
    """
    Human-readable text for a (possibly partial) buffer: the primary field
    when the model answers with an object, otherwise the prose before it,
    followed by the primary field once the object carries one. A longer
    buffer always displays an extension of a shorter one.
    """
    if not buffer:
        return ""
    body = _FENCE_RE.sub("", buffer, count=1)
    stripped = body.lstrip()
    if stripped.startswith("`") and "\n" not in stripped:
        # fence still arriving
        return ""
    if stripped.startswith("{"):
        return partial_string_field(stripped, field) or ""
    cut = body.find("{")
    prose = body if cut < 0 else body[:cut]
    fence = prose.find("```")
    if fence >= 0:
        prose = prose[:fence]
    else:
        # a fence may be half-way through arriving
        prose = prose.rstrip("`")
    prose = prose.lstrip()
    value = partial_string_field(body[cut:], field) if cut >= 0 else None
    if not value:
        return prose
    if prose and not prose[-1].isspace():
        prose += " "
    return prose + value


def split_incremental(prev: str, delta: str, field: str = "response") -> str:
    """Next display delta given the accumulated buffer and the newly arrived text."""
    before = display_text(prev, field)
    after = display_text(prev + delta, field)
    if after.startswith(before):
        return after[len(before):]
    return ""


class IncrementalSplitter:
    """
    Stream state for pre-flattening an envelope. Everything emitted so far is
    kept so the display string only ever grows.
    """

    def __init__(self, field: str = "response"):
        self.field = field
        self.buffer = ""
        self.emitted = ""

    def feed(self, delta: str) -> str:
        chunk = split_incremental(self.buffer, delta, self.field)
        self.buffer += delta
        self.emitted += chunk
        return chunk

    def finish(self, final_text: str) -> str:
        """
        Remaining display text once the full envelope is known. When what was
        streamed is neither a prefix of the final text nor already ends with
        it, the final text follows on a new paragraph.
        """
        if final_text.startswith(self.emitted):
            chunk = final_text[len(self.emitted):]
        elif not final_text.strip() or self.emitted.rstrip().endswith(final_text.strip()):
            chunk = ""
        else:
            chunk = "\n\n" + final_text
        self.emitted += chunk
        return chunk


# ---------------------------
# Validation
# ---------------------------

def validate_envelope(instruction_type: Optional[str], obj: Dict[str, Any]) -> BaseModel:
    model = InterviewerEnvelope if primary_field(instruction_type) == "response" else CoordinatorEnvelope
    try:
        return model.model_validate(obj)
    except PydanticValidationError as exc:
        raise SchemaMismatch(f"{instruction_type or 'model'} envelope invalid: {exc.errors()[0].get('msg')}")


def decode_envelope(instruction_type: Optional[str], text: str) -> BaseModel:
    """
    Parse and validate a finished model reply. A reply with no envelope at all
    is taken as plain prose in the primary field.
    """
    field = primary_field(instruction_type)
    try:
        obj = parse_tolerant(text, field)
    except PartialEnvelope:
        raw = (text or "").strip()
        obj = {field: raw if "{" not in raw else display_text(raw, field).strip()}
    if not obj.get(field) and text and "{" in text:
        # coordinators talk first and append the envelope after their prose
        prose = display_text(text[:text.find("{")], field).strip()
        if prose:
            obj = dict(obj, **{field: prose})
    return validate_envelope(instruction_type, obj)


def stored_display(content: str) -> str:
    """Display text of a stored model turn (canonical envelope JSON or legacy prose)."""
    if not content:
        return ""
    try:
        obj = json.loads(content)
    except ValueError:
        return display_text(content, "response") or content
    if isinstance(obj, dict):
        for key in ("response", "message", "text"):
            if isinstance(obj.get(key), str):
                return obj[key]
    return content
