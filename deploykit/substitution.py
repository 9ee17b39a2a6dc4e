"""
DeployKit — Parameter Substitution
===================================

What:  Strict `${NAME}` interpolation for topology templates.
How:   A small scanner splits a template into literal text and references.
       Only two `$` forms are accepted:

           ${NAME}   reference, NAME matches [A-Z_][A-Z0-9_]*
           $$        a literal dollar sign

       Everything else that starts with `$` (`$[NAME]`, bare `$NAME`,
       `${` without a closing brace, `${}`, `${lower}`) raises
       MalformedReferenceError instead of passing through unsubstituted.
"""

import re
from typing import Collection, Iterator, List, Mapping, Optional, Tuple

from deploykit.exceptions import (
    MalformedReferenceError,
    MissingParameterError,
    UndeclaredParameterError,
)

NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")

# (kind, value, position) where kind is "text" or "ref"
Token = Tuple[str, str, int]


def _malformed_fragment(template: str, start: int) -> str:
    """Best-effort slice of the offending reference for error messages."""
    rest = template[start:]
    match = re.match(r"\$(\[[^\]]*\]?|\{[^}]*\}?|[A-Za-z0-9_]*)", rest)
    return match.group(0) if match else rest[:1]


def _scan(template: str) -> Iterator[Token]:
    i = 0
    text_start = 0
    length = len(template)
    while i < length:
        if template[i] != "$":
            i += 1
            continue

        if i > text_start:
            yield ("text", template[text_start:i], text_start)

        nxt = template[i + 1] if i + 1 < length else ""
        if nxt == "$":
            yield ("text", "$", i)
            i += 2
        elif nxt == "{":
            close = template.find("}", i + 2)
            if close == -1:
                raise MalformedReferenceError(template[i:], template, i)
            name = template[i + 2:close]
            if not NAME_PATTERN.match(name):
                raise MalformedReferenceError(template[i:close + 1], template, i)
            yield ("ref", name, i)
            i = close + 1
        else:
            raise MalformedReferenceError(_malformed_fragment(template, i), template, i)
        text_start = i

    if text_start < length:
        yield ("text", template[text_start:], text_start)


def find_references(template: str) -> List[str]:
    """Return referenced names in order of first appearance (deduplicated)."""
    seen: List[str] = []
    for kind, value, _ in _scan(template):
        if kind == "ref" and value not in seen:
            seen.append(value)
    return seen


def is_pure_reference(template: str) -> bool:
    """True when the template is exactly one `${NAME}` and nothing else."""
    tokens = list(_scan(template))
    return len(tokens) == 1 and tokens[0][0] == "ref"


def validate_references(template: str, allowed: Collection[str]) -> List[str]:
    """
    Check that every reference in `template` names an allowed parameter.

    Returns the referenced names so callers can aggregate them.

    Raises:
        MalformedReferenceError:  Syntax problem anywhere in the template.
        UndeclaredParameterError: A well-formed reference to an unknown name.
    """
    names = find_references(template)
    for name in names:
        if name not in allowed:
            raise UndeclaredParameterError(name, template)
    return names


def substitute(template: str, values: Mapping[str, Optional[str]]) -> str:
    """
    Replace every `${NAME}` with its value.

    Raises:
        MalformedReferenceError: Syntax problem anywhere in the template.
        MissingParameterError:   Referenced names with no (or empty) value;
                                 all of them are reported together.
    """
    parts: List[str] = []
    missing: List[str] = []
    for kind, value, _ in _scan(template):
        if kind == "text":
            parts.append(value)
            continue
        resolved = values.get(value)
        if resolved is None or resolved == "":
            missing.append(value)
            continue
        parts.append(str(resolved))
    if missing:
        raise MissingParameterError(missing, context={"template": template})
    return "".join(parts)
