"""Object-key path templates.

A template such as ``logs/{host_id}/{year}/{month}/{day}/{hour}{minute}{second}-{unique}.log``
is compiled once at startup into a sequence of literal and variable tokens,
then rendered once per delivered segment.

Escapes: ``{{`` renders as ``{`` and ``}}`` renders as ``}``. Any other brace
must enclose one of the known variable names; anything else is rejected at
compile time so a bad template never surfaces mid-stream.
"""

import base64
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone

from stream_logs.errors import (
    TemplateError,
    UnknownVariableError,
    UnmatchedBraceError,
    UnterminatedBraceError,
)

VARIABLES = frozenset(
    ["host_id", "year", "month", "day", "hour", "minute", "second", "unique"]
)

# 15 random bytes encode to exactly 24 base32 characters, no padding needed.
UNIQUE_TOKEN_BYTES = 15


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Variable:
    name: str


def generate_unique_token() -> str:
    """Return a fresh collision-resistant token (24 chars of RFC 4648 base32)."""
    raw = secrets.token_bytes(UNIQUE_TOKEN_BYTES)
    return base64.b32encode(raw).decode("ascii").rstrip("=")


def _as_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


class PathTemplate:
    """A compiled path template. Build one with :meth:`compile`."""

    def __init__(self, source: str, tokens: tuple):
        self._source = source
        self._tokens = tokens
        self._variables = frozenset(t.name for t in tokens if isinstance(t, Variable))

    @classmethod
    def compile(cls, source: str) -> "PathTemplate":
        """Scan *source* left to right and produce a compiled template.

        Raises:
            UnknownVariableError: ``{name}`` where name is not a known variable.
            UnterminatedBraceError: a ``{`` with no closing ``}``.
            UnmatchedBraceError: a lone ``}`` outside a variable.
        """
        tokens: list = []
        literal: list[str] = []
        i = 0
        n = len(source)

        def flush_literal():
            if literal:
                tokens.append(Literal("".join(literal)))
                literal.clear()

        while i < n:
            c = source[i]
            if c == "{":
                if i + 1 < n and source[i + 1] == "{":
                    literal.append("{")
                    i += 2
                    continue
                end = source.find("}", i + 1)
                if end == -1:
                    raise UnterminatedBraceError(i)
                name = source[i + 1:end].strip()
                if name not in VARIABLES:
                    raise UnknownVariableError(name, i)
                flush_literal()
                tokens.append(Variable(name))
                i = end + 1
            elif c == "}":
                if i + 1 < n and source[i + 1] == "}":
                    literal.append("}")
                    i += 2
                    continue
                raise UnmatchedBraceError(i)
            else:
                literal.append(c)
                i += 1

        flush_literal()
        return cls(source, tuple(tokens))

    @property
    def source(self) -> str:
        return self._source

    @property
    def tokens(self) -> tuple:
        return self._tokens

    @property
    def needs_host_id(self) -> bool:
        return "host_id" in self._variables

    @property
    def needs_unique(self) -> bool:
        return "unique" in self._variables

    def render(self, timestamp: datetime, identity=None, unique: str = "") -> str:
        """Substitute variables using *timestamp* (converted to UTC), *identity*
        and the *unique* token. Pure: the same inputs give the same key."""
        if identity is None and self.needs_host_id:
            raise TemplateError("Template references {host_id} but no host identity was given")

        ts = _as_utc(timestamp)
        values = {
            "host_id": str(identity) if identity is not None else "",
            "year": f"{ts.year:04d}",
            "month": f"{ts.month:02d}",
            "day": f"{ts.day:02d}",
            "hour": f"{ts.hour:02d}",
            "minute": f"{ts.minute:02d}",
            "second": f"{ts.second:02d}",
            "unique": unique,
        }

        parts = []
        for token in self._tokens:
            if isinstance(token, Literal):
                parts.append(token.text)
            else:
                parts.append(values[token.name])
        return "".join(parts)

    def __repr__(self) -> str:
        return f"PathTemplate({self._source!r})"
