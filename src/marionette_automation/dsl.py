"""Block DSL for plans.

Example::

    node 'db1' { address => '10.0.0.5', connection => 'ssh', groups => ['db'] }
    defaults { mongo_version => '7.0' }

    play 'app tier' on 'app' {
      become => true
      vars => { db_host => { group => 'db', fact => 'address' } }

      package { 'nginx': ensure => 'present', notify => ['reload nginx'] }
      handler 'reload nginx' {
        service { 'nginx': ensure => 'reloaded' }
      }
    }

The parser produces the same raw mapping a TOML plan decodes to, so the
inventory loader validates both forms the same way.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import PlanError

CONNECTION_OPTIONS = {"user", "port", "identity_file", "ssh_args"}


class DSLParseError(PlanError):
    """Raised when a plan written in the block DSL cannot be parsed."""

    def __init__(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        super().__init__(message)
        self.line = line
        self.column = column


@dataclass
class Token:
    type: str
    value: str
    position: int
    line: int
    column: int


class Tokenizer:
    SIMPLE_TOKENS = {
        "{": "LBRACE",
        "}": "RBRACE",
        "[": "LBRACKET",
        "]": "RBRACKET",
        ",": "COMMA",
        ":": "COLON",
    }
    ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}

    def __init__(self, text: str):
        self.text = text
        self.length = len(text)
        self.pos = 0
        self.line = 1
        self.column = 1

    def __iter__(self) -> Iterator[Token]:
        while self.pos < self.length:
            ch = self.text[self.pos]
            if ch.isspace():
                self._advance()
            elif ch == "#":
                self._skip_comment()
            elif ch in ("'", '"'):
                yield self._string()
            elif ch.isdigit() or (ch == "-" and self._peek(1).isdigit()):
                yield self._number()
            elif ch == "=" and self._peek(1) == ">":
                yield self._token("ARROW", 2)
            elif ch in self.SIMPLE_TOKENS:
                yield self._token(self.SIMPLE_TOKENS[ch], 1)
            elif ch.isalpha() or ch in "_./":
                yield self._identifier()
            else:
                raise DSLParseError(f"Unexpected character '{ch}'", line=self.line, column=self.column)
        yield Token("EOF", "", self.pos, self.line, self.column)

    def _token(self, token_type: str, width: int) -> Token:
        token = Token(token_type, self.text[self.pos:self.pos + width], self.pos, self.line, self.column)
        self._advance(width)
        return token

    def _string(self) -> Token:
        quote = self.text[self.pos]
        start, line, column = self.pos, self.line, self.column
        self._advance()
        chars: list[str] = []
        while self.pos < self.length:
            ch = self.text[self.pos]
            if ch == "\\":
                self._advance()
                if self.pos >= self.length:
                    break
                chars.append(self.ESCAPES.get(self.text[self.pos], self.text[self.pos]))
                self._advance()
                continue
            self._advance()
            if ch == quote:
                return Token("STRING", "".join(chars), start, line, column)
            chars.append(ch)
        raise DSLParseError("Unterminated string literal", line=line, column=column)

    def _identifier(self) -> Token:
        start, line, column = self.pos, self.line, self.column
        while self.pos < self.length and (self.text[self.pos].isalnum() or self.text[self.pos] in "_-./"):
            self._advance()
        return Token("IDENT", self.text[start:self.pos], start, line, column)

    def _number(self) -> Token:
        start, line, column = self.pos, self.line, self.column
        self._advance()
        while self.pos < self.length and (self.text[self.pos].isdigit() or self.text[self.pos] == "."):
            self._advance()
        return Token("NUMBER", self.text[start:self.pos], start, line, column)

    def _skip_comment(self) -> None:
        while self.pos < self.length and self.text[self.pos] != "\n":
            self._advance()

    def _peek(self, offset: int) -> str:
        idx = self.pos + offset
        return self.text[idx] if idx < self.length else ""

    def _advance(self, count: int = 1) -> None:
        for _ in range(count):
            if self.pos >= self.length:
                return
            if self.text[self.pos] == "\n":
                self.line += 1
                self.column = 1
            else:
                self.column += 1
            self.pos += 1


class DSLParser:
    def parse_text(self, text: str) -> dict[str, Any]:
        self.tokens: list[Token] = list(Tokenizer(text))
        self.index = 0
        raw: dict[str, Any] = {"hosts": {}, "groups": {}, "defaults": {}, "plays": []}
        while not self._match("EOF"):
            if self._check("IDENT", "node"):
                name, host = self._parse_node()
                raw["hosts"][name] = host
            elif self._check("IDENT", "group"):
                name, members = self._parse_group()
                raw["groups"].setdefault(name, []).extend(members)
            elif self._check("IDENT", "defaults"):
                self._advance()
                raw["defaults"].update(self._parse_block())
            elif self._check("IDENT", "play"):
                raw["plays"].append(self._parse_play())
            else:
                self._fail(f"Unexpected token '{self._peek().value}'")
        return raw

    def parse_file(self, path: Path) -> dict[str, Any]:
        return self.parse_text(Path(path).read_text())

    def _parse_node(self) -> tuple[str, dict[str, Any]]:
        self._consume("IDENT", "node")
        name = self._parse_string_like()
        attrs = self._parse_block()
        host: dict[str, Any] = {
            "connection": str(attrs.pop("connection", "local")),
            "groups": self._as_list(attrs.pop("groups", [])),
        }
        if "address" in attrs:
            host["address"] = str(attrs.pop("address"))
        variables = attrs.pop("variables", {})
        if not isinstance(variables, dict):
            self._fail("variables attribute must be a map")
        options = {key: attrs.pop(key) for key in list(attrs) if key in CONNECTION_OPTIONS}
        variables = dict(variables)
        variables.update(attrs)
        host["variables"] = variables
        host["options"] = options
        return name, host

    def _parse_group(self) -> tuple[str, list[str]]:
        self._consume("IDENT", "group")
        name = self._parse_string_like()
        if self._check("LBRACKET"):
            return name, [str(m) for m in self._parse_list()]
        attrs = self._parse_block()
        return name, [str(m) for m in self._as_list(attrs.get("hosts", []))]

    def _parse_play(self) -> dict[str, Any]:
        self._consume("IDENT", "play")
        play: dict[str, Any] = {"name": self._parse_string_like()}
        self._consume("IDENT", "on")
        play["hosts"] = self._parse_string_like()
        play["actions"] = []
        play["handlers"] = []
        self._consume("LBRACE")
        while not self._match("RBRACE"):
            if self._check_next("ARROW"):
                key = self._consume("IDENT").value
                self._consume("ARROW")
                play[key] = self._parse_value()
                self._match("COMMA")
            elif self._check("IDENT", "handler"):
                self._advance()
                name = self._parse_string_like()
                self._consume("LBRACE")
                action = self._parse_resource()
                self._consume("RBRACE")
                play["handlers"].append({"name": name, "action": action})
            else:
                play["actions"].append(self._parse_resource())
        return play

    def _parse_resource(self) -> dict[str, Any]:
        resource_type = self._consume("IDENT").value
        self._consume("LBRACE")
        title = self._parse_value()
        self._consume("COLON")
        attrs = self._parse_attributes()
        self._consume("RBRACE")
        data: dict[str, Any] = {"type": resource_type}
        if isinstance(title, list):
            if resource_type != "package":
                self._fail("Only package resources accept list titles")
            data["packages"] = [str(item) for item in title]
        else:
            data["name"] = str(title)
            if resource_type in {"file", "line"}:
                data.setdefault("path", data["name"])
        for key, value in attrs.items():
            if key == "ensure":
                data.setdefault("state", value)
            else:
                data[key] = value
        return data

    def _parse_block(self) -> dict[str, Any]:
        self._consume("LBRACE")
        attrs = self._parse_attributes()
        self._consume("RBRACE")
        return attrs

    def _parse_attributes(self) -> dict[str, Any]:
        attrs: dict[str, Any] = {}
        while not self._check("RBRACE"):
            key = self._consume("IDENT").value
            self._consume("ARROW")
            attrs[key] = self._parse_value()
            self._match("COMMA")
        return attrs

    def _parse_value(self) -> Any:
        token = self._peek()
        if token.type == "STRING":
            self._advance()
            return token.value
        if token.type == "NUMBER":
            self._advance()
            if token.value.startswith("0") and token.value.isdigit() and len(token.value) > 1:
                # File modes such as 0644 keep their octal spelling.
                return token.value
            try:
                return float(token.value) if "." in token.value else int(token.value)
            except ValueError:
                raise DSLParseError(
                    f"Invalid number '{token.value}'", line=token.line, column=token.column
                ) from None
        if token.type == "IDENT":
            self._advance()
            lowered = token.value.lower()
            if lowered in {"true", "false"}:
                return lowered == "true"
            return token.value
        if token.type == "LBRACKET":
            return self._parse_list()
        if token.type == "LBRACE":
            return self._parse_map()
        self._fail(f"Unexpected value token '{token.value}'")

    def _parse_list(self) -> list[Any]:
        values: list[Any] = []
        self._consume("LBRACKET")
        while not self._check("RBRACKET"):
            values.append(self._parse_value())
            self._match("COMMA")
        self._consume("RBRACKET")
        return values

    def _parse_map(self) -> dict[str, Any]:
        mapping: dict[str, Any] = {}
        self._consume("LBRACE")
        while not self._check("RBRACE"):
            key = self._consume("IDENT" if self._check("IDENT") else "STRING").value
            self._consume("ARROW")
            mapping[key] = self._parse_value()
            self._match("COMMA")
        self._consume("RBRACE")
        return mapping

    def _parse_string_like(self) -> str:
        token = self._peek()
        if token.type not in {"STRING", "IDENT"}:
            self._fail(f"Expected identifier or string but found '{token.value}'")
        self._advance()
        return token.value

    @staticmethod
    def _as_list(value: Any) -> list[Any]:
        if isinstance(value, list):
            return value
        return [value] if value else []

    def _match(self, token_type: str, value: Optional[str] = None) -> bool:
        if self._check(token_type, value):
            self._advance()
            return True
        return False

    def _check(self, token_type: str, value: Optional[str] = None) -> bool:
        token = self._peek()
        return token.type == token_type and (value is None or token.value == value)

    def _check_next(self, token_type: str) -> bool:
        idx = min(self.index + 1, len(self.tokens) - 1)
        return self._check("IDENT") and self.tokens[idx].type == token_type

    def _consume(self, token_type: str, value: Optional[str] = None) -> Token:
        if not self._check(token_type, value):
            detail = f" {value}" if value else ""
            self._fail(f"Expected {token_type}{detail} but found '{self._peek().value}'")
        return self._advance()

    def _fail(self, message: str) -> None:
        token = self._peek()
        raise DSLParseError(message, line=token.line, column=token.column)

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != "EOF":
            self.index += 1
        return token

    def _peek(self) -> Token:
        return self.tokens[self.index]
