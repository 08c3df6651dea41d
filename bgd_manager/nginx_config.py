"""
Typed nginx configuration tree.

Configuration is built from Directive and Block nodes and rendered to
text; nothing is produced by string substitution. parse_config() reads
rendered text back into the same node types so generated output can be
checked for structural validity before it reaches the proxy.
"""

import re
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Union

INDENT = "    "
_BARE_ARG = re.compile(r"^[^\s;{}#\"'\\]+$")


class NginxSyntaxError(ValueError):
    """Raised when configuration text is not structurally valid."""


@dataclass
class Comment:
    text: str


@dataclass
class Directive:
    """A simple directive, e.g. `server 127.0.0.1:8081 weight=9;`."""

    name: str
    args: Sequence[Union[str, int]] = ()
    comment: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name or not _BARE_ARG.match(self.name):
            raise NginxSyntaxError(f"Invalid directive name: {self.name!r}")
        self.args = tuple(str(a) for a in self.args)


@dataclass
class Block:
    """A block directive with children, e.g. `upstream name { ... }`."""

    name: str
    args: Sequence[Union[str, int]] = ()
    children: List["Node"] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.name or not _BARE_ARG.match(self.name):
            raise NginxSyntaxError(f"Invalid block name: {self.name!r}")
        self.args = tuple(str(a) for a in self.args)

    def add(self, *nodes: "Node") -> "Block":
        self.children.extend(nodes)
        return self

    def directives(self, name: str) -> List[Directive]:
        return [c for c in self.children if isinstance(c, Directive) and c.name == name]

    def blocks(self, name: str) -> List["Block"]:
        return [c for c in self.children if isinstance(c, Block) and c.name == name]


Node = Union[Comment, Directive, Block]


@dataclass
class ConfigFile:
    """Top-level configuration: the main context."""

    children: List[Node] = field(default_factory=list)

    def add(self, *nodes: Node) -> "ConfigFile":
        self.children.extend(nodes)
        return self

    def blocks(self, name: str) -> List[Block]:
        return [c for c in self.children if isinstance(c, Block) and c.name == name]

    def walk(self) -> Iterator[Block]:
        """Every block, depth first."""
        stack = [c for c in reversed(self.children) if isinstance(c, Block)]
        while stack:
            block = stack.pop()
            yield block
            stack.extend(c for c in reversed(block.children) if isinstance(c, Block))

    def render(self) -> str:
        lines: List[str] = []
        _render_nodes(self.children, 0, lines)
        return "\n".join(lines) + "\n"


def quote(arg: str) -> str:
    """Quote an argument if it contains characters nginx treats specially."""
    if arg and _BARE_ARG.match(arg):
        return arg
    escaped = arg.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _render_nodes(nodes: Sequence[Node], depth: int, lines: List[str]) -> None:
    pad = INDENT * depth
    for node in nodes:
        if isinstance(node, Comment):
            for text_line in node.text.splitlines() or [""]:
                lines.append(f"{pad}# {text_line}".rstrip())
        elif isinstance(node, Directive):
            parts = " ".join([node.name, *(quote(a) for a in node.args)])
            line = f"{pad}{parts};"
            if node.comment:
                line += f"  # {node.comment}"
            lines.append(line)
        else:
            head = " ".join([node.name, *(quote(a) for a in node.args)])
            lines.append(f"{pad}{head} {{")
            _render_nodes(node.children, depth + 1, lines)
            lines.append(f"{pad}}}")
            if depth <= 1:
                lines.append("")


def _tokenize(text: str) -> Iterator[tuple]:
    """Yield (kind, value, line) where kind is word, {, } or ;."""
    i, line, n = 0, 1, len(text)
    while i < n:
        ch = text[i]
        if ch == "\n":
            line += 1
            i += 1
        elif ch.isspace():
            i += 1
        elif ch == "#":
            while i < n and text[i] != "\n":
                i += 1
        elif ch in "{};":
            yield ch, ch, line
            i += 1
        elif ch in "\"'":
            start_line = line
            i += 1
            buf = []
            while i < n and text[i] != ch:
                if text[i] == "\\" and i + 1 < n:
                    buf.append(text[i + 1])
                    i += 2
                    continue
                if text[i] == "\n":
                    line += 1
                buf.append(text[i])
                i += 1
            if i >= n:
                raise NginxSyntaxError(f"Unterminated string starting on line {start_line}")
            i += 1
            yield "word", "".join(buf), start_line
        else:
            start = i
            while i < n and not text[i].isspace() and text[i] not in "{};\"'#":
                i += 1
            yield "word", text[start:i], line


def parse_config(text: str) -> ConfigFile:
    """
    Parse configuration text into a node tree.

    Raises:
        NginxSyntaxError: On unbalanced braces, unterminated directives or
            statements without a name
    """
    root = ConfigFile()
    stack: List[List[Node]] = [root.children]
    words: List[str] = []
    word_line = 0

    for kind, value, line in _tokenize(text):
        if kind == "word":
            if not words:
                word_line = line
            words.append(value)
        elif kind == ";":
            if not words:
                raise NginxSyntaxError(f"Empty statement on line {line}")
            stack[-1].append(Directive(words[0], words[1:]))
            words = []
        elif kind == "{":
            if not words:
                raise NginxSyntaxError(f"Block without a name on line {line}")
            block = Block(words[0], words[1:])
            stack[-1].append(block)
            stack.append(block.children)
            words = []
        else:
            if words:
                raise NginxSyntaxError(f"Directive '{words[0]}' on line {word_line} missing ';'")
            if len(stack) == 1:
                raise NginxSyntaxError(f"Unexpected '}}' on line {line}")
            stack.pop()

    if words:
        raise NginxSyntaxError(f"Directive '{words[0]}' on line {word_line} missing ';'")
    if len(stack) != 1:
        raise NginxSyntaxError("Unexpected end of file, expecting '}'")
    return root


def validate_structure(config: ConfigFile) -> None:
    """
    Semantic checks on a parsed configuration.

    Upstream names are unique, each upstream has at least one server and
    every proxy_pass names a declared upstream.

    Raises:
        NginxSyntaxError: If a check fails
    """
    upstreams = {}
    for block in config.walk():
        if block.name == "upstream":
            if len(block.args) != 1:
                raise NginxSyntaxError("upstream requires exactly one name")
            if not block.directives("server"):
                raise NginxSyntaxError(f"upstream {block.args[0]} has no servers")
            if block.args[0] in upstreams:
                raise NginxSyntaxError(f"duplicate upstream {block.args[0]!r}")
            upstreams[block.args[0]] = block

    for block in config.walk():
        for directive in block.directives("proxy_pass"):
            target = directive.args[0] if directive.args else ""
            name = re.sub(r"^https?://", "", target).split("/", 1)[0]
            if name not in upstreams:
                raise NginxSyntaxError(f"proxy_pass to undeclared upstream {target!r}")
