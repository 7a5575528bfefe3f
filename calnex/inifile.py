"""Order-preserving INI documents with keys kept verbatim."""

from __future__ import annotations

from collections.abc import Iterator

DEFAULT_SECTION = "DEFAULT"

_DELIMITERS = "=:"
_COMMENT_CHARS = "#;"


class Section:
    """A named group of ``key=value`` pairs in insertion order."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._keys: dict[str, str] = {}

    def get(self, name: str, default: str = "") -> str:
        """Return the value of ``name``, or ``default`` when it is absent."""
        return self._keys.get(name, default)

    def __getitem__(self, name: str) -> str:
        return self._keys[name]

    def __setitem__(self, name: str, value: object) -> None:
        self._keys[name] = str(value)

    def __contains__(self, name: object) -> bool:
        return name in self._keys

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def items(self) -> list[tuple[str, str]]:
        """Return the key/value pairs in order."""
        return list(self._keys.items())

    def __repr__(self) -> str:
        return f"Section({self.name!r}, {self._keys!r})"


class IniFile:
    """An INI document: a default section followed by named sections."""

    def __init__(self) -> None:
        self._sections: dict[str, Section] = {
            DEFAULT_SECTION: Section(DEFAULT_SECTION)
        }

    def section(self, name: str) -> Section:
        """Return the section called ``name``, creating it if needed."""
        if not name:
            name = DEFAULT_SECTION
        if name not in self._sections:
            self._sections[name] = Section(name)
        return self._sections[name]

    def dumps(self) -> str:
        """Serialise the document in compact ``key=value`` form."""
        lines: list[str] = []
        for index, sec in enumerate(self._sections.values()):
            if index == 0 and sec.name == DEFAULT_SECTION:
                if not len(sec):
                    continue
            else:
                lines.append(f"[{sec.name}]")
            for key, value in sec.items():
                lines.append(f"{_format_key(key)}={_format_value(value)}")
        return "".join(line + "\n" for line in lines)

    def to_bytes(self) -> bytes:
        """Serialise the document as UTF-8 bytes."""
        return self.dumps().encode("utf-8")


def _format_key(key: str) -> str:
    if '"' in key:
        return f"`{key}`"
    if "`" in key:
        return f'"""{key}"""'
    if (
        any(c in key for c in _DELIMITERS + _COMMENT_CHARS)
        or key != key.strip()
        or key.startswith("[")
    ):
        return f"`{key}`"
    return key


def _format_value(value: str) -> str:
    if "\n" in value or "`" in value:
        return f'"""{value}"""'
    if any(c in value for c in _COMMENT_CHARS):
        return f"`{value}`"
    if value != value.strip():
        return f'"{value}"'
    return value


def _split_key(line: str) -> tuple[str, str]:
    if line[0] in '`"':
        quote = '"""' if line.startswith('"""') else line[0]
        end = line.find(quote, len(quote))
        if end < 0:
            raise ValueError(f"unclosed quoted key: {line!r}")
        key = line[len(quote):end]
        rest = line[end + len(quote):].lstrip()
        if not rest or rest[0] not in _DELIMITERS:
            raise ValueError(f"key-value delimiter not found: {line!r}")
        return key, rest[1:]

    positions = [pos for pos in (line.find(d) for d in _DELIMITERS) if pos >= 0]
    if not positions:
        raise ValueError(f"key-value delimiter not found: {line!r}")
    idx = min(positions)
    key = line[:idx].strip()
    if not key:
        raise ValueError(f"empty key: {line!r}")
    return key, line[idx + 1:]


def _read_value(rest: str, lines: Iterator[str]) -> str:
    value = rest.strip()
    if value.startswith('"""'):
        body = value[3:]
        end = body.find('"""')
        if end >= 0:
            return body[:end]
        parts = [body]
        for following in lines:
            end = following.find('"""')
            if end >= 0:
                parts.append(following[:end])
                return "\n".join(parts)
            parts.append(following)
        raise ValueError("missing closing triple quote")
    if value.startswith("`"):
        end = value.find("`", 1)
        if end < 0:
            raise ValueError(f"missing closing backquote: {value!r}")
        return value[1:end]

    cuts = [pos for pos in (value.find(c) for c in _COMMENT_CHARS) if pos >= 0]
    if cuts:
        value = value[: min(cuts)].rstrip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        value = value[1:-1]
    return value


def parse_ini(text: str | bytes) -> IniFile:
    """Parse INI text (or UTF-8 bytes) into an :class:`IniFile`."""
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("utf-8")
    if text.startswith("\ufeff"):
        text = text[1:]

    ini = IniFile()
    current = ini.section(DEFAULT_SECTION)
    lines = iter(text.splitlines())
    for raw in lines:
        line = raw.strip()
        if not line or line[0] in _COMMENT_CHARS:
            continue
        if line.startswith("["):
            end = line.find("]")
            if end < 0:
                raise ValueError(f"unclosed section: {line!r}")
            name = line[1:end].strip()
            if not name:
                raise ValueError(f"empty section name: {line!r}")
            current = ini.section(name)
            continue
        key, rest = _split_key(line)
        current[key] = _read_value(rest, lines)
    return ini