"""Small intermediate representation for ffmpeg filter graphs.

Compiler code builds :class:`FilterGraph` objects out of named filters with
typed parameters; the textual ``-filter_complex`` / ``-af`` syntax is only
produced by :meth:`FilterGraph.render`, which is the single place where
parameter values get escaped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence

# Characters with meaning inside a single filter's option string.
_OPTION_SPECIALS = "\\':"
# Characters with meaning to the filter graph parser.
_GRAPH_SPECIALS = "\\'[],;"


def _escape(text: str, specials: str) -> str:
    return "".join("\\" + ch if ch in specials else ch for ch in text)


def escape_value(text: str) -> str:
    """Escape a string option value for embedding in a filter graph.

    Two rounds: option level first, then graph level, matching the two
    unquoting passes ffmpeg applies when parsing ``-filter_complex``.
    Line breaks and other control characters are flattened to spaces.
    """
    flat = "".join(" " if ord(ch) < 32 else ch for ch in text)
    return _escape(_escape(flat, _OPTION_SPECIALS), _GRAPH_SPECIALS)


def format_number(value: float) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"


def render_param(value: Any) -> str:
    if isinstance(value, (bool, int, float)):
        return format_number(value)
    return escape_value(str(value))


@dataclass(frozen=True)
class Filter:
    name: str
    params: tuple[tuple[str, Any], ...] = ()

    @classmethod
    def of(cls, name: str, params: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> "Filter":
        merged: dict[str, Any] = dict(params or {})
        merged.update(kwargs)
        return cls(name=name, params=tuple((key, value) for key, value in merged.items() if value is not None))

    def param(self, key: str) -> Any:
        for name, value in self.params:
            if name == key:
                return value
        return None

    def render(self) -> str:
        if not self.params:
            return self.name
        rendered = ":".join(f"{key}={render_param(value)}" for key, value in self.params)
        return f"{self.name}={rendered}"


@dataclass(frozen=True)
class FilterChain:
    """Linear chain of filters between labelled pads."""

    filters: tuple[Filter, ...]
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()

    def render(self) -> str:
        ins = "".join(f"[{label}]" for label in self.inputs)
        outs = "".join(f"[{label}]" for label in self.outputs)
        body = ",".join(f.render() for f in self.filters)
        return f"{ins}{body}{outs}"


@dataclass
class FilterGraph:
    chains: list[FilterChain] = field(default_factory=list)

    def add(
        self,
        filters: Sequence[Filter] | Filter,
        inputs: Iterable[str] = (),
        outputs: Iterable[str] = (),
    ) -> "FilterGraph":
        if isinstance(filters, Filter):
            filters = [filters]
        if not filters:
            raise ValueError("filter chain must contain at least one filter")
        self.chains.append(FilterChain(tuple(filters), tuple(inputs), tuple(outputs)))
        return self

    def filter_names(self) -> list[str]:
        return [f.name for chain in self.chains for f in chain.filters]

    def find(self, name: str) -> list[Filter]:
        return [f for chain in self.chains for f in chain.filters if f.name == name]

    def render(self) -> str:
        return ";".join(chain.render() for chain in self.chains)

    def __bool__(self) -> bool:
        return bool(self.chains)
