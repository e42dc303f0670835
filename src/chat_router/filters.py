from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class MatchAll:
    def matches(self, *candidates: str | None) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class MatchOne:
    value: str

    def matches(self, *candidates: str | None) -> bool:
        return any(candidate == self.value for candidate in candidates)


@dataclass(frozen=True, slots=True)
class MatchSet:
    values: frozenset[str]

    def matches(self, *candidates: str | None) -> bool:
        return any(candidate in self.values for candidate in candidates)


HandlerFilter = MatchAll | MatchOne | MatchSet

FilterSpec = str | Iterable[str] | None


def build_filter(
    spec: FilterSpec,
    *,
    normalize: Callable[[str], str] | None = None,
) -> HandlerFilter:
    if spec is None:
        return MatchAll()
    if isinstance(spec, str):
        return MatchOne(normalize(spec) if normalize else spec)
    values = list(spec)
    if not all(isinstance(item, str) for item in values):
        raise TypeError("handler filters must be strings or lists of strings")
    if normalize is not None:
        values = [normalize(item) for item in values]
    return MatchSet(frozenset(values))


def normalize_slash_command(command: str) -> str:
    return command if command.startswith("/") else f"/{command}"
