"""Complexity resolution for repair line items.

Goal:
- Map free-text repair lines (quote items or AI damage suggestions) to a
  complexity level L1 < L2 < L3 < L4.
- The keyword table lives only in complexity_keywords (scripts/seed.py
  writes the starter rows); operators add, disable and re-enable rows.

Rules:
- Keywords are matched as literal substrings (lowercased), NOT regex.
- The result is the maximum level over all matches; a single L4 match makes
  the whole set L4.
- When no line matches any keyword the result is L2.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from repair_engine.models.complexity_keyword import ComplexityKeyword


class ComplexityLevel(str, Enum):
    L1 = "L1"
    L2 = "L2"
    L3 = "L3"
    L4 = "L4"

    @property
    def rank(self) -> int:
        return int(self.value[1])

    @property
    def is_high(self) -> bool:
        return self in (ComplexityLevel.L3, ComplexityLevel.L4)


DEFAULT_LEVEL = ComplexityLevel.L2

_SPLIT_RE = re.compile(r"[|,，]")


def try_parse_level(value: Any) -> ComplexityLevel | None:
    """Parse 'l3' / 'L3' / ComplexityLevel; None when unrecognized."""
    if isinstance(value, ComplexityLevel):
        return value
    s = str(value or "").strip().upper()
    try:
        return ComplexityLevel(s)
    except ValueError:
        return None


def parse_level(value: Any, default: ComplexityLevel = DEFAULT_LEVEL) -> ComplexityLevel:
    level = try_parse_level(value)
    return level if level is not None else default


def _normalize(s: str) -> str:
    s = s.strip().lower()
    return re.sub(r"\s+", " ", s)


def split_keywords(raw: str) -> list[str]:
    """Split an operator keyword cell on '|', ',' or '，'."""
    return [k for k in (_normalize(p) for p in _SPLIT_RE.split(raw or "")) if k]


@dataclass(frozen=True)
class KeywordTable:
    """Immutable keyword -> level table. Entries keep table order per level."""

    entries: tuple[tuple[str, ComplexityLevel], ...]

    @classmethod
    def from_mapping(cls, mapping: dict[ComplexityLevel, Iterable[str]]) -> "KeywordTable":
        seen: set[tuple[str, ComplexityLevel]] = set()
        out: list[tuple[str, ComplexityLevel]] = []
        for level in ComplexityLevel:
            for kw in mapping.get(level, ()):
                k = _normalize(kw)
                if not k or (k, level) in seen:
                    continue
                seen.add((k, level))
                out.append((k, level))
        return cls(entries=tuple(out))


@dataclass(frozen=True)
class ItemMatch:
    item: str
    level: ComplexityLevel
    keyword: str


@dataclass
class ComplexityResult:
    level: ComplexityLevel
    matches: list[ItemMatch] = field(default_factory=list)

    @property
    def is_default(self) -> bool:
        return not self.matches

    @property
    def top_items(self) -> list[str]:
        """Items that matched at the resolved (highest) level."""
        return [m.item for m in self.matches if m.level == self.level]


def match_item(item: str, table: KeywordTable) -> ItemMatch | None:
    """Highest-level keyword contained in a single line, or None."""
    hay = _normalize(item)
    if not hay:
        return None
    best: ItemMatch | None = None
    for keyword, level in table.entries:
        if keyword in hay and (best is None or level.rank > best.level.rank):
            best = ItemMatch(item=item, level=level, keyword=keyword)
    return best


def resolve_complexity(items: Iterable[str], table: KeywordTable) -> ComplexityResult:
    """Resolve the complexity of a set of repair lines (max over matches)."""
    matches: list[ItemMatch] = []
    for item in items:
        m = match_item(item, table)
        if m is not None:
            matches.append(m)
    if not matches:
        return ComplexityResult(level=DEFAULT_LEVEL)
    top = max(matches, key=lambda m: m.level.rank).level
    return ComplexityResult(level=top, matches=matches)


async def load_keyword_table(session: AsyncSession) -> KeywordTable:
    """Load the enabled operator keywords."""
    rows = (
        await session.execute(
            select(ComplexityKeyword).where(ComplexityKeyword.enabled.is_(True)).order_by(ComplexityKeyword.id)
        )
    ).scalars().all()

    by_level: dict[ComplexityLevel, list[str]] = {lvl: [] for lvl in ComplexityLevel}
    for r in rows:
        level = try_parse_level(r.level)
        if level is None:
            continue
        by_level[level].extend(split_keywords(r.keywords))
    return KeywordTable.from_mapping(by_level)


def normalize_repair_items(
    quote_items: Iterable[dict[str, Any]] | None = None,
    analysis: dict[str, Any] | None = None,
) -> list[str]:
    """Collect repair line texts from quote items and an AI damage analysis.

    Quote items contribute name / damage_part / repair_type; the analysis
    contributes `repair_suggestions` entries (strings or {item|name: ...}).
    """
    out: list[str] = []
    for it in quote_items or ():
        if not isinstance(it, dict):
            continue
        for key in ("name", "damage_part", "repair_type"):
            v = it.get(key)
            if isinstance(v, str) and v.strip():
                out.append(v.strip())
    for s in (analysis or {}).get("repair_suggestions") or ():
        if isinstance(s, str) and s.strip():
            out.append(s.strip())
        elif isinstance(s, dict):
            v = s.get("item") or s.get("name")
            if isinstance(v, str) and v.strip():
                out.append(v.strip())
    return out


# --- operator table maintenance ---


async def list_keywords(session: AsyncSession, *, include_disabled: bool = False) -> list[ComplexityKeyword]:
    q = select(ComplexityKeyword).order_by(ComplexityKeyword.level, ComplexityKeyword.id)
    if not include_disabled:
        q = q.where(ComplexityKeyword.enabled.is_(True))
    return list((await session.execute(q)).scalars().all())


async def add_keywords(
    session: AsyncSession,
    level: str,
    keywords: str,
    notes: str | None = None,
) -> ComplexityKeyword:
    """Add an operator keyword row.

    Raises:
        ValueError: unknown level or no usable keyword in the string.
    """
    parsed = try_parse_level(level)
    if parsed is None:
        raise ValueError(f"unknown complexity level {level!r}")
    parts = split_keywords(keywords)
    if not parts:
        raise ValueError("no keywords given")
    row = ComplexityKeyword(level=parsed.value, keywords="|".join(parts), enabled=True, notes=notes)
    session.add(row)
    await session.flush()
    return row


async def set_keyword_enabled(session: AsyncSession, keyword_id: int, enabled: bool) -> ComplexityKeyword | None:
    row = await session.get(ComplexityKeyword, keyword_id)
    if row is None:
        return None
    row.enabled = enabled
    await session.flush()
    return row
