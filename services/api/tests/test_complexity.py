import pytest

from repair_engine.services.complexity import (
    ComplexityLevel,
    KeywordTable,
    add_keywords,
    list_keywords,
    load_keyword_table,
    match_item,
    normalize_repair_items,
    parse_level,
    resolve_complexity,
    set_keyword_enabled,
    split_keywords,
    try_parse_level,
)
from repair_engine.stores.postgres import get_session

KEYWORDS = {
    ComplexityLevel.L1: ("补漆", "划痕", "scratch"),
    ComplexityLevel.L2: ("钣金", "喷漆", "保险杠", "bumper", "dent repair", "repaint"),
    ComplexityLevel.L3: ("大灯", "水箱", "headlight"),
    ComplexityLevel.L4: ("大梁", "车架", "气囊", "frame", "airbag"),
}
TABLE = KeywordTable.from_mapping(KEYWORDS)


def test_highest_matching_level_wins() -> None:
    result = resolve_complexity(["前保险杠刮擦", "左前大灯破损"], TABLE)
    assert result.level == ComplexityLevel.L3
    assert result.top_items == ["左前大灯破损"]
    assert len(result.matches) == 2
    assert result.is_default is False


def test_unmatched_items_default_to_l2() -> None:
    result = resolve_complexity(["洗车", "  "], TABLE)
    assert result.level == ComplexityLevel.L2
    assert result.is_default is True
    assert result.top_items == []


def test_match_is_case_insensitive_and_picks_highest_keyword() -> None:
    m = match_item("Frame straightening after AIRBAG deploy", TABLE)
    assert m is not None
    assert m.level == ComplexityLevel.L4

    m = match_item("Bumper dent repair, then repaint", TABLE)
    assert m is not None
    assert m.level == ComplexityLevel.L2


def test_split_keywords_accepts_all_separators() -> None:
    assert split_keywords("A| b ,c，d||") == ["a", "b", "c", "d"]


def test_level_parsing() -> None:
    assert parse_level("l3") == ComplexityLevel.L3
    assert parse_level("L9") == ComplexityLevel.L2
    assert try_parse_level(None) is None
    assert ComplexityLevel.L4.is_high
    assert not ComplexityLevel.L2.is_high


def test_normalize_repair_items_reads_quotes_and_analysis() -> None:
    items = normalize_repair_items(
        [{"name": "前保险杠", "damage_part": "bumper", "repair_type": ""}, "not-a-dict"],
        {"repair_suggestions": ["钣金修复", {"item": "喷漆"}, {"name": ""}]},
    )
    assert items == ["前保险杠", "bumper", "钣金修复", "喷漆"]


@pytest.mark.asyncio
async def test_operator_keywords_extend_the_table(db) -> None:
    async with get_session() as session:
        row = await add_keywords(session, "l4", "电池包|高压线束", notes="EV work")
        assert row.level == "L4"
        assert row.keywords == "电池包|高压线束"

    async with get_session() as session:
        table = await load_keyword_table(session)
    assert resolve_complexity(["后部电池包变形"], table).level == ComplexityLevel.L4

    async with get_session() as session:
        await set_keyword_enabled(session, row.id, False)

    async with get_session() as session:
        table = await load_keyword_table(session)
        assert await list_keywords(session) == []
        assert len(await list_keywords(session, include_disabled=True)) == 1
    assert resolve_complexity(["后部电池包变形"], table).level == ComplexityLevel.L2


@pytest.mark.asyncio
async def test_add_keywords_rejects_bad_input(db) -> None:
    async with get_session() as session:
        with pytest.raises(ValueError):
            await add_keywords(session, "L7", "foo")
        with pytest.raises(ValueError):
            await add_keywords(session, "L1", " | , ")


@pytest.mark.asyncio
async def test_table_comes_only_from_enabled_rows(db) -> None:
    async with get_session() as session:
        table = await load_keyword_table(session)
    assert table.entries == ()
    assert resolve_complexity(["发动机大修"], table).level == ComplexityLevel.L2

    async with get_session() as session:
        row = await add_keywords(session, "L4", "发动机|engine")

    async with get_session() as session:
        table = await load_keyword_table(session)
    assert resolve_complexity(["发动机大修"], table).level == ComplexityLevel.L4

    async with get_session() as session:
        await set_keyword_enabled(session, row.id, False)

    async with get_session() as session:
        table = await load_keyword_table(session)
    assert table.entries == ()
    assert resolve_complexity(["Engine mount", "发动机大修"], table).level == ComplexityLevel.L2
