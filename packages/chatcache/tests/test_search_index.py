"""SearchIndex 单元测试

测试内容：
1. 查询预处理（转义、AND 连接、引号透传）
2. 索引与消息表同步（插入 / 更新 / 软删除 / 物理删除）
3. 排序检索、前缀检索、发送者检索
4. FTS 失败时降级到子串检索
"""

from unittest.mock import AsyncMock

import pytest
from parley.chatcache.exceptions import SearchError
from parley.chatcache.store.search_index import escape_fts_token, prepare_fts_query


class TestQueryPreparation:
    """FTS 查询预处理"""

    def test_tokens_joined_with_and(self):
        assert prepare_fts_query("hello world") == '"hello" AND "world"'

    def test_special_characters_stripped(self):
        assert escape_fts_token("(foo*):-^") == "foo"
        assert prepare_fts_query("foo:bar (baz)") == '"foobar" AND "baz"'

    def test_double_quote_passes_through(self):
        raw = '"exact phrase" here'
        assert prepare_fts_query(raw) == raw

    def test_only_special_characters(self):
        assert prepare_fts_query("* ( ) ^") == ""

    def test_whitespace_trimmed(self):
        assert prepare_fts_query("   lunch   ") == '"lunch"'


class TestIndexLockstep:
    """索引随消息写入同步更新"""

    async def test_insert_is_searchable(self, message_store, search_index, make_message):
        await message_store.upsert_message(make_message("m1", content="quarterly roadmap review"))
        result = await search_index.search_fts("roadmap")
        assert [m.id for m in result] == ["m1"]

    async def test_update_replaces_index_row(self, message_store, search_index, make_message):
        """更新内容后旧词不再命中"""
        await message_store.upsert_message(make_message("m1", content="pizza tonight"))
        await message_store.upsert_message(make_message("m1", content="sushi tonight"))

        assert await search_index.search_fts("pizza") == []
        assert [m.id for m in await search_index.search_fts("sushi")] == ["m1"]
        assert await search_index.count_indexed() == 1

    async def test_soft_delete_removes_from_index(
        self, message_store, search_index, make_message
    ):
        await message_store.upsert_message(make_message("m1", content="confidential memo"))
        await message_store.soft_delete_message("m1")

        assert await search_index.search("confidential") == []
        assert await search_index.count_indexed() == 0

    async def test_hard_delete_removes_from_index(
        self, message_store, search_index, make_message
    ):
        await message_store.upsert_message(make_message("m1", content="confidential memo"))
        await message_store.delete_message_by_id("m1")
        assert await search_index.count_indexed() == 0

    async def test_insert_as_deleted_not_indexed(
        self, message_store, search_index, make_message
    ):
        """以已删除状态写入的消息不进入索引"""
        await message_store.upsert_message(
            make_message("m1", content="ghost text", is_deleted=True)
        )
        assert await search_index.count_indexed() == 0

    async def test_rebuild_matches_active_messages(
        self, store_group, message_store, search_index, make_message
    ):
        """rebuild 后索引行数等于未删除消息数"""
        await message_store.batch_upsert_messages(
            [make_message(f"m{i}", content=f"note {i}", minutes=i) for i in range(6)]
        )
        await message_store.soft_delete_message("m0")
        await store_group.conn.execute("DELETE FROM messages_fts")
        await store_group.conn.commit()
        assert await search_index.count_indexed() == 0

        await search_index.rebuild()
        assert await search_index.count_indexed() == 5


class TestRankedSearch:
    """排序检索"""

    async def test_conjunctive_match(self, message_store, search_index, make_message):
        """多个词需全部命中"""
        await message_store.batch_upsert_messages(
            [
                make_message("m1", content="deploy the backend today"),
                make_message("m2", content="deploy the frontend"),
            ]
        )
        result = await search_index.search_fts("deploy backend")
        assert [m.id for m in result] == ["m1"]

    async def test_relevance_then_recency(self, message_store, search_index, make_message):
        """相关度高的在前；同分按 sent_at 倒序"""
        await message_store.batch_upsert_messages(
            [
                make_message(
                    "weak",
                    content="release notes and a very long unrelated tail about many other topics",
                    minutes=10,
                ),
                make_message("strong", content="release release release", minutes=1),
            ]
        )
        result = await search_index.search_fts("release")
        assert [m.id for m in result] == ["strong", "weak"]

        await message_store.batch_upsert_messages(
            [
                make_message("old", channel_id="ch-tie", content="standup", minutes=1),
                make_message("new", channel_id="ch-tie", content="standup", minutes=2),
            ]
        )
        tie = await search_index.search_fts("standup", channel_id="ch-tie")
        assert [m.id for m in tie] == ["new", "old"]

    async def test_channel_filter(self, message_store, search_index, make_message):
        await message_store.batch_upsert_messages(
            [
                make_message("a1", channel_id="ch-a", content="budget"),
                make_message("b1", channel_id="ch-b", content="budget"),
            ]
        )
        result = await search_index.search("budget", channel_id="ch-b")
        assert [m.id for m in result] == ["b1"]

    async def test_porter_stemming_and_diacritics(
        self, message_store, search_index, make_message
    ):
        await message_store.batch_upsert_messages(
            [
                make_message("m1", content="we were running late"),
                make_message("m2", content="café opens at nine", minutes=1),
            ]
        )
        assert [m.id for m in await search_index.search("run")] == ["m1"]
        assert [m.id for m in await search_index.search("cafe")] == ["m2"]

    async def test_punctuation_in_query(self, message_store, search_index, make_message):
        """分词器忽略的标点不会造成语法错误"""
        await message_store.upsert_message(make_message("m1", content="see docs.example.com/api"))
        result = await search_index.search_fts("docs.example.com/api")
        assert [m.id for m in result] == ["m1"]

    async def test_limit(self, message_store, search_index, make_message):
        await message_store.batch_upsert_messages(
            [make_message(f"m{i}", content="ping", minutes=i) for i in range(10)]
        )
        assert len(await search_index.search("ping", limit=3)) == 3

    async def test_empty_query(self, search_index):
        assert await search_index.search("   ") == []
        assert await search_index.search_fts("()") == []

    async def test_invalid_raw_query_raises_search_error(self, search_index):
        """引号透传的非法表达式在 search_fts 层抛 SearchError"""
        with pytest.raises(SearchError):
            await search_index.search_fts('"unterminated')


class TestPrefixAndSender:
    """前缀检索与发送者检索"""

    async def test_prefix_requires_two_characters(self, message_store, search_index, make_message):
        await message_store.upsert_message(make_message("m1", content="appetite"))
        assert await search_index.search_prefix("a") == []
        assert [m.id for m in await search_index.search_prefix("ap")] == ["m1"]

    async def test_prefix_orders_by_recency(self, message_store, search_index, make_message):
        await message_store.batch_upsert_messages(
            [
                make_message("m1", content="meeting", minutes=1),
                make_message("m2", content="meetup", minutes=2),
                make_message("m3", content="melon", minutes=3),
            ]
        )
        result = await search_index.search_prefix("meet")
        assert [m.id for m in result] == ["m2", "m1"]

    async def test_search_by_sender(self, message_store, search_index, make_message):
        await message_store.batch_upsert_messages(
            [
                make_message("m1", sender_name="Margaret", content="hello", minutes=1),
                make_message("m2", sender_name="Bob", content="Margaret said hi", minutes=2),
                make_message("m3", sender_name="Marge", content="hey", minutes=3),
            ]
        )
        result = await search_index.search_by_sender("Marg")
        assert [m.id for m in result] == ["m3", "m1"]


class TestFallback:
    """降级到子串检索"""

    async def test_fts_failure_falls_back_to_legacy(
        self, message_store, search_index, make_message
    ):
        """FTS 抛异常时结果与子串检索一致"""
        await message_store.batch_upsert_messages(
            [
                make_message("m1", content="invoice #42 attached", minutes=1),
                make_message("m2", content="another invoice", minutes=2),
            ]
        )
        search_index.search_fts = AsyncMock(side_effect=SearchError("index corrupted"))

        result = await search_index.search("invoice")
        expected = await search_index.search_legacy("invoice")
        assert [m.id for m in result] == [m.id for m in expected] == ["m2", "m1"]

    async def test_both_paths_fail_returns_empty(self, search_index):
        search_index.search_fts = AsyncMock(side_effect=SearchError("index corrupted"))
        search_index.search_legacy = AsyncMock(side_effect=RuntimeError("db gone"))
        assert await search_index.search("anything") == []

    async def test_dropped_fts_table_still_searchable(
        self, store_group, message_store, search_index, make_message
    ):
        """索引表不存在时 search 仍能返回结果"""
        await message_store.upsert_message(make_message("m1", content="payroll update"))
        await store_group.conn.execute("DROP TRIGGER messages_fts_insert")
        await store_group.conn.execute("DROP TRIGGER messages_fts_update")
        await store_group.conn.execute("DROP TRIGGER messages_fts_delete")
        await store_group.conn.execute("DROP TABLE messages_fts")
        await store_group.conn.commit()

        result = await search_index.search("payroll")
        assert [m.id for m in result] == ["m1"]

    async def test_legacy_excludes_deleted_and_escapes_wildcards(
        self, message_store, search_index, make_message
    ):
        await message_store.batch_upsert_messages(
            [
                make_message("m1", content="100% done"),
                make_message("m2", content="100 done", minutes=1),
                make_message("m3", content="100% gone", minutes=2),
            ]
        )
        await message_store.soft_delete_message("m3")

        result = await search_index.search_legacy("100%")
        assert [m.id for m in result] == ["m1"]

    async def test_index_stats(self, message_store, search_index, make_message):
        await message_store.upsert_message(make_message("m1"))
        await search_index.optimize()
        assert await search_index.get_index_stats() == {
            "indexed_messages": 1,
            "status": "healthy",
        }
