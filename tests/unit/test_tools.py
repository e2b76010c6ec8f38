from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy import orm

from sqla_lookahead.tools import (
    _get_primary_keys,
    add_conditions,
    chunked,
    get_identity,
    get_primary_keys,
    identity_in,
    lookahead_cache_clear,
    lookahead_cache_info,
    primary_key_attributes,
)

from ..models import Comment, Post, post_tags


class TestGetPrimaryKeys:
    def test_single_column(self) -> None:
        assert get_primary_keys(Post) == ("id",)

    def test_cached(self) -> None:
        _get_primary_keys.cache_clear()
        get_primary_keys(Comment)
        get_primary_keys(Comment)
        info = _get_primary_keys.cache_info()

        assert info.hits >= 1

    def test_attributes_of_alias_belong_to_alias(self) -> None:
        alias = orm.aliased(Post, name="posts_alias")
        (pk,) = primary_key_attributes(alias)
        compiled = str(sa.select(pk).compile())

        assert "posts_alias.id" in compiled


class TestGetIdentity:
    def test_transient_record_raises(self) -> None:
        with pytest.raises(ValueError, match="no identity"):
            get_identity(Post(title="draft"))


class TestIdentityIn:
    def test_single_column_uses_plain_in(self) -> None:
        clause = identity_in(primary_key_attributes(Post), [(1,), (2,)])
        compiled = str(clause.compile(compile_kwargs={"literal_binds": True}))

        assert "posts.id IN (1, 2)" in compiled

    def test_composite_uses_tuple_in(self) -> None:
        columns = [post_tags.c.post_id, post_tags.c.tag_id]
        clause = identity_in(columns, [(1, 1), (1, 2)])
        compiled = str(clause.compile(compile_kwargs={"literal_binds": True}))

        assert "(post_tags.post_id, post_tags.tag_id) IN" in compiled


class TestChunked:
    def test_even_split(self) -> None:
        assert list(chunked([1, 2, 3, 4], 2)) == [[1, 2], [3, 4]]

    def test_remainder(self) -> None:
        assert list(chunked([1, 2, 3], 2)) == [[1, 2], [3]]

    def test_empty(self) -> None:
        assert list(chunked([], 5)) == []

    def test_invalid_size(self) -> None:
        with pytest.raises(ValueError, match="Chunk size"):
            list(chunked([1], 0))


class TestAddConditions:
    def test_single_condition(self) -> None:
        cond_fn = add_conditions(Comment.spam.is_(False))
        q2 = cond_fn(sa.select(Comment))
        compiled = str(q2.compile(compile_kwargs={"literal_binds": True}))

        assert "comments.spam IS" in compiled

    def test_multiple_conditions(self) -> None:
        cond_fn = add_conditions(Comment.spam.is_(False), Comment.body == "Nice")
        q2 = cond_fn(sa.select(Comment))
        compiled = str(q2.compile(compile_kwargs={"literal_binds": True}))

        assert "spam" in compiled
        assert "Nice" in compiled

    def test_returns_callable(self) -> None:
        assert callable(add_conditions(Post.id > 1))


class TestCacheHelpers:
    def test_info_lists_caches(self) -> None:
        info = lookahead_cache_info()

        assert "_get_primary_keys" in info

    def test_clear_resets(self) -> None:
        get_primary_keys(Post)
        lookahead_cache_clear()

        assert _get_primary_keys.cache_info().currsize == 0
