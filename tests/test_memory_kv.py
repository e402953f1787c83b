"""Tests for the in-process key-value stand-in."""

import pytest
from redis.exceptions import ResponseError, WatchError

from ssoauth.storage.memory import MemoryKV


class TestStrings:
    async def test_set_get_and_expiry(self, kv, clock):
        await kv.set("k", "v", ex=10)
        assert await kv.get("k") == "v"
        assert await kv.ttl("k") == 10

        clock.advance(10)
        assert await kv.get("k") is None
        assert await kv.ttl("k") == -2

    async def test_set_without_expiry_clears_ttl(self, kv):
        await kv.set("k", "v", ex=10)
        await kv.set("k", "w")
        assert await kv.ttl("k") == -1

    async def test_incr_starts_at_one(self, kv):
        assert await kv.incr("n") == 1
        assert await kv.incr("n") == 2
        assert await kv.get("n") == "2"

    async def test_incr_keeps_existing_ttl(self, kv):
        await kv.set("n", "4", ex=30)
        await kv.incr("n")
        assert await kv.ttl("n") == 30

    async def test_incr_on_non_integer(self, kv):
        await kv.set("n", "abc")
        with pytest.raises(ResponseError):
            await kv.incr("n")

    async def test_delete_counts_only_live_keys(self, kv):
        await kv.set("a", "1")
        assert await kv.delete("a", "missing") == 1
        assert await kv.exists("a") == 0

    async def test_expire_missing_key(self, kv):
        assert await kv.expire("missing", 5) is False


class TestSets:
    async def test_add_remove_members(self, kv):
        assert await kv.sadd("s", "a", "b") == 2
        assert await kv.sadd("s", "a") == 0
        assert await kv.smembers("s") == {"a", "b"}
        assert await kv.srem("s", "a") == 1
        assert await kv.smembers("s") == {"b"}

    async def test_empty_set_is_dropped(self, kv):
        await kv.sadd("s", "a")
        await kv.srem("s", "a")
        assert await kv.exists("s") == 0

    async def test_wrong_type(self, kv):
        await kv.set("k", "v")
        with pytest.raises(ResponseError, match="WRONGTYPE"):
            await kv.sadd("k", "a")
        await kv.sadd("s", "a")
        with pytest.raises(ResponseError, match="WRONGTYPE"):
            await kv.get("s")


class TestPipeline:
    async def test_pipeline_runs_queued_commands_in_order(self, kv):
        pipe = kv.pipeline(transaction=True)
        pipe.incr("n")
        pipe.expire("n", 60)
        assert await pipe.execute() == [1, True]
        assert await kv.ttl("n") == 60

    async def test_pipeline_rejects_unknown_commands(self, kv):
        pipe = kv.pipeline()
        with pytest.raises(AttributeError):
            pipe.hset("h", "f", "v")

    async def test_watch_runs_reads_immediately_then_commits(self, kv):
        await kv.set("k", "v")
        async with kv.pipeline(transaction=True) as pipe:
            await pipe.watch("k")
            assert await pipe.get("k") == "v"
            pipe.multi()
            pipe.set("k", "w")
            assert await pipe.execute() == [True]
        assert await kv.get("k") == "w"

    async def test_watch_aborts_when_key_is_written(self, kv):
        await kv.set("k", "v")
        async with kv.pipeline(transaction=True) as pipe:
            await pipe.watch("k")
            await kv.set("k", "other")
            pipe.multi()
            pipe.set("k", "w")
            with pytest.raises(WatchError):
                await pipe.execute()
        assert await kv.get("k") == "other"

    async def test_watch_aborts_when_key_expires(self, kv, clock):
        await kv.set("k", "v", ex=10)
        async with kv.pipeline(transaction=True) as pipe:
            await pipe.watch("k")
            clock.advance(10)
            pipe.multi()
            pipe.set("k", "w")
            with pytest.raises(WatchError):
                await pipe.execute()
        assert await kv.get("k") is None

    async def test_default_clock_is_monotonic(self):
        kv = MemoryKV()
        await kv.set("k", "v", ex=60)
        assert await kv.ttl("k") == 60
