from __future__ import annotations

import asyncio
import json
import logging

import pytest

from conversation import ConversationMemory, Message, estimate_size, lexical_similarity, serialize_message
from conversation.scoring import LexicalScorer
from conversation.store import CONTEXT_SEPARATOR
from conftest import FakeEmbedder


def _texts(mem: ConversationMemory):
    return [m.text for m in mem.messages()]


def _chunk_size(message) -> int:
    return len((serialize_message(message) + CONTEXT_SEPARATOR).encode("utf-8"))


# -----------------------------
# Construction
# -----------------------------
def test_defaults_and_lexical_fallback():
    mem = ConversationMemory()
    assert mem.policy.max_size_bytes == 5 * 1024 * 1024
    assert mem.policy.max_message_count == 20
    assert mem.policy.max_context_size == 1024 * 1024
    assert mem.scorer_kind == "lexical"
    assert len(mem) == 0


def test_embedding_provider_selects_embedding_scorer(fake_embedder):
    assert ConversationMemory(embedding_provider=fake_embedder).scorer_kind == "embedding"


@pytest.mark.parametrize(
    "kwargs",
    [{"max_size_bytes": 0}, {"max_message_count": 0}, {"prune_mode": "sometimes"}],
)
def test_invalid_configuration_rejected(kwargs):
    with pytest.raises(ValueError):
        ConversationMemory(**kwargs)


def test_unknown_role_rejected():
    mem = ConversationMemory()
    with pytest.raises(ValueError):
        asyncio.run(mem.add_message("system", "hi", "hi"))


def test_message_fields_and_size_estimate():
    mem = ConversationMemory()
    asyncio.run(mem.add_message("query", "héllo", "héllo"))
    (msg,) = mem.messages()
    assert msg.role == "query" and msg.text == "héllo"
    assert isinstance(msg.timestamp, int) and msg.timestamp > 0
    # UTF-8 bytes, not characters
    assert estimate_size(msg) == len(serialize_message(msg).encode("utf-8"))
    assert estimate_size(msg) > len(serialize_message(msg))
    assert mem.total_size() == estimate_size(msg)


# -----------------------------
# Capacity & eviction
# -----------------------------
def test_scenario_a_evicts_lowest_overlap_after_append():
    mem = ConversationMemory(max_message_count=2)

    async def _run():
        for t in ("alpha", "beta", "gamma"):
            await mem.add_message("query", t, "gamma")

    asyncio.run(_run())
    # alpha and beta both score 0 against "gamma"; the older one goes first
    assert _texts(mem) == ["beta", "gamma"]


def test_scenario_a_before_append_keeps_one_extra():
    mem = ConversationMemory(max_message_count=2, prune_mode="before_append")

    async def _run():
        for t in ("alpha", "beta", "gamma"):
            await mem.add_message("query", t, "gamma")

    asyncio.run(_run())
    # history held 2 (== limit) before gamma was appended, so nothing was evicted
    assert _texts(mem) == ["alpha", "beta", "gamma"]

    asyncio.run(mem.add_message("response", "delta", "gamma"))
    assert _texts(mem) == ["beta", "gamma", "delta"]


@pytest.mark.parametrize("mode,slack", [("after_append", 0), ("before_append", 1)])
def test_count_bound_holds_over_many_adds(mode, slack):
    mem = ConversationMemory(max_message_count=5, prune_mode=mode)

    async def _run():
        for i in range(40):
            role = "query" if i % 2 == 0 else "response"
            await mem.add_message(role, f"message number {i} about topic {i % 3}", "topic 1")
            assert len(mem) <= 5 + slack

    asyncio.run(_run())


def test_byte_trigger_without_count_overflow_keeps_everything():
    mem = ConversationMemory(max_size_bytes=10, max_message_count=10)

    async def _run():
        for t in ("one", "two", "three"):
            await mem.add_message("query", t, "one")

    asyncio.run(_run())
    assert _texts(mem) == ["one", "two", "three"]
    assert mem.total_size() > 10


def test_remaining_order_is_preserved():
    mem = ConversationMemory(max_message_count=3)

    async def _run():
        for t in ("red apple", "blue sky", "green apple", "yellow sun", "apple pie"):
            await mem.add_message("query", t, "apple")

    asyncio.run(_run())
    assert _texts(mem) == ["red apple", "green apple", "apple pie"]


def test_prune_evicts_only_lower_scores():
    texts = ["cats and dogs", "weather today", "dogs bark loudly", "stock market", "dogs", "tea time"]
    mem = ConversationMemory(max_message_count=100)

    async def _run():
        for t in texts:
            await mem.add_message("query", t, "dogs")
        mem.policy.max_message_count = 3
        return await mem.prune("dogs")

    evicted_count = asyncio.run(_run())
    assert evicted_count == 3
    kept = _texts(mem)
    evicted = [t for t in texts if t not in kept]
    assert min(lexical_similarity(t, "dogs") for t in kept) >= max(lexical_similarity(t, "dogs") for t in evicted)
    assert kept == ["cats and dogs", "dogs bark loudly", "dogs"]


def test_prune_is_noop_within_limit():
    mem = ConversationMemory(max_message_count=5)

    async def _run():
        await mem.add_message("query", "a b", "a")
        return await mem.prune("zzz")

    assert asyncio.run(_run()) == 0
    assert _texts(mem) == ["a b"]


def test_eviction_with_embedding_scorer():
    emb = FakeEmbedder(
        {
            "ref": [1, 0],
            "close": [0.9, 0.1],
            "far": [-1, 0],
            "orthogonal": [0, 1],
        }
    )
    mem = ConversationMemory(max_message_count=2, embedding_provider=emb)

    async def _run():
        for t in ("close", "far", "orthogonal"):
            await mem.add_message("response", t, "ref")

    asyncio.run(_run())
    assert _texts(mem) == ["close", "orthogonal"]


class _BrokenScorer:
    kind = "broken"

    async def score(self, a, b):
        raise RuntimeError("nope")

    async def score_many(self, reference, texts):
        raise RuntimeError("nope")


def test_scorer_failure_never_reaches_caller(caplog):
    mem = ConversationMemory(max_message_count=1, scorer=_BrokenScorer())

    async def _run():
        await mem.add_message("query", "first", "x")
        await mem.add_message("response", "second", "x")
        return await mem.get_relevant_context("x")

    with caplog.at_level(logging.WARNING, logger="conversation.store"):
        ctx = asyncio.run(_run())
    # every score is 0, ties evict oldest first
    assert _texts(mem) == ["second"]
    assert '"text":"second"' in ctx
    assert "nope" in caplog.text


class _BlockingScorer:
    kind = "blocking"

    def __init__(self):
        self.started = asyncio.Event()

    async def score(self, a, b):
        return 0.0

    async def score_many(self, reference, texts):
        self.started.set()
        await asyncio.sleep(10)
        return [0.0] * len(texts)


def test_cancelled_add_leaves_store_untouched():
    async def _run():
        scorer = _BlockingScorer()
        mem = ConversationMemory(max_message_count=1, scorer=scorer)
        mem._messages.append(Message(role="query", text="kept"))  # bypass scoring
        task = asyncio.create_task(mem.add_message("response", "new", "x"))
        await scorer.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return mem

    mem = asyncio.run(_run())
    assert _texts(mem) == ["kept"]


def test_concurrent_adds_are_serialized():
    mem = ConversationMemory(max_message_count=4)

    async def _run():
        await asyncio.gather(*(mem.add_message("query", f"msg {i}", "msg") for i in range(20)))

    asyncio.run(_run())
    assert len(mem) == 4


# -----------------------------
# Context assembly
# -----------------------------
def test_empty_store_returns_empty_context():
    mem = ConversationMemory()
    for q in ("", "anything", "hello world"):
        assert asyncio.run(mem.get_relevant_context(q)) == ""


def test_scenario_b_most_relevant_first():
    mem = ConversationMemory()

    async def _run():
        await mem.add_message("query", "goodbye now", "goodbye now")
        await mem.add_message("response", "hello there", "hello there")
        return await mem.get_relevant_context("hello world")

    ctx = asyncio.run(_run())
    hello, goodbye = mem.messages()[1], mem.messages()[0]
    assert ctx == serialize_message(hello) + CONTEXT_SEPARATOR + serialize_message(goodbye) + CONTEXT_SEPARATOR


def test_scenario_c_budget_smaller_than_first_message():
    mem = ConversationMemory()
    asyncio.run(mem.add_message("query", "hello there", "hello there"))
    budget = _chunk_size(mem.messages()[0]) - 1
    assert asyncio.run(mem.get_relevant_context("hello", budget)) == ""


def test_context_budget_is_respected():
    mem = ConversationMemory()

    async def _run():
        for i in range(10):
            await mem.add_message("query", f"note {i} " + "word " * i, "note")

    asyncio.run(_run())
    for budget in (0, 50, 100, 333, 1000, 10_000):
        ctx = asyncio.run(mem.get_relevant_context("note word", budget))
        assert len(ctx.encode("utf-8")) <= budget


def test_context_is_greedy_prefix_not_knapsack():
    mem = ConversationMemory()

    async def _run():
        await mem.add_message("query", "apple banana", "x")
        await mem.add_message("response", "apple " + " ".join(f"filler{i}" for i in range(50)), "x")
        await mem.add_message("query", "cherry", "x")

    asyncio.run(_run())
    top, big, small = mem.messages()
    budget = _chunk_size(top) + _chunk_size(small)
    ctx = asyncio.run(mem.get_relevant_context("apple banana", budget))
    # "big" ranks second and does not fit; "small" would fit but comes after it
    assert ctx == serialize_message(top) + CONTEXT_SEPARATOR


def test_context_ties_keep_insertion_order():
    mem = ConversationMemory()

    async def _run():
        for t in ("one", "two", "three"):
            await mem.add_message("query", t, t)
        return await mem.get_relevant_context("unrelated")

    ctx = asyncio.run(_run())
    assert ctx.index('"one"') < ctx.index('"two"') < ctx.index('"three"')


def test_default_budget_comes_from_policy():
    mem = ConversationMemory(max_context_size=1)
    asyncio.run(mem.add_message("query", "hello", "hello"))
    assert asyncio.run(mem.get_relevant_context("hello")) == ""


def test_clear_empties_the_store():
    mem = ConversationMemory()
    asyncio.run(mem.add_message("query", "hello", "hello"))
    asyncio.run(mem.clear())
    assert len(mem) == 0 and mem.total_size() == 0


class _SlowLexicalScorer(LexicalScorer):
    async def score_many(self, reference, texts):
        await asyncio.sleep(0.05)
        return await super().score_many(reference, texts)


def _context_texts(ctx: str):
    return {json.loads(chunk)["text"] for chunk in ctx.split(CONTEXT_SEPARATOR) if chunk}


@pytest.mark.parametrize("reader_first", [True, False])
def test_reader_never_sees_half_pruned_store(reader_first):
    pre = {"apple one", "banana two"}
    post = {"apple one", "apple three"}

    async def _run():
        mem = ConversationMemory(max_message_count=2, scorer=_SlowLexicalScorer())
        await mem.add_message("query", "apple one", "apple")
        await mem.add_message("response", "banana two", "apple")

        write = mem.add_message("query", "apple three", "apple")
        read = mem.get_relevant_context("apple")
        if reader_first:
            ctx, _ = await asyncio.gather(read, write)
        else:
            _, ctx = await asyncio.gather(write, read)
        return mem, ctx

    mem, ctx = asyncio.run(_run())
    assert set(_texts(mem)) == post
    assert _context_texts(ctx) == (pre if reader_first else post)
